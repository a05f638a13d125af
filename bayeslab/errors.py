"""Error taxonomy for the analysis pipeline.

Entity-scoped errors (FetchError, AnalysisError) are isolated by the
orchestrator and surface as a per-entity error status. ConfigurationError
is batch-scoped and aborts before any work starts. WorkerCrash is raised
by the analysis pool only after its respawn/retry budget is exhausted.
"""


class BayesLabError(Exception):
    """Base class for all bayeslab errors."""


class EntityError(BayesLabError):
    """An error scoped to a single entity."""

    def __init__(self, entity_id: str, message: str):
        super().__init__(f"{entity_id}: {message}")
        self.entity_id = entity_id
        self.message = message


class FetchError(EntityError):
    """History source failed for one entity."""


class AnalysisError(EntityError):
    """Computation failed for one entity (e.g. malformed state data)."""


class ConfigurationError(BayesLabError, ValueError):
    """Invalid batch input, such as a missing TRUE or FALSE period."""


class WorkerCrash(BayesLabError):
    """An analysis worker died and the task could not be recovered."""
