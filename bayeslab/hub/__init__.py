"""Concurrent runtime: fetch workers, the analysis process pool and orchestration."""
