"""Command line entry point: analyze labeled periods and replay Bayesian sensors."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from bayeslab.engine.config import AppConfig
from bayeslab.errors import BayesLabError
from bayeslab.models import EntityStatus, Observation, TimePeriod, parse_timestamp

logger = logging.getLogger("bayeslab.cli")


def _configure_logging(args):
    log_level = "INFO"
    if getattr(args, "verbose", False):
        log_level = "DEBUG"
    elif getattr(args, "quiet", False):
        log_level = "WARNING"
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def load_periods(path: str) -> list[TimePeriod]:
    """Periods file: a JSON list of ``{id, start, end, is_true_period, label?}``."""
    raw = json.loads(Path(path).read_text())
    if not isinstance(raw, list):
        raise BayesLabError(f"{path}: expected a list of periods")
    return [TimePeriod.from_dict(item) for item in raw]


def load_observations(path: str) -> list[Observation]:
    """A JSON list of observations, or a bayesian sensor config with ``observations``."""
    raw = json.loads(Path(path).read_text())
    if isinstance(raw, dict):
        raw = raw.get("observations", [])
    return [Observation.from_dict(item) for item in raw]


def _history_source(args, config: AppConfig):
    if args.history:
        from bayeslab.engine.collectors.static import StaticHistorySource

        return StaticHistorySource.from_file(args.history)

    from bayeslab.engine.collectors.ha_api import HomeAssistantHistorySource

    if not config.ha.token:
        raise BayesLabError("HA_TOKEN is not set (or pass --history FILE for offline analysis)")
    return HomeAssistantHistorySource(config.ha)


async def _close_source(source):
    close = getattr(source, "close", None)
    if close is not None:
        await close()


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("--periods", required=True, help="JSON file with labeled TRUE/FALSE periods")
    parser.add_argument("--history", default=None, help="Offline history JSON instead of Home Assistant")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--quiet", action="store_true", help="Only show WARNING and above")


async def _analyze(args, config: AppConfig) -> dict:
    from bayeslab.session import AnalysisSession

    source = _history_source(args, config)
    session = AnalysisSession(source, config)
    try:
        session.set_periods(load_periods(args.periods))
        if args.entities:
            entity_ids = [e.strip() for e in args.entities.split(",") if e.strip()]
        elif args.history:
            entity_ids = source.entity_ids
        else:
            entity_ids = None
        states = await source.get_states() if entity_ids is None else None

        results = await session.analyze(entity_ids=entity_ids, states=states)
        failed = {eid: s.message for eid, s in session.statuses.items() if s.status is EntityStatus.ERROR}
        output = {
            "results": [r.to_dict() for r in results[: args.top]],
            "failed": failed,
        }
        if args.config_name:
            output["config"] = session.generate_config(args.config_name)
        return output
    finally:
        session.close()
        await _close_source(source)


async def _simulate(args, config: AppConfig) -> dict:
    from bayeslab.engine.simulation import RawHistoryResolver, simulate
    from bayeslab.shared.periods import time_range_of

    source = _history_source(args, config)
    try:
        periods = load_periods(args.periods)
        observations = load_observations(args.observations)
        start, end = time_range_of(periods)
        if args.start:
            start = parse_timestamp(args.start)
        if args.end:
            end = parse_timestamp(args.end)

        entity_ids = list(dict.fromkeys(o.entity_id for o in observations))
        history = await source.fetch_history(entity_ids, start, end)
        summary = simulate(
            prior=args.prior if args.prior is not None else config.simulation.prior,
            threshold=args.threshold if args.threshold is not None else config.simulation.probability_threshold,
            observations=observations,
            history_source=RawHistoryResolver(history),
            time_range=(start, end),
            sample_interval_minutes=args.interval or config.simulation.sample_interval_minutes,
        )
        output = summary.to_dict()
        if not args.points:
            output.pop("points")
        return output
    finally:
        await _close_source(source)


async def _check(config: AppConfig) -> dict:
    from bayeslab.engine.collectors.ha_api import HomeAssistantHistorySource

    async with HomeAssistantHistorySource(config.ha) as source:
        ok = await source.test_connection()
    return {"url": config.ha.url, "connected": ok}


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="bayeslab",
        description="Find and replay Bayesian sensor observations from Home Assistant history",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze_parser = subparsers.add_parser("analyze", help="Rank entity states by how well they separate the periods")
    _add_common_arguments(analyze_parser)
    analyze_parser.add_argument("--entities", default=None, help="Comma-separated entity ids (default: all relevant)")
    analyze_parser.add_argument("--top", type=int, default=20, help="Results to print (default: 20)")
    analyze_parser.add_argument("--config-name", default=None, help="Also emit a bayesian sensor config with this name")

    simulate_parser = subparsers.add_parser("simulate", help="Replay a bayesian sensor against history")
    _add_common_arguments(simulate_parser)
    simulate_parser.add_argument("--observations", required=True, help="JSON observations or bayesian sensor config")
    simulate_parser.add_argument("--prior", type=float, default=None, help="Prior probability (default: 0.5)")
    simulate_parser.add_argument("--threshold", type=float, default=None, help="Probability threshold (default: 0.5)")
    simulate_parser.add_argument("--interval", type=float, default=None, help="Sample interval in minutes (default: 5)")
    simulate_parser.add_argument("--start", default=None, help="Range start (default: first period start)")
    simulate_parser.add_argument("--end", default=None, help="Range end (default: last period end)")
    simulate_parser.add_argument("--points", action="store_true", help="Include every sample point in the output")

    check_parser = subparsers.add_parser("check", help="Test the Home Assistant connection")
    check_parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    check_parser.add_argument("--quiet", action="store_true", help="Only show WARNING and above")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args)
    config = AppConfig.from_env()

    try:
        if args.command == "analyze":
            output = asyncio.run(_analyze(args, config))
        elif args.command == "simulate":
            output = asyncio.run(_simulate(args, config))
        elif args.command == "check":
            output = asyncio.run(_check(config))
        else:
            print(f"Unknown command: {args.command}")
            sys.exit(1)
    except (BayesLabError, OSError, KeyError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)

    print(json.dumps(output, indent=2, default=str))
    if args.command == "check" and not output["connected"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
