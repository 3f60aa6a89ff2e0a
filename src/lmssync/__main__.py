"""
Command-line entrypoint.

Usage:
    python -m lmssync sync users --mode incremental   # one entity sync
    python -m lmssync chain --mode full               # every entity, in order
    python -m lmssync match --dry-run                 # auto-link groups to partners
    python -m lmssync schedule                        # nightly scheduler loop
    python -m lmssync serve --port 8000               # HTTP API under uvicorn
"""
import argparse
import asyncio
import json
import logging
import sys

from lmssync.config import get_settings

logger = logging.getLogger("lmssync")


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_sync(entity_type: str, mode: str) -> int:
    from lmssync.sync.orchestrator import get_orchestrator, shutdown_orchestrator

    try:
        result = await get_orchestrator().run(entity_type, mode)
    finally:
        await shutdown_orchestrator()
    _print(result)
    return 0 if result["status"] == "completed" else 1


async def _run_chain(mode: str) -> int:
    from lmssync.sync.orchestrator import get_orchestrator, shutdown_orchestrator

    try:
        results = await get_orchestrator().run_chain(mode)
    finally:
        await shutdown_orchestrator()
    _print(results)
    return 0 if all(r["status"] == "completed" for r in results) else 1


def _run_match(dry_run: bool, min_score) -> int:
    from lmssync.db.engine import get_engine
    from lmssync.matching.service import auto_match_groups

    settings = get_settings()
    report = auto_match_groups(
        get_engine(),
        min_score=settings.match_auto_link_threshold if min_score is None else min_score,
        dry_run=dry_run,
        prefix=settings.match_group_prefix,
        denylist=settings.match_denylist_terms,
    )
    _print(report)
    return 0


async def _run_scheduler() -> None:
    from lmssync.scheduler.jobs import build_scheduler
    from lmssync.sync.orchestrator import get_orchestrator, shutdown_orchestrator

    settings = get_settings()
    scheduler = build_scheduler(get_orchestrator())
    scheduler.start()
    logger.info("Scheduler started (nightly sync at %02d:00 UTC)", settings.sync_hour)
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await shutdown_orchestrator()


def _run_server(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("lmssync.api.main:app", host=host, port=port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lmssync", description="LMS sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Sync one entity type")
    p_sync.add_argument("entity_type")
    p_sync.add_argument("--mode", choices=["full", "incremental"], default="full")

    p_chain = sub.add_parser("chain", help="Sync every entity type in dependency order")
    p_chain.add_argument("--mode", choices=["full", "incremental"], default="incremental")

    p_match = sub.add_parser("match", help="Auto-link unlinked groups to partners")
    p_match.add_argument("--dry-run", action="store_true")
    p_match.add_argument("--min-score", type=float, default=None)

    sub.add_parser("schedule", help="Run the nightly scheduler in the foreground")

    p_serve = sub.add_parser("serve", help="Serve the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv=None) -> int:
    from lmssync.errors import SyncError

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        if args.command == "sync":
            return asyncio.run(_run_sync(args.entity_type, args.mode))
        if args.command == "chain":
            return asyncio.run(_run_chain(args.mode))
        if args.command == "match":
            return _run_match(args.dry_run, args.min_score)
        if args.command == "schedule":
            asyncio.run(_run_scheduler())
            return 0
        _run_server(args.host, args.port)
        return 0
    except SyncError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
