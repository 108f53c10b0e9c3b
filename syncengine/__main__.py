"""
Command line entry point.

Usage:
    python -m syncengine serve                  # workers, scheduler and status API
    python -m syncengine reconcile --incremental
    python -m syncengine status
    python -m syncengine retry <entity_id>
    python -m syncengine resolve <entity_id> --strategy KEEP_LOCAL
"""
import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional

from syncengine.config import ConfigurationError, load_config, validate_config
from syncengine.engine import SyncEngine
from syncengine.exceptions import SyncError, ValidationError
from syncengine.observability import get_logger, setup_logging
from syncengine.validators import validate_entity_id, validate_resolution

logger = get_logger(__name__)


def _print(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


def serve(engine: SyncEngine, host: Optional[str], port: Optional[int]) -> int:
    import uvicorn

    from syncengine.api import create_app

    app = create_app(engine, manage_lifecycle=True)
    uvicorn.run(
        app,
        host=host or engine.config.api.host,
        port=port or engine.config.api.port,
        log_config=None,
    )
    return 0


async def run_command(engine: SyncEngine, args: argparse.Namespace) -> int:
    """Run a one-shot command against an opened engine."""
    await engine.open()
    try:
        if args.command == "reconcile":
            summary = await engine.reconcile(incremental=args.incremental)
            _print(summary.to_dict())
        elif args.command == "status":
            _print(await engine.status())
        elif args.command == "retry":
            entity = await engine.retry(validate_entity_id(args.entity_id))
            _print(entity.to_dict())
        elif args.command == "resolve":
            merged = json.loads(args.merged) if args.merged else None
            resolution = validate_resolution(args.strategy, merged)
            entity = await engine.resolve(validate_entity_id(args.entity_id), resolution, merged)
            _print(entity.to_dict())
    except (SyncError, ValidationError, json.JSONDecodeError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        await engine.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="syncengine", description="Local/remote sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run workers, scheduler and the status API")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: SYNC_API_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: SYNC_API_PORT)")

    reconcile_parser = sub.add_parser("reconcile", help="Run one reconciliation sweep")
    reconcile_parser.add_argument(
        "--incremental",
        action="store_true",
        help="Only entities changed since the last sweep"
    )

    sub.add_parser("status", help="Print entity counts, queue and monitor stats")

    retry_parser = sub.add_parser("retry", help="Send an entity back through sync")
    retry_parser.add_argument("entity_id")

    resolve_parser = sub.add_parser("resolve", help="Resolve a version conflict")
    resolve_parser.add_argument("entity_id")
    resolve_parser.add_argument(
        "--strategy",
        required=True,
        help="ACCEPT_REMOTE, KEEP_LOCAL or MERGE"
    )
    resolve_parser.add_argument("--merged", default=None, help="Merged payload as JSON (MERGE only)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config()
    setup_logging(level=cfg.logging.level, json_format=cfg.logging.json_format)

    try:
        validate_config(cfg, require_remote=True)
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return 2

    engine = SyncEngine(cfg)
    if args.command == "serve":
        return serve(engine, args.host, args.port)
    return asyncio.run(run_command(engine, args))


if __name__ == "__main__":
    sys.exit(main())
