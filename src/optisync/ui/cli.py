from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from optisync.app import build_http_pipeline, build_sqlite_pipeline
from optisync.common import configure_logging
from optisync.config import ConfigurationError, HttpStoreConfig, get_pipeline_config
from optisync.domain.model import (
    EntityKind,
    Intent,
    OperationKind,
    OperationStatus,
    OverlayPolicy,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from optisync.app import OptimisticPipeline
    from optisync.config import PipelineConfig

log = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Optimistic entity pipeline tools")
    store = parser.add_mutually_exclusive_group()
    store.add_argument(
        "--database-uri",
        type=str,
        help="SQLAlchemy URI of the entity store (defaults to DATABASE_URI or the data dir)",
    )
    store.add_argument(
        "--store-url",
        type=str,
        help="Base URL of a REST entity store to use instead of a database",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Run one consistency validation pass")
    validate.add_argument(
        "--no-fix",
        action="store_true",
        help="Report divergences without repairing them",
    )
    validate.add_argument(
        "--overlay-policy",
        choices=[policy.value for policy in OverlayPolicy],
        help="How orphaned optimistic writes are repaired (defaults to config)",
    )

    subparsers.add_parser("status", help="Show store contents and pipeline status")

    watch = subparsers.add_parser("watch", help="Validate periodically until interrupted")
    watch.add_argument(
        "--interval",
        type=float,
        help="Seconds between validation passes (defaults to config)",
    )

    put = subparsers.add_parser("put", help="Add or update one entity through the pipeline")
    put.add_argument("kind", choices=[kind.value for kind in EntityKind])
    put.add_argument("entity_id", type=str)
    put.add_argument("payload", type=str, help="Entity payload as a JSON object")

    delete = subparsers.add_parser("delete", help="Delete one entity through the pipeline")
    delete.add_argument("kind", choices=[kind.value for kind in EntityKind])
    delete.add_argument("entity_id", type=str)

    return parser.parse_args(list(argv))


def _parse_payload(value: str) -> dict[str, object]:
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object")  # noqa: TRY004
    return payload


def _effective_config(args: argparse.Namespace) -> PipelineConfig:
    config = get_pipeline_config()
    validation = config.validation
    if args.command == "validate":
        if args.no_fix:
            validation = replace(validation, auto_fix=False)
        if args.overlay_policy is not None:
            validation = replace(validation, overlay_policy=OverlayPolicy(args.overlay_policy))
    elif args.command == "watch" and args.interval is not None:
        if args.interval <= 0:
            raise ValueError("Interval must be positive")
        validation = replace(validation, interval=timedelta(seconds=args.interval))
    return replace(config, validation=validation)


async def _validate(pipeline: OptimisticPipeline) -> bool:
    await pipeline.load_confirmed()
    report = await pipeline.validator.validate_consistency()
    for item in report.inconsistent_items:
        log.info("%s %s: %s", item.kind, item.key, item.description)
    log.info(
        "Validation finished: checked=%s, inconsistent=%s, fixed=%s, errors=%s",
        report.total_checked,
        len(report.inconsistent_items),
        report.fixed_count,
        len(report.errors),
    )
    return report.snapshot_available and not report.errors


async def _status(pipeline: OptimisticPipeline) -> None:
    loaded = await pipeline.load_confirmed()
    for kind in EntityKind:
        log.info("%s entities: %s", kind, len(pipeline.manager.view(kind)))
    queue = pipeline.manager.get_queue_status()
    log.info(
        "Store holds %s entities; queued=%s, processing=%s",
        loaded,
        queue.total_queued,
        queue.processing_items,
    )


async def _write(pipeline: OptimisticPipeline, intent: Intent) -> bool:
    operation_id = pipeline.manager.submit(intent)
    await pipeline.queue.join()
    operation = pipeline.manager.get_operation(operation_id)
    if operation is None:
        log.error("Operation %s disappeared before it finished", operation_id)
        return False
    log.info("%s %s: %s", operation.type, operation.key, operation.status)
    if operation.last_error:
        log.info("Last error: %s", operation.last_error)
    return operation.status is not OperationStatus.FAILED


async def _watch(pipeline: OptimisticPipeline) -> None:
    await pipeline.load_confirmed()
    scheduler = AsyncIOScheduler()
    pipeline.start_periodic_validation(scheduler)
    scheduler.start()
    log.info("Watching store; press Ctrl+C to stop")
    try:
        await pipeline.validator.validate_consistency()
        await asyncio.Event().wait()
    finally:
        pipeline.stop_periodic_validation(scheduler)
        scheduler.shutdown(wait=False)


def _build_pipeline(args: argparse.Namespace, config: PipelineConfig) -> OptimisticPipeline:
    if args.store_url:
        store_config = HttpStoreConfig(base_url=args.store_url)
        return build_http_pipeline(store_config=store_config, config=config)
    return build_sqlite_pipeline(database_uri=args.database_uri, config=config)


async def _run(args: argparse.Namespace, config: PipelineConfig) -> bool:
    async with _build_pipeline(args, config) as pipeline:
        if args.command == "validate":
            return await _validate(pipeline)
        if args.command == "status":
            await _status(pipeline)
            return True
        if args.command == "watch":
            await _watch(pipeline)
            return True
        if args.command == "put":
            await pipeline.load_confirmed()
            exists = pipeline.manager.read(args.kind, args.entity_id) is not None
            intent = Intent(
                type=OperationKind.UPDATE if exists else OperationKind.ADD,
                entity_kind=args.kind,
                entity_id=args.entity_id,
                payload=_parse_payload(args.payload),
            )
            return await _write(pipeline, intent)
        if args.command == "delete":
            await pipeline.load_confirmed()
            intent = Intent(
                type=OperationKind.DELETE, entity_kind=args.kind, entity_id=args.entity_id
            )
            return await _write(pipeline, intent)
        raise ValueError(f"Unsupported command: {args.command}")


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    configure_logging()
    parsed_args: argparse.Namespace
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    try:
        parsed_args = _parse_args(args_list)
        config = _effective_config(parsed_args)
        if parsed_args.command == "put":
            _parse_payload(parsed_args.payload)
    except (ValueError, ConfigurationError):
        log.exception("CLI validation error")
        sys.exit(2)

    try:
        succeeded = asyncio.run(_run(parsed_args, config))
    except Exception:
        log.exception("Fatal error")
        sys.exit(1)
    if not succeeded:
        sys.exit(1)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
