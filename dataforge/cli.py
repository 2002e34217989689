"""CLI entry point for the connector pipeline."""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

from dataforge.binding import PipelineRouter
from dataforge.bus import KeyValueStore, MessageBus, connect
from dataforge.config import DataforgeConfig, get_config
from dataforge.connectors.registry import ConnectorRegistry, default_registry
from dataforge.dispatch import Dispatcher
from dataforge.exceptions import ConfigurationError, DataforgeError
from dataforge.ingestion import BatchPublisher, PipelineRunner
from dataforge.logging_utils import get_logger, setup_logging
from dataforge.metadata import SqlMetadataStore
from dataforge.models import RunStatus
from dataforge.state import IncrementalStateStore

logger = get_logger(__name__)


@dataclass
class Services:
    config: DataforgeConfig
    bus: MessageBus
    kv: KeyValueStore
    router: PipelineRouter
    registry: ConnectorRegistry

    def metadata(self) -> SqlMetadataStore:
        return SqlMetadataStore(self.config.metadata_dsn)


def build_services(config: DataforgeConfig) -> Services:
    bus, kv = connect(config)
    return Services(
        config=config,
        bus=bus,
        kv=kv,
        router=PipelineRouter(kv),
        registry=default_registry(),
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="dataforge",
        description="Move records from sources to destinations through the message bus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dataforge bind --pipeline-id 7 --source-id 3 --destination-id 9
  dataforge start --pipeline-id 7 --timeout 3600
  dataforge dispatch
  dataforge check-bus
        """,
    )
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)
    parser.add_argument("--log-format", choices=["json", "text"], default=None)

    subparsers = parser.add_subparsers(dest="command", required=True)

    bind = subparsers.add_parser("bind", help="Bind a pipeline to its source and destination")
    bind.add_argument("--pipeline-id", type=int, required=True)
    bind.add_argument("--source-id", type=int, required=True)
    bind.add_argument("--destination-id", type=int, required=True)

    start = subparsers.add_parser("start", help="Run a pipeline's source until it finishes")
    start.add_argument("--pipeline-id", type=int, required=True)
    start.add_argument("--timeout", type=float, default=None, help="Cancel the run after this many seconds")

    subparsers.add_parser("dispatch", help="Deliver published batches to destinations until stopped")
    subparsers.add_parser("check-bus", help="Check bus connectivity and exit")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI execution."""
    args = parse_args(argv)

    try:
        config = get_config()
    except ConfigurationError as e:
        setup_logging(level=args.log_level or "INFO", json_format=(args.log_format or "json") == "json")
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(
        level=args.log_level or config.log_level,
        json_format=(args.log_format or config.log_format) == "json",
    )

    try:
        services = build_services(config)
        if args.command == "bind":
            return cmd_bind(services, args)
        if args.command == "start":
            return cmd_start(services, args)
        if args.command == "dispatch":
            return cmd_dispatch(services)
        return cmd_check_bus(services)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except DataforgeError as e:
        logger.error(f"Command {args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


def cmd_bind(services: Services, args: argparse.Namespace) -> int:
    services.router.bind(args.pipeline_id, args.source_id, args.destination_id)
    return 0


def cmd_start(services: Services, args: argparse.Namespace) -> int:
    config = services.config
    runner = PipelineRunner(
        router=services.router,
        metadata=services.metadata(),
        registry=services.registry,
        publisher=BatchPublisher(services.bus, subject=config.output_subject),
        state_store=IncrementalStateStore(services.kv, lookback_hours=config.lookback_hours),
        max_workers=config.max_concurrent_runs,
    )
    handle = runner.start(args.pipeline_id)
    try:
        metrics = handle.result(timeout=args.timeout)
    except FutureTimeoutError:
        logger.error(f"Run exceeded {args.timeout}s; cancelling", extra={"run_id": handle.run_id})
        handle.cancel()
        handle.future.exception()
        return 1
    except KeyboardInterrupt:
        logger.warning("Cancelling pipeline run", extra={"run_id": handle.run_id})
        handle.cancel()
        handle.future.exception()
        return 130
    finally:
        runner.shutdown(wait=True, cancel_running=True)

    if metrics.status == RunStatus.CANCELLED.value:
        return 130
    return 0 if metrics.success else 1


def cmd_dispatch(services: Services) -> int:
    config = services.config
    dispatcher = Dispatcher(
        bus=services.bus,
        router=services.router,
        metadata=services.metadata(),
        registry=services.registry,
        subject=config.output_subject,
        dead_letter_subject=config.dead_letter_subject,
        group=config.consumer_group,
        consumer=config.consumer_name,
        max_attempts=config.dispatch_max_attempts,
        read_count=config.dispatch_read_count,
        block_ms=config.dispatch_block_ms,
    )

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda _signum, _frame: stop_event.set())
    dispatcher.consume(stop_event)
    return 0


def cmd_check_bus(services: Services) -> int:
    healthy = services.bus.ping()
    logger.info("Bus health check " + ("passed" if healthy else "failed"))
    return 0 if healthy else 1


if __name__ == "__main__":
    sys.exit(main())
