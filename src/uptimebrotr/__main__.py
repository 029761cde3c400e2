"""CLI entry point for UptimeBrotr services.

Provides a unified command-line interface to run one service, or all three
over a single shared [Ledger][uptimebrotr.core.ledger.Ledger]. Services can
run in one-shot mode (``--once``) or continuously.

The Monitor keeps the health state in memory and the Archiver persists it,
so ``all`` is the production mode. A standalone ``monitor`` run saves the
state itself when it ends.

Examples:
    ```bash
    python -m uptimebrotr all
    python -m uptimebrotr monitor --once --log-level DEBUG
    python -m uptimebrotr api --config config/services/api.yaml
    ```
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NamedTuple

from uptimebrotr.core import Ledger, start_metrics_server
from uptimebrotr.core.base_service import BaseService
from uptimebrotr.core.logger import Logger, StructuredFormatter
from uptimebrotr.core.yaml import load_yaml
from uptimebrotr.exceptions import ConfigurationError, PersistenceError
from uptimebrotr.models.constants import ServiceName
from uptimebrotr.services.api import Api
from uptimebrotr.services.archiver import Archiver
from uptimebrotr.services.monitor import Monitor


CONFIG_BASE = Path("config")
LEDGER_CONFIG = CONFIG_BASE / "ledger.yaml"
ALL_SERVICES = "all"


class ServiceEntry(NamedTuple):
    """Registry entry mapping a service to its class and default config path."""

    cls: type[BaseService[Any]]
    config_path: Path


# Entry order is the order services are entered in ``all`` mode: the Api
# serves while the Monitor waits for its first registry refresh.
SERVICE_REGISTRY: dict[str, ServiceEntry] = {
    ServiceName.ARCHIVER: ServiceEntry(Archiver, CONFIG_BASE / "services" / "archiver.yaml"),
    ServiceName.API: ServiceEntry(Api, CONFIG_BASE / "services" / "api.yaml"),
    ServiceName.MONITOR: ServiceEntry(Monitor, CONFIG_BASE / "services" / "monitor.yaml"),
}

logger = Logger("cli")


def build_service(
    service_class: type[BaseService[Any]],
    ledger: Ledger,
    service_dict: dict[str, Any],
) -> BaseService[Any]:
    if service_dict:
        return service_class.from_dict(service_dict, ledger=ledger)
    return service_class(ledger=ledger)


def save_state(ledger: Ledger) -> None:
    """Persist the ledger state, logging instead of raising."""
    try:
        ledger.save_state()
    except PersistenceError as e:
        logger.error("state_save_failed", error=str(e))
    else:
        logger.info("state_saved", path=ledger.config.state_path)


async def _run_until_first_stops(services: list[BaseService[Any]]) -> None:
    """Run every service forever; when one stops, ask the others to stop too."""

    async def supervise(service: BaseService[Any]) -> None:
        try:
            await service.run_forever()
        finally:
            for other in services:
                other.request_shutdown()

    async with asyncio.TaskGroup() as group:
        for service in services:
            group.create_task(supervise(service))


async def run_services(
    name: str,
    services: list[BaseService[Any]],
    *,
    once: bool,
) -> int:
    """Run *services* in one-shot or continuous mode.

    In one-shot mode each service runs a single cycle, in order, and the
    process exits. In continuous mode a Prometheus metrics server is started
    (when enabled in the first service's config) and the services run until
    a shutdown signal is received.

    Args:
        name: Mode name used for logging (a service name or ``all``).
        services: Services sharing one open ledger.
        once: If True, run a single cycle and exit.

    Returns:
        Exit code: 0 for success, 1 for failure.
    """
    # One-shot mode: single cycle, no metrics server
    if once:
        try:
            async with contextlib.AsyncExitStack() as stack:
                for service in services:
                    await stack.enter_async_context(service)
                for service in services:
                    await service.run()
            logger.info(f"{name}_completed")
            return 0
        except Exception as e:  # Intentionally broad: CLI error boundary for one-shot mode
            logger.error(f"{name}_failed", error=str(e))
            return 1

    # Continuous mode: metrics server + indefinite operation
    metrics_config = services[0].config.metrics
    metrics_server = await start_metrics_server(metrics_config)

    if metrics_config.enabled:
        logger.info(
            "metrics_server_started",
            host=metrics_config.host,
            port=metrics_config.port,
            path=metrics_config.path,
        )

    # Signal handling for graceful shutdown
    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        for service in services:
            service.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        async with contextlib.AsyncExitStack() as stack:
            for service in services:
                await stack.enter_async_context(service)
            await _run_until_first_stops(services)
        return 0
    except Exception as e:  # Intentionally broad: CLI error boundary for continuous mode
        logger.error(f"{name}_failed", error=str(e))
        return 1
    finally:
        await metrics_server.stop()
        if metrics_config.enabled:
            logger.info("metrics_server_stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the service runner."""
    parser = argparse.ArgumentParser(
        prog="uptimebrotr",
        description="UptimeBrotr Service Runner",
    )

    parser.add_argument(
        "service",
        choices=[*SERVICE_REGISTRY.keys(), ALL_SERVICES],
        help="Service to run, or 'all' for every service over one shared state",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Service config path (default: config/services/<service>.yaml; ignored with 'all')",
    )

    parser.add_argument(
        "--ledger-config",
        type=Path,
        default=LEDGER_CONFIG,
        help=f"Ledger config path (default: {LEDGER_CONFIG})",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run once and exit (default: run continuously)",
    )

    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    """Configure the root logger with structured formatting.

    Installs a ``StructuredFormatter`` on the root handler so that all
    log output -- from both ``Logger`` (with ``structured_kv`` extra) and
    plain ``logging.getLogger()`` calls -- is unified as
    ``level name message key=value ...``.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    """Load a YAML file as a dict, returning ``{}`` if the file does not exist."""
    if not path.exists():
        logger.warning("config_not_found", path=str(path))
        return {}
    return load_yaml(str(path))


def selected_services(service: str, config: Path | None) -> list[tuple[str, ServiceEntry, Path]]:
    """``(name, entry, config_path)`` of the services a CLI mode runs."""
    if service == ALL_SERVICES:
        return [(name, entry, entry.config_path) for name, entry in SERVICE_REGISTRY.items()]
    entry = SERVICE_REGISTRY[service]
    return [(service, entry, config or entry.config_path)]


async def main(argv: list[str] | None = None) -> int:
    """Main entry point: parse args, open the Ledger, and run the service(s)."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    ledger_dict = _load_yaml_dict(args.ledger_config)
    try:
        ledger = Ledger.from_dict(ledger_dict) if ledger_dict else Ledger()
    except (ConfigurationError, ValueError) as e:
        logger.error("config_invalid", path=str(args.ledger_config), error=str(e))
        return 1

    selected = selected_services(args.service, args.config)
    if args.once and args.service == ALL_SERVICES:
        # A single pass has nothing to serve
        selected = [s for s in selected if s[0] != ServiceName.API]
        selected.sort(key=lambda s: s[0] != ServiceName.MONITOR)

    try:
        async with ledger:
            services: list[BaseService[Any]] = []
            for name, entry, path in selected:
                try:
                    services.append(build_service(entry.cls, ledger, _load_yaml_dict(path)))
                except (ConfigurationError, ValueError) as e:
                    logger.error("config_invalid", service=name, path=str(path), error=str(e))
                    return 1
            code = await run_services(args.service, services, once=args.once)
            if args.service == ServiceName.MONITOR:
                await asyncio.to_thread(save_state, ledger)
            return code
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
