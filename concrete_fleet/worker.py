"""Runs one dispatch service, or all of them, as a long-lived process.

Usage:
    python -m concrete_fleet.worker                         # every service
    python -m concrete_fleet.worker --service job-workflow  # orchestrator + completions
    python -m concrete_fleet.worker --service truck-status  # simulator + cancellations
    python -m concrete_fleet.worker --service inventory     # inventory deduction
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.orm import sessionmaker

from .broker import MessageBroker, build_broker
from .cancellation import OrderCancellationHandler
from .completion import OrderCompletionHandler
from .config import Settings
from .database import create_session_factory, init_db
from .inventory import InventoryManager, TruckEventListener
from .logging_config import configure_logging
from .orchestrator import JobAssignmentOrchestrator
from .simulator import TruckSimulator

logger = structlog.get_logger(__name__)

SERVICES = ("job-workflow", "truck-status", "inventory", "all")


def build_components(
    service: str,
    broker: MessageBroker,
    session_factory: sessionmaker,
    settings: Settings,
) -> list:
    """Components for *service*, in start order."""
    if service not in SERVICES:
        raise ValueError(f"Unknown service: {service}")
    components: list = []
    if service in ("inventory", "all"):
        components.append(TruckEventListener(broker, InventoryManager(session_factory)))
    if service in ("job-workflow", "all"):
        components.append(OrderCompletionHandler(broker, session_factory))
    if service in ("truck-status", "all"):
        simulator = TruckSimulator(
            broker,
            session_factory,
            timing=settings.timing,
            reconcile_interval=settings.reconcile_interval_seconds,
        )
        components.append(simulator)
        components.append(OrderCancellationHandler(broker, simulator))
    if service in ("job-workflow", "all"):
        # Last, so its startup assignments reach subscribers that are already bound.
        components.append(
            JobAssignmentOrchestrator(broker, session_factory, settings.reconcile_interval_seconds)
        )
    return components


class ServiceHost:
    def __init__(
        self,
        service: str,
        broker: MessageBroker,
        session_factory: sessionmaker,
        settings: Settings,
    ) -> None:
        self.service = service
        self.components = build_components(service, broker, session_factory, settings)
        self._started: List[object] = []

    async def start(self) -> None:
        for component in self.components:
            await component.start()
            self._started.append(component)
        logger.info("Services started", service=self.service, components=len(self._started))

    async def stop(self) -> None:
        while self._started:
            component = self._started.pop()
            try:
                await component.stop()
            except Exception:
                logger.exception("Error stopping component", component=type(component).__name__)
        logger.info("Services stopped", service=self.service)


async def run(service: str, settings: Settings) -> None:
    session_factory = create_session_factory(settings.database_url)
    init_db(session_factory)
    broker = build_broker(settings)
    await broker.connect()
    host = ServiceHost(service, broker, session_factory, settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await host.start()
        await stop_event.wait()
        logger.info("Shutdown requested", service=service)
    finally:
        await host.stop()
        await broker.close()


def parse_cli_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Concrete fleet dispatch worker")
    parser.add_argument(
        "--service",
        "-s",
        choices=SERVICES,
        default="all",
        help="Service to run (default: all)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_cli_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.environment, settings.log_level)
    asyncio.run(run(args.service, settings))


if __name__ == "__main__":
    main()
