import asyncio
import logging
import os
import signal
import sys
from time import sleep

from dotenv import load_dotenv

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../")))
load_dotenv("./.env", override=True)

from app.container import ApplicationContainer, close_clients, get_wire_container  # noqa: E402
from app.db import init_standalone_db  # noqa: E402
from logging_config import setup_logging  # noqa: E402
from settings import settings  # noqa: E402
from workers.scheduler import PollingScheduler  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)


container = get_wire_container()


def build_scheduler(application_container: ApplicationContainer) -> PollingScheduler:
    controllers = application_container.controllers
    return PollingScheduler(
        account_repo=application_container.repos.account(),
        orchestrator=controllers.orchestrator(),
        dispatcher=controllers.dispatcher(),
        sync_settings=settings.sync,
        channel_settings=settings.channels,
        session_scope=controllers.session_scope(),
    )


async def main() -> None:
    init_standalone_db()
    scheduler = build_scheduler(container)

    # Setup signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in [signal.SIGINT, signal.SIGTERM]:
        loop.add_signal_handler(sig, signal_handler)

    try:
        scheduler.start()
        await shutdown_event.wait()

        logger.info("Initiating graceful shutdown...")
        await scheduler.stop()
    finally:
        await close_clients(container)


if __name__ == "__main__":
    logger.info(f"Starting sync worker in {settings.environment.value} environment")
    while True:
        try:
            asyncio.run(main())
            break
        except Exception:
            logger.exception("Error in sync worker, restarting")
        sleep(5)
