#!/usr/bin/env python3
"""
Mail sync management commands.

Usage:
    python manage.py [--mode MODE] [--account UUID]

Modes:
    - worker: Run the polling scheduler until interrupted (default)
    - sync: Run one forced sync pass for the account given with --account
    - renew: Establish or renew every due push channel once
    - recover: Release sync locks held past the maximum sync duration
    - list: List active accounts with their sync state

Environment Variables:
    DATABASE_HOST / DATABASE_NAME: PostgreSQL connection
    SYNC_POLL_INTERVAL: Seconds between polling sweeps
"""

import argparse
import asyncio
import logging
import sys
from uuid import UUID

from dotenv import load_dotenv

load_dotenv(override=True)
from app.container import close_clients, get_wire_container  # noqa: E402
from app.controllers.sync.models import SyncTrigger  # noqa: E402
from app.db import fastapi_sqlalchemy_context, init_standalone_db  # noqa: E402
from app.exceptions import EntityNotFoundError  # noqa: E402
from logging_config import setup_logging  # noqa: E402
from workers import sync_worker  # noqa: E402

setup_logging()

logger = logging.getLogger(__name__)

container = get_wire_container()


async def sync_one(account_uuid: UUID) -> None:
    async with fastapi_sqlalchemy_context():
        account = await container.repos.account().get_by_uuid(account_uuid)
        if account is None:
            raise EntityNotFoundError(f"Account {account_uuid} not found")
        account_id = account.id

    try:
        outcome = await container.controllers.orchestrator().sync_account(
            account_id, SyncTrigger.manual, force=True
        )
        logger.info(
            f"Sync of {account_uuid} {outcome.result.value}: {outcome.stored} stored, "
            f"{outcome.duplicates} duplicates, checkpoint {outcome.checkpoint}"
        )
        if outcome.error:
            logger.error(f"Sync error: {outcome.error}")
    finally:
        await close_clients(container)


async def renew_channels() -> None:
    init_standalone_db()
    try:
        report = await container.controllers.dispatcher().renew_channels()
        logger.info(f"Renewal finished: {report}")
    finally:
        await close_clients(container)


async def recover_stuck() -> None:
    init_standalone_db()
    recovered = await container.controllers.orchestrator().recover_stuck_accounts()
    logger.info(f"Recovered {len(recovered)} stuck accounts: {recovered}")


async def list_accounts() -> None:
    async with fastapi_sqlalchemy_context():
        candidates = await container.repos.account().get_active_sync_candidates()

        if not candidates:
            print("No active accounts found in database.")
            return

        logger.info(f"Found {len(candidates)} active accounts:")
        for i, (account, state, channel) in enumerate(candidates, 1):
            status = state.sync_status.value if state else "uninitialized"
            push = "push" if channel is not None and channel.is_active else "poll"
            logger.info(f"{i:3d}. {account.email:40} {account.provider.value:8} {status:14} {push} {account.uuid}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Mail sync management")
    parser.add_argument(
        "--mode", choices=["worker", "sync", "renew", "recover", "list"], default="worker", help="Operating mode"
    )
    parser.add_argument("--account", type=UUID, help="Account UUID for --mode sync")

    args = parser.parse_args()
    if args.mode == "sync" and args.account is None:
        parser.error("--mode sync requires --account")

    try:
        if args.mode == "worker":
            asyncio.run(sync_worker.main())
        elif args.mode == "sync":
            asyncio.run(sync_one(args.account))
        elif args.mode == "renew":
            asyncio.run(renew_channels())
        elif args.mode == "recover":
            asyncio.run(recover_stuck())
        elif args.mode == "list":
            asyncio.run(list_accounts())

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Command failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
