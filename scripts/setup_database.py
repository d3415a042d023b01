#!/usr/bin/env python3
"""
Database Setup Script for the Radicado Audit Engine.

This script:
1. Creates the audit tables in the configured PostgreSQL database
2. Optionally seeds the reference data (ISS-2004 sample catalog, NUEVA EPS
   convenio, cuotas moderadoras, habilitations, compatibility table and
   demo authorizations)
3. Optionally expires authorizations already past their expiry date

Usage:
    python scripts/setup_database.py [--seed] [--drop-existing] [--expire-due]

The connection comes from AUDITORIA_DATABASE_URL.
"""

import argparse
import asyncio
import logging
import sys

from auditoria.core.config import get_audit_settings
from auditoria.db.connection import (
    check_db_connection,
    close_db_connection,
    create_schema,
    drop_schema,
    get_session_maker,
)
from auditoria.db.seeds import seed_database
from auditoria.repositories.sql import SqlAuthorizationRepository
from auditoria.services.authorization_ledger import AuthorizationLedger
from auditoria.utils.logging import setup_logging_from_settings

logger = logging.getLogger(__name__)


async def setup(seed: bool, drop_existing: bool, expire_due: bool) -> int:
    if not await check_db_connection():
        logger.error("Database is not reachable, check AUDITORIA_DATABASE_URL")
        return 1

    if drop_existing:
        logger.info("Dropping existing tables...")
        await drop_schema()

    await create_schema()

    session_maker = get_session_maker()
    if seed:
        await seed_database(session_maker)

    if expire_due:
        ledger = AuthorizationLedger(SqlAuthorizationRepository(session_maker))
        expired = await ledger.expire_due()
        logger.info(f"Expired {len(expired)} authorization(s)")

    return 0


async def main() -> int:
    parser = argparse.ArgumentParser(description="Create and seed the audit database")
    parser.add_argument("--seed", action="store_true", help="Insert reference data")
    parser.add_argument(
        "--drop-existing", action="store_true", help="Drop the audit tables first"
    )
    parser.add_argument(
        "--expire-due",
        action="store_true",
        help="Expire active authorizations past their expiry date",
    )
    args = parser.parse_args()

    setup_logging_from_settings()
    settings = get_audit_settings()
    logger.info(f"Integration mode: {settings.INTEGRATION_MODE.value}")

    try:
        return await setup(args.seed, args.drop_existing, args.expire_due)
    finally:
        await close_db_connection()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
