"""Maintenance commands.

    python -m checkout.tasks expire-pending [--ttl-minutes N]
    python -m checkout.tasks reconcile-gift-card CODE
"""

import argparse
import json
import sys
from datetime import timedelta

from checkout.application.giftcards import GiftCardLedger
from checkout.application.orders import OrderLedger
from checkout.core_settings import get_settings
from checkout.infrastructure.db import create_db_engine, build_session_factory
from shared.core import setup_logging, get_logger

logger = get_logger(__name__)

def expire_pending(session_factory, ttl_minutes: int) -> list:
    with session_factory.begin() as db:
        return OrderLedger(db).expire_stale_pending(timedelta(minutes=ttl_minutes))

def reconcile_gift_card(session_factory, code: str) -> dict:
    with session_factory() as db:
        return GiftCardLedger(db).reconcile(code)

def main(argv=None) -> int:
    settings = get_settings()
    setup_logging(service_name=settings.SERVICE_NAME, level=settings.LOG_LEVEL)

    parser = argparse.ArgumentParser(prog="checkout.tasks")
    sub = parser.add_subparsers(dest="command", required=True)
    expire = sub.add_parser("expire-pending", help="cancel pending orders older than the TTL")
    expire.add_argument("--ttl-minutes", type=int, default=settings.PENDING_ORDER_TTL_MINUTES)
    reconcile = sub.add_parser("reconcile-gift-card", help="replay a gift card ledger")
    reconcile.add_argument("code")
    args = parser.parse_args(argv)

    session_factory = build_session_factory(create_db_engine(settings.database_url))

    if args.command == "expire-pending":
        if not args.ttl_minutes:
            logger.info("PENDING_ORDER_TTL_MINUTES not set; pending orders are kept")
            return 0
        expired = expire_pending(session_factory, args.ttl_minutes)
        print(json.dumps({"expired": expired}))
        return 0

    report = reconcile_gift_card(session_factory, args.code)
    print(json.dumps(report, default=str))
    return 0 if report["consistent"] else 1

if __name__ == "__main__":
    sys.exit(main())
