"""Periodic job: resume memberships whose pause window has elapsed.

Run from cron, e.g. ``python -m backend.renewal_sweep``.
"""
import logging
import os

import psycopg2
from dotenv import load_dotenv

from backend import app_context
from backend.app.services.billing import get_billing_service

load_dotenv()

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "entitlements_db"),
    user=os.getenv("DB_USER", "entitlements_user"),
    password=os.getenv("DB_PASSWORD", "entitlements_pass"),
)

logger = logging.getLogger("billing")


def _no_user(*args, **kwargs):
    raise RuntimeError("The renewal sweep does not authenticate users")


def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    app_context.configure(
        get_conn=lambda: psycopg2.connect(**DB_CFG),
        get_current_user=_no_user,
        get_optional_current_user=_no_user,
    )
    result = get_billing_service().run_renewal_sweep()
    logger.info("Renewal sweep finished: %s memberships resumed", len(result.resumed_user_ids))


if __name__ == "__main__":
    main()
