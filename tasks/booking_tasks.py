"""
tasks/booking_tasks.py
Periodic booking housekeeping.

Confirmed sessions whose slot has ended are moved to `completed` so they
become reviewable and count as paid in earnings. Idempotent: running twice
has no side effect.
"""

import logging
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def sync_database_url(url: str) -> str:
    """Celery runs sync: swap the async driver for its blocking counterpart."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


@lru_cache
def _session_factory():
    engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine, expire_on_commit=False)


@celery_app.task
def complete_elapsed_bookings():
    """Beat task: confirmed → completed once the slot end has passed."""
    from services.booking.lifecycle import elapsed_confirmed_query, mark_completed
    from shared.utils.dates import utcnow

    db = _session_factory()()
    try:
        now = utcnow()
        bookings = db.execute(elapsed_confirmed_query(now)).scalars().all()
        for booking in bookings:
            db.add(mark_completed(booking, now))
        db.commit()
        if bookings:
            logger.info(f"complete_elapsed_bookings: completed {len(bookings)} booking(s)")
        return len(bookings)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"complete_elapsed_bookings failed: {e}")
        return 0
    finally:
        db.close()
