"""Usage analytics - atomic counter upserts for per-user and system-wide usage"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subsync.core.config import FREE_PLAN, PRO_PLAN
from subsync.models.subscription import Subscription
from subsync.models.usage import DailyUsage, MonthlyUsage, SystemDailyStats
from subsync.models.user import User
from subsync.utils.dates import as_utc, parse_iso, utcnow

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("tokens_input", "tokens_output", "tokens_embedding", "cost_usd")


def _usage_increments(usage: Dict[str, Any]) -> Dict[str, Any]:
    """Counter deltas for one recorded message"""
    increments = {
        "messages_count": 1,
        "chats_count": 1 if usage.get("is_new_thread") else 0,
    }
    for field in COUNTER_FIELDS:
        increments[field] = usage.get(field) or 0
    return increments


def _usage_timestamp(usage: Dict[str, Any]) -> datetime:
    created_at = usage.get("created_at")
    if isinstance(created_at, datetime):
        return as_utc(created_at)
    return parse_iso(created_at) or utcnow()


def _increment(db: Session, model, keys: Dict[str, Any], increments: Dict[str, Any], assignments: Optional[Dict[str, Any]] = None) -> None:
    """UPDATE counters in place; INSERT the row when it does not exist yet.

    The increment is done in SQL (``col = col + n``) so concurrent writers
    never lose an update.
    """
    query = db.query(model).filter_by(**keys)
    values = {getattr(model, name): getattr(model, name) + delta for name, delta in increments.items()}
    values[model.updated_at] = utcnow()
    for name, value in (assignments or {}).items():
        values[getattr(model, name)] = value

    if query.update(values, synchronize_session=False):
        return

    try:
        with db.begin_nested():
            db.add(model(**keys, **increments, **(assignments or {})))
    except IntegrityError:
        # Another writer created the row first
        query.update(values, synchronize_session=False)


def update_user_usage(user_id: int, usage: Dict[str, Any], db: Session) -> None:
    """Add one message worth of usage to the user's daily and monthly counters"""
    created_at = _usage_timestamp(usage)
    increments = _usage_increments(usage)

    _increment(db, DailyUsage, {"user_id": user_id, "date": created_at.date()}, increments)
    _increment(db, MonthlyUsage, {"user_id": user_id, "year": created_at.year, "month": created_at.month}, increments)
    db.commit()
    logger.debug(f"Updated usage aggregations for user {user_id}")


def update_system_usage(usage: Dict[str, Any], db: Session) -> None:
    """Add one message worth of usage to today's system stats and refresh plan head counts"""
    created_at = _usage_timestamp(usage)
    increments = _usage_increments(usage)

    total_users = db.query(func.count(User.id)).scalar() or 0
    plan_counts = dict(
        db.query(Subscription.plan_id, func.count(Subscription.id)).group_by(Subscription.plan_id).all()
    )
    paid_users = plan_counts.get(PRO_PLAN, 0)
    assignments = {
        "total_users": total_users,
        # Users without a subscription row are on the free plan
        "free_users": max(plan_counts.get(FREE_PLAN, 0), total_users - paid_users),
        "pro_users": paid_users,
    }

    _increment(db, SystemDailyStats, {"date": created_at.date()}, increments, assignments)
    db.commit()
    logger.debug(f"Updated system usage aggregations for {created_at.date()}")


def get_user_daily_usage(user_id: int, day: date, db: Session) -> Optional[DailyUsage]:
    return db.query(DailyUsage).filter(DailyUsage.user_id == user_id, DailyUsage.date == day).first()


def get_system_daily_stats(day: date, db: Session) -> Optional[SystemDailyStats]:
    return db.query(SystemDailyStats).filter(SystemDailyStats.date == day).first()
