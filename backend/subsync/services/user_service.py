"""User lookups used by billing (accounts themselves belong to the auth subsystem)"""
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from subsync.core.config import FREE_PLAN
from subsync.models.subscription import Subscription
from subsync.models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user(email: str, name: str = None, db: Session = None) -> User:
    """Create a new user.

    Args:
        email: User email (must be unique, compared case-insensitively).
        name: Display name (optional).
        db: Database session (if None, creates its own).
    """
    from subsync.db.session import SessionLocal

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        email = normalize_email(email)
        if get_user_by_email(email, db):
            raise ValueError("Email already registered")

        user = User(email=email, name=name)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user.id}")
        return user
    finally:
        if should_close:
            db.close()


def get_user_by_id(user_id: int, db: Session = None) -> Optional[User]:
    """Get user by ID"""
    from subsync.db.session import SessionLocal

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(User).filter(User.id == user_id).first()
    finally:
        if should_close:
            db.close()


def get_user_by_email(email: str, db: Session = None) -> Optional[User]:
    """Get user by email"""
    from subsync.db.session import SessionLocal

    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(User).filter(func.lower(User.email) == normalize_email(email)).first()
    finally:
        if should_close:
            db.close()


def get_or_create_free_subscription(user_id: int, db: Session) -> Subscription:
    """Return the user's subscription row, creating the never-paid free one if missing"""
    subscription = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if subscription:
        return subscription

    subscription = Subscription(user_id=user_id, plan_id=FREE_PLAN, status="active")
    db.add(subscription)
    db.flush()
    logger.info(f"Created free subscription for user {user_id}")
    return subscription
