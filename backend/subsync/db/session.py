"""Engine, session factory and the FastAPI session dependency"""
import logging
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from subsync.models import Base
from subsync.core.config import settings

logger = logging.getLogger(__name__)


def engine_options(database_url: str) -> Dict[str, Any]:
    """Driver-specific create_engine() arguments.

    SQLite connections are shared between the request thread pool and the
    background loops, so thread checks are disabled. Server databases get
    liveness checks and connection recycling.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Request-scoped session, closed after the response is sent"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create billing, queue and usage tables that do not exist yet"""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready on {make_url(settings.DATABASE_URL).render_as_string(hide_password=True)}")
