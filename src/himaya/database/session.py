"""
Himaya Database Session Management
Engine and session factory construction from settings
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from himaya.core.config import Settings, get_settings
from himaya.core.logging import get_logger
from himaya.database.models import Base

logger = get_logger(__name__)


def create_db_engine(settings: Optional[Settings] = None) -> Engine:
    """Create the SQLAlchemy engine for the configured database"""
    settings = settings or get_settings()
    connect_args = {}
    if settings.DATABASE_URL.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine: Engine) -> None:
    """Create all tables known to the metadata"""
    # Security models register themselves on import
    import himaya.security.models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables created")


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope for background jobs"""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
