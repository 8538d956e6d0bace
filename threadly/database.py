import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

# Bound to an engine by init_engine() at startup
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def init_engine(database_url: str, echo: bool = False) -> Engine:
    global _engine
    _engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
    SessionLocal.configure(bind=_engine)
    Base.metadata.create_all(bind=_engine)
    logger.info("Database engine initialised (%s)", _engine.url.render_as_string(hide_password=True))
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
