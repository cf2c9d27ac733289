"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from crosspost.models import Base
from crosspost.core.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sync endpoints run in FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables (Alembic owns schema changes in production)"""
    Base.metadata.create_all(bind=engine)
