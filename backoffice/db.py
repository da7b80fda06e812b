
# backoffice/db.py
import os
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

# -----------------------------------------------------------------------------
# Build & normalize DATABASE_URL
#   - Accepts postgres:// or postgresql://; converts to postgresql+psycopg://
#   - Appends ?sslmode=require for non-local connections if not present
# -----------------------------------------------------------------------------

def _normalize_db_url(raw: Optional[str]) -> str:
    db_url = (raw or "").strip()

    if not db_url:
        # Local dev fallback
        return "sqlite:///./app.db"

    db_url = db_url.replace("postgres://", "postgresql://", 1)

    if db_url.startswith("postgresql://") and "+psycopg" not in db_url and "+psycopg2" not in db_url:
        db_url = db_url.replace("postgresql://", "postgresql+psycopg://", 1)

    # Hosted providers (Railway/Render/Neon/etc.) require SSL.
    if db_url.startswith("postgresql") and "localhost" not in db_url \
            and "127.0.0.1" not in db_url and "sslmode=" not in db_url:
        db_url += ("&" if "?" in db_url else "?") + "sslmode=require"

    return db_url


def _engine_kwargs(url: str) -> dict:
    kw = dict(pool_pre_ping=True, future=True)
    if url.startswith("sqlite"):
        kw["connect_args"] = {"check_same_thread": False}  # needed for SQLite + threadpool
    return kw


DATABASE_URL = _normalize_db_url(os.getenv("DATABASE_URL"))

# -----------------------------------------------------------------------------
# SQLAlchemy setup
# -----------------------------------------------------------------------------

engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session and ensures close."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create tables if they don't exist yet."""
    from . import models  # noqa: F401  (register tables on Base.metadata)
    Base.metadata.create_all(bind=bind or engine)
