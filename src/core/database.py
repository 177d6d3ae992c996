from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from core.config import settings

SessionFactory = Callable[[], Session]


def normalize_url(url: str | None) -> str:
    """postgresql:// -> postgresql+psycopg:// so SQLAlchemy picks psycopg 3."""
    url = url or ""
    if url.startswith("postgresql://") and "psycopg" not in url:
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


_db_url = normalize_url(settings.DATABASE_URL)

if _db_url:
    engine = create_engine(
        _db_url,
        pool_size=10,
        max_overflow=20,
    )
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
else:
    engine = None  # type: ignore[assignment]
    SessionLocal = None  # type: ignore[assignment]


def default_session_factory() -> SessionFactory:
    if engine is None or SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not set. Set it in .env or environment.")
    return SessionLocal


@contextmanager
def db_session(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Transaction scope: commit on success, rollback on any exception."""
    db = (factory or default_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


