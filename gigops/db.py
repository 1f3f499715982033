from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy import create_engine, event
from .config import settings
from .errors import ValidationError, WriteConflict


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
    pool_recycle=3600,  # Recycle connections after 1 hour
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
)


def enable_sqlite_foreign_keys(target_engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""
    if target_engine.dialect.name != "sqlite":
        return

    @event.listens_for(target_engine, "connect")
    def _fk_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Run a block of writes as one transaction.

    Commits when the block exits cleanly; on any exception everything the
    block flushed is rolled back and the exception propagates. A row that
    vanished or changed version under us surfaces as WriteConflict, a unique or foreign
    key violation as ValidationError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise WriteConflict("Gig was modified concurrently; reload and retry") from e
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Duplicate or dangling reference") from e
    except Exception:
        db.rollback()
        raise
