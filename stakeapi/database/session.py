from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from stakeapi.database.connection import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        if db.in_transaction():
            db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_context():
    """Session scope for scripts and background sweeps."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a unit of work on an existing session.

    Everything flushed inside the block is committed together, or rolled back
    together when any exception escapes. Row locks taken inside the block are
    released at commit/rollback.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
