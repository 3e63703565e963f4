from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stakeapi.config import settings


def _engine_kwargs() -> dict:
    if settings.is_sqlite:
        return {
            "echo": settings.DEBUG,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,  # connection liveness check
        "pool_recycle": 3600,
        "echo": settings.DEBUG,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs())

# expire_on_commit=False keeps loaded attributes usable after commit within the
# same request scope.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)
