from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase

from .config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all local tables if they do not exist yet.

    Alembic owns schema evolution; this only bootstraps a fresh replica.
    """
    from budgetbook import models  # noqa: F401 - register tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)


def clear_database(db: Session) -> None:
    """Remove every row from the local replica, sync bookkeeping included.

    Used on sign-out and before a fresh sign-in so one account's offline
    data never mixes with another account's remote data.
    """
    from budgetbook import models

    for model in (
        models.Transaction,
        models.Budget,
        models.Month,
        models.Bond,
        models.DeletedRecord,
        models.SyncState,
    ):
        db.query(model).delete(synchronize_session=False)
    db.commit()


# SQLite 안정성 설정: WAL 모드 (부모 참조는 논리 키이므로 FK pragma 불필요)
if settings.DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()
