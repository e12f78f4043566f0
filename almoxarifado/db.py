from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from almoxarifado.settings import load_settings


def build_engine(database_url: str) -> Engine:
    connect_args: dict = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}

    if connect_args:
        return create_engine(
            database_url,
            connect_args=connect_args,
            pool_pre_ping=True,
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
    )


DATABASE_URL = load_settings().database_url

engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_session() -> Session:
    return SessionLocal()


def init_db(bind: Engine | None = None) -> None:
    # models must be imported so their tables are registered on Base.metadata
    import almoxarifado.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit every write made inside the block, or none of them."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
