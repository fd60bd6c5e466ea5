# inventory_core/db/session.py
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from inventory_core.core.config import settings


def _enable_sqlite_write_locking(eng: Engine) -> None:
    """
    pysqlite opens transactions lazily and only on DML, so two sessions can
    both read a batch before either writes it. Take over BEGIN ourselves and
    make it IMMEDIATE: writers serialize for the whole read-plan-write sequence.
    """

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(db_url: Optional[str] = None, *, echo: Optional[bool] = None) -> Engine:
    url = db_url or settings.DATABASE_URL
    echo = settings.SQL_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        eng = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={
                "check_same_thread": False,
                "timeout": 30,
            },
        )
        _enable_sqlite_write_locking(eng)
        return eng

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        future=True,
    )


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=eng,
        future=True,
    )


engine: Engine = make_engine()

SessionLocal = make_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(eng: Optional[Engine] = None) -> None:
    from inventory_core.db.base import Base

    Base.metadata.create_all(bind=eng or engine)
