from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session
from .settings import settings

# Session.info flag read by the repository: inside a transaction() block writes are
# flushed and the block commits once on exit.
ATOMIC_KEY = "atomic"


def enable_sqlite_pragmas(engine: Engine) -> None:
    """Turn on WAL + foreign keys for every new SQLite connection.

    Foreign keys are off by default in SQLite, and ON DELETE CASCADE depends on them.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=20000")  # 20 second timeout
        cursor.close()


def create_db_engine(url: str, echo: bool = False) -> Engine:
    if url.startswith("sqlite"):
        db_engine = create_engine(
            url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": 20.0,  # Wait up to 20 seconds for lock to be released
            },
            pool_pre_ping=True,
        )
        enable_sqlite_pragmas(db_engine)
        return db_engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


engine = create_db_engine(settings.DATABASE_URL)


def init_db(db_engine: Optional[Engine] = None):
    SQLModel.metadata.create_all(db_engine or engine)


def get_session():
    with Session(engine) as session:
        yield session


@contextmanager
def transaction(
    db_engine: Optional[Engine] = None, isolation_level: Optional[str] = None
) -> Iterator[Session]:
    """Run several repository calls as one atomic unit.

    Commits when the block exits cleanly, rolls everything back on any exception.
    """
    bind = db_engine or engine
    if isolation_level:
        bind = bind.execution_options(isolation_level=isolation_level)
    with Session(bind) as session:
        session.info[ATOMIC_KEY] = True
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
