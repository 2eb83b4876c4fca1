from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config, models
from .errors import OrderServiceError, StorageError
from .logs import get_logger

logger = get_logger("db")


def make_engine(url: str = config.DATABASE_URL) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False, "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    # pysqlite opens transactions lazily and breaks SAVEPOINT; take over BEGIN ourselves
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    # IMMEDIATE: writers queue at BEGIN and read committed state, never fail on lock upgrade
    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = engine) -> None:
    models.Base.metadata.create_all(bind=bind)


@contextmanager
def transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """One atomic unit of work.

    Commits when the block exits cleanly and rolls back otherwise. Domain
    errors propagate unchanged; database errors are logged and re-raised as
    StorageError.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except OrderServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Storage failure, transaction rolled back")
        raise StorageError(str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def read_session(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    except SQLAlchemyError as exc:
        logger.exception("Storage failure while reading")
        raise StorageError(str(exc)) from exc
    finally:
        session.close()
