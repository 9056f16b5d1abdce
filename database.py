import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import ConflictError, LedgerError, StorageError

logger = logging.getLogger(__name__)


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


REQUIRED_TABLES = ("users", "accounts", "categories", "transactions", "assets")


def init_schema(bind: Engine) -> None:
    """Create any missing tables. Safe to call on every start."""
    import models  # noqa: F401  registers the mapped tables on Base.metadata

    Base.metadata.create_all(bind)
    logger.info(f"schema_init: url={bind.url.render_as_string(hide_password=True)}")


def schema_ready(bind: Engine) -> bool:
    try:
        existing = set(inspect(bind).get_table_names())
    except SQLAlchemyError:
        logger.exception("schema_check_failed")
        return False
    return all(name in existing for name in REQUIRED_TABLES)


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """All-or-nothing unit of work on an existing session.

    Commits when the block finishes, rolls back on any exception. Domain errors
    propagate unchanged; constraint violations become ConflictError and other
    database errors StorageError.
    """
    try:
        yield session
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Record conflicts with existing data") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(f"Storage operation failed: {exc}") from exc
    except Exception:
        session.rollback()
        raise
