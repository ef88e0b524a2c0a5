from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings

# Execution option marking a transaction that will write
WRITE_OPTION = "sqlite_immediate"


def create_db_engine(url: str) -> Engine:
    """
    Create an engine with scheduling-safe transaction settings.

    SQLite: foreign keys on, WAL journal for file databases so readers never
    wait on the writer. Reads start with a deferred BEGIN; transactions
    opened through write_transaction() start with BEGIN IMMEDIATE so a
    check-then-insert holds the write lock for its whole duration.
    Other backends rely on SELECT ... FOR UPDATE in the services.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    # check_same_thread=False: sessions are used from worker threads
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    file_backed = engine.url.database not in (None, "", ":memory:")

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if file_backed:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


@contextmanager
def write_transaction(db: Session):
    """
    Run the block in a write transaction; roll back if it raises.

    On SQLite the transaction starts with BEGIN IMMEDIATE. A read
    transaction already open on the session is committed first, since
    SQLite cannot upgrade it without risking SQLITE_BUSY. The block is
    responsible for its own commit.
    """
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={WRITE_OPTION: True})
    try:
        yield db
    except Exception:
        db.rollback()
        raise


engine = create_db_engine(settings.resolved_database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all scheduling tables (idempotent)."""
    from .models import Base

    bind = bind or engine
    if bind.url.drivername.startswith("sqlite") and bind.url.database:
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=bind)
