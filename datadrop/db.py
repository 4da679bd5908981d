from collections.abc import Iterator

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from datadrop.config import DB_CONNECT_ARGS, DB_URL

engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,
    echo=False,
)


def init_db() -> None:
    # Import registers the tables on SQLModel.metadata
    from datadrop import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def ensure_connection() -> bool:
    """
    Verify that the database connection is alive.
    This is useful for long-running processes that might encounter stale connections.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
