import logging
from collections.abc import Iterator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Owns the engine and session factory for the inventory store.

    Opened once at startup and disposed at shutdown; components receive it
    explicitly instead of reaching for a module-level engine.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    def create_all(self) -> None:
        from . import models  # noqa: F401  registers the tables on Base

        Base.metadata.create_all(bind=self.engine)
        logger.info("Inventory tables ready on %s", self.engine.url.render_as_string(hide_password=True))

    def session(self) -> Session:
        return self.SessionLocal()

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database connections released.")


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(request: Request) -> Iterator[Session]:
    db = get_database(request).session()
    try:
        yield db
    finally:
        db.close()
