from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


settings = get_settings()

engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


SessionFactory = Callable[[], Generator[Session, None, None]]


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Iterator[Session]:
    """Session outside a request; ``factory`` is usually ``get_db`` or its override."""
    generator = (factory or get_db)()
    session = next(generator)
    try:
        yield session
    finally:
        generator.close()
