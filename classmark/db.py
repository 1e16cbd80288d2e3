"""Database engine and session helpers."""

from collections.abc import Generator

from sqlmodel import Session, SQLModel, create_engine

from classmark.settings import settings


def _make_engine():
    settings.data_path.mkdir(parents=True, exist_ok=True)
    return create_engine(settings.sqlite_url, connect_args={"check_same_thread": False})


engine = _make_engine()


def create_db_and_tables() -> None:
    """Create all SQLModel tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for request-scoped dependency injection."""
    with Session(engine) as session:
        yield session


def new_session() -> Session:
    """Open a session outside of a request, e.g. for background grading runs."""
    return Session(engine)
