"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from activity_sync.config import get_settings

_engine = None


def import_models() -> None:
    """Import all models so metadata is populated before create_all."""
    from activity_sync.models.activity import (  # noqa
        Game, GameAchievement, GameSession, GitHubContribution, MediaWatch, PlaytimeSnapshot,
    )
    from activity_sync.models.credential import Credential  # noqa
    from activity_sync.models.sync import SyncJob, SyncJobLog, SyncLock  # noqa


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            # Workers share the engine across threads
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        import_models()
        SQLModel.metadata.create_all(_engine)
    return _engine


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
