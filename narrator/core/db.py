from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from narrator.core.config import settings

if settings.DATABASE_URL.startswith("sqlite"):
    # In-memory SQLite is per connection; share one across threads so the
    # API loop and test code see the same capture history.
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

# Records are handed out after commit, so keep their attributes loaded.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
