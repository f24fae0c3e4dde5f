from pathlib import Path
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from fixtral.core.config import settings
from fixtral.db.base import Base


def _sanitize_db_url(url: str) -> str:
    """Remove any `sslmode` query param which async drivers do not accept as a keyword arg."""
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        qs = parse_qsl(parts.query, keep_blank_values=True)
        filtered = [(k, v) for (k, v) in qs if k.lower() != "sslmode"]
        new_query = urlencode(filtered)
        if new_query == parts.query:
            return url
        return urlunsplit((parts.scheme, parts.netloc, parts.path, new_query, parts.fragment))
    except ValueError:
        # Let SQLAlchemy raise a clear error for malformed URLs.
        return url


def _ensure_sqlite_dir(url: str) -> None:
    prefix = "sqlite+aiosqlite:///"
    if url.startswith(prefix) and ":memory:" not in url:
        Path(url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


def get_engine(url: str | None = None) -> AsyncEngine:
    """Create the engine for the embedded history store (no side effects on import)."""
    db_url = _sanitize_db_url(url or settings.database_url)
    _ensure_sqlite_dir(db_url)
    return create_async_engine(db_url, echo=False)


def get_sessionmaker(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    if engine is None:
        engine = get_engine()
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Import models so they register on the metadata.
    import fixtral.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
