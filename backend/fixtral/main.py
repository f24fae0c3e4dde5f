import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from fixtral.api.credits import router as credits_router
from fixtral.api.edit import router as edit_router
from fixtral.api.gemini import router as gemini_router
from fixtral.api.history import router as history_router
from fixtral.api.reddit import router as reddit_router
from fixtral.core.config import settings
from fixtral.core.errors import CreditConflict, QuotaExceeded, TotalPersistenceFailure
from fixtral.db.session import create_tables, get_engine, get_sessionmaker
from fixtral.services.credits import build_ledger
from fixtral.services.gemini import GeminiService
from fixtral.services.history import build_history_cascade
from fixtral.services.posts import PostArchive
from fixtral.services.reddit import RedditClient
from fixtral.storage.keyvalue import JsonFileStore
from fixtral.storage.supabase import SupabaseClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    await create_tables(engine)

    local = JsonFileStore(settings.local_store_dir)
    remote = None
    if settings.supabase_configured:
        remote = SupabaseClient(
            settings.supabase_url,
            settings.supabase_service_role_key,
            timeout=settings.supabase_timeout_seconds,
        )
    else:
        logger.warning("Supabase is not configured; history and credits stay on this server")

    app.state.ledger = build_ledger(local, remote)
    app.state.history = build_history_cascade(get_sessionmaker(engine), local, remote, settings.download_dir)
    app.state.posts = PostArchive(local, remote)
    app.state.reddit = RedditClient()
    app.state.gemini = GeminiService()
    try:
        yield
    finally:
        if remote is not None:
            await remote.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Fixtral API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded(_request: Request, exc: QuotaExceeded):
        return JSONResponse(status_code=429, content={"ok": False, "error": str(exc), "quota": exc.quota})

    @app.exception_handler(CreditConflict)
    async def credit_conflict(_request: Request, exc: CreditConflict):
        return JSONResponse(status_code=409, content={"ok": False, "error": str(exc)})

    @app.exception_handler(TotalPersistenceFailure)
    async def persistence_failure(_request: Request, exc: TotalPersistenceFailure):
        logger.error("%s", exc)
        return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})

    app.include_router(reddit_router)
    app.include_router(gemini_router)
    app.include_router(edit_router)
    app.include_router(credits_router)
    app.include_router(history_router)

    downloads = Path(settings.download_dir)
    downloads.mkdir(parents=True, exist_ok=True)
    app.mount("/downloads", StaticFiles(directory=downloads), name="downloads")

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
