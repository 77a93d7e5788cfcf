"""Session Inspector FastAPI backend: application factory and entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from inspector import config
from inspector.corpus import DangerIndex, SessionCorpus
from inspector.danger_rules import RuleConfigError, load_rule_set, seed_user_rules
from inspector.events import EventBroker
from inspector.file_watcher import FileWatcher
from inspector.observability import initialize as initialize_observability, shutdown as shutdown_observability
from inspector.progress import ProgressStore
from inspector.routers.api import danger_router, sessions_router
from inspector.routers.events import events_router
from inspector.routers.progress import progress_router
from inspector.session_sync import SessionSync

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("inspector")


def create_app(
    sessions_dir: Optional[Path] = None,
    data_dir: Optional[Path] = None,
    rules_path: Optional[Path] = None,
    csv_path: Optional[Path] = None,
    static_dir: Optional[Path] = None,
    watch: Optional[bool] = None,
) -> FastAPI:
    sessions_dir = sessions_dir or config.SESSIONS_DIR
    data_dir = data_dir or config.DATA_DIR
    static_dir = static_dir or config.STATIC_DIR
    watch = config.WATCH_ENABLED if watch is None else watch

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle."""
        logger.info("Session inspector starting up")
        initialize_observability(app)

        # 1. Writable data dir
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Cannot create data dir {data_dir}: {exc}. Set INSPECTOR_DATA_DIR to a writable path.")
            raise

        # 2. Rule set; a scanner without rules would report every session as safe
        seed_user_rules(data_dir)
        try:
            rule_set = load_rule_set(rules_path, data_dir=data_dir)
        except RuleConfigError as exc:
            logger.error(f"Danger rules unavailable: {exc}")
            raise

        # 3. Corpus, caches, progress
        corpus = SessionCorpus(sessions_dir)
        danger_index = DangerIndex(corpus, rule_set)
        progress_store = ProgressStore(
            data_dir / config.PROGRESS_FILENAME,
            debounce_seconds=config.PROGRESS_SAVE_DEBOUNCE_MS / 1000,
        )
        progress_store.load()
        progress_store.attach_loop(asyncio.get_running_loop())
        broker = EventBroker(queue_size=config.EVENT_QUEUE_SIZE)
        session_sync = SessionSync(corpus, danger_index, progress_store, broker)
        session_sync.reconcile_all()

        app.state.rule_set = rule_set
        app.state.corpus = corpus
        app.state.danger_index = danger_index
        app.state.progress_store = progress_store
        app.state.broker = broker
        app.state.session_sync = session_sync
        app.state.csv_path = csv_path or config.CSV_PATH
        app.state.max_progress_body_bytes = config.MAX_PROGRESS_BODY_BYTES

        # 4. File watcher
        watcher = FileWatcher(session_sync, sessions_dir, debounce_ms=config.WATCH_DEBOUNCE_MS)
        app.state.watcher = watcher
        if watch:
            await watcher.start()

        logger.info(f"Sessions: {sessions_dir}")
        logger.info(f"Data: {data_dir}")

        yield

        logger.info("Session inspector shutting down")
        await watcher.stop()
        await progress_store.aclose()
        shutdown_observability(app)

    app = FastAPI(
        title="Session Inspector API",
        description="Read-only viewer backend for agent session transcripts",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: local origins only
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)
    app.include_router(danger_router)
    app.include_router(progress_router)
    app.include_router(events_router)

    @app.get("/api/health")
    def health():
        """Health check endpoint."""
        rule_set = getattr(app.state, "rule_set", None)
        watcher = getattr(app.state, "watcher", None)
        return {
            "status": "ok",
            "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
            "rules": len(rule_set) if rule_set is not None else 0,
        }

    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
