# =============================================
#  SELLER ORDERS REVIEW MANAGER - ENTRYPOINT
# =============================================

import asyncio
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from routes import (
    register_error_handlers,
    register_orders_routes,
    register_review_template_routes,
    register_spapi_routes,
)
from services.app_services import build_services
from services.perf import get_recent_timings, get_timing_summary

# --- Logging configuration ---
LOG_DIR = Path(__file__).parent / "logs"
LOG_DIR.mkdir(exist_ok=True)

LOG_FILE_PATH = LOG_DIR / "orders_backend.log"

root_logger = logging.getLogger()
logger = root_logger
if not root_logger.handlers:
    root_logger.setLevel(config.LOG_LEVEL)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5_000_000,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

logging.getLogger("uvicorn").propagate = True
logging.getLogger("uvicorn.error").propagate = True
logging.getLogger("uvicorn.access").propagate = True
# --- End logging configuration ---

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

register_error_handlers(app)
register_orders_routes(app)
register_review_template_routes(app)
register_spapi_routes(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Build the service container and start the cache cleanup loop."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services
    try:
        await asyncio.to_thread(services.store.ensure_schema)
    except Exception as exc:
        logger.warning(f"[Startup] Failed to ensure orders schema: {exc}")

    interval = config.ORDERS_CACHE_CLEANUP_MINUTES * 60
    app.state.cache_cleanup_task = None
    if interval > 0:
        app.state.cache_cleanup_task = asyncio.create_task(services.cache.cleanup_loop(interval))
    logger.info("[Startup] Services initialized (mock=%s)", services.client.use_mock)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background jobs and persist the in-memory cache."""
    services = getattr(app.state, "services", None)
    task = getattr(app.state, "cache_cleanup_task", None)
    if task is not None:
        task.cancel()
    if services is None:
        return
    try:
        await services.jobs.shutdown()
        await services.cache.flush()
    except Exception as exc:
        logger.warning(f"[Shutdown] Failed to stop order services cleanly: {exc}")


@app.get("/api/ping")
def ping() -> JSONResponse:
    ts = datetime.now(timezone.utc).isoformat()
    logger.info("[PING] ping called")
    return JSONResponse({"ok": True, "ts": ts})


@app.get("/api/perf")
def perf() -> JSONResponse:
    return JSONResponse({"summary": get_timing_summary(), "recent": get_recent_timings()[-50:]})


if __name__ == "__main__":
    port = 8001
    if "--port" in sys.argv:
        try:
            port = int(sys.argv[sys.argv.index("--port") + 1])
        except (IndexError, ValueError):
            print("Usage: python main.py [--port <PORT>]")
            sys.exit(1)
    uvicorn.run("main:app", host="127.0.0.1", port=port, reload=True)
