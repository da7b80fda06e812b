# main.py
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Env & logging (before local modules read their settings)
# ---------------------------------------------------------------------------

load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env", override=False)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("backoffice")

from fastapi import Depends, FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from . import admins  # noqa: E402
from .db import SessionLocal, init_db  # noqa: E402
from .deps import get_price_feed  # noqa: E402
from .errors import install_handlers  # noqa: E402
from .events import EventBroadcaster  # noqa: E402
from .price_feed import PriceFeed, normalize_symbol  # noqa: E402
from .routes_admin import router as admin_router  # noqa: E402
from .routes_orders import router as orders_router  # noqa: E402
from .routes_users import router as users_router  # noqa: E402


def _truthy(name: str, default: str = "") -> bool:
    v = os.getenv(name, default)
    return v not in ("", "0", "false", "False", "no", "No")


PRICE_FEED_ENABLED = _truthy("PRICE_FEED_ENABLED", "1")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    with SessionLocal() as db:
        admins.bootstrap_super_admin(db)
    if PRICE_FEED_ENABLED:
        app.state.price_feed.start()
    logger.info("backoffice started (price_feed=%s)", PRICE_FEED_ENABLED)
    try:
        yield
    finally:
        await app.state.price_feed.stop()
        logger.info("backoffice stopped")


app = FastAPI(
    title="Nexbit Back-office API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url=None,
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.state.broadcaster = EventBroadcaster(
    queue_size=int(os.getenv("STREAM_QUEUE_SIZE", "100")),
    heartbeat_s=float(os.getenv("STREAM_HEARTBEAT_S", "15")),
)
app.state.price_feed = PriceFeed()

install_handlers(app)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials="*" not in origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)
app.include_router(orders_router)
app.include_router(users_router)

# ---------------------------------------------------------------------------
# Health, prices
# ---------------------------------------------------------------------------

@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"ok": True}


@app.get("/api/prices")
def prices(feed: PriceFeed = Depends(get_price_feed)):
    return {"ok": True, "prices": feed.snapshot(), "live": feed.running}


@app.get("/api/prices/{symbol}")
def price_for(symbol: str, feed: PriceFeed = Depends(get_price_feed)):
    return {"ok": True, "symbol": normalize_symbol(symbol), "price": feed.price_for(symbol)}
