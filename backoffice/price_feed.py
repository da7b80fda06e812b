# backoffice/price_feed.py
"""
Binance trade-price mirror for display-only estimates.

One combined-stream websocket for a fixed symbol set. On any disconnect the
task sleeps a fixed delay (plus optional jitter) and reconnects, forever,
until stopped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from typing import Dict, Iterable, Optional

import websockets

logger = logging.getLogger(__name__)

BINANCE_WS_BASE = os.getenv("BINANCE_WS_BASE", "wss://stream.binance.com:9443").rstrip("/")
DEFAULT_SYMBOLS = ("BTCUSDT", "ETHUSDT", "LTCUSDT", "BCHUSDT", "XRPUSDT")
QUOTE_ASSET = "USDT"
RETRY_DELAY_S = float(os.getenv("PRICE_FEED_RETRY_S", "3"))
JITTER_S = float(os.getenv("PRICE_FEED_JITTER_S", "0"))


def _env_symbols() -> tuple:
    raw = os.getenv("PRICE_SYMBOLS", "")
    syms = [s.strip().upper() for s in raw.split(",") if s.strip()]
    return tuple(syms) or DEFAULT_SYMBOLS


def normalize_symbol(symbol: Optional[str]) -> str:
    """``btc``, ``BTC-USDT`` and ``BTCUSDT`` all map to ``BTCUSDT``."""
    s = (symbol or "").upper().replace("-", "").replace("/", "").replace("_", "").strip()
    if s and not s.endswith(QUOTE_ASSET):
        s += QUOTE_ASSET
    return s


class PriceFeed:
    _sleep = staticmethod(asyncio.sleep)

    def __init__(
        self,
        symbols: Optional[Iterable[str]] = None,
        retry_delay_s: float = RETRY_DELAY_S,
        jitter_s: float = JITTER_S,
        base_url: str = BINANCE_WS_BASE,
    ):
        self.symbols = tuple(normalize_symbol(s) for s in (symbols or _env_symbols()))
        self.retry_delay_s = retry_delay_s
        self.jitter_s = jitter_s
        self.base_url = base_url
        self._prices: Dict[str, float] = {}
        self._updated_ms: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self.connects = 0

    @property
    def url(self) -> str:
        streams = "/".join(f"{s.lower()}@trade" for s in self.symbols)
        return f"{self.base_url}/stream?streams={streams}"

    # ---- lookup ----

    def price_for(self, symbol: str) -> Optional[float]:
        """Latest trade price, or None while unavailable."""
        return self._prices.get(normalize_symbol(symbol))

    def snapshot(self) -> Dict[str, Optional[float]]:
        return {s: self._prices.get(s) for s in self.symbols}

    def updated_ms(self, symbol: str) -> Optional[int]:
        return self._updated_ms.get(normalize_symbol(symbol))

    # ---- stream handling ----

    def handle_message(self, raw) -> Optional[str]:
        """Apply one stream message; returns the updated symbol, if any."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(msg, dict):
            return None
        data = msg.get("data", msg)
        if not isinstance(data, dict):
            return None
        sym = str(data.get("s") or "").upper()
        if sym not in self.symbols:
            return None
        try:
            px = float(data.get("p") or data.get("price") or data.get("c") or 0)
        except (TypeError, ValueError):
            return None
        if px <= 0:
            return None
        self._prices[sym] = px
        self._updated_ms[sym] = int(time.time() * 1000)
        return sym

    def _next_delay(self) -> float:
        return self.retry_delay_s + (random.uniform(0, self.jitter_s) if self.jitter_s > 0 else 0.0)

    async def run(self) -> None:
        while True:
            try:
                self.connects += 1
                logger.info("[price] connect attempt=%d url=%s", self.connects, self.url)
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    logger.info("[price] connected symbols=%s", ",".join(self.symbols))
                    async for raw in ws:
                        self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[price] disconnected err=%s", e)
            delay = self._next_delay()
            logger.info("[price] reconnecting in %.1fs", delay)
            await self._sleep(delay)

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run(), name="price-feed")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[price] stopped")
