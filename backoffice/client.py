# backoffice/client.py
"""
Python client for the back-office HTTP API.

``SessionStore`` keeps what a dashboard session needs between runs (the
client-generated user id, the admin token, the last price map) behind typed
accessors. ``BackofficeClient`` wraps every endpoint and raises ``ApiError``
for ``{ok: false}`` replies.
"""
from __future__ import annotations

import json
import logging
import random
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import httpx

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def generate_user_id() -> str:
    """``U`` + 4 digits. Not globally unique."""
    return f"U{random.randint(1000, 9999)}"


class SessionStore:
    """Client-side session state, optionally persisted to a JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._data: Dict[str, Any] = {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SessionStore":
        store = cls(path)
        if store.path and store.path.exists():
            store._data = json.loads(store.path.read_text(encoding="utf-8") or "{}")
        if not store._data.get("user_id"):
            store._data["user_id"] = generate_user_id()
            store.save()
        return store

    def save(self) -> None:
        if self.path:
            self.path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")

    @property
    def user_id(self) -> str:
        return self._data["user_id"]

    @property
    def admin_token(self) -> Optional[str]:
        return self._data.get("admin_token")

    @admin_token.setter
    def admin_token(self, token: Optional[str]) -> None:
        if token:
            self._data["admin_token"] = token
        else:
            self._data.pop("admin_token", None)
        self.save()

    @property
    def admin_id(self) -> Optional[str]:
        return self._data.get("admin_id")

    @admin_id.setter
    def admin_id(self, admin_id: Optional[str]) -> None:
        self._data["admin_id"] = admin_id
        self.save()

    @property
    def prices(self) -> Dict[str, float]:
        return dict(self._data.get("prices") or {})

    def update_prices(self, prices: Dict[str, Optional[float]]) -> None:
        merged = self.prices
        merged.update({k: v for k, v in prices.items() if v is not None})
        self._data["prices"] = merged

    def price_for(self, coin: str) -> Optional[float]:
        sym = (coin or "").upper()
        if sym and not sym.endswith("USDT"):
            sym += "USDT"
        return self.prices.get(sym)


class BackofficeClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        store: Optional[SessionStore] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.store = store or SessionStore.load()
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)

    # ---- plumbing ----

    def _headers(self) -> Dict[str, str]:
        token = self.store.admin_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _reply(self, resp: httpx.Response) -> dict:
        try:
            body = resp.json()
        except ValueError:
            raise ApiError(f"Non-JSON reply ({resp.status_code})", resp.status_code)
        if resp.status_code >= 400 or body.get("ok") is False:
            raise ApiError(body.get("error") or f"HTTP {resp.status_code}", resp.status_code)
        return body

    def _get(self, path: str, **params) -> dict:
        params = {k: v for k, v in params.items() if v is not None}
        return self._reply(self.http.get(path, params=params, headers=self._headers()))

    def _post(self, path: str, payload: dict) -> dict:
        return self._reply(self.http.post(path, json=payload, headers=self._headers()))

    # ---- users / balance ----

    def sync_user(self) -> dict:
        return self._post("/api/users/sync", {"userid": self.store.user_id})["user"]

    def balance(self, user_id: Optional[str] = None) -> float:
        return float(self._get("/api/balance", userid=user_id or self.store.user_id)["balance"])

    def set_balance(self, user_id: str, value: float) -> float:
        return float(self._post("/set-balance", {"userid": user_id, "balance": value})["balance"])

    def adjust_balance(self, user_id: str, delta: float) -> float:
        return float(self._post("/api/balance/adjust", {"userid": user_id, "delta": delta})["balance"])

    # ---- orders ----

    def submit_order(self, order_type: str, amount: float, coin: Optional[str] = None,
                     wallet: Optional[str] = None, side: Optional[str] = None) -> str:
        payload = {"userId": self.store.user_id, "amount": amount, "coin": coin, "wallet": wallet, "side": side}
        return self._post(f"/api/order/{order_type}", {k: v for k, v in payload.items() if v is not None})["orderId"]

    def list_orders(self, order_type: str, status: Optional[str] = None, user_id: Optional[str] = None) -> list:
        """Admins see every user's orders; otherwise the stored user's own."""
        if user_id is None and not self.store.admin_token:
            user_id = self.store.user_id
        return self._get(f"/api/order/{order_type}/list", status=status, userid=user_id)["orders"]

    def transactions(self, fetch_order: Optional[str] = None, status: Optional[str] = None) -> dict:
        return self._get("/api/transactions", fetchOrder=fetch_order, status=status)

    def update_transaction(self, order_type: str, order_id: str, status: str, note: Optional[str] = None) -> dict:
        payload = {"type": order_type, "orderId": order_id, "status": status}
        if note is not None:
            payload["note"] = note
        return self._post("/api/transaction/update", payload)["order"]

    # ---- admin directory ----

    def login(self, admin_id: str, password: str) -> str:
        token = self._post("/api/admin/login", {"id": admin_id, "password": password})["token"]
        self.store.admin_token = token
        self.store.admin_id = admin_id
        return token

    def logout(self) -> None:
        try:
            self._post("/api/admin/logout", {})
        finally:
            self.store.admin_token = None

    def list_admins(self) -> dict:
        return self._get("/api/admin/list")["admins"]

    def create_admin(self, admin_id: str, password: str, recharge: bool = False,
                     withdraw: bool = False, buy_sell: bool = False, is_super: bool = False) -> dict:
        payload = {
            "id": admin_id,
            "password": password,
            "permissions": {"recharge": recharge, "withdraw": withdraw, "buySell": buy_sell},
            "isSuper": is_super,
        }
        return self._post("/api/admin/create", payload)["admin"]

    def delete_admin(self, admin_id: str) -> None:
        self._post("/api/admin/delete", {"id": admin_id})

    # ---- prices ----

    def refresh_prices(self) -> Dict[str, float]:
        self.store.update_prices(self._get("/api/prices")["prices"])
        return self.store.prices

    # ---- push channel ----

    def iter_order_events(
        self,
        retry_delay_s: float = 3.0,
        max_retries: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[dict]:
        """
        Yield order events from the SSE stream, reconnecting after a fixed
        delay on network errors. ``max_retries`` bounds consecutive failed
        connects (None retries forever). Close the generator to stop.
        """
        failures = 0
        while True:
            try:
                with self.http.stream("GET", "/api/orders/stream", timeout=None) as resp:
                    resp.raise_for_status()
                    failures = 0
                    for event in parse_sse(resp.iter_lines()):
                        yield event
            except httpx.HTTPError as e:
                failures += 1
                if max_retries is not None and failures > max_retries:
                    raise ApiError(f"order stream unavailable: {e}")
                logger.warning("order stream dropped (%s), retry %d in %.1fs", e, failures, retry_delay_s)
            sleep(retry_delay_s)


def parse_sse(lines) -> Iterator[dict]:
    """Decode ``data:`` frames into dicts; comments and ``retry:`` hints are skipped."""
    buf = []
    for line in lines:
        if line == "":
            if buf:
                try:
                    yield json.loads("\n".join(buf))
                except ValueError:
                    logger.debug("skipping malformed event: %r", buf)
                buf = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buf.append(value[1:] if value.startswith(" ") else value)
