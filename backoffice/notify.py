# backoffice/notify.py
import html
import logging
import os
from typing import List, Tuple

import requests

from .models import Order

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_TIMEOUT_S = float(os.getenv("TELEGRAM_TIMEOUT_S", "10"))

_ENV_PREFIX = {"recharge": "RECHARGE", "withdraw": "WITHDRAW", "buysell": "TRADE"}

_TITLES = {
    "recharge": "🔔 <b>Recharge request</b>",
    "withdraw": "💸 <b>Withdraw request</b>",
    "buysell": "📘 <b>Trade request</b>",
}


def route_for(order_type: str) -> Tuple[str, List[str]]:
    """
    Bot token and chat ids for an order type.

    ``<PREFIX>_BOT_TOKEN`` / ``<PREFIX>_GROUP_CHAT_ID`` / ``<PREFIX>_USER_CHAT_ID``
    per type, falling back to the shared ``BOT_TOKEN`` / ``GROUP_ID``.
    """
    prefix = _ENV_PREFIX.get(order_type, "")
    token = os.getenv(f"{prefix}_BOT_TOKEN") or os.getenv("BOT_TOKEN", "")
    chats = [
        os.getenv(f"{prefix}_GROUP_CHAT_ID", ""),
        os.getenv(f"{prefix}_USER_CHAT_ID", ""),
    ]
    chats = [c for c in chats if c] or [c for c in [os.getenv("GROUP_ID", "")] if c]
    return token, chats


def format_order(order: Order) -> str:
    """HTML message body; every client-supplied value is escaped."""
    esc = html.escape
    amount = " ".join(p for p in (f"{order.amount:g}", order.coin) if p)
    lines = [
        _TITLES.get(order.type, "🧾 <b>New order</b>"),
        f"User: <b>{esc(order.user_id)}</b>",
        f"Amount: <b>{esc(amount)}</b>",
        f"Order: <b>{esc(order.order_id)}</b>",
    ]
    if order.side:
        lines.insert(1, f"Side: <b>{esc(order.side)}</b>")
    if order.wallet:
        lines.append(f"Wallet: {esc(order.wallet)}")
    return "\n".join(lines)


def send_order_notification(order: Order, session=None) -> int:
    """
    Post the order to its Telegram chats. Returns the number of chats reached.
    Runs as a background task, so failures are logged and swallowed.
    """
    token, chats = route_for(order.type)
    if not token or not chats:
        logger.debug("telegram not configured for %s orders", order.type)
        return 0

    http = session or requests
    text = format_order(order)
    sent = 0
    for chat_id in chats:
        try:
            resp = http.post(
                f"{TELEGRAM_API}/bot{token}/sendMessage",
                json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                timeout=TELEGRAM_TIMEOUT_S,
            )
            resp.raise_for_status()
            sent += 1
        except requests.RequestException as e:
            logger.error("telegram send failed for order %s chat %s: %s", order.order_id, chat_id, e)
    return sent
