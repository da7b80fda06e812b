from fastapi import Request

from .events import EventBroadcaster
from .price_feed import PriceFeed


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_price_feed(request: Request) -> PriceFeed:
    return request.app.state.price_feed


def client_ip(request: Request) -> str:
    """Caller address, honouring the first X-Forwarded-For hop behind a proxy."""
    fwd = request.headers.get("x-forwarded-for", "")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else ""
