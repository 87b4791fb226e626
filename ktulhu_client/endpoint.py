"""WebSocket endpoint resolution."""

from typing import Optional

from .config import DEFAULT_ENDPOINT, ClientSettings, get_config_value


def normalize_to_ws(url: str) -> str:
    """Convert http/https to ws/wss; bare hosts get wss://."""
    url = url.strip()
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith(("ws://", "wss://")):
        return url
    return f"wss://{url}"


def resolve_endpoint(
    explicit: Optional[str] = None,
    settings: Optional[ClientSettings] = None,
) -> str:
    """Pick the endpoint the connection manager is constructed with.

    Precedence: explicit argument, saved override, KTULHU_WS_ENDPOINT,
    KTULHU_TUNNEL_URL, then the public default.
    """
    candidates = [
        explicit,
        settings.endpoint_override if settings else None,
        get_config_value("WS_ENDPOINT"),
        get_config_value("TUNNEL_URL"),
    ]
    for candidate in candidates:
        if candidate and candidate.strip():
            return normalize_to_ws(candidate)
    return DEFAULT_ENDPOINT
