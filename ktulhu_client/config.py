"""Configuration for the Ktulhu client.

Simple configuration loader from environment variables (a ``.env`` file is
honoured). Also supports a small persistent settings file for the CLI.
"""

import json
import logging
import os
import platform
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "wss://inference.ktulhu.com"
DEFAULT_API_BASE_URL = "http://localhost:8080"
DEFAULT_MODEL = "mistral-7b-lora"


# =============================================================================
# Persistent Settings (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for the client."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "ktulhu"


def get_settings_path() -> Path:
    """Get the path to the settings file."""
    return get_data_dir() / "settings.json"


@dataclass
class ClientSettings:
    """Settings remembered between CLI runs."""
    endpoint_override: str = ""  # Wins over environment endpoints when set
    model: str = ""
    last_chat_id: str = ""  # Resume the previous conversation

    def save(self, path: Optional[Path] = None) -> None:
        """Save settings to disk."""
        path = path or get_settings_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ClientSettings":
        """Load settings from disk, falling back to defaults."""
        path = path or get_settings_path()
        if path.exists():
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                return cls(
                    endpoint_override=data.get("endpoint_override", ""),
                    model=data.get("model", ""),
                    last_chat_id=data.get("last_chat_id", ""),
                )
            except (json.JSONDecodeError, AttributeError, OSError) as e:
                logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return cls()


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict[str, Any]:
    """
    Load client configuration from environment variables.

    Returns:
        dict with configuration values
    """
    load_dotenv()
    return {
        # Endpoints
        # KTULHU_WS_ENDPOINT is a direct WebSocket base, KTULHU_TUNNEL_URL a tunnel host
        "WS_ENDPOINT": os.getenv("KTULHU_WS_ENDPOINT", ""),
        "TUNNEL_URL": os.getenv("KTULHU_TUNNEL_URL", ""),
        "API_BASE_URL": os.getenv("KTULHU_API_BASE_URL", DEFAULT_API_BASE_URL),
        "MODEL": os.getenv("KTULHU_MODEL", DEFAULT_MODEL),

        # Reconnect backoff (seconds)
        "BACKOFF_INITIAL": float(os.getenv("KTULHU_BACKOFF_INITIAL", "0.5")),
        "BACKOFF_MAX": float(os.getenv("KTULHU_BACKOFF_MAX", "8.0")),

        # Timeouts (seconds)
        # SEND_TIMEOUT: max wait for one frame to be written
        # DONE_TIMEOUT: chat session resets to idle if no done frame arrives
        "SEND_TIMEOUT": float(os.getenv("KTULHU_SEND_TIMEOUT", "5.0")),
        "DONE_TIMEOUT": float(os.getenv("KTULHU_DONE_TIMEOUT", "20.0")),
    }


def get_config_value(key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)
