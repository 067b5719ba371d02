"""Configuration for relaychat.

Environment-variable configuration for the relay and client timers, plus
the persistent file-based settings the chat front ends read at start-up and
write on save.
"""

import json
import os
import platform
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path

RELAY_MODES = ("stream", "aggregate")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant powered by Qwen2.5-Coder-14B. You are "
    "knowledgeable, concise, and friendly. Format your responses using "
    "markdown when appropriate."
)


# =============================================================================
# Persistent Configuration (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for relaychat."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "relaychat"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_path() -> Path:
    """Get the path to the settings file."""
    return get_data_dir() / "config.json"


@dataclass
class ChatSettings:
    """Chat client persistent settings.

    Both values of the upstream pair are opaque here beyond trimming and
    presence checks.
    """
    api_url: str = ""  # Upstream base URL (usually a tunnel URL)
    api_key: str = ""  # Bearer credential forwarded verbatim
    relay_mode: str = "stream"  # "stream" or "aggregate"
    relay_url: str = ""  # Relay server to use instead of calling upstream directly

    def save(self) -> None:
        """Save settings to disk."""
        self.api_url = self.api_url.strip()
        self.api_key = self.api_key.strip()
        self.relay_url = self.relay_url.strip()
        config_path = get_config_path()
        with open(config_path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls) -> "ChatSettings":
        """Load settings from disk."""
        config_path = get_config_path()
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    data = json.load(f)
                mode = data.get("relay_mode", "stream")
                return cls(
                    api_url=str(data.get("api_url", "")).strip(),
                    api_key=str(data.get("api_key", "")).strip(),
                    relay_mode=mode if mode in RELAY_MODES else "stream",
                    relay_url=str(data.get("relay_url", "")).strip(),
                )
            except (json.JSONDecodeError, KeyError, AttributeError):
                pass
        return cls()

    @property
    def is_configured(self) -> bool:
        """Check if an upstream URL is set."""
        return bool(self.api_url.strip())

    def clear_key(self) -> None:
        """Clear the saved credential."""
        self.api_key = ""
        self.save()


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    mode = os.getenv("RELAY_MODE", "stream").lower()
    return {
        # Relay server settings
        "HOST": os.getenv("HOST", "127.0.0.1"),
        "PORT": int(os.getenv("PORT", "0")),  # 0 = OS-assigned
        "RELAY_MODE": mode if mode in RELAY_MODES else "stream",

        # Server-side default credential, used when the client sends none
        "UPSTREAM_API_KEY": os.getenv("UPSTREAM_API_KEY", os.getenv("API_KEY", "")),

        # Generation parameters sent upstream
        "MODEL_ID": os.getenv("MODEL_ID", "qwen2.5-coder-14b-instruct"),
        "SYSTEM_PROMPT": os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        "MAX_TOKENS": int(os.getenv("MAX_TOKENS", "2048")),
        "TEMPERATURE": float(os.getenv("TEMPERATURE", "0.7")),

        # Relay-side deadlines (seconds)
        # UPSTREAM_TIMEOUT: whole exchange, connect through last byte
        # UPSTREAM_STALL_TIMEOUT: max gap between chunks while streaming
        "UPSTREAM_TIMEOUT": float(os.getenv("UPSTREAM_TIMEOUT", "55")),
        "UPSTREAM_STALL_TIMEOUT": float(os.getenv("UPSTREAM_STALL_TIMEOUT", "30")),

        # Client-side deadlines, slightly looser so relay errors arrive first
        "CLIENT_TIMEOUT": float(os.getenv("CLIENT_TIMEOUT", "60")),
        "CLIENT_STALL_TIMEOUT": float(os.getenv("CLIENT_STALL_TIMEOUT", "35")),
    }


def get_config_value(key: str, default=None):
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)
