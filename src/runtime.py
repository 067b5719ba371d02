"""Discovery file for a running relay server.

The relay server writes runtime.json into the data directory once its
socket is bound and removes it on shutdown, so chat clients can find the
port without configuration. ``relaychat status`` reads the same file.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

import httpx

from .config import get_data_dir

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_version() -> str:
    """Installed relaychat version."""
    try:
        return version("relaychat")
    except PackageNotFoundError:
        return "0.0.0+local"


def get_runtime_path() -> Path:
    return get_data_dir() / "runtime.json"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class RuntimeInfo:
    """Where the relay server in some process can be reached."""
    port: int
    mode: str = "stream"
    pid: int = field(default_factory=os.getpid)
    started_at: str = field(default_factory=_utc_now)
    version: str = field(default_factory=get_version)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def save(self) -> None:
        get_runtime_path().write_text(json.dumps(asdict(self), indent=2))

    @classmethod
    def load(cls) -> Optional["RuntimeInfo"]:
        """Read runtime.json; None if absent or unreadable."""
        path = get_runtime_path()
        try:
            data = json.loads(path.read_text())
            return cls(
                port=int(data["port"]),
                mode=str(data.get("mode", "stream")),
                pid=int(data["pid"]),
                started_at=str(data.get("started_at", "")),
                version=str(data.get("version", "")),
            )
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Ignoring unreadable {path}: {e}")
            return None

    @classmethod
    def clear(cls) -> None:
        get_runtime_path().unlink(missing_ok=True)

    def process_alive(self) -> bool:
        try:
            os.kill(self.pid, 0)
        except OSError:
            return False
        return True

    def responds(self, timeout: float = 2.0) -> bool:
        """True if GET /health answers 200."""
        try:
            return httpx.get(f"{self.url}/health", timeout=timeout).status_code == 200
        except httpx.HTTPError:
            return False


def write_runtime_info(port: int, mode: str = "stream") -> RuntimeInfo:
    """Publish the bound port for clients."""
    info = RuntimeInfo(port=port, mode=mode)
    info.save()
    return info


def get_local_relay_url() -> Optional[str]:
    info = RuntimeInfo.load()
    return info.url if info else None


def get_status(verify_health: bool = True) -> dict:
    """Status document for ``relaychat status``.

    A runtime.json left behind by a dead process is removed and reported
    as not running.
    """
    info = RuntimeInfo.load()
    if info is None:
        return {"running": False}
    if not info.process_alive():
        logger.debug(f"Removing stale runtime.json for pid {info.pid}")
        RuntimeInfo.clear()
        return {"running": False}

    status = {"running": True, "url": info.url, **asdict(info)}
    if verify_health:
        status["healthy"] = info.responds()
    return status
