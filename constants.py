from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class UIDefaults:
    SPINNER_FRAMES: str = "⣾⣷⣯⣟⡿⢿⣻⣽"
    SPINNER_INTERVAL: float = 0.1
    ESC_TIMEOUT: float = 0.05
    MIN_WIDTH: int = 20
    MIN_LIST_ROWS: int = 3
    NAME_COLUMN: int = 42
    SIZE_COLUMN: int = 10
    WATCH_INTERVAL: float = 1.0


@dataclass(frozen=True)
class PollDefaults:
    OLLAMA_TRIES: int = 10
    WEBUI_TRIES: int = 60
    SLEEP: float = 1.0
    CONNECT_TIMEOUT: float = 2.0


@dataclass(frozen=True)
class ServiceDefaults:
    UNIT: str = "ollama.service"
    OLLAMA_PORT: int = 11434
    WEBUI_PORT: int = 3000
    OVERRIDE_DIR: Path = Path("/etc/systemd/system/ollama.service.d")
    NETWORK_FILE: str = "10-expose-network.conf"
    ADVANCED_FILE: str = "20-advanced-settings.conf"
    LEGACY_KV_FILE: str = "20-kv-cache.conf"
    EXPOSED_HOST: str = "0.0.0.0"
    LOG_FILE: Path = Path("~/.ollama-toolkit.log")


# GB thresholds for size colouring in the model table, largest first
SIZE_BANDS = ((9.0, "red"), (6.0, "yellow"), (3.0, "blue"), (0.0, "green"))

UI = UIDefaults()
POLL = PollDefaults()
SERVICE = ServiceDefaults()
