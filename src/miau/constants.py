from __future__ import annotations

from pathlib import Path

HOME_DIR = Path.home() / ".miau"
HOME_CONFIG_PATH = HOME_DIR / "miau.toml"
DEFAULT_AUTH_DIR = HOME_DIR / "auth"

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY_S = 5.0
DEFAULT_OPEN_TIMEOUT_S = 60.0
