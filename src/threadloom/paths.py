"""Canonical filesystem paths for threadloom configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_DIR = Path.home() / ".config" / "threadloom"

CONFIG_PATH = CONFIG_DIR / "config.toml"

_env_db = os.environ.get("THREADLOOM_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else CONFIG_DIR / "threadloom.db"
