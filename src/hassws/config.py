"""Config file management for the hassws CLI.

Files live under ~/.hassws/:
  config.json  — gateway URL, access token, connection and logging settings
  logs/        — rotating log files when file logging is enabled

``HASS_URL`` and ``HASS_TOKEN`` override the stored values at load time.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .connection import OUTBOUND_QUEUE_SIZE
from .transport import MAX_FRAME_SIZE, build_url

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".hassws"
CONFIG_FILE = APP_DIR / "config.json"
LOG_DIR = APP_DIR / "logs"

ENV_URL = "HASS_URL"
ENV_TOKEN = "HASS_TOKEN"


class Config(BaseModel):
    url: str = "ws://localhost:8123/api/websocket"
    token: Optional[str] = Field(default=None, repr=False)
    queue_size: int = Field(default=OUTBOUND_QUEUE_SIZE, ge=1)
    max_frame_size: Optional[int] = MAX_FRAME_SIZE
    log_level: str = "WARNING"
    log_file: bool = False
    log_levels: dict[str, str] = Field(default_factory=dict)


def load_config(path: Path | None = None, *, env: bool = True) -> Config:
    """Read the stored config (defaults when absent) and apply env overrides."""
    path = path or CONFIG_FILE
    config = Config()
    if path.exists():
        try:
            config = Config.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning("Ignoring invalid config file %s: %s", path, exc)
    if env:
        overrides = {
            field: os.environ[var]
            for field, var in (("url", ENV_URL), ("token", ENV_TOKEN))
            if os.environ.get(var)
        }
        if "url" in overrides:
            try:
                overrides["url"] = build_url(overrides["url"])
            except ValueError as exc:
                logger.warning("Ignoring %s: %s", ENV_URL, exc)
                del overrides["url"]
        if overrides:
            config = config.model_copy(update=overrides)
    return config


def save_config(config: Config, path: Path | None = None) -> Path:
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        config.model_dump_json(indent=2), encoding="utf-8"
    )
    if os.name == "posix":
        # the file may hold an access token
        path.chmod(0o600)
    return path
