"""Run settings: defaults, then AAOFFLINE_* environment variables, then CLI overrides."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from aaoffline.assets import OutputMode
from aaoffline.downloader import FailurePolicy
from aaoffline.http import AaofflineInitializer, HttpClient, HttpHandling

logger = logging.getLogger(__name__)

SequenceMode = Literal["ask", "every", "single"]
SequenceErrorHandling = Literal["abort", "continue", "ask"]

USERSCRIPTS: dict[str, str] = {
    "alt_nametag": "https://beyondtimeaxis.github.io/misc/aaoaltnametags.user.js",
    "backlog": "https://beyondtimeaxis.github.io/misc/aaobacklog.user.js",
    "better_layout": "https://beyondtimeaxis.github.io/misc/aaobetterlayout.user.js",
    "keyboard_controls": (
        "https://gist.github.com/falko17/965207b1f1f0496ff5f0cb41d8e827f2/raw/aaokeyboard.user.js"
    ),
}

Userscript = Literal["alt_nametag", "backlog", "better_layout", "keyboard_controls", "all"]

# Settings field -> environment variable.
ENV_VARS: dict[str, str] = {
    "output": "AAOFFLINE_OUTPUT",
    "player_version": "AAOFFLINE_PLAYER_VERSION",
    "language": "AAOFFLINE_LANGUAGE",
    "failure_policy": "AAOFFLINE_FAILURE_POLICY",
    "sequence": "AAOFFLINE_SEQUENCE",
    "sequence_errors": "AAOFFLINE_SEQUENCE_ERRORS",
    "output_mode": "AAOFFLINE_OUTPUT_MODE",
    "concurrent_downloads": "AAOFFLINE_CONCURRENCY",
    "retries": "AAOFFLINE_RETRIES",
    "connect_timeout": "AAOFFLINE_CONNECT_TIMEOUT",
    "read_timeout": "AAOFFLINE_READ_TIMEOUT",
    "http_handling": "AAOFFLINE_HTTP_HANDLING",
    "proxy": "AAOFFLINE_PROXY",
}


class Settings(BaseModel):
    cases: list[int] = Field(min_length=1)
    output: Path | None = None
    player_version: str = "master"
    language: str = "en"
    failure_policy: FailurePolicy = "abort"
    replace_existing: bool = False
    sequence: SequenceMode = "ask"
    sequence_errors: SequenceErrorHandling = "ask"
    output_mode: OutputMode = "directory"
    userscripts: list[Userscript] = Field(default_factory=list)
    concurrent_downloads: int = Field(5, ge=1)
    retries: int = Field(3, ge=0)
    connect_timeout: float = Field(10.0, ge=0)
    read_timeout: float = Field(30.0, ge=0)
    http_handling: HttpHandling = "redirect"
    disable_html5_audio: bool = False
    disable_photobucket_fix: bool = False
    proxy: str | None = None

    @property
    def one_file(self) -> bool:
        return self.output_mode == "single_file"

    def userscript_urls(self) -> list[str]:
        """URLs of the selected userscripts, in a stable order without duplicates."""
        if "all" in self.userscripts:
            return list(USERSCRIPTS.values())
        return [url for name, url in USERSCRIPTS.items() if name in self.userscripts]


def load_settings(overrides: dict[str, Any], env_file: Path | None = None) -> Settings:
    """Build Settings from the environment and `overrides`.

    `None` overrides are ignored so unset CLI flags don't mask the environment.
    """
    load_dotenv(env_file)
    values: dict[str, Any] = {}
    for field, var in ENV_VARS.items():
        value = os.getenv(var)
        if value:
            values[field] = value
    values.update({key: value for key, value in overrides.items() if value is not None})
    settings = Settings.model_validate(values)
    logger.debug("settings: %s", settings.model_dump(exclude={"cases"}))
    return settings


def build_client(settings: Settings, **kwargs: Any) -> HttpClient:
    """Create the run's HttpClient. Extra keyword arguments go to HttpClient."""
    initializer = AaofflineInitializer(
        fix_photobucket=not settings.disable_photobucket_fix,
        proxy=settings.proxy,
    )
    return HttpClient(
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
        retries=settings.retries,
        http_handling=settings.http_handling,
        initializer=initializer,
        **kwargs,
    )
