"""Site-wide configuration and default data.

`bridge.js.php` publishes the site's directory layout (SitePaths) and the
rendered `default_data.js.php` holds the fallback assets every case may
use (DefaultData). Both are fetched once per run and shared by all cases.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any

from aaoffline.constants import (
    BRIDGE_URL,
    CONFIG_REGEX,
    DEFAULT_PLACES_REGEX,
    DEFAULT_PROFILES_STARTUP_REGEX,
    UPDATE_MESSAGE,
)
from aaoffline.extract import (
    PatternNotMatched,
    UpstreamChangedError,
    extract_escaped_json,
    extract_json,
)
from aaoffline.http import HttpClient
from aaoffline.models import SitePaths
from aaoffline.transform import TextEdit, apply_edits

logger = logging.getLogger(__name__)


class DefaultData:
    """Default profiles and places, plus the lookup tables the downloader fills.

    `default_places` is rewritten in place while assets are collected, so
    it has to be reset() before each case's collection pass.
    """

    def __init__(self, profiles_startup: set[str], default_places: dict[int, Any]) -> None:
        self.profiles_startup = profiles_startup
        self._pristine_places = copy.deepcopy(default_places)
        self.default_places = default_places
        self.voice_urls: dict[tuple[int, str], str] = {}
        self.sprite_urls: dict[tuple[str, int, str], str] = {}
        self.psyche_lock_urls: dict[str, str] = {}

    def reset(self) -> None:
        """Restore `default_places` to the state it was fetched in."""
        self.default_places = copy.deepcopy(self._pristine_places)

    @classmethod
    def from_default_module(cls, module: str) -> DefaultData:
        startup = extract_escaped_json(
            DEFAULT_PROFILES_STARTUP_REGEX, module, "default profiles startup map"
        )
        if not isinstance(startup, dict):
            raise UpstreamChangedError(
                f"Default profiles startup map is not an object. {UPDATE_MESSAGE}"
            )
        places = extract_json(DEFAULT_PLACES_REGEX, module, "default places")
        if not isinstance(places, dict):
            raise UpstreamChangedError(f"Default places are not an object. {UPDATE_MESSAGE}")
        try:
            default_places = {int(key): value for key, value in places.items()}
        except ValueError as e:
            raise UpstreamChangedError(f"Invalid default place id: {e}. {UPDATE_MESSAGE}") from e
        return cls(set(startup), default_places)

    def write_default_module(self, module: str) -> str:
        """Return `module` with its default places replaced by ours."""
        match = DEFAULT_PLACES_REGEX.search(module)
        if match is None:
            raise PatternNotMatched(f"Could not find default places in module. {UPDATE_MESSAGE}")
        places = json.dumps(
            {str(key): value for key, value in self.default_places.items()},
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return apply_edits(module, [TextEdit.of_match(match, f"var default_places = {places};")])


class SiteData:
    def __init__(self, site_paths: SitePaths, default_data: DefaultData) -> None:
        self.site_paths = site_paths
        self.default_data = default_data


async def retrieve_site_paths(client: HttpClient) -> SitePaths:
    bridge = await client.get_text(BRIDGE_URL)
    config = extract_json(CONFIG_REGEX, bridge, "site configuration")
    try:
        return SitePaths.model_validate(config)
    except ValueError as e:
        raise UpstreamChangedError(f"Could not parse site configuration. {UPDATE_MESSAGE}") from e


async def retrieve_site_data(client: HttpClient, default_module: str) -> SiteData:
    site_paths = await retrieve_site_paths(client)
    default_data = DefaultData.from_default_module(default_module)
    logger.debug(
        "site data: %d default places, %d startup profiles",
        len(default_data.default_places), len(default_data.profiles_startup),
    )
    return SiteData(site_paths, default_data)
