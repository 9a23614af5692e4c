"""Site locations and the patterns used to locate fields in fetched sources.

Everything here is tied to the current layout of aaonline.fr and of the
player repository. When one of these stops matching, the affected caller
raises UpstreamChangedError (or warns, for optional patch points).
"""

from __future__ import annotations

import re

AAONLINE_BASE = "https://aaonline.fr"
BRIDGE_URL = f"{AAONLINE_BASE}/bridge.js.php"
DEFAULT_DATA_URL = f"{AAONLINE_BASE}/default_data.js.php"
BITBUCKET_URL = "https://bitbucket.org/AceAttorneyOnline/aao-game-creation-engine/raw"

UPDATE_MESSAGE = (
    "This means a new player has been released and aaoffline needs to be updated."
)

USER_AGENT = "aaoffline"

# Module names that are satisfied by the browser itself, never fetched.
SENTINEL_MODULES = frozenset({"dom_loaded", "page_loaded"})

# ---------------------------------------------------------------------------
# Case and site data
# ---------------------------------------------------------------------------

PHP_REGEX = re.compile(r"<\?php(.*?)\?>", re.S)

CASE_REGEX = re.compile(
    r"https?://(?:www\.)?aaonline\.fr/player\.php\?trial_id=(\d+)"
)
LEGACY_CASE_REGEX = re.compile(
    r"https?://(?:www\.)?aceattorney\.sparklin\.org/"
    r"(?:jeu\.php\?id_proces=|player\.php\?trial_id=)(\d+)"
)

TRIAL_INFORMATION_REGEX = re.compile(
    r'var trial_information(?: = JSON\.parse\("(.*?)"\))?;', re.S
)
TRIAL_DATA_REGEX = re.compile(r'var initial_trial_data = JSON\.parse\("(.*?)"\);', re.S)
DEFAULT_PROFILES_STARTUP_REGEX = re.compile(
    r'var default_profiles_startup = JSON\.parse\("(.*?)"\);', re.S
)
DEFAULT_PLACES_REGEX = re.compile(r"var default_places = (\{.*?\});", re.S)
CONFIG_REGEX = re.compile(r"var cfg = (\{.*?\});", re.S)

# ---------------------------------------------------------------------------
# Script modules
# ---------------------------------------------------------------------------

MODULE_REGEX = re.compile(
    r"Modules\.load\(new Object\(\{\s*name\s*:\s*['\"](.*?)['\"]\s*,"
    r"\s*dependencies\s*:\s*(\[.*?\]),"
    r"\s*init\s*:\s*function\(\)\s*\{(.*?)\}\s*^\}\)\);",
    re.S | re.M,
)

# ---------------------------------------------------------------------------
# Player patch points
# ---------------------------------------------------------------------------

CSS_REGEX = re.compile(r'<link rel="stylesheet" type="text/css" href="([^"]+\.css)"\s*/>')
STYLE_INCLUDE_REGEX = re.compile(r"includeStyle\(['\"](.*?)['\"]\);")
LANGUAGE_INCLUDE_REGEX = re.compile(
    r"Languages\.requestFiles\(\[([^\]]*)\], function\(\)\{\s*(.*?)\s*\}\);", re.S
)
LANGUAGE_REGEX = re.compile(r"var lang = new Object\(\);")
CSS_SRC_REGEX = re.compile(r"[:\s]url\(\"?([^\")]*)\"?\)")
SRC_REGEX = re.compile(r"(?:src=[\"']([^\"']+)[\"']|\.src\s*=\s*['\"]([^'\"]*?)['\"])")
HOWLER_REGEX = re.compile(
    r"includeScript\('howler\.js/howler\.min', false, '', function\(\)\{([^}]*?)\}\);"
)
VOICE_REGEX = re.compile(r"function getVoiceUrl\(voice_id,\s*ext\)\s*\{(.*?)\}", re.S)
DEFAULT_SPRITES_REGEX = re.compile(
    r"getDefaultSpriteUrl\(base, sprite_id, status\)\s*\{(.*?)\}", re.S
)
PRELOAD_PLACES_REGEX = re.compile(r"preloadPlaceImages\(default_places\[i\], img_container\)")
GOOGLE_ANALYTICS_REGEX = re.compile(r"<script>.*?UA-.*?</script>", re.S)
PSYCHE_LOCK_REGEX = re.compile(
    r"(?P<path>cfg\.picture_dir\s*\+\s*cfg\.locks_subdir\s*\+\s*"
    r"'(?P<type>jfa_lock)?(?P<name>\w+?)\.gif\?id='(?P<id>\s*\+\s*\w+))"
)
REDIRECTION_REGEX = re.compile(
    r"window\.location\.href\s*=\s*'player\.php\?trial_id='\s*\+\s*(?P<target>[^;+]+?)"
    r"(?:\s*\+\s*'&(?P<save>\w+=)'\s*\+\s*(?P<save_value>[^;]+?))?\s*;"
)
PRELOAD_OPTION = "preload: true"
HTML_END = "</html>"
