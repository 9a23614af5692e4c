"""Pull JSON payloads out of fetched PHP/JS sources.

The site embeds its data as `JSON.parse("...")` calls whose argument is a
JS string literal, so the captured text has to be unescaped before it can
be parsed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from aaoffline.constants import UPDATE_MESSAGE

logger = logging.getLogger(__name__)

_UNESCAPES = (
    ("\\\\", "\\"),
    ('\\"', '"'),
    ("\\'", "'"),
    ("\\/", "/"),
)


def unescape_js_string(text: str) -> str:
    for escaped, plain in _UNESCAPES:
        text = text.replace(escaped, plain)
    return text


def extract_escaped_json(pattern: re.Pattern[str], text: str, what: str = "data") -> Any:
    """Return the JSON value captured by group 1 of `pattern` in `text`.

    Raises PatternNotMatched if the pattern (or its group) finds nothing and
    UpstreamChangedError if the captured text is not valid JSON.
    """
    match = pattern.search(text)
    if match is None or match.group(1) is None:
        raise PatternNotMatched(f"Could not find {what} in source. {UPDATE_MESSAGE}")
    return parse_json(unescape_js_string(match.group(1)), what)


def extract_json(pattern: re.Pattern[str], text: str, what: str = "data") -> Any:
    """Like extract_escaped_json, for payloads embedded as plain object literals."""
    match = pattern.search(text)
    if match is None:
        raise PatternNotMatched(f"Could not find {what} in source. {UPDATE_MESSAGE}")
    return parse_json(match.group(1), what)


def parse_json(text: str, what: str = "data") -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("unparseable %s: %.200s", what, text)
        raise UpstreamChangedError(f"Could not parse {what}: {e}. {UPDATE_MESSAGE}") from e


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UpstreamChangedError(RuntimeError):
    """Raised when a fetched source no longer has the shape this tool expects."""


class PatternNotMatched(UpstreamChangedError):
    """Raised when a required pattern finds nothing in a fetched source."""
