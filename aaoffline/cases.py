"""Case lookup: ids from user input, case script retrieval."""

from __future__ import annotations

import logging

from aaoffline.constants import (
    AAONLINE_BASE,
    CASE_REGEX,
    LEGACY_CASE_REGEX,
    TRIAL_DATA_REGEX,
    TRIAL_INFORMATION_REGEX,
    UPDATE_MESSAGE,
)
from aaoffline.extract import PatternNotMatched, UpstreamChangedError, extract_escaped_json
from aaoffline.http import HttpClient
from aaoffline.models import Case, CaseInformation

logger = logging.getLogger(__name__)


def parse_case_id(text: str) -> int:
    """Accept a case id or a player URL (current or legacy host)."""
    text = text.strip()
    if text.isdigit():
        return int(text)
    for pattern in (CASE_REGEX, LEGACY_CASE_REGEX):
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    raise ValueError(f"Not a valid case ID or URL: {text!r}")


def case_script_url(case_id: int) -> str:
    return f"{AAONLINE_BASE}/trial.js.php?trial_id={case_id}"


def parse_case_script(case_id: int, script: str) -> Case:
    try:
        info = extract_escaped_json(TRIAL_INFORMATION_REGEX, script, "case information")
    except PatternNotMatched as e:
        raise CaseNotFoundError(f"The case with given ID {case_id} could not be found!") from e
    data = extract_escaped_json(TRIAL_DATA_REGEX, script, "case data")
    if not isinstance(data, dict):
        raise UpstreamChangedError(f"Case data must be an object. {UPDATE_MESSAGE}")
    try:
        information = CaseInformation.model_validate(info)
    except ValueError as e:
        raise UpstreamChangedError(f"Unexpected case information: {e}. {UPDATE_MESSAGE}") from e
    return Case(information=information, data=data)


async def retrieve_case(client: HttpClient, case_id: int) -> Case:
    script = await client.get_text(case_script_url(case_id))
    case = parse_case_script(case_id, script)
    logger.debug("retrieved case %d: %s", case.id, case.title)
    return case


class CaseNotFoundError(RuntimeError):
    """Raised when the site has no case with the requested id."""
