"""Positional text edits and PHP template-block substitution.

Every rewrite of fetched sources (template blocks, inlined CSS and scripts,
language packs, lookup tables) is expressed as a list of TextEdits whose
offsets refer to the text *before* any of them is applied. apply_edits
then works from the end of the buffer towards the start, so no edit can
shift the offsets of one that is still pending.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable

from pydantic import BaseModel, ConfigDict

from aaoffline.constants import PHP_REGEX, UPDATE_MESSAGE
from aaoffline.extract import UpstreamChangedError
from aaoffline.models import Case

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Text edits
# ---------------------------------------------------------------------------

class TextEdit(BaseModel):
    """Replace `buffer[start:end]` with `replacement`. start == end inserts."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int
    replacement: str = ""

    @classmethod
    def insert(cls, position: int, text: str) -> TextEdit:
        return cls(start=position, end=position, replacement=text)

    @classmethod
    def of_match(cls, match: re.Match[str], replacement: str, group: int | str = 0) -> TextEdit:
        start, end = match.span(group)
        return cls(start=start, end=end, replacement=replacement)


def apply_edits(buffer: str, edits: Iterable[TextEdit]) -> str:
    """Apply a batch of non-overlapping edits to `buffer`.

    An insertion at the start of a replaced range ends up in front of the
    replacement. Overlapping ranges raise ValueError.
    """
    ordered = sorted(edits, key=lambda e: (e.start, e.end), reverse=True)
    limit = len(buffer)
    for edit in ordered:
        if not 0 <= edit.start <= edit.end:
            raise ValueError(f"Invalid edit range ({edit.start}–{edit.end})")
        if edit.end > limit:
            raise ValueError(
                f"Edit range ({edit.start}–{edit.end}) overlaps a later edit or exceeds the buffer"
            )
        limit = edit.start

    parts: list[str] = []
    cursor = len(buffer)
    for edit in ordered:
        parts.append(buffer[edit.end:cursor])
        parts.append(edit.replacement)
        cursor = edit.start
    parts.append(buffer[:cursor])
    return "".join(reversed(parts))


# ---------------------------------------------------------------------------
# PHP blocks
# ---------------------------------------------------------------------------

class BlockContext(BaseModel):
    """What a block replacer may draw on."""

    case: Case
    scripts: str = ""
    language: str = "en"


BlockReplacer = Callable[[BlockContext], str]


class ExpectedBlock:
    """A `<?php ... ?>` block we know how to handle.

    `span` is where the block is expected to sit. It is advisory: a block
    found elsewhere only produces a warning. A block without a replacer is
    removed.
    """

    def __init__(
        self,
        block_id: str,
        detector: str,
        replacer: BlockReplacer | None = None,
        span: tuple[int, int] | None = None,
    ) -> None:
        self.id = block_id
        self.detector = re.compile(detector)
        self.replacer = replacer
        self.span = span

    def matches(self, text: str) -> bool:
        return self.detector.search(text) is not None

    def check_span(self, start: int, end: int) -> None:
        if self.span is not None and self.span != (start, end):
            logger.warning(
                "Expected PHP block %s to be at character range (%d–%d), but was at (%d–%d). %s",
                self.id, self.span[0], self.span[1], start, end, UPDATE_MESSAGE,
            )

    def replace(self, context: BlockContext) -> str:
        if self.replacer is None:
            return ""
        return self.replacer(context)


def transform_blocks(source: str, blocks: list[ExpectedBlock], context: BlockContext) -> str:
    """Substitute every PHP block in `source`.

    Each expected block is used at most once. A block matching none of the
    remaining expected blocks is removed with a warning; one matching more
    than one of them means the upstream template changed and is fatal.
    """
    visited: set[int] = set()
    edits: list[TextEdit] = []
    for match in PHP_REGEX.finditer(source):
        start, end = match.span()
        candidates = [
            i for i, block in enumerate(blocks)
            if i not in visited and block.matches(match.group(1))
        ]
        if not candidates:
            logger.warning("Unexpected PHP block at (%d–%d). Removing from HTML.", start, end)
            edits.append(TextEdit(start=start, end=end))
            continue
        if len(candidates) > 1:
            raise BlockMatchError(
                f"Invalid ({len(candidates)}) matches for PHP block at ({start}–{end}). "
                f"{UPDATE_MESSAGE}"
            )
        block = blocks[candidates[0]]
        block.check_span(start, end)
        logger.debug("replacing PHP block %s at (%d–%d)", block.id, start, end)
        edits.append(TextEdit(start=start, end=end, replacement=block.replace(context)))
        visited.add(candidates[0])
    return apply_edits(source, edits)


TRIAL_BLOCKS = [
    ExpectedBlock("common_render", r"include\('common_render\.php'\);"),
    ExpectedBlock(
        "trial_data",
        r"var trial_information;",
        lambda ctx: ctx.case.serialize_to_js(),
    ),
]

PLAYER_BLOCKS = [
    ExpectedBlock("common_render", r"include\('common_render\.php'\);", span=(1, 40)),
    ExpectedBlock(
        "language",
        r"echo language_backend\(.*\)",
        lambda ctx: ctx.language,
        span=(224, 272),
    ),
    ExpectedBlock(
        "script",
        r"include\('bridge\.js\.php'\);",
        lambda ctx: ctx.scripts,
        span=(276, 396),
    ),
    ExpectedBlock(
        "title",
        r"echo 'Ace Attorney Online - Trial Player \(Loading\)';",
        lambda ctx: ctx.case.title,
        span=(417, 530),
    ),
    ExpectedBlock("heading", r"echo 'Loading trial \.\.\.';", lambda ctx: ctx.case.title),
]


def transform_trial_blocks(scripts: str, case: Case) -> str:
    """Fill the `trial.js.php` blocks embedded in the assembled scripts."""
    return transform_blocks(scripts, TRIAL_BLOCKS, BlockContext(case=case))


def transform_player_blocks(player: str, scripts: str, case: Case, language: str) -> str:
    """Fill the `player.php` blocks. `scripts` must already have its trial blocks filled."""
    context = BlockContext(case=case, scripts=scripts, language=language)
    return transform_blocks(player, PLAYER_BLOCKS, context)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BlockMatchError(UpstreamChangedError):
    """Raised when a PHP block is claimed by more than one expected block."""
