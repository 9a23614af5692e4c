"""Core domain models.

Case information, sequences and the site's path configuration come from
JSON embedded in the site's scripts; pydantic validates them at that
boundary. The case data tree itself stays a plain dict, since its schema is
loose and the collector rewrites it in place.
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from aaoffline.constants import AAONLINE_BASE

logger = logging.getLogger(__name__)


def sanitize_filename(name: str) -> str:
    """Strip characters that are not allowed in file names on common platforms."""
    name = unicodedata.normalize("NFC", name)
    name = re.sub(r'[\x00-\x1f\x7f/\\?<>:*|"]', "", name)
    name = name.strip().rstrip(".")
    if name in ("", ".", ".."):
        return "_"
    return name[:255]


# ---------------------------------------------------------------------------
# Sequences and case information
# ---------------------------------------------------------------------------

class SequenceEntry(BaseModel):
    id: int
    title: str

    def __str__(self) -> str:
        return self.title


class Sequence(BaseModel):
    """An ordered collection of related cases."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    entries: list[SequenceEntry] = Field(default_factory=list, alias="list")

    def entry_ids(self) -> list[int]:
        return [entry.id for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __str__(self) -> str:
        titles = ", ".join(f'"{entry}"' for entry in self.entries)
        return f'"{self.title}" with cases {titles}'


class CaseInformation(BaseModel):
    """Metadata the site publishes for a case (`trial_information`).

    Unknown keys are kept so the player receives the object unchanged.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: int
    title: str
    author: str = ""
    author_id: int = 0
    can_read: bool = True
    can_write: bool = False
    format: str = ""
    language: str = ""
    last_edit_date: datetime | None = None
    sequence: Sequence | None = None

    @field_serializer("last_edit_date")
    def _serialize_edit_date(self, value: datetime | None) -> int | None:
        return int(value.timestamp()) if value is not None else None

    def __str__(self) -> str:
        if self.sequence is not None:
            title = f'"{self.title}" (Sequence: "{self.sequence.title}")'
        else:
            title = f'"{self.title}"'
        return f"{title} by {self.author} [last edited on {self.last_edit_date}]"


class Case(BaseModel):
    """A case with its information and its (mutable) data tree."""

    information: CaseInformation
    data: dict[str, Any]

    @property
    def id(self) -> int:
        return self.information.id

    @property
    def title(self) -> str:
        return self.information.title

    @property
    def sequence(self) -> Sequence | None:
        return self.information.sequence

    def filename(self) -> str:
        return sanitize_filename(f"{self.title.strip()}_{self.id}")

    def _frames(self) -> list[dict[str, Any]]:
        # Frame arrays start with a bare `0` placeholder entry.
        return [frame for frame in self.data.get("frames") or [] if isinstance(frame, dict)]

    def used_sprites(self) -> list[tuple[int, int]]:
        """(profile_id, sprite_id) pairs for every character shown in a frame."""
        used = []
        for frame in self._frames():
            for character in frame.get("characters") or []:
                if not isinstance(character, dict):
                    continue
                profile_id = character.get("profile_id")
                sprite_id = character.get("sprite_id")
                if profile_id is None or sprite_id is None:
                    continue
                used.append((int(profile_id), int(sprite_id)))
        return used

    def used_places(self) -> set[int]:
        """Place ids referenced by frames."""
        used = set()
        for frame in self._frames():
            place = frame.get("place")
            if isinstance(place, bool) or not isinstance(place, (int, str)):
                continue
            try:
                used.add(int(place))
            except ValueError:
                logger.debug("ignoring non-numeric place %r", place)
        return used

    def serialize_to_js(self) -> str:
        """Return the JS variable declarations the player reads its case from."""
        info = self.information.model_dump_json(by_alias=True)
        data = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"var trial_information = {info};\nvar initial_trial_data = {data};\n"

    def __str__(self) -> str:
        return str(self.information)


# ---------------------------------------------------------------------------
# Site configuration
# ---------------------------------------------------------------------------

class SitePaths(BaseModel):
    """Directory layout of the site, as published in `bridge.js.php`."""

    model_config = ConfigDict(extra="allow")

    bg_subdir: str
    cache_dir: str = ""
    css_dir: str = ""
    defaultplaces_subdir: str
    evidence_subdir: str
    forum_path: str = ""
    icon_subdir: str
    js_dir: str = ""
    lang_dir: str
    locks_subdir: str
    music_dir: str
    picture_dir: str
    popups_subdir: str
    site_name: str = ""
    sounds_dir: str
    startup_subdir: str
    still_subdir: str
    talking_subdir: str
    trialdata_backups_dir: str = ""
    trialdata_deleted_dir: str = ""
    trialdata_dir: str = ""
    voices_dir: str

    def get_subdir(self, name: str) -> str:
        subdirs = {
            "bg": self.bg_subdir,
            "defaultplaces": self.defaultplaces_subdir,
            "evidence": self.evidence_subdir,
            "icon": self.icon_subdir,
            "locks": self.locks_subdir,
            "popups": self.popups_subdir,
            "startup": self.startup_subdir,
            "still": self.still_subdir,
            "talking": self.talking_subdir,
        }
        if name not in subdirs:
            raise KeyError(f"Unknown subdirectory requested: {name}")
        return subdirs[name]

    def default_icon(self) -> str:
        return f"{AAONLINE_BASE}/{self.picture_dir}/{self.icon_subdir}/Inconnu.png"

    def sprite_path(self, kind: str, base: str) -> list[str]:
        return [self.picture_dir, self.get_subdir(kind), base]

    def icon_path(self) -> list[str]:
        return [self.picture_dir, self.icon_subdir]

    def evidence_path(self) -> list[str]:
        return [self.picture_dir, self.evidence_subdir]

    def bg_path(self) -> list[str]:
        return [self.picture_dir, self.bg_subdir]

    def popup_path(self) -> list[str]:
        return [self.picture_dir, self.popups_subdir]

    def music_path(self) -> list[str]:
        return [self.music_dir]

    def sound_path(self) -> list[str]:
        return [self.sounds_dir]

    def voice_path(self) -> list[str]:
        return [self.voices_dir]

    def lock_path(self) -> list[str]:
        return [self.picture_dir, self.locks_subdir]
