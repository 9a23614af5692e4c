"""Asset collection.

The collector walks a case's data tree (and the default data it uses) and
turns every asset reference into an AssetDownload request. Nothing is
fetched here; the requests are handed to the AssetDownloader.

A request is identified by (url, output root). Collecting the same pair
again merges the new back-reference into the existing request, so one
download can patch many JSON locations, possibly across cases.

Back-references say where the final local path goes once known:

    CaseData(case_id)            JSON pointer into that case's data tree
    DefaultPlaces                "/{place_id}/..." into DefaultData.default_places
    DefaultVoice(id, ext)        DefaultData.voice_urls[(id, ext)]
    DefaultSprite(base, id, kind) DefaultData.sprite_urls[(base, id, kind)]
    PsycheLock(name)             DefaultData.psyche_lock_urls[name]
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import Any, Generic, Literal, TypeVar, Union
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict

from aaoffline.constants import AAONLINE_BASE, UPDATE_MESSAGE
from aaoffline.extract import UpstreamChangedError
from aaoffline.models import Case, SitePaths, sanitize_filename
from aaoffline.site import DefaultData

logger = logging.getLogger(__name__)

OutputMode = Literal["directory", "single_file"]

SPRITE_KINDS = ("talking", "still", "startup")
VOICE_EXTENSIONS = ("opus", "wav", "mp3")
PSYCHE_LOCK_NAMES = (
    "fg_chains_appear",
    "jfa_lock_appears",
    "jfa_lock_explodes",
    "fg_chains_disappear",
)
DEFAULT_EXTENSION = "bin"

_REPEATED_SLASHES = re.compile(r"([^:/])/{2,}")


# ---------------------------------------------------------------------------
# Back-references
# ---------------------------------------------------------------------------

class _Source(BaseModel):
    model_config = ConfigDict(frozen=True)


class CaseData(_Source):
    case_id: int


class DefaultPlaces(_Source):
    pass


class DefaultVoice(_Source):
    voice_id: int
    ext: str


class DefaultSprite(_Source):
    base: str
    sprite_id: int
    kind: str


class PsycheLock(_Source):
    name: str


Source = Union[CaseData, DefaultPlaces, DefaultVoice, DefaultSprite, PsycheLock]


class BackReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Source
    pointer: str = ""

    @classmethod
    def for_case(cls, case_id: int, pointer: str) -> BackReference:
        return cls(source=CaseData(case_id=case_id), pointer=pointer)


# ---------------------------------------------------------------------------
# Download requests
# ---------------------------------------------------------------------------

T = TypeVar("T")


class SettleOnce(Generic[T]):
    """A value that may be assigned once.

    Assigning the same value again is a no-op; assigning a different one
    raises PathAlreadySettledError.
    """

    def __init__(self) -> None:
        self._value: T | None = None
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def get(self) -> T | None:
        return self._value

    def settle(self, value: T) -> T:
        if self._settled:
            if value != self._value:
                raise PathAlreadySettledError(
                    f"Path already settled to {self._value!r}, refusing {value!r}"
                )
            return self._value  # type: ignore[return-value]
        self._value = value
        self._settled = True
        return value


class AssetDownload:
    """One asset to fetch for one output root.

    `path` is relative to `output_root` (always under `assets/`) and is
    settled either eagerly by the collector or after download.
    `data_uri` is filled instead of writing a file in single-file mode.
    """

    def __init__(self, url: str, output_root: Path, case_title: str) -> None:
        self.url = url
        self.output_root = output_root
        self.case_title = case_title
        self.references: set[BackReference] = set()
        self.path: SettleOnce[str] = SettleOnce()
        self.data_uri: str | None = None
        self.aliases: list[str] = []

    @property
    def key(self) -> tuple[str, Path]:
        return self.url, self.output_root

    @property
    def location(self) -> Path | None:
        """Where the asset is written, once its path is known."""
        path = self.path.get()
        return self.output_root / path if path is not None else None

    def resolved_value(self) -> str | None:
        """What back-references should be rewritten to."""
        return self.data_uri if self.data_uri is not None else self.path.get()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AssetDownload):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"AssetDownload({self.url!r}, {str(self.output_root)!r}, refs={len(self.references)})"


def _url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def new_asset_path(url: str, filename: str) -> str:
    """Case-relative path for an asset from `url`, named after `filename`.

    The URL hash keeps same-named files from different sources apart.
    """
    path = PurePosixPath(filename)
    ext = path.suffix.lstrip(".")
    if ext:
        ext = sanitize_filename(ext)
    else:
        logger.warning("Unknown extension for %s! Setting to '.%s'.", url, DEFAULT_EXTENSION)
        ext = DEFAULT_EXTENSION
    name = unquote(path.stem or path.name).replace("%", "-")
    name = sanitize_filename(f"{name}-{_url_hash(url)}").lower()
    return f"assets/{name}.{ext.lower()}"


def _as_flag(value: Any) -> bool | None:
    """Read an `external`-style flag, accepting the 0/1 integer encoding."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    return None


def _required_flag(value: Any, what: str) -> bool:
    flag = _as_flag(value)
    if flag is None:
        raise UpstreamChangedError(f"{what} must be a boolean, got {value!r}. {UPDATE_MESSAGE}")
    return flag


def _enumerate_objects(items: Any) -> Iterable[tuple[int, dict[str, Any]]]:
    # Indices refer to the full array; non-object entries are skipped.
    for i, item in enumerate(items or []):
        if isinstance(item, dict):
            yield i, item


# ---------------------------------------------------------------------------
# AssetCollector
# ---------------------------------------------------------------------------

class AssetCollector:
    """Builds download requests from case data trees.

    Args:
        site_paths:   Directory layout of the site, used for site-local assets.
        default_data: Shared default data; its places are reset per case.
        output_mode:  In "directory" mode psyche locks get their file name
                      at collection time so their aliases can be named.
    """

    def __init__(
        self,
        site_paths: SitePaths,
        default_data: DefaultData,
        output_mode: OutputMode = "directory",
    ) -> None:
        self._paths = site_paths
        self._default_data = default_data
        self._output_mode = output_mode
        self._default_icon = site_paths.default_icon()
        self._collected: dict[tuple[str, Path], AssetDownload] = {}
        self.output = Path(".")
        self.case_title = ""

    @property
    def requests(self) -> list[AssetDownload]:
        return list(self._collected.values())

    def drain(self) -> list[AssetDownload]:
        requests = self.requests
        self._collected = {}
        return requests

    def resolve_url(
        self,
        value: Any,
        components: list[str] | None,
        external: bool | None,
        default_ext: str | None,
    ) -> tuple[str, str] | None:
        """Return (url, file) for an asset value, or None if it is empty.

        Non-string values stand for the site's default icon.
        """
        file = value.strip() if isinstance(value, str) else self._default_icon
        if not file:
            return None
        off_site = (external is None or external) and file.startswith("http")
        if not off_site and default_ext and not PurePosixPath(file).suffix:
            file = f"{file}.{default_ext}"

        if external is False:
            if components is None:
                raise ValueError("Site-local assets need path components")
            url = f"{AAONLINE_BASE}/{'/'.join(components)}/{file}"
        elif off_site:
            url = file
        else:
            url = f"{AAONLINE_BASE}/{file}"
        return _REPEATED_SLASHES.sub(r"\1/", url), file

    def collect(
        self,
        value: Any,
        components: list[str] | None,
        external: bool | None,
        default_ext: str | None,
        reference: BackReference,
        eager_name: bool = False,
    ) -> AssetDownload | None:
        """Register one asset reference; return its (possibly shared) request."""
        resolved = self.resolve_url(value, components, external, default_ext)
        if resolved is None:
            return None
        url, file = resolved

        key = (url, self.output)
        asset = self._collected.get(key)
        if asset is None:
            logger.debug("Creating asset for %s", url)
            asset = AssetDownload(url, self.output, self.case_title)
            self._collected[key] = asset
        else:
            logger.debug("Duplicate asset for %s", url)
        asset.references.add(reference)

        if eager_name:
            asset.path.settle(new_asset_path(url, file))
        return asset

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def collect_case(self, case: Case, output: Path) -> None:
        """Collect every asset of `case`, to be stored under `output`.

        Asset fields are normalized on the way: flags are set to external
        (the final value will be a local path) and empty profile icons are
        replaced by the site's icon for the profile's base.
        """
        self.output = output
        self.case_title = case.title
        self._default_data.reset()
        data = case.data

        self._collect_profiles(case)
        self._collect_evidence(data, case.id)
        self._collect_places(case)
        self._collect_flagged(data, "popups", "path", self._paths.popup_path(), "gif", case.id)
        self._collect_flagged(data, "music", "path", self._paths.music_path(), "mp3", case.id)
        self._collect_flagged(data, "sounds", "path", self._paths.sound_path(), "mp3", case.id)
        self._collect_voices()
        self._collect_psyche_locks(data)
        logger.debug("collected %d requests so far", len(self._collected))

    def used_default_sprites(self, case: Case) -> list[tuple[str, int]]:
        """(base, sprite id) of default sprites that appear in the case's frames."""
        bases: dict[int, str] = {}
        for _, profile in _enumerate_objects(case.data.get("profiles")):
            if "id" in profile and isinstance(profile.get("base"), str):
                bases[int(profile["id"])] = profile["base"]
        bases[0] = "Juge"

        used: list[tuple[str, int]] = []
        for profile_id, sprite_id in case.used_sprites():
            # Only negative sprite ids refer to default sprites.
            if sprite_id >= 0:
                continue
            if profile_id not in bases:
                logger.warning("Frame uses unknown profile %d, skipping its sprite.", profile_id)
                continue
            entry = (bases[profile_id], -sprite_id)
            if entry not in used:
                used.append(entry)
        return used

    def used_default_places(self, case: Case) -> dict[int, Any]:
        used = case.used_places()
        return {
            place_id: place
            for place_id, place in self._default_data.default_places.items()
            if place_id in used
        }

    def _collect_profiles(self, case: Case) -> None:
        for base, sprite_id in self.used_default_sprites(case):
            for kind in SPRITE_KINDS:
                if kind == "startup" and f"{base}/{sprite_id}" not in self._default_data.profiles_startup:
                    continue
                self.collect(
                    f"{sprite_id}.gif",
                    self._paths.sprite_path(kind, base),
                    False,
                    "gif",
                    BackReference(source=DefaultSprite(base=base, sprite_id=sprite_id, kind=kind)),
                )

        for i, profile in _enumerate_objects(case.data.get("profiles")):
            icon = profile.get("icon")
            if not isinstance(icon, str) or not icon:
                base = profile.get("base")
                profile["icon"] = (
                    f"{'/'.join(self._paths.icon_path())}/{base}.png"
                    if isinstance(base, str) else None
                )
            self.collect(
                profile["icon"], None, True, "png",
                BackReference.for_case(case.id, f"/profiles/{i}/icon"),
            )

            for j, custom in _enumerate_objects(profile.get("custom_sprites")):
                for kind in SPRITE_KINDS:
                    value = custom.get(kind)
                    if not isinstance(value, str) or not value:
                        continue
                    self.collect(
                        value, None, True, "gif",
                        BackReference.for_case(case.id, f"/profiles/{i}/custom_sprites/{j}/{kind}"),
                    )

    def _collect_evidence(self, data: dict[str, Any], case_id: int) -> None:
        for i, evidence in _enumerate_objects(data.get("evidence")):
            self.collect(
                evidence.get("icon"),
                self._paths.evidence_path(),
                _as_flag(evidence.get("icon_external")),
                "png",
                BackReference.for_case(case_id, f"/evidence/{i}/icon"),
            )
            evidence["icon_external"] = True

            # Check button data may be an image or a sound; text needs nothing.
            for j, check in _enumerate_objects(evidence.get("check_button_data")):
                if check.get("type", "text") == "text":
                    continue
                self.collect(
                    check.get("content"), None, None, None,
                    BackReference.for_case(case_id, f"/evidence/{i}/check_button_data/{j}/content"),
                )

    def _collect_places(self, case: Case) -> None:
        case_places = enumerate(case.data.get("places") or [])
        self._collect_places_for(case_places, CaseData(case_id=case.id), "/places")
        used_defaults = self.used_default_places(case)
        self._collect_places_for(used_defaults.items(), DefaultPlaces(), "")

    def _collect_places_for(
        self,
        places: Iterable[tuple[int, Any]],
        source: Source,
        pointer_base: str,
    ) -> None:
        for i, place in places:
            if not isinstance(place, dict):
                continue
            background = place.get("background")
            if isinstance(background, dict):
                # Default places may have a plain colour instead of an image.
                if "image" in background:
                    external = _required_flag(background.get("external"), "Background 'external'")
                    self.collect(
                        background["image"],
                        self._paths.bg_path(),
                        external,
                        "jpg",
                        BackReference(source=source, pointer=f"{pointer_base}/{i}/background/image"),
                    )
                    background["external"] = True
            else:
                logger.warning("Encountered place without background!")

            for kind in ("background_objects", "foreground_objects"):
                self._collect_place_objects(place.get(kind), source, f"{pointer_base}/{i}/{kind}")

    def _collect_place_objects(self, objects: Any, source: Source, pointer_base: str) -> None:
        if not isinstance(objects, list):
            raise UpstreamChangedError(
                f"Background/foreground objects must be in an array! {UPDATE_MESSAGE}"
            )
        for i, obj in _enumerate_objects(objects):
            if not _as_flag(obj.get("external")):
                logger.warning(
                    "Found non-external foreground/background object, "
                    "even though these should always be external! Skipping."
                )
                continue
            self.collect(
                obj.get("image"), None, True, None,
                BackReference(source=source, pointer=f"{pointer_base}/{i}/image"),
            )

    def _collect_flagged(
        self,
        data: dict[str, Any],
        category: str,
        field: str,
        components: list[str],
        default_ext: str,
        case_id: int,
    ) -> None:
        """Popups, music and sounds: a path plus a required `external` flag."""
        for i, item in _enumerate_objects(data.get(category)):
            external = _required_flag(item.get("external"), f"'external' of {category}")
            self.collect(
                item.get(field), components, external, default_ext,
                BackReference.for_case(case_id, f"/{category}/{i}/{field}"),
            )
            item["external"] = True

    def _collect_voices(self) -> None:
        # There are no custom voices, so every case needs all of them.
        for voice_id in range(1, 4):
            for ext in VOICE_EXTENSIONS:
                self.collect(
                    f"voice_singleblip_{voice_id}.{ext}",
                    self._paths.voice_path(),
                    False,
                    None,
                    BackReference(source=DefaultVoice(voice_id=voice_id, ext=ext)),
                )

    def max_psyche_locks(self, data: dict[str, Any]) -> int:
        counts = [0]
        for _, scene in _enumerate_objects(data.get("scenes")):
            for _, dialogue in _enumerate_objects(scene.get("dialogues")):
                locks = dialogue.get("locks")
                if isinstance(locks, dict) and isinstance(locks.get("locks_to_display"), list):
                    counts.append(len(locks["locks_to_display"]))
        return max(counts)

    def _collect_psyche_locks(self, data: dict[str, Any]) -> None:
        max_locks = self.max_psyche_locks(data)
        if max_locks == 0:
            return
        eager = self._output_mode == "directory"
        for name in PSYCHE_LOCK_NAMES:
            asset = self.collect(
                name,
                self._paths.lock_path(),
                False,
                "gif",
                BackReference(source=PsycheLock(name=name)),
                eager_name=eager,
            )
            if asset is not None and eager:
                aliases = [f"{name}_{i}.gif" for i in range(1, max_locks + 1)]
                if len(aliases) > len(asset.aliases):
                    asset.aliases = aliases


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PathAlreadySettledError(RuntimeError):
    """Raised when a settled asset path would be changed."""
