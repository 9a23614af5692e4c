"""Asset downloading and back-reference rewriting.

Downloads run with bounded concurrency; all JSON mutation happens
afterwards, sequentially, in rewrite(). Under the "abort" policy the first
failure stops new downloads from starting; downloads already in flight
finish and are discarded along with the stage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

from aaoffline.assets import (
    AssetDownload,
    CaseData,
    DefaultPlaces,
    DefaultSprite,
    DefaultVoice,
    OutputMode,
    PsycheLock,
    new_asset_path,
)
from aaoffline.http import DownloadError, HttpClient
from aaoffline.models import Case
from aaoffline.progress import NullProgress, ProgressReporter
from aaoffline.site import DefaultData
from aaoffline.storage import FileWriter, write_asset

logger = logging.getLogger(__name__)

FailurePolicy = Literal["continue", "abort"]


# ---------------------------------------------------------------------------
# JSON pointers (RFC 6901)
# ---------------------------------------------------------------------------

def _pointer_tokens(pointer: str) -> list[str]:
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise BackReferenceError(f"Invalid JSON pointer {pointer!r}")
    return [t.replace("~1", "/").replace("~0", "~") for t in pointer[1:].split("/")]


def _step(node: Any, token: str, pointer: str) -> Any:
    if isinstance(node, dict):
        if token not in node:
            raise BackReferenceError(f"JSON pointer {pointer!r} does not resolve")
        return node[token]
    if isinstance(node, list):
        if not token.isdigit() or int(token) >= len(node):
            raise BackReferenceError(f"JSON pointer {pointer!r} does not resolve")
        return node[int(token)]
    raise BackReferenceError(f"JSON pointer {pointer!r} does not resolve")


def set_pointer(document: Any, pointer: str, value: Any) -> Any:
    """Set the location `pointer` refers to and return its parent container.

    Every container on the way must exist. The last key may be new if its
    parent is an object.
    """
    tokens = _pointer_tokens(pointer)
    if not tokens:
        raise BackReferenceError("Cannot replace the whole document")
    parent = document
    for token in tokens[:-1]:
        parent = _step(parent, token, pointer)
    last = tokens[-1]
    if isinstance(parent, dict):
        parent[last] = value
    elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        parent[int(last)] = value
    else:
        raise BackReferenceError(f"JSON pointer {pointer!r} does not resolve")
    return parent


# ---------------------------------------------------------------------------
# AssetDownloader
# ---------------------------------------------------------------------------

class AssetDownloader:
    """Fetches collected requests and writes (or inlines) the results.

    Args:
        client:         Network client.
        writer:         Output backend; unused in "single_file" mode.
        concurrency:    Maximum downloads in flight.
        failure_policy: "continue" drops failed assets with a warning,
                        "abort" stops starting downloads and fails the stage.
        output_mode:    "directory" writes files under each output root,
                        "single_file" turns every asset into a data URI.
        progress:       Receives one tick per finished download.
    """

    def __init__(
        self,
        client: HttpClient,
        writer: FileWriter,
        concurrency: int = 5,
        failure_policy: FailurePolicy = "abort",
        output_mode: OutputMode = "directory",
        progress: ProgressReporter | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._client = client
        self._writer = writer
        self._concurrency = concurrency
        self._failure_policy = failure_policy
        self._output_mode = output_mode
        self._progress = progress or NullProgress()

    async def download(self, requests: list[AssetDownload]) -> list[AssetDownload]:
        """Download `requests`; return the ones that succeeded.

        Raises AssetDownloadError under the "abort" policy if any failed.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        stop = asyncio.Event()

        async def worker(asset: AssetDownload) -> AssetDownload | None:
            async with semaphore:
                if stop.is_set():
                    return None
                try:
                    await self._download_one(asset)
                except (DownloadError, OSError) as e:
                    self._report_failure(asset, e)
                    if self._failure_policy == "abort":
                        stop.set()
                    return None
                finally:
                    self._progress.inc(1)
                return asset

        results = await asyncio.gather(*(worker(asset) for asset in requests))
        downloaded = [asset for asset in results if asset is not None]

        failed = len(requests) - len(downloaded)
        if failed:
            if self._failure_policy == "abort":
                raise AssetDownloadError(
                    "Asset download failed, aborting case download.", downloaded
                )
            logger.warning(
                "%d asset download%s failed, continuing anyway.",
                failed, "" if failed == 1 else "s",
            )
        return downloaded

    def _report_failure(self, asset: AssetDownload, error: Exception) -> None:
        hint = (
            " (continuing anyway)" if self._failure_policy == "continue"
            else " (set --continue-on-asset-error to ignore this)"
        )
        logger.error(
            "Could not download asset for case %s: %s%s",
            asset.case_title or "[UNKNOWN CASE]", error, hint,
        )

    async def _download_one(self, asset: AssetDownload) -> None:
        download = await self._client.get(asset.url)
        if self._output_mode == "single_file":
            asset.data_uri = download.data_url()
            return

        path = asset.path.get()
        if path is None:
            path = new_asset_path(str(download.url), download.filename())
        await write_asset(self._writer, asset.output_root / path, download.content)
        asset.path.settle(path)
        await self._create_aliases(asset)

    async def _create_aliases(self, asset: AssetDownload) -> None:
        location = asset.location
        if location is None or not asset.aliases:
            return
        for alias in asset.aliases:
            target = location.with_name(alias)
            try:
                await self._writer.symlink(Path(location.name), target)
            except OSError as e:
                logger.warning("Could not create symbolic link: %s. Hard-linking file instead.", e)
                await self._writer.hardlink(location, target)

    # ------------------------------------------------------------------
    # Rewriting
    # ------------------------------------------------------------------

    def rewrite(
        self,
        asset: AssetDownload,
        cases: dict[int, Case],
        default_data: DefaultData,
    ) -> None:
        """Write the asset's final path (or data URI) into all its back-references."""
        value = asset.resolved_value()
        if value is None:
            raise BackReferenceError(f"Asset {asset.url} has no resolved location")

        for ref in asset.references:
            source = ref.source
            logger.debug("Rewriting %s %s to %.80s", source, ref.pointer, value)
            if isinstance(source, CaseData):
                case = cases.get(source.case_id)
                if case is None:
                    raise BackReferenceError(f"Case {source.case_id} is not part of this run")
                set_pointer(case.data, ref.pointer, value)
            elif isinstance(source, DefaultPlaces):
                _, place_id, rest = ref.pointer.split("/", 2)
                place = default_data.default_places.get(int(place_id))
                if place is None:
                    raise BackReferenceError(f"Default place {place_id} does not exist")
                parent = set_pointer(place, f"/{rest}", value)
                # The value is a local path now, whichever case the place came from.
                if isinstance(parent, dict) and "external" in parent:
                    parent["external"] = True
            elif isinstance(source, DefaultVoice):
                default_data.voice_urls[(source.voice_id, source.ext)] = value
            elif isinstance(source, DefaultSprite):
                default_data.sprite_urls[(source.base, source.sprite_id, source.kind)] = value
            elif isinstance(source, PsycheLock):
                default_data.psyche_lock_urls[source.name] = value
            else:
                raise BackReferenceError(f"Unknown back-reference source {source!r}")

    async def download_collected(
        self,
        requests: list[AssetDownload],
        cases: Iterable[Case],
        default_data: DefaultData,
    ) -> list[AssetDownload]:
        """Download everything, then patch all back-references."""
        self._progress.inc_length(len(requests))
        downloaded = await self.download(requests)
        case_map = {case.id: case for case in cases}
        for asset in downloaded:
            self.rewrite(asset, case_map, default_data)
        return downloaded


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class AssetDownloadError(RuntimeError):
    """Raised when an asset fails under the "abort" policy."""

    def __init__(self, message: str, downloaded: list[AssetDownload] | None = None) -> None:
        super().__init__(message)
        self.downloaded = downloaded or []


class BackReferenceError(RuntimeError):
    """Raised when a back-reference cannot be resolved at rewrite time."""
