"""Output backends.

The pipeline writes through a FileWriter so the same run can target the
local filesystem (DiskWriter) or an in-memory ZIP archive (ZipWriter).

Directory layout of a directory-mode case:

    {output}/
      index.html              ← the patched player
      assets/
        {name}-{hash}.{ext}   ← downloaded assets
        {lock}_{n}.gif        ← psyche-lock aliases
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)


class FileWriter(Protocol):
    async def write(self, path: Path, content: bytes) -> None: ...

    async def create_dir_all(self, path: Path) -> None: ...

    async def symlink(self, original: Path, target: Path) -> None:
        """Create `target` pointing at `original` (relative to target's directory)."""
        ...

    async def hardlink(self, original: Path, target: Path) -> None:
        """Make `target` share (or, failing that, copy) the content of `original`."""
        ...

    async def delete_case_at(self, output: Path) -> None:
        """Best-effort removal of what a previous run wrote for one case."""
        ...


async def write_asset(writer: FileWriter, path: Path, content: bytes) -> None:
    """Write an asset, creating its `assets/` directory first."""
    await writer.create_dir_all(path.parent)
    await writer.write(path, content)


# ---------------------------------------------------------------------------
# DiskWriter: local filesystem
# ---------------------------------------------------------------------------

class DiskWriter:
    async def write(self, path: Path, content: bytes) -> None:
        path.write_bytes(content)

    async def create_dir_all(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    async def symlink(self, original: Path, target: Path) -> None:
        target.unlink(missing_ok=True)
        os.symlink(original, target)

    async def hardlink(self, original: Path, target: Path) -> None:
        target.unlink(missing_ok=True)
        try:
            os.link(original, target)
        except OSError as e:
            logger.warning("Could not hard-link %s (%s). Copying file instead.", target, e)
            shutil.copyfile(original, target)

    async def delete_case_at(self, output: Path) -> None:
        try:
            if output.is_file():
                output.unlink()
            elif output.is_dir():
                shutil.rmtree(output / "assets", ignore_errors=False)
                (output / "index.html").unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s. Please remove it manually.", output, e)


# ---------------------------------------------------------------------------
# ZipWriter: everything goes into one in-memory archive
# ---------------------------------------------------------------------------

class ZipWriter:
    """Collects written files and renders them as a ZIP archive.

    Archives cannot hold symbolic links portably, so symlink() refuses and
    callers fall back to hardlink(), which stores a copy.
    """

    def __init__(self) -> None:
        self._files: dict[str, bytes] = {}

    @staticmethod
    def _key(path: Path) -> str:
        return PurePosixPath(*Path(os.path.normpath(path)).parts).as_posix()

    def names(self) -> list[str]:
        return sorted(self._files)

    def read(self, path: Path) -> bytes:
        return self._files[self._key(path)]

    async def write(self, path: Path, content: bytes) -> None:
        self._files[self._key(path)] = content

    async def create_dir_all(self, path: Path) -> None:
        pass

    async def symlink(self, original: Path, target: Path) -> None:
        raise OSError("Symbolic links are not supported inside archives")

    async def hardlink(self, original: Path, target: Path) -> None:
        key = self._key(original)
        if key not in self._files:
            raise FileNotFoundError(f"{original} has not been written")
        self._files[self._key(target)] = self._files[key]

    async def delete_case_at(self, output: Path) -> None:
        key = self._key(output)
        if key in self._files:
            del self._files[key]
            return
        prefixes = (f"{key}/assets/", f"{key}/index.html") if key != "." else ("assets/", "index.html")
        for name in [n for n in self._files if n.startswith(prefixes)]:
            del self._files[name]

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name in sorted(self._files):
                archive.writestr(name, self._files[name])
        return buffer.getvalue()
