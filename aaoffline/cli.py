"""aaoffline command line.

Downloads Ace Attorney Online cases to be playable offline. Pass the URL
(https://aaonline.fr/player.php?trial_id=YOUR_ID) or just the ID.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from aaoffline.cases import parse_case_id
from aaoffline.config import USERSCRIPTS, Settings, build_client, load_settings
from aaoffline.pipeline import Bundler
from aaoffline.progress import ConsoleDialog, LogProgress
from aaoffline.storage import DiskWriter, FileWriter, ZipWriter
from aaoffline.templates import TemplateError

logger = logging.getLogger(__name__)

USERSCRIPT_CHOICES = ["all", "none", *(name.replace("_", "-") for name in USERSCRIPTS)]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aaoffline",
        description="Downloads an Ace Attorney Online case to be playable offline.",
    )
    parser.add_argument("cases", nargs="+", type=parse_case_id, metavar="CASE",
                        help="URL to the case, or its ID")
    parser.add_argument("-o", "--output", type=Path, default=None,
                        help="Output directory (or .html file with -1). "
                             "Default: title and ID of the case")
    parser.add_argument("-p", "--player-version", default=None,
                        help="Branch or commit of the player to use (default: master)")
    parser.add_argument("-l", "--language", default=None,
                        help="Language to download the player in (default: en)")
    parser.add_argument("-c", "--continue-on-asset-error", action="store_true",
                        help="Continue when an asset could not be downloaded")
    parser.add_argument("-r", "--replace-existing", action="store_true",
                        help="Replace existing output files")
    parser.add_argument("-s", "--sequence", choices=["every", "single", "ask"], default=None,
                        help="Download every case of a sequence the case is part of (default: ask)")
    parser.add_argument("--sequence-error-handling", choices=["abort", "continue", "ask"],
                        default=None,
                        help="What to do when a case of the sequence cannot be found (default: ask)")
    parser.add_argument("-1", "--one-html-file", action="store_true",
                        help="Write a single HTML file with all assets embedded as data URLs")
    parser.add_argument("-u", "--with-userscripts", action="append", default=[],
                        choices=USERSCRIPT_CHOICES, metavar="SCRIPT",
                        help=f"Apply a userscript; may be repeated ({', '.join(USERSCRIPT_CHOICES)})")
    parser.add_argument("-j", "--concurrent-downloads", type=int, default=None,
                        help="How many downloads to run at once (default: 5)")
    parser.add_argument("--retries", type=int, default=None,
                        help="Retries for failed downloads, on top of the first try (default: 3)")
    parser.add_argument("--connect-timeout", type=float, default=None,
                        help="Seconds to wait for a connection, 0 for none (default: 10)")
    parser.add_argument("--read-timeout", type=float, default=None,
                        help="Seconds to wait for data, 0 for none (default: 30)")
    parser.add_argument("--http-handling", choices=["allow", "redirect", "disallow"], default=None,
                        help="How to treat insecure HTTP requests (default: redirect)")
    parser.add_argument("--disable-html5-audio", action="store_true",
                        help="Don't use HTML5 audio for Howler.js (better with a local web server)")
    parser.add_argument("--disable-photobucket-fix", action="store_true",
                        help="Don't work around photobucket watermarks")
    parser.add_argument("--proxy", default=None,
                        help="URL prefix of a proxy that every request is routed through")
    parser.add_argument("--archive", type=Path, default=None,
                        help="Write the output into this ZIP file instead of the filesystem")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More output (repeatable)")
    parser.add_argument("-q", "--quiet", action="count", default=0,
                        help="Less output (repeatable)")
    return parser


def settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map parsed arguments onto Settings fields. Unset options are None."""
    userscripts = [name.replace("-", "_") for name in args.with_userscripts if name != "none"]
    return {
        "cases": args.cases,
        "output": args.output,
        "player_version": args.player_version,
        "language": args.language,
        "failure_policy": "continue" if args.continue_on_asset_error else None,
        "replace_existing": args.replace_existing,
        "sequence": args.sequence,
        "sequence_errors": args.sequence_error_handling,
        "output_mode": "single_file" if args.one_html_file else None,
        "userscripts": userscripts,
        "concurrent_downloads": args.concurrent_downloads,
        "retries": args.retries,
        "connect_timeout": args.connect_timeout,
        "read_timeout": args.read_timeout,
        "http_handling": args.http_handling,
        "disable_html5_audio": args.disable_html5_audio,
        "disable_photobucket_fix": args.disable_photobucket_fix,
        "proxy": args.proxy,
    }


def configure_logging(verbosity: int) -> None:
    levels = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
    level = levels[max(0, min(len(levels) - 1, 2 + verbosity))]
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    # One line per request is too much even for -v.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


async def run(settings: Settings, archive: Path | None = None) -> list[Path]:
    writer: FileWriter = ZipWriter() if archive is not None else DiskWriter()
    async with build_client(settings) as client:
        bundler = Bundler(settings, client, writer, LogProgress(), ConsoleDialog())
        written = await bundler.run_all_steps()
    if isinstance(writer, ZipWriter):
        archive.write_bytes(writer.to_bytes())
        logger.info('Archive written to "%s".', archive)
    return written


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose - args.quiet)
    try:
        settings = load_settings(settings_overrides(args))
    except ValidationError as e:
        print(f"error: invalid settings: {e}", file=sys.stderr)
        return 2
    try:
        asyncio.run(run(settings, args.archive))
    except (RuntimeError, TemplateError, OSError) as e:
        logger.debug("run failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
