"""The player shell, its scripts and the patches that make it work offline.

One Player is built per run and shared by every case: the shell and the
assembled scripts are fetched once, patched once (CSS, language pack,
Howler, lookup tables over the downloaded default data, ...) and then
rendered per case on fresh copies.

Patch points that are optional upstream only log a warning when missing;
the language include and `</head>` / `</html>` are required.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Literal

from aaoffline.config import Settings
from aaoffline.constants import (
    BITBUCKET_URL,
    CSS_REGEX,
    CSS_SRC_REGEX,
    DEFAULT_SPRITES_REGEX,
    GOOGLE_ANALYTICS_REGEX,
    HOWLER_REGEX,
    HTML_END,
    LANGUAGE_INCLUDE_REGEX,
    LANGUAGE_REGEX,
    PRELOAD_OPTION,
    PRELOAD_PLACES_REGEX,
    PSYCHE_LOCK_REGEX,
    REDIRECTION_REGEX,
    SRC_REGEX,
    STYLE_INCLUDE_REGEX,
    UPDATE_MESSAGE,
    VOICE_REGEX,
)
from aaoffline.extract import PatternNotMatched, parse_json
from aaoffline.http import Download, DownloadError, HttpClient
from aaoffline.models import Case
from aaoffline.modules import ModuleResolver, module_url
from aaoffline.progress import NullProgress, ProgressReporter
from aaoffline.site import SiteData, retrieve_site_data
from aaoffline.templates import (
    BOOTSTRAP_SCRIPT,
    REDIRECT_SWITCH,
    SPRITE_LOOKUP,
    USERSCRIPT_TAG,
    VOICE_LOOKUP,
    js_string,
    render_template,
)
from aaoffline.transform import TextEdit, apply_edits, transform_player_blocks, transform_trial_blocks

logger = logging.getLogger(__name__)

Target = Literal["player", "scripts"]


def merge_json(into: dict[str, Any], other: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge `other` into `into`. Nulls in `other` never overwrite."""
    for key, value in other.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(into.get(key), dict):
            merge_json(into[key], value)
        else:
            into[key] = value
    return into


def _inside(span: tuple[int, int], spans: list[tuple[int, int]]) -> bool:
    return any(start <= span[0] and span[1] <= end for start, end in spans)


class Player:
    """Shared player shell and scripts for a run.

    Use Player.create(), which also fetches the site configuration and
    default data that the asset stage needs.
    """

    def __init__(
        self,
        client: HttpClient,
        settings: Settings,
        site_data: SiteData,
        progress: ProgressReporter | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self.site_data = site_data
        self._progress = progress or NullProgress()
        self.content: str | None = None
        self.scripts: str | None = None

    @classmethod
    async def create(
        cls,
        client: HttpClient,
        settings: Settings,
        progress: ProgressReporter | None = None,
    ) -> Player:
        default_module = await client.get_text(module_url("default_data", settings.player_version))
        site_data = await retrieve_site_data(client, default_module)
        return cls(client, settings, site_data, progress)

    @property
    def _version(self) -> str:
        return self._settings.player_version

    def _require(self) -> tuple[str, str]:
        if self.content is None or self.scripts is None:
            raise RuntimeError("Player shell and scripts must be retrieved first")
        return self.content, self.scripts

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve_player(self) -> None:
        content = await self._client.get_text(f"{BITBUCKET_URL}/{self._version}/player.php")
        # Block offsets upstream are counted from a leading newline.
        self.content = "\n" + content

    async def retrieve_scripts(self) -> None:
        common = await self._client.get_text(f"{BITBUCKET_URL}/{self._version}/Javascript/common.js")
        resolver = ModuleResolver(
            self._client,
            self._version,
            concurrency=self._settings.concurrent_downloads,
            transform=self._transform_module,
            progress=self._progress,
        )
        modules = await resolver.resolve("player")
        self.scripts = render_template(BOOTSTRAP_SCRIPT, {
            "config": self.site_data.site_paths.model_dump_json(),
            "common": common,
            "modules": modules,
        })

    def _transform_module(self, name: str, text: str) -> str:
        if name == "default_data":
            return self.site_data.default_data.write_default_module(text)
        return text

    async def retrieve_userscripts(self, urls: list[str]) -> None:
        content, _ = self._require()
        if not urls:
            return
        self._progress.inc_length(len(urls))

        async def fetch(url: str) -> str:
            text = await self._client.get_text(url)
            self._progress.inc(1)
            return text

        texts = await asyncio.gather(*(fetch(url) for url in urls))
        end = content.rfind(HTML_END)
        if end < 0:
            raise PatternNotMatched(f"Player has no closing html tag. {UPDATE_MESSAGE}")
        replacement = render_template(USERSCRIPT_TAG, {"scripts": "\n\n".join(texts)})
        self.content = apply_edits(
            content, [TextEdit(start=end, end=end + len(HTML_END), replacement=replacement)]
        )

    async def _try_get(self, url: str, what: str) -> Download | None:
        try:
            return await self._client.get(url)
        except DownloadError as e:
            logger.warning("Could not download %s from %s: %s", what, url, e)
            return None
        finally:
            self._progress.inc(1)

    # ------------------------------------------------------------------
    # Patches
    # ------------------------------------------------------------------

    async def retrieve_misc_sources(self, case_outputs: dict[int, Path], output: Path) -> None:
        """Inline external sources and patch the player to work offline.

        `case_outputs` maps every case of this run to the HTML file it is
        written to; `output` is the run's output path.
        """
        player, scripts = self._require()
        sources = {"player": player, "scripts": scripts}
        edits: list[tuple[Target, TextEdit]] = []

        analytics = GOOGLE_ANALYTICS_REGEX.search(player)
        removed: list[tuple[int, int]] = []
        if analytics:
            edits.append(("player", TextEdit.of_match(analytics, "")))
            removed.append(analytics.span())
        else:
            logger.warning("Could not find analytics tag in player. Continuing anyway.")

        def matches(pattern: re.Pattern[str]) -> list[tuple[Target, re.Match[str]]]:
            found: list[tuple[Target, re.Match[str]]] = []
            for target, text in sources.items():
                for match in pattern.finditer(text):
                    if target == "player" and _inside(match.span(), removed):
                        continue
                    found.append((target, match))
            return found

        css = matches(CSS_REGEX)
        styles = matches(STYLE_INCLUDE_REGEX)
        srcs = [
            (target, m) for target, m in matches(SRC_REGEX)
            if not (m.group(1) or m.group(2) or "").startswith("data:")
        ]
        self._progress.inc_length(len(css) + len(styles) + len(srcs))

        if not css:
            logger.warning("Could not find CSS link in player. Continuing anyway.")
        for target, match in css:
            download = await self._try_get(match.group(1), "stylesheet")
            if download is not None:
                edits.append((target, TextEdit.of_match(match, f"<style>{download.text()}</style>")))

        head = player.find("</head>")
        if styles and head < 0:
            raise PatternNotMatched(f"Player has no closing head tag. {UPDATE_MESSAGE}")
        for target, match in styles:
            download = await self._try_get(f"CSS/{match.group(1)}.css", "stylesheet")
            if download is not None:
                edits.append((target, TextEdit.of_match(match, "")))
                edits.append(("player", TextEdit.insert(head, f"\n<style>{download.text()}</style>")))

        edits.extend(("scripts", edit) for edit in await self._language_edits(scripts))

        for target, match in srcs:
            group = 1 if match.group(1) is not None else 2
            download = await self._try_get(match.group(group), "source")
            if download is not None:
                edits.append((target, TextEdit.of_match(match, download.data_url(), group)))

        edits.extend(("scripts", edit) for edit in await self._howler_edits(scripts))
        edits.extend(("scripts", edit) for edit in self._lookup_edits(scripts))
        edits.extend(self._psyche_lock_edits(sources))

        preload = PRELOAD_PLACES_REGEX.search(scripts)
        if preload:
            edits.append(("scripts", TextEdit.of_match(preload, "return;")))
        else:
            logger.warning("Could not find default place preloading. Continuing anyway.")

        edits.extend(("scripts", edit) for edit in self._redirect_edits(scripts, case_outputs, output))

        player = apply_edits(player, [edit for target, edit in edits if target == "player"])
        self.scripts = apply_edits(scripts, [edit for target, edit in edits if target == "scripts"])
        self.content = await self._inline_css_urls(player)

    async def _language_edits(self, scripts: str) -> list[TextEdit]:
        include = LANGUAGE_INCLUDE_REGEX.search(scripts)
        if include is None:
            raise PatternNotMatched(f"Could not find language file include. {UPDATE_MESSAGE}")
        files = parse_json(f"[{include.group(1).replace(chr(39), chr(34))}]", "language file list")

        language = self._settings.language
        lang_dir = self.site_data.site_paths.lang_dir.rstrip("/")
        merged: dict[str, Any] = {}
        for name in files:
            url = f"{lang_dir}/{language}/{name}.js"
            try:
                text = await self._client.get_text(url)
            except DownloadError as e:
                raise DownloadError(
                    f"Could not download language file {name}. "
                    f"Please make sure the language {language!r} exists."
                ) from e
            pack = parse_json(text, f"language file {name}")
            if isinstance(pack, dict):
                merge_json(merged, pack)

        declaration = LANGUAGE_REGEX.search(scripts)
        if declaration is None:
            raise PatternNotMatched(f"Could not find language declaration. {UPDATE_MESSAGE}")
        packed = json.dumps(merged, ensure_ascii=False)
        return [
            TextEdit.of_match(declaration, f"var lang = {packed};"),
            # Nothing left to request, so run the callback right away.
            TextEdit.of_match(include, "", 1),
            TextEdit.of_match(include, "", 2),
            TextEdit.insert(include.end(), f"\n{include.group(2)}"),
        ]

    async def _howler_edits(self, scripts: str) -> list[TextEdit]:
        howler = HOWLER_REGEX.search(scripts)
        if howler is None:
            logger.warning("Could not find Howler include. Continuing anyway.")
            return []
        self._progress.inc_length(1)
        download = await self._try_get(
            f"{BITBUCKET_URL}/{self._version}/Javascript/howler.js/howler.min.js", "Howler.js"
        )
        if download is None:
            return []
        edits = [TextEdit.of_match(howler, f"{download.text()}\n{howler.group(1)}")]

        disable_html5 = self._settings.disable_html5_audio
        if self._settings.one_file:
            if disable_html5:
                logger.warning("HTML5 audio cannot be disabled in single-file mode.")
            return edits
        preload = scripts.find(PRELOAD_OPTION)
        if howler.start() <= preload < howler.end():
            preload = scripts.find(PRELOAD_OPTION, howler.end())
        if preload < 0:
            raise PatternNotMatched(f"Could not find audio preload option. {UPDATE_MESSAGE}")
        html5 = "false" if disable_html5 else "true"
        edits.append(TextEdit.insert(preload + len(PRELOAD_OPTION), f", html5: {html5}"))
        return edits

    def _lookup_edits(self, scripts: str) -> list[TextEdit]:
        default_data = self.site_data.default_data
        edits: list[TextEdit] = []

        voice = VOICE_REGEX.search(scripts)
        if voice:
            voices = [
                {"id": voice_id, "ext": js_string(ext), "url": js_string(url)}
                for (voice_id, ext), url in sorted(default_data.voice_urls.items())
            ]
            edits.append(TextEdit.of_match(voice, render_template(VOICE_LOOKUP, {"voices": voices}), 1))
        else:
            logger.warning("Could not find voice URL function. Continuing anyway.")

        sprites = DEFAULT_SPRITES_REGEX.search(scripts)
        if sprites:
            entries = [
                {"base": js_string(base), "id": sprite_id, "kind": js_string(kind), "url": js_string(url)}
                for (base, sprite_id, kind), url in sorted(default_data.sprite_urls.items())
            ]
            edits.append(
                TextEdit.of_match(sprites, render_template(SPRITE_LOOKUP, {"sprites": entries}), 1)
            )
        else:
            logger.warning("Could not find default sprite function. Continuing anyway.")
        return edits

    def _psyche_lock_edits(self, sources: dict[str, str]) -> list[tuple[Target, TextEdit]]:
        lock_urls = self.site_data.default_data.psyche_lock_urls
        edits: list[tuple[Target, TextEdit]] = []
        for target, text in sources.items():
            for match in PSYCHE_LOCK_REGEX.finditer(text):
                name = match["name"]
                if match["type"]:
                    name = f"jfa_lock{name}"
                lock_id = match["id"]
                if self._settings.one_file:
                    data_url = lock_urls.get(name)
                    if data_url is None:
                        logger.warning("Psyche lock %s was not downloaded.", name)
                        replacement = "''"
                    else:
                        # The id goes into the MIME type, which browsers ignore.
                        replacement = "'" + data_url.replace(";", f"'{lock_id} + ';", 1) + "'"
                else:
                    replacement = f"'assets/{name}_'{lock_id} + '.gif'"
                edits.append((target, TextEdit.of_match(match, replacement, "path")))
        if not edits:
            logger.warning("Could not find psyche lock images. Continuing anyway.")
        return edits

    def _redirect_edits(self, scripts: str, case_outputs: dict[int, Path], output: Path) -> list[TextEdit]:
        redirect = REDIRECTION_REGEX.search(scripts)
        if redirect is None:
            logger.warning("Could not find case redirection. Continuing anyway.")
            return []
        suffix = ""
        if redirect["save"]:
            suffix = f" + '?{js_string(redirect['save'])}' + {redirect['save_value']}"
        cases = []
        for case_id, path in sorted(case_outputs.items()):
            relative = path.relative_to(output).as_posix()
            if not self._settings.one_file:
                # Each case lives in its own directory.
                relative = f"../{relative}"
            cases.append({"id": case_id, "path": js_string(relative), "suffix": suffix})
        switch = render_template(REDIRECT_SWITCH, {"target": redirect["target"], "cases": cases})
        return [TextEdit.of_match(redirect, switch)]

    async def _inline_css_urls(self, player: str) -> str:
        targets = []
        for match in CSS_SRC_REGEX.finditer(player):
            value = match.group(1)
            if not value or value.startswith("data:") or value.endswith("/tick.png"):
                continue
            targets.append(match)
        self._progress.inc_length(len(targets))

        edits = []
        for match in targets:
            value = match.group(1)
            url = value if value.startswith(("http://", "https://")) else f"CSS/{value}"
            download = await self._try_get(url, "CSS dependency")
            if download is not None:
                edits.append(TextEdit.of_match(match, download.data_url(), 1))
        return apply_edits(player, edits)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_case(self, case: Case) -> str:
        """Return the finished HTML page for `case`."""
        player, scripts = self._require()
        case_scripts = transform_trial_blocks(scripts, case)
        return transform_player_blocks(player, case_scripts, case, self._settings.language)
