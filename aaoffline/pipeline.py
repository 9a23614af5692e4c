"""The eight steps of a download run.

    1. case information     (plus other cases of the same sequence)
    2. site configuration   (site paths, default data)
    3. case assets          (collected per case, downloaded all at once)
    4. player shell
    5. player scripts
    6. external player sources
    7. userscripts
    8. write each case

Stages pass their results on through a RunContext. If any stage from 3 on
fails, whatever this run wrote is removed again before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from aaoffline.assets import AssetCollector
from aaoffline.cases import CaseNotFoundError, retrieve_case
from aaoffline.config import Settings
from aaoffline.downloader import AssetDownloader
from aaoffline.http import HttpClient
from aaoffline.models import Case
from aaoffline.player import Player
from aaoffline.progress import ConsoleDialog, Dialog, NullProgress, ProgressReporter
from aaoffline.storage import DiskWriter, FileWriter

logger = logging.getLogger(__name__)

SEQUENCE_QUESTION = "Do you want to download the other cases in this sequence too?"


class RunContext:
    """State shared between the steps of one run."""

    def __init__(
        self,
        settings: Settings,
        client: HttpClient,
        writer: FileWriter,
        progress: ProgressReporter,
        dialog: Dialog,
    ) -> None:
        self.settings = settings
        self.client = client
        self.writer = writer
        self.progress = progress
        self.dialog = dialog
        self.output = settings.output or Path(".")
        self.cases: list[Case] = []
        self.case_outputs: dict[int, Path] = {}
        self.player: Player | None = None

    @property
    def one_case(self) -> bool:
        return len(self.cases) == 1


def case_output_path(output: Path, case: Case, one_case: bool, one_file: bool) -> Path:
    """Where the HTML file of `case` goes."""
    if one_case:
        return output if one_file else output / "index.html"
    if one_file:
        return output / f"{case.filename()}.html"
    return output / case.filename() / "index.html"


def resolve_output(cases: list[Case], output: Path | None, one_file: bool) -> Path:
    """Pick the run's output path once the cases (and their titles) are known."""
    if len(cases) == 1:
        case = cases[0]
        if output is None:
            return Path(case.filename() + (".html" if one_file else ""))
        if one_file and output.suffix.lower() != ".html":
            if output.is_dir():
                output = output / case.filename()
            return output.with_suffix(".html")
        return output
    if output is not None:
        return output
    sequences = {case.sequence.title if case.sequence else None for case in cases}
    if len(sequences) == 1 and None not in sequences:
        # All cases belong to the same sequence.
        return Path(cases[0].sequence.title.strip())
    return Path(".")


def existing_output(case_outputs: dict[int, Path], one_file: bool) -> Path | None:
    """Return the first location a previous run already wrote to, if any."""
    for player_file in case_outputs.values():
        if player_file.is_file():
            return player_file.parent
        assets = player_file.parent / "assets"
        if not one_file and assets.is_dir() and any(assets.iterdir()):
            return player_file.parent
    return None


class Bundler:
    """Runs all steps for the cases in `settings`.

    Args:
        settings: Run options.
        client:   Network client, owned by the caller.
        writer:   Output backend (local filesystem by default).
        progress: Step and item progress sink.
        dialog:   Answers the sequence question.
    """

    def __init__(
        self,
        settings: Settings,
        client: HttpClient,
        writer: FileWriter | None = None,
        progress: ProgressReporter | None = None,
        dialog: Dialog | None = None,
    ) -> None:
        self.ctx = RunContext(
            settings,
            client,
            writer or DiskWriter(),
            progress or NullProgress(),
            dialog or ConsoleDialog(),
        )
        self._fetch_limit = asyncio.Semaphore(settings.concurrent_downloads)

    async def run_all_steps(self) -> list[Path]:
        """Download every case; return the written HTML files."""
        ctx = self.ctx
        settings = ctx.settings

        ctx.progress.next_step(1, "Retrieving case information...")
        await self.retrieve_case_infos()
        if not settings.replace_existing:
            existing = existing_output(ctx.case_outputs, settings.one_file)
            if existing is not None:
                raise OutputExistsError(
                    f'Output at "{existing}" already exists. '
                    "Please remove it or use --replace-existing."
                )
        logger.info(
            "Case%s identified as:%s%s",
            "" if ctx.one_case else "s",
            " " if ctx.one_case else "\n",
            "\n".join(f"• {case}" for case in ctx.cases),
        )

        ctx.progress.next_step(2, "Retrieving site configuration...")
        ctx.player = await Player.create(ctx.client, settings, ctx.progress)

        try:
            await self._write_steps()
        except Exception:
            await self.cleanup()
            raise

        written = [ctx.case_outputs[case.id] for case in ctx.cases]
        if ctx.one_case:
            message = f'Case successfully written to "{written[0]}"!'
        else:
            where = "the current directory" if ctx.output == Path(".") else f'"{ctx.output}"'
            message = f"{len(written)} cases successfully written to {where}!"
        ctx.progress.finish_progress(message)
        return written

    async def _write_steps(self) -> None:
        ctx = self.ctx
        player = ctx.player
        assert player is not None

        count = "" if ctx.one_case else f" for {len(ctx.cases)} cases"
        ctx.progress.next_step(3, f"Downloading case assets{count}... (This may take a while)")
        await self.download_case_data()

        ctx.progress.next_step(4, "Retrieving player...")
        await player.retrieve_player()

        ctx.progress.next_step(5, "Retrieving player scripts...")
        ctx.progress.new_progress(0)
        await player.retrieve_scripts()
        ctx.progress.finish_progress("Player scripts retrieved.")

        ctx.progress.next_step(6, "Retrieving additional external player sources...")
        ctx.progress.new_progress(0)
        await player.retrieve_misc_sources(ctx.case_outputs, ctx.output)
        ctx.progress.finish_progress("All player sources downloaded.")

        ctx.progress.next_step(7, "Applying userscripts...")
        urls = ctx.settings.userscript_urls()
        if urls:
            ctx.progress.new_progress(0)
            await player.retrieve_userscripts(urls)
            ctx.progress.finish_progress("Userscripts retrieved.")

        for case in ctx.cases:
            ctx.progress.next_step(8, f'Writing case "{case.title}" to disk...')
            path = ctx.case_outputs[case.id]
            html = player.render_case(case)
            await ctx.writer.create_dir_all(path.parent)
            await ctx.writer.write(path, html.encode("utf-8"))

    # ------------------------------------------------------------------
    # Step 1
    # ------------------------------------------------------------------

    async def retrieve_case_infos(self) -> list[Case]:
        ctx = self.ctx
        ctx.progress.new_progress(len(ctx.settings.cases))
        cases = await self._fetch_cases(ctx.settings.cases)

        known = {case.id for case in cases}
        additional: list[int] = []
        for case in cases:
            for case_id in self.additional_cases(case):
                if case_id not in known:
                    known.add(case_id)
                    additional.append(case_id)
        if additional:
            ctx.progress.inc_length(len(additional))
            ctx.progress.next_step(1, "Retrieving case information for additional sequence cases...")
            cases.extend(await self._fetch_sequence_cases(additional))

        ctx.cases = cases
        ctx.output = resolve_output(cases, ctx.settings.output, ctx.settings.one_file)
        ctx.case_outputs = {
            case.id: case_output_path(ctx.output, case, ctx.one_case, ctx.settings.one_file)
            for case in cases
        }
        ctx.progress.finish_progress("All case information retrieved.")
        return cases

    async def _fetch_cases(self, ids: list[int]) -> list[Case]:
        async def fetch(case_id: int) -> Case:
            async with self._fetch_limit:
                case = await retrieve_case(self.ctx.client, case_id)
            self.ctx.progress.inc(1)
            return case

        unique = list(dict.fromkeys(ids))
        return list(await asyncio.gather(*(fetch(case_id) for case_id in unique)))

    async def _fetch_sequence_cases(self, ids: list[int]) -> list[Case]:
        """Fetch other cases of a sequence; missing ones are handled per `sequence_errors`."""
        found: list[Case] = []
        missing: list[CaseNotFoundError] = []

        async def fetch(case_id: int) -> None:
            try:
                found.extend(await self._fetch_cases([case_id]))
            except CaseNotFoundError as e:
                missing.append(e)

        await asyncio.gather(*(fetch(case_id) for case_id in ids))
        # Keep the order the sequence lists them in.
        order = {case_id: i for i, case_id in enumerate(ids)}
        found.sort(key=lambda case: order[case.id])
        if not missing:
            return found

        mode = self.ctx.settings.sequence_errors
        if mode == "ask":
            answer = self.ctx.dialog.confirm(
                f"{len(missing)} case(s) of the sequence could not be found. "
                "Continue with the others?",
                False,
            )
            if answer is None:
                raise CancelledByUser("Download cancelled per user request.")
            mode = "continue" if answer else "abort"
        if mode == "abort":
            raise missing[0]
        for error in missing:
            logger.warning("%s Skipping it.", error)
        return found

    def additional_cases(self, case: Case) -> list[int]:
        """Other cases to download because `case` is part of a sequence."""
        sequence = case.sequence
        if sequence is None:
            logger.debug("Not downloading sequence.")
            return []
        logger.debug("Sequence detected: %s", sequence)
        mode = self.ctx.settings.sequence
        if mode == "every":
            return sequence.entry_ids()
        if mode == "single":
            return []
        logger.info('The case "%s" is part of a sequence: %s.', case.title, sequence)
        if len(sequence) <= 1:
            logger.info("However, as there is only one entry in this sequence, we will continue normally.")
            return []
        answer = self.ctx.dialog.confirm(SEQUENCE_QUESTION, False)
        if answer is None:
            raise CancelledByUser("Download cancelled per user request.")
        return sequence.entry_ids() if answer else []

    # ------------------------------------------------------------------
    # Step 3
    # ------------------------------------------------------------------

    async def download_case_data(self) -> None:
        ctx = self.ctx
        player = ctx.player
        assert player is not None
        site_data = player.site_data
        collector = AssetCollector(
            site_data.site_paths, site_data.default_data, ctx.settings.output_mode
        )
        for case in ctx.cases:
            # Assets of each case go next to its own index.html.
            output = ctx.output / case.filename() if not ctx.one_case else ctx.output
            if not ctx.settings.one_file:
                await ctx.writer.create_dir_all(output / "assets")
            collector.collect_case(case, output)

        downloader = AssetDownloader(
            ctx.client,
            ctx.writer,
            concurrency=ctx.settings.concurrent_downloads,
            failure_policy=ctx.settings.failure_policy,
            output_mode=ctx.settings.output_mode,
            progress=ctx.progress,
        )
        ctx.progress.new_progress(0)
        await downloader.download_collected(collector.drain(), ctx.cases, site_data.default_data)
        ctx.progress.finish_progress("Case data downloaded.")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Remove what this run wrote."""
        ctx = self.ctx
        if ctx.output.resolve() == Path("/"):
            raise RuntimeError("Refusing to remove /")
        if ctx.one_case:
            await ctx.writer.delete_case_at(ctx.output)
            return
        for path in ctx.case_outputs.values():
            await ctx.writer.delete_case_at(path if ctx.settings.one_file else path.parent)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OutputExistsError(RuntimeError):
    """Raised when the output location already holds a downloaded case."""


class CancelledByUser(RuntimeError):
    """Raised when the user cancels the sequence question."""
