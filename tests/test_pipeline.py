"""Tests for the download pipeline, end to end against the fake site."""

import logging
from pathlib import Path

import pytest

from aaoffline.cases import CaseNotFoundError, case_script_url
from aaoffline.config import Settings
from aaoffline.downloader import AssetDownloadError
from aaoffline.pipeline import (
    SEQUENCE_QUESTION,
    Bundler,
    CancelledByUser,
    OutputExistsError,
    case_output_path,
    existing_output,
    resolve_output,
)
from aaoffline.progress import LogProgress
from aaoffline.storage import ZipWriter
from conftest import GIF, sample_info

SAGA = {"title": "Saga", "list": [{"id": 1, "title": "One"}, {"id": 2, "title": "Two"}]}


class FakeDialog:
    def __init__(self, *answers) -> None:
        self.answers = list(answers)
        self.questions: list[str] = []

    def confirm(self, question: str, default: bool):
        self.questions.append(question)
        return self.answers.pop(0)


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def full_site(site):
    site.add_player()
    site.add_case(1)
    site.fallback = GIF
    return site


def _bundler(client, dialog=None, writer=None, **settings) -> Bundler:
    settings.setdefault("cases", [1])
    return Bundler(Settings(**settings), client, writer=writer, dialog=dialog or FakeDialog())


# ── Output paths ─────────────────────────────────────────────


class TestOutputPaths:
    def test_case_output_path(self, make_case) -> None:
        case = make_case(case_id=3, title="Three")
        out = Path("out")
        assert case_output_path(out, case, one_case=True, one_file=False) == out / "index.html"
        assert case_output_path(out, case, one_case=True, one_file=True) == out
        assert case_output_path(out, case, one_case=False, one_file=False) == out / "Three_3" / "index.html"
        assert case_output_path(out, case, one_case=False, one_file=True) == out / "Three_3.html"

    def test_single_case_defaults_to_its_filename(self, make_case) -> None:
        case = make_case(case_id=3, title="Three")
        assert resolve_output([case], None, one_file=False) == Path("Three_3")
        assert resolve_output([case], None, one_file=True) == Path("Three_3.html")

    def test_single_file_output_gets_html_suffix(self, make_case, workdir: Path) -> None:
        case = make_case(case_id=3, title="Three")
        assert resolve_output([case], Path("mycase"), one_file=True) == Path("mycase.html")
        (workdir / "existing").mkdir()
        assert resolve_output([case], Path("existing"), one_file=True) == Path("existing/Three_3.html")

    def test_given_output_kept(self, make_case) -> None:
        cases = [make_case(case_id=1), make_case(case_id=2)]
        assert resolve_output(cases, Path("here"), one_file=False) == Path("here")

    def test_sequence_title_for_several_cases(self, make_case) -> None:
        cases = [make_case(case_id=1, sequence=SAGA), make_case(case_id=2, sequence=SAGA)]
        assert resolve_output(cases, None, one_file=False) == Path("Saga")

    def test_unrelated_cases_go_to_current_directory(self, make_case) -> None:
        cases = [make_case(case_id=1, sequence=SAGA), make_case(case_id=2)]
        assert resolve_output(cases, None, one_file=False) == Path(".")

    def test_existing_output(self, tmp_path: Path) -> None:
        target = tmp_path / "case" / "index.html"
        assert existing_output({1: target}, one_file=False) is None
        (tmp_path / "case" / "assets").mkdir(parents=True)
        assert existing_output({1: target}, one_file=False) is None
        (tmp_path / "case" / "assets" / "a.png").write_bytes(b"x")
        assert existing_output({1: target}, one_file=False) == tmp_path / "case"
        assert existing_output({1: target}, one_file=True) is None
        target.write_text("<html>")
        assert existing_output({1: target}, one_file=True) == tmp_path / "case"


# ── Step 1: case information and sequences ──────────────────


class TestCaseInformation:
    async def test_single_case(self, site, client, workdir: Path) -> None:
        site.add_case(1)
        bundler = _bundler(client)
        cases = await bundler.retrieve_case_infos()
        assert [case.id for case in cases] == [1]
        assert bundler.ctx.case_outputs == {1: Path("Turnabout Test_1") / "index.html"}

    async def test_duplicate_ids_fetched_once(self, site, client, workdir: Path) -> None:
        site.add_case(1)
        cases = await _bundler(client, cases=[1, 1]).retrieve_case_infos()
        assert len(cases) == 1
        assert site.count(case_script_url(1)) == 1

    async def test_missing_case(self, site, client, workdir: Path) -> None:
        site.add(case_script_url(9), "var trial_information;\n")
        with pytest.raises(CaseNotFoundError):
            await _bundler(client, cases=[9]).retrieve_case_infos()

    async def test_sequence_every(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", SAGA))
        site.add_case(2, sample_info(2, "Two", SAGA))
        dialog = FakeDialog()
        bundler = _bundler(client, dialog, sequence="every")
        cases = await bundler.retrieve_case_infos()
        assert [case.id for case in cases] == [1, 2]
        assert dialog.questions == []
        assert bundler.ctx.output == Path("Saga")
        assert bundler.ctx.case_outputs[2] == Path("Saga") / "Two_2" / "index.html"

    async def test_sequence_single(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", SAGA))
        cases = await _bundler(client, sequence="single").retrieve_case_infos()
        assert [case.id for case in cases] == [1]
        assert site.count(case_script_url(2)) == 0

    async def test_sequence_ask_yes(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", SAGA))
        site.add_case(2, sample_info(2, "Two", SAGA))
        dialog = FakeDialog(True)
        cases = await _bundler(client, dialog).retrieve_case_infos()
        assert [case.id for case in cases] == [1, 2]
        assert dialog.questions == [SEQUENCE_QUESTION]

    async def test_sequence_ask_no(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", SAGA))
        cases = await _bundler(client, FakeDialog(False)).retrieve_case_infos()
        assert [case.id for case in cases] == [1]

    async def test_sequence_ask_cancelled(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", SAGA))
        with pytest.raises(CancelledByUser):
            await _bundler(client, FakeDialog(None)).retrieve_case_infos()

    async def test_one_entry_sequence_not_asked(self, site, client, workdir: Path) -> None:
        site.add_case(1, sample_info(1, "One", {"title": "Solo", "list": [{"id": 1, "title": "One"}]}))
        dialog = FakeDialog()
        await _bundler(client, dialog).retrieve_case_infos()
        assert dialog.questions == []

    async def test_sequence_order_kept(self, site, client, workdir: Path) -> None:
        saga = {"title": "Saga", "list": [{"id": 3, "title": "C"}, {"id": 1, "title": "A"}, {"id": 2, "title": "B"}]}
        for case_id in (1, 2, 3):
            site.add_case(case_id, sample_info(case_id, f"Case {case_id}", saga))
        cases = await _bundler(client, cases=[1], sequence="every").retrieve_case_infos()
        assert [case.id for case in cases] == [1, 3, 2]


class TestSequenceErrors:
    @pytest.fixture
    def broken_saga(self, site):
        saga = {"title": "Saga", "list": [{"id": 1, "title": "A"}, {"id": 2, "title": "B"}, {"id": 3, "title": "C"}]}
        site.add_case(1, sample_info(1, "A", saga))
        site.add(case_script_url(2), "var trial_information;\nvar initial_trial_data;\n")
        site.add_case(3, sample_info(3, "C", saga))
        return site

    async def test_abort(self, broken_saga, client, workdir: Path) -> None:
        bundler = _bundler(client, sequence="every", sequence_errors="abort")
        with pytest.raises(CaseNotFoundError):
            await bundler.retrieve_case_infos()

    async def test_continue(self, broken_saga, client, workdir: Path, caplog) -> None:
        bundler = _bundler(client, sequence="every", sequence_errors="continue")
        with caplog.at_level(logging.WARNING):
            cases = await bundler.retrieve_case_infos()
        assert [case.id for case in cases] == [1, 3]
        assert "ID 2 could not be found! Skipping it." in caplog.text

    async def test_ask(self, broken_saga, client, workdir: Path) -> None:
        dialog = FakeDialog(True)
        bundler = _bundler(client, dialog, sequence="every", sequence_errors="ask")
        cases = await bundler.retrieve_case_infos()
        assert [case.id for case in cases] == [1, 3]
        assert "1 case(s) of the sequence could not be found" in dialog.questions[0]

    async def test_ask_declined(self, broken_saga, client, workdir: Path) -> None:
        bundler = _bundler(client, FakeDialog(False), sequence="every", sequence_errors="ask")
        with pytest.raises(CaseNotFoundError):
            await bundler.retrieve_case_infos()

    async def test_ask_cancelled(self, broken_saga, client, workdir: Path) -> None:
        bundler = _bundler(client, FakeDialog(None), sequence="every", sequence_errors="ask")
        with pytest.raises(CancelledByUser):
            await bundler.retrieve_case_infos()

    async def test_requested_case_always_fatal(self, site, client, workdir: Path) -> None:
        site.add(case_script_url(2), "var trial_information;\n")
        with pytest.raises(CaseNotFoundError):
            await _bundler(client, cases=[2], sequence_errors="continue").retrieve_case_infos()


# ── Full runs ────────────────────────────────────────────────


class TestRunAllSteps:
    async def test_directory_output(self, full_site, client, workdir: Path) -> None:
        written = await _bundler(client, output=Path("out")).run_all_steps()

        assert written == [Path("out/index.html")]
        page = (workdir / "out" / "index.html").read_text(encoding="utf-8")
        assert "<title>Turnabout Test</title>" in page
        assert '"path":"assets/theme-' in page
        assert "https://example.com/theme.mp3" not in page
        assets = workdir / "out" / "assets"
        assert any(p.name.startswith("theme-") for p in assets.iterdir())
        assert (assets / "fg_chains_appear_2.gif").is_symlink()
        assert (assets / "fg_chains_appear_2.gif").read_bytes() == GIF

    async def test_final_message(self, full_site, client, workdir: Path, caplog) -> None:
        bundler = Bundler(Settings(cases=[1], output=Path("out")), client, progress=LogProgress(), dialog=FakeDialog())
        with caplog.at_level(logging.INFO):
            await bundler.run_all_steps()
        assert "[1/8] Retrieving case information..." in caplog.text
        assert "[8/8] Writing case \"Turnabout Test\" to disk..." in caplog.text
        assert 'Case successfully written to "out/index.html"!' in caplog.text

    async def test_single_file_output(self, full_site, client, workdir: Path) -> None:
        written = await _bundler(client, output=Path("case.html"), output_mode="single_file").run_all_steps()

        assert written == [Path("case.html")]
        page = (workdir / "case.html").read_text(encoding="utf-8")
        assert '"path":"data:image/gif;base64,' in page
        assert not (workdir / "assets").exists()

    async def test_sequence_run(self, site, client, workdir: Path) -> None:
        site.add_player()
        site.add_case(1, sample_info(1, "One", SAGA))
        site.add_case(2, sample_info(2, "Two", SAGA))
        site.fallback = GIF

        written = await _bundler(client, sequence="every").run_all_steps()

        assert written == [Path("Saga/One_1/index.html"), Path("Saga/Two_2/index.html")]
        page = (workdir / "Saga" / "One_1" / "index.html").read_text(encoding="utf-8")
        assert "case 2: window.location.href = '../Two_2/index.html'" in page
        assert any((workdir / "Saga" / "Two_2" / "assets").iterdir())

    async def test_archive_output(self, full_site, client, workdir: Path) -> None:
        writer = ZipWriter()
        await _bundler(client, writer=writer, output=Path("out")).run_all_steps()

        assert "out/index.html" in writer.names()
        assert "out/assets/fg_chains_appear_1.gif" in writer.names()
        assert not (workdir / "out").exists()

    async def test_existing_output_refused(self, full_site, client, workdir: Path) -> None:
        (workdir / "out").mkdir()
        (workdir / "out" / "index.html").write_text("old")
        with pytest.raises(OutputExistsError, match="--replace-existing"):
            await _bundler(client, output=Path("out")).run_all_steps()
        assert (workdir / "out" / "index.html").read_text() == "old"

    async def test_existing_output_replaced(self, full_site, client, workdir: Path) -> None:
        (workdir / "out").mkdir()
        (workdir / "out" / "index.html").write_text("old")
        await _bundler(client, output=Path("out"), replace_existing=True).run_all_steps()
        assert "<title>Turnabout Test</title>" in (workdir / "out" / "index.html").read_text(encoding="utf-8")

    async def test_failure_removes_partial_output(self, site, client, workdir: Path) -> None:
        site.add_player()
        site.add_case(1)
        with pytest.raises(AssetDownloadError):
            await _bundler(client, output=Path("out")).run_all_steps()
        assert not (workdir / "out" / "assets").exists()
        assert not (workdir / "out" / "index.html").exists()

    async def test_continue_on_asset_errors(self, site, client, workdir: Path) -> None:
        site.add_player()
        site.add_case(1)
        site.add("https://example.com/theme.mp3", b"ID3music")
        await _bundler(client, output=Path("out"), failure_policy="continue").run_all_steps()
        page = (workdir / "out" / "index.html").read_text(encoding="utf-8")
        assert '"path":"assets/theme-' in page
        assert "https://example.com/sfx.mp3" in page
