import shutil
from pathlib import Path

import numpy as np
import pytest
from click.testing import CliRunner

import refrain.cli
from refrain.cli import cli
from refrain.store import Store

FINGERPRINTS = {
    "alpha.mp3": np.array([5, -3, 8, 0, 2, -7, 4, 4, -1, 6] * 3, dtype=np.int32),
    "beta.wav": np.array([-9, 12, 1, -4, 0, 3, -8, 10, 2, -2] * 3, dtype=np.int32),
    "silence.flac": np.empty(0, dtype=np.int32),
}


@pytest.fixture
def fake_extract(monkeypatch):
    def _extract(path, window_ms, overlap):
        name = Path(path).name
        if name.lower().startswith("input"):
            return FINGERPRINTS["beta.wav"][4:24]
        if name == "broken.ogg":
            raise RuntimeError("ffmpeg failed on broken.ogg")
        return FINGERPRINTS[name]

    monkeypatch.setattr(refrain.cli, "extract", _extract)


def _make_files(directory: Path, names: list[str]) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(name.encode())


def _parse(runner: CliRunner, tmp_path: Path, *extra: str):
    return runner.invoke(
        cli,
        [
            "parse", str(tmp_path / "in"),
            "--processed-dir", str(tmp_path / "done"),
            "--db", str(tmp_path / "lib.db"),
            "--workers", "1",
            *extra,
        ],
    )


def test_parse_indexes_and_moves_files(tmp_path: Path, fake_extract) -> None:
    _make_files(tmp_path / "in", ["alpha.mp3", "beta.wav", "silence.flac", "broken.ogg", "notes.txt"])
    result = _parse(CliRunner(), tmp_path)

    assert result.exit_code == 0, result.output
    assert "Processed: 2" in result.output
    assert "Failed: 2" in result.output
    assert sorted(p.name for p in (tmp_path / "done").iterdir()) == ["alpha.mp3", "beta.wav"]
    assert sorted(p.name for p in (tmp_path / "in").iterdir()) == ["broken.ogg", "notes.txt", "silence.flac"]

    with Store(tmp_path / "lib.db") as store:
        songs = {s.name: s for s in store.all_songs()}
    assert set(songs) == {"alpha.mp3", "beta.wav"}
    assert songs["alpha.mp3"].fingerprint.tolist() == FINGERPRINTS["alpha.mp3"].tolist()


def test_parse_update_skips_known_content(tmp_path: Path, fake_extract) -> None:
    runner = CliRunner()
    _make_files(tmp_path / "in", ["alpha.mp3"])
    assert _parse(runner, tmp_path).exit_code == 0

    _make_files(tmp_path / "in", ["alpha.mp3"])
    result = _parse(runner, tmp_path, "--update")
    assert result.exit_code == 0, result.output
    assert "Nothing to do." in result.output


def test_parse_counts_unmovable_file_as_failed(tmp_path: Path, fake_extract, monkeypatch) -> None:
    real_move = shutil.move

    def _move(src, dst):
        if Path(src).name == "alpha.mp3":
            raise PermissionError("denied")
        return real_move(src, dst)

    monkeypatch.setattr(refrain.cli.shutil, "move", _move)
    _make_files(tmp_path / "in", ["alpha.mp3", "beta.wav"])
    result = _parse(CliRunner(), tmp_path)
    assert result.exit_code == 0, result.output
    assert "FAILED alpha.mp3" in result.output
    assert "Failed: 1" in result.output
    assert (tmp_path / "in" / "alpha.mp3").exists()
    assert (tmp_path / "done" / "beta.wav").exists()

    with Store(tmp_path / "lib.db") as store:
        assert [s.name for s in store.all_songs()] == ["beta.wav"]


def test_workers_help_per_command() -> None:
    runner = CliRunner()
    assert "CPU" in runner.invoke(cli, ["parse", "--help"]).output
    detect_help = runner.invoke(cli, ["detect", "--help"]).output
    assert "match workers" in detect_help
    assert "CPU" not in detect_help


def test_parse_rejects_unusable_overlap(tmp_path: Path, fake_extract) -> None:
    _make_files(tmp_path / "in", ["alpha.mp3"])
    result = _parse(CliRunner(), tmp_path, "--overlap", "0.9999")
    assert result.exit_code == 2
    assert "overlap" in result.output


def test_detect_reports_top_match(tmp_path: Path, fake_extract) -> None:
    runner = CliRunner()
    _make_files(tmp_path / "in", ["alpha.mp3", "beta.wav"])
    assert _parse(runner, tmp_path).exit_code == 0

    clip = tmp_path / "clip" / "input.mp3"
    _make_files(clip.parent, [clip.name])
    result = runner.invoke(
        cli, ["detect", "--input", str(clip), "--db", str(tmp_path / "lib.db"), "--top", "2"]
    )
    assert result.exit_code == 0, result.output
    top = result.output.split("TOP MATCH", 1)[1]
    assert "Song: beta.wav" in top
    assert "Position: 4 frames" in top
    assert "Confidence: 100.0%" in top
    assert "TOP 2 RESULTS" in result.output


def test_detect_finds_input_file_in_cwd(tmp_path: Path, fake_extract, monkeypatch) -> None:
    runner = CliRunner()
    _make_files(tmp_path / "in", ["alpha.mp3", "beta.wav"])
    assert _parse(runner, tmp_path).exit_code == 0

    _make_files(tmp_path / "cwd", ["Input.MP3"])
    monkeypatch.chdir(tmp_path / "cwd")
    result = runner.invoke(cli, ["detect", "--db", str(tmp_path / "lib.db"), "--top", "1"])
    assert result.exit_code == 0, result.output
    assert "Song: beta.wav" in result.output
    assert "RESULTS" not in result.output


def test_detect_on_empty_library_fails(tmp_path: Path, fake_extract) -> None:
    result = CliRunner().invoke(cli, ["detect", "--db", str(tmp_path / "lib.db")])
    assert result.exit_code == 1
    assert "Library is empty" in result.output


def test_export_and_import_commands(tmp_path: Path, fake_extract) -> None:
    runner = CliRunner()
    _make_files(tmp_path / "in", ["alpha.mp3"])
    assert _parse(runner, tmp_path).exit_code == 0

    dump = tmp_path / "database.json"
    result = runner.invoke(cli, ["export", str(dump), "--db", str(tmp_path / "lib.db")])
    assert result.exit_code == 0, result.output
    assert "Exported 1 songs" in result.output

    result = runner.invoke(cli, ["import", str(dump), "--db", str(tmp_path / "other.db")])
    assert result.exit_code == 0, result.output
    assert "Imported 1 songs" in result.output

    result = runner.invoke(cli, ["stats", "--db", str(tmp_path / "other.db")])
    assert "Songs:              1" in result.output
