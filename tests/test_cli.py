import json
from unittest.mock import patch

import pytest

from vidpipe.cli import main


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("vidpipe.cli.configure_logging"):
        yield


@pytest.fixture
def cli(tmp_path):
    """Run the CLI against a temporary database and storage root."""
    base = ["--db", str(tmp_path / "cli.db"), "--storage", str(tmp_path / "storage")]

    def _run(*args):
        return main(base + list(args))

    return _run


@pytest.fixture
def registered(cli, source_video, capsys):
    assert cli("add", str(source_video), "--title", "Week 1") == 0
    out = capsys.readouterr().out
    return out.split()[2]


def test_cli_help_displays():
    """Test --help works without errors."""
    with pytest.raises(SystemExit) as exc_info:
        main(["--help"])
    assert exc_info.value.code == 0


def test_cli_process_help():
    """Test process subcommand help."""
    with pytest.raises(SystemExit) as exc_info:
        main(["process", "--help"])
    assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    assert main([]) == 0
    assert "usage:" in capsys.readouterr().out.lower()


def test_cli_queue_without_subcommand_shows_help():
    with pytest.raises(SystemExit) as exc_info:
        main(["queue"])
    assert exc_info.value.code == 0


def test_cli_check_all_found(tmp_path, capsys):
    """Test check command when ffmpeg and ffprobe run."""
    with patch("vidpipe.cli.check_binary", return_value=True):
        code = main(["--storage", str(tmp_path / "s"), "--ffmpeg", "/usr/bin/ffmpeg", "check"])
    assert code == 0
    assert "ffmpeg found" in capsys.readouterr().out


def test_cli_check_ffmpeg_not_found(tmp_path, capsys):
    """Test check command when ffmpeg is not runnable."""
    with patch("vidpipe.cli.check_binary", side_effect=[False, True]):
        code = main(["--storage", str(tmp_path / "s"), "--ffmpeg", "/nope/ffmpeg", "check"])
    assert code == 1
    assert "not runnable" in capsys.readouterr().out.lower()


def test_cli_add_and_list(cli, registered, capsys):
    assert cli("list") == 0
    out = capsys.readouterr().out
    assert registered in out
    assert "Week 1" in out
    assert "uploaded" in out


def test_cli_add_rejects_non_video(cli, tmp_path, capsys):
    path = tmp_path / "notes.txt"
    path.write_text("hello")

    assert cli("add", str(path)) == 1
    assert "Error:" in capsys.readouterr().err


def test_cli_process_and_status(cli, registered, capsys):
    code = cli(
        "process",
        registered,
        "--quality", "720p",
        "--format", "mp4",
        "--no-thumbnails",
        "--no-preview",
        "--metadata-mode", "job",
    )
    assert code == 0
    assert "1 rendition(s) queued" in capsys.readouterr().out

    assert cli("status", registered, "--json") == 0
    status = json.loads(capsys.readouterr().out)
    assert status["status"] == "processing"
    assert status["total_jobs"] == 2
    assert status["variants"][0]["quality"] == "720p"


def test_cli_process_conflict(cli, registered, capsys):
    args = ("process", registered, "--no-thumbnails", "--no-preview", "--metadata-mode", "job")
    assert cli(*args) == 0
    capsys.readouterr()

    assert cli(*args) == 1
    assert "already being processed" in capsys.readouterr().err


def test_cli_cancel(cli, registered, capsys):
    cli("process", registered, "--quality", "720p", "--format", "mp4",
        "--no-thumbnails", "--no-preview", "--metadata-mode", "job")
    capsys.readouterr()

    assert cli("cancel", registered) == 0
    assert "Cancelled 2 queued job(s)" in capsys.readouterr().out

    cli("status", registered)
    assert "failed" in capsys.readouterr().out


def test_cli_retry_requires_failed_video(cli, registered, capsys):
    assert cli("retry", registered) == 1
    assert "only failed videos" in capsys.readouterr().err


def test_cli_status_unknown_video(cli, capsys):
    assert cli("status", "missing") == 1
    assert "Video not found" in capsys.readouterr().err


def test_cli_queue_pause_resume(cli, capsys):
    assert cli("queue", "pause", "low") == 0
    assert cli("queue", "stats") == 0
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "paused" in out

    assert cli("health") == 0
    health = json.loads(capsys.readouterr().out)
    assert health["details"]["paused_lanes"] == ["low"]

    assert cli("queue", "resume", "low") == 0
    capsys.readouterr()
    cli("health")
    assert json.loads(capsys.readouterr().out)["details"]["paused_lanes"] == []


def test_cli_delete(cli, registered, capsys):
    assert cli("delete", registered) == 0
    capsys.readouterr()

    cli("list")
    assert registered not in capsys.readouterr().out


def test_cli_metrics(cli, registered, capsys):
    assert cli("metrics") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["system"]["total_videos"] == 1
    assert len(data["job_types"]) == 4


def test_cli_run_drain_empty_queue(cli, capsys):
    assert cli("run", "--drain", "--timeout", "5") == 0
    assert "QUEUE STATUS" in capsys.readouterr().out
