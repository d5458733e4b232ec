import configparser
import json

import pytest
from typer.testing import CliRunner

from tidal_queue import __main__ as entry
from tidal_queue import __version__
from tidal_queue.cli.app import app
from tidal_queue.exceptions import ConfigurationError

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.ini"


@pytest.fixture
def invoke(config_file):
    def _invoke(*args, input=None):
        return runner.invoke(
            app,
            ["--config", str(config_file), *args],
            env={"REDIS_DISABLED": "true", "COLUMNS": "200"},
            input=input,
        )

    return _invoke


def test_version():
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_init_writes_config(invoke, config_file):
    result = invoke("init", "--no-redis", "--max-concurrent", "3")

    assert result.exit_code == 0
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_file, encoding="utf-8")
    assert parser["DEFAULT"]["redis_disabled"] == "true"
    assert parser["DEFAULT"]["max_concurrent"] == "3"


def test_init_refuses_to_overwrite(invoke, config_file):
    config_file.write_text("[DEFAULT]\n", encoding="utf-8")

    result = invoke("init", input="n\n")

    assert result.exit_code == 1
    assert config_file.read_text(encoding="utf-8") == "[DEFAULT]\n"


def test_enqueue_track(invoke):
    result = invoke("enqueue-track", "42", "--quality", "hi_res_lossless", "--priority", "high")

    assert result.exit_code == 0
    assert "Queued track 42" in result.stdout
    assert "job-" in result.stdout


def test_enqueue_rejects_unknown_quality(invoke):
    result = invoke("enqueue-track", "42", "--quality", "MP3")

    assert result.exit_code == 1
    assert "Queued" not in result.stdout


def test_jobs_warns_about_memory_backend(invoke):
    result = invoke("jobs")

    assert result.exit_code == 0
    assert "Redis is disabled" in result.stdout


def test_stats(invoke):
    result = invoke("stats")

    assert result.exit_code == 0
    assert "Jobs by Status" in result.stdout


def test_show_unknown_job(invoke):
    result = invoke("show", "job-missing")

    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_cancel_unknown_job(invoke):
    assert invoke("cancel", "job-missing").exit_code == 1


def test_worker_rejects_bad_executor(invoke):
    result = invoke("worker", "--executor", "no-colon-here")

    assert result.exit_code == 1


def test_show_config(invoke):
    result = invoke("--show-config")

    assert result.exit_code == 0
    assert "max_concurrent" in result.stdout


def test_stats_json(invoke):
    result = invoke("stats", "--json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["backend"] == "memory"
    assert data["stats"]["total"] == 0
    assert data["metrics"]["avg_success_rate"] == 0.0


class TestEntryPoint:
    def raising(self, monkeypatch, error):
        def _app():
            raise error

        monkeypatch.setattr(entry, "app", _app)

    def test_interrupt_exits_130(self, monkeypatch, capsys):
        self.raising(monkeypatch, KeyboardInterrupt())

        with pytest.raises(SystemExit) as exc:
            entry.main()

        assert exc.value.code == entry.EXIT_INTERRUPTED == 130
        assert "Interrupted" in capsys.readouterr().err

    def test_application_error_exits_1(self, monkeypatch, capsys):
        self.raising(monkeypatch, ConfigurationError("max_concurrent must be at least 1"))

        with pytest.raises(SystemExit) as exc:
            entry.main()

        assert exc.value.code == 1
        assert "max_concurrent must be at least 1" in capsys.readouterr().err

    def test_unexpected_error_exits_1(self, monkeypatch):
        self.raising(monkeypatch, RuntimeError("boom"))

        with pytest.raises(SystemExit) as exc:
            entry.main()

        assert exc.value.code == 1
