"""Tests for the pingflux entry point and its fatal-error handling."""

import pytest

import pingflux.__main__ as cli
from pingflux.client import MetricsUnavailableError
from pingflux.fake_client import RecordingClient
from pingflux.supervisor import ProbeLaunchError


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    monkeypatch.delenv(cli.BACKEND_ENV, raising=False)
    path = tmp_path / "pingflux.yaml"
    path.write_text("hosts: [gw.lan]\nhostname: probe1\n")
    return path


def fake_run(result=0, error=None, calls=None):
    def run(settings, client=None):
        if calls is not None:
            calls.append((settings, client))
        if error is not None:
            raise error
        return result

    return run


class TestMain:
    """Test exit codes and backend selection in main()."""

    def test_returns_fping_status(self, config_file, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, "run", fake_run(result=0, calls=calls))

        assert cli.main([str(config_file)]) == 0

        settings, client = calls[0]
        assert settings.hosts == ["gw.lan"]
        assert client is None

    def test_fake_backend(self, config_file, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, "run", fake_run(calls=calls))
        monkeypatch.setenv(cli.BACKEND_ENV, "fake")

        cli.main([str(config_file)])

        assert isinstance(calls[0][1], RecordingClient)

    def test_missing_config(self, config_file, tmp_path):
        assert cli.main([str(tmp_path / "absent.yaml")]) == 1

    @pytest.mark.parametrize(
        "error",
        [
            MetricsUnavailableError("Unable to ping InfluxDB"),
            ProbeLaunchError("fping not found on PATH"),
            OSError("read error"),
        ],
    )
    def test_fatal_errors_exit_1(self, config_file, monkeypatch, error):
        monkeypatch.setattr(cli, "run", fake_run(error=error))

        assert cli.main([str(config_file)]) == 1

    def test_interrupt_exits_cleanly(self, config_file, monkeypatch):
        monkeypatch.setattr(cli, "run", fake_run(error=KeyboardInterrupt()))

        assert cli.main([str(config_file)]) == 0
