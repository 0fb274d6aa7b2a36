"""Tests for the command line entry point."""

import logging
from unittest.mock import patch

import pytest

from nm_file_secret_agent import cli
from nm_file_secret_agent.session import AgentSession


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[[entry]]\nmatch_type = "wireguard"\nkey = "private-key"\nfile = "/run/secrets/wg"\n')
    return path


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep pytest's log capture in place."""
    with patch.object(cli, "configure_logging"):
        yield


class TestParser:
    def test_config_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args([])

        assert exc_info.value.code == 2

    def test_verbosity_counters(self):
        args = cli.build_parser().parse_args(["--conf", "c.toml", "-vv", "-q"])

        assert args.config == "c.toml"
        assert args.verbose == 2
        assert args.quiet == 1


class TestMain:
    """Tests for the main entry point."""

    def test_invalid_config_exits_with_error(self, tmp_path, caplog):
        """Test that configuration errors stop the agent before it touches the bus."""
        path = tmp_path / "config.toml"
        path.write_text("[[entry]]\nkey = 1\n")

        with patch("nm_file_secret_agent.transport.dbus_transport.DBusManagerTransport") as transport_cls:
            with caplog.at_level(logging.ERROR):
                assert cli.main(["-c", str(path)]) == cli.EXIT_CONFIG_ERROR

        transport_cls.assert_not_called()
        assert "Invalid configuration" in caplog.text
        assert f"config={path}" in caplog.text

    def test_invalid_environment_exits_with_error(self, config_file, monkeypatch):
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_BUS", "nope")

        assert cli.main(["-c", str(config_file)]) == cli.EXIT_CONFIG_ERROR

    def test_runs_session(self, config_file, monkeypatch):
        """Test that a valid config starts a session on the configured bus."""
        monkeypatch.setenv("NM_FILE_SECRET_AGENT_IDENTITY", "test-agent")
        monkeypatch.delenv("NM_FILE_SECRET_AGENT_BUS", raising=False)

        with (
            patch("nm_file_secret_agent.transport.dbus_transport.DBusManagerTransport") as transport_cls,
            patch.object(cli, "install_signal_handlers") as install_handlers,
            patch.object(AgentSession, "run") as run,
        ):
            assert cli.main(["--conf", str(config_file), "-v"]) == cli.EXIT_OK

        transport_cls.assert_called_once_with(bus="system", call_timeout=5.0)
        run.assert_called_once_with()

        (session,) = install_handlers.call_args.args
        assert session.identity == "test-agent"
        assert len(session.rules) == 1
        cli.configure_logging.assert_called_once_with(1, 0)

    def test_signal_handler_requests_shutdown(self, monkeypatch):
        """Test that SIGTERM asks the session to stop."""
        handlers = {}
        monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler))
        session = AgentSession(transport=None, rules=None)

        cli.install_signal_handlers(session)
        handlers[cli.signal.SIGTERM](cli.signal.SIGTERM, None)

        assert session.shutdown_requested
