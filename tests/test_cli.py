"""Tests for the ``py-remsh`` command line."""

from pathlib import Path

import pytest
from conftest import RunningServer

from py_remsh.cli import EXIT_FAILURE, EXIT_OK, EXIT_USAGE, _resolve_config, build_parser, main
from py_remsh.config import Address, TcpAddress, UnixAddress


def _warm_up(server: RunningServer) -> None:
    """Wait until the server accepts connections."""
    server.connect().close()


# -- Cycle 1: Argument parsing -----------------------------------------------


class TestParser:
    """Verify flag parsing."""

    def test_defaults(self) -> None:
        """No flags means server mode on the default socket."""
        args = build_parser().parse_args([])
        assert not args.client
        assert args.unix is None
        assert args.port is None

    def test_client_tcp(self) -> None:
        """Short flags select client mode over TCP."""
        args = build_parser().parse_args(["-c", "-i", "10.0.0.5", "-p", "5555"])
        assert args.client
        assert args.host == "10.0.0.5"
        assert args.port == "5555"

    def test_roles_are_exclusive(self) -> None:
        """-s and -c cannot be combined."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-s", "-c"])

    def test_execute_and_file_are_exclusive(self) -> None:
        """-e and -f cannot be combined."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-c", "-e", "ls", "-f", "x.txt"])

    def test_execute_needs_client(self) -> None:
        """-e outside client mode is a usage error."""
        with pytest.raises(SystemExit):
            main(["-e", "ls"])


# -- Cycle 2: Address resolution ---------------------------------------------


class TestResolveConfig:
    """Verify how flags merge over the environment."""

    @staticmethod
    def _resolve(argv: list[str], environ: dict[str, str]) -> Address:
        return _resolve_config(build_parser().parse_args(argv), environ).address

    def test_host_with_environment_port(self) -> None:
        """-i combines with REMSH_PORT instead of being dropped."""
        address = self._resolve(["-c", "-i", "10.0.0.5"], {"REMSH_PORT": "5555"})
        assert address == TcpAddress(host="10.0.0.5", port=5555)

    def test_port_flag_with_environment_host(self) -> None:
        """-p picks up REMSH_HOST when -i is absent."""
        address = self._resolve(["-c", "-p", "6000"], {"REMSH_HOST": "10.0.0.9"})
        assert address == TcpAddress(host="10.0.0.9", port=6000)

    def test_unix_flag_beats_environment_port(self, tmp_path: Path) -> None:
        """-u selects a Unix socket even when REMSH_PORT is set."""
        path = str(tmp_path / "s.sock")
        address = self._resolve(["-c", "-u", path], {"REMSH_PORT": "5555"})
        assert address == UnixAddress(path=path)

    def test_environment_only(self) -> None:
        """No address flags falls back to the environment."""
        address = self._resolve(["-c"], {"REMSH_PORT": "7000"})
        assert isinstance(address, TcpAddress)
        assert address.port == 7000

    def test_host_without_port(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """-i with no port anywhere is a usage error, not silently ignored."""
        monkeypatch.delenv("REMSH_PORT", raising=False)
        assert main(["-c", "-i", "10.0.0.5", "-e", "ls"]) == EXIT_USAGE
        assert "--host needs --port" in capsys.readouterr().err


# -- Cycle 3: Failures -------------------------------------------------------


class TestFailures:
    """Verify error exits."""

    def test_bad_port(self, capsys: pytest.CaptureFixture[str]) -> None:
        """A non-numeric port exits with a usage status."""
        assert main(["-c", "-p", "http"]) == EXIT_USAGE
        assert "Invalid TCP port" in capsys.readouterr().err

    def test_bad_port_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """An invalid REMSH_PORT is reported the same way."""
        monkeypatch.setenv("REMSH_PORT", "-")
        assert main(["-c"]) == EXIT_USAGE
        assert "[ERROR]" in capsys.readouterr().err

    def test_no_server(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Connecting to nothing fails cleanly."""
        status = main(["-c", "-u", str(tmp_path / "none.sock"), "-e", "ls"])
        assert status == EXIT_FAILURE
        assert "Cannot connect" in capsys.readouterr().err

    def test_server_cannot_bind(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """A socket path in a missing directory fails to start."""
        status = main(["-s", "-u", str(tmp_path / "missing" / "s.sock")])
        assert status == EXIT_FAILURE
        assert "Cannot start server" in capsys.readouterr().err


# -- Cycle 4: Client modes ---------------------------------------------------


class TestClientModes:
    """Verify one-shot and script modes against a live server."""

    def test_execute(self, server: RunningServer, capsys: pytest.CaptureFixture[str]) -> None:
        """-e runs one command and prints its output."""
        _warm_up(server)
        status = main(["-c", "-u", server.address.path, "-e", "echo hi"])
        assert status == EXIT_OK
        assert capsys.readouterr().out == "hi\n"

    def test_environment_address(
        self,
        server: RunningServer,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """REMSH_SOCKET is used when no address flag is given."""
        _warm_up(server)
        monkeypatch.setenv("REMSH_SOCKET", server.address.path)
        monkeypatch.delenv("REMSH_PORT", raising=False)
        assert main(["-c", "-e", "echo env"]) == EXIT_OK
        assert capsys.readouterr().out == "env\n"

    def test_script(
        self,
        server: RunningServer,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """-f feeds a script file line by line."""
        _warm_up(server)
        script = tmp_path / "script.txt"
        script.write_text("# greet twice\necho one\n\necho two\n")
        assert main(["-c", "-u", server.address.path, "-f", str(script)]) == EXIT_OK
        assert capsys.readouterr().out == "one\ntwo\n"

    def test_missing_script(
        self, server: RunningServer, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """An unreadable script file is reported."""
        _warm_up(server)
        status = main(["-c", "-u", server.address.path, "-f", str(tmp_path / "nope.txt")])
        assert status == EXIT_FAILURE
        assert "Cannot read script" in capsys.readouterr().err
