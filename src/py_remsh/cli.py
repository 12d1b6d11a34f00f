"""Command-line entry point — ``py-remsh``.

One executable plays both roles:

    py-remsh -s [-u PATH | -p PORT [-i HOST]] [-v]     # run the server
    py-remsh -c [-u PATH | -p PORT [-i HOST]]          # interactive client
    py-remsh -c -e "ls | wc -l"                        # one-shot command
    py-remsh -c -f script.txt                          # feed a script

Flags override the ``REMSH_*`` environment variables, which override
the built-in defaults (Unix socket ``/tmp/myshell_socket``).
"""

import argparse
import os
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from py_remsh import __version__
from py_remsh.client import Client, run_once, run_repl, run_script
from py_remsh.config import ConfigError, ServerConfig, TcpAddress, address_from_values
from py_remsh.listener import run_server
from py_remsh.logging import Logger, LogLevel

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _stderr(line: str) -> None:
    print(line, file=sys.stderr, flush=True)  # noqa: T201


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for ``py-remsh``."""
    parser = argparse.ArgumentParser(
        prog="py-remsh",
        description="Remote command shell: run pipelines on a server over a socket.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    role = parser.add_mutually_exclusive_group()
    role.add_argument("-s", "--server", action="store_true", help="run the server (default)")
    role.add_argument("-c", "--client", action="store_true", help="run a client")

    parser.add_argument("-u", "--unix", metavar="PATH", help="Unix socket path")
    parser.add_argument("-p", "--port", metavar="N", help="TCP port (selects TCP)")
    parser.add_argument("-i", "--host", metavar="HOST", help="TCP host (with --port)")

    source = parser.add_mutually_exclusive_group()
    source.add_argument("-e", "--execute", metavar="LINE", help="client: run one command")
    source.add_argument("-f", "--file", metavar="PATH", type=Path, help="client: run a script")

    parser.add_argument("-v", "--verbose", action="store_true", help="server: debug logging")
    return parser


def _resolve_config(args: argparse.Namespace, environ: Mapping[str, str]) -> ServerConfig:
    """Merge CLI flags over the ``REMSH_*`` environment, field by field.

    ``-u`` selects a Unix socket even when ``REMSH_PORT`` is set.

    Raises:
        ConfigError: On a bad port, or ``-i`` without any port.

    """
    port = args.port
    if port is None and args.unix is None:
        port = environ.get("REMSH_PORT")
    address = address_from_values(
        unix_path=args.unix or environ.get("REMSH_SOCKET"),
        host=args.host or environ.get("REMSH_HOST"),
        port=port,
    )
    if args.host is not None and not isinstance(address, TcpAddress):
        msg = "--host needs --port (or REMSH_PORT)"
        raise ConfigError(msg)
    return ServerConfig(address=address)


def _serve(config: ServerConfig, *, verbose: bool) -> int:
    level = LogLevel.DEBUG if verbose else LogLevel.INFO
    logger = Logger(sink=_stderr, sink_level=level)
    try:
        run_server(config, logger=logger)
    except OSError as e:
        _stderr(f"[ERROR] Cannot start server on {config.address}: {e}")
        return EXIT_FAILURE
    return EXIT_OK


def _connect(config: ServerConfig, args: argparse.Namespace) -> int:
    try:
        client = Client.connect(config.address)
    except OSError as e:
        _stderr(f"[ERROR] Cannot connect to {config.address}: {e}")
        return EXIT_FAILURE

    with client:
        if args.execute is not None:
            return run_once(client, args.execute)
        if args.file is not None:
            try:
                lines = args.file.read_text().splitlines()
            except OSError as e:
                _stderr(f"[ERROR] Cannot read script: {e}")
                return EXIT_FAILURE
            return run_script(client, lines)
        return run_repl(client)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse *argv* and run the server or the client.

    Returns:
        The process exit status.

    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.client and (args.execute is not None or args.file is not None):
        parser.error("--execute and --file need --client")

    try:
        config = _resolve_config(args, os.environ)
    except ConfigError as e:
        _stderr(f"[ERROR] {e}")
        return EXIT_USAGE

    if args.client:
        return _connect(config, args)
    return _serve(config, verbose=args.verbose)
