"""Flask application factory for the HTTP bridge.

The ``create_app`` function returns a Flask app holding one client
connection to a remote shell server.  Requests are serialized on a
lock because the wire protocol is strictly request/response: two
commands in flight on one socket would interleave their replies.

When a response ends the connection (``[QUIT]``, ``[HALT]``,
``[ABORT]``) the bridge drops its client and reconnects on the next
request.
"""

from __future__ import annotations

import threading

from flask import Flask, Response, jsonify, request

from py_remsh.client import Client
from py_remsh.config import Address, ServerConfig

_HTTP_BAD_REQUEST = 400
_HTTP_BAD_GATEWAY = 502


class _Bridge:
    """A lazily (re)connected client shared by all requests."""

    def __init__(self, address: Address) -> None:
        self._address = address
        self._client: Client | None = None
        self._lock = threading.Lock()

    def execute(self, line: str) -> tuple[str, str, bool]:
        """Run *line*; return (output, marker, closed)."""
        with self._lock:
            if self._client is None:
                self._client = Client.connect(self._address)
            try:
                response = self._client.execute(line)
            except OSError:
                self._drop()
                raise
            if response.is_terminal:
                self._drop()
            return response.payload, response.marker.value, response.is_terminal

    def _drop(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_app(address: Address | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        address: Server endpoint; defaults to the ``REMSH_*`` environment.

    Returns:
        A configured Flask application ready to serve.

    """
    bridge = _Bridge(address or ServerConfig.from_env().address)
    app = Flask(__name__)

    @app.route("/api/execute", methods=["POST"])
    def execute() -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Relay a command line and return JSON output.

        Expects JSON body: ``{"command": "..."}``

        Returns:
            JSON with ``output``, ``marker`` and ``closed`` fields.

        """
        data = request.get_json(silent=True)
        if data is None or "command" not in data:
            return jsonify({"error": "Missing 'command' field"}), _HTTP_BAD_REQUEST

        command: str = data["command"]
        try:
            output, marker, closed = bridge.execute(command)
        except OSError as e:
            return jsonify({"error": f"Server unavailable: {e}"}), _HTTP_BAD_GATEWAY
        return jsonify({"output": output, "marker": marker, "closed": closed})

    @app.route("/api/status")
    def status() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the server's connection table.

        Returns:
            JSON with ``running`` and ``status`` fields.

        """
        try:
            output, _marker, _closed = bridge.execute("stat")
        except OSError:
            return jsonify({"running": False, "status": "Server unavailable."})
        return jsonify({"running": True, "status": output})

    return app


def main() -> None:
    """Run the bridge's development server.

    This is the ``py-remsh-web`` console entry point.
    """
    app = create_app()
    app.run(port=8080)
