"""py-remsh — a remote command shell served over a socket.

Clients send command lines; the server parses each line into piped,
optionally redirected external-program invocations, runs them, and
streams the captured result back with a terminal marker.
"""

__version__ = "0.1.0"
