"""HTTP bridge to a running remote shell server.

This package provides a Flask application that relays commands from
HTTP requests to a ``py-remsh`` server.  It is an **optional** extra —
install with::

    pip install py-remsh[web]

The ``create_app`` factory in ``app.py`` keeps one client connection
open and serves two endpoints:

- ``POST /api/execute`` — run a command line and return JSON.
- ``GET /api/status`` — the server's connection table.
"""
