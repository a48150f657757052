# api/__init__.py
"""
Flask API package for the order book game.

This package exposes the game engine over HTTP with push updates:

- JSON endpoints for every player and admin operation
- Server-sent event stream of full state snapshots
- Socket.IO `state` events on the /game namespace
- Admin token check for privileged operations
- CSV import of participants

Usage:
    from api.app import create_app, socketio

    app = create_app()
    socketio.run(app, host="0.0.0.0", port=8080)
"""

from .app import create_app, main, run, socketio

__version__ = "1.0.0"
__all__ = ["create_app", "main", "run", "socketio"]
