# server.py
# CRITICAL: eventlet.monkey_patch() must be called FIRST, before any other imports
import eventlet
eventlet.monkey_patch()

from api.app import main  # noqa: E402


if __name__ == "__main__":
    main()
