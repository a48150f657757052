# tests/conftest.py
"""Shared fixtures for the engine and API test suite."""

from decimal import Decimal

import pytest

from engine import GameEngine, GameConfig

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def engine():
    """Fresh engine with the default 0.01 tick."""
    return GameEngine(GameConfig())


@pytest.fixture
def players(engine):
    """Engine with alice(2), bob(3) and carol(0) registered."""
    engine.register_participant("alice", 2)
    engine.register_participant("bob", 3)
    engine.register_participant("carol", 0)
    return engine


@pytest.fixture
def app():
    from api.app import create_app

    return create_app({
        "TESTING": True,
        "ADMIN_TOKEN": ADMIN_TOKEN,
        "SOCKETIO_ASYNC_MODE": "threading",
        "SSE_KEEPALIVE_SECONDS": 0.05,
        "GAME_CONFIG": GameConfig(tick_size=Decimal("0.01")),
    })


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_token():
    return ADMIN_TOKEN


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}
