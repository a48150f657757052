# engine/__init__.py
"""
Order book game engine package.

This package contains the in-memory engine behind the order book game:

- Order book with strict price-time priority matching at the resting price
- Tighten-or-trade admission control for limit orders
- Average-cost position ledger with realized P&L and cash
- Optional turn-based gating with a mid-price history
- One-shot settlement at the sum of the participants' secret values

Components:
    - Order: a participant's limit or market order
    - OrderBook: resting orders and the matching walk
    - PositionLedger: per-participant accounting driven by trades
    - TurnScheduler: round-robin gate over who may trade next
    - GameEngine: aggregate root exposing every game operation

Usage:
    from engine import GameEngine

    engine = GameEngine()
    engine.register_participant("alice", 2)
    engine.register_participant("bob", 3)
    engine.submit_order("alice", "ask", 2, "5.00")
    result = engine.submit_order("bob", "bid", 1, "5.00")
"""

from .order import Order, BID, ASK, LIMIT, MARKET
from .book import OrderBook, PriceLevel, Trade
from .admission import can_place_order, check_admission
from .ledger import Position, PositionLedger
from .turns import TurnScheduler
from .errors import (
    GameEngineError,
    ValidationError,
    AdmissionRejected,
    TurnViolation,
    InsufficientLiquidity,
    NotFoundError,
    PreconditionFailed,
)
from .matcher import GameEngine, GameConfig, GameState, Participant

__version__ = "1.0.0"
__all__ = [
    # Order components
    "Order", "BID", "ASK", "LIMIT", "MARKET",

    # Book components
    "OrderBook", "PriceLevel", "Trade",
    "can_place_order", "check_admission",

    # Accounting and turns
    "Position", "PositionLedger", "TurnScheduler",

    # Errors
    "GameEngineError", "ValidationError", "AdmissionRejected", "TurnViolation",
    "InsufficientLiquidity", "NotFoundError", "PreconditionFailed",

    # Engine components
    "GameEngine", "GameConfig", "GameState", "Participant",
]
