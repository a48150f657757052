# engine/errors.py
from decimal import Decimal
from typing import Any, Dict, Optional


class GameEngineError(Exception):
    """
    Base exception for every rejection the engine can produce.

    Rejections are raised before any state is touched, so catching one
    always leaves the game exactly as it was.
    """
    error_code = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert the rejection to a JSON-friendly dictionary."""
        payload = {
            "error": self.message,
            "error_code": self.error_code,
            "error_type": type(self).__name__,
        }
        for key, value in self.details.items():
            payload[key] = str(value) if isinstance(value, Decimal) else value
        return payload


class ValidationError(GameEngineError):
    """Raised when request input is malformed or out of range."""
    error_code = "VALIDATION_ERROR"


class AdmissionRejected(GameEngineError):
    """Raised when a limit order neither tightens the spread nor crosses."""
    error_code = "TIGHTEN_OR_TRADE"

    def __init__(self, best_bid: Optional[Decimal], best_ask: Optional[Decimal]):
        super().__init__(
            "does not tighten the spread and does not cross",
            best_bid=best_bid,
            best_ask=best_ask,
        )
        self.best_bid = best_bid
        self.best_ask = best_ask


class TurnViolation(GameEngineError):
    """Raised when someone acts while it is another participant's turn."""
    error_code = "NOT_YOUR_TURN"

    def __init__(self, current_player: str):
        super().__init__("Not your turn", current_player=current_player)
        self.current_player = current_player


class InsufficientLiquidity(GameEngineError):
    """Raised when a market order cannot be filled at all."""
    error_code = "INSUFFICIENT_LIQUIDITY"


class NotFoundError(GameEngineError):
    """Raised for unknown order or participant references."""
    error_code = "NOT_FOUND"
    status_code = 404


class PreconditionFailed(GameEngineError):
    """Raised when the game is not in a state that allows the operation."""
    error_code = "PRECONDITION_FAILED"
