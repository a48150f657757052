# engine/matcher.py
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from engine.admission import check_admission
from engine.book import OrderBook, Trade
from engine.errors import (
    GameEngineError,
    InsufficientLiquidity,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from engine.ledger import PositionLedger, ZERO
from engine.order import Order, SIDES, LIMIT, ORDER_TYPES
from engine.turns import TurnScheduler
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import threading
import logging
import os
import re
import time
from collections import defaultdict


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64

# Letters, digits, underscore, space, dot and hyphen only
NAME_PATTERN = re.compile(r"[\w .-]+")


class GameConfig:
    """Trading limits for one game."""

    def __init__(self, tick_size: Decimal = Decimal("0.01"),
                 max_order_size: int = 10_000,
                 max_price: Decimal = Decimal("1000000")):
        self.tick_size = Decimal(tick_size)
        self.max_order_size = int(max_order_size)
        self.max_price = Decimal(max_price)
        if self.tick_size <= 0:
            raise ValueError("tick_size must be positive")

    @classmethod
    def from_env(cls, environ=None) -> "GameConfig":
        """Build a config from ORDERBOOK_* environment variables."""
        environ = os.environ if environ is None else environ
        return cls(
            tick_size=Decimal(environ.get("ORDERBOOK_TICK_SIZE", "0.01")),
            max_order_size=int(environ.get("ORDERBOOK_MAX_ORDER_SIZE", "10000")),
            max_price=Decimal(environ.get("ORDERBOOK_MAX_PRICE", "1000000")),
        )


@dataclass
class Participant:
    name: str
    secret_value: Decimal
    revealed: bool = False

    def to_dict(self, include_secret: bool = False) -> dict:
        visible = include_secret or self.revealed
        return {
            "secret_value": str(self.secret_value) if visible else None,
            "revealed": self.revealed,
        }


class GameState:
    """Everything a game owns; replaced wholesale on reset."""

    def __init__(self):
        self.participants: Dict[str, Participant] = {}
        self.book = OrderBook()
        self.trades: List[Trade] = []
        self.ledger = PositionLedger()
        self.turns = TurnScheduler()
        self.next_order_id: int = 1
        self.settled_price: Optional[Decimal] = None

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        state = {
            "players": {name: p.to_dict(include_secrets) for name, p in self.participants.items()},
            "orders": [order.to_dict() for order in self.book.all_orders()],
            "trades": [trade.to_dict() for trade in self.trades],
            "positions": self.ledger.to_dict(mark=self.book.mid_price()),
            "order_id_counter": self.next_order_id,
            "settled_price": str(self.settled_price) if self.settled_price is not None else None,
            "bbo": self.book.get_bbo(),
            "depth": self.book.get_depth(),
        }
        state.update(self.turns.to_dict())
        return state


class GameEngine:
    """
    Aggregate root of one order book game.

    Every mutating operation runs under a single lock from validation through
    the version bump, so no two orders can be admitted against the same book
    state. State handlers are notified after the lock is released.
    """

    def __init__(self, config: GameConfig = None):
        self.config = config or GameConfig()
        self.state = GameState()
        self.version: int = 1

        # Thread safety - single lock for simplicity and correctness
        self._lock = threading.RLock()

        # Event handlers - called with the public snapshot after each commit
        self.state_handlers: List[Callable[[Dict], None]] = []

        self.metrics = {
            "orders_processed": 0,
            "trades_executed": 0,
            "total_volume": 0,
            "start_time": time.time()
        }
        self.error_counts = defaultdict(int)

        logger.info(f"GameEngine initialized (tick_size={self.config.tick_size})")

    # ---- Handlers ----

    def add_state_handler(self, handler: Callable[[Dict], None]) -> None:
        """Add a handler called with every committed snapshot."""
        self.state_handlers.append(handler)

    def _emit_state(self, snapshot: Dict) -> None:
        """Emit state to all handlers."""
        for handler in self.state_handlers:
            try:
                handler(snapshot)
            except Exception as e:
                logger.error(f"State handler error: {e}")

    @contextmanager
    def _mutation(self, operation: str):
        """
        Run one mutating operation atomically.

        Rejections propagate untouched; on success the version is bumped
        exactly once and handlers see the committed snapshot.
        """
        with self._lock:
            try:
                yield self.state
            except GameEngineError as e:
                self.error_counts[type(e).__name__] += 1
                logger.warning(f"{operation} rejected: {e}")
                raise
            self.version += 1
            snapshot = self._snapshot(include_secrets=False)
        self._emit_state(snapshot)

    # ---- Validation ----

    @staticmethod
    def _validate_name(name, field: str = "playerName") -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{field} must be a non-empty string")
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"{field} longer than {MAX_NAME_LENGTH} characters")
        if not NAME_PATTERN.fullmatch(name):
            raise ValidationError(f"{field} may only contain letters, digits, spaces, \"_\", \".\" and \"-\"")
        return name

    @staticmethod
    def _to_decimal(value, field: str) -> Decimal:
        if isinstance(value, bool) or value is None:
            raise ValidationError(f"Invalid {field}")
        try:
            number = Decimal(str(value).strip())
        except (InvalidOperation, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid {field}: {e}")
        if not number.is_finite():
            raise ValidationError(f"Invalid {field}")
        return number

    def _validate_size(self, size) -> int:
        number = self._to_decimal(size, "size")
        if number != number.to_integral_value() or number <= 0:
            raise ValidationError("Invalid size", size=str(size))
        if number > self.config.max_order_size:
            raise ValidationError(f"Size above maximum: {self.config.max_order_size}")
        return int(number)

    def _validate_price(self, price) -> Decimal:
        number = self._to_decimal(price, "price")
        if number <= 0:
            raise ValidationError("Invalid price", price=str(price))
        if number > self.config.max_price:
            raise ValidationError(f"Price above maximum: {self.config.max_price}")
        if number % self.config.tick_size != 0:
            raise ValidationError(f"Price must be a multiple of {self.config.tick_size}")
        return number

    def _validate_secret(self, value) -> Decimal:
        number = self._to_decimal(value, "count")
        if number < 0:
            raise ValidationError("Invalid input: count must be >= 0")
        return number

    def _validate_order_params(self, name, side, size, price, order_type) -> Tuple:
        """Validate and normalize order parameters."""
        name = self._validate_name(name)
        if not isinstance(side, str) or side.lower().strip() not in SIDES:
            raise ValidationError("Invalid side", side=side)
        side = side.lower().strip()

        order_type = (order_type or LIMIT)
        if not isinstance(order_type, str) or order_type.lower().strip() not in ORDER_TYPES:
            raise ValidationError("Invalid order type", order_type=order_type)
        order_type = order_type.lower().strip()

        size = self._validate_size(size)
        validated_price = self._validate_price(price) if order_type == LIMIT else None
        return name, side, size, validated_price, order_type

    # ---- Participants ----

    def register_participant(self, name, secret_value) -> Dict:
        """Add a participant, or replace the secret of an existing one."""
        with self._mutation("register_participant") as state:
            name = self._validate_name(name, "name")
            secret = self._validate_secret(secret_value)
            state.participants[name] = Participant(name, secret)
            state.ledger.ensure(name)
            logger.info(f"Registered participant {name}")
            return {"name": name, "revealed": False}

    def register_participants(self, rows: Iterable[Tuple[Any, Any]]) -> int:
        """Register many participants at once; one bad row rejects them all."""
        with self._mutation("register_participants") as state:
            validated = [
                (self._validate_name(name, "name"), self._validate_secret(value))
                for name, value in rows
            ]
            if not validated:
                raise ValidationError("No participants to import")

            for name, secret in validated:
                state.participants[name] = Participant(name, secret)
                state.ledger.ensure(name)
            logger.info(f"Imported {len(validated)} participants")
            return len(validated)

    def toggle_reveal(self, name) -> bool:
        with self._mutation("toggle_reveal") as state:
            name = self._validate_name(name, "name")
            participant = state.participants.get(name)
            if participant is None:
                raise NotFoundError("Invalid player", player=name)
            participant.revealed = not participant.revealed
            return participant.revealed

    # ---- Orders ----

    def submit_order(self, name, side, size, price=None,
                     order_type: Optional[str] = LIMIT) -> Dict[str, Any]:
        """
        Admit, match and book one order.

        Returns:
            Dict containing order_id, trades, filled/unfilled size and whether
            a remainder rests on the book
        """
        with self._mutation("submit_order") as state:
            name, side, size, price, order_type = self._validate_order_params(
                name, side, size, price, order_type
            )
            book = state.book
            state.turns.check_turn(name)

            order = Order(
                order_id=state.next_order_id,
                owner=name,
                side=side,
                price=price,
                size=size,
                order_type=order_type,
            )
            if order_type == LIMIT:
                check_admission(side, price, *book.best_prices())
            elif book.available_liquidity(order) == 0:
                raise InsufficientLiquidity(
                    "Insufficient liquidity - market order could not be filled",
                    requested=size,
                )

            state.next_order_id += 1
            state.ledger.ensure(name)
            trades, resting = book.submit(order)

            for trade in trades:
                state.trades.append(trade)
                state.ledger.apply_trade(trade)
                self.metrics["total_volume"] += trade.size
                logger.info(f"Trade {trade.trade_id}: {trade.buyer} buys from {trade.seller} "
                            f"@ {trade.price} x {trade.size}")

            filled = size - order.size
            unfilled = 0 if resting else order.size

            state.turns.advance(book.mid_price())

            self.metrics["orders_processed"] += 1
            self.metrics["trades_executed"] += len(trades)

            logger.debug(f"Order submitted: {order.order_id} {side} {size}@{price or 'MKT'} "
                         f"-> {len(trades)} trades")
            return {
                "order_id": order.order_id,
                "trades": [trade.to_dict() for trade in trades],
                "filled": filled,
                "unfilled": unfilled,
                "resting": resting,
            }

    def cancel_orders(self, name) -> int:
        """Cancel every resting order of a participant."""
        with self._mutation("cancel_orders") as state:
            name = self._validate_name(name)
            state.turns.check_turn(name)
            cancelled = state.book.cancel_owner(name)
            if cancelled:
                state.turns.advance(state.book.mid_price())
            logger.info(f"Cancelled {len(cancelled)} orders for {name}")
            return len(cancelled)

    def cancel_order(self, order_id) -> int:
        """Cancel a single resting order by id."""
        with self._mutation("cancel_order") as state:
            number = self._to_decimal(order_id, "orderId")
            if number != number.to_integral_value():
                raise ValidationError("Invalid orderId", order_id=str(order_id))
            order_id = int(number)
            if state.book.cancel(order_id) is None:
                raise NotFoundError("Order not found", order_id=order_id)
            logger.info(f"Cancelled order {order_id}")
            return 1

    # ---- Game lifecycle ----

    def reset_game(self) -> None:
        with self._mutation("reset_game"):
            self.state = GameState()
            logger.info("Game reset")

    def settle(self) -> Decimal:
        """
        Close all open positions at the sum of every participant's secret value.

        Returns:
            The settlement price
        """
        with self._mutation("settle") as state:
            settlement_price = sum((p.secret_value for p in state.participants.values()), ZERO)
            if settlement_price == 0:
                raise PreconditionFailed("No players added yet - nothing to settle")

            state.ledger.settle(settlement_price)
            state.settled_price = settlement_price
            logger.info(f"Contract settled at {settlement_price}")
            return settlement_price

    # ---- Turns ----

    def set_turn_order(self, names) -> List[str]:
        with self._mutation("set_turn_order") as state:
            state.turns.set_order(names, state.participants)
            return list(state.turns.turn_order)

    def set_current_turn(self, name) -> int:
        with self._mutation("set_current_turn") as state:
            return state.turns.set_current(name)

    def start_turns(self) -> str:
        with self._mutation("start_turns") as state:
            player = state.turns.start()
            logger.info(f"Turns started, {player} to play")
            return player

    def stop_turns(self) -> None:
        with self._mutation("stop_turns") as state:
            state.turns.stop()
            logger.info("Turns stopped")

    # ---- Queries ----

    def _snapshot(self, include_secrets: bool) -> Dict[str, Any]:
        return {"version": self.version, "state": self.state.to_dict(include_secrets)}

    def get_snapshot(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Consistent copy of the full state plus its version."""
        with self._lock:
            return self._snapshot(include_secrets)

    def get_statistics(self) -> Dict:
        """Get engine statistics."""
        with self._lock:
            uptime = time.time() - self.metrics["start_time"]
            stats = self.metrics.copy()
            stats.update({
                "uptime_seconds": uptime,
                "version": self.version,
                "players": len(self.state.participants),
                "book": self.state.book.get_statistics(),
                "error_counts": dict(self.error_counts)
            })
            return stats
