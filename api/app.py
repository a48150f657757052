# api/app.py
import csv
import hmac
import io
import logging
import os
import secrets
import time
from functools import wraps
from typing import Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_from_directory
from flask_socketio import SocketIO, emit

from engine.errors import GameEngineError, ValidationError
from engine.matcher import GameConfig, GameEngine
from api.broadcast import StateBroadcaster, format_sse

logger = logging.getLogger("orderbook-api")

GAME_NAMESPACE = "/game"
ADMIN_PAGE = "admin-remote.html"
DEFAULT_FRONTEND_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "frontend")

socketio = SocketIO()
bp = Blueprint("game", __name__)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for the server process."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        handlers=handlers
    )


def _engine() -> GameEngine:
    return current_app.extensions["game_engine"]


def _broadcaster() -> StateBroadcaster:
    return current_app.extensions["state_broadcaster"]


# ---- Request helpers ----

def _request_token() -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return request.args.get("token")


def is_admin() -> bool:
    token = _request_token()
    expected = current_app.config["ADMIN_TOKEN"]
    if not token or not expected:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def admin_required(f):
    """Admin token decorator."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_admin():
            logger.warning(f"Rejected admin request to {request.path} from "
                           f"{request.environ.get('REMOTE_ADDR', 'unknown')}")
            return jsonify({"error": "Unauthorized - invalid admin token"}), 401
        return f(*args, **kwargs)
    return decorated_function


def validate_json_request(required_fields: list = None):
    """Decorator to validate JSON requests."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if request.get_data() and request.get_json(force=True, silent=True) is None:
                return jsonify({
                    "error": "Bad JSON",
                    "error_code": "INVALID_JSON"
                }), 400

            data = request.get_json(force=True, silent=True) or {}
            if not isinstance(data, dict):
                return jsonify({
                    "error": "JSON body must be an object",
                    "error_code": "INVALID_JSON"
                }), 400

            if required_fields:
                missing_fields = [field for field in required_fields if data.get(field) is None]
                if missing_fields:
                    return jsonify({
                        "error": f"Missing required fields: {missing_fields}",
                        "error_code": "MISSING_FIELDS"
                    }), 400

            return f(data, *args, **kwargs)
        return decorated_function
    return decorator


def parse_participants_csv(text: str) -> list:
    """Parse `name,count` rows, skipping blank lines and an optional header."""
    rows = []
    for line_no, row in enumerate(csv.reader(io.StringIO(text)), start=1):
        cells = [cell.strip() for cell in row]
        if not any(cells):
            continue
        if line_no == 1 and [c.lower() for c in cells[:2]] == ["name", "count"]:
            continue
        if len(cells) != 2:
            raise ValidationError(f"Line {line_no}: expected name,count", line=line_no)
        rows.append((cells[0], cells[1]))
    return rows


# ---- Static pages ----

@bp.route("/")
@bp.route("/client")
def client_page():
    """Serve the player page."""
    return send_from_directory(current_app.config["FRONTEND_DIR"], "client-remote.html")


@bp.route("/admin")
def admin_page():
    """Serve the admin page (token protected)."""
    if not is_admin():
        return jsonify({"error": "Unauthorized - invalid admin token"}), 401
    return send_from_directory(current_app.config["FRONTEND_DIR"], ADMIN_PAGE)


@bp.route("/<path:filename>")
def static_files(filename):
    """Serve static files."""
    if os.path.basename(filename).lower() == ADMIN_PAGE:
        return admin_page()
    return send_from_directory(current_app.config["FRONTEND_DIR"], filename)


# ---- REST API Endpoints ----

@bp.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    engine = _engine()
    return jsonify({
        "status": "healthy",
        "timestamp": time.time(),
        "uptime": time.time() - engine.metrics["start_time"],
        "version": engine.version,
        "subscribers": _broadcaster().get_subscriber_count()
    }), 200


@bp.route("/statistics", methods=["GET"])
def get_statistics():
    """Get engine statistics."""
    return jsonify(_engine().get_statistics()), 200


@bp.route("/api/state", methods=["GET"])
def get_state():
    return jsonify(_engine().get_snapshot()), 200


@bp.route("/api/admin/state", methods=["GET"])
@admin_required
def get_admin_state():
    return jsonify(_engine().get_snapshot(include_secrets=True)), 200


@bp.route("/api/events", methods=["GET"])
def events():
    """Server-sent event stream of state snapshots."""
    engine = _engine()
    subscription = _broadcaster().subscribe(engine.get_snapshot)

    def event_stream():
        yield "retry: 2000\n\n"
        try:
            for snapshot in subscription:
                yield format_sse(snapshot) if snapshot is not None else ": keep-alive\n\n"
        finally:
            subscription.close()

    return Response(event_stream(), mimetype="text/event-stream", headers={
        "Cache-Control": "no-store",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        "Access-Control-Allow-Origin": "*",
    })


@bp.route("/api/addPlayer", methods=["POST"])
@validate_json_request(required_fields=["name", "count"])
def add_player(data):
    """Self-registration of a participant with their secret value."""
    participant = _engine().register_participant(data["name"], data["count"])
    return jsonify({"ok": True, **participant}), 200


@bp.route("/api/importPlayers", methods=["POST"])
@admin_required
def import_players():
    """Register participants from a `name,count` CSV body."""
    rows = parse_participants_csv(request.get_data(as_text=True))
    imported = _engine().register_participants(rows)
    return jsonify({"ok": True, "imported": imported}), 200


@bp.route("/api/toggleReveal", methods=["POST"])
@admin_required
@validate_json_request(required_fields=["name"])
def toggle_reveal(data):
    revealed = _engine().toggle_reveal(data["name"])
    return jsonify({"ok": True, "revealed": revealed}), 200


@bp.route("/api/submitOrder", methods=["POST"])
@validate_json_request(required_fields=["playerName", "side", "size"])
def submit_order(data):
    """Submit a new limit or market order."""
    logger.info(f"Order submission: {data.get('playerName')} {data.get('side')} "
                f"{data.get('orderType') or 'limit'} size={data.get('size')} price={data.get('price')}")
    result = _engine().submit_order(
        data["playerName"],
        data["side"],
        data["size"],
        price=data.get("price"),
        order_type=data.get("orderType"),
    )
    return jsonify({"ok": True, **result}), 200


@bp.route("/api/cancelOrders", methods=["POST"])
@validate_json_request(required_fields=["playerName"])
def cancel_orders(data):
    cancelled = _engine().cancel_orders(data["playerName"])
    return jsonify({"ok": True, "cancelled": cancelled}), 200


@bp.route("/api/cancelOrder", methods=["POST"])
@admin_required
@validate_json_request(required_fields=["orderId"])
def cancel_order(data):
    cancelled = _engine().cancel_order(data["orderId"])
    return jsonify({"ok": True, "cancelled": cancelled}), 200


@bp.route("/api/reset", methods=["POST"])
@admin_required
def reset_game():
    _engine().reset_game()
    return jsonify({"ok": True}), 200


@bp.route("/api/settle", methods=["POST"])
@admin_required
def settle():
    settled_price = _engine().settle()
    return jsonify({"ok": True, "settledPrice": str(settled_price)}), 200


@bp.route("/api/setTurnOrder", methods=["POST"])
@admin_required
@validate_json_request(required_fields=["turnOrder"])
def set_turn_order(data):
    turn_order = _engine().set_turn_order(data["turnOrder"])
    return jsonify({"ok": True, "turnOrder": turn_order}), 200


@bp.route("/api/setCurrentTurn", methods=["POST"])
@admin_required
@validate_json_request(required_fields=["playerName"])
def set_current_turn(data):
    index = _engine().set_current_turn(data["playerName"])
    return jsonify({"ok": True, "currentTurnIndex": index}), 200


@bp.route("/api/startTurns", methods=["POST"])
@admin_required
def start_turns():
    player = _engine().start_turns()
    return jsonify({"ok": True, "currentPlayer": player}), 200


@bp.route("/api/stopTurns", methods=["POST"])
@admin_required
def stop_turns():
    _engine().stop_turns()
    return jsonify({"ok": True}), 200


# ---- Error Handlers ----

@bp.app_errorhandler(GameEngineError)
def engine_error(error: GameEngineError):
    return jsonify(error.to_dict()), error.status_code


@bp.app_errorhandler(404)
def not_found(error):
    return jsonify({
        "error": "Endpoint not found",
        "error_code": "NOT_FOUND"
    }), 404


@bp.app_errorhandler(405)
def method_not_allowed(error):
    return jsonify({
        "error": "Method not allowed",
        "error_code": "METHOD_NOT_ALLOWED"
    }), 405


@bp.app_errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {getattr(error, 'original_exception', error)!r}")
    return jsonify({
        "error": "Internal server error",
        "error_code": "INTERNAL_ERROR"
    }), 500


# ---- WebSocket Event Handlers ----

@socketio.on("connect", namespace=GAME_NAMESPACE)
def on_connect():
    """Handle client connection and send the current state."""
    session_id = request.sid
    _broadcaster().add_connection(session_id, {"user_agent": request.headers.get("User-Agent", "unknown")})
    logger.info(f"Client connected: {session_id}")
    emit("state", {"type": "state", **_engine().get_snapshot()})


@socketio.on("disconnect", namespace=GAME_NAMESPACE)
def on_disconnect(*args):
    session_id = request.sid
    _broadcaster().remove_connection(session_id)
    logger.info(f"Client disconnected: {session_id}")


@socketio.on("ping", namespace=GAME_NAMESPACE)
def on_ping():
    emit("pong", {"timestamp": time.time(), "version": _engine().version})


# ---- Application Factory ----

def create_app(config=None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)
    app.config.update({
        "SECRET_KEY": os.environ.get("ORDERBOOK_SECRET_KEY") or secrets.token_hex(16),
        "ADMIN_TOKEN": os.environ.get("ORDERBOOK_ADMIN_TOKEN"),
        "FRONTEND_DIR": os.environ.get("ORDERBOOK_FRONTEND_DIR", DEFAULT_FRONTEND_DIR),
        "SOCKETIO_ASYNC_MODE": os.environ.get("ORDERBOOK_ASYNC_MODE", "eventlet"),
        "SSE_KEEPALIVE_SECONDS": float(os.environ.get("ORDERBOOK_SSE_KEEPALIVE", "15")),
        "SSE_QUEUE_SIZE": 64,
        "GAME_CONFIG": None,
    })
    if config:
        app.config.update(config)

    if not app.config["ADMIN_TOKEN"]:
        app.config["ADMIN_TOKEN"] = secrets.token_hex(16)
        logger.warning("=" * 60)
        logger.warning(f"ADMIN TOKEN (save this for admin UI): {app.config['ADMIN_TOKEN']}")
        logger.warning("=" * 60)

    engine = GameEngine(app.config["GAME_CONFIG"] or GameConfig.from_env())
    broadcaster = StateBroadcaster(
        queue_size=app.config["SSE_QUEUE_SIZE"],
        keepalive_seconds=app.config["SSE_KEEPALIVE_SECONDS"],
    )
    app.extensions["game_engine"] = engine
    app.extensions["state_broadcaster"] = broadcaster

    def push_state(snapshot):
        socketio.emit("state", {"type": "state", **snapshot}, namespace=GAME_NAMESPACE)

    # Change notification, performed after each commit
    engine.add_state_handler(broadcaster.publish)
    engine.add_state_handler(push_state)

    app.register_blueprint(bp)
    socketio.init_app(
        app,
        cors_allowed_origins="*",
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
        logger=False,
        engineio_logger=False
    )
    return app


# ---- Run Server ----

def run(host="0.0.0.0", port=8080, debug=False):
    """Run the API server."""
    app = create_app({"DEBUG": debug})
    logger.info(f"Order Book Game server running on http://{host}:{port}")
    logger.info(f"  Players (public):        /client  or  /")
    logger.info(f"  Admin (token-protected): /admin?token=<TOKEN>")

    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        use_reloader=False  # Disable reloader to prevent duplicate processes
    )


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Order Book Game server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", "-p", type=int, default=int(os.environ.get("PORT", 8080)),
                        help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args(argv)

    configure_logging(os.environ.get("ORDERBOOK_LOG_LEVEL", "INFO"), os.environ.get("ORDERBOOK_LOG_FILE"))
    run(host=args.host, port=args.port, debug=args.debug)
