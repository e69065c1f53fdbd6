"""
HTTP API: webhook ingestion, smart-timing query and preferences, retry and
admin queue control.

Entry:
    sigalert-api --config config.yaml
"""

import argparse
import hmac
import logging
from functools import wraps
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from sigalert.app import SignalAlertApp
from sigalert.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from sigalert.timeutil import to_iso
from sigalert.timing.gate import SIGNAL_MAJOR

logger = logging.getLogger(__name__)

MAX_FORCE_PROCESS = 1000


def _token_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    return provided is not None and hmac.compare_digest(expected, provided)


def _current_user_id() -> Optional[int]:
    value = request.headers.get("X-User-Id") or request.args.get("user_id")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _json_object() -> dict:
    """Request body as a dict; an absent body is empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


def create_app(
    alert_app: SignalAlertApp,
    webhook_token: Optional[str] = None,
    admin_token: Optional[str] = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        alert_app: Wired pipeline
        webhook_token: Shared secret for the signal webhook, None to disable
        admin_token: Secret for admin endpoints, None to disable
    """
    app = Flask(__name__)
    app.config["ALERT_APP"] = alert_app

    def admin_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not _token_matches(admin_token, request.headers.get("X-Admin-Token")):
                return jsonify({"error": "Admin access required"}), 403
            return view(*args, **kwargs)

        return wrapper

    def user_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user_id = _current_user_id()
            if user_id is None:
                return jsonify({"error": "Unauthorized"}), 401
            return view(user_id, *args, **kwargs)

        return wrapper

    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        body = {"error": e.message}
        if e.field:
            body["field"] = e.field
        return jsonify(body), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(e: NotFoundError):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(InvalidTransitionError)
    def handle_conflict(e: InvalidTransitionError):
        return jsonify({"error": str(e), "status": e.current_status}), 409

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.post("/api/signals/webhook")
    def signal_webhook():
        """Receive a trading signal (TradingView alert format)."""
        data = request.get_json(silent=True)
        provided = request.headers.get("X-Webhook-Token")
        if provided is None and isinstance(data, dict):
            provided = data.get("token")
        if not _token_matches(webhook_token, provided):
            return jsonify({"error": "Unauthorized"}), 401

        if not isinstance(data, dict):
            raise ValidationError("JSON object body required")

        result = alert_app.handle_webhook(data)
        body = {"success": True, "message": "Signal processed successfully"}
        body.update(result.to_dict())
        return jsonify(body)

    @app.post("/api/signals/<int:signal_id>/deactivate")
    @admin_required
    def deactivate_signal(signal_id: int):
        signal = alert_app.store.deactivate(signal_id)
        return jsonify({"success": True, "signal": signal.to_dict()})

    @app.route("/api/smart-timing/should-send", methods=["GET", "POST"])
    @user_required
    def smart_timing_should_send(user_id: int):
        """Ask the gate whether a notification should go out now."""
        if request.method == "POST":
            data = _json_object()
        else:
            data = request.args.to_dict()

        ticker = data.get("tickerSymbol") or data.get("ticker")
        if not ticker or not isinstance(ticker, str):
            raise ValidationError("Ticker symbol is required", field="tickerSymbol")
        signal_type = data.get("signalType") or SIGNAL_MAJOR
        urgency = data.get("urgency") or "normal"
        market_conditions = data.get("marketConditions")
        if not isinstance(market_conditions, dict):
            market_conditions = {}
            if data.get("volatility") is not None:
                market_conditions["volatility"] = data.get("volatility")

        now = alert_app.clock()
        decision = alert_app.should_send(
            user_id,
            ticker,
            signal_type=signal_type,
            urgency=urgency,
            market_conditions=market_conditions,
        )
        return jsonify(
            {
                "shouldSend": decision.should_send,
                "reason": decision.reason,
                "delaySeconds": decision.delay_seconds,
                "suggestedSendTime": to_iso(decision.suggested_send_time(now)),
                "urgency": decision.urgency,
                "tickerSymbol": ticker.upper(),
            }
        )

    @app.route("/api/smart-timing/preferences", methods=["GET", "PUT"])
    @user_required
    def smart_timing_preferences(user_id: int):
        """Read or update the caller's own smart-timing preferences."""
        if request.method == "GET":
            pref, is_default = alert_app.get_preferences(user_id, request.args.get("ticker"))
            return jsonify({"preferences": pref.to_dict(), "is_default": is_default})

        data = _json_object()
        ticker = data.get("ticker_symbol") or request.args.get("ticker")
        if ticker is not None and not isinstance(ticker, str):
            raise ValidationError("ticker_symbol must be a string", field="ticker_symbol")
        pref = alert_app.update_preferences(user_id, data, ticker=ticker)
        return jsonify(
            {
                "message": "Smart timing preferences updated successfully",
                "preferences": pref.to_dict(),
            }
        )

    @app.get("/api/notifications/history")
    @user_required
    def notification_history(user_id: int):
        limit = min(request.args.get("limit", 50, type=int) or 50, 200)
        items = alert_app.queue.history(user_id, limit)
        return jsonify({"notifications": [i.to_dict() for i in items]})

    @app.post("/api/notifications/<int:intent_id>/retry")
    @user_required
    def retry_notification(user_id: int, intent_id: int):
        intent = alert_app.queue.get(intent_id)
        if intent is None or intent.user_id != user_id:
            raise NotFoundError(f"Notification not found: {intent_id}")
        intent = alert_app.retry_notification(intent_id)
        return jsonify({"success": True, "notification": intent.to_dict()})

    @app.post("/api/admin/notification-queue/<int:intent_id>/retry")
    @admin_required
    def admin_retry_notification(intent_id: int):
        intent = alert_app.retry_notification(intent_id)
        return jsonify({"success": True, "notification": intent.to_dict()})

    @app.post("/api/admin/notification-processor/force-process")
    @admin_required
    def force_process():
        """Drain up to ``limit`` due notifications right now."""
        data = _json_object()
        try:
            limit = int(data.get("limit") or request.args.get("limit") or 0)
        except (TypeError, ValueError):
            raise ValidationError("limit must be an integer", field="limit")
        if limit <= 0:
            limit = alert_app.config.dispatcher.batch_size
        limit = min(limit, MAX_FORCE_PROCESS)

        batch = alert_app.process_queue(limit)
        logger.info(f"Force-process drained {batch.processed} notifications")
        return jsonify({"success": True, **batch.to_dict()})

    @app.get("/api/admin/notification-queue/stats")
    @admin_required
    def queue_stats():
        return jsonify(alert_app.queue.stats())

    return app


def main():
    """Serve the API with Flask's built-in server."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Signal alert HTTP API")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    args = parser.parse_args()

    from sigalert.config import load_config
    from sigalert.database.connection import Database

    config = load_config(args.config)

    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db = Database(config.database.path)
    db.initialize()

    alert_app = SignalAlertApp(db=db, config=config)
    app = create_app(
        alert_app,
        webhook_token=config.webhook.token,
        admin_token=config.webhook.admin_token,
    )
    app.run(host=config.webhook.host, port=config.webhook.port, threaded=True)


if __name__ == "__main__":
    main()
