"""
CLI commands for sigalert.
"""

import argparse
import json
from typing import Optional

from dotenv import load_dotenv

from sigalert.app import SignalAlertApp
from sigalert.database.connection import Database
from sigalert.database.models import (
    CHANNELS,
    CONDITIONS,
    SIGNAL_FREQUENCIES,
    AlertRule,
    SmartTimingPreference,
    UserProfile,
)
from sigalert.errors import SigalertError


def add_user(
    app: SignalAlertApp,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    telegram_chat_id: Optional[str] = None,
    channels: Optional[list[str]] = None,
) -> UserProfile:
    """Add a new user."""
    channels = channels or ["app"]
    unknown = [c for c in channels if c not in CHANNELS]
    if unknown:
        raise ValueError(f"Unknown channels: {', '.join(unknown)}")
    user = UserProfile(
        email=email,
        phone=phone,
        telegram_chat_id=telegram_chat_id,
        channels=channels,
    )
    return app.user_repo.create(user, app.clock())


def add_rule(
    app: SignalAlertApp,
    user_id: int,
    ticker: str,
    condition: str,
    target_value: float,
    one_shot: bool = True,
) -> AlertRule:
    """Add an alert rule for a user."""
    if condition not in CONDITIONS:
        raise ValueError(f"Unknown condition: {condition}")
    rule = AlertRule(
        user_id=user_id,
        ticker=ticker.upper(),
        condition=condition,
        target_value=target_value,
        one_shot=one_shot,
    )
    return app.rule_repo.create(rule, app.clock())


def set_preferences(app: SignalAlertApp, user_id: int, **fields) -> SmartTimingPreference:
    """Create or update a user's smart-timing preference."""
    ticker = fields.pop("ticker", None)
    updates = {key: value for key, value in fields.items() if value is not None}
    return app.update_preferences(user_id, updates, ticker=ticker)


def _parse_hour(value: Optional[str]):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


def _bool_arg(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def main():
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="sigalert CLI")
    parser.add_argument("--config", help="Path to config file")
    parser.add_argument("--db", default="data/sigalert.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--phone", help="Phone number for SMS")
    add_user_parser.add_argument("--telegram", help="Telegram chat id")
    add_user_parser.add_argument(
        "--channels", default="app", help="Comma-separated channels"
    )

    user_subparsers.add_parser("list", help="List users")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Rules management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_rule_parser.add_argument("--ticker", required=True, help="Ticker, e.g. BTCUSDT")
    add_rule_parser.add_argument("--condition", required=True, choices=list(CONDITIONS))
    add_rule_parser.add_argument("--target", type=float, required=True, help="Target value")
    add_rule_parser.add_argument(
        "--repeat", action="store_true", help="Keep the rule active after it fires"
    )

    list_rules_parser = rules_subparsers.add_parser("list", help="List rules")
    list_rules_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Preference commands
    prefs_parser = subparsers.add_parser("prefs", help="Smart-timing preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="action")

    set_prefs_parser = prefs_subparsers.add_parser("set", help="Set preferences")
    set_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_prefs_parser.add_argument("--ticker", help="Ticker (omit for global default)")
    set_prefs_parser.add_argument("--enabled", type=_bool_arg)
    set_prefs_parser.add_argument("--quiet-start", help="Hour or HH:MM")
    set_prefs_parser.add_argument("--quiet-end", help="Hour or HH:MM")
    set_prefs_parser.add_argument("--timezone", help="IANA timezone")
    set_prefs_parser.add_argument("--max-hourly", type=int)
    set_prefs_parser.add_argument("--volatility-threshold", type=float)
    set_prefs_parser.add_argument("--volatility-pause", type=_bool_arg)
    set_prefs_parser.add_argument("--frequency", choices=list(SIGNAL_FREQUENCIES))

    # Signal commands
    signals_parser = subparsers.add_parser("signals", help="Signal management")
    signals_subparsers = signals_parser.add_subparsers(dest="action")

    ingest_parser = signals_subparsers.add_parser("ingest", help="Ingest a signal")
    ingest_parser.add_argument("--payload", required=True, help="JSON webhook body")

    recent_parser = signals_subparsers.add_parser("list", help="List recent signals")
    recent_parser.add_argument("--ticker", help="Ticker filter")
    recent_parser.add_argument("--limit", type=int, default=20)

    # Price commands
    prices_parser = subparsers.add_parser("prices", help="Price rule checks")
    prices_subparsers = prices_parser.add_subparsers(dest="action")
    prices_subparsers.add_parser("check", help="Check price rules against live quotes")

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Notification queue")
    queue_subparsers = queue_parser.add_subparsers(dest="action")
    queue_subparsers.add_parser("stats", help="Counts per status")
    retry_parser = queue_subparsers.add_parser("retry", help="Retry a failed notification")
    retry_parser.add_argument("id", type=int, help="Notification ID")
    process_parser = queue_subparsers.add_parser("process", help="Deliver due notifications")
    process_parser.add_argument("--limit", type=int, help="Batch size")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("migrate", help="Create schema")

    args = parser.parse_args()

    config = None
    db_path = args.db
    if args.config:
        from sigalert.config import load_config

        config = load_config(args.config)
        db_path = config.database.path

    # Initialize database
    db = Database(db_path)
    db.initialize()
    app = SignalAlertApp(db=db, config=config)

    try:
        if args.command == "user":
            if args.action == "add":
                channels = [c.strip() for c in args.channels.split(",") if c.strip()]
                user = add_user(
                    app,
                    email=args.email,
                    phone=args.phone,
                    telegram_chat_id=args.telegram,
                    channels=channels,
                )
                print(f"Created user with ID: {user.id}")
            elif args.action == "list":
                for user in app.user_repo.list_all():
                    print(f"ID: {user.id}, Email: {user.email}, Channels: {user.channels}")

        elif args.command == "rules":
            if args.action == "add":
                rule = add_rule(
                    app,
                    args.user,
                    args.ticker,
                    args.condition,
                    args.target,
                    one_shot=not args.repeat,
                )
                print(f"Created rule with ID: {rule.id}")
            elif args.action == "list":
                for rule in app.rule_repo.get_user_rules(args.user):
                    state = "active" if rule.is_active else "inactive"
                    print(
                        f"{rule.id}: {rule.ticker} {rule.condition} {rule.target_value} ({state})"
                    )

        elif args.command == "prefs":
            if args.action == "set":
                pref = set_preferences(
                    app,
                    args.user,
                    ticker=args.ticker,
                    enabled=args.enabled,
                    quiet_hours_start=_parse_hour(args.quiet_start),
                    quiet_hours_end=_parse_hour(args.quiet_end),
                    timezone=args.timezone,
                    max_hourly_notifications=args.max_hourly,
                    volatility_threshold=args.volatility_threshold,
                    high_volatility_pause=args.volatility_pause,
                    signal_frequency=args.frequency,
                )
                print(f"Saved preferences {pref.id}")

        elif args.command == "signals":
            if args.action == "ingest":
                result = app.handle_webhook(json.loads(args.payload))
                print(json.dumps(result.to_dict(), indent=2))
            elif args.action == "list":
                for s in app.store.list_recent(limit=args.limit, ticker=args.ticker):
                    print(f"{s.id}: {s.timestamp.isoformat()} {s.action} {s.ticker} @ {s.price}")

        elif args.command == "prices":
            if args.action == "check":
                result = app.sync_prices()
                print(f"Triggered {len(result.outcomes)} rules, queued {len(result.queued_ids)}")

        elif args.command == "queue":
            if args.action == "stats":
                for status, count in app.queue.stats().items():
                    print(f"{status}: {count}")
            elif args.action == "retry":
                intent = app.retry_notification(args.id)
                print(f"Notification {intent.id} is {intent.status} (attempts {intent.attempts})")
            elif args.action == "process":
                batch = app.process_queue(args.limit)
                print(json.dumps(batch.to_dict()))

        elif args.command == "db":
            if args.action == "migrate":
                db.initialize()
                print("Migrations applied")

    except (SigalertError, ValueError) as e:
        print(f"Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
