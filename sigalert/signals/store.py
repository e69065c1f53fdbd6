"""
Signal store: validation and append-only persistence of trading signals.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sigalert.database.models import ACTIONS, Signal
from sigalert.database.repository import SignalRepository
from sigalert.errors import NotFoundError, ValidationError
from sigalert.timeutil import from_iso, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("ticker", "action", "price")


class SignalStore:
    """Ingests, reads and soft-deactivates signals."""

    def __init__(
        self,
        repo: SignalRepository,
        clock: Callable[[], datetime] = utcnow,
        default_source: str = "tradingview_webhook",
    ):
        self.repo = repo
        self.clock = clock
        self.default_source = default_source

    def ingest(self, payload: dict[str, Any], source: Optional[str] = None) -> Signal:
        """
        Validate and store a new signal.

        Args:
            payload: Raw webhook body
            source: Origin label; defaults to the webhook source

        Returns:
            The stored Signal with its id

        Raises:
            ValidationError: If a required field is missing or invalid
        """
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object")

        for name in REQUIRED_FIELDS:
            value = payload.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"Missing required field: {name}", field=name)

        ticker = str(payload["ticker"]).strip().upper()
        action = str(payload["action"]).strip().lower()
        if action not in ACTIONS:
            raise ValidationError(
                f"Invalid action: {action}, expected one of {', '.join(ACTIONS)}",
                field="action",
            )

        price = _parse_price(payload["price"])
        timestamp = _parse_time(payload.get("time")) or self.clock()

        signal = Signal(
            ticker=ticker,
            action=action,
            price=price,
            timestamp=timestamp,
            timeframe=payload.get("timeframe") or "1h",
            strategy=payload.get("strategy") or "tradingview",
            message=payload.get("message") or f"{action.upper()} signal for {ticker}",
            source=source or self.default_source,
            is_active=True,
        )
        signal = self.repo.create(signal)
        logger.info(
            f"Stored signal {signal.id}: {signal.action} {signal.ticker} @ {signal.price}"
        )
        return signal

    def deactivate(self, signal_id: int) -> Signal:
        """Soft-deactivate a signal. Calling it again is a no-op."""
        signal = self.repo.get_by_id(signal_id)
        if signal is None:
            raise NotFoundError(f"Signal not found: {signal_id}")
        if self.repo.deactivate(signal_id):
            logger.info(f"Deactivated signal {signal_id}")
        signal.is_active = False
        return signal

    def get(self, signal_id: int) -> Optional[Signal]:
        return self.repo.get_by_id(signal_id)

    def list_recent(
        self,
        limit: int = 50,
        ticker: Optional[str] = None,
        active_only: bool = True,
    ) -> list[Signal]:
        return self.repo.list_recent(
            limit=limit,
            ticker=ticker.upper() if ticker else None,
            active_only=active_only,
        )


def _parse_price(value: Any) -> float:
    """Price must be a positive finite number; numeric strings are accepted."""
    if isinstance(value, bool):
        raise ValidationError("Price must be a number", field="price")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Price must be a number: {value!r}", field="price")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError(
            f"Price must be a positive finite number: {value!r}", field="price"
        )
    return price


def _parse_time(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings or epoch seconds/milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Invalid time: {value!r}", field="time")
    try:
        return from_iso(str(value))
    except ValueError:
        raise ValidationError(f"Invalid time: {value!r}", field="time")
