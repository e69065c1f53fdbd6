"""
Alert rule matching.

Webhook signals match every active rule on the same ticker; price-feed quotes
are checked against each rule's condition.
"""

import logging
from typing import Iterable, Protocol

from sigalert.database.models import AlertRule, Signal
from sigalert.database.repository import AlertRuleRepository

logger = logging.getLogger(__name__)

__all__ = ["AlertRuleMatcher", "is_triggered"]


class Quote(Protocol):
    ticker: str
    price: float
    change_pct: float


def is_triggered(rule: AlertRule, quote: Quote) -> bool:
    """
    Check a rule's condition against a quote.

    Boundaries are inclusive: a value exactly equal to the target fires.

    Raises:
        ValueError: If the rule condition is unknown
    """
    condition = rule.condition
    if condition == "price_above":
        return quote.price >= rule.target_value
    elif condition == "price_below":
        return quote.price <= rule.target_value
    elif condition == "change_above":
        return quote.change_pct >= rule.target_value
    elif condition == "change_below":
        return quote.change_pct <= rule.target_value
    else:
        raise ValueError(f"Unknown rule condition: {condition}")


class AlertRuleMatcher:
    """Finds the rules a signal or quote should trigger."""

    def __init__(self, repo: AlertRuleRepository):
        self.repo = repo

    def match(self, signal: Signal) -> list[AlertRule]:
        """All active rules on the signal's ticker, in rule order."""
        return self.repo.get_active_for_ticker(signal.ticker)

    def evaluate(self, rules: Iterable[AlertRule], quote: Quote) -> list[AlertRule]:
        """
        Evaluate rules against a quote.

        Args:
            rules: Candidate rules
            quote: Current market values for one ticker

        Returns:
            Active rules on the quote's ticker whose condition holds
        """
        triggered = []
        for rule in rules:
            if not rule.is_active or rule.ticker != quote.ticker:
                continue
            try:
                if is_triggered(rule, quote):
                    triggered.append(rule)
            except ValueError as e:
                # Skip invalid rules
                logger.warning(f"Skipping rule {rule.id}: {e}")
        return triggered

    def match_quote(self, quote: Quote) -> list[AlertRule]:
        """Load active rules for the quote's ticker and evaluate them."""
        return self.evaluate(self.repo.get_active_for_ticker(quote.ticker), quote)
