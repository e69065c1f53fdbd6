"""
Notification queue: durable notification intents with retry metadata.

Rows move pending/deferred -> processing -> sent | deferred | failed. Every
move is a conditional update on the expected pre-state, so two workers can
never both own a row and a failure can never be counted twice.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sigalert.database.connection import Database
from sigalert.database.models import (
    AlertRule,
    NotificationIntent,
    STATUS_DEFERRED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    STATUSES,
)
from sigalert.database.repository import AlertRuleRepository, NotificationRepository
from sigalert.errors import ConcurrencyConflict, InvalidTransitionError, NotFoundError
from sigalert.timeutil import utcnow
from sigalert.timing.gate import TimingDecision

logger = logging.getLogger(__name__)


class NotificationQueue:
    """Enqueue, claim and transition notification intents."""

    def __init__(
        self,
        db: Database,
        repo: NotificationRepository,
        rule_repo: AlertRuleRepository,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = repo
        self.rule_repo = rule_repo
        self.max_attempts = max_attempts
        self.clock = clock

    def _prepare(
        self, intent: NotificationIntent, decision: TimingDecision, now: datetime
    ) -> Optional[NotificationIntent]:
        """Set status and visibility from the gate decision; None means drop."""
        if decision.should_send:
            intent.status = STATUS_PENDING
            intent.visible_after = now
        elif decision.delay_seconds > 0:
            intent.status = STATUS_DEFERRED
            intent.visible_after = now + timedelta(seconds=decision.delay_seconds)
        else:
            return None
        intent.created_at = now
        intent.attempts = 0
        if not intent.max_attempts or intent.max_attempts <= 0:
            intent.max_attempts = self.max_attempts
        return intent

    def enqueue(
        self, intent: NotificationIntent, decision: TimingDecision
    ) -> Optional[int]:
        """
        Queue one intent according to a gate decision.

        Returns:
            The queue id, or None when the decision is a permanent drop
        """
        prepared = self._prepare(intent, decision, self.clock())
        if prepared is None:
            return None
        self.repo.insert(prepared)
        return prepared.id

    def commit_trigger(
        self,
        rule: AlertRule,
        intents: list[NotificationIntent],
        decision: TimingDecision,
    ) -> list[int]:
        """
        Atomically record a rule trigger and its intents.

        For one-shot rules the rule is deactivated in the same transaction,
        conditional on it still being active, so at most one caller can ever
        create intents for it.

        Raises:
            ConcurrencyConflict: If another caller already triggered the rule
        """
        now = self.clock()
        prepared = [self._prepare(intent, decision, now) for intent in intents]

        with self.db.transaction() as conn:
            if rule.one_shot:
                if not self.rule_repo.deactivate_if_active(rule.id, now, conn=conn):
                    raise ConcurrencyConflict(f"Rule {rule.id} already triggered")
            else:
                self.rule_repo.mark_triggered(rule.id, now, conn=conn)

            ids = []
            for intent in prepared:
                if intent is None:
                    continue
                self.repo.insert(intent, conn=conn)
                ids.append(intent.id)

        if rule.one_shot:
            rule.is_active = False
        rule.triggered_at = now
        return ids

    def dequeue_due(self, limit: int) -> list[NotificationIntent]:
        """
        Claim up to ``limit`` due intents, high priority then oldest first.

        Rows claimed concurrently by another worker are skipped.
        """
        if limit <= 0:
            return []
        now = self.clock()
        claimed = []
        for intent in self.repo.find_due(now, limit):
            if self.repo.claim(intent.id, now):
                intent.status = STATUS_PROCESSING
                intent.claimed_at = now
                claimed.append(intent)
            else:
                logger.debug(f"Intent {intent.id} claimed by another worker")
        return claimed

    # Name used by the dispatcher
    due_items = dequeue_due

    def mark_sent(self, intent: NotificationIntent) -> bool:
        now = self.clock()
        if self.repo.mark_sent(intent.id, now):
            intent.status = STATUS_SENT
            intent.sent_at = now
            intent.last_error = None
            return True
        logger.warning(f"Intent {intent.id} was not in processing when marking sent")
        return False

    def mark_failed(self, intent: NotificationIntent, error: str) -> bool:
        """Permanent failure without consuming an attempt."""
        if self.repo.mark_failed(intent.id, error):
            intent.status = STATUS_FAILED
            intent.last_error = error
            return True
        logger.warning(f"Intent {intent.id} was not in processing when marking failed")
        return False

    def record_failure(
        self, intent: NotificationIntent, error: str, backoff_seconds: Callable[[int], int]
    ) -> bool:
        """
        Count a failed attempt and reschedule or give up.

        Args:
            intent: Claimed intent
            error: Human-readable failure reason
            backoff_seconds: Maps the new attempt count to a delay
        """
        now = self.clock()
        attempts = intent.attempts + 1
        if attempts >= intent.max_attempts:
            status = STATUS_FAILED
            visible_after = intent.visible_after or now
        else:
            status = STATUS_DEFERRED
            visible_after = now + timedelta(seconds=backoff_seconds(attempts))

        if not self.repo.record_attempt_failure(
            intent.id, intent.attempts, status, visible_after, error
        ):
            logger.warning(f"Intent {intent.id} changed while recording failure")
            return False

        intent.attempts = attempts
        intent.status = status
        intent.visible_after = visible_after
        intent.last_error = error
        return True

    def retry(self, intent_id: int) -> NotificationIntent:
        """
        Resurrect a failed intent at high priority.

        Raises:
            NotFoundError: If the intent does not exist
            InvalidTransitionError: If the intent is not in failed state
        """
        intent = self.repo.get_by_id(intent_id)
        if intent is None:
            raise NotFoundError(f"Notification not found: {intent_id}")
        if intent.status == STATUS_SENT:
            raise InvalidTransitionError(
                f"Notification {intent_id} was already sent", current_status=intent.status
            )
        if intent.status != STATUS_FAILED:
            raise InvalidTransitionError(
                f"Only failed notifications can be retried (status: {intent.status})",
                current_status=intent.status,
            )

        if not self.repo.reset_failed(intent_id, self.clock()):
            current = self.repo.get_by_id(intent_id)
            raise InvalidTransitionError(
                f"Notification {intent_id} changed during retry",
                current_status=current.status if current else None,
            )
        logger.info(f"Intent {intent_id} reset to pending for manual retry")
        return self.repo.get_by_id(intent_id)

    def release_stale_claims(self, timeout_seconds: int) -> int:
        """Return rows abandoned in processing by a crashed worker."""
        now = self.clock()
        released = self.repo.release_stale_claims(
            now - timedelta(seconds=timeout_seconds), now
        )
        if released:
            logger.warning(f"Released {released} stale claimed notifications")
        return released

    def purge_sent(self, older_than_days: int) -> int:
        """Delete sent rows past the retention window."""
        removed = self.repo.delete_sent_before(
            self.clock() - timedelta(days=older_than_days)
        )
        if removed:
            logger.info(f"Purged {removed} sent notifications")
        return removed

    def get(self, intent_id: int) -> Optional[NotificationIntent]:
        return self.repo.get_by_id(intent_id)

    def history(self, user_id: int, limit: int = 50) -> list[NotificationIntent]:
        return self.repo.get_user_history(user_id, limit)

    def stats(self) -> dict[str, int]:
        """Counts for every status plus a total."""
        counts = self.repo.count_by_status()
        result = {status: counts.get(status, 0) for status in STATUSES}
        result["total"] = sum(counts.values())
        return result
