"""
Entitlement audit logger: record denials and admin bypasses.

Provides:
- EntitlementAuditEvent: structured, JSON-serialisable audit record
- EntitlementAuditLogger: singleton writing to the "entitlements.audit" logger

Required fields for each event:
- account_id
- feature
- decision (denied / admin_bypass)
- reason (for denials)
- subscription_status and tier

CRITICAL: Every denial and every admin bypass MUST be audit logged.
"""

import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")

DECISION_DENIED = "denied"
DECISION_ADMIN_BYPASS = "admin_bypass"
DECISION_COMMITTED = "committed"


@dataclass
class EntitlementAuditEvent:
    """Structured audit record for one entitlement decision or commit."""

    account_id: str
    feature: str
    decision: str
    reason: Optional[str] = None
    subscription_status: Optional[str] = None
    tier: Optional[str] = None
    role: Optional[str] = None
    operation: str = "evaluate"
    idempotency_key: Optional[str] = None
    credit_cost: int = 0
    policy_version: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EntitlementAuditLogger:
    """
    Audit logger for entitlement decisions.

    Denials are logged at WARNING, admin bypasses at INFO. A sliding window
    of commit denial timestamps per account feeds the HIGH_DENIAL_RATE
    alert. Evaluate denials are logged but not counted.

    Usage:
        audit = get_audit_logger()
        audit.log(EntitlementAuditEvent(
            account_id="acc_123",
            feature="AI_GRADING",
            decision=DECISION_DENIED,
            reason="USAGE_LIMIT_REACHED",
        ))
    """

    _instance: Optional['EntitlementAuditLogger'] = None
    _lock = Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        denial_alert_threshold: int = 100,
        window_seconds: int = 300,
        log_commits: bool = False,
    ):
        """
        Args:
            denial_alert_threshold: Denials per account per window that
                trigger a HIGH_DENIAL_RATE alert (0 disables)
            window_seconds: Sliding window length
            log_commits: Also audit successful commits
        """
        if self._initialized:
            return

        self._threshold = denial_alert_threshold
        self._window_seconds = window_seconds
        self._log_commits = log_commits
        self._recent_denials: Dict[str, Deque[float]] = {}
        self._last_sweep = 0.0
        self._window_lock = Lock()
        self._initialized = True

    def log(self, event: EntitlementAuditEvent) -> None:
        if event.decision == DECISION_DENIED:
            self.log_denial(event)
        elif event.decision == DECISION_ADMIN_BYPASS:
            self.log_admin_bypass(event)
        elif event.decision == DECISION_COMMITTED:
            self.log_commit(event)

    def log_denial(self, event: EntitlementAuditEvent) -> None:
        audit_logger.warning(
            "entitlement_denied",
            extra={
                "event_type": "entitlement_denied",
                "audit_data": event.to_dict(),
            }
        )
        if event.operation != "commit":
            return
        count = self._record_denial(event.account_id)
        if self._threshold and count == self._threshold:
            self._alert_high_denial_rate(event, count)

    def log_admin_bypass(self, event: EntitlementAuditEvent) -> None:
        audit_logger.info(
            "entitlement_admin_bypass",
            extra={
                "event_type": "entitlement_admin_bypass",
                "audit_data": event.to_dict(),
            }
        )

    def log_commit(self, event: EntitlementAuditEvent) -> None:
        if not self._log_commits:
            return
        audit_logger.debug(
            "entitlement_committed",
            extra={
                "event_type": "entitlement_committed",
                "audit_data": event.to_dict(),
            }
        )

    def get_denial_count(self, account_id: str) -> int:
        """Commit denials recorded for the account within the current window."""
        with self._window_lock:
            window = self._recent_denials.get(account_id)
            if not window:
                return 0
            self._expire(window, self._now())
            if not window:
                del self._recent_denials[account_id]
            return len(window)

    def _record_denial(self, account_id: str) -> int:
        now = self._now()
        with self._window_lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(now)
            window = self._recent_denials.setdefault(account_id, deque())
            self._expire(window, now)
            window.append(now)
            return len(window)

    def _sweep(self, now: float) -> None:
        """Drop accounts whose window has emptied. Caller holds the lock."""
        for account_id in list(self._recent_denials):
            window = self._recent_denials[account_id]
            self._expire(window, now)
            if not window:
                del self._recent_denials[account_id]
        self._last_sweep = now

    def _expire(self, window: Deque[float], now: float) -> None:
        cutoff = now - self._window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _now(self) -> float:
        return datetime.now(timezone.utc).timestamp()

    def _alert_high_denial_rate(self, event: EntitlementAuditEvent, count: int) -> None:
        from entitlement_engine.monitoring.alerts import (
            Alert,
            AlertSeverity,
            AlertType,
            get_alert_manager,
        )

        get_alert_manager().send_alert(Alert(
            alert_type=AlertType.HIGH_DENIAL_RATE,
            severity=AlertSeverity.WARNING,
            title="High entitlement denial rate",
            message=(
                f"Account {event.account_id} hit {count} denials in "
                f"{self._window_seconds}s (latest: {event.feature} {event.reason})"
            ),
            metadata={
                "account_id": event.account_id,
                "count": count,
                "feature": event.feature,
                "reason": event.reason,
            },
        ))


def get_audit_logger() -> EntitlementAuditLogger:
    return EntitlementAuditLogger()


def reset_audit_logger() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    EntitlementAuditLogger._instance = None
