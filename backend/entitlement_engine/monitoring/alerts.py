"""
Entitlement engine monitoring and alerting.

Provides:
- Alert definitions for ledger and worker events
- AlertManager with per-key cooldown, log + Slack delivery
- Health check for the credit ledger
"""

import os
import logging
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from enum import Enum

import httpx

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Types of entitlement engine alerts."""
    # Ledger alerts
    LEDGER_INCONSISTENCY = "ledger_inconsistency"

    # Worker alerts
    CREDIT_RESET_FAILED = "credit_reset_failed"

    # Enforcement alerts
    HIGH_DENIAL_RATE = "high_denial_rate"


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}

# Slack decoration per severity: (emoji, attachment colour)
_SLACK_STYLE = {
    AlertSeverity.INFO: (":information_source:", "#36a64f"),
    AlertSeverity.WARNING: (":warning:", "#ff9800"),
    AlertSeverity.ERROR: (":x:", "#f44336"),
    AlertSeverity.CRITICAL: (":rotating_light:", "#9c27b0"),
}


@dataclass
class Alert:
    """One operator alert. metadata["account_id"] scopes the cooldown."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def cooldown_key(self) -> str:
        return f"{self.alert_type.value}:{self.metadata.get('account_id', 'global')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat()
        }

    def to_slack_payload(self) -> Dict[str, Any]:
        emoji, colour = _SLACK_STYLE.get(self.severity, ("", "#808080"))
        fields = [
            {"title": name.replace("_", " ").title(), "value": str(value), "short": True}
            for name, value in self.metadata.items()
        ]
        return {
            "attachments": [{
                "color": colour,
                "title": f"{emoji} {self.title}",
                "text": self.message,
                "fields": fields,
                "ts": int(self.timestamp.timestamp()),
            }]
        }


@dataclass
class LedgerHealthStatus:
    """Overall health of the credit ledger."""
    healthy: bool
    status: str
    halted_accounts: int
    accounts_checked: int
    checks: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "status": self.status,
            "halted_accounts": self.halted_accounts,
            "accounts_checked": self.accounts_checked,
            "checks": self.checks,
        }


class AlertManager:
    """
    Routes operator alerts to the log and, when SLACK_LEDGER_WEBHOOK_URL is
    set, to Slack. Repeats of one (type, account) pair inside the cooldown
    are dropped.
    """

    def __init__(self, slack_webhook_url: Optional[str] = None, cooldown_minutes: int = 15):
        self.slack_webhook_url = slack_webhook_url or os.getenv("SLACK_LEDGER_WEBHOOK_URL")
        self._cooldown = timedelta(minutes=cooldown_minutes)
        self._last_sent: Dict[str, datetime] = {}

    def _in_cooldown(self, alert: Alert) -> bool:
        now = datetime.now(timezone.utc)
        last = self._last_sent.get(alert.cooldown_key)
        if last is not None and now - last < self._cooldown:
            return True
        self._last_sent[alert.cooldown_key] = now
        return False

    def send_alert(self, alert: Alert) -> bool:
        """
        Deliver an alert.

        Returns:
            True if delivered, False if dropped by the cooldown
        """
        if self._in_cooldown(alert):
            logger.debug("Alert suppressed (cooldown)", extra={
                "alert_type": alert.alert_type.value,
                "cooldown_key": alert.cooldown_key,
            })
            return False

        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.INFO),
            alert.message,
            extra={"alert_type": alert.alert_type.value, "severity": alert.severity.value, **alert.metadata},
        )

        if self.slack_webhook_url:
            self._post_to_slack(alert)
        return True

    def _post_to_slack(self, alert: Alert) -> None:
        # Failures are logged only
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(self.slack_webhook_url, json=alert.to_slack_payload())
        except httpx.HTTPError as e:
            logger.error("Error sending Slack alert", extra={"error": str(e)})
            return
        if response.status_code != 200:
            logger.error("Slack rejected alert", extra={
                "status_code": response.status_code,
                "alert_type": alert.alert_type.value,
            })


# Singleton alert manager
_alert_manager: Optional[AlertManager] = None


def get_alert_manager() -> AlertManager:
    """Get the singleton alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertManager()
    return _alert_manager


def reset_alert_manager() -> None:
    """Forget the singleton (for testing)."""
    global _alert_manager
    _alert_manager = None


# Alert factory functions

def alert_ledger_inconsistency(
    manager: Optional[AlertManager],
    account_id: str,
    cached_balance: Optional[int],
    ledger_balance: Optional[int],
    detail: str,
) -> bool:
    """Critical: an account's balance cache diverged and writes were halted."""
    alert = Alert(
        alert_type=AlertType.LEDGER_INCONSISTENCY,
        severity=AlertSeverity.CRITICAL,
        title="Credit Ledger Inconsistency",
        message=f"Credit writes halted for account {account_id}: {detail}",
        metadata={
            "account_id": account_id,
            "cached_balance": cached_balance,
            "ledger_balance": ledger_balance,
        }
    )
    return (manager or get_alert_manager()).send_alert(alert)


def alert_credit_reset_failed(error: str, stats: dict) -> bool:
    """Alert for credit reset job failure."""
    alert = Alert(
        alert_type=AlertType.CREDIT_RESET_FAILED,
        severity=AlertSeverity.ERROR,
        title="Credit Reset Job Failed",
        message=f"Credit reset job failed: {error}",
        metadata={
            "error": error,
            **stats
        }
    )
    return get_alert_manager().send_alert(alert)


# Health check functions

def check_ledger_health(db_session) -> LedgerHealthStatus:
    """
    Summarise ledger health.

    Args:
        db_session: Database session

    Returns:
        LedgerHealthStatus with overall health and individual checks
    """
    from entitlement_engine.models.credit import CreditAccount

    checks = []

    total = db_session.query(CreditAccount).count()
    halted = db_session.query(CreditAccount).filter(
        CreditAccount.writes_halted.is_(True)
    ).count()

    checks.append({
        "name": "halted_accounts",
        "status": "critical" if halted > 0 else "ok",
        "message": f"{halted} of {total} credit accounts have writes halted",
    })

    return LedgerHealthStatus(
        healthy=halted == 0,
        status="healthy" if halted == 0 else f"{halted} accounts halted",
        halted_accounts=halted,
        accounts_checked=total,
        checks=checks,
    )
