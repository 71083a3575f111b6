"""
Monitoring module for ledger alerts and health checks.
"""

from entitlement_engine.monitoring.alerts import (
    Alert,
    AlertType,
    AlertSeverity,
    AlertManager,
    LedgerHealthStatus,
    get_alert_manager,
    check_ledger_health,
    alert_ledger_inconsistency,
    alert_credit_reset_failed,
)

__all__ = [
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertManager",
    "LedgerHealthStatus",
    "get_alert_manager",
    "check_ledger_health",
    "alert_ledger_inconsistency",
    "alert_credit_reset_failed",
]
