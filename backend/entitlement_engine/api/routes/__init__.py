# API routes
from entitlement_engine.api.routes import health
from entitlement_engine.api.routes import entitlements
from entitlement_engine.api.routes import credits
from entitlement_engine.api.routes import webhooks_billing

__all__ = ["health", "entitlements", "credits", "webhooks_billing"]
