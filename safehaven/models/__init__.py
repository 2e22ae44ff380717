"""
Database models - import all models here so Alembic can discover them.
"""
from safehaven.models.identity_mapping import IdentityMapping
from safehaven.models.webhook_event import WebhookEvent

__all__ = [
    "IdentityMapping",
    "WebhookEvent",
]
