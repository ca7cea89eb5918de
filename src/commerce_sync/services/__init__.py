"""Sync and reconciliation services."""

from commerce_sync.services.commerce_client import CommerceClient, TenantContext
from commerce_sync.services.pagination import PaginationWalker
from commerce_sync.services.reconciliation import ReconciliationEngine, TenantLocks
from commerce_sync.services.sync_orchestrator import SyncOrchestrator
from commerce_sync.services.webhook_ingestor import WebhookIngestor
from commerce_sync.services.webhook_registration import WebhookRegistrar

__all__ = [
    "CommerceClient",
    "PaginationWalker",
    "ReconciliationEngine",
    "SyncOrchestrator",
    "TenantContext",
    "TenantLocks",
    "WebhookIngestor",
    "WebhookRegistrar",
]
