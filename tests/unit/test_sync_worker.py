"""Tests for the scheduled sync worker."""

import pytest
from celery.schedules import crontab

from commerce_sync.services.sync_orchestrator import TenantNotFound
from sync_worker.main import app as celery_app
from sync_worker.tasks import sync_tenants


def test_daily_fleet_sync_scheduled() -> None:
    entry = celery_app.conf.beat_schedule["sync-all-tenants"]

    assert entry["task"] == "sync_worker.tasks.sync_tenants.sync_all_tenants"
    assert entry["schedule"] == crontab(minute=0, hour=2)


def test_fleet_task_returns_summary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_fleet_sync() -> dict:
        return {
            "total": 2,
            "succeeded": ["a"],
            "failed": {"b": "boom"},
            "skipped": [],
            "already_running": False,
        }

    monkeypatch.setattr(sync_tenants, "run_fleet_sync", fake_fleet_sync)

    summary = sync_tenants.sync_all_tenants()

    assert summary["failed"] == {"b": "boom"}


def test_unknown_tenant_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_tenant_sync(tenant_id: str) -> dict:
        raise TenantNotFound(tenant_id)

    monkeypatch.setattr(sync_tenants, "run_tenant_sync", fake_tenant_sync)

    result = sync_tenants.sync_tenant("missing")

    assert result == {"success": False, "tenant_id": "missing", "error": "tenant not found"}
