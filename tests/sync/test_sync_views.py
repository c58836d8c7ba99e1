from __future__ import annotations

from datetime import datetime, timezone

from sophie_hub.models import Partner, SyncRun, SyncRunStatus, db


def _sync(client, tab_id, **body):
    return client.post(f"/api/sync/tab/{tab_id}", json=body)


def test_sync_tab_requires_login(client, partner_tab):
    _, tab = partner_tab

    response = _sync(client, tab.id)

    assert response.status_code == 401
    payload = response.get_json()
    assert payload["success"] is False
    assert payload["error"]["code"] == "UNAUTHORIZED"


def test_sync_tab_requires_admin(logged_in_staff, partner_tab):
    client, _ = logged_in_staff
    _, tab = partner_tab

    response = _sync(client, tab.id)

    assert response.status_code == 403
    assert response.get_json()["error"]["message"] == "Admin access required"
    assert Partner.query.count() == 0


def test_sync_tab_as_admin(logged_in_admin, partner_tab):
    client, admin = logged_in_admin
    _, tab = partner_tab

    response = _sync(client, tab.id, dry_run=False)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["data"]["status"] == "completed"
    assert payload["data"]["stats"]["rows_created"] == 2
    assert "timestamp" in payload["meta"]
    assert db.session.get(SyncRun, payload["data"]["sync_run_id"]).triggered_by == str(admin.id)


def test_sync_tab_dry_run_returns_preview(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    _, tab = partner_tab

    response = _sync(client, tab.id, dry_run=True)

    data = response.get_json()["data"]
    assert data["dry_run"] is True
    acme = next(change for change in data["changes"] if change["key"] == "Acme")
    assert acme["action"] == "create"
    assert acme["fields"]["base_fee"]["new"] == "1500.00"
    assert Partner.query.count() == 0


def test_sync_tab_rejects_bad_options(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    _, tab = partner_tab

    assert _sync(client, tab.id, dry_run="yes").status_code == 400
    bad_limit = _sync(client, tab.id, row_limit=0)
    assert bad_limit.status_code == 400
    assert bad_limit.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_sync_tab_conflict_when_locked(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    source, tab = partner_tab
    running = SyncRun(
        data_source_id=source.id,
        tab_mapping_id=tab.id,
        status=SyncRunStatus.RUNNING,
        started_at=datetime.now(timezone.utc),
        active_lock=tab.id,
    )
    db.session.add(running)
    db.session.commit()

    response = _sync(client, tab.id)

    assert response.status_code == 409
    error = response.get_json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"] == {"active_sync_run_id": running.id}


def test_sync_tab_not_found(logged_in_admin):
    client, _ = logged_in_admin

    response = _sync(client, 999)

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "NOT_FOUND"


def test_sync_data_source(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    source, tab = partner_tab

    response = client.post(f"/api/sync/data-source/{source.id}", json={})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["data_source_id"] == source.id
    assert [entry["tab_mapping_id"] for entry in data["tabs"]] == [tab.id]
    assert data["failures"] == []


def test_run_history_endpoints(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    _, tab = partner_tab
    run_id = _sync(client, tab.id).get_json()["data"]["sync_run_id"]

    listing = client.get(f"/api/sync/runs?tab_mapping_id={tab.id}&status=completed")
    assert listing.status_code == 200
    data = listing.get_json()["data"]
    assert data["total"] == 1
    assert data["runs"][0]["id"] == run_id
    assert data["runs"][0]["rows_created"] == 2

    detail = client.get(f"/api/sync/runs/{run_id}")
    assert detail.status_code == 200
    assert detail.get_json()["data"]["status"] == "completed"
    assert isinstance(detail.get_json()["data"]["errors"], list)

    assert client.get("/api/sync/runs/9999").status_code == 404
    assert client.get("/api/sync/runs?status=bogus").status_code == 400


def test_lineage_endpoint(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    _, tab = partner_tab
    _sync(client, tab.id)
    acme = Partner.query.filter_by(brand_name="Acme").one()

    response = client.get(f"/api/lineage/partner/{acme.id}")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["entity_type"] == "partners"
    assert data["lineage"]["tier"]["new_value"] == "Gold"
    assert data["lineage"]["tier"]["column"] == "Tier"

    assert client.get(f"/api/lineage/widgets/{acme.id}").status_code == 400
    assert client.get("/api/lineage/partners/9999").status_code == 404


def test_partner_type_projections(logged_in_admin, partner_tab):
    client, _ = logged_in_admin
    _, tab = partner_tab
    _sync(client, tab.id)

    response = client.get("/api/partners/partner-types?mismatch_only=true")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert [row["brand_name"] for row in data["partners"]] == ["Beta Co"]
    assert data["summary"]["persistence_drift_count"] == 0

    assert client.get("/api/partners/partner-types?limit=abc").status_code == 400


def test_cron_reconciliation_requires_secret(client):
    response = client.post("/api/cron/partner-type-reconciliation")
    assert response.status_code == 401
    assert response.get_json()["error"]["message"] == "Invalid cron secret"

    wrong = client.post(
        "/api/cron/partner-type-reconciliation", headers={"Authorization": "Bearer not-the-secret"}
    )
    assert wrong.status_code == 401


def test_cron_reconciliation_applies_changes(client):
    db.session.add(Partner(brand_name="Acme"))
    db.session.commit()

    response = client.post(
        "/api/cron/partner-type-reconciliation", headers={"Authorization": "Bearer test-cron-secret"}
    )

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["dry_run"] is False
    assert data["updated"] == 1
    assert "duration_ms" in data


def test_worker_health_reports_disabled(logged_in_admin):
    client, _ = logged_in_admin

    response = client.get("/api/sync/worker-health")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["status"] == "disabled"
    assert data["enabled"] is True


def test_worker_health_falls_back_on_unusable_timeout(logged_in_admin):
    client, _ = logged_in_admin

    for raw in ("soon", "nan", "-3"):
        response = client.get(f"/api/sync/worker-health?timeout={raw}")

        assert response.status_code == 200
        assert response.get_json()["data"]["timeout_seconds"] == 5.0
