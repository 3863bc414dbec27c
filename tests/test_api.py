"""HTTP API: reads, role checks, error mapping, archive/launch, manual sync."""

from conftest import DOWN, READY, make_record, make_token


async def _seed(app_client, token, equipment_id="EQ-1", **data):
    body = {"id": equipment_id, "equipment_type": "Экскаватор", **data}
    resp = await app_client.post("/api/equipment", json=body, headers=token("admin"))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def test_health(app_client):
    resp = await app_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_list_and_filter(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down", section="гусеничные техники")
    await _seed(app_client, token, "EQ-2", status="Ready")

    resp = await app_client.get("/api/equipment")
    assert [r["id"] for r in resp.json()] == ["EQ-1", "EQ-2"]

    resp = await app_client.get("/api/equipment", params={"status": "Down"})
    data = resp.json()
    assert [r["id"] for r in data] == ["EQ-1"]
    assert data[0]["is_active"] is True
    assert data[0]["delay_hours"] == 0.0

    resp = await app_client.get("/api/equipment", params={"status": "Broken"})
    assert resp.status_code == 422


async def test_get_one_and_404(app_client, token):
    await _seed(app_client, token, "EQ-1")
    resp = await app_client.get("/api/equipment/EQ-1")
    assert resp.status_code == 200
    assert resp.json()["equipment_type"] == "Экскаватор"

    resp = await app_client.get("/api/equipment/EQ-404")
    assert resp.status_code == 404
    assert "detail" in resp.json()


async def test_stats_and_sections(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down", section="A")
    await _seed(app_client, token, "EQ-2", status="Down", section="B")
    await _seed(app_client, token, "EQ-3", status="Ready", section="B")

    stats = (await app_client.get("/api/equipment/stats")).json()
    assert stats["Down"] == 2
    assert stats["Ready"] == 1
    assert stats["total"] == 3
    assert stats["by_section"]["B"] == {
        "Down": 1, "Ready": 1, "Standby": 0, "Delay": 0, "Shiftchange": 0, "total": 2,
    }

    sections = (await app_client.get("/api/equipment/sections")).json()
    assert sections == [
        {"section": "A", "total": 1, "down": 1},
        {"section": "B", "total": 2, "down": 1},
    ]


async def test_dashboard(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down")
    await _seed(app_client, token, "EQ-2", status="Ready")
    await app_client.post("/api/archive/launch/EQ-2", headers=token("dispatcher"))

    data = (await app_client.get("/api/stats/dashboard")).json()
    assert data["down"] == 1
    assert data["total"] == 1
    assert data["ready_today"] == 1


# ---------------------------------------------------------------------------
# Auth & roles
# ---------------------------------------------------------------------------

async def test_write_requires_token(app_client):
    resp = await app_client.post("/api/equipment", json={"id": "EQ-1", "equipment_type": "x"})
    assert resp.status_code == 401


async def test_invalid_and_expired_tokens(app_client):
    bad = {"Authorization": f"Bearer {make_token('admin', secret='wrong')}"}
    resp = await app_client.delete("/api/equipment/EQ-1", headers=bad)
    assert resp.status_code == 401

    expired = {"Authorization": f"Bearer {make_token('admin', expires_in=-60)}"}
    resp = await app_client.delete("/api/equipment/EQ-1", headers=expired)
    assert resp.status_code == 401


async def test_role_matrix(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Ready")

    resp = await app_client.post(
        "/api/equipment", json={"id": "EQ-2", "equipment_type": "x"}, headers=token("dispatcher")
    )
    assert resp.status_code == 403
    assert (await app_client.delete("/api/equipment/EQ-1", headers=token("programmer"))).status_code == 403
    assert (await app_client.put(
        "/api/equipment/EQ-1", json={"mechanic_name": "x"}, headers=token("user")
    )).status_code == 403
    assert (await app_client.post(
        "/api/archive/launch/EQ-1", headers=token("programmer")
    )).status_code == 403


async def test_create_conflict(app_client, token):
    await _seed(app_client, token, "EQ-1")
    resp = await app_client.post(
        "/api/equipment", json={"id": "EQ-1", "equipment_type": "x"}, headers=token("programmer")
    )
    assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Edits & history
# ---------------------------------------------------------------------------

async def test_admin_update_and_history(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down")
    resp = await app_client.put(
        "/api/equipment/EQ-1",
        json={"status": "Ready", "mechanic_name": "Петров"},
        headers=token("admin"),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "Ready"
    assert data["manually_edited"] is True

    history = (await app_client.get("/api/equipment/EQ-1/history")).json()
    assert {h["action"] for h in history} == {"create", "update_status", "update_mechanic_name"}
    assert all(h["username"] == "admin" for h in history)
    assert history[0]["full_name"] == "Администратор"


async def test_dispatcher_update_is_limited(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down")
    resp = await app_client.put(
        "/api/equipment/EQ-1",
        json={"status": "Ready", "planned_hours": 3},
        headers=token("dispatcher"),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "Down"
    assert resp.json()["planned_hours"] == 3.0


async def test_history_limit_validation(app_client):
    resp = await app_client.get("/api/equipment/EQ-1/history", params={"limit": 51})
    assert resp.status_code == 422


async def test_clear_manual_edit_and_delete(app_client, token):
    await _seed(app_client, token, "EQ-1")
    await app_client.put("/api/equipment/EQ-1", json={"malfunction": "x"}, headers=token("admin"))

    resp = await app_client.post("/api/equipment/EQ-1/clear-manual-edit", headers=token("admin"))
    assert resp.status_code == 200
    assert resp.json()["manually_edited"] is False

    resp = await app_client.delete("/api/equipment/EQ-1", headers=token("admin"))
    assert resp.status_code == 200
    assert (await app_client.get("/api/equipment/EQ-1")).status_code == 404
    assert (await app_client.delete("/api/equipment/EQ-1", headers=token("admin"))).status_code == 404


# ---------------------------------------------------------------------------
# Archive & launch
# ---------------------------------------------------------------------------

async def test_launch_flow(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Ready", mechanic_name="Иванов")
    resp = await app_client.post(
        "/api/archive/launch/EQ-1",
        json={"completion_reason": "launched"},
        headers=token("dispatcher"),
    )
    assert resp.status_code == 200
    assert resp.json()["completion_reason"] == "launched"

    assert (await app_client.get("/api/equipment/EQ-1")).status_code == 404

    page = (await app_client.get("/api/archive")).json()
    assert page["pagination"] == {"page": 1, "limit": 50, "total": 1, "pages": 1}
    [entry] = page["archives"]
    assert entry["id"] == "EQ-1"
    assert entry["archive_reason"] == "launched"
    assert entry["completion_username"] == "disp"
    assert entry["completion_full_name"] == "Диспетчер Смены"


async def test_launch_errors(app_client, token):
    await _seed(app_client, token, "EQ-1", status="Down")
    resp = await app_client.post("/api/archive/launch/EQ-1", headers=token("admin"))
    assert resp.status_code == 400

    resp = await app_client.post("/api/archive/launch/EQ-404", headers=token("admin"))
    assert resp.status_code == 404

    await _seed(app_client, token, "EQ-2", status="Ready")
    resp = await app_client.post(
        "/api/archive/launch/EQ-2", json={"completion_reason": "exploded"}, headers=token("admin")
    )
    assert resp.status_code == 422


async def test_archive_filters_and_stats(app_client, token):
    for i, reason in enumerate(["launched", "launched", "cancelled"], start=1):
        await _seed(app_client, token, f"EQ-{i}", status="Standby", mechanic_name=f"Мех{i}")
        await app_client.post(
            f"/api/archive/launch/EQ-{i}",
            json={"completion_reason": reason},
            headers=token("admin"),
        )

    page = (await app_client.get("/api/archive", params={"archive_reason": "cancelled"})).json()
    assert [a["id"] for a in page["archives"]] == ["EQ-3"]

    page = (await app_client.get("/api/archive", params={"mechanic": "Мех2"})).json()
    assert [a["id"] for a in page["archives"]] == ["EQ-2"]

    page = (await app_client.get("/api/archive", params={"limit": 2, "page": 2})).json()
    assert page["pagination"]["pages"] == 2
    assert len(page["archives"]) == 1

    stats = (await app_client.get("/api/archive/stats", params={"date_from": "2000-01-01"})).json()
    assert stats["summary"]["total_archived"] == 3
    assert stats["summary"]["launched"] == 2
    assert stats["summary"]["cancelled"] == 1
    assert stats["summary"]["auto_ready"] == 0
    assert {"archive_reason": "launched", "equipment_type": "Экскаватор", "count": 2} in stats["detailed_stats"]

    empty = (await app_client.get(
        "/api/archive/stats", params={"date_to": "2000-01-01"}
    )).json()
    assert empty["summary"]["total_archived"] == 0


# ---------------------------------------------------------------------------
# Manual sync
# ---------------------------------------------------------------------------

async def test_sync_endpoints(app_client, token, sync_engine, source):
    from main import app

    resp = await app_client.get("/api/equipment/sync/status")
    assert resp.json() == {"enabled": False}
    assert (await app_client.post("/api/equipment/sync", headers=token("admin"))).status_code == 503

    app.state.sync_engine = sync_engine
    source.records = [make_record(42, DOWN)]
    assert (await app_client.post("/api/equipment/sync", headers=token("dispatcher"))).status_code == 403

    resp = await app_client.post("/api/equipment/sync", headers=token("programmer"))
    assert resp.status_code == 200
    assert resp.json()["created"] == 1

    source.records = [make_record(42, READY)]
    resp = await app_client.post("/api/equipment/sync", headers=token("admin"))
    assert resp.json()["archived"] == 1

    status = (await app_client.get("/api/equipment/sync/status")).json()
    assert status["enabled"] is True
    assert status["cycles"] == 2
    assert status["archived"] == 1


async def test_sync_busy_returns_409(app_client, token, sync_engine):
    from main import app

    app.state.sync_engine = sync_engine
    async with sync_engine._lock:
        resp = await app_client.post("/api/equipment/sync", headers=token("admin"))
    assert resp.status_code == 409
