# tests/test_web_app.py

from __future__ import annotations

from fastapi.testclient import TestClient

from tasktide import repeating_service as rs
from tasktide import task_service as ts
from tasktide.config import AppConfig


def _create_rule(client: TestClient, **overrides) -> dict:
    body = {"rrule": "daily", "title": "Stretch", "start_date": "2024-03-10"}
    body.update(overrides)
    resp = client.post("/api/repeating-rules", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_create_and_get_rule(client: TestClient) -> None:
    rule = _create_rule(client, rrule="weekly:Monday", start_date="2024-01-01", checklist_items=["a", "b"])
    assert rule["next_occurrence"] == "2024-01-01"
    assert rule["user_id"] == "alice"
    assert rule["checklist_items"] == ["a", "b"]
    assert rule["description"] == "Weekly on Monday"

    resp = client.get(f"/api/repeating-rules/{rule['id']}")
    assert resp.status_code == 200
    assert resp.json()["title"] == "Stretch"


def test_owner_header_scopes_rules(client: TestClient) -> None:
    rule = _create_rule(client)
    assert client.get(f"/api/repeating-rules/{rule['id']}", headers={"X-Owner-Id": "bob"}).status_code == 404
    assert client.get("/api/repeating-rules", headers={"X-Owner-Id": "bob"}).json() == []
    assert len(client.get("/api/repeating-rules").json()) == 1


def test_malformed_rule_is_400(client: TestClient) -> None:
    resp = client.post("/api/repeating-rules", json={"rrule": "weekly:Funday", "title": "x", "start_date": "2024-01-01"})
    assert resp.status_code == 400
    assert "Malformed recurrence" in resp.json()["detail"]


def test_update_pause_resume_delete(client: TestClient) -> None:
    rule = _create_rule(client)
    rid = rule["id"]

    resp = client.put(f"/api/repeating-rules/{rid}", json={"title": "Stretch more", "tag_ids": ["t1"]})
    assert resp.status_code == 200
    assert resp.json()["title"] == "Stretch more"
    assert resp.json()["tag_ids"] == ["t1"]

    assert client.post(f"/api/repeating-rules/{rid}/pause").json()["status"] == "paused"
    assert client.post(f"/api/repeating-rules/{rid}/resume").json()["status"] == "active"

    assert client.delete(f"/api/repeating-rules/{rid}").json() == {"status": "deleted"}
    assert client.get(f"/api/repeating-rules/{rid}").status_code == 404
    assert client.delete(f"/api/repeating-rules/{rid}").status_code == 404


def test_update_with_bad_rrule_is_400(client: TestClient) -> None:
    rule = _create_rule(client)
    resp = client.put(f"/api/repeating-rules/{rule['id']}", json={"rrule": "every now and then"})
    assert resp.status_code == 400


def test_materialize_endpoint_is_idempotent(client: TestClient) -> None:
    rule = _create_rule(client)

    first = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()
    second = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()

    assert first["today"] == "2024-03-10"
    assert len(first["created_task_ids"]) == 1
    assert first["failures"] == []
    assert second["created_task_ids"] == []
    assert client.get(f"/api/repeating-rules/{rule['id']}").json()["next_occurrence"] == "2024-03-11"


def test_preview(client: TestClient) -> None:
    resp = client.post("/api/recurrence/preview", json={"rrule": "monthly:31", "after": "2024-01-31", "limit": 3})
    assert resp.status_code == 200
    body = resp.json()
    assert body["rrule"] == "FREQ=MONTHLY;BYMONTHDAY=31"
    assert body["description"] == "Monthly on day 31"
    assert body["dates"] == ["2024-02-29", "2024-03-31", "2024-04-30"]

    assert client.post("/api/recurrence/preview", json={"rrule": "nope"}).status_code == 400


def test_task_create_get_and_owner_check(client: TestClient) -> None:
    resp = client.post("/api/tasks", json={"title": "Buy milk", "checklist": ["2%"], "tag_ids": ["errand"]})
    assert resp.status_code == 200
    task = resp.json()
    assert task["user_id"] == "alice"
    assert [c["title"] for c in task["checklist"]] == ["2%"]

    assert client.get(f"/api/tasks/{task['id']}").json()["title"] == "Buy milk"
    assert client.get(f"/api/tasks/{task['id']}", headers={"X-Owner-Id": "bob"}).status_code == 404
    assert client.post("/api/tasks", json={"title": "  "}).status_code == 400


def test_editing_spawned_task_syncs_rule(client: TestClient) -> None:
    rule = _create_rule(client, checklist_items=["one"])
    task_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()["created_task_ids"][0]

    resp = client.put(f"/api/tasks/{task_id}", json={"title": "Stretch 10 min", "checklist": ["one", "two"]})

    assert resp.status_code == 200
    assert resp.json()["title"] == "Stretch 10 min"
    synced = rs.get_rule(rule["id"], "alice")
    assert synced["title"] == "Stretch 10 min"
    assert rs.checklist_titles(synced) == ["one", "two"]


def test_promote_and_complete(client: TestClient) -> None:
    task = client.post("/api/tasks", json={"title": "Water plants", "checklist": ["Ficus", "Basil"]}).json()

    resp = client.post(f"/api/tasks/{task['id']}/promote", json={"rrule": "daily", "start_date": "2024-05-01"})
    assert resp.status_code == 200
    rule = resp.json()
    assert rule["next_occurrence"] == "2024-05-02"
    assert rule["checklist_items"] == ["Ficus", "Basil"]
    assert ts.get_task(task["id"])["status"] == "trashed"

    spawned_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-05-02"}).json()["created_task_ids"][0]
    done = client.post(f"/api/tasks/{spawned_id}/complete", json={"today": "2024-05-09"})
    assert done.status_code == 200
    assert done.json()["status"] == "completed"
    assert rs.get_rule(rule["id"], "alice")["next_occurrence"] == "2024-05-10"


def test_promote_errors(client: TestClient) -> None:
    task = client.post("/api/tasks", json={"title": "Once"}).json()
    resp = client.post(
        f"/api/tasks/{task['id']}/promote",
        json={"rrule": "FREQ=DAILY;UNTIL=20240101", "start_date": "2024-01-01"},
    )
    assert resp.status_code == 400
    assert client.post("/api/tasks/missing/promote", json={"rrule": "daily"}).status_code == 404


def test_status_completed_via_put_uses_completion_path(client: TestClient) -> None:
    rule = _create_rule(client, start_date="2024-03-10")
    task_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()["created_task_ids"][0]
    rs.update_rule(rule["id"], "alice", next_occurrence="2000-01-01")

    resp = client.put(f"/api/tasks/{task_id}", json={"status": "completed"})

    assert resp.json()["status"] == "completed"
    # Moved forward from today, whatever today is.
    assert rs.get_rule(rule["id"], "alice")["next_occurrence"] > "2000-01-01"


def test_history_endpoint(client: TestClient) -> None:
    rule = _create_rule(client)
    events = client.get(f"/api/history/{rule['id']}").json()
    assert [e["event"] for e in events] == ["rule_created"]
    assert client.get(f"/api/history/{rule['id']}", headers={"X-Owner-Id": "bob"}).status_code == 404


def test_api_key_required_when_configured(config: AppConfig, client: TestClient) -> None:
    config.api_key = "secret"
    config.save()

    assert client.get("/api/repeating-rules").status_code == 401
    assert client.get("/api/repeating-rules", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/api/repeating-rules", headers={"X-API-Key": "secret"}).status_code == 200


def test_editing_task_of_deleted_rule_still_succeeds(client: TestClient) -> None:
    rule = _create_rule(client)
    task_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()["created_task_ids"][0]
    assert client.delete(f"/api/repeating-rules/{rule['id']}").status_code == 200

    resp = client.put(f"/api/tasks/{task_id}", json={"title": "Renamed"})

    assert resp.status_code == 200
    assert resp.json()["title"] == "Renamed"
    assert ts.get_task(task_id)["title"] == "Renamed"


def test_trashing_through_put_frees_the_occurrence(client: TestClient) -> None:
    rule = _create_rule(client)
    task_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()["created_task_ids"][0]

    resp = client.put(f"/api/tasks/{task_id}", json={"status": "trashed", "title": "Gone"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "trashed"
    assert resp.json()["trashed_at"] is not None
    assert ts.find_task_by_rule_and_date(rule["id"], "2024-03-10") is None
    # A trashed instance is not a template source.
    assert rs.get_rule(rule["id"], "alice")["title"] == "Stretch"

    resp = client.put(f"/api/tasks/{task_id}", json={"status": "scheduled"})
    assert resp.status_code == 200
    assert resp.json()["trashed_at"] is None
    assert ts.find_task_by_rule_and_date(rule["id"], "2024-03-10")["id"] == task_id


def test_second_live_instance_is_409(client: TestClient) -> None:
    rule = _create_rule(client)
    task_id = client.post("/api/repeating-rules/materialize", json={"today": "2024-03-10"}).json()["created_task_ids"][0]

    resp = client.post(
        "/api/tasks",
        json={"title": "Stretch", "repeating_rule_id": rule["id"], "scheduled_date": "2024-03-10"},
    )
    assert resp.status_code == 409

    other = client.post(
        "/api/tasks",
        json={"title": "Stretch", "repeating_rule_id": rule["id"], "scheduled_date": "2024-03-12"},
    ).json()
    resp = client.put(f"/api/tasks/{other['id']}", json={"scheduled_date": "2024-03-10"})
    assert resp.status_code == 409
    assert ts.get_task(other["id"])["scheduled_date"] == "2024-03-12"
    assert ts.get_task(task_id)["scheduled_date"] == "2024-03-10"
