from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import register_and_login


def _create_project(client: TestClient, name: str = "Alpha", description: str = "Build the alpha") -> dict:
    response = client.post("/projects", json={"name": name, "description": description})
    assert response.status_code == 201, response.text
    return response.json()


def _login(client: TestClient, email: str = "ada@example.com", password: str = "secret-pass") -> str:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def _log(client: TestClient, project_id: str, start: str, end: str, description: str = "Work") -> dict:
    response = client.post(
        "/entries",
        json={"project_id": project_id, "description": description, "start_time": start, "end_time": end},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_healthz_and_authentication_required(client: TestClient):
    assert client.get("/healthz").json() == {"status": "ok"}

    response = client.get("/projects")
    assert response.status_code == 401
    assert response.json() == {"detail": "Not authenticated"}

    response = client.get("/projects", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_register_and_login_errors(client: TestClient):
    register_and_login(client)

    duplicate = client.post("/auth/register", json={"email": "ADA@example.com", "password": "another-pass"})
    assert duplicate.status_code == 400

    wrong = client.post("/auth/login", json={"email": "ada@example.com", "password": "wrong-pass"})
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid email or password."

    unknown = client.post("/auth/login", json={"email": "nobody@example.com", "password": "secret-pass"})
    assert unknown.json()["detail"] == "Invalid email or password."


def test_me_and_logout(auth_client: TestClient):
    me = auth_client.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["email"] == "ada@example.com"

    assert auth_client.post("/auth/logout").status_code == 204
    assert auth_client.get("/auth/me").status_code == 401


def test_project_crud(auth_client: TestClient):
    project = _create_project(auth_client, "  Alpha  ")
    assert project["name"] == "Alpha"
    assert project["is_bucket"] is False
    assert project["created_at"].startswith("2024-01-10T12:00:00")

    blank = auth_client.post("/projects", json={"name": "   "})
    assert blank.status_code == 400
    assert blank.json()["detail"] == "Project name is required."

    updated = auth_client.patch(f"/projects/{project['id']}", json={"name": "Alpha 2", "description": "New"})
    assert updated.status_code == 200
    assert updated.json()["name"] == "Alpha 2"
    assert auth_client.get(f"/projects/{project['id']}").json()["description"] == "New"

    assert [p["id"] for p in auth_client.get("/projects").json()] == [project["id"]]

    assert auth_client.delete(f"/projects/{project['id']}").status_code == 204
    assert auth_client.get(f"/projects/{project['id']}").status_code == 404


def test_projects_are_private_to_their_owner(auth_client: TestClient):
    project = _create_project(auth_client)
    other_token = register_and_login(auth_client, "grace@example.com", "other-pass")
    headers = {"Authorization": f"Bearer {other_token}"}

    assert auth_client.get("/projects", headers=headers).json() == []
    assert auth_client.get(f"/projects/{project['id']}", headers=headers).status_code == 404
    response = auth_client.post(
        "/entries",
        headers=headers,
        json={
            "project_id": project["id"],
            "description": "Sneaky",
            "start_time": "2024-01-10T09:00:00Z",
            "end_time": "2024-01-10T10:00:00Z",
        },
    )
    assert response.status_code == 404


def test_manual_entries_validation_and_editing(auth_client: TestClient):
    project = _create_project(auth_client)
    other = _create_project(auth_client, "Beta")

    backwards = auth_client.post(
        "/entries",
        json={
            "project_id": project["id"],
            "description": "Oops",
            "start_time": "2024-01-10T10:00:00Z",
            "end_time": "2024-01-10T10:00:00Z",
        },
    )
    assert backwards.status_code == 400
    assert backwards.json()["detail"] == "End date and time must be after start date and time."

    empty = auth_client.post(
        "/entries",
        json={
            "project_id": project["id"],
            "description": "  ",
            "start_time": "2024-01-10T09:00:00Z",
            "end_time": "2024-01-10T10:00:00Z",
        },
    )
    assert empty.status_code == 400

    created = _log(auth_client, project["id"], "2024-01-10T09:00:00Z", "2024-01-10T10:30:00Z", "Write docs")
    entry = created["entry"]
    assert created["warning"] is None
    assert entry["duration_ms"] == 5_400_000
    assert entry["duration"] == "1h 30m"

    listed = auth_client.get("/entries", params={"day": "2024-01-10"}).json()
    assert [item["id"] for item in listed] == [entry["id"]]
    assert auth_client.get("/entries", params={"day": "2024-01-09"}).json() == []

    moved = auth_client.patch(
        f"/entries/{entry['id']}",
        json={"project_id": other["id"], "end_time": "2024-01-10T09:45:00Z"},
    )
    assert moved.status_code == 200
    assert moved.json()["project_id"] == other["id"]
    assert moved.json()["duration"] == "45m"

    invalid = auth_client.patch(f"/entries/{entry['id']}", json={"start_time": "2024-01-10T11:00:00Z"})
    assert invalid.status_code == 400

    assert auth_client.get(f"/projects/{other['id']}/entries").json()[0]["id"] == entry["id"]
    assert auth_client.delete(f"/entries/{entry['id']}").status_code == 204
    assert auth_client.get("/entries").json() == []
    assert auth_client.delete(f"/entries/{entry['id']}").status_code == 404


def test_daily_limit_warning_on_crossing_entry(auth_client: TestClient):
    project = _create_project(auth_client)
    first = _log(auth_client, project["id"], "2024-01-10T00:00:00Z", "2024-01-10T07:30:00Z")
    assert first["warning"] is None

    second = _log(auth_client, project["id"], "2024-01-10T08:00:00Z", "2024-01-10T09:00:00Z")
    assert second["warning"].startswith("You have logged more than 8 hours today")

    third = _log(auth_client, project["id"], "2024-01-10T09:30:00Z", "2024-01-10T10:00:00Z")
    assert third["warning"] is None


def test_timer_stop_warns_when_crossing_the_daily_limit(auth_client: TestClient, clock):
    project = _create_project(auth_client)
    _log(auth_client, project["id"], "2024-01-10T00:00:00Z", "2024-01-10T07:30:00Z")

    auth_client.post("/timer/start", json={"project_id": project["id"], "description": "Overtime"})
    clock.advance(hours=1)
    stopped = auth_client.post("/timer/stop").json()

    assert stopped["delivered"] is True
    assert stopped["warning"].startswith("You have logged more than 8 hours today")

    auth_client.post("/timer/start", json={"project_id": project["id"], "description": "More"})
    clock.advance(minutes=10)
    assert auth_client.post("/timer/stop").json()["warning"] is None


def test_timer_flow(auth_client: TestClient, clock):
    project = _create_project(auth_client)

    idle = auth_client.get("/timer").json()
    assert idle["status"] == "idle"

    started = auth_client.post("/timer/start", json={"project_id": project["id"], "description": "Writing docs"})
    assert started.status_code == 201
    assert started.json()["status"] == "running"

    again = auth_client.post("/timer/start", json={"project_id": project["id"], "description": "Other"})
    assert again.status_code == 409
    assert again.json()["detail"] == "A timer is already running. Stop it before starting a new one."

    clock.advance(seconds=125)
    status = auth_client.get("/timer").json()
    assert status["elapsed_seconds"] == 125
    assert status["elapsed"] == "00:02:05"
    assert status["description"] == "Writing docs"

    stopped = auth_client.post("/timer/stop")
    assert stopped.status_code == 200
    body = stopped.json()
    assert body["delivered"] is True
    assert body["pending"] == 0
    assert body["timer"]["status"] == "idle"

    entries = auth_client.get("/entries").json()
    assert [entry["id"] for entry in entries] == [body["entry_id"]]
    assert entries[0]["duration_ms"] == 125_000

    noop = auth_client.post("/timer/stop").json()
    assert noop["entry_id"] is None
    assert auth_client.get("/outbox").json() == {"pending": []}
    assert auth_client.post("/outbox/flush").json()["remaining"] == 0


def test_timer_requires_existing_project_and_description(auth_client: TestClient):
    project = _create_project(auth_client)
    assert auth_client.post("/timer/start", json={"project_id": "missing", "description": "x"}).status_code == 400
    assert auth_client.post("/timer/start", json={"project_id": project["id"], "description": " "}).status_code == 400
    assert auth_client.get("/timer").json()["status"] == "idle"


def test_project_with_running_timer_cannot_be_deleted(auth_client: TestClient, clock):
    project = _create_project(auth_client)
    auth_client.post("/timer/start", json={"project_id": project["id"], "description": "Work"})

    response = auth_client.delete(f"/projects/{project['id']}")
    assert response.status_code == 409

    clock.advance(minutes=1)
    auth_client.post("/timer/stop")
    assert auth_client.delete(f"/projects/{project['id']}").status_code == 204
    assert auth_client.get("/entries").json() == []


def test_logout_discards_a_running_timer(client: TestClient, clock):
    token = register_and_login(client)
    headers = {"Authorization": f"Bearer {token}"}
    project = client.post("/projects", json={"name": "Alpha"}, headers=headers).json()
    client.post("/timer/start", json={"project_id": project["id"], "description": "Work"}, headers=headers)
    clock.advance(minutes=10)

    assert client.post("/auth/logout", headers=headers).status_code == 204

    token = _login(client)
    headers = {"Authorization": f"Bearer {token}"}
    assert client.get("/timer", headers=headers).json()["status"] == "idle"
    assert client.get("/entries", headers=headers).json() == []


def test_internal_activities_use_the_bucket_project(auth_client: TestClient):
    project = _create_project(auth_client)
    _log(auth_client, project["id"], "2024-01-10T08:00:00Z", "2024-01-10T09:00:00Z")

    logged = auth_client.post(
        "/activities",
        json={
            "activity_type": "Practicing",
            "description": " scales ",
            "start_time": "2024-01-10T10:00:00Z",
            "end_time": "2024-01-10T10:30:00Z",
        },
    )
    assert logged.status_code == 201
    entry = logged.json()["entry"]
    assert entry["description"] == "Practicing: scales"

    assert [p["name"] for p in auth_client.get("/projects").json()] == ["Alpha"]
    projects = auth_client.get("/projects", params={"include_bucket": True}).json()
    buckets = [p for p in projects if p["is_bucket"]]
    assert len(buckets) == 1
    assert buckets[0]["name"] == "Internal Activities"
    assert entry["project_id"] == buckets[0]["id"]

    sidebar = auth_client.get("/views/sidebar").json()
    assert [group["label"] for group in sidebar["groups"]] == ["Today"]
    assert [p["name"] for p in sidebar["groups"][0]["projects"]] == ["Alpha"]
    assert sidebar["groups"][0]["total_ms"] == 3_600_000

    day = auth_client.get("/views/day/2024-01-10").json()
    assert day["total_ms"] == 5_400_000
    assert day["total"] == "1h 30m"
    assert sorted(row["name"] for row in day["breakdown"]) == ["Alpha", "Internal Activities"]
    assert [item["description"] for item in day["entries"]] == ["Practicing: scales", "Work"]

    bad_type = auth_client.post(
        "/activities",
        json={
            "activity_type": "Sleeping",
            "description": "nap",
            "start_time": "2024-01-10T11:00:00Z",
            "end_time": "2024-01-10T11:30:00Z",
        },
    )
    assert bad_type.status_code == 422

    timer = auth_client.post("/activities/timer", json={"activity_type": "Checking", "description": "inbox"})
    assert timer.status_code == 201
    assert timer.json()["project_id"] == buckets[0]["id"]
    assert timer.json()["description"] == "Checking: inbox"
    listed = auth_client.get("/projects", params={"include_bucket": True}).json()
    assert len([p for p in listed if p["is_bucket"]]) == 1


def test_sidebar_groups_and_week_view(auth_client: TestClient):
    alpha = _create_project(auth_client, "Alpha")
    beta = _create_project(auth_client, "Beta")
    _log(auth_client, alpha["id"], "2024-01-09T08:00:00Z", "2024-01-09T09:00:00Z")
    _log(auth_client, beta["id"], "2024-01-02T08:00:00Z", "2024-01-02T08:30:00Z")

    groups = auth_client.get("/views/sidebar").json()["groups"]
    assert [group["label"] for group in groups] == ["Yesterday", "January 2, 2024"]
    assert groups[1]["total"] == "30m"

    week = auth_client.get("/views/week").json()
    assert week["start"] == "2024-01-08"
    assert [day["hours"] for day in week["days"]] == [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0]

    explicit = auth_client.get("/views/week", params={"start": "2024-01-01"}).json()
    assert explicit["days"][1]["total_ms"] == 1_800_000


def test_deleting_a_project_cascades_its_entries(auth_client: TestClient):
    project = _create_project(auth_client)
    keep = _create_project(auth_client, "Keep")
    for hour in (8, 10, 12):
        _log(auth_client, project["id"], f"2024-01-10T{hour:02d}:00:00Z", f"2024-01-10T{hour:02d}:30:00Z")
    _log(auth_client, keep["id"], "2024-01-10T14:00:00Z", "2024-01-10T14:30:00Z")

    assert auth_client.delete(f"/projects/{project['id']}").status_code == 204

    remaining = auth_client.get("/entries").json()
    assert [entry["project_id"] for entry in remaining] == [keep["id"]]
    grouped = [p["id"] for group in auth_client.get("/views/sidebar").json()["groups"] for p in group["projects"]]
    assert grouped == [keep["id"]]
    assert auth_client.get(f"/projects/{project['id']}/entries").status_code == 404
