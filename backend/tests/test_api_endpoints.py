import asyncio
from pathlib import Path
from typing import Iterable

import pytest
from fastapi.testclient import TestClient

from db.sqlite_client import SQLiteClient
from errors import Overloaded, StorageUnavailable
import main


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _provision(db_path: Path, codes: Iterable[str]) -> None:
    async def _run() -> None:
        client = SQLiteClient(_sqlite_url(db_path))
        await client.init_db()
        for code in codes:
            await client.create_machine(code, f"Machine {code}")
        await client.close()

    asyncio.run(_run())


def _build_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    db_path = tmp_path / "api.db"
    _provision(db_path, ["M1", "M2"])
    monkeypatch.setenv("DATABASE_URL", _sqlite_url(db_path))
    monkeypatch.setenv("WATCHDOG_ENABLED", "false")
    return TestClient(main.create_app())


def _seed_day(client: TestClient) -> None:
    for color, at in (
        ("green", "2024-03-04T08:00:00Z"),
        ("red", "2024-03-04T09:00:00Z"),
        ("purple", "2024-03-04T10:00:00Z"),
    ):
        response = client.post("/api/ingest", json={"machine_code": "M1", "color": color, "at": at})
        assert response.status_code == 200


def test_root_and_health(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        assert client.get("/").json()["message"] == "Status Ledger API"
        assert client.get("/api/health/db").json() == {"ok": True, "db": "sqlite"}
        colors = client.get("/api/colors").json()
        assert [c["name"] for c in colors] == ["green", "yellow", "red", "blue", "off"]
        machines = client.get("/api/machines").json()
        assert [m["code"] for m in machines] == ["M1", "M2"]


def test_ingest_reports_ledger_actions(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        body = {"machine_code": "M1", "color": "green", "at": "2024-03-04T08:00:00Z"}
        first = client.post("/api/ingest", json=body).json()
        second = client.post("/api/ingest", json=body).json()
        switched = client.post(
            "/api/ingest/upsert",
            json={"machine_code": "M1", "color": "yellow", "ts": "2024-03-04T08:05:00Z"},
        ).json()
        closed = client.post(
            "/api/ingest", json={"machine_code": "M1", "color": "??", "at": "2024-03-04T08:06:00Z"}
        ).json()

        assert first["action"] == "opened"
        assert first["at"] == "2024-03-04T08:00:00Z"
        assert second["action"] == "noop_same_color"
        assert switched["action"] == "switched_color"
        assert closed["action"] == "closed_on_unknown"

        current = client.get("/api/machines/M1/status/current").json()
        assert current == {"machine": "M1", "color": "unknown", "hex": "#9E9E9E", "since": None}


def test_ingest_now_uses_server_time(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.post("/api/ingest/now", json={"machine_code": "M2", "color": "red"})
        assert response.status_code == 200
        assert response.json()["action"] == "opened"

        current = client.get("/api/machines/M2/status/current").json()
        assert current["color"] == "red"
        assert current["hex"] == "#F44336"
        assert current["since"].endswith("Z")


def test_query_endpoints_roll_up_stored_intervals(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        _seed_day(client)

        by_date = client.get("/api/machines/M1/status/by-date", params={"date": "2024-03-04"}).json()
        assert by_date == [
            {"color": "green", "seconds": 3600},
            {"color": "yellow", "seconds": 0},
            {"color": "red", "seconds": 3600},
            {"color": "blue", "seconds": 0},
            {"color": "off", "seconds": 0},
        ]

        weekly = client.get(
            "/api/machines/M1/status/weekly", params={"week_start": "2024-03-03"}
        ).json()
        assert len(weekly) == 7
        assert weekly[1]["date"] == "2024-03-04"
        assert weekly[1]["buckets"][0] == {"color": "green", "seconds": 3600}

        monthly = client.get("/api/machines/M1/status/by-month", params={"month": "2024-03"}).json()
        assert len(monthly) == 31

        timeline = client.get("/api/machines/M1/timeline", params={"date": "2024-03-04"}).json()
        assert [(t["color"], t["start_time"], t["end_time"]) for t in timeline] == [
            ("green", "2024-03-04T08:00:00Z", "2024-03-04T09:00:00Z"),
            ("red", "2024-03-04T09:00:00Z", "2024-03-04T10:00:00Z"),
        ]

        span = client.get(
            "/api/machines/M1/timeline/span",
            params={"start": "2024-03-04T09:30:00Z", "end": "2024-03-04T12:00:00Z"},
        ).json()
        assert [t["color"] for t in span] == ["red"]


def test_overview_today_lists_every_machine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        client.post("/api/ingest/now", json={"machine_code": "M1", "color": "green"})
        payload = client.get("/api/overview/today").json()

        assert len(payload["date"]) == 10
        rows = {row["machine"]["code"]: row for row in payload["overview"]}
        assert rows["M1"]["current"]["color"] == "green"
        assert rows["M2"]["current"]["color"] == "unknown"
        assert [b["color"] for b in rows["M2"]["buckets"]] == ["green", "yellow", "red"]


def test_bad_requests_map_to_400(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        missing_date = client.get("/api/machines/M1/status/by-date")
        assert missing_date.status_code == 400
        assert missing_date.json()["detail"]["reason"] == "date required"
        assert client.get("/api/machines/M1/status/by-date", params={"date": "03/04/2024"}).status_code == 400
        assert client.get("/api/machines/M1/status/weekly").status_code == 400
        assert client.get("/api/machines/M1/status/by-month", params={"month": "2024-13"}).status_code == 400
        assert client.get("/api/machines/M1/timeline").status_code == 400
        assert client.get(
            "/api/machines/M1/timeline/span",
            params={"start": "2024-03-04T10:00:00Z", "end": "2024-03-04T09:00:00Z"},
        ).status_code == 400

        assert client.post("/api/ingest", json={"color": "green"}).status_code == 400
        assert client.post("/api/ingest/now", json={"machine_code": "M1"}).status_code == 400
        assert client.post(
            "/api/ingest", json={"machine_code": "M1", "color": "green", "at": "soon"}
        ).status_code == 400
        bad_color = client.post("/api/ingest/upsert", json={"machine_code": "M1", "color": "Green"})
        assert bad_color.status_code == 400
        assert bad_color.json()["detail"]["reason"] == "bad color"


def test_unknown_machine_and_time_range_errors(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        missing = client.post("/api/ingest", json={"machine_code": "NOPE", "color": "green"})
        assert missing.status_code == 404
        assert missing.json()["detail"]["error"] == "not_found"
        assert client.get("/api/machines/NOPE/status/current").status_code == 404

        client.post(
            "/api/ingest",
            json={"machine_code": "M1", "color": "green", "at": "2024-03-04T08:00:00Z"},
        )
        backwards = client.post(
            "/api/ingest",
            json={"machine_code": "M1", "color": "red", "at": "2024-03-04T07:00:00Z"},
        )
        assert backwards.status_code == 409
        assert backwards.json()["detail"]["error"] == "invalid_time_range"


def test_async_ingest_acknowledges_and_tracks_job(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        accepted = client.post(
            "/api/ingest/async",
            json={"machine_code": "NOPE", "color": "green", "at": "2024-03-04T08:00:00Z"},
        )
        assert accepted.status_code == 202
        payload = accepted.json()
        assert payload["queued"] is True

        job = client.get(f"/api/ingest/jobs/{payload['job_id']}")
        assert job.status_code == 200
        assert job.json()["machine_code"] == "NOPE"
        assert client.get("/api/ingest/jobs/ing-missing").status_code == 404

        status = client.get("/api/runtime/status").json()
        assert set(status) == {"lanes", "identifiers", "watchdog", "ingest_queue"}
        assert status["watchdog"]["enabled"] is False


def test_overload_and_storage_failures_map_to_503(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        runtime = client.app.state.runtime

        async def _overloaded(*_args, **_kwargs):
            raise Overloaded("ingest queue is full", queue_depth=1, queue_maxsize=1)

        async def _unavailable(*_args, **_kwargs):
            raise StorageUnavailable("apply timed out after 5.0s")

        monkeypatch.setattr(runtime, "accept_heartbeat", _overloaded)
        monkeypatch.setattr(runtime, "ingest", _unavailable)

        overloaded = client.post("/api/ingest/async", json={"machine_code": "M1", "color": "green"})
        assert overloaded.status_code == 503
        assert overloaded.json()["detail"]["error"] == "ingest_overloaded"

        unavailable = client.post("/api/ingest", json={"machine_code": "M1", "color": "green"})
        assert unavailable.status_code == 503
        assert unavailable.json()["detail"]["error"] == "storage_unavailable"
