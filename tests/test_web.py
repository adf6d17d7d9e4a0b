"""Tests for the HTTP API."""

from unittest.mock import MagicMock, patch

import pytest
from starlette.testclient import TestClient

from pipeline_monitor.core import status as status_mod
from pipeline_monitor.integrations.git import GitSummary
from pipeline_monitor.web.app import create_app

BACKLOG = "# Backlog\n\n- [ ] [FEAT] Existing\n- [x] [TEST] Done\n"


@pytest.fixture
def client(config):
    with patch.object(status_mod, "git_summary", return_value=GitSummary()):
        with TestClient(create_app(config)) as c:
            yield c


class TestStatusAPI:
    def test_status_envelope(self, client):
        resp = client.get("/api/pipeline/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["error"] is None
        assert body["data"]["backend"] == "files"
        assert body["data"]["healthScore"] == 100
        assert body["data"]["git"]["branch"] == "unknown"

    def test_unexpected_error_is_500(self, client):
        with patch.object(status_mod.StatusAggregator, "get_status", side_effect=RuntimeError("boom")):
            resp = client.get("/api/pipeline/status")
        assert resp.status_code == 500
        assert resp.json() == {"data": None, "error": "boom"}


class TestTasksAPI:
    def test_list_missing_backlog(self, client):
        resp = client.get("/api/tasks")
        assert resp.status_code == 404
        assert resp.json()["data"] is None

    def test_list(self, client, write_dev):
        write_dev("backlog.md", BACKLOG)
        data = client.get("/api/tasks").json()["data"]
        assert [i["title"] for i in data["items"]] == ["Existing"]
        assert data["doneCount"] == 1

    def test_add(self, client, write_dev):
        path = write_dev("backlog.md", BACKLOG)
        resp = client.post(
            "/api/tasks",
            json={"tag": "FIX", "title": "Hotfix", "position": "top", "blockedBy": ["Existing"]},
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "inserted": "- [ ] [FIX] Hotfix | blockedBy: Existing",
            "position": "top",
        }
        assert path.read_text().split("\n")[2] == "- [ ] [FIX] Hotfix | blockedBy: Existing"

    def test_add_rejects_newline(self, client, write_dev):
        path = write_dev("backlog.md", BACKLOG)
        resp = client.post("/api/tasks", json={"tag": "FIX", "title": "a\nb"})
        assert resp.status_code == 400
        assert "newlines" in resp.json()["error"]
        assert path.read_text() == BACKLOG

    def test_add_bad_json(self, client):
        resp = client.post("/api/tasks", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_add_locked(self, client, config, write_dev):
        write_dev("backlog.md", BACKLOG)
        config.backlog_lock_path.mkdir()
        with patch("pipeline_monitor.core.locks.time.sleep"):
            resp = client.post("/api/tasks", json={"tag": "FIX", "title": "Blocked out"})
        assert resp.status_code == 423
        assert resp.json()["error"] == "Backlog is locked by another process"


class TestWorkersAPI:
    def test_list_counts(self, client):
        data = client.get("/api/workers/scale").json()["data"]
        assert [c["type"] for c in data] == ["dev-worker", "task-fixer", "project-driver"]
        assert all(c["count"] == 0 for c in data)

    def test_scale_out_of_range(self, client):
        resp = client.post("/api/workers/scale", json={"workerType": "task-fixer", "count": 4})
        assert resp.status_code == 400
        assert "0 and 3" in resp.json()["error"]

    def test_scale_unknown_type(self, client):
        resp = client.post("/api/workers/scale", json={"workerType": "janitor", "count": 1})
        assert resp.status_code == 400

    def test_scale_up(self, client):
        with patch("pipeline_monitor.core.scaling.subprocess.Popen") as popen:
            popen.return_value = MagicMock(pid=999)
            resp = client.post("/api/workers/scale", json={"workerType": "dev-worker", "count": 2})
        assert resp.status_code == 200
        assert resp.json()["data"]["currentCount"] == 2
        assert popen.call_count == 2


class TestTriggerAPI:
    def test_not_allowed(self, client):
        resp = client.post("/api/pipeline/trigger", json={"script": "rm-rf"})
        assert resp.status_code == 400

    def test_bad_args(self, client, config):
        (config.scripts_dir / "health-check.sh").write_text("#!/bin/bash\n")
        resp = client.post("/api/pipeline/trigger", json={"script": "health-check", "args": ["; rm"]})
        assert resp.status_code == 400

    def test_missing_script_file(self, client):
        resp = client.post("/api/pipeline/trigger", json={"script": "health-check"})
        assert resp.status_code == 404

    def test_triggered(self, client, config):
        (config.scripts_dir / "health-check.sh").write_text("#!/bin/bash\n")
        with patch("pipeline_monitor.core.trigger.subprocess.Popen") as popen:
            popen.return_value = MagicMock(pid=77)
            resp = client.post(
                "/api/pipeline/trigger", json={"script": "health-check", "args": ["--quick"]}
            )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"triggered": True, "script": "health-check"}
        assert popen.call_args.args[0][-1] == "--quick"
        assert (config.scripts_dir / "health-check.log").exists()


class TestEventsAndLogsAPI:
    def test_events(self, client, write_dev):
        write_dev("events.log", "1700000000|claimed|Worker 3: API\n")
        data = client.get("/api/events?limit=10").json()["data"]
        assert data["count"] == 1
        assert data["events"][0]["worker"] == 3

    def test_events_bad_limit(self, client):
        assert client.get("/api/events?limit=abc").status_code == 400
        assert client.get("/api/events?limit=0").status_code == 400

    def test_logs(self, client, config):
        (config.scripts_dir / "dev-worker-1.log").write_text("alpha\nERROR beta\n\ngamma\n")
        data = client.get("/api/pipeline/logs?script=dev-worker-1&lines=2").json()["data"]
        assert data["lines"] == ["ERROR beta", "gamma"]
        assert data["totalLines"] == 4

        found = client.get("/api/pipeline/logs?script=dev-worker-1&search=error").json()["data"]
        assert found["lines"] == ["ERROR beta"]

    def test_logs_unknown_script(self, client):
        resp = client.get("/api/pipeline/logs?script=../../etc/passwd")
        assert resp.status_code == 400

    def test_logs_requires_script(self, client):
        assert client.get("/api/pipeline/logs").status_code == 400


class TestThreadpool:
    @pytest.mark.parametrize(
        "method, url, body, operation",
        [
            ("GET", "/api/workers/scale", None, "list_worker_counts"),
            ("GET", "/api/tasks", None, "list_backlog"),
            ("POST", "/api/pipeline/trigger", {"script": "rm-rf"}, "trigger_script"),
            ("GET", "/api/events?limit=5", None, "list_events"),
        ],
    )
    def test_operation_runs_in_threadpool(self, client, method, url, body, operation):
        calls = []

        async def record(fn, *args, **kwargs):
            calls.append(fn.__name__)
            return fn(*args, **kwargs)

        with patch("pipeline_monitor.web.app.run_in_threadpool", record):
            client.request(method, url, json=body)
        assert calls == [operation]
