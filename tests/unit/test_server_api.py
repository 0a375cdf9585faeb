from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from flux_orchestrator.server.app import create_app
from flux_orchestrator.server.run_store import RunStore

FINISHED = {"succeeded", "failed", "cancelled"}


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("FLUX_SERVER_STATE_PATH", str(tmp_path / "state"))
    monkeypatch.setenv("FLUX_STAGE_DIR", str(tmp_path / "stages"))
    monkeypatch.setenv("FLUX_ACTIONS_FILE", str(tmp_path / "flux.actions.json"))
    (tmp_path / "flux.actions.json").write_text(
        json.dumps({"shout": {"sh": "tr a-z A-Z", "description": "Upper-case stdin"}}),
        encoding="utf-8",
    )
    return TestClient(create_app())


def _wait_for(client: TestClient, run_id: str, timeout: float = 10.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    while True:
        run = client.get(f"/api/v1/runs/{run_id}").json()
        if run["status"] in FINISHED or time.monotonic() > deadline:
            return run
        time.sleep(0.05)


def test_health(client: TestClient) -> None:
    health = client.get("/api/v1/health").json()
    assert health["status"] == "ok"
    assert "version" in health


def test_actions_are_listed(client: TestClient) -> None:
    actions = {a["name"]: a for a in client.get("/api/v1/actions").json()}
    assert actions["echo"]["kind"] == "builtin"
    assert actions["shout"] == {"name": "shout", "kind": "shell", "description": "Upper-case stdin"}


def test_run_is_executed_in_the_background(client: TestClient) -> None:
    resp = client.post("/api/v1/runs", json={"expressions": ["pipeline(echo(hello), shout)"]})
    assert resp.status_code == 200
    created = resp.json()
    assert created["status"] in {"queued", "running", "succeeded"}
    assert created["expression"] == "pipeline(echo(hello), shout)"

    run = _wait_for(client, created["run_id"])
    assert run["status"] == "succeeded"
    assert run["exit_status"] == 0
    assert run["output"] == "HELLO\n"
    assert run["outcome"]["label"] == "flux.pipeline"

    listed = client.get("/api/v1/runs").json()
    assert [r["run_id"] for r in listed] == [created["run_id"]]


def test_failed_run_records_its_status(client: TestClient) -> None:
    run_id = client.post("/api/v1/runs", json={"expressions": ["ok", "fail"]}).json()["run_id"]
    run = _wait_for(client, run_id)
    assert run["status"] == "failed"
    assert run["exit_status"] == 1


def test_request_stdin_is_passed_to_the_run(client: TestClient) -> None:
    resp = client.post("/api/v1/runs", json={"expressions": ["shout"], "stdin": "quiet\n"})
    run = _wait_for(client, resp.json()["run_id"])
    assert run["output"] == "QUIET\n"


@pytest.mark.parametrize("expression", ["and(ok", "missing-action", "retry(0, ok)"])
def test_bad_expressions_are_rejected(client: TestClient, expression: str) -> None:
    resp = client.post("/api/v1/runs", json={"expressions": [expression]})
    assert resp.status_code == 422


def test_empty_expression_list_is_rejected(client: TestClient) -> None:
    assert client.post("/api/v1/runs", json={"expressions": []}).status_code == 422


def test_unknown_run_is_404(client: TestClient) -> None:
    assert client.get("/api/v1/runs/nope").status_code == 404
    assert client.post("/api/v1/runs/nope/cancel").status_code == 404


def test_cancel_terminates_a_running_run(client: TestClient) -> None:
    run_id = client.post("/api/v1/runs", json={"expressions": ["wait(30)"]}).json()["run_id"]

    started = time.monotonic()
    resp = client.post(f"/api/v1/runs/{run_id}/cancel")
    assert resp.status_code == 200

    run = _wait_for(client, run_id)
    assert run["status"] == "cancelled"
    assert run["exit_status"] != 0
    assert time.monotonic() - started < 10

    # Already finished.
    assert client.post(f"/api/v1/runs/{run_id}/cancel").status_code == 409


def test_stage_endpoint(client: TestClient, tmp_path: Path) -> None:
    empty = client.get("/api/v1/stages/build").json()
    assert empty["exists"] is False
    assert empty["stack"] == []

    stages = tmp_path / "stages"
    stages.mkdir()
    (stages / ".flux.stage.build").write_text('[{"a": 1}, {"b": 2}]', encoding="utf-8")

    stage = client.get("/api/v1/stages/build").json()
    assert stage["exists"] is True
    assert stage["stack"] == [{"a": 1}, {"b": 2}]
    assert stage["file"].endswith(".flux.stage.build")


def test_invalid_stage_name_is_400(client: TestClient) -> None:
    assert client.get("/api/v1/stages/bad name").status_code == 400


def test_run_store_persists_records(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs.json")
    store.create(run_id="r1", expression="ok")
    store.update("r1", status="succeeded", exit_status=0)

    reloaded = RunStore(tmp_path / "runs.json").get("r1")
    assert reloaded is not None
    assert reloaded.status == "succeeded"
    assert reloaded.finished

    with pytest.raises(KeyError):
        store.update("missing", status="failed")
