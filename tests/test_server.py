"""HTTP control plane."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from pipewright.dsl import job, on_manual, sh, uses, wf
from pipewright.engine import Engine
from pipewright.server import create_app

EVENT = {"repository": "acme/site", "ref": "refs/heads/main", "actor": "dev", "kind": "manual"}


@pytest.fixture
def client(engine: Engine) -> TestClient:
    engine.definitions.append(
        wf(
            job("build", uses("checkout"), uses("upload-artifact", name="site", path="site")),
            job("deploy", uses("deploy", artifact="site"), needs=["build"], environment="prod"),
            name="pages",
            on=[on_manual()],
        )
    )
    return TestClient(create_app(engine))


def test_event_starts_runs(client: TestClient) -> None:
    res = client.post("/events", json=EVENT)
    assert res.status_code == 202
    [run_id] = res.json()["run_ids"]

    # background tasks finish before the test client returns
    res = client.get(f"/runs/{run_id}")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "succeeded"
    assert body["workflow"] == "pages"
    assert {j["name"]: j["status"] for j in body["jobs"]} == {"build": "succeeded", "deploy": "succeeded"}

    env = client.get("/environments/prod").json()
    assert env["run_id"] == run_id
    assert env["url"] == body["outputs"]["deploy.deploy.url"]


def test_event_without_matching_workflow(client: TestClient) -> None:
    res = client.post("/events", json={**EVENT, "kind": "push"})
    assert res.status_code == 202
    assert res.json()["run_ids"] == []


def test_invalid_event(client: TestClient) -> None:
    assert client.post("/events", json={**EVENT, "kind": "tag"}).status_code == 422
    assert client.post("/events", json={"ref": "main"}).status_code == 422
    assert client.post("/events", json={**EVENT, "repository": ""}).status_code == 422
    assert client.post("/events", json={**EVENT, "ref": ""}).status_code == 422


def test_invalid_workflow_is_reported(engine: Engine, client: TestClient) -> None:
    engine.definitions.append(
        wf(job("a", sh("s", "true"), needs=["missing"]), name="broken", on=[on_manual()])
    )
    res = client.post("/events", json=EVENT)
    assert res.status_code == 422


def test_unknown_run(client: TestClient) -> None:
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404


def test_cancel_of_finished_run(client: TestClient) -> None:
    [run_id] = client.post("/events", json=EVENT).json()["run_ids"]
    res = client.post(f"/runs/{run_id}/cancel")
    assert res.status_code == 200
    assert res.json() == {"run_id": run_id, "cancelled": False}


def test_environment_never_deployed(client: TestClient) -> None:
    assert client.get("/environments/staging").status_code == 404
