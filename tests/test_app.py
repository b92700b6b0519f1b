import pytest

import app

from conftest import FakeResponse, FakeSession, atp


@pytest.fixture
def posted(monkeypatch):
    calls = []
    monkeypatch.setattr(app, "_post_result", lambda task, status, result=None, error=None: calls.append(
        {"task": task, "status": status, "result": result, "error": error}
    ))
    return calls


@pytest.fixture
def fake_deposco(monkeypatch):
    from deposco_ops import _deposco_client

    fake = FakeSession()
    monkeypatch.setattr(_deposco_client.requests, "Session", lambda: fake)
    return fake


def test_runner_serves_deposco_ops():
    assert set(app.OPS) == {"deposco_inventory", "deposco_reserve_inventory"}


def test_run_task_posts_ok_result(posted, fake_deposco, agent_options):
    fake_deposco.routes.update({"SKU-1": atp("SKU-1", 3), "SKU-2": FakeResponse(500, text="boom")})
    task = {"id": "t-1", "op": "deposco_inventory", "payload": {"options": agent_options, "event": {}}}

    app._run_task(task)

    assert posted[0]["status"] == "ok"
    event = posted[0]["result"]["events"][0]
    assert event["status"] == 500
    assert event["deposco_stock"] == [{"sku": "SKU-1", "quantity": 3}]
    assert event["errors"][0]["sku"] == "SKU-2"


def test_run_task_invalid_options_posts_error(posted, monkeypatch):
    for env_name in ("DEPOSCO_SITE_CODE", "DEPOSCO_SITE_PREFIX", "DEPOSCO_USER", "DEPOSCO_PASS", "DEPOSCO_BUSINESS_UNIT"):
        monkeypatch.delenv(env_name, raising=False)

    app._run_task({"id": "t-2", "op": "deposco_inventory", "payload": {"options": {}}})

    assert posted[0]["status"] == "error"
    assert "site_code is a required field" in posted[0]["error"]


def test_run_task_unknown_op(posted):
    app._run_task({"id": "t-3", "op": "echo", "payload": {}})

    assert posted[0]["status"] == "error"
    assert posted[0]["error"] == "unknown op: echo"


def test_lease_task_ignores_empty_lease(monkeypatch):
    monkeypatch.setattr(app, "PATH_TASK", "/api/task")
    monkeypatch.setattr(app, "LEASE_IDLE_SEC", 0.0)
    monkeypatch.setattr(app, "_get_json", lambda path, params: (200, {}))

    assert app._lease_task() is None


def test_lease_task_returns_task(monkeypatch):
    task = {"id": "t-4", "op": "deposco_inventory", "payload": {}}
    monkeypatch.setattr(app, "PATH_TASK", "/api/task")
    monkeypatch.setattr(app, "_get_json", lambda path, params: (200, task))

    assert app._lease_task() == task


def test_post_result_falls_back_on_404(monkeypatch):
    seen = []

    def fake_post(path, payload):
        seen.append(path)
        return (404, "") if path == "/api/result" else (200, {})

    monkeypatch.setattr(app, "PATH_RESULT", "/api/result")
    monkeypatch.setattr(app, "_post_json", fake_post)

    app._post_result({"id": "t-5"}, status="ok", result={"events": []})

    assert seen == ["/api/result", "/result"]


def test_parse_labels():
    assert app._parse_labels("site=acme, canary ,") == {"site": "acme", "canary": True}


def test_normalize_prefix():
    assert app._normalize_prefix("api/") == "/api"
    assert app._normalize_prefix("") == ""


def test_pick_prefers_prefixed_path(monkeypatch):
    seen = []

    def fake_post(path, payload):
        seen.append(path)
        return 200, {}

    monkeypatch.setattr(app, "FALLBACK_PREFIXES", ["/api", ""])
    monkeypatch.setattr(app, "_post_json", fake_post)

    assert app._pick("POST", "/agents/register", {}) == "/api/agents/register"
    assert seen == ["/api/agents/register"]


def test_pick_falls_back_past_404_and_unreachable(monkeypatch):
    answers = {"/api/task": 404, "/task": 200}
    monkeypatch.setattr(app, "FALLBACK_PREFIXES", ["/api", ""])
    monkeypatch.setattr(app, "_get_json", lambda path, params: (answers[path], ""))

    assert app._pick("GET", "/task", {}) == "/task"

    monkeypatch.setattr(app, "_get_json", lambda path, params: (0, "connection refused"))

    assert app._pick("GET", "/task", {}) == f"{app.API_PREFIX}/task"


def test_probe_paths_sets_endpoints(monkeypatch):
    for name in ("PATH_REGISTER", "PATH_HEARTBEAT", "PATH_TASK", "PATH_RESULT"):
        monkeypatch.setattr(app, name, None)
    monkeypatch.setattr(app, "API_PREFIX", "/api")
    monkeypatch.setattr(app, "FALLBACK_PREFIXES", ["/api", ""])
    monkeypatch.setattr(app, "_post_json", lambda path, payload: (404, "") if path.startswith("/api") else (200, {}))
    monkeypatch.setattr(app, "_get_json", lambda path, params: (200, {}))

    app._probe_paths()

    assert app.PATH_REGISTER == "/agents/register"
    assert app.PATH_HEARTBEAT == "/agents/heartbeat"
    assert app.PATH_TASK == "/api/task"
    assert app.PATH_RESULT == "/api/result"
