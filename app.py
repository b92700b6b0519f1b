# app.py
# Deposco inventory agent: leases tasks from the controller and runs them
# through the registered Deposco ops.
#
# Controller contract:
#   - Lease task:  GET /api/task?agent=NAME&wait_ms=MS   (also /task)
#   - Register:    POST /api/agents/register            (also /agents/register)
#   - Heartbeat:   POST /api/agents/heartbeat           (also /agents/heartbeat)
#   - Result:      POST /api/result                     (also /result)
#
# Env:
#   CONTROLLER_URL      (default http://controller:8080)
#   API_PREFIX          (default /api)
#   AGENT_NAME          (default hostname)
#   TASKS               (comma list; default "deposco_inventory,deposco_reserve_inventory")
#   AGENT_LABELS        (k=v,k2=v2)
#   HEARTBEAT_SEC       (default 3)
#   WAIT_MS             (default 2000)
#   LEASE_IDLE_SEC      (default 0.05)
#   HTTP_TIMEOUT        (default 6)  # controller calls only
#
# Deposco credentials come from task options, falling back to
# DEPOSCO_SITE_CODE / DEPOSCO_SITE_PREFIX / DEPOSCO_USER / DEPOSCO_PASS /
# DEPOSCO_BUSINESS_UNIT (see deposco_ops/deposco_agent.py).

import os
import time
import socket
import random
import signal
import threading
from typing import Optional, Dict, Any, Tuple, List

import requests

try:
    import psutil  # type: ignore
except ImportError:
    psutil = None

from ops_loader import load_ops


# ---------------- config ----------------

DEFAULT_TASKS = "deposco_inventory,deposco_reserve_inventory"

CONTROLLER_URL = os.getenv("CONTROLLER_URL", "http://controller:8080").rstrip("/")
API_PREFIX_RAW = os.getenv("API_PREFIX", "/api").strip()
AGENT_NAME = os.getenv("AGENT_NAME") or socket.gethostname()

TASKS_RAW = os.getenv("TASKS", DEFAULT_TASKS)
TASKS = [t.strip() for t in TASKS_RAW.split(",") if t.strip()]

HEARTBEAT_SEC = float(os.getenv("HEARTBEAT_SEC", "3"))
WAIT_MS = int(os.getenv("WAIT_MS", "2000"))
LEASE_IDLE_SEC = float(os.getenv("LEASE_IDLE_SEC", "0.05"))

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "6"))


# ---------------- logging ----------------

_LOG_LOCK = threading.Lock()
_last_log: Dict[str, float] = {}


def log(msg: str, key: str = "default", every: float = 1.0) -> None:
    now = time.time()
    with _LOG_LOCK:
        last = _last_log.get(key, 0.0)
        if now - last >= every:
            _last_log[key] = now
            print(msg, flush=True)


# ---------------- runtime state ----------------

stop_event = threading.Event()
OPS = load_ops(TASKS)


def _parse_labels(raw: str) -> Dict[str, Any]:
    labels: Dict[str, Any] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" in item:
            k, v = item.split("=", 1)
            labels[k.strip()] = v.strip()
        else:
            labels[item] = True
    return labels


BASE_LABELS: Dict[str, Any] = _parse_labels(os.getenv("AGENT_LABELS", "").strip())
BASE_LABELS["integration"] = "deposco"

_stats_lock = threading.Lock()
_tasks_done = 0
_tasks_failed = 0


def _note_done(ok: bool) -> None:
    global _tasks_done, _tasks_failed
    with _stats_lock:
        _tasks_done += 1
        if not ok:
            _tasks_failed += 1


# ---------------- HTTP helpers ----------------

_session = requests.Session()


def _normalize_prefix(p: str) -> str:
    if not p:
        return ""
    if not p.startswith("/"):
        p = "/" + p
    if p.endswith("/"):
        p = p[:-1]
    return p


API_PREFIX = _normalize_prefix(API_PREFIX_RAW)

FALLBACK_PREFIXES: List[str] = []
if API_PREFIX:
    FALLBACK_PREFIXES.append(API_PREFIX)
FALLBACK_PREFIXES.append("")


def _decode(r: requests.Response) -> Any:
    ct = r.headers.get("content-type", "")
    if "application/json" in ct:
        return r.json()
    return r.text


def _post_json(path: str, payload: Dict[str, Any]) -> Tuple[int, Any]:
    url = f"{CONTROLLER_URL}{path}"
    try:
        r = _session.post(url, json=payload, timeout=HTTP_TIMEOUT)
        return r.status_code, _decode(r)
    except (requests.RequestException, ValueError) as e:
        return 0, str(e)


def _get_json(path: str, params: Dict[str, Any]) -> Tuple[int, Any]:
    url = f"{CONTROLLER_URL}{path}"
    try:
        r = _session.get(url, params=params, timeout=HTTP_TIMEOUT)
        return r.status_code, _decode(r)
    except (requests.RequestException, ValueError) as e:
        return 0, str(e)


# ---------------- endpoint selection ----------------

PATH_REGISTER: Optional[str] = None
PATH_HEARTBEAT: Optional[str] = None
PATH_TASK: Optional[str] = None
PATH_RESULT: Optional[str] = None


def _pick(method: str, candidate: str, probe: Dict[str, Any]) -> str:
    for pref in FALLBACK_PREFIXES:
        path = f"{pref}{candidate}"
        if method == "GET":
            code, _ = _get_json(path, probe)
        else:
            code, _ = _post_json(path, probe)
        if code and code != 404:
            return path
    return f"{API_PREFIX}{candidate}"


def _probe_paths() -> None:
    global PATH_REGISTER, PATH_HEARTBEAT, PATH_TASK, PATH_RESULT

    PATH_REGISTER = _pick("POST", "/agents/register", _register_payload())
    PATH_HEARTBEAT = _pick("POST", "/agents/heartbeat", {"agent": AGENT_NAME, "metrics": {}})
    PATH_TASK = _pick("GET", "/task", {"agent": AGENT_NAME, "wait_ms": 0})
    PATH_RESULT = f"{API_PREFIX}/result" if API_PREFIX else "/result"

    log(
        f"[agent] endpoints: register={PATH_REGISTER} heartbeat={PATH_HEARTBEAT} task={PATH_TASK} result_pref={PATH_RESULT}",
        key="paths",
        every=999999,
    )


# ---------------- metrics ----------------

def _collect_metrics() -> Dict[str, Any]:
    cpu_util = 0.0
    ram_mb = 0.0
    if psutil is not None:
        try:
            cpu_util = float(psutil.cpu_percent(interval=None) / 100.0)
            ram_mb = float(psutil.virtual_memory().used / (1024 * 1024))
        except Exception:
            pass
    with _stats_lock:
        done, failed = _tasks_done, _tasks_failed
    return {
        "cpu_util": cpu_util,
        "ram_mb": ram_mb,
        "tasks_done": done,
        "tasks_failed": failed,
    }


# ---------------- controller calls ----------------

def _register_payload() -> Dict[str, Any]:
    return {
        "agent": AGENT_NAME,
        "labels": BASE_LABELS,
        "capabilities": {"ops": sorted(OPS.keys())},
        "metrics": _collect_metrics(),
    }


def _register_once() -> bool:
    assert PATH_REGISTER is not None
    code, body = _post_json(PATH_REGISTER, _register_payload())
    if code == 200:
        log("[agent] registered ok", key="reg_ok", every=10.0)
        return True
    log(f"[agent] register failed code={code} body={str(body)[:200]}", key="reg_fail", every=2.0)
    return False


def _heartbeat() -> None:
    assert PATH_HEARTBEAT is not None
    payload = {"agent": AGENT_NAME, "metrics": _collect_metrics()}
    code, body = _post_json(PATH_HEARTBEAT, payload)
    if code != 200:
        log(f"[agent] heartbeat failed code={code} body={str(body)[:200]}", key="hb_fail", every=2.0)


def _lease_task() -> Optional[Dict[str, Any]]:
    assert PATH_TASK is not None
    code, body = _get_json(PATH_TASK, {"agent": AGENT_NAME, "wait_ms": WAIT_MS})

    if code != 200:
        log(f"[agent] task poll failed code={code} body={str(body)[:200]}", key="task_fail", every=1.0)
        time.sleep(min(1.0, LEASE_IDLE_SEC + random.random() * 0.05))
        return None

    if not isinstance(body, dict):
        log(f"[agent] task poll non-json: {str(body)[:120]}", key="task_nonjson", every=1.0)
        time.sleep(LEASE_IDLE_SEC)
        return None

    if not body.get("op"):
        time.sleep(LEASE_IDLE_SEC)
        return None

    return body


def _post_result(task: Dict[str, Any], status: str, result: Any = None, error: Optional[str] = None) -> None:
    global PATH_RESULT
    task_id = task.get("id") or task.get("job_id") or ""
    job_id = task.get("job_id") or task_id

    payload = {
        "agent": AGENT_NAME,
        "task_id": task_id,
        "id": task_id,
        "job_id": job_id,
        "status": status,
        "result": result,
        "error": error,
    }

    code, body = _post_json(PATH_RESULT or "/result", payload)
    if code == 404:
        PATH_RESULT = "/result"
        code, body = _post_json(PATH_RESULT, payload)

    if code != 200:
        log(f"[agent] post result failed code={code} body={str(body)[:200]}", key="res_fail", every=1.0)


# ---------------- worker loop ----------------

def _run_task(task: Dict[str, Any]) -> None:
    op = task.get("op")
    payload = task.get("payload") or {}

    if op not in OPS:
        _post_result(task, status="error", result=None, error=f"unknown op: {op}")
        _note_done(False)
        return

    try:
        out = OPS[op](payload)
    except Exception as e:
        log(f"[agent] op {op} failed: {type(e).__name__}: {e}", key=f"op_fail_{op}", every=1.0)
        _post_result(task, status="error", result=None, error=str(e))
        _note_done(False)
        return

    _post_result(task, status="ok", result=out, error=None)
    _note_done(True)


def worker_loop() -> None:
    log("[agent] worker loop starting", key="wstart", every=999999)
    while not stop_event.is_set():
        task = _lease_task()
        if task is None:
            continue
        _run_task(task)


def heartbeat_loop() -> None:
    while not stop_event.is_set():
        _heartbeat()
        time.sleep(HEARTBEAT_SEC)


# ---------------- signals ----------------

def _handle_sigterm(signum: int, frame: Any) -> None:
    stop_event.set()


# ---------------- main ----------------

def main() -> None:
    signal.signal(signal.SIGTERM, _handle_sigterm)
    signal.signal(signal.SIGINT, _handle_sigterm)

    _probe_paths()

    while not stop_event.is_set():
        if _register_once():
            break
        time.sleep(1.0 + random.random() * 0.5)

    threading.Thread(target=heartbeat_loop, daemon=True).start()

    log(f"[agent] {AGENT_NAME} serving ops={sorted(OPS.keys())}", key="start", every=999999)
    worker_loop()


if __name__ == "__main__":
    main()
