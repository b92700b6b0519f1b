# deposco_ops/__init__.py
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import importlib
import os
import traceback

# Registry of op handlers, filled by @register_op as modules are imported
OPS_REGISTRY: Dict[str, Callable[..., Any]] = {}

# (module, error_string) for modules that failed to import
OPS_LOAD_ERRORS: List[Tuple[str, str]] = []

# Map op name -> module filename (without .py)
OP_TO_MODULE: Dict[str, str] = {
    "deposco_inventory": "deposco_agent",
    "deposco_reserve_inventory": "deposco_agent",
}


def register_op(name: str):
    """Decorator registering an op handler under a unique name."""
    def decorator(fn: Callable[..., Any]):
        prev = OPS_REGISTRY.get(name)
        if prev is not None and prev is not fn:
            print(
                f"[ops] WARNING: op '{name}' re-registered "
                f"({getattr(prev, '__name__', prev)} -> {getattr(fn, '__name__', fn)})",
                flush=True,
            )
        OPS_REGISTRY[name] = fn
        return fn

    return decorator


def _enabled_ops() -> Set[str]:
    """
    Ops enabled for this agent instance, from TASKS ("a,b,c").
    Empty TASKS enables everything in OP_TO_MODULE.
    """
    tasks = os.getenv("TASKS", "").strip()
    if not tasks:
        return set(OP_TO_MODULE.keys())
    return {t.strip() for t in tasks.split(",") if t.strip()}


def list_ops() -> List[str]:
    enabled = _enabled_ops()
    return sorted(op for op in enabled if op in OP_TO_MODULE)


def try_get_op(name: str) -> Optional[Callable[..., Any]]:
    try:
        return get_op(name)
    except ValueError:
        return None


def _import_op_module(mod: str) -> None:
    """
    Import deposco_ops.<mod> so its @register_op decorators run.

    Failures are recorded rather than raised; get_op() reports them when the
    op is actually requested.
    """
    try:
        print(f"[ops] importing {__name__}.{mod}", flush=True)
        importlib.import_module(f"{__name__}.{mod}")
    except Exception as e:
        msg = f"{type(e).__name__}: {e}"
        OPS_LOAD_ERRORS.append((mod, msg))
        print(f"[ops] ERROR: failed to import {__name__}.{mod}: {msg}", flush=True)
        traceback.print_exc()


def get_op(name: str) -> Callable[..., Any]:
    """
    Return the handler for an op, lazily importing its module.

    Raises ValueError if the op is disabled by TASKS, unknown, or its module
    failed to import.
    """
    if name not in OPS_REGISTRY:
        enabled = _enabled_ops()
        if name not in enabled:
            raise ValueError(f"Op {name!r} disabled by TASKS. Enabled: {sorted(enabled)}")

        mod = OP_TO_MODULE.get(name)
        if mod is None:
            raise ValueError(f"Unknown op {name!r}. Enabled: {list_ops()}")

        _import_op_module(mod)

    fn = OPS_REGISTRY.get(name)
    if fn is None:
        if OPS_LOAD_ERRORS:
            errs = "; ".join(f"{m} => {e}" for (m, e) in OPS_LOAD_ERRORS[:10])
            raise ValueError(
                f"Unknown or failed op {name!r}. Registered ops: {sorted(OPS_REGISTRY.keys())}. "
                f"Also saw op import errors: {errs}"
            )
        raise ValueError(f"Unknown op {name!r}. Registered ops: {sorted(OPS_REGISTRY.keys())}")

    return fn
