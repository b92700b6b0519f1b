# ops_loader.py
from __future__ import annotations

from typing import Any, Callable, Dict, List

from deposco_ops import get_op


def load_ops(tasks: List[str]) -> Dict[str, Callable[..., Any]]:
    """
    Return mapping op_name -> handler for every name in tasks.

    Raises ValueError on an unknown or disabled op, so a misconfigured TASKS
    fails at startup instead of on the first leased task.
    """
    out: Dict[str, Callable[..., Any]] = {}
    for name in tasks:
        out[name] = get_op(name)
    print(f"[ops] loaded: {sorted(out.keys())}", flush=True)
    return out
