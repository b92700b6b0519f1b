# deposco_ops/deposco_agent.py
from __future__ import annotations

from typing import Any, Dict, List, Optional
import os

import requests

from . import register_op
from ._deposco_batch import (
    batch_status,
    fetch_product_inventory,
    parse_skus,
    reserve_inventory,
)
from ._deposco_client import ATP_PATHS, DeposcoClient, DeposcoCredentials, ValidationError

OUTPUT_MODES = ("clean", "merge")
MODES = ("lookup", "reserve")

# option name -> env var used when the task leaves it blank
ENV_FALLBACKS: Dict[str, str] = {
    "site_code": "DEPOSCO_SITE_CODE",
    "site_prefix": "DEPOSCO_SITE_PREFIX",
    "username": "DEPOSCO_USER",
    "password": "DEPOSCO_PASS",
    "business_unit": "DEPOSCO_BUSINESS_UNIT",
}

REQUIRED_FIELDS = ("site_code", "site_prefix", "username", "password", "business_unit")


def _present(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    if isinstance(v, (list, dict)):
        return len(v) > 0
    return True


class DeposcoInventoryAgent:
    """
    Retrieves ATP quantities from Deposco one sku at a time, or reserves
    inventory in one batch call.

    ATP is on-hand stock minus reserved stock. The login must belong to the
    client whose business unit is being queried.

    Options:
      - site_code, site_prefix, username, password, business_unit: required
      - mode: "lookup" (default) | "reserve"
      - skus: array or comma-separated string (lookup)
      - adjustments: [{"itemNumber": ..., "value": +/-n}, ...] (reserve)
      - output_mode: "clean" (default) | "merge"
      - atp_path: "restful" (default) | "legacy"
      - payload: literal payload handled on a tick
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None):
        merged = self.default_options()
        merged.update(options or {})
        for key, env_name in ENV_FALLBACKS.items():
            if not _present(merged.get(key)):
                merged[key] = os.getenv(env_name, "")
        self.options = merged
        self._session = session
        self._deposco: Optional[DeposcoClient] = None

    @staticmethod
    def default_options() -> Dict[str, Any]:
        return {
            "site_code": "",
            "site_prefix": "",
            "username": "",
            "password": "",
            "business_unit": "",
            "mode": "lookup",
            "output_mode": "clean",
            "atp_path": "restful",
            "skus": "",
            "adjustments": [],
            "payload": {},
        }

    def validate_options(self) -> List[str]:
        opts = self.options
        errors: List[str] = []

        for name in REQUIRED_FIELDS:
            if not _present(opts.get(name)):
                errors.append(f"{name} is a required field")

        output_mode = opts.get("output_mode")
        if _present(output_mode) and str(output_mode) not in OUTPUT_MODES:
            errors.append("if provided, output_mode must be 'clean' or 'merge'")

        if str(opts.get("atp_path") or "restful") not in ATP_PATHS:
            errors.append("if provided, atp_path must be 'restful' or 'legacy'")

        mode = str(opts.get("mode") or "lookup")
        if mode not in MODES:
            errors.append("mode must be 'lookup' or 'reserve'")
        elif mode == "lookup":
            skus = opts.get("skus")
            if not _present(skus):
                errors.append("skus is a required field")
            elif not isinstance(skus, (list, str)):
                errors.append("skus must be an array or a string")
        else:
            if not isinstance(opts.get("adjustments"), list):
                errors.append("adjustments must be an array")

        return errors

    def _client(self) -> DeposcoClient:
        # one client (and connection pool) per agent, reused across events
        if self._deposco is None:
            creds = DeposcoCredentials(
                site_code=str(self.options["site_code"]),
                site_prefix=str(self.options["site_prefix"]),
                username=str(self.options["username"]),
                password=str(self.options["password"]),
            )
            self._deposco = DeposcoClient(
                creds,
                session=self._session,
                atp_path=str(self.options.get("atp_path") or "restful"),
            )
        return self._deposco

    def close(self) -> None:
        if self._deposco is not None:
            self._deposco.close()
            self._deposco = None

    def _base_payload(self, incoming: Dict[str, Any]) -> Dict[str, Any]:
        if str(self.options.get("output_mode") or "clean") == "merge":
            return dict(incoming)
        return {}

    def handle_event(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        incoming = payload if isinstance(payload, dict) else {}
        out = self._base_payload(incoming)
        business_unit = str(self.options["business_unit"])

        if str(self.options.get("mode") or "lookup") == "reserve":
            outcome = reserve_inventory(self._client(), business_unit, self.options.get("adjustments"))
            if outcome.ok:
                out.update(reservation_result=outcome.result, status=200)
            else:
                out.update(adjustments=outcome.adjustments, status=outcome.status, error=outcome.error)
            return out

        try:
            skus = parse_skus(self.options.get("skus"))
        except ValidationError as e:
            out.update(
                deposco_stock=[],
                status=e.status_code,
                errors=[{"sku": "", "status_code": e.status_code, "message": e.message}],
            )
            return out

        result = fetch_product_inventory(self._client(), skus, business_unit)
        status = batch_status(result)
        out.update(deposco_stock=[r.to_dict() for r in result.records], status=status)
        if result.errors:
            out["errors"] = [e.to_dict() for e in result.errors]
        return out

    def receive(self, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.handle_event(ev) for ev in events]

    def check(self) -> Dict[str, Any]:
        return self.handle_event(self.options.get("payload") or {})


def _run(task_or_payload: Optional[Dict[str, Any]], forced_mode: Optional[str] = None) -> Dict[str, Any]:
    """
    Accepts either the payload dict directly or a full task containing "payload".

    Payload fields:
      - options: agent options (see DeposcoInventoryAgent)
      - event: one incoming event payload, or
      - events: list of incoming event payloads
      - neither: treated as a tick, handling options.payload
    """
    if task_or_payload is None:
        task_or_payload = {}
    if not isinstance(task_or_payload, dict):
        raise ValueError("deposco: payload must be a dict")

    # a leased task wraps the op payload; a bare payload carries "options" at the top
    if "payload" in task_or_payload and "options" not in task_or_payload:
        payload = task_or_payload.get("payload")
    else:
        payload = task_or_payload
    if not isinstance(payload, dict):
        raise ValueError("deposco: payload must be a dict")

    options = dict(payload.get("options") or {})
    if forced_mode is not None:
        options["mode"] = forced_mode

    agent = DeposcoInventoryAgent(options)
    errors = agent.validate_options()
    if errors:
        raise ValueError("deposco: invalid options: " + "; ".join(errors))

    try:
        if "events" in payload:
            events = payload.get("events")
            if not isinstance(events, list):
                raise ValueError("deposco: events must be a list")
            return {"events": agent.receive(events)}
        if "event" in payload:
            return {"events": [agent.handle_event(payload.get("event"))]}
        return {"events": [agent.check()]}
    finally:
        agent.close()


@register_op("deposco_inventory")
def deposco_inventory(task_or_payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return _run(task_or_payload)


@register_op("deposco_reserve_inventory")
def deposco_reserve_inventory(task_or_payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return _run(task_or_payload, forced_mode="reserve")
