# deposco_ops/_deposco_client.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
import re
import os

import requests


# Transport timeout in seconds; unset keeps the requests default (no timeout).
_timeout_raw = os.getenv("DEPOSCO_HTTP_TIMEOUT", "").strip()
try:
    DEFAULT_TIMEOUT: Optional[float] = float(_timeout_raw) if _timeout_raw else None
except ValueError:
    DEFAULT_TIMEOUT = None

ATP_PATHS = ("restful", "legacy")


# ---------------- errors ----------------

class DeposcoAgentError(Exception):
    """Base error; carries the status code reported back to the host."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ClientTransportError(DeposcoAgentError):
    """No usable HTTP response (connection refused, timeout, ...)."""


class RemoteApiError(DeposcoAgentError):
    """Deposco answered, but the answer is a failure."""


class ValidationError(DeposcoAgentError):
    """Caller input is malformed."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code)


# ---------------- data model ----------------

@dataclass(frozen=True)
class DeposcoCredentials:
    site_code: str
    site_prefix: str
    username: str
    password: str

    @property
    def auth(self) -> Tuple[str, str]:
        return (self.username, self.password)

    def base_url(self, scheme: str = "http") -> str:
        return f"{scheme}://{self.site_prefix}.deposco.com/integration/{self.site_code}"

    def __repr__(self) -> str:
        return (
            f"DeposcoCredentials(site_code={self.site_code!r}, "
            f"site_prefix={self.site_prefix!r}, username={self.username!r}, password='***')"
        )


@dataclass(frozen=True)
class StockRecord:
    sku: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {"sku": self.sku, "quantity": self.quantity}


@dataclass(frozen=True)
class AdjustmentRequest:
    item_number: str
    value: int

    def to_dict(self) -> Dict[str, Any]:
        return {"itemNumber": self.item_number, "value": self.value}


_LEADING_INT = re.compile(r"\s*([-+]?\d+)")


def to_quantity(raw: Any) -> int:
    """
    ATP arrives as 42, 42.0, "42.0", "42 units", "" or null.

    Strings keep only their leading integer ("12.9" -> 12); null and strings
    without one count as 0.
    """
    if raw is None:
        return 0
    if isinstance(raw, bool):
        raise ValueError(f"quantity must be numeric, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    if isinstance(raw, str):
        m = _LEADING_INT.match(raw)
        return int(m.group(1)) if m else 0
    raise ValueError(f"quantity must be numeric, got {raw!r}")


# ---------------- ATP response shapes ----------------

@dataclass(frozen=True)
class AtpListShape:
    """[{"itemNumber": ..., "totalAvailableToPromise": ...}, ...]"""
    item_number: str
    available: Any

    @classmethod
    def parse(cls, body: Any) -> Optional["AtpListShape"]:
        if not isinstance(body, list) or not body:
            return None
        first = body[0]
        if not isinstance(first, dict):
            return None
        if "itemNumber" not in first or "totalAvailableToPromise" not in first:
            return None
        return cls(str(first["itemNumber"]), first["totalAvailableToPromise"])


@dataclass(frozen=True)
class AtpFlatShape:
    """{"@itemNumber": ..., "@availableToPromise": ...}"""
    item_number: str
    available: Any

    @classmethod
    def parse(cls, body: Any) -> Optional["AtpFlatShape"]:
        if not isinstance(body, dict):
            return None
        if "@itemNumber" not in body or "@availableToPromise" not in body:
            return None
        return cls(str(body["@itemNumber"]), body["@availableToPromise"])


AtpShape = Union[AtpListShape, AtpFlatShape]
_ATP_SHAPES = (AtpListShape, AtpFlatShape)


def decode_atp(body: Any) -> Optional[AtpShape]:
    for shape in _ATP_SHAPES:
        decoded = shape.parse(body)
        if decoded is not None:
            return decoded
    return None


# ---------------- client ----------------

def _transport_error(e: requests.RequestException) -> ClientTransportError:
    resp = getattr(e, "response", None)
    status = getattr(resp, "status_code", None) or 500
    return ClientTransportError(f"{type(e).__name__}: {e}", status)


class DeposcoClient:
    """
    Thin wrapper around the two Deposco endpoints this agent uses.

    Credentials are fixed per instance. A requests.Session may be injected;
    it is configured with basic auth on construction. close() only closes a
    session the client created itself.
    """

    def __init__(
        self,
        credentials: DeposcoCredentials,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        atp_path: str = "restful",
    ):
        if atp_path not in ATP_PATHS:
            raise ValidationError(f"atp_path must be one of {ATP_PATHS}, got {atp_path!r}")
        self.credentials = credentials
        self.timeout = timeout
        self.atp_path = atp_path
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()
        self._session.auth = credentials.auth

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _atp_request(self, sku: str, business_unit: str) -> Tuple[str, Optional[Dict[str, str]]]:
        base = self.credentials.base_url("http")
        if self.atp_path == "legacy":
            return f"{base}/items/{business_unit}/{sku}/atps", None
        return f"{base}/ctrl/getRestfulATP", {"businessUnit": business_unit, "itemNumber": sku}

    def get_deposco_stock(self, sku: str, business_unit: str) -> StockRecord:
        url, params = self._atp_request(sku, business_unit)
        try:
            r = self._session.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise _transport_error(e) from e

        if r.status_code != 200:
            raise RemoteApiError(r.text, r.status_code)

        try:
            body = r.json()
        except ValueError:
            raise RemoteApiError(r.text, 500)

        # lookups are by a single sku, so an empty list means deposco doesn't know it
        if isinstance(body, list) and not body:
            raise RemoteApiError(f"SKU not found in Deposco: {sku}", 404)

        shape = decode_atp(body)
        if shape is None:
            raise RemoteApiError(r.text, 500)

        try:
            quantity = to_quantity(shape.available)
        except (ValueError, OverflowError) as e:
            raise RemoteApiError(str(e), 500)

        return StockRecord(sku=shape.item_number, quantity=quantity)

    def reserve_inventory(self, company: str, adjustments: List[AdjustmentRequest]) -> Dict[str, Any]:
        url = f"{self.credentials.base_url('https')}/ctrl/reserveInventoryAPI"
        payload = {
            "company": company,
            "adjustments": [a.to_dict() for a in adjustments],
        }
        try:
            r = self._session.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise _transport_error(e) from e

        if r.status_code != 200:
            raise RemoteApiError(r.text, r.status_code)

        try:
            body = r.json()
        except ValueError:
            raise RemoteApiError(r.text, 500)

        # deposco reports 200 for logical failures too; only the body status counts
        if not isinstance(body, dict) or body.get("status") != "SUCCESS":
            message = body.get("message") if isinstance(body, dict) else None
            raise RemoteApiError(str(message) if message else r.text, 500)

        return body
