# deposco_ops/_deposco_batch.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ._deposco_client import (
    AdjustmentRequest,
    DeposcoAgentError,
    DeposcoClient,
    StockRecord,
    ValidationError,
)


def _log(msg: str) -> None:
    print(f"[deposco] {msg}", flush=True)


@dataclass(frozen=True)
class OperationError:
    context: str
    status_code: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"sku": self.context, "status_code": self.status_code, "message": self.message}


@dataclass
class BatchResult:
    records: List[StockRecord] = field(default_factory=list)
    errors: List[OperationError] = field(default_factory=list)


@dataclass
class ReservationOutcome:
    status: int
    adjustments: Any
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _error_from(context: str, e: Exception) -> OperationError:
    if isinstance(e, DeposcoAgentError):
        return OperationError(context, e.status_code, e.message)
    return OperationError(context, 500, str(e))


def parse_skus(raw: Any) -> List[str]:
    """Accept ["A", "B"] or "A, B"; blanks are dropped."""
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValidationError("skus must be an array or a string")
    return [str(s).strip() for s in items if str(s).strip()]


def coerce_adjustments(raw: Any) -> List[AdjustmentRequest]:
    if not isinstance(raw, list):
        raise ValidationError("adjustments must be an array")

    out: List[AdjustmentRequest] = []
    for idx, adj in enumerate(raw):
        if not isinstance(adj, dict):
            raise ValidationError(f"adjustments[{idx}] must be an object")
        item_number = adj.get("itemNumber")
        if item_number is None or str(item_number).strip() == "":
            raise ValidationError(f"adjustments[{idx}].itemNumber is required")
        value = adj.get("value")
        if isinstance(value, bool):
            raise ValidationError(f"adjustments[{idx}].value must be an integer")
        try:
            if isinstance(value, str):
                value = int(value.strip())
            elif not isinstance(value, int):
                raise TypeError
        except (TypeError, ValueError):
            raise ValidationError(f"adjustments[{idx}].value must be an integer")
        out.append(AdjustmentRequest(item_number=str(item_number), value=value))
    return out


def fetch_product_inventory(client: DeposcoClient, skus: List[str], business_unit: str) -> BatchResult:
    """
    Look up ATP for each sku, in order.

    A failed lookup never aborts the batch: it becomes an OperationError and
    the loop moves on, so every sku ends up in exactly one of
    records / errors.
    """
    result = BatchResult()

    for sku in skus:
        try:
            result.records.append(client.get_deposco_stock(sku, business_unit))
        except Exception as e:
            err = _error_from(sku, e)
            _log(f"lookup failed sku={sku} status={err.status_code} error={err.message[:200]}")
            result.errors.append(err)

    return result


def batch_status(result: BatchResult) -> int:
    # one failed sku taints the whole batch; records are still reported
    return 200 if not result.errors else 500


def reserve_inventory(client: DeposcoClient, company: str, adjustments: Any) -> ReservationOutcome:
    """Single reservation call; the endpoint is all-or-nothing, so there is no per-item split."""
    try:
        parsed = coerce_adjustments(adjustments)
        body = client.reserve_inventory(company, parsed)
    except Exception as e:
        err = _error_from(company, e)
        _log(f"reservation failed company={company} status={err.status_code} error={err.message[:200]}")
        return ReservationOutcome(status=err.status_code, adjustments=adjustments, error=err.message)

    _log(f"reservation ok company={company} adjustments={len(parsed)}")
    return ReservationOutcome(status=200, adjustments=adjustments, result=body)
