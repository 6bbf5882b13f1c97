"""
JSON audit trail for slot, reservation, payment and booking state changes.

One line per change on the dedicated ``audit`` logger, which does not
propagate to the application handlers so operators can ship it separately.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "reservation.held",
    "reservation.cancelled",
    "reservation.expired",
    "payment.initiated",
    "payment.orphaned",
    "booking.created",
    "booking.refunded",
    "slot.created",
    "holds.swept",
]
AuditInitiator = Literal["user", "system", "provider", "processor"]


def _build_audit_logger() -> logging.Logger:
    audit = logging.getLogger("audit")
    audit.setLevel(logging.INFO)
    audit.propagate = False
    if not audit.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(message)s"))
        audit.addHandler(stream)
    return audit


_audit_logger = _build_audit_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    reservation_id: Optional[int],
    slot_id: Optional[int],
    user_id: Optional[int],
    status_from: Optional[Any] = None,
    status_to: Optional[Any] = None,
    processor_payment_id: Optional[str] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one audit line. Unset fields are omitted. Raises RuntimeError if the write fails."""
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "reservation_id": reservation_id,
        "slot_id": slot_id,
        "user_id": user_id,
        "processor_payment_id": processor_payment_id,
        "status_from": _plain(status_from),
        "status_to": _plain(status_to),
        "message": message,
    }
    record.update(extra or {})

    line = json.dumps({key: value for key, value in record.items() if value is not None}, default=str)
    try:
        _audit_logger.info(line)
    except Exception as exc:
        raise RuntimeError(f"audit log write failed for {action}") from exc
