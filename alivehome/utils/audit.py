"""Audit logging helper utilities."""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.orm import Session

from alivehome.models.audit import AuditLog
from alivehome.utils.masking import REDACTED, is_sensitive_key, mask_reference
from alivehome.utils.time import utcnow

# PII kept recognisable in the audit trail by showing only a suffix.
PARTIAL_MASK_KEYS = {"email", "phone", "gateway_reference", "gateway_transaction_id"}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    return mask_reference(str(value))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a JSON-safe copy of ``data`` with secrets redacted and PII masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                sanitized[key] = REDACTED
            elif key in PARTIAL_MASK_KEYS:
                sanitized[key] = _mask_value(key, value)
            else:
                sanitized[key] = sanitize_payload_for_audit(value)
        return sanitized

    if isinstance(data, (list, tuple)):
        return [sanitize_payload_for_audit(item) for item in data]

    return _jsonable(data)


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Persist an audit entry in the shared AuditLog table."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )


__all__ = ["sanitize_payload_for_audit", "log_audit"]
