"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from typing import Any

_scheduler_active = False
_last_billing_run: dict[str, Any] | None = None


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_billing_run(summary: dict[str, Any]) -> None:
    global _last_billing_run
    _last_billing_run = dict(summary)


def last_billing_run() -> dict[str, Any] | None:
    return _last_billing_run
