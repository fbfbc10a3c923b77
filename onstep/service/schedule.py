"""Cron helpers for scheduled triggers.

Expressions are standard five-field cron (minute hour day month weekday) and
are interpreted in UTC. The scheduler that fires jobs lives outside this
package; it uses :func:`is_due` / :func:`next_fire_time` to decide when to
call ``JobController.create_job``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from croniter import croniter

from onstep.service.errors import InvalidTrigger

CRON_FIELD_COUNT = 5


def validate_cron(expression: str) -> str:
    """Return the normalized expression or raise :class:`InvalidTrigger`."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidTrigger("cron expression is empty")
    normalized = " ".join(expression.split())
    if len(normalized.split(" ")) != CRON_FIELD_COUNT:
        raise InvalidTrigger(
            f"cron expression must have {CRON_FIELD_COUNT} fields",
            detail={"cron": expression},
        )
    if not croniter.is_valid(normalized):
        raise InvalidTrigger(f"invalid cron expression '{expression}'", detail={"cron": expression})
    return normalized


def next_fire_time(expression: str, after: Optional[datetime] = None) -> datetime:
    """First fire time strictly after ``after`` (default: now, UTC)."""
    start = after or datetime.utcnow()
    return croniter(validate_cron(expression), start).get_next(datetime)


def is_due(
    expression: str,
    last_fired_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Whether a schedule that last fired at ``last_fired_at`` should fire by ``now``."""
    now = now or datetime.utcnow()
    if last_fired_at is None:
        return croniter.match(validate_cron(expression), now)
    return next_fire_time(expression, last_fired_at) <= now


__all__ = ["validate_cron", "next_fire_time", "is_due"]
