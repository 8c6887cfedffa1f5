"""Append-only audit trail attached to every order."""

from datetime import datetime
from typing import Any

from src.models.order import AuditAction, AuditLogEntry, Order, evolve


def next_timestamp(order: Order, now: datetime) -> datetime:
    """Timestamp for the next entry, never earlier than the last one."""
    if order.audit_log and order.audit_log[-1].timestamp > now:
        return order.audit_log[-1].timestamp
    return now


def make_entry(
    order: Order,
    action: AuditAction,
    now: datetime,
    changed_by: str | None,
    **context: Any,
) -> AuditLogEntry:
    """Build an entry for ``order`` without attaching it."""
    return AuditLogEntry(
        action=action,
        timestamp=next_timestamp(order, now),
        changed_by=changed_by,
        **context,
    )


def append(order: Order, *entries: AuditLogEntry) -> Order:
    """Return ``order`` with ``entries`` added to the end of its log.

    Entry timestamps are clamped so the log stays in non-decreasing order.
    """
    log = list(order.audit_log)
    for entry in entries:
        if log and entry.timestamp < log[-1].timestamp:
            entry = evolve(entry, timestamp=log[-1].timestamp)
        log.append(entry)
    return evolve(order, audit_log=tuple(log))


def record(
    order: Order,
    action: AuditAction,
    now: datetime,
    changed_by: str | None,
    **context: Any,
) -> Order:
    """Append a single entry to ``order``'s log."""
    return append(order, make_entry(order, action, now, changed_by, **context))


def entries_for(order: Order, action: AuditAction) -> list[AuditLogEntry]:
    """Entries of one kind, oldest first."""
    return [entry for entry in order.audit_log if entry.action is action]


def is_extension_of(before: Order, after: Order) -> bool:
    """Whether ``after``'s log keeps every entry of ``before``'s, in order."""
    count = len(before.audit_log)
    return after.audit_log[:count] == before.audit_log
