"""Deterministic replay of a session's event log into derived state.

Every function here is pure: it takes the complete event list, sorts it by
(timestamp, id), and folds left. There is no incremental update path; any
change to a session's events (append, delete, edit, out-of-order insert,
merge from another device) is followed by a full recompute.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from waterline.core.storage.models import Event, NegativePayload, PositivePayload, SessionSummary
from waterline.domains.pacing.domain_logic.state_models import DerivedState


def _ordered(events: Iterable[Event]) -> list[Event]:
    """Sort by event time, ties broken by id."""
    return sorted(events, key=Event.sort_key)


def compute_state(events: Iterable[Event], warning_threshold: int = 2) -> DerivedState:
    """Replay events into a :class:`DerivedState`.

    Positive events add their weight to the running balance; negative events
    subtract one and reset the since-last-negative counter.
    """
    balance = 0.0
    since_last_negative = 0
    total_positive = 0
    total_negative = 0
    positive_weight = 0.0
    negative_volume = 0.0

    for event in _ordered(events):
        payload = event.payload
        if isinstance(payload, PositivePayload):
            balance += payload.weight
            positive_weight += payload.weight
            total_positive += 1
            since_last_negative += 1
        elif isinstance(payload, NegativePayload):
            balance -= 1
            total_negative += 1
            negative_volume += payload.volume_oz
            since_last_negative = 0
        else:  # pragma: no cover
            raise TypeError(f"Unhandled payload type: {type(payload).__name__}")

    return DerivedState(
        running_balance=balance,
        since_last_negative=since_last_negative,
        total_positive=total_positive,
        total_negative=total_negative,
        total_positive_weight=positive_weight,
        total_negative_volume=negative_volume,
        is_warning=balance >= warning_threshold,
    )


def compute_adherence(events: Iterable[Event], due_every_n: int) -> float:
    """Fraction of owed breaks that were actually taken, in [0, 1].

    A break becomes due each time ``due_every_n`` positive events accumulate
    since the last negative event. A negative event satisfies at most one
    outstanding break and always resets the positive counter.

    Returns:
        ``satisfied / due``, or 1.0 when no break was ever due.
    """
    if due_every_n < 1:
        raise ValueError(f"due_every_n must be at least 1, got {due_every_n}")

    positives_since_break = 0
    due = 0
    satisfied = 0

    for event in _ordered(events):
        if event.kind == "positive":
            positives_since_break += 1
            if positives_since_break >= due_every_n:
                due += 1
                positives_since_break = 0
        else:
            if due > satisfied:
                satisfied += 1
            positives_since_break = 0

    if due == 0:
        return 1.0
    return min(satisfied / due, 1.0)


def compute_summary(
    events: Iterable[Event],
    start: datetime,
    end: datetime | None,
    due_every_n: int,
    warning_threshold: int = 2,
    *,
    now: datetime | None = None,
) -> SessionSummary:
    """Compose state, adherence and elapsed duration for a session.

    Args:
        events: The session's complete event log.
        start: Session start time.
        end: Session end time, or None for an open session.
        due_every_n: Positive events allowed before a break is due.
        warning_threshold: Balance at which the session is in warning.
        now: Clock reading used when ``end`` is None. Defaults to UTC now.
    """
    events = list(events)
    state = compute_state(events, warning_threshold)
    adherence = compute_adherence(events, due_every_n)
    finish = end or now or datetime.now(timezone.utc)

    return SessionSummary(
        total_positive=state.total_positive,
        total_negative=state.total_negative,
        total_positive_weight=state.total_positive_weight,
        total_negative_volume=state.total_negative_volume,
        duration_seconds=(finish - start).total_seconds(),
        adherence=adherence,
        final_balance=state.running_balance,
    )
