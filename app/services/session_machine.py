"""
Analysis session lifecycle: pending -> paid -> processing -> complete | failed.

``transition`` is the only place that decides whether an event may move a
session and what has to happen as a consequence. Persisting the result is
``analysis_sessions.apply_event``; running the side effects is the
orchestrator's job.
"""

from dataclasses import dataclass
from enum import Enum

from app.core.exceptions import InvalidStateError
from app.models.analysis_session import SessionStatus


class SessionEvent(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"  # gateway says this session was paid for
    CREDIT_SPENT = "credit_spent"  # owner spends a stored credit
    DISPATCHED = "dispatched"  # worker picked the session up
    COMPLETED = "completed"  # worker produced results
    FAILED = "failed"  # worker gave up
    TIMED_OUT = "timed_out"  # sweep found it stuck
    CLAIMED = "claimed"  # guest session bound to an account


class Effect(str, Enum):
    DISPATCH = "dispatch"
    CONSUME_CREDIT = "consume_credit"
    REFUND_IF_CONSUMED = "refund_if_consumed"


@dataclass(frozen=True)
class Transition:
    source: SessionStatus
    target: SessionStatus
    effects: tuple[Effect, ...] = ()
    noop: bool = False


P, D, R, C, F = (
    SessionStatus.PENDING,
    SessionStatus.PAID,
    SessionStatus.PROCESSING,
    SessionStatus.COMPLETE,
    SessionStatus.FAILED,
)

_TABLE: dict[tuple[SessionStatus, SessionEvent], tuple[SessionStatus, tuple[Effect, ...]]] = {
    (P, SessionEvent.PAYMENT_CONFIRMED): (D, (Effect.DISPATCH,)),
    (P, SessionEvent.CREDIT_SPENT): (D, (Effect.CONSUME_CREDIT, Effect.DISPATCH)),
    (D, SessionEvent.DISPATCHED): (R, ()),
    (R, SessionEvent.COMPLETED): (C, ()),
    (R, SessionEvent.FAILED): (F, (Effect.REFUND_IF_CONSUMED,)),
    (R, SessionEvent.TIMED_OUT): (F, (Effect.REFUND_IF_CONSUMED,)),
}

# Replays of these events against a session already at (or past) their target
# are success, not errors: gateway retries, duplicate queue deliveries, and the
# worker/sweep race all land here.
_ALREADY_DONE: dict[SessionEvent, frozenset[SessionStatus]] = {
    SessionEvent.PAYMENT_CONFIRMED: frozenset({D, R, C}),
    SessionEvent.DISPATCHED: frozenset({R, C, F}),
    SessionEvent.COMPLETED: frozenset({C, F}),
    SessionEvent.FAILED: frozenset({C, F}),
    SessionEvent.TIMED_OUT: frozenset({C, F}),
}

# Claiming changes ownership only.
_CLAIMABLE = frozenset({P, D, R, C, F})


def transition(current: SessionStatus, event: SessionEvent) -> Transition:
    """Resolve (current status, event) to the next status and its side effects."""
    current = SessionStatus(current)
    if event == SessionEvent.CLAIMED:
        if current in _CLAIMABLE:
            return Transition(source=current, target=current)
    else:
        hit = _TABLE.get((current, event))
        if hit is not None:
            target, effects = hit
            return Transition(source=current, target=target, effects=effects)
        if current in _ALREADY_DONE.get(event, ()):
            return Transition(source=current, target=current, noop=True)
    raise InvalidStateError(
        f"Cannot apply {event.value} to a {current.value} analysis",
        details={"status": current.value, "event": event.value},
    )
