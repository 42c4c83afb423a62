"""Subscription state machine as an explicit transition table.

Every ``(status, event)`` pair maps to exactly one outcome:

* a :class:`Transition`: next status plus the ordered side effects to run,
* ``NOOP``: the event's precondition no longer holds (duplicate or stale
  delivery); nothing happens,
* ``INVALID``: the move is illegal and signals a bug or corrupt data.

The table is checked for exhaustiveness at import time.
"""

import enum
from dataclasses import dataclass
from itertools import product

from app.models.subscription import SubscriptionStatus as S


class SubscriptionEvent(str, enum.Enum):
    UPGRADE_REQUESTED = "UPGRADE_REQUESTED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    PAYMENT_ABANDONED = "PAYMENT_ABANDONED"
    PERIOD_ENDED = "PERIOD_ENDED"
    RENEWAL_SUCCEEDED = "RENEWAL_SUCCEEDED"
    RETRY_SUCCEEDED = "RETRY_SUCCEEDED"
    CHARGE_FAILED = "CHARGE_FAILED"
    CHARGE_FAILED_FINAL = "CHARGE_FAILED_FINAL"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"


class Effect(str, enum.Enum):
    SET_TARGET_TIER = "SET_TARGET_TIER"
    START_PERIOD = "START_PERIOD"
    EXTEND_PERIOD = "EXTEND_PERIOD"
    RESET_FAILURES = "RESET_FAILURES"
    RECORD_FAILURE = "RECORD_FAILURE"
    GRANT_MONTHLY_CREDITS = "GRANT_MONTHLY_CREDITS"
    DOWNGRADE_TO_FREE = "DOWNGRADE_TO_FREE"
    NOTIFY_PAYMENT_SUCCESS = "NOTIFY_PAYMENT_SUCCESS"
    NOTIFY_RENEWED = "NOTIFY_RENEWED"
    NOTIFY_EXPIRED = "NOTIFY_EXPIRED"
    NOTIFY_PAYMENT_FAILED = "NOTIFY_PAYMENT_FAILED"


@dataclass(frozen=True)
class Transition:
    next_status: S
    effects: tuple[Effect, ...] = ()


class _Outcome(enum.Enum):
    NOOP = "NOOP"
    INVALID = "INVALID"


NOOP = _Outcome.NOOP
INVALID = _Outcome.INVALID

E = SubscriptionEvent

_ACTIVATE = (
    Effect.START_PERIOD,
    Effect.RESET_FAILURES,
    Effect.GRANT_MONTHLY_CREDITS,
    Effect.NOTIFY_PAYMENT_SUCCESS,
)
_RENEW = (
    Effect.EXTEND_PERIOD,
    Effect.RESET_FAILURES,
    Effect.GRANT_MONTHLY_CREDITS,
    Effect.NOTIFY_RENEWED,
)
_RECOVER = (
    Effect.EXTEND_PERIOD,
    Effect.RESET_FAILURES,
    Effect.GRANT_MONTHLY_CREDITS,
    Effect.NOTIFY_PAYMENT_SUCCESS,
)
_FAIL = (Effect.RECORD_FAILURE, Effect.NOTIFY_PAYMENT_FAILED)
_EXPIRE = (Effect.DOWNGRADE_TO_FREE, Effect.NOTIFY_EXPIRED)

TRANSITIONS: dict[tuple[S, SubscriptionEvent], Transition | _Outcome] = {
    # A new paid cycle starts from a free (or expired) row
    (S.ACTIVE, E.UPGRADE_REQUESTED): Transition(S.PENDING, (Effect.SET_TARGET_TIER,)),
    (S.EXPIRED, E.UPGRADE_REQUESTED): Transition(S.PENDING, (Effect.SET_TARGET_TIER,)),
    (S.PENDING, E.UPGRADE_REQUESTED): Transition(S.PENDING, (Effect.SET_TARGET_TIER,)),
    (S.CANCELED, E.UPGRADE_REQUESTED): INVALID,
    (S.PAST_DUE, E.UPGRADE_REQUESTED): INVALID,
    # Upgrade payment confirmed by verify or webhook
    (S.PENDING, E.PAYMENT_VERIFIED): Transition(S.ACTIVE, _ACTIVATE),
    (S.ACTIVE, E.PAYMENT_VERIFIED): NOOP,
    (S.CANCELED, E.PAYMENT_VERIFIED): NOOP,
    (S.PAST_DUE, E.PAYMENT_VERIFIED): NOOP,
    (S.EXPIRED, E.PAYMENT_VERIFIED): INVALID,
    # Upgrade payment failed or was canceled at the gateway
    (S.PENDING, E.PAYMENT_ABANDONED): Transition(
        S.ACTIVE, (Effect.DOWNGRADE_TO_FREE, Effect.NOTIFY_PAYMENT_FAILED)
    ),
    (S.ACTIVE, E.PAYMENT_ABANDONED): NOOP,
    (S.CANCELED, E.PAYMENT_ABANDONED): NOOP,
    (S.PAST_DUE, E.PAYMENT_ABANDONED): NOOP,
    (S.EXPIRED, E.PAYMENT_ABANDONED): NOOP,
    # Paid period is over (or past-due grace exhausted). The row lands on the
    # FREE tier, which is always ACTIVE; the EXPIRED notice records the expiry.
    (S.ACTIVE, E.PERIOD_ENDED): Transition(S.ACTIVE, _EXPIRE),
    (S.CANCELED, E.PERIOD_ENDED): Transition(S.ACTIVE, _EXPIRE),
    (S.PAST_DUE, E.PERIOD_ENDED): Transition(S.ACTIVE, _EXPIRE),
    (S.PENDING, E.PERIOD_ENDED): NOOP,
    (S.EXPIRED, E.PERIOD_ENDED): NOOP,
    # Scheduled renewal charge went through
    (S.ACTIVE, E.RENEWAL_SUCCEEDED): Transition(S.ACTIVE, _RENEW),
    (S.PAST_DUE, E.RENEWAL_SUCCEEDED): Transition(S.ACTIVE, _RECOVER),
    (S.CANCELED, E.RENEWAL_SUCCEEDED): NOOP,
    (S.PENDING, E.RENEWAL_SUCCEEDED): NOOP,
    (S.EXPIRED, E.RENEWAL_SUCCEEDED): NOOP,
    # Past-due retry charge went through
    (S.ACTIVE, E.RETRY_SUCCEEDED): Transition(S.ACTIVE, _RECOVER),
    (S.PAST_DUE, E.RETRY_SUCCEEDED): Transition(S.ACTIVE, _RECOVER),
    (S.CANCELED, E.RETRY_SUCCEEDED): NOOP,
    (S.PENDING, E.RETRY_SUCCEEDED): NOOP,
    (S.EXPIRED, E.RETRY_SUCCEEDED): NOOP,
    # Renewal or retry charge declined, more attempts left
    (S.ACTIVE, E.CHARGE_FAILED): Transition(S.ACTIVE, _FAIL),
    (S.PAST_DUE, E.CHARGE_FAILED): Transition(S.PAST_DUE, _FAIL),
    (S.CANCELED, E.CHARGE_FAILED): NOOP,
    (S.PENDING, E.CHARGE_FAILED): NOOP,
    (S.EXPIRED, E.CHARGE_FAILED): NOOP,
    # Renewal or retry charge declined, attempts exhausted
    (S.ACTIVE, E.CHARGE_FAILED_FINAL): Transition(S.PAST_DUE, _FAIL),
    (S.PAST_DUE, E.CHARGE_FAILED_FINAL): Transition(S.PAST_DUE, _FAIL),
    (S.CANCELED, E.CHARGE_FAILED_FINAL): NOOP,
    (S.PENDING, E.CHARGE_FAILED_FINAL): NOOP,
    (S.EXPIRED, E.CHARGE_FAILED_FINAL): NOOP,
    # User stops renewal; the paid period still runs to its end
    (S.ACTIVE, E.CANCEL_REQUESTED): Transition(S.CANCELED),
    (S.PAST_DUE, E.CANCEL_REQUESTED): Transition(S.CANCELED),
    (S.CANCELED, E.CANCEL_REQUESTED): INVALID,
    (S.PENDING, E.CANCEL_REQUESTED): INVALID,
    (S.EXPIRED, E.CANCEL_REQUESTED): INVALID,
}


def _verify_exhaustive() -> None:
    expected = set(product(S, SubscriptionEvent))
    missing = expected - set(TRANSITIONS)
    extra = set(TRANSITIONS) - expected
    if missing or extra:
        raise RuntimeError(
            f"Subscription transition table is not exhaustive: missing={sorted(missing)}, extra={sorted(extra)}"
        )


_verify_exhaustive()


def lookup(status: S | str, event: SubscriptionEvent) -> Transition | _Outcome:
    """Outcome of ``event`` arriving while the subscription is in ``status``."""
    return TRANSITIONS[(S(status), SubscriptionEvent(event))]


def reachable_transitions() -> list[tuple[S, SubscriptionEvent, Transition]]:
    """Every real transition in the table, for enumeration in tests and docs."""
    return [
        (status, event, outcome)
        for (status, event), outcome in TRANSITIONS.items()
        if isinstance(outcome, Transition)
    ]
