"""
Adaptive scheduling for JWKS reconciliation passes.

The scheduler is a pure state machine. Given a snapshot of a JWKS resource it
decides whether the next pass should do nothing, only verify the served key
set, or run the full update, and how long to wait before the pass after that.

The cadence is driven by ``status.verificationCycle``:

- ``0`` (or unset): next pass in 10s, counter advances to 1
- ``1``: next pass in 30s, counter advances to 2
- ``2`` and above: steady state, ``min(reconcile, verification)`` interval

A counter already in steady state is reset to ``0`` when the last verification
is older than 30 minutes, which is how a restarted operator re-enters the fast
cadence.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from jwks_operator.constants import (
    FIRST_FAST_DELAY,
    RESTART_THRESHOLD,
    SECOND_FAST_DELAY,
    STUCK_COUNTER_WINDOW,
)
from jwks_operator.models import JWKSSpec, JWKSStatus, JWKSTarget
from jwks_operator.utils.durations import effective_interval

STEADY_COUNTER = 2


class Action(str, Enum):
    """What a reconciliation pass should do."""

    SKIP = "skip"
    VERIFY_ONLY = "verify_only"
    FULL_PASS = "full_pass"


@dataclass(frozen=True)
class Intervals:
    """Effective intervals for one target, in seconds."""

    reconcile: float
    update: float
    verification: float

    @property
    def steady_delay(self) -> float:
        return min(self.reconcile, self.verification)


@dataclass(frozen=True)
class ScheduleDecision:
    """
    Outcome of one scheduling decision.

    ``counter`` is the counter the decision was made with (after a restart
    reset), ``next_counter`` the value to persist for the following pass.
    """

    action: Action
    delay: float
    counter: int
    next_counter: int
    restart_detected: bool = False
    full_pass_due: bool = False
    verification_due: bool = False

    @property
    def counter_changed(self) -> bool:
        return self.counter != self.next_counter or self.restart_detected


class ReconciliationScheduler:
    """Decides the action and requeue delay for a JWKS resource."""

    def __init__(self, defaults: Intervals):
        self.defaults = defaults

    def intervals_for(self, spec: JWKSSpec) -> Intervals:
        """Apply per-resource overrides on top of the operator defaults."""
        return Intervals(
            reconcile=effective_interval(
                spec.reconcile_interval, self.defaults.reconcile
            ),
            update=effective_interval(spec.jwks_update_interval, self.defaults.update),
            verification=effective_interval(
                spec.jwks_verification_interval, self.defaults.verification
            ),
        )

    @staticmethod
    def _since(moment: datetime | None, now: datetime) -> float | None:
        if moment is None:
            return None
        return (now - moment).total_seconds()

    def restart_detected(self, status: JWKSStatus, now: datetime) -> bool:
        counter = status.verification_cycle or 0
        if counter < STEADY_COUNTER:
            return False
        elapsed = self._since(status.jwks_verified, now)
        return elapsed is None or elapsed > RESTART_THRESHOLD

    def next_delay(
        self,
        status: JWKSStatus,
        intervals: Intervals,
        now: datetime,
        previous_counter: int | None = None,
    ) -> tuple[float, int, int, bool]:
        """
        Compute the requeue delay.

        Returns ``(delay, counter, next_counter, restart_detected)``.

        ``previous_counter`` is the counter observed by the previous pass of
        the same worker. Seeing ``1`` twice in a row while the last
        verification is recent means the counter write was lost, so the
        steady interval is used and the counter is forced to ``2``.
        """
        counter = max(status.verification_cycle or 0, 0)
        restart = self.restart_detected(status, now)
        if restart:
            counter = 0

        if counter == 0:
            return FIRST_FAST_DELAY, counter, 1, restart

        if counter == 1:
            verified_ago = self._since(status.jwks_verified, now)
            stuck = (
                previous_counter == 1
                and verified_ago is not None
                and verified_ago < STUCK_COUNTER_WINDOW
            )
            if stuck:
                return intervals.steady_delay, counter, STEADY_COUNTER, False
            return SECOND_FAST_DELAY, counter, STEADY_COUNTER, False

        return intervals.steady_delay, counter, counter, False

    def full_pass_due(
        self,
        target: JWKSTarget,
        intervals: Intervals,
        now: datetime,
        artifacts_missing: bool = False,
    ) -> bool:
        status = target.status
        if target.generation != status.ready_observed_generation:
            return True
        if status.last_update_time is None:
            return True
        if status.last_pass_failed:
            return True
        if artifacts_missing:
            return True
        return self._since(status.last_update_time, now) >= intervals.update

    def verification_due(
        self,
        status: JWKSStatus,
        intervals: Intervals,
        now: datetime,
        restart: bool = False,
    ) -> bool:
        if restart or status.jwks_verified is None:
            return True
        if not status.verification_cycle:
            return True
        return self._since(status.jwks_verified, now) >= intervals.verification

    def decide(
        self,
        target: JWKSTarget,
        artifacts_missing: bool = False,
        previous_counter: int | None = None,
        now: datetime | None = None,
    ) -> ScheduleDecision:
        """Decide what the current pass does and when the next one runs."""
        now = now or datetime.now(UTC)
        intervals = self.intervals_for(target.spec)

        delay, counter, next_counter, restart = self.next_delay(
            target.status, intervals, now, previous_counter
        )
        full_due = self.full_pass_due(target, intervals, now, artifacts_missing)
        verify_due = self.verification_due(target.status, intervals, now, restart)

        if full_due:
            action = Action.FULL_PASS
        elif verify_due:
            action = Action.VERIFY_ONLY
        else:
            action = Action.SKIP

        return ScheduleDecision(
            action=action,
            delay=delay,
            counter=counter,
            next_counter=next_counter,
            restart_detected=restart,
            full_pass_due=full_due,
            verification_due=verify_due,
        )
