"""Phase state machine for EtcdBackup requests.

``decide`` maps an :class:`ObservedState` to exactly one action. The rules are
evaluated in order and the first matching rule wins. The guards overlap on
purpose: the terminal-phase rules must fire before any worker-outcome rule, so
a Completed request never reacts to its worker again.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

from .actions import Action, CreateObject, NoAction, PatchStatus
from .models import (
    PHASE_BACKING_UP,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_UNSET,
    WORKER_PHASE_FAILED,
    WORKER_PHASE_SUCCEEDED,
    ObservedState,
    worker_phase,
)


@dataclass(frozen=True)
class Rule:
    name: str
    applies: Callable[[ObservedState], bool]
    build: Callable[[ObservedState], Action]


def _phase_is(phase: str) -> Callable[[ObservedState], bool]:
    return lambda state: state.request.phase == phase


def _worker_phase_is(phase: str) -> Callable[[ObservedState], bool]:
    return lambda state: worker_phase(state.actual_worker) == phase


def _transition_to(phase: str) -> Callable[[ObservedState], Action]:
    return lambda state: PatchStatus(original=state.request, updated=replace(state.request, phase=phase))


def _skip(reason: str) -> Callable[[ObservedState], Action]:
    return lambda _state: NoAction(reason)


# Every rule after the first may assume state.request is present, and every
# rule after "create-worker" may assume state.actual_worker is present.
RULES: tuple[Rule, ...] = (
    Rule("request-gone", lambda state: state.request is None, _skip("backup object not found")),
    Rule(
        "deletion-requested",
        lambda state: state.request.deletion_requested,
        _skip("backup object is being deleted"),
    ),
    Rule("start-backup", _phase_is(PHASE_UNSET), _transition_to(PHASE_BACKING_UP)),
    Rule("already-failed", _phase_is(PHASE_FAILED), _skip("backup has failed")),
    Rule("already-completed", _phase_is(PHASE_COMPLETED), _skip("backup has completed")),
    Rule(
        "create-worker",
        lambda state: state.actual_worker is None,
        lambda state: CreateObject(obj=state.desired_worker),
    ),
    Rule("worker-failed", _worker_phase_is(WORKER_PHASE_FAILED), _transition_to(PHASE_FAILED)),
    Rule("worker-succeeded", _worker_phase_is(WORKER_PHASE_SUCCEEDED), _transition_to(PHASE_COMPLETED)),
    Rule("worker-running", lambda _state: True, _skip("waiting for worker pod to finish")),
)


def match_rule(state: ObservedState) -> Rule:
    for rule in RULES:
        if rule.applies(state):
            return rule
    raise AssertionError("the final rule always matches")


def decide(state: ObservedState) -> Action:
    return match_rule(state).build(state)
