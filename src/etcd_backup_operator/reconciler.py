from __future__ import annotations

import logging

from .actions import Action, ActionExecutor
from .models import RequestKey
from .phases import match_rule
from .state import StateReader

logger = logging.getLogger(__name__)


class Reconciler:
    """Runs one read-decide-act pass for a single EtcdBackup key.

    A pass performs at most one control-plane mutation and never waits: a
    worker that is still running yields a no-op and the next pod event triggers
    another pass. Errors propagate to the caller, which owns retries.
    """

    def __init__(self, *, reader: StateReader, executor: ActionExecutor) -> None:
        self.reader = reader
        self.executor = executor

    def reconcile(self, key: RequestKey) -> Action:
        state = self.reader.read(key)
        rule = match_rule(state)
        action = rule.build(state)
        logger.info("Reconcile %s: rule=%s action=%s", key, rule.name, action.describe())
        self.executor.execute(action)
        return action
