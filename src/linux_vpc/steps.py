"""Ordered multi-step creation flows.

Each step carries an optional inverse.  Flows run forward-only by default:
when a step fails the error names the failing step and everything that
already happened, and cleanup is left to the caller's explicit delete.  Flows
that must not leave half-built objects behind pass ``rollback=True``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .errors import ExternalSystemFailure, VPCError

LOG = logging.getLogger(__name__)


@dataclass
class Step:
    description: str
    action: Callable[[], object]
    undo: Optional[Callable[[], object]] = None


class StepPlan:
    def __init__(self, name: str) -> None:
        self._name = name
        self._steps: List[Step] = []

    def add(
        self,
        description: str,
        action: Callable[[], object],
        undo: Optional[Callable[[], object]] = None,
    ) -> "StepPlan":
        self._steps.append(Step(description, action, undo))
        return self

    @property
    def steps(self) -> List[Step]:
        return list(self._steps)

    def run(self, *, rollback: bool = False) -> List[str]:
        """Execute all steps; return the descriptions of completed steps."""

        completed: List[Step] = []
        for step in self._steps:
            LOG.debug("%s: %s", self._name, step.description)
            try:
                step.action()
            except VPCError as exc:
                done = ", ".join(s.description for s in completed) or "nothing"
                if rollback:
                    self._rollback(completed)
                if not isinstance(exc, ExternalSystemFailure):
                    raise
                state = "rolled back" if rollback else "left in place"
                raise ExternalSystemFailure(
                    f"{self._name}: step '{step.description}' failed: {exc} "
                    f"(completed before failure, {state}: {done})",
                    command=exc.command,
                    stderr=exc.stderr,
                ) from exc
            completed.append(step)
        return [s.description for s in completed]

    def _rollback(self, completed: List[Step]) -> None:
        for step in reversed(completed):
            if step.undo is None:
                continue
            try:
                step.undo()
            except VPCError as exc:
                LOG.warning("%s: could not undo '%s': %s", self._name, step.description, exc)
