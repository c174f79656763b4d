"""
Foresight — Speculation Eligibility

Only tasks that are safe to run and throw away may be speculated.
Eligibility is an explicit allow-list; nothing is inferred.

A task is eligible when:
  - it matches an `allow` pattern (fnmatch), and
  - it matches no `side_effecting` pattern, and
  - its id contains none of the dangerous-operation keywords.

Deny always wins. validate() runs at startup and turns a configuration
that would allow a side-effecting or dangerous capability into a fatal
SpeculationConflict, so the conflict can never surface at runtime.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Iterable

from engine.config import SpeculationConfig

logger = logging.getLogger("foresight.speculation")

DANGEROUS_OPERATIONS = (
    "delete",
    "remove",
    "deploy",
    "payment",
    "send_email",
    "execute_shell",
    "drop",
    "truncate",
    "transfer",
    "admin",
)


class SpeculationConflict(Exception):
    """Speculation configuration would allow a non-idempotent side effect."""


class EligibilityPolicy:

    def __init__(
        self,
        allow: Iterable[str] = (),
        side_effecting: Iterable[str] = (),
        deny_keywords: Iterable[str] | None = None,
    ):
        self.allow = tuple(allow)
        self.side_effecting = tuple(side_effecting)
        self.deny_keywords = tuple(
            k.lower() for k in (DANGEROUS_OPERATIONS if deny_keywords is None else deny_keywords)
        )

    @classmethod
    def from_config(cls, config: SpeculationConfig) -> EligibilityPolicy:
        return cls(config.allow, config.side_effecting, config.deny_keywords)

    def is_dangerous(self, task_id: str) -> bool:
        lowered = task_id.lower()
        return any(k in lowered for k in self.deny_keywords)

    def is_side_effecting(self, task_id: str) -> bool:
        return any(fnmatch.fnmatchcase(task_id, pat) for pat in self.side_effecting)

    def is_allowed(self, task_id: str) -> bool:
        return any(fnmatch.fnmatchcase(task_id, pat) for pat in self.allow)

    def is_eligible(self, task_id: str) -> bool:
        return (self.is_allowed(task_id)
                and not self.is_side_effecting(task_id)
                and not self.is_dangerous(task_id))

    def validate(self, known_tasks: Iterable[str] = ()) -> EligibilityPolicy:
        """
        Raise SpeculationConflict if the allow-list overlaps a declared
        side effect or a dangerous operation. Returns self.

        Args:
            known_tasks: task ids the deployment knows about; each one
                the allow-list admits is checked individually too.
        """
        problems = []
        for pat in self.allow:
            if self.is_dangerous(pat):
                problems.append(f"allow pattern {pat!r} names a dangerous operation")
            for se in self.side_effecting:
                if (pat == se or fnmatch.fnmatchcase(se, pat)
                        or fnmatch.fnmatchcase(pat, se)):
                    problems.append(f"allow pattern {pat!r} overlaps side-effecting {se!r}")

        for task_id in known_tasks:
            if not self.is_allowed(task_id):
                continue
            if self.is_side_effecting(task_id):
                problems.append(f"task {task_id!r} is allowed but declared side-effecting")
            elif self.is_dangerous(task_id):
                problems.append(f"task {task_id!r} is allowed but is a dangerous operation")

        if problems:
            raise SpeculationConflict("; ".join(problems))
        if not self.allow:
            logger.info("Speculation allow-list is empty; no task will be speculated")
        return self
