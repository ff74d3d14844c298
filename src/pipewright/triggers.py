# triggers.py
from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import FrozenSet, Iterable, List, Sequence, Tuple

from .model import (
    Event,
    ManualTrigger,
    PushTrigger,
    RunInstance,
    ScheduleTrigger,
    Trigger,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Cron expressions
# ----------------------------------------------------------------------

# minute, hour, day of month, month, day of week
_CRON_FIELDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))


def _parse_cron_field(expr: str, lo: int, hi: int) -> FrozenSet[int]:
    values = set()
    for part in expr.split(","):
        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            step = int(step_s)
            if step < 1:
                raise ValueError(f"step must be >= 1 in {expr!r}")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = int(part)
            # "5/15" means from 5 to the end of the range
            end = hi if step > 1 else start
        if start < lo or end > hi or start > end:
            raise ValueError(f"{part!r} is out of range {lo}-{hi}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronSchedule:
    """
    Minimal 5-field cron matcher (minute hour day-of-month month day-of-week).

    Supports `*`, lists, ranges and steps. Day of week uses 0-7 with both 0 and
    7 meaning Sunday. When both day fields are restricted a timestamp matches
    if either one does, like classic cron.
    """

    def __init__(self, expression: str):
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"cron expression needs 5 fields, got {len(parts)}: {expression!r}")
        try:
            parsed = [_parse_cron_field(p, lo, hi) for p, (lo, hi) in zip(parts, _CRON_FIELDS)]
        except ValueError as e:
            raise ValueError(f"invalid cron expression {expression!r}: {e}") from None

        self.expression = expression
        self.minutes, self.hours, self.days, self.months, dow = parsed
        self.weekdays = frozenset(0 if d == 7 else d for d in dow)
        self._dom_any = parts[2] == "*"
        self._dow_any = parts[4] == "*"

    def matches(self, when: datetime) -> bool:
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        if when.minute not in self.minutes or when.hour not in self.hours:
            return False
        if when.month not in self.months:
            return False

        dom_ok = when.day in self.days
        dow_ok = (when.weekday() + 1) % 7 in self.weekdays
        if self._dom_any and self._dow_any:
            return True
        if self._dom_any:
            return dow_ok
        if self._dow_any:
            return dom_ok
        return dom_ok or dow_ok


# ----------------------------------------------------------------------
# Predicates
# ----------------------------------------------------------------------

def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def _ref_accepted(trigger: PushTrigger, event: Event) -> bool:
    branch, tag = event.branch, event.tag

    if tag is not None:
        if trigger.tags:
            return _matches_any(tag, trigger.tags)
        # a branch-only filter never fires for tags
        return not trigger.branches and not trigger.branches_ignore

    if branch is None:
        return False
    if trigger.branches:
        if not _matches_any(branch, trigger.branches):
            return False
    elif trigger.tags:
        return False
    if trigger.branches_ignore and _matches_any(branch, trigger.branches_ignore):
        return False
    return True


def _paths_accepted(trigger: PushTrigger, changed: Sequence[str]) -> bool:
    if trigger.paths:
        candidates = [p for p in changed if _matches_any(p, trigger.paths)]
        if not candidates:
            return False
    else:
        candidates = list(changed)
        if not candidates:
            return True

    if trigger.paths_ignore:
        return any(not _matches_any(p, trigger.paths_ignore) for p in candidates)
    return True


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    if isinstance(trigger, PushTrigger):
        return (
            event.kind == "push"
            and _ref_accepted(trigger, event)
            and _paths_accepted(trigger, event.changed_paths)
        )
    if isinstance(trigger, ScheduleTrigger):
        return event.kind == "schedule" and CronSchedule(trigger.cron).matches(event.timestamp)
    if isinstance(trigger, ManualTrigger):
        return event.kind == "manual"
    raise TypeError(f"Unsupported trigger type: {type(trigger).__name__}")


def evaluate(
    event: Event,
    definitions: Iterable[WorkflowDefinition],
) -> List[Tuple[WorkflowDefinition, RunInstance]]:
    """
    Match an event against every workflow's triggers.

    Each matching workflow gets its own RunInstance holding a snapshot of the
    definition. No match is not an error: the result is simply empty.
    """
    matched: List[Tuple[WorkflowDefinition, RunInstance]] = []
    for definition in definitions:
        hit = next((t for t in definition.triggers if trigger_matches(t, event)), None)
        if hit is None:
            logger.debug("workflow %s: no trigger matched %s %s", definition.name, event.kind, event.ref)
            continue
        run = RunInstance(event=event, workflow=copy.deepcopy(definition))
        logger.info("workflow %s matched %s %s -> run %s", definition.name, event.kind, event.ref, run.id)
        matched.append((definition, run))
    return matched
