"""Built-in step actions, looked up by the name used in a step's `uses:`."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..model import Step
from .base import Action, ActionContext, ActionParams, ActionResult
from .checkout import CHECKOUT
from .deploy import DEPLOY
from .transfer import DOWNLOAD, UPLOAD

REGISTRY: Dict[str, Action] = {a.name: a for a in (CHECKOUT, UPLOAD, DOWNLOAD, DEPLOY)}


def validation_problems(exc: ValidationError, prefix: str = "") -> List[str]:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        where = ".".join(x for x in (prefix, loc) if x)
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return problems


def get_action(name: str, *, job: Optional[str] = None, step: Optional[str] = None) -> Action:
    try:
        return REGISTRY[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown action {name!r}. Known actions: {sorted(REGISTRY)}",
            job=job,
            step=step,
        ) from None


def parse_params(step: Step, *, job: Optional[str] = None) -> ActionParams:
    """Validate a step's `with:` block against its action's parameter model."""
    if step.uses is None:
        if step.with_:
            raise ConfigurationError(
                "`with` is only valid on steps that use an action",
                job=job,
                step=step.name,
            )
        raise ConfigurationError("step has no action", job=job, step=step.name)
    action = get_action(step.uses, job=job, step=step.name)
    try:
        return action.params.model_validate(dict(step.with_))
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid parameters for action {action.name!r}",
            job=job,
            step=step.name,
            problems=validation_problems(e, prefix="with"),
        ) from None


__all__ = [
    "Action",
    "ActionContext",
    "ActionParams",
    "ActionResult",
    "REGISTRY",
    "get_action",
    "parse_params",
    "validation_problems",
]
