# actions/deploy.py
from __future__ import annotations

from ..errors import ExecutionError
from .base import Action, ActionContext, ActionParams, ActionResult


class DeployParams(ActionParams):
    artifact: str


def run_deploy(ctx: ActionContext, params: DeployParams) -> ActionResult:
    environment = ctx.job.environment
    if ctx.publisher is None or environment is None:
        raise ExecutionError(
            "deploy needs a job environment and a configured publisher",
            job=ctx.job.name,
            step=ctx.step.name,
        )
    digest = ctx.lookup_artifact(params.artifact)
    result = ctx.publisher.publish(digest, environment, run_id=ctx.run.id)
    return ActionResult(outputs={"url": result.url, "digest": digest})


DEPLOY = Action(
    name="deploy",
    params=DeployParams,
    handler=run_deploy,
    outputs=("url", "digest"),
    artifact_in="artifact",
    needs_environment=True,
)
