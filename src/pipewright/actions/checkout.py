# actions/checkout.py
from __future__ import annotations

import os
import shutil

from ..errors import ExecutionError
from .base import Action, ActionContext, ActionParams, ActionResult

CHECKOUT_EXCLUDES = (".git", ".pipewright", "__pycache__")


class CheckoutParams(ActionParams):
    path: str = "."


def run_checkout(ctx: ActionContext, params: CheckoutParams) -> ActionResult:
    """Copy the source tree into the workspace."""
    src = ctx.source_root.resolve()
    if not src.is_dir():
        raise ExecutionError(
            f"source root not found: {src}",
            job=ctx.job.name,
            step=ctx.step.name,
        )
    dest = ctx.resolve(params.path)
    workspace = os.path.realpath(ctx.workspace)

    def ignore(directory: str, names: list[str]) -> list[str]:
        skipped = [n for n in names if n in CHECKOUT_EXCLUDES]
        # a workspace living under the source tree must not be copied into itself
        skipped.extend(
            n for n in names
            if os.path.realpath(os.path.join(directory, n)) == workspace
        )
        return skipped

    shutil.copytree(src, dest, ignore=ignore, dirs_exist_ok=True)
    return ActionResult(outputs={"path": str(dest)})


CHECKOUT = Action(name="checkout", params=CheckoutParams, handler=run_checkout, outputs=("path",))
