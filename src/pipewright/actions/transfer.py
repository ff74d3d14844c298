# actions/transfer.py
# upload-artifact / download-artifact: move files between jobs through the artifact store.
from __future__ import annotations

from ..artifacts import pack_path, unpack
from ..errors import ExecutionError
from .base import Action, ActionContext, ActionParams, ActionResult


class UploadParams(ActionParams):
    name: str
    path: str


class DownloadParams(ActionParams):
    name: str
    path: str = "."


def run_upload(ctx: ActionContext, params: UploadParams) -> ActionResult:
    src = ctx.resolve(params.path)
    if not src.exists():
        raise ExecutionError(
            f"nothing to upload: {params.path} does not exist in the workspace",
            job=ctx.job.name,
            step=ctx.step.name,
        )
    digest = ctx.store.put(pack_path(src), producer=f"{ctx.run.id}/{ctx.job.name}")
    return ActionResult(outputs={"digest": digest}, artifacts={params.name: digest})


def run_download(ctx: ActionContext, params: DownloadParams) -> ActionResult:
    digest = ctx.lookup_artifact(params.name)
    dest = ctx.resolve(params.path)
    unpack(ctx.store.get(digest), dest)
    return ActionResult(outputs={"digest": digest})


UPLOAD = Action(
    name="upload-artifact",
    params=UploadParams,
    handler=run_upload,
    outputs=("digest",),
    artifact_out="name",
)

DOWNLOAD = Action(
    name="download-artifact",
    params=DownloadParams,
    handler=run_download,
    outputs=("digest",),
    artifact_in="name",
)
