# deploy.py
from __future__ import annotations

import logging
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from .artifacts import ArtifactStore, unpack
from .errors import ArtifactNotFound, PublishConflict, PublishFailure
from .model import Environment

if TYPE_CHECKING:
    from .store import RunStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    environment: str
    url: str
    digest: str
    run_id: Optional[str]
    status: str = "published"


@dataclass(frozen=True)
class Deployment:
    environment: str
    run_id: Optional[str]
    digest: str
    url: str


# ----------------------------------------------------------------------
# Publish targets (the hosting side, a black box to the engine)
# ----------------------------------------------------------------------

class PublishTarget(ABC):
    @abstractmethod
    def push(self, data: bytes, environment: str) -> str:
        """Publish an artifact tarball, return the URL it is served from."""


class DirectoryTarget(PublishTarget):
    """
    Static-site hosting on the local filesystem:
      root/<environment>/...   the currently served tree

    The new tree is unpacked into a staging directory and swapped in, so a
    failed push leaves the previous site untouched.
    """

    def __init__(self, root: str | Path, base_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/") if base_url else None

    def push(self, data: bytes, environment: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        live = self.root / environment
        staging = self.root / f".staging-{environment}-{uuid.uuid4().hex[:8]}"
        retired = self.root / f".retired-{environment}-{uuid.uuid4().hex[:8]}"
        try:
            unpack(data, staging)
            if live.exists():
                live.rename(retired)
            try:
                staging.rename(live)
            except OSError:
                if retired.exists():
                    retired.rename(live)
                raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.rmtree(retired, ignore_errors=True)

        if self.base_url:
            return f"{self.base_url}/{environment}/"
        return live.as_uri() + "/"


# ----------------------------------------------------------------------
# Environments
# ----------------------------------------------------------------------

class EnvironmentRegistry:
    """
    Owns the Environment entities. Only DeploymentPublisher calls `record`,
    from inside its per-environment lock.
    """

    def __init__(self, store: Optional[RunStore] = None):
        self.store = store
        self._lock = threading.Lock()
        self._envs: Dict[str, Environment] = {}
        self._history: Dict[str, List[Deployment]] = {}

    def get(self, name: str) -> Environment:
        with self._lock:
            env = self._envs.get(name)
            if env is None:
                env = Environment(name=name)
                if self.store is not None:
                    current = self.store.current_deployment(name)
                    if current is not None:
                        env.url = current["url"]
                        env.run_id = current["run_id"]
                        env.artifact = current["digest"]
                self._envs[name] = env
            # callers get a copy; the registry's entity is never handed out
            return Environment(
                name=env.name,
                url=env.url,
                run_id=env.run_id,
                artifact=env.artifact,
                protection=dict(env.protection),
            )

    def record(self, name: str, *, url: str, run_id: Optional[str], digest: str) -> None:
        self.get(name)
        if self.store is not None:
            self.store.record_deployment(name, run_id=run_id, digest=digest, url=url)
        with self._lock:
            env = self._envs[name]
            env.url = url
            env.run_id = run_id
            env.artifact = digest
            self._history.setdefault(name, []).append(
                Deployment(environment=name, run_id=run_id, digest=digest, url=url)
            )

    def deployment_for(self, name: str, run_id: str) -> Optional[Deployment]:
        with self._lock:
            for d in reversed(self._history.get(name, [])):
                if d.run_id == run_id:
                    return d
        if self.store is not None:
            row = self.store.deployment_for(name, run_id)
            if row is not None:
                return Deployment(environment=name, run_id=run_id, digest=row["digest"], url=row["url"])
        return None


# ----------------------------------------------------------------------
# Publisher
# ----------------------------------------------------------------------

class DeploymentPublisher:
    def __init__(self, store: ArtifactStore, target: PublishTarget, environments: Optional[EnvironmentRegistry] = None):
        self.store = store
        self.target = target
        self.environments = environments or EnvironmentRegistry()
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, Optional[str]] = {}

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(environment, threading.Lock())

    @contextmanager
    def _exclusive(self, environment: str, run_id: Optional[str]) -> Iterator[None]:
        lock = self._lock_for(environment)
        if not lock.acquire(blocking=False):
            raise PublishConflict(environment, self._holders.get(environment))
        self._holders[environment] = run_id
        try:
            yield
        finally:
            self._holders.pop(environment, None)
            lock.release()

    def publish(self, digest: str, environment: str, *, run_id: Optional[str] = None) -> PublishResult:
        """
        Promote an artifact to an environment.

        All-or-nothing for the Environment: its url/run/artifact only change
        after the target accepted the push.
        """
        with self._exclusive(environment, run_id):
            logger.info("publishing %s to %s (run %s)", digest[:12], environment, run_id)
            try:
                data = self.store.get(digest)
            except ArtifactNotFound as e:
                raise PublishFailure(environment, e.message) from e
            try:
                url = self.target.push(data, environment)
            except PublishFailure:
                raise
            except Exception as e:
                raise PublishFailure(environment, f"{type(e).__name__}: {e}") from e

            try:
                self.environments.record(environment, url=url, run_id=run_id, digest=digest)
            except Exception as e:
                # the target already serves the new tree; the registry keeps the old state
                logger.error("published %s to %s but could not record it", digest[:12], environment, exc_info=True)
                raise PublishFailure(environment, f"could not record deployment: {type(e).__name__}: {e}") from e
            logger.info("published %s -> %s", environment, url)
            return PublishResult(environment=environment, url=url, digest=digest, run_id=run_id)

    def rollback(self, environment: str, run_id: str) -> PublishResult:
        """Re-publish the artifact an earlier run deployed to `environment`."""
        deployment = self.environments.deployment_for(environment, run_id)
        if deployment is None:
            raise PublishFailure(environment, f"run {run_id} never deployed here")
        return self.publish(deployment.digest, environment, run_id=run_id)


