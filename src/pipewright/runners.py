# runners.py
# Dispatch interface to runner infrastructure, plus a local implementation.
from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Optional

from .errors import JobCancelled, ResourceError

logger = logging.getLogger(__name__)


@dataclass
class RunnerHandle:
    """
    A leased execution environment. Steps of one job share it: the workspace
    directory and `env`, which steps may extend for the steps after them.
    """
    id: str
    label: str
    workspace: Path
    env: Dict[str, str] = field(default_factory=dict)


class RunnerPool(ABC):
    @abstractmethod
    def acquire_runner(self, requirements: str, timeout: float) -> RunnerHandle:
        """Block until a runner matching `requirements` is free, or raise ResourceError."""

    @abstractmethod
    def release_runner(self, handle: RunnerHandle) -> None:
        ...


class LocalRunnerPool(RunnerPool):
    """
    `size` runners on this machine, all carrying the same labels.
    Every lease gets a fresh workspace that is removed on release.
    """

    def __init__(
        self,
        size: int = 2,
        labels: Iterable[str] = ("local",),
        work_root: str | Path | None = None,
    ):
        if size < 1:
            raise ValueError("runner pool size must be >= 1")
        self.size = size
        self.labels = frozenset(labels)
        self._owns_root = work_root is None
        self.work_root = Path(work_root) if work_root is not None else Path(tempfile.mkdtemp(prefix="pipewright-"))
        self.work_root.mkdir(parents=True, exist_ok=True)
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._leased: Dict[str, RunnerHandle] = {}

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._leased)

    def acquire_runner(self, requirements: str, timeout: float) -> RunnerHandle:
        if requirements not in self.labels:
            raise ResourceError(
                f"no runner carries label {requirements!r} (available: {sorted(self.labels)})",
                retryable=False,
            )
        if not self._slots.acquire(timeout=timeout):
            raise ResourceError(f"no free {requirements!r} runner within {timeout:g}s")

        runner_id = uuid.uuid4().hex[:12]
        workspace = self.work_root / runner_id
        try:
            workspace.mkdir(parents=True)
        except OSError:
            self._slots.release()
            raise
        handle = RunnerHandle(id=runner_id, label=requirements, workspace=workspace)
        with self._lock:
            self._leased[runner_id] = handle
        logger.debug("leased runner %s (%s)", runner_id, requirements)
        return handle

    def release_runner(self, handle: RunnerHandle) -> None:
        with self._lock:
            if self._leased.pop(handle.id, None) is None:
                return
        shutil.rmtree(handle.workspace, ignore_errors=True)
        self._slots.release()
        logger.debug("released runner %s", handle.id)

    def close(self) -> None:
        if self._owns_root:
            shutil.rmtree(self.work_root, ignore_errors=True)


# ----------------------------------------------------------------------
# Retry with backoff
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class BackoffConfig:
    """Exponential backoff: initial, initial*factor, ... capped at maximum."""
    attempts: int = 3
    initial: float = 0.5
    factor: float = 2.0
    maximum: float = 8.0

    def delays(self) -> Iterator[float]:
        delay = self.initial
        for _ in range(self.attempts):
            yield min(delay, self.maximum)
            delay *= self.factor


def acquire_with_retry(
    pool: RunnerPool,
    requirements: str,
    *,
    timeout: float,
    backoff: BackoffConfig = BackoffConfig(),
    should_stop: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunnerHandle:
    """
    Lease a runner, retrying ResourceError up to `backoff.attempts` more times.
    The last error is re-raised once the retries are used up.
    """
    delays = backoff.delays()
    while True:
        if should_stop is not None and should_stop():
            raise JobCancelled("cancelled while waiting for a runner")
        try:
            return pool.acquire_runner(requirements, timeout)
        except ResourceError as e:
            if not e.retryable:
                raise
            delay = next(delays, None)
            if delay is None:
                raise
            logger.warning("%s; retrying in %.2fs", e.message, delay)
            sleep(delay)
