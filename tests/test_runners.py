"""Local runner pool and acquisition with backoff."""

from __future__ import annotations

from pathlib import Path

import pytest

from pipewright.errors import JobCancelled, ResourceError
from pipewright.runners import BackoffConfig, LocalRunnerPool, RunnerHandle, RunnerPool, acquire_with_retry


class FlakyPool(RunnerPool):
    def __init__(self, failures: int, tmp: Path):
        self.failures = failures
        self.calls = 0
        self.tmp = tmp

    def acquire_runner(self, requirements: str, timeout: float) -> RunnerHandle:
        self.calls += 1
        if self.calls <= self.failures:
            raise ResourceError("runner fleet busy")
        return RunnerHandle(id="r1", label=requirements, workspace=self.tmp)

    def release_runner(self, handle: RunnerHandle) -> None:
        pass


class TestLocalRunnerPool:
    def test_lease_gets_fresh_workspace(self, runner_pool: LocalRunnerPool) -> None:
        handle = runner_pool.acquire_runner("local", timeout=1)
        assert handle.workspace.is_dir()
        assert runner_pool.in_use == 1
        (handle.workspace / "junk").write_text("x")

        runner_pool.release_runner(handle)

        assert not handle.workspace.exists()
        assert runner_pool.in_use == 0

    def test_release_twice_is_harmless(self, runner_pool: LocalRunnerPool) -> None:
        handle = runner_pool.acquire_runner("local", timeout=1)
        runner_pool.release_runner(handle)
        runner_pool.release_runner(handle)
        # the pool still only hands out `size` runners
        a = runner_pool.acquire_runner("local", timeout=1)
        b = runner_pool.acquire_runner("local", timeout=1)
        with pytest.raises(ResourceError):
            runner_pool.acquire_runner("local", timeout=0.05)
        runner_pool.release_runner(a)
        runner_pool.release_runner(b)

    def test_unknown_label_fails_without_retry(self, runner_pool: LocalRunnerPool) -> None:
        with pytest.raises(ResourceError) as exc:
            runner_pool.acquire_runner("gpu", timeout=1)
        assert exc.value.retryable is False

    def test_owned_work_root_is_removed_on_close(self) -> None:
        pool = LocalRunnerPool(size=1)
        root = pool.work_root
        assert root.is_dir()
        pool.close()
        assert not root.exists()

    def test_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            LocalRunnerPool(size=0)


class TestBackoff:
    def test_delays_grow_and_cap(self) -> None:
        cfg = BackoffConfig(attempts=5, initial=1.0, factor=3.0, maximum=5.0)
        assert list(cfg.delays()) == [1.0, 3.0, 5.0, 5.0, 5.0]

    def test_retries_until_success(self, tmp_path: Path) -> None:
        pool = FlakyPool(failures=2, tmp=tmp_path)
        slept: list[float] = []
        handle = acquire_with_retry(
            pool, "local", timeout=1, backoff=BackoffConfig(attempts=3, initial=0.5), sleep=slept.append
        )
        assert handle.id == "r1"
        assert slept == [0.5, 1.0]
        assert pool.calls == 3

    def test_gives_up_after_attempts(self, tmp_path: Path) -> None:
        pool = FlakyPool(failures=10, tmp=tmp_path)
        slept: list[float] = []
        with pytest.raises(ResourceError):
            acquire_with_retry(
                pool, "local", timeout=1, backoff=BackoffConfig(attempts=2, initial=0.5), sleep=slept.append
            )
        assert slept == [0.5, 1.0]
        assert pool.calls == 3

    def test_non_retryable_error_is_raised_at_once(self, runner_pool: LocalRunnerPool) -> None:
        slept: list[float] = []
        with pytest.raises(ResourceError):
            acquire_with_retry(runner_pool, "gpu", timeout=1, sleep=slept.append)
        assert slept == []

    def test_stops_when_cancelled(self, tmp_path: Path) -> None:
        pool = FlakyPool(failures=0, tmp=tmp_path)
        with pytest.raises(JobCancelled):
            acquire_with_retry(pool, "local", timeout=1, should_stop=lambda: True)
        assert pool.calls == 0
