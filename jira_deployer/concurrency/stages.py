"""
Provisioning Stages

A small concurrency layer for running named provisioning stages in parallel:

- :class:`StagePlan` declares the stages and which other stages' results
  each one needs. A stage can only be declared after its inputs, so every
  plan is acyclic.
- :class:`StagePool` runs stages on a bounded thread pool. A stage waits for
  its declared inputs inside its own worker thread, then runs with a
  :class:`StageContext` carrying the inputs and a logger bound to the stage
  name and correlation id.

Deadlock freedom: ``submit`` refuses a stage whose inputs have not been
submitted yet. The executor queue is FIFO, so by the time a stage occupies a
worker its inputs are running or done, and a pool of any size drains.
"""

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Generic, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

from loguru import logger

from ..errors import DeployerError, ProvisioningError, TransientRemoteError

T = TypeVar("T")


@dataclass(frozen=True)
class Stage:
    name: str
    inputs: Tuple[str, ...] = ()


class StagePlan:
    """A fixed DAG of named stages"""

    def __init__(self) -> None:
        self._stages: Dict[str, Stage] = {}

    def declare(self, name: str, inputs: Sequence[str] = ()) -> Stage:
        if name in self._stages:
            raise ValueError(f"Stage '{name}' is already declared")
        missing = [i for i in inputs if i not in self._stages]
        if missing:
            raise ValueError(f"Stage '{name}' depends on undeclared stages {missing}")
        stage = Stage(name=name, inputs=tuple(inputs))
        self._stages[name] = stage
        return stage

    def __getitem__(self, name: str) -> Stage:
        return self._stages[name]

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)

    def suspension_points(self) -> List[Tuple[str, str]]:
        """Every (stage, awaited input) pair, in declaration order"""
        return [(stage.name, i) for stage in self for i in stage.inputs]


@dataclass(frozen=True)
class StageContext:
    """Passed explicitly to every stage body"""
    stage: str
    correlation_id: str
    inputs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def logger(self):
        return logger.bind(stage=self.stage, correlation_id=self.correlation_id)


class StageFuture(Generic[T]):
    """Handle to the outcome of a submitted stage"""

    def __init__(self, stage: str, future: Optional["Future[T]"] = None):
        self.stage = stage
        self._future = future
        self.failed_at: Optional[float] = None

    def get(self, timeout: Optional[float] = None) -> T:
        """Block the calling thread until the stage finishes"""
        return self._future.result(timeout=timeout)

    def done(self) -> bool:
        return self._future.done()

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout=timeout)

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def __repr__(self) -> str:
        return f"StageFuture({self.stage!r}, done={self.done()})"


def _as_stage_error(e: BaseException, stage: str, elapsed: timedelta) -> BaseException:
    if isinstance(e, ProvisioningError):
        if e.stage is None:
            e.stage = stage
            e.elapsed = elapsed
        return e
    if isinstance(e, TransientRemoteError):
        # Retries, if any, happened inside the stage
        return ProvisioningError(str(e), stage=stage, elapsed=elapsed)
    if isinstance(e, DeployerError):
        return e
    return ProvisioningError(f"{type(e).__name__}: {e}", stage=stage, elapsed=elapsed)


class StagePool:
    """
    Runs named stages on a thread pool.

    Args:
        name: Thread name prefix
        max_workers: Pool size; defaults to one worker per planned stage so the
            whole plan can run at once, or 32 without a plan
        plan: Stages allowed on this pool, with their inputs
        correlation_id: Shared by every stage of one orchestration
    """

    def __init__(
        self,
        name: str,
        max_workers: Optional[int] = None,
        plan: Optional[StagePlan] = None,
        correlation_id: Optional[str] = None,
    ):
        if max_workers is None:
            max_workers = max(len(plan), 1) if plan is not None else 32
        self.name = name
        self.plan = plan
        self.correlation_id = correlation_id or uuid.uuid4().hex[:8]
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-thread")
        self._lock = threading.Lock()
        self._futures: Dict[str, StageFuture] = {}

    def context(self, stage: str) -> StageContext:
        return StageContext(stage=stage, correlation_id=self.correlation_id)

    def future(self, stage: str) -> StageFuture:
        return self._futures[stage]

    def _resolve_stage(self, name: str) -> Stage:
        if self.plan is None:
            return Stage(name=name)
        if name not in self.plan:
            raise ValueError(f"Stage '{name}' is not part of the plan")
        stage = self.plan[name]
        if name in self._futures:
            raise ValueError(f"Stage '{name}' was already submitted")
        pending = [i for i in stage.inputs if i not in self._futures]
        if pending:
            raise ValueError(f"Stage '{name}' submitted before its inputs {pending}")
        return stage

    def submit(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> StageFuture[T]:
        """
        Submit a stage body. It is called as ``fn(context, *args, **kwargs)``
        once every declared input has finished.
        """
        with self._lock:
            stage = self._resolve_stage(name)
            input_futures = {i: self._futures[i] for i in stage.inputs}
            stage_future: StageFuture[T] = StageFuture(name)

            def run() -> T:
                inputs = {i: f.get() for i, f in input_futures.items()}
                context = StageContext(stage=name, correlation_id=self.correlation_id, inputs=inputs)
                start = time.monotonic()
                context.logger.debug("Stage started")
                try:
                    result = fn(context, *args, **kwargs)
                except BaseException as e:
                    elapsed = timedelta(seconds=time.monotonic() - start)
                    stage_future.failed_at = time.monotonic()
                    error = _as_stage_error(e, name, elapsed)
                    context.logger.error(f"Stage failed after {elapsed.total_seconds():.1f}s: {error}")
                    if error is e:
                        raise
                    raise error from e
                context.logger.debug(f"Stage finished in {time.monotonic() - start:.1f}s")
                return result

            stage_future._future = self._executor.submit(run)
            if self.plan is not None:
                self._futures[name] = stage_future
            return stage_future

    def shutdown_now(self) -> None:
        """Cancel queued stages; running ones are left to finish on their own"""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "StagePool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown_now()


def await_all(futures: Sequence[StageFuture[T]]) -> List[T]:
    """
    Wait for every future, then raise the earliest failure if there was one.
    """
    wait([f._future for f in futures])
    failed = [f for f in futures if not f.cancelled() and f.exception() is not None]
    if failed:
        first = min(failed, key=lambda f: f.failed_at if f.failed_at is not None else float("inf"))
        raise first.exception()  # type: ignore[misc]
    return [f.get() for f in futures]
