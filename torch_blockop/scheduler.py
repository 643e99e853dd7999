"""
Dynamic task scheduling over a pool of workers.

Tasks are handed out one at a time: every idle worker receives the next
unclaimed task, and a worker that finishes immediately gets another one.
Fast workers therefore process more tasks than slow ones. Lost workers have
their task put back at the front of the pool; failing tasks are retried on
another worker until the retry budget runs out.

Example
-------
>>> from torch_blockop import LocalCluster, schedule_dynamic
>>> with LocalCluster(2) as cluster:
...     stream = schedule_dynamic(range(8), abs, cluster)
...     sorted(r.value for r in stream)
[0, 1, 2, 3, 4, 5, 6, 7]
"""

import enum
import logging
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Set, Union

from .check import NoWorkersAvailableError, TaskError, WorkerLostError
from .config import SchedulerConfig
from .workers import Cluster, WorkerSet


logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class DispatchEvent:
    """Progress record emitted at each dispatch"""
    sequence: int
    tasks_remaining: int
    worker_id: Hashable
    task_id: Hashable
    attempt: int


@dataclass(frozen=True)
class TaskResult:
    task_id: Hashable
    worker_id: Hashable
    value: Any
    attempts: int


@dataclass
class _Binding:
    worker_id: Hashable
    task_id: Hashable
    attempt: int
    started: float


class ResultStream:
    """
    Iterator over the results of a dynamic scheduling call.

    Work happens while the stream is consumed: each ``next()`` dispatches
    and waits until some task completes. Results come in completion order.

    Attributes
    ----------
    state : SchedulerState
        Current state of the call
    completed : List[TaskResult]
        Results produced so far, kept after a failure
    events : List[DispatchEvent]
        One event per dispatch, in dispatch order
    workers : WorkerSet
        Workers still in use; shrinks as workers are lost
    """

    def __init__(
        self,
        tasks: Union[Iterable[Any], Mapping[Hashable, Any]],
        task_fn: Callable[[Any], Any],
        cluster: Cluster,
        workers: Optional[Iterable[Hashable]] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        if isinstance(tasks, Mapping):
            items = list(tasks.items())
        else:
            items = list(enumerate(tasks))
        self.task_ids = [task_id for task_id, _ in items]
        if len(set(self.task_ids)) != len(self.task_ids):
            raise ValueError("task ids must be unique")
        self._payloads = dict(items)
        self._pool: Deque[Hashable] = deque(self.task_ids)
        self._task_fn = task_fn
        self.cluster = cluster
        self.workers = WorkerSet(cluster.workers if workers is None else workers)
        self.config = config or SchedulerConfig()

        self.state = SchedulerState.IDLE
        self.completed: List[TaskResult] = []
        self.events: List[DispatchEvent] = []
        self._attempts: Dict[Hashable, int] = {}
        self._failed_on: Dict[Hashable, Set[Hashable]] = {}
        self._bindings: Dict[Future, _Binding] = {}
        self._sequence = 0
        self._cancel_requested = False
        self._generator = self._run()

    # =========================================================================
    # Iteration
    # =========================================================================

    def __iter__(self) -> Iterator[TaskResult]:
        return self

    def __next__(self) -> TaskResult:
        return next(self._generator)

    def collect(self) -> List[TaskResult]:
        """Run to completion and return every result."""
        for _ in self:
            pass
        return list(self.completed)

    @property
    def tasks_remaining(self) -> int:
        return len(self._pool)

    @property
    def in_flight(self) -> Dict[Hashable, Hashable]:
        """task id -> worker id of the tasks currently running."""
        return {b.task_id: b.worker_id for b in self._bindings.values()}

    def cancel(self) -> None:
        """
        Stop dispatching and try to cancel in-flight tasks.

        Results arriving afterwards are discarded.
        """
        self._cancel_requested = True
        if not self._generator.gi_running:
            self._generator.close()
            if self.state not in (SchedulerState.COMPLETED, SchedulerState.ABORTED):
                self._abort()

    # =========================================================================
    # Coordinator
    # =========================================================================

    def _run(self) -> Iterator[TaskResult]:
        try:
            self.state = SchedulerState.DISPATCHING
            logger.info("Scheduling %d task(s) on %d worker(s)", len(self._pool), len(self.workers))
            if not self.workers:
                raise NoWorkersAvailableError("no workers given")
            self._dispatch_idle()
            while self._bindings:
                if self._cancel_requested:
                    self._abort()
                    return
                done, _ = wait(list(self._bindings), timeout=self.config.heartbeat_interval,
                               return_when=FIRST_COMPLETED)
                for future in done:
                    binding = self._bindings.pop(future, None)
                    if binding is None:
                        continue
                    result = self._settle(future, binding)
                    if result is not None:
                        yield result
                    if self._cancel_requested:
                        break
                self._check_heartbeats()
                self._dispatch_idle()
                if not self._pool and self._bindings:
                    self.state = SchedulerState.DRAINING
            if not self._cancel_requested:
                self.state = SchedulerState.COMPLETED
                logger.info("Scheduling completed: %d task(s)", len(self.completed))
            else:
                self._abort()
        except BaseException:
            if self.state != SchedulerState.COMPLETED:
                self._abort()
            raise

    def _settle(self, future: Future, binding: _Binding) -> Optional[TaskResult]:
        """Handle a finished attempt; returns the result on success."""
        if future.cancelled():
            self._requeue(binding.task_id, front=True)
            return None
        exc = future.exception()
        if exc is None:
            result = TaskResult(binding.task_id, binding.worker_id, future.result(), binding.attempt)
            self.completed.append(result)
            logger.debug("Task %r finished on %s", binding.task_id, binding.worker_id)
            self._dispatch_to(binding.worker_id)
            return result
        if isinstance(exc, WorkerLostError) and exc.worker_id == binding.worker_id:
            self._lose_worker(binding.worker_id, exc.reason)
            self._retry(binding, exc)
            return None
        logger.warning("Task %r failed on %s (attempt %d/%d): %s",
                       binding.task_id, binding.worker_id, binding.attempt, self.config.max_retries, exc)
        self._failed_on.setdefault(binding.task_id, set()).add(binding.worker_id)
        self._retry(binding, exc)
        return None

    def _retry(self, binding: _Binding, exc: BaseException) -> None:
        if binding.attempt >= self.config.max_retries:
            error = TaskError(binding.task_id, binding.worker_id, binding.attempt)
            logger.error("%s: %s", error, exc)
            raise error from exc
        self._requeue(binding.task_id, front=True)

    def _requeue(self, task_id: Hashable, front: bool) -> None:
        if front:
            self._pool.appendleft(task_id)
        else:
            self._pool.append(task_id)

    def _busy_workers(self) -> Set[Hashable]:
        return {b.worker_id for b in self._bindings.values()}

    def _dispatch_idle(self) -> None:
        for worker_id in list(self.workers):
            if not self._pool:
                return
            if worker_id not in self._busy_workers():
                self._dispatch_to(worker_id)

    def _next_task_for(self, worker_id: Hashable) -> Optional[Hashable]:
        """
        First task in the pool this worker may run.

        A task is kept away from workers it already failed on while some
        live worker has not tried it yet.
        """
        for k, task_id in enumerate(self._pool):
            failed_on = self._failed_on.get(task_id, ())
            if worker_id not in failed_on or all(w in failed_on for w in self.workers):
                del self._pool[k]
                return task_id
        return None

    def _dispatch_to(self, worker_id: Hashable) -> None:
        if self._cancel_requested or worker_id not in self.workers:
            return
        task_id = self._next_task_for(worker_id)
        if task_id is None:
            return
        attempt = self._attempts.get(task_id, 0) + 1
        try:
            future = self.cluster.submit(worker_id, self._task_fn, self._payloads[task_id]).future
        except WorkerLostError as exc:
            self._requeue(task_id, front=True)
            self._lose_worker(worker_id, exc.reason)
            self._dispatch_idle()
            return
        self._attempts[task_id] = attempt
        self._bindings[future] = _Binding(worker_id, task_id, attempt, time.monotonic())
        self._sequence += 1
        event = DispatchEvent(self._sequence, len(self._pool), worker_id, task_id, attempt)
        self.events.append(event)
        logger.info("Dispatched task %r to %s (attempt %d, %d remaining)",
                    task_id, worker_id, attempt, event.tasks_remaining)

    def _lose_worker(self, worker_id: Hashable, reason: str) -> None:
        if worker_id not in self.workers:
            return
        self.workers = self.workers.remove(worker_id)
        logger.warning("Worker %s removed from scheduling: %s (%d left)", worker_id, reason, len(self.workers))
        if not self.workers:
            raise NoWorkersAvailableError(f"all workers lost, last was {worker_id}: {reason}")

    def _check_heartbeats(self) -> None:
        """Declare lost the busy workers that died or ran past the task timeout."""
        now = time.monotonic()
        timeout = self.config.task_timeout
        for future, binding in list(self._bindings.items()):
            if future.done():
                continue
            if not self.cluster.is_alive(binding.worker_id):
                reason = "failed liveness check"
            elif timeout is not None and now - binding.started > timeout:
                reason = f"task {binding.task_id!r} exceeded {timeout}s"
            else:
                continue
            del self._bindings[future]
            future.cancel()
            self._lose_worker(binding.worker_id, reason)
            self._retry(binding, WorkerLostError(binding.worker_id, reason))

    def _abort(self) -> None:
        self.state = SchedulerState.ABORTED
        if self.config.cancel_inflight:
            for future in self._bindings:
                future.cancel()
        self._bindings.clear()
        logger.error("Scheduling aborted with %d task(s) completed", len(self.completed))

    def __repr__(self) -> str:
        return (f"ResultStream(state={self.state.value}, completed={len(self.completed)}, "
                f"remaining={len(self._pool)}, in_flight={len(self._bindings)})")


def schedule_dynamic(
    tasks: Union[Iterable[Any], Mapping[Hashable, Any]],
    task_fn: Callable[[Any], Any],
    cluster: Cluster,
    workers: Optional[Iterable[Hashable]] = None,
    config: Optional[SchedulerConfig] = None,
) -> ResultStream:
    """
    Run ``task_fn(task)`` for every task, handing tasks to idle workers.

    Parameters
    ----------
    tasks : Iterable or Mapping
        Task payloads; task ids are positions, or the keys of a mapping
    task_fn : Callable
        Runs on the workers; must be picklable for process clusters
    cluster : Cluster
        Cluster providing the workers
    workers : Iterable, optional
        Workers to use; all live workers of the cluster by default
    config : SchedulerConfig, optional
        Retry budget, heartbeat interval and timeouts

    Returns
    -------
    ResultStream
        Lazily driven iterator of TaskResults. Raises NoWorkersAvailableError
        when every worker is lost and TaskError when a task exhausts its
        retries; results produced before stay in ``completed``.
    """
    return ResultStream(tasks, task_fn, cluster, workers, config)


def pmap(
    task_fn: Callable[[Any], Any],
    tasks: Iterable[Any],
    cluster: Cluster,
    workers: Optional[Iterable[Hashable]] = None,
    config: Optional[SchedulerConfig] = None,
) -> List[Any]:
    """Dynamically scheduled map; values come back in task order."""
    stream = schedule_dynamic(list(tasks), task_fn, cluster, workers, config)
    values = {r.task_id: r.value for r in stream.collect()}
    return [values[task_id] for task_id in stream.task_ids]
