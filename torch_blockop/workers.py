"""
Workers and remote execution.

A cluster is a fixed set of workers, each of which keeps a private store of
objects (blocks, array segments). The rest of the library only needs
``Cluster.submit``: a function shipped to a named worker, returning a
``Deferred``. Code running on a worker reaches other workers directly with
``peer_submit``, so block data moves between workers without passing
through the caller.

Two clusters are provided:

- ``LocalCluster``: workers are single-threaded executors inside the current
  process, each running its calls in submission order. Cheap to start, used
  by the tests and for debugging.
- ``ProcessCluster``: workers are separate processes started with
  ``torch.multiprocessing.spawn`` and connected with ``torch.distributed.rpc``.
  Functions and arguments are pickled, so they must be importable
  module-level callables.

Example
-------
>>> from torch_blockop import LocalCluster
>>> with LocalCluster(2) as cluster:
...     d = cluster.submit("worker-1", pow, 2, 10)
...     d.resolve()
1024
"""

import logging
import pickle
import threading
import traceback
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from multiprocessing.connection import wait as wait_sentinels
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Tuple

import torch.distributed.rpc as rpc
from torch.multiprocessing import spawn

from .check import RemoteError, WorkerLostError
from .config import _env, default_num_workers


logger = logging.getLogger(__name__)


# =============================================================================
# Worker-side context
# =============================================================================

# LocalCluster workers are threads and bind per thread; a ProcessCluster
# worker binds once for the whole process, since rpc runs calls on a pool.
_context = threading.local()
_process_context: Dict[str, Any] = {}


def _bind_worker(worker_id: Hashable, store: Dict[Any, Any], peer: Optional[Callable] = None) -> None:
    _context.worker_id = worker_id
    _context.store = store
    _context.peer = peer


def _bind_process(worker_id: Hashable, store: Dict[Any, Any], peer: Callable) -> None:
    _process_context.update(worker_id=worker_id, store=store, peer=peer)


def _bound(name: str) -> Any:
    value = getattr(_context, name, None)
    if value is None:
        value = _process_context.get(name)
    return value


def current_worker() -> Optional[Hashable]:
    """Id of the worker running the calling code, None on the caller side."""
    return _bound("worker_id")


def local_store() -> Dict[Any, Any]:
    """
    Private store of the worker running the calling code.

    Only code submitted to a worker may use it; this is what keeps every
    block single-writer.
    """
    store = _bound("store")
    if store is None:
        raise RuntimeError("local_store() is only available inside a worker")
    return store


def peer_submit(worker_id: Hashable, fn: Callable, *args) -> "Deferred":
    """
    From inside a worker, run ``fn(*args)`` on another worker.

    The request goes straight to the peer and is served next to its regular
    calls, so ``fn`` should be a short read of the peer's store. Calls aimed
    at the current worker run inline.
    """
    me = current_worker()
    if me is None:
        raise RuntimeError("peer_submit() is only available inside a worker")
    if worker_id == me:
        future = Future()
        try:
            _settle(future, True, fn(*args))
        except Exception as exc:
            _settle(future, False, exc)
        return Deferred(future, worker_id)
    return Deferred(_bound("peer")(worker_id, fn, args), worker_id)


# =============================================================================
# WorkerSet and Deferred
# =============================================================================

class WorkerSet:
    """
    Ordered set of live worker ids.

    A plain value: scheduling and build calls receive one explicitly and
    never consult a global registry. ``remove`` returns a new set.
    """

    def __init__(self, worker_ids: Iterable[Hashable] = ()):
        ids: List[Hashable] = []
        for w in worker_ids:
            if w not in ids:
                ids.append(w)
        self._ids = tuple(ids)

    def remove(self, worker_id: Hashable) -> "WorkerSet":
        return WorkerSet(w for w in self._ids if w != worker_id)

    def __contains__(self, worker_id) -> bool:
        return worker_id in self._ids

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __getitem__(self, idx: int) -> Hashable:
        return self._ids[idx]

    def __eq__(self, other) -> bool:
        if isinstance(other, WorkerSet):
            return self._ids == other._ids
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._ids)

    def __repr__(self) -> str:
        return f"WorkerSet({list(self._ids)})"


class Deferred:
    """
    Handle on a value being produced by a worker.

    Nothing blocks until ``resolve`` is called; ``try_resolve`` never blocks.
    Exceptions raised on the worker are re-raised by ``resolve``.
    """

    def __init__(self, future: Future, worker_id: Optional[Hashable] = None):
        self._future = future
        self.worker_id = worker_id

    @classmethod
    def completed(cls, value: Any, worker_id: Optional[Hashable] = None) -> "Deferred":
        future = Future()
        future.set_result(value)
        return cls(future, worker_id)

    @property
    def future(self) -> Future:
        return self._future

    def resolve(self, timeout: Optional[float] = None) -> Any:
        return self._future.result(timeout)

    def try_resolve(self) -> Tuple[bool, Any]:
        """(True, value) if the value is ready, (False, None) otherwise."""
        if not self._future.done():
            return False, None
        return True, self._future.result()

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        return self._future.cancel()

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)

    def then(self, fn: Callable[[Any], Any]) -> "Deferred":
        """Deferred of ``fn(value)``, evaluated locally once the value arrives."""
        chained = Future()

        def _chain(f: Future):
            if f.cancelled():
                chained.cancel()
                return
            exc = f.exception()
            if exc is not None:
                _settle(chained, False, exc)
                return
            try:
                _settle(chained, True, fn(f.result()))
            except Exception as e:
                _settle(chained, False, e)

        self._future.add_done_callback(_chain)
        return Deferred(chained, self.worker_id)

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"Deferred(worker={self.worker_id}, {state})"


def resolve_all(deferreds: Iterable[Deferred], timeout: Optional[float] = None) -> List[Any]:
    """Resolve several handles, in order."""
    return [d.resolve(timeout) for d in deferreds]


# =============================================================================
# Cluster base
# =============================================================================

def _settle(future: Future, ok: bool, value: Any) -> None:
    """Complete a future unless it was cancelled or already completed."""
    try:
        if ok:
            future.set_result(value)
        else:
            future.set_exception(value)
    except InvalidStateError:
        pass


class Cluster:
    """
    A fixed set of workers accepting submitted calls.

    Subclasses implement ``_dispatch``, ``kill`` and ``_close``. Bookkeeping of
    in-flight calls lives here so that a lost worker fails all of its calls
    with ``WorkerLostError``.
    """

    def __init__(self, worker_ids: Iterable[Hashable]):
        self._worker_ids = list(worker_ids)
        self._alive = {w: True for w in self._worker_ids}
        self._pending: Dict[Hashable, set] = {w: set() for w in self._worker_ids}
        self._lock = threading.RLock()
        self._closed = False

    @property
    def workers(self) -> WorkerSet:
        """Live workers."""
        with self._lock:
            return WorkerSet(w for w in self._worker_ids if self._alive[w])

    @property
    def num_workers(self) -> int:
        return len(self.workers)

    def is_alive(self, worker_id: Hashable) -> bool:
        with self._lock:
            return self._alive.get(worker_id, False)

    def submit(self, worker_id: Hashable, fn: Callable, *args, **kwargs) -> Deferred:
        """
        Run ``fn(*args, **kwargs)`` on a worker.

        Raises ``WorkerLostError`` right away if the worker is dead or
        unknown; failures discovered later surface through the Deferred.
        """
        future = Future()
        with self._lock:
            if self._closed:
                raise WorkerLostError(worker_id, "cluster is shut down")
            if not self._alive.get(worker_id, False):
                reason = "unknown worker" if worker_id not in self._alive else "worker is not alive"
                raise WorkerLostError(worker_id, reason)
            self._pending[worker_id].add(future)
        future.add_done_callback(lambda f: self._forget(worker_id, f))
        try:
            self._dispatch(worker_id, future, fn, args, kwargs)
        except BaseException:
            future.cancel()
            raise
        return Deferred(future, worker_id)

    def broadcast(self, fn: Callable, *args, workers: Optional[Iterable[Hashable]] = None, **kwargs) -> Dict[Hashable, Deferred]:
        """Submit the same call to several workers (all live ones by default)."""
        if workers is None:
            workers = self.workers
        return {w: self.submit(w, fn, *args, **kwargs) for w in workers}

    def _forget(self, worker_id: Hashable, future: Future) -> None:
        with self._lock:
            self._pending.get(worker_id, set()).discard(future)

    def _mark_lost(self, worker_id: Hashable, reason: str) -> None:
        with self._lock:
            if not self._alive.get(worker_id, False):
                return
            self._alive[worker_id] = False
            pending = list(self._pending[worker_id])
        if not self._closed:
            logger.warning("Worker %s lost: %s (%d call(s) in flight)", worker_id, reason, len(pending))
        for future in pending:
            _settle(future, False, WorkerLostError(worker_id, reason))

    def _dispatch(self, worker_id, future: Future, fn: Callable, args: tuple, kwargs: dict) -> None:
        raise NotImplementedError

    def kill(self, worker_id: Hashable) -> None:
        """Terminate a worker abruptly; its in-flight calls fail."""
        raise NotImplementedError

    def _close(self) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._close()
        for worker_id in self._worker_ids:
            self._mark_lost(worker_id, "cluster is shut down")
        logger.debug("%s shut down", type(self).__name__)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.shutdown()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(workers={list(self.workers)})"


# =============================================================================
# In-process cluster
# =============================================================================

def _relay(inner: Future, future: Future) -> None:
    """Forward the outcome of ``inner`` to ``future`` once it is done."""

    def _forward(f: Future):
        if f.cancelled():
            future.cancel()
        elif f.exception() is not None:
            _settle(future, False, f.exception())
        else:
            _settle(future, True, f.result())

    inner.add_done_callback(_forward)


class LocalCluster(Cluster):
    """
    Workers as single-threaded executors in the current process.

    Each worker has its own store and runs one call at a time, in submission
    order. A second thread per worker serves ``peer_submit`` reads, so two
    workers fetching from each other never wait on each other's calls.

    Parameters
    ----------
    num_workers : int, optional
        Number of workers, defaults to ``default_num_workers()``
    prefix : str
        Worker ids are ``f"{prefix}-{k}"``
    """

    def __init__(self, num_workers: Optional[int] = None, prefix: str = "worker"):
        if num_workers is None:
            num_workers = default_num_workers()
        super().__init__(f"{prefix}-{k}" for k in range(num_workers))
        self._stores = {w: {} for w in self._worker_ids}
        self._executors = {w: self._executor(w, str(w)) for w in self._worker_ids}
        self._transfers = {w: self._executor(w, f"{w}-transfer") for w in self._worker_ids}
        logger.debug("LocalCluster started with %d workers", num_workers)

    def _executor(self, worker_id, name: str) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=name,
            initializer=_bind_worker,
            initargs=(worker_id, self._stores[worker_id], self._peer),
        )

    def _dispatch(self, worker_id, future, fn, args, kwargs):
        try:
            inner = self._executors[worker_id].submit(fn, *args, **kwargs)
        except RuntimeError:
            # kill() shut the executor down after submit() saw the worker alive
            raise WorkerLostError(worker_id, "worker is shut down") from None
        _relay(inner, future)
        future.add_done_callback(lambda f: f.cancelled() and inner.cancel())

    def _peer(self, worker_id, fn, args) -> Future:
        if not self.is_alive(worker_id):
            raise WorkerLostError(worker_id, "worker is not alive")
        try:
            return self._transfers[worker_id].submit(fn, *args)
        except RuntimeError:
            raise WorkerLostError(worker_id, "worker is shut down") from None

    def kill(self, worker_id):
        self._mark_lost(worker_id, "killed")
        self._executors[worker_id].shutdown(wait=False, cancel_futures=True)
        self._transfers[worker_id].shutdown(wait=False, cancel_futures=True)
        self._stores[worker_id].clear()

    def _close(self):
        for executor in self._executors.values():
            executor.shutdown(wait=True, cancel_futures=True)
        for executor in self._transfers.values():
            executor.shutdown(wait=True, cancel_futures=True)


# =============================================================================
# Multi-process cluster
# =============================================================================

_PORT_COUNTER = [29600]  # Use a list to allow modification in nested function
_COORDINATOR = "coordinator"
_active_cluster: List[Optional["ProcessCluster"]] = [None]
_stop = threading.Event()


def _next_port() -> int:
    _PORT_COUNTER[0] += 1
    return _PORT_COUNTER[0]


def _portable_exception(exc: BaseException) -> BaseException:
    """The exception itself if it survives pickling, a RemoteError otherwise."""
    try:
        pickle.loads(pickle.dumps(exc))
        return exc
    except Exception:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return RemoteError(type(exc).__name__, str(exc), tb)


def _run_call(fn: Callable, args: tuple, kwargs: dict) -> Tuple[bool, Any]:
    """Body of every rpc: the outcome of ``fn`` as an (ok, value) pair."""
    try:
        return True, fn(*args, **kwargs)
    except Exception as exc:
        return False, _portable_exception(exc)


def _rpc_peer(worker_id, fn, args) -> Future:
    """peer_submit transport of a worker process."""
    future = Future()
    reply = rpc.rpc_async(worker_id, _run_call, args=(fn, args, {}), timeout=0)

    def _done(r):
        try:
            ok, value = r.wait()
        except BaseException as exc:
            ok, value = False, RemoteError(type(exc).__name__, str(exc))
        _settle(future, ok, value)

    reply.add_done_callback(_done)
    return future


def _stop_worker() -> None:
    _stop.set()


def _worker_main(index: int, prefix: str, world_size: int, init_method: str, num_threads: int) -> None:
    """Entry point of a worker process: join the rpc group and serve calls until stopped."""
    worker_id = f"{prefix}-{index}"
    _bind_process(worker_id, {}, _rpc_peer)
    options = rpc.TensorPipeRpcBackendOptions(init_method=init_method, num_worker_threads=num_threads)
    rpc.init_rpc(worker_id, rank=index + 1, world_size=world_size, rpc_backend_options=options)
    logger.debug("Worker %s joined (%d processes)", worker_id, world_size)
    _stop.wait()
    rpc.shutdown(graceful=False)


class ProcessCluster(Cluster):
    """
    Workers as separate processes connected with ``torch.distributed.rpc``.

    Workers are started with ``torch.multiprocessing.spawn``; the calling
    process joins the same rpc group as rank 0 and workers talk to each
    other directly for ``peer_submit``. A worker serves independent calls on
    a thread pool. A watcher thread follows the process sentinels, so a
    worker that dies fails its in-flight calls with ``WorkerLostError``.

    Only one ProcessCluster can run per process at a time, since a process
    belongs to a single rpc group.

    Parameters
    ----------
    num_workers : int, optional
        Number of worker processes, defaults to ``default_num_workers()``
    start_method : str
        Multiprocessing start method, 'spawn' by default
    prefix : str
        Worker ids are ``f"{prefix}-{k}"``
    join_timeout : float
        Seconds to wait for a worker to exit on shutdown before terminating it
    master_addr : str
        Address of the rpc rendezvous, the calling process listens on it
    master_port : int, optional
        Rendezvous port, defaults to ``TORCH_BLOCKOP_MASTER_PORT`` or a fresh
        port per cluster
    num_worker_threads : int
        Threads serving rpc calls in every process
    rpc_timeout : float
        Seconds a call may take before failing with ``RemoteError``, 0 for no limit
    """

    def __init__(
        self,
        num_workers: Optional[int] = None,
        start_method: str = "spawn",
        prefix: str = "worker",
        join_timeout: float = 5.0,
        master_addr: str = "localhost",
        master_port: Optional[int] = None,
        num_worker_threads: int = 16,
        rpc_timeout: float = 0.0,
    ):
        if num_workers is None:
            num_workers = default_num_workers()
        if _active_cluster[0] is not None:
            raise RuntimeError("a ProcessCluster is already running in this process")
        super().__init__(f"{prefix}-{k}" for k in range(num_workers))
        if master_port is None:
            master_port = _env("MASTER_PORT", int, None) or _next_port()
        self._join_timeout = join_timeout
        self._rpc_timeout = rpc_timeout
        init_method = f"tcp://{master_addr}:{master_port}"
        world_size = num_workers + 1

        self._spawned = spawn(
            _worker_main,
            args=(prefix, world_size, init_method, num_worker_threads),
            nprocs=num_workers,
            join=False,
            daemon=True,
            start_method=start_method,
        )
        self._procs = dict(zip(self._worker_ids, self._spawned.processes))

        options = rpc.TensorPipeRpcBackendOptions(init_method=init_method, num_worker_threads=num_worker_threads)
        try:
            rpc.init_rpc(_COORDINATOR, rank=0, world_size=world_size, rpc_backend_options=options)
        except BaseException:
            for proc in self._procs.values():
                proc.terminate()
            raise
        _active_cluster[0] = self

        self._watcher = threading.Thread(target=self._watch, name="blockop-watcher", daemon=True)
        self._watcher.start()
        logger.debug("ProcessCluster started %d workers (%s, %s)", num_workers, start_method, init_method)

    def _dispatch(self, worker_id, future, fn, args, kwargs):
        try:
            reply = rpc.rpc_async(worker_id, _run_call, args=(fn, args, kwargs), timeout=self._rpc_timeout)
        except RuntimeError:
            if not self._exited(worker_id):
                raise
            self._mark_lost(worker_id, f"process exited with code {self._procs[worker_id].exitcode}")
            raise WorkerLostError(worker_id, "process exited") from None
        reply.add_done_callback(lambda r: self._settle_reply(worker_id, future, r))

    def _settle_reply(self, worker_id, future: Future, reply) -> None:
        # every path settles the future, even when the reply cannot be decoded
        try:
            try:
                ok, value = reply.wait()
            except Exception as exc:
                if self._exited(worker_id):
                    self._mark_lost(worker_id, f"process exited with code {self._procs[worker_id].exitcode}")
                    return
                ok, value = False, RemoteError(type(exc).__name__, str(exc))
            _settle(future, ok, value)
        except BaseException as exc:
            _settle(future, False, RemoteError(type(exc).__name__, str(exc)))

    def _exited(self, worker_id) -> bool:
        proc = self._procs[worker_id]
        proc.join(0.2)
        return not proc.is_alive()

    def _watch(self) -> None:
        """Mark workers lost as their processes exit, until the cluster closes."""
        while not self._closed:
            with self._lock:
                live = {self._procs[w].sentinel: w for w in self._worker_ids if self._alive[w]}
            if not live:
                break
            for sentinel in wait_sentinels(list(live), timeout=0.2):
                worker_id = live[sentinel]
                self._procs[worker_id].join(self._join_timeout)
                self._mark_lost(worker_id, f"process exited with code {self._procs[worker_id].exitcode}")

    def kill(self, worker_id):
        self._mark_lost(worker_id, "killed")
        proc = self._procs[worker_id]
        proc.kill()
        proc.join(self._join_timeout)

    def _close(self):
        for worker_id in self._worker_ids:
            if self.is_alive(worker_id):
                try:
                    rpc.rpc_async(worker_id, _stop_worker, timeout=self._join_timeout)
                except RuntimeError as exc:
                    logger.debug("Could not stop %s: %s", worker_id, exc)
        for proc in self._procs.values():
            proc.join(self._join_timeout)
            if proc.is_alive():
                proc.terminate()
                proc.join(self._join_timeout)
        self._watcher.join(self._join_timeout)
        rpc.shutdown(graceful=False)
        _active_cluster[0] = None
