"""
Tests for workers, clusters and deferred values.
"""

import threading
import time

import pytest

from torch_blockop import (
    Deferred,
    LocalCluster,
    WorkerLostError,
    WorkerSet,
    current_worker,
    local_store,
    peer_submit,
    resolve_all,
)


def remember(key, value):
    local_store()[key] = value
    return current_worker()


def recall(key):
    return local_store().get(key)


def fail(message):
    raise ValueError(message)


def ask_peer(worker_id, fn, *args):
    return peer_submit(worker_id, fn, *args).resolve(timeout=5)


class TestWorkerSet:

    def test_ordered_and_unique(self):
        ws = WorkerSet(["b", "a", "b"])
        assert list(ws) == ["b", "a"]
        assert len(ws) == 2
        assert ws[0] == "b"

    def test_remove_returns_new_set(self):
        ws = WorkerSet(["a", "b"])
        smaller = ws.remove("a")
        assert list(smaller) == ["b"]
        assert "a" in ws
        assert smaller == WorkerSet(["b"])


class TestDeferred:

    def test_completed(self):
        d = Deferred.completed(3)
        assert d.done()
        assert d.try_resolve() == (True, 3)
        assert d.resolve() == 3

    def test_then(self):
        d = Deferred.completed(3).then(lambda v: v * 2)
        assert d.resolve() == 6

    def test_then_propagates_errors(self):
        d = Deferred.completed(0).then(lambda v: 1 / v)
        with pytest.raises(ZeroDivisionError):
            d.resolve()

    def test_try_resolve_does_not_block(self, cluster2):
        gate = threading.Event()
        d = cluster2.submit("worker-0", gate.wait, 5)
        assert d.try_resolve() == (False, None)
        gate.set()
        assert d.resolve(timeout=5) is True


class TestLocalCluster:

    def test_worker_ids(self, cluster):
        assert list(cluster.workers) == ["worker-0", "worker-1", "worker-2", "worker-3"]
        assert cluster.num_workers == 4

    def test_submit_runs_on_named_worker(self, cluster):
        assert cluster.submit("worker-2", current_worker).resolve() == "worker-2"
        assert current_worker() is None

    def test_stores_are_private(self, cluster2):
        cluster2.submit("worker-0", remember, "k", 1).resolve()
        assert cluster2.submit("worker-0", recall, "k").resolve() == 1
        assert cluster2.submit("worker-1", recall, "k").resolve() is None

    def test_local_store_outside_worker(self):
        with pytest.raises(RuntimeError):
            local_store()

    def test_calls_run_in_submission_order(self, cluster2):
        order = []
        calls = [cluster2.submit("worker-0", order.append, k) for k in range(20)]
        resolve_all(calls)
        assert order == list(range(20))

    def test_exceptions_reraised_by_resolve(self, cluster2):
        with pytest.raises(ValueError, match="boom"):
            cluster2.submit("worker-1", fail, "boom").resolve()

    def test_broadcast(self, cluster):
        results = cluster.broadcast(current_worker)
        assert {w: d.resolve() for w, d in results.items()} == {w: w for w in cluster.workers}

    def test_unknown_worker(self, cluster2):
        with pytest.raises(WorkerLostError):
            cluster2.submit("nope", current_worker)

    def test_kill_fails_in_flight_calls(self, cluster2):
        d = cluster2.submit("worker-0", time.sleep, 0.3)
        cluster2.kill("worker-0")
        with pytest.raises(WorkerLostError):
            d.resolve(timeout=5)
        assert not cluster2.is_alive("worker-0")
        assert list(cluster2.workers) == ["worker-1"]
        with pytest.raises(WorkerLostError):
            cluster2.submit("worker-0", current_worker)

    def test_submit_racing_kill(self, cluster2):
        # executor already gone while the worker still looks alive
        cluster2._executors["worker-0"].shutdown(wait=True)
        with pytest.raises(WorkerLostError):
            cluster2.submit("worker-0", current_worker)
        assert cluster2.submit("worker-1", current_worker).resolve(timeout=5) == "worker-1"

    def test_shutdown(self):
        with LocalCluster(2) as c:
            c.submit("worker-0", current_worker).resolve()
        assert len(c.workers) == 0
        with pytest.raises(WorkerLostError):
            c.submit("worker-0", current_worker)


class TestPeerSubmit:

    def test_reads_peer_store(self, cluster2):
        cluster2.submit("worker-1", remember, "k", 7).resolve()
        assert cluster2.submit("worker-0", ask_peer, "worker-1", recall, "k").resolve(timeout=5) == 7

    def test_runs_on_peer(self, cluster):
        assert cluster.submit("worker-0", ask_peer, "worker-3", current_worker).resolve(timeout=5) == "worker-3"

    def test_self_runs_inline(self, cluster2):
        assert cluster2.submit("worker-1", ask_peer, "worker-1", current_worker).resolve(timeout=5) == "worker-1"

    def test_crossed_requests_do_not_deadlock(self, cluster2):
        cluster2.submit("worker-0", remember, "k", 0).resolve()
        cluster2.submit("worker-1", remember, "k", 1).resolve()
        a = cluster2.submit("worker-0", ask_peer, "worker-1", recall, "k")
        b = cluster2.submit("worker-1", ask_peer, "worker-0", recall, "k")
        assert (a.resolve(timeout=5), b.resolve(timeout=5)) == (1, 0)

    def test_outside_worker(self):
        with pytest.raises(RuntimeError):
            peer_submit("worker-0", current_worker)

    def test_dead_peer(self, cluster2):
        cluster2.kill("worker-1")
        with pytest.raises(WorkerLostError):
            cluster2.submit("worker-0", ask_peer, "worker-1", current_worker).resolve(timeout=5)
