"""
Tests for BlockOperator.

Tests cover:
- Block-diagonal application
- General (dense) block grids against a locally assembled reference
- Adjoint
- Block-size consistency checks
"""

import pytest
import torch

from torch_blockop import (
    BlockOperator,
    CallableOperator,
    DiagonalOperator,
    DistributedArray,
    InconsistentBlockSizeError,
    MatrixOperator,
    ShapeMismatchError,
    UnsupportedOperationError,
    block_diagonal,
    build_distributed_operator,
    LocalCluster,
    local_store,
    random_operator,
)
from torch_blockop.random import RandomBlocks


def diag_block(i: int):
    return DiagonalOperator(torch.tensor([i + 1.0, -(i + 1.0)], dtype=torch.float64))


def reference_dense(grid_shape, block_shape, seed):
    """Assemble the same random grid locally"""
    blocks = RandomBlocks(grid_shape[1], block_shape, seed)
    return torch.cat([
        torch.cat([blocks.block(i, j) for j in range(grid_shape[1])], dim=1)
        for i in range(grid_shape[0])
    ], dim=0)


def gathered(x: DistributedArray):
    with pytest.warns(UserWarning):
        return x.to_local_process()


def dense_of(A: BlockOperator):
    with pytest.warns(UserWarning):
        return A.to_dense()


def uneven_blocks(rows, cols):
    return [[torch.ones(i + 1, 2, dtype=torch.float64) if j == 0 else torch.ones(1, 2, dtype=torch.float64)
             for j in cols] for i in rows]


def forward_only(rows, cols):
    return [[CallableOperator(lambda x: x, (2, 2)) for j in cols] for i in rows]


def store_keys():
    return {key[0] for key in local_store()}


class RecordingCluster(LocalCluster):
    """LocalCluster that remembers every call the caller submits"""

    def __init__(self, num_workers):
        super().__init__(num_workers)
        self.calls = []

    def submit(self, worker_id, fn, *args, **kwargs):
        deferred = super().submit(worker_id, fn, *args, **kwargs)
        self.calls.append((getattr(fn, "__name__", type(fn).__name__), deferred))
        return deferred


class TestBlockDiagonal:

    def test_apply_to_ones(self, cluster):
        """4x4 diagonal grid of 2-element diagonal operators applied to 8 ones."""
        A = block_diagonal(diag_block, [2, 2, 2, 2], cluster)
        assert A.shape == (8, 8)
        x = DistributedArray.ones([2, 2, 2, 2], cluster)
        y = A.apply(x)
        expected = torch.cat([diag_block(i).diag for i in range(4)])
        assert torch.equal(gathered(y), expected)

    def test_domain_partition_matches_diagonal_owners(self, cluster):
        A = block_diagonal(diag_block, [2, 2, 2, 2], cluster)
        P = A.domain_partition()
        for j in range(4):
            assert P.owner_of(j, 0) == A.owner_of(j, j)
        assert A.range_partition() == P

    def test_rectangular_blocks(self, cluster):
        A = block_diagonal(lambda i: torch.ones(1, 3, dtype=torch.float64), [(1, 3)] * 3, cluster)
        assert A.shape == (3, 9)
        y = A @ A.domain_array(2.0)
        assert torch.equal(gathered(y), torch.full((3,), 6.0, dtype=torch.float64))

    def test_adjoint(self, cluster):
        A = block_diagonal(lambda i: torch.full((2, 3), float(i), dtype=torch.float64), [(2, 3)] * 4, cluster)
        AH = A.H
        assert AH.shape == (12, 8)
        assert torch.equal(dense_of(AH), dense_of(A).t())


class TestGeneralGrid:

    @pytest.mark.parametrize("grid_shape,distribution", [
        ((4, 4), (2, 2)),
        ((4, 4), None),
        ((3, 5), (1, 4)),
        ((5, 2), (3, 1)),
    ])
    def test_apply_matches_dense(self, cluster, grid_shape, distribution):
        A = random_operator(grid_shape, (3, 2), cluster, seed=11, distribution=distribution)
        dense = reference_dense(grid_shape, (3, 2), 11)
        assert torch.allclose(dense_of(A), dense)
        x = A.random_domain_array(seed=3)
        y = A @ x
        assert y.sizes == A.range_sizes
        assert torch.allclose(gathered(y), dense @ gathered(x))

    def test_input_with_any_ownership(self, cluster):
        A = random_operator((4, 4), (2, 2), cluster, seed=5, distribution=(2, 2))
        t = torch.arange(8, dtype=torch.float64)
        x = DistributedArray.from_tensor(t, A.domain_sizes, cluster, workers=["worker-3"])
        assert torch.allclose(gathered(A(x)), reference_dense((4, 4), (2, 2), 5) @ t)

    def test_adjoint_matches_dense(self, cluster):
        A = random_operator((4, 2), (3, 2), cluster, seed=2, distribution=(2, 2))
        AH = A.adjoint()
        assert AH.grid_shape == (2, 4)
        assert AH.owner_of(1, 3) == A.owner_of(3, 1)
        assert torch.allclose(dense_of(AH), reference_dense((4, 2), (3, 2), 2).t())
        r = A.range_array(1.0)
        assert torch.allclose(gathered(AH @ r), reference_dense((4, 2), (3, 2), 2).t() @ torch.ones(12, dtype=torch.float64))

    def test_adjoint_unsupported(self, cluster):
        A = build_distributed_operator((2, 2), forward_only, cluster)
        with pytest.raises(UnsupportedOperationError):
            A.adjoint()

    def test_inconsistent_block_sizes(self, cluster):
        with pytest.raises(InconsistentBlockSizeError):
            build_distributed_operator((2, 2), uneven_blocks, cluster)

    def test_misaligned_input(self, cluster):
        A = block_diagonal(diag_block, [2, 2], cluster)
        with pytest.raises(ShapeMismatchError):
            A.apply(DistributedArray.ones([4], cluster))

    def test_set_block_changes_apply(self, cluster):
        A = block_diagonal(diag_block, [2, 2], cluster)
        A.set_block(1, 1, torch.eye(2, dtype=torch.float64))
        assert isinstance(A.get_block(1, 1), MatrixOperator)
        y = A @ A.domain_array(1.0)
        assert torch.equal(gathered(y), torch.tensor([1.0, -1.0, 1.0, 1.0], dtype=torch.float64))
        with pytest.raises(ShapeMismatchError):
            A.set_block(0, 0, torch.eye(3, dtype=torch.float64))


def test_to_scipy(cluster):
    pytest.importorskip("scipy")
    import numpy as np

    A = random_operator((2, 2), (2, 2), cluster, seed=4)
    op = A.to_scipy()
    v = np.arange(4, dtype=np.float64)
    assert np.allclose(op.matvec(v), reference_dense((2, 2), (2, 2), 4).numpy() @ v)


class TestDataPath:

    def test_apply_moves_no_blocks_through_caller(self):
        with RecordingCluster(4) as c:
            A = random_operator((4, 4), (3, 2), c, seed=4, distribution=(2, 2))
            x = DistributedArray.from_tensor(torch.arange(8, dtype=torch.float64), A.domain_sizes, c,
                                             workers=["worker-3"])
            c.calls.clear()
            y = A @ x
            names = [name for name, _ in c.calls]
            assert "_get_block" not in names
            assert "_partial_cell" in names
            # partial sums stay on the workers, the caller only sees row indices
            for name, deferred in c.calls:
                if name == "_partial_cell":
                    assert all(isinstance(i, int) for i in deferred.resolve())
            assert torch.allclose(gathered(y), reference_dense((4, 4), (3, 2), 4) @ torch.arange(8, dtype=torch.float64))

    def test_partial_sums_are_collected(self):
        with RecordingCluster(4) as c:
            A = random_operator((4, 4), (2, 2), c, seed=6, distribution=(2, 2))
            x = A.domain_array(1.0)
            y = A @ x
            keys = set()
            for w in c.workers:
                keys.update(c.submit(w, store_keys).resolve())
            assert keys == {A.container.key, x.container.key, y.container.key}

    def test_array_arithmetic_fetches_on_workers(self):
        t = torch.arange(4, dtype=torch.float64)
        with RecordingCluster(2) as c:
            a = DistributedArray.from_tensor(t, [2, 2], c)
            b = DistributedArray.from_tensor(t, [2, 2], c, workers=["worker-1"])
            c.calls.clear()
            s = a + b
            d = a.dot(b)
            assert "_get_block" not in [name for name, _ in c.calls]
            assert torch.equal(gathered(s), 2 * t)
            assert torch.allclose(d, torch.tensor(14.0, dtype=torch.float64))
