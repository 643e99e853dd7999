"""
Tests for DistributedArray.

Tests cover:
- Factories building segments on their owners
- Segment access and gathering to the caller
- Arithmetic computed on the owners
"""

import pytest
import torch

from torch_blockop import (
    ConfigurationError,
    DistributedArray,
    DistributedBlockContainer,
    ShapeMismatchError,
    compute_partition,
)


def segments_of(x: DistributedArray):
    with pytest.warns(UserWarning):
        return x.segments()


def gathered(x: DistributedArray):
    with pytest.warns(UserWarning):
        return x.to_local_process()


class TestFactories:

    def test_set_block_then_to_local_process(self, cluster):
        """4x1 grid, one segment per worker."""
        x = DistributedArray.zeros([3, 3, 3, 3], cluster)
        assert [x.owner_of(i) for i in range(4)] == ["worker-0", "worker-1", "worker-2", "worker-3"]
        values = [torch.arange(3, dtype=torch.float64) + 10 * i for i in range(4)]
        for i, v in enumerate(values):
            x.set_block(i, v)
        out = gathered(x)
        for i, v in enumerate(values):
            assert torch.equal(out[3 * i:3 * i + 3], v)

    def test_full_and_ones(self, cluster):
        x = DistributedArray.full([2, 1, 3], 2.5, cluster)
        assert x.sizes == [2, 1, 3]
        assert x.size == 6
        assert x.dtype == torch.float64
        assert torch.equal(gathered(x), torch.full((6,), 2.5, dtype=torch.float64))
        assert torch.equal(gathered(DistributedArray.ones([4], cluster)), torch.ones(4, dtype=torch.float64))

    def test_fill_random_does_not_depend_on_partition(self, cluster):
        a = DistributedArray.fill_random([4, 4, 4], cluster, seed=7)
        b = DistributedArray.fill_random([4, 4, 4], cluster, seed=7, workers=["worker-3"])
        assert torch.equal(gathered(a), gathered(b))
        u = gathered(DistributedArray.fill_random([100], cluster, seed=1, distribution="uniform"))
        assert bool(((u >= 0) & (u < 1)).all())

    def test_fill_random_unknown_distribution(self, cluster):
        with pytest.raises(ValueError):
            DistributedArray.fill_random([2], cluster, distribution="cauchy")

    def test_from_tensor(self, cluster):
        t = torch.arange(7, dtype=torch.float64)
        x = DistributedArray.from_tensor(t, [2, 2, 3], cluster)
        assert torch.equal(x.get_block(2), torch.tensor([4.0, 5.0, 6.0], dtype=torch.float64))
        t.zero_()
        assert torch.equal(x[0], torch.tensor([0.0, 1.0], dtype=torch.float64))

    def test_from_tensor_size_mismatch(self, cluster):
        with pytest.raises(ShapeMismatchError):
            DistributedArray.from_tensor(torch.ones(5), [2, 2], cluster)

    def test_explicit_partition(self, cluster):
        P = compute_partition((4, 1), (2, 1), ["worker-3", "worker-2"])
        x = DistributedArray.ones([1, 1, 1, 1], cluster, partition=P)
        assert x.owner_of(0) == "worker-3"
        assert x.local_ranges("worker-2") == [range(2, 4)]
        with pytest.raises(ShapeMismatchError):
            DistributedArray.ones([1, 1], cluster, partition=P)

    def test_requires_single_column(self, cluster):
        C = DistributedBlockContainer.build_blockwise((2, 2), lambda i, j: torch.ones(1), cluster)
        with pytest.raises(ConfigurationError):
            DistributedArray(C)


class TestArithmetic:

    def test_add_sub_scale(self, cluster):
        a = DistributedArray.from_tensor(torch.arange(6, dtype=torch.float64), [3, 3], cluster)
        b = DistributedArray.ones([3, 3], cluster, workers=["worker-3", "worker-2"])
        expected = torch.arange(6, dtype=torch.float64)
        assert torch.equal(gathered(a + b), expected + 1)
        assert torch.equal(gathered(a - b), expected - 1)
        assert torch.equal(gathered(2 * a), 2 * expected)
        assert torch.equal(gathered(-a), -expected)
        assert torch.equal(gathered(a.axpy(3.0, b)), expected + 3)

    def test_result_lives_with_left_operand(self, cluster):
        a = DistributedArray.ones([2, 2], cluster)
        b = DistributedArray.ones([2, 2], cluster, workers=["worker-3"])
        assert (a + b).partition == a.partition

    def test_misaligned(self, cluster):
        a = DistributedArray.ones([2, 2], cluster)
        b = DistributedArray.ones([1, 3], cluster)
        with pytest.raises(ShapeMismatchError):
            a + b
        with pytest.raises(ShapeMismatchError):
            a.dot(b)

    def test_dot_and_norm(self, cluster):
        t = torch.arange(1, 9, dtype=torch.float64)
        a = DistributedArray.from_tensor(t, [2, 2, 2, 2], cluster)
        b = DistributedArray.ones([2, 2, 2, 2], cluster, workers=["worker-1", "worker-0"])
        assert torch.allclose(a.dot(b), t.sum())
        assert torch.allclose(a.norm(), torch.linalg.norm(t))

    def test_copy_is_independent(self, cluster):
        a = DistributedArray.ones([2, 2], cluster)
        c = a.copy()
        a.set_block(0, torch.zeros(2, dtype=torch.float64))
        assert torch.equal(c.get_block(0), torch.ones(2, dtype=torch.float64))

    def test_segments(self, cluster):
        a = DistributedArray.from_tensor(torch.arange(5, dtype=torch.float64), [2, 3], cluster)
        segs = segments_of(a)
        assert [s.tolist() for s in segs] == [[0.0, 1.0], [2.0, 3.0, 4.0]]
