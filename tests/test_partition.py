"""
Tests for block-grid partitioning.

Tests cover:
- Exhaustive, non-overlapping tiling
- Cell assignment order and cyclic reuse of workers
- Derived (transposed, row and column) partitions
- Configuration errors
"""

import pytest

from torch_blockop import (
    ConfigurationError,
    OutOfRangeError,
    PartitionMap,
    compute_partition,
    default_distribution,
)
from torch_blockop.partition import chunk_ranges


WORKERS = ["w0", "w1", "w2", "w3"]


def coverage(P: PartitionMap):
    """Number of cells covering each block"""
    rows, cols = P.grid_shape
    hits = [[0] * cols for _ in range(rows)]
    for cell in P:
        for i in cell.rows:
            for j in cell.cols:
                hits[i][j] += 1
    return hits


class TestChunking:

    def test_even_split(self):
        assert chunk_ranges(8, 4) == [range(0, 2), range(2, 4), range(4, 6), range(6, 8)]

    def test_uneven_split_uses_ceil(self):
        assert chunk_ranges(5, 2) == [range(0, 3), range(3, 5)]

    def test_more_chunks_than_elements(self):
        # ceil(3 / 5) == 1, so only 3 chunks exist
        assert chunk_ranges(3, 5) == [range(0, 1), range(1, 2), range(2, 3)]

    def test_default_distribution_is_tall_and_skinny(self):
        assert default_distribution((8, 3), 4) == (4, 1)
        assert default_distribution((2, 3), 4) == (2, 1)


class TestComputePartition:

    @pytest.mark.parametrize("grid_shape,distribution", [
        ((4, 4), (2, 2)),
        ((5, 3), (2, 2)),
        ((7, 1), (4, 1)),
        ((1, 4), (1, 4)),
        ((3, 3), (1, 1)),
    ])
    def test_tiles_grid_exactly_once(self, grid_shape, distribution):
        P = compute_partition(grid_shape, distribution, WORKERS)
        P.validate()
        assert all(h == 1 for row in coverage(P) for h in row)

    def test_row_major_assignment(self):
        P = compute_partition((4, 4), (2, 2), WORKERS)
        assert P.owner_of(0, 0) == "w0"
        assert P.owner_of(0, 3) == "w1"
        assert P.owner_of(3, 0) == "w2"
        assert P.owner_of(3, 3) == "w3"
        assert P.local_ranges("w2") == [(range(2, 4), range(0, 2))]

    def test_column_major_assignment(self):
        P = compute_partition((4, 4), (2, 2), WORKERS, order="F")
        assert P.owner_of(3, 0) == "w1"
        assert P.owner_of(0, 3) == "w2"

    def test_tall_and_skinny_reuses_workers_cyclically(self):
        P = compute_partition((4, 1), (4, 1), ["a", "b"])
        assert [P.owner_of(i, 0) for i in range(4)] == ["a", "b", "a", "b"]
        assert P.local_ranges("a") == [(range(0, 1), range(0, 1)), (range(2, 3), range(0, 1))]

    def test_too_few_workers_for_2d_distribution(self):
        with pytest.raises(ConfigurationError):
            compute_partition((4, 4), (2, 2), ["a", "b"])

    def test_worker_without_cells_has_no_ranges(self):
        P = compute_partition((2, 1), (2, 1), WORKERS)
        assert P.local_ranges("w3") == []
        assert P.workers == ["w0", "w1"]

    def test_owner_of_is_idempotent(self):
        P = compute_partition((5, 3), (3, 1), WORKERS)
        first = [[P.owner_of(i, j) for j in range(3)] for i in range(5)]
        for _ in range(3):
            assert [[P.owner_of(i, j) for j in range(3)] for i in range(5)] == first

    def test_equal_inputs_give_equal_partitions(self):
        assert compute_partition((4, 4), (2, 2), WORKERS) == compute_partition((4, 4), (2, 2), WORKERS)

    @pytest.mark.parametrize("kwargs", [
        dict(grid_shape=(4, 4, 1), distribution=(2, 2)),
        dict(grid_shape=(4, 4), distribution=(2,)),
        dict(grid_shape=(4, 4), distribution=(0, 1)),
        dict(grid_shape=(0, 4), distribution=(1, 1)),
        dict(grid_shape=(4, 4), distribution=(2.0, 1)),
        dict(grid_shape=(2.7, 1), distribution=(1, 1)),
        dict(grid_shape=(2.0, 1), distribution=(1, 1)),
        dict(grid_shape=(True, 1), distribution=(1, 1)),
    ])
    def test_bad_configuration(self, kwargs):
        with pytest.raises(ConfigurationError):
            compute_partition(worker_ids=WORKERS, **kwargs)

    def test_bad_order(self):
        with pytest.raises(ConfigurationError):
            compute_partition((4, 4), (2, 2), WORKERS, order="K")

    def test_no_or_duplicate_workers(self):
        with pytest.raises(ConfigurationError):
            compute_partition((4, 1), (2, 1), [])
        with pytest.raises(ConfigurationError):
            compute_partition((4, 1), (2, 1), ["a", "a"])

    @pytest.mark.parametrize("ij", [(4, 0), (0, 4), (-1, 0)])
    def test_out_of_range(self, ij):
        P = compute_partition((4, 4), (2, 2), WORKERS)
        with pytest.raises(OutOfRangeError):
            P.owner_of(*ij)


class TestDerivedPartitions:

    def test_transpose_keeps_owners(self):
        P = compute_partition((4, 2), (2, 2), WORKERS)
        T = P.transpose()
        assert T.grid_shape == (2, 4)
        for i in range(4):
            for j in range(2):
                assert T.owner_of(j, i) == P.owner_of(i, j)
        T.validate()

    def test_row_partition_defaults_to_first_column_owner(self):
        P = compute_partition((4, 4), (2, 2), WORKERS)
        R = P.row_partition()
        assert R.grid_shape == (4, 1)
        assert [R.owner_of(i, 0) for i in range(4)] == ["w0", "w0", "w2", "w2"]

    def test_col_partition(self):
        P = compute_partition((4, 4), (2, 2), WORKERS)
        C = P.col_partition()
        assert C.grid_shape == (4, 1)
        assert [C.owner_of(j, 0) for j in range(4)] == ["w0", "w0", "w1", "w1"]
