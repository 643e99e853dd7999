"""
Partitioning of a block grid across workers.

A block grid of shape (rows, cols) is cut into contiguous chunks along each
dimension. Every cell of the resulting chunk grid is owned by exactly one
worker, which holds all blocks of the cell in its local memory.

Example
-------
>>> from torch_blockop import compute_partition
>>>
>>> # 4x4 block grid, 2 chunks along each dimension, 4 workers
>>> P = compute_partition((4, 4), (2, 2), ["w0", "w1", "w2", "w3"])
>>> P.owner_of(3, 0)
'w2'
>>> P.local_ranges("w2")
[(range(2, 4), range(0, 2))]
>>>
>>> # Tall-and-skinny: one block per row, workers reused cyclically
>>> P = compute_partition((4, 1), (4, 1), ["w0", "w1"])
>>> [P.owner_of(i, 0) for i in range(4)]
['w0', 'w1', 'w0', 'w1']
"""

from dataclasses import dataclass
from typing import Hashable, Iterator, List, Literal, Sequence, Tuple

from .check import ConfigurationError, check_block_index, check_grid_shape


@dataclass(frozen=True)
class Cell:
    """One cell of the chunk grid and the worker owning it"""
    index: Tuple[int, int]  # (row chunk, col chunk)
    owner: Hashable
    rows: range             # global block rows of the cell
    cols: range             # global block columns of the cell

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.rows), len(self.cols)

    def __contains__(self, ij) -> bool:
        i, j = ij
        return i in self.rows and j in self.cols


def chunk_ranges(n: int, num_chunks: int) -> List[range]:
    """Split range(n) into contiguous chunks of ceil(n / num_chunks) elements."""
    chunk = (n + num_chunks - 1) // num_chunks
    return [range(start, min(start + chunk, n)) for start in range(0, n, chunk)]


def default_distribution(grid_shape: Sequence[int], num_workers: int) -> Tuple[int, int]:
    """Tall-and-skinny distribution: block rows spread over the workers."""
    rows, _ = check_grid_shape(grid_shape)
    return (max(1, min(rows, num_workers)), 1)


class PartitionMap:
    """
    Assignment of block-grid index ranges to workers.

    Instances are immutable. The cells always tile the full grid with no
    overlap; ``validate()`` re-checks this.

    Attributes
    ----------
    grid_shape : Tuple[int, int]
        Number of blocks along rows and columns
    chunk_shape : Tuple[int, int]
        Number of cells along rows and columns
    cells : Tuple[Cell, ...]
        Cells in row-major order of their chunk index
    """

    def __init__(
        self,
        grid_shape: Tuple[int, int],
        row_chunks: Sequence[range],
        col_chunks: Sequence[range],
        owners: Sequence[Sequence[Hashable]],
    ):
        self.grid_shape = check_grid_shape(grid_shape)
        self.row_chunks = tuple(row_chunks)
        self.col_chunks = tuple(col_chunks)
        self.chunk_shape = (len(self.row_chunks), len(self.col_chunks))
        self.cells = tuple(
            Cell((r, c), owners[r][c], rows, cols)
            for r, rows in enumerate(self.row_chunks)
            for c, cols in enumerate(self.col_chunks)
        )
        # block index -> chunk index, for O(1) lookups
        self._row_chunk_of = [0] * self.grid_shape[0]
        for r, rows in enumerate(self.row_chunks):
            for i in rows:
                self._row_chunk_of[i] = r
        self._col_chunk_of = [0] * self.grid_shape[1]
        for c, cols in enumerate(self.col_chunks):
            for j in cols:
                self._col_chunk_of[j] = c

    # =========================================================================
    # Lookups
    # =========================================================================

    def cell_at(self, r: int, c: int) -> Cell:
        """Cell at chunk position (r, c)."""
        return self.cells[r * self.chunk_shape[1] + c]

    def cell_of(self, i: int, j: int) -> Cell:
        """Cell holding global block (i, j)."""
        check_block_index(i, j, self.grid_shape)
        return self.cell_at(self._row_chunk_of[i], self._col_chunk_of[j])

    def owner_of(self, i: int, j: int) -> Hashable:
        """Worker owning global block (i, j)."""
        return self.cell_of(i, j).owner

    def cells_of(self, worker_id: Hashable) -> List[Cell]:
        return [cell for cell in self.cells if cell.owner == worker_id]

    def local_ranges(self, worker_id: Hashable) -> List[Tuple[range, range]]:
        """
        Block ranges owned by a worker.

        Returns one (rows, cols) pair per owned cell; a single pair unless
        workers were reused cyclically, and an empty list for a worker that
        owns nothing.
        """
        return [(cell.rows, cell.cols) for cell in self.cells_of(worker_id)]

    def row_chunk_of(self, i: int) -> int:
        return self._row_chunk_of[i]

    def col_chunk_of(self, j: int) -> int:
        return self._col_chunk_of[j]

    @property
    def workers(self) -> List[Hashable]:
        """Distinct owners in cell order."""
        seen = []
        for cell in self.cells:
            if cell.owner not in seen:
                seen.append(cell.owner)
        return seen

    # =========================================================================
    # Derived maps
    # =========================================================================

    def transpose(self) -> "PartitionMap":
        """Partition of the transposed grid; every cell keeps its owner."""
        owners = [
            [self.cell_at(r, c).owner for r in range(self.chunk_shape[0])]
            for c in range(self.chunk_shape[1])
        ]
        return PartitionMap(
            (self.grid_shape[1], self.grid_shape[0]),
            self.col_chunks, self.row_chunks, owners
        )

    def row_partition(self, owners: Sequence[Hashable] = None) -> "PartitionMap":
        """
        (rows, 1) partition with the same row chunks.

        By default row chunk ``r`` goes to the owner of cell (r, 0).
        """
        if owners is None:
            owners = [self.cell_at(r, 0).owner for r in range(self.chunk_shape[0])]
        return PartitionMap(
            (self.grid_shape[0], 1), self.row_chunks, [range(0, 1)],
            [[o] for o in owners]
        )

    def col_partition(self, owners: Sequence[Hashable] = None) -> "PartitionMap":
        """(cols, 1) partition with the same column chunks."""
        return self.transpose().row_partition(owners)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> None:
        """Check that the cells tile the grid exactly once."""
        rows, cols = self.grid_shape
        hits = [[0] * cols for _ in range(rows)]
        for cell in self.cells:
            for i in cell.rows:
                for j in cell.cols:
                    if not (0 <= i < rows and 0 <= j < cols):
                        raise ConfigurationError(f"cell {cell.index} covers ({i}, {j}) outside {self.grid_shape}")
                    hits[i][j] += 1
        for i in range(rows):
            for j in range(cols):
                if hits[i][j] != 1:
                    raise ConfigurationError(f"block ({i}, {j}) is covered {hits[i][j]} times")

    def __iter__(self) -> Iterator[Cell]:
        return iter(self.cells)

    def __len__(self) -> int:
        return len(self.cells)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PartitionMap):
            return NotImplemented
        return self.grid_shape == other.grid_shape and self.cells == other.cells

    def __hash__(self) -> int:
        return hash((self.grid_shape, self.cells))

    def __repr__(self) -> str:
        return (f"PartitionMap(grid_shape={self.grid_shape}, chunk_shape={self.chunk_shape}, "
                f"workers={len(self.workers)})")


def compute_partition(
    grid_shape: Sequence[int],
    distribution: Sequence[int],
    worker_ids: Sequence[Hashable],
    order: Literal["C", "F"] = "C",
) -> PartitionMap:
    """
    Partition a block grid across workers.

    Parameters
    ----------
    grid_shape : Sequence[int]
        (rows, cols) number of blocks
    distribution : Sequence[int]
        Requested number of chunks along each dimension. Chunks hold
        ceil(grid_shape[d] / distribution[d]) blocks, so fewer chunks than
        requested may result.
    worker_ids : Sequence[Hashable]
        Workers to assign cells to, in assignment order
    order : str
        'C': cells are handed out row-major, 'F': column-major

    Returns
    -------
    PartitionMap
        The partition. A single-column distribution (tall-and-skinny) reuses
        workers cyclically when there are fewer workers than cells; any other
        distribution requires one worker per cell.
    """
    grid_shape = check_grid_shape(grid_shape)
    distribution = tuple(distribution)
    if len(distribution) != len(grid_shape):
        raise ConfigurationError(
            f"distribution {distribution} has {len(distribution)} entries, "
            f"expected {len(grid_shape)}"
        )
    for d in distribution:
        if not isinstance(d, int) or isinstance(d, bool) or d < 1:
            raise ConfigurationError(f"distribution entries must be positive integers, got {distribution}")
    if order not in ("C", "F"):
        raise ConfigurationError(f"Unknown order: {order}")

    worker_ids = list(worker_ids)
    if len(set(worker_ids)) != len(worker_ids):
        raise ConfigurationError(f"duplicate worker ids in {worker_ids}")
    if not worker_ids:
        raise ConfigurationError("at least one worker is required")

    row_chunks = chunk_ranges(grid_shape[0], distribution[0])
    col_chunks = chunk_ranges(grid_shape[1], distribution[1])
    num_cells = len(row_chunks) * len(col_chunks)

    tall_and_skinny = distribution[1] == 1
    if num_cells > len(worker_ids) and not tall_and_skinny:
        raise ConfigurationError(
            f"{num_cells} cells need {num_cells} workers, only {len(worker_ids)} available"
        )

    owners = [[None] * len(col_chunks) for _ in row_chunks]
    for k in range(num_cells):
        if order == "C":
            r, c = divmod(k, len(col_chunks))
        else:
            c, r = divmod(k, len(row_chunks))
        owners[r][c] = worker_ids[k % len(worker_ids)]

    return PartitionMap(grid_shape, row_chunks, col_chunks, owners)
