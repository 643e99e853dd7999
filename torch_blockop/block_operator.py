"""
Distributed block operators.

A BlockOperator is a grid of linear operators held in a
DistributedBlockContainer, acting as one linear operator on
DistributedArrays. Block rows are computed where their blocks live:

    y_i = sum_j A_ij @ x_j

Each cell of the partition evaluates its share of the sum on its own
worker, reading input segments it owns straight from its store and fetching
the others from their owners. Partial sums of a block row that spans several
cells stay where they were computed until the row's output cell collects
them; the caller only routes references.

Example
-------
>>> import torch
>>> from torch_blockop import LocalCluster, block_diagonal
>>> from torch_blockop.operators import DiagonalOperator
>>>
>>> def diag_block(i):
...     return DiagonalOperator(torch.full((2,), float(i + 1), dtype=torch.float64))
>>>
>>> cluster = LocalCluster(4)
>>> A = block_diagonal(diag_block, [2, 2, 2, 2], cluster)
>>> x = A.domain_array(1.0)
>>> (A @ x).to_local_process()
tensor([1., 1., 2., 2., 3., 3., 4., 4.], dtype=torch.float64)
"""

import uuid
import warnings
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

import torch

from .check import (
    InconsistentBlockSizeError,
    ShapeMismatchError,
    UnsupportedOperationError,
)
from .container import (
    DistributedBlockContainer,
    _pop_cell,
    _release,
    fetch_inputs,
    store_cell,
)
from .darray import DistributedArray
from .operators import LinearOperator, ZeroOperator, aslinearoperator
from .partition import Cell, PartitionMap
from .workers import Cluster, local_store, peer_submit


# =============================================================================
# Worker-side functions
# =============================================================================

class AsOperators:
    """Wrap a per-cell constructor so every block is a LinearOperator."""

    def __init__(self, constructor: Callable[[range, range], Any]):
        self.constructor = constructor

    def __call__(self, rows, cols):
        return [[aslinearoperator(block) for block in row] for row in self.constructor(rows, cols)]


class BlockDiagonal:
    """
    Per-cell constructor of a block-diagonal grid.

    ``block_fn(i)`` builds diagonal block i; off-diagonal blocks are
    ZeroOperators sized from ``shapes``.
    """

    def __init__(self, block_fn: Callable[[int], Any], shapes: Sequence[Tuple[int, int]], dtype: torch.dtype):
        self.block_fn = block_fn
        self.shapes = list(shapes)
        self.dtype = dtype

    def __call__(self, rows, cols):
        local = []
        for i in rows:
            row = []
            for j in cols:
                if i == j:
                    row.append(aslinearoperator(self.block_fn(i)))
                else:
                    row.append(ZeroOperator(self.shapes[i][0], self.shapes[j][1], self.dtype))
            local.append(row)
        return local


def _row_sums(op_key, cell_index, rows, pairs, inputs) -> Dict[int, torch.Tensor]:
    local = local_store()[(op_key, cell_index)]
    js = sorted(inputs)
    x = dict(zip(js, fetch_inputs([inputs[j] for j in js])))
    sums: Dict[int, torch.Tensor] = {}
    for i, j, lj in pairs:
        y = local[i - rows.start][lj].matvec(x[j])
        sums[i] = y if i not in sums else sums[i] + y
    return sums


def _partial_cell(op_key, cell_index, rows, pairs, inputs, partial_key):
    """
    Partial sums of a cell that does not hold its block row's output.

    The sums stay on this worker under ``(partial_key, cell_index)`` until
    the output cell collects them; only the row indices are returned.
    """
    sums = _row_sums(op_key, cell_index, rows, pairs, inputs)
    if sums:
        local_store()[(partial_key, cell_index)] = sums
    return sorted(sums)


def _apply_cell(op_key, cell_index, rows, pairs, inputs, range_sizes, dtype, out, partials=()):
    """
    Block-row products of one cell, stored as output cell ``out = (key, cell_index)``.

    ``pairs`` lists the (i, j, lj) blocks that contribute and ``inputs``
    maps j to a reference of x_j. ``partials`` lists the (owner, key,
    cell_index) entries left by ``_partial_cell`` for the same block row;
    they are taken from their owners and added in. Returns the BlockInfo
    grid of the output cell.
    """
    fetches = [peer_submit(owner, _pop_cell, key, index) for owner, key, index in partials]
    sums = _row_sums(op_key, cell_index, rows, pairs, inputs)
    for fetch in fetches:
        for i, y in fetch.resolve().items():
            sums[i] = y if i not in sums else sums[i] + y
    segments = []
    for i in rows:
        y = sums.get(i)
        if y is None:
            y = torch.zeros(range_sizes[i], dtype=dtype)
        segments.append([y])
    return store_cell(out[0], out[1], segments)


def _adjoint_cell(src_key, dst_key, cell_index, dst_cell_index):
    local = local_store()[(src_key, cell_index)]
    transposed = [[local[li][lj].adjoint() for li in range(len(local))] for lj in range(len(local[0]))]
    return store_cell(dst_key, dst_cell_index, transposed)


# =============================================================================
# BlockOperator
# =============================================================================

class BlockOperator:
    """
    Linear operator made of a distributed grid of linear-operator blocks.

    Parameters
    ----------
    container : DistributedBlockContainer
        Grid of LinearOperator blocks
    is_diagonal : bool
        Caller's assertion that every off-diagonal block is zero. ``apply``
        then only evaluates diagonal blocks and skips all cross-worker
        traffic. The assertion is not checked; a wrong one gives wrong
        results.

    Attributes
    ----------
    range_sizes : List[int]
        Output length of each block row
    domain_sizes : List[int]
        Input length of each block column
    """

    def __init__(self, container: DistributedBlockContainer, is_diagonal: bool = False):
        self.container = container
        self.is_diagonal = is_diagonal
        self.range_sizes, self.domain_sizes = self._block_sizes()

    def _block_sizes(self) -> Tuple[List[int], List[int]]:
        """Row and column sizes; every block of a row (column) must agree."""
        shapes = self.container.block_shapes()
        rows, cols = self.container.grid_shape
        range_sizes = []
        for i in range(rows):
            sizes = {shapes[i][j][0] for j in range(cols)}
            if len(sizes) != 1:
                raise InconsistentBlockSizeError(f"blocks of block row {i} have range sizes {sorted(sizes)}")
            range_sizes.append(sizes.pop())
        domain_sizes = []
        for j in range(cols):
            sizes = {shapes[i][j][1] for i in range(rows)}
            if len(sizes) != 1:
                raise InconsistentBlockSizeError(f"blocks of block column {j} have domain sizes {sorted(sizes)}")
            domain_sizes.append(sizes.pop())
        return range_sizes, domain_sizes

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def cluster(self) -> Cluster:
        return self.container.cluster

    @property
    def partition(self) -> PartitionMap:
        return self.container.partition

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.container.grid_shape

    @property
    def range_size(self) -> int:
        return sum(self.range_sizes)

    @property
    def domain_size(self) -> int:
        return sum(self.domain_sizes)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.range_size, self.domain_size

    @property
    def dtype(self) -> Optional[torch.dtype]:
        return self.container.block_info(0, 0).dtype

    # =========================================================================
    # Block access
    # =========================================================================

    def get_block(self, i: int, j: int) -> LinearOperator:
        return self.container.get_block(i, j)

    def get_block_async(self, i: int, j: int):
        return self.container.get_block_async(i, j)

    def set_block(self, i: int, j: int, value: Any) -> None:
        """Replace block (i, j); tensors are wrapped as MatrixOperators."""
        self.container.set_block(i, j, aslinearoperator(value))

    def owner_of(self, i: int, j: int) -> Hashable:
        return self.container.owner_of(i, j)

    def local_ranges(self, worker_id: Hashable) -> List[Tuple[range, range]]:
        return self.container.local_ranges(worker_id)

    # =========================================================================
    # Domain and range partitions
    # =========================================================================

    def _output_cell(self, r: int) -> Cell:
        """Cell of row chunk r that assembles the output segments."""
        P = self.partition
        start = P.row_chunks[r].start
        if self.is_diagonal and start < self.grid_shape[1]:
            return P.cell_of(start, start)
        return P.cell_at(r, 0)

    def range_partition(self) -> PartitionMap:
        owners = [self._output_cell(r).owner for r in range(self.partition.chunk_shape[0])]
        return self.partition.row_partition(owners)

    def domain_partition(self) -> PartitionMap:
        """
        Partition of input arrays.

        Diagonal square operators use the row chunks, so that segment j sits
        with block (j, j); otherwise column chunk c goes to cell (0, c).
        """
        P = self.partition
        if self.is_diagonal and self.grid_shape[0] == self.grid_shape[1]:
            return self.range_partition()
        return P.col_partition()

    def domain_array(self, value: float = 0.0, dtype: Optional[torch.dtype] = None) -> DistributedArray:
        return DistributedArray.full(self.domain_sizes, value, self.cluster,
                                     partition=self.domain_partition(), dtype=dtype or self.dtype)

    def range_array(self, value: float = 0.0, dtype: Optional[torch.dtype] = None) -> DistributedArray:
        return DistributedArray.full(self.range_sizes, value, self.cluster,
                                     partition=self.range_partition(), dtype=dtype or self.dtype)

    def random_domain_array(self, seed: Optional[int] = None, dtype: Optional[torch.dtype] = None) -> DistributedArray:
        return DistributedArray.fill_random(self.domain_sizes, self.cluster,
                                            partition=self.domain_partition(), seed=seed,
                                            dtype=dtype or self.dtype)

    # =========================================================================
    # Application
    # =========================================================================

    def _pairs(self, cell: Cell) -> List[Tuple[int, int, int]]:
        if self.is_diagonal:
            return [(i, i, i - cell.cols.start) for i in cell.rows if i in cell.cols]
        return [(i, j, lj) for i in cell.rows for lj, j in enumerate(cell.cols)]

    def apply(self, x: DistributedArray) -> DistributedArray:
        """
        y = A @ x, distributed like the range of A.

        Parameters
        ----------
        x : DistributedArray
            Segments matching ``domain_sizes``; any ownership works, segments
            held by the computing worker are not transferred.

        Returns
        -------
        DistributedArray
            Segments matching ``range_sizes`` on ``range_partition()``
        """
        if not isinstance(x, DistributedArray):
            raise TypeError(f"expected a DistributedArray, got {type(x).__name__}")
        if not x.is_aligned_with(self.domain_sizes):
            raise ShapeMismatchError("x", tuple(x.sizes), tuple(self.domain_sizes))

        P = self.partition
        dtype = x.dtype
        out_partition = self.range_partition()
        out_cells = {r: self._output_cell(r) for r in range(P.chunk_shape[0])}

        plan = []
        for cell in P:
            pairs = self._pairs(cell)
            is_out = out_cells[cell.index[0]] == cell
            if not pairs and not is_out:
                continue
            inputs = x.inputs_for(sorted({j for _, j, _ in pairs}), cell.owner)
            plan.append((cell, pairs, inputs, is_out))

        # Cells off the output cell leave partial sums on their own worker;
        # the caller only waits for the row indices they hold.
        partial_key = uuid.uuid4().hex
        partial_calls: Dict[int, list] = {r: [] for r in out_cells}
        out_plan = {cell.index[0]: (cell, pairs, inputs) for cell, pairs, inputs, is_out in plan if is_out}

        def make_call(key, out_cell):
            r = out_cell.index[0]
            cell, pairs, inputs = out_plan[r]
            partials = [(src.owner, partial_key, src.index)
                        for src, deferred in partial_calls[r] if deferred.resolve()]
            return _apply_cell, (
                self.container.key, cell.index, cell.rows, pairs, inputs,
                self.range_sizes, dtype, (key, out_cell.index), partials,
            )

        try:
            for cell, pairs, inputs, is_out in plan:
                if is_out:
                    continue
                partial_calls[cell.index[0]].append((cell, self.cluster.submit(
                    cell.owner, _partial_cell, self.container.key, cell.index, cell.rows,
                    pairs, inputs, partial_key,
                )))
            container = DistributedBlockContainer.materialize(out_partition, self.cluster, make_call)
        except BaseException:
            _release(self.cluster, P.workers, partial_key)
            raise
        return DistributedArray(container)

    def __matmul__(self, x: DistributedArray) -> DistributedArray:
        return self.apply(x)

    def __call__(self, x: DistributedArray) -> DistributedArray:
        return self.apply(x)

    # =========================================================================
    # Adjoint
    # =========================================================================

    def adjoint(self) -> "BlockOperator":
        """
        Adjoint operator.

        The partition is transposed (cell (r, c) becomes (c, r) on the same
        worker) and each block is adjointed on its owner. Raises
        UnsupportedOperationError, before anything is dispatched, if some
        block has no adjoint.
        """
        rows, cols = self.grid_shape
        for i in range(rows):
            for j in range(cols):
                if not self.container.block_info(i, j).supports_adjoint:
                    raise UnsupportedOperationError(f"block ({i}, {j}) has no adjoint")
        src_key = self.container.key
        container = DistributedBlockContainer.materialize(
            self.partition.transpose(), self.cluster,
            lambda key, cell: (_adjoint_cell, (src_key, key, (cell.index[1], cell.index[0]), cell.index)),
        )
        return BlockOperator(container, is_diagonal=self.is_diagonal)

    @property
    def H(self) -> "BlockOperator":
        return self.adjoint()

    # =========================================================================
    # Methods that require data gather (with warnings)
    # =========================================================================

    def to_dense(self) -> torch.Tensor:
        """
        Assemble the full dense matrix locally.

        WARNING: This gathers all blocks to a single process.
        Only use for small operators or debugging.
        """
        warnings.warn("to_dense() gathers all data to a single process. "
                      "Only use for debugging or small operators.")
        grid = self.container._gather()
        return torch.cat([torch.cat([block.to_dense() for block in row], dim=1) for row in grid], dim=0)

    def to_scipy(self):
        """
        scipy.sparse.linalg.LinearOperator view of this operator.

        Every matvec scatters the input, applies the operator on the workers
        and gathers the result.
        """
        try:
            from scipy.sparse.linalg import LinearOperator as ScipyLinearOperator
        except ImportError:
            raise ImportError("SciPy is required for to_scipy()")
        import numpy as np

        def matvec(v):
            x = DistributedArray.from_tensor(
                torch.as_tensor(np.asarray(v).reshape(-1), dtype=self.dtype),
                self.domain_sizes, self.cluster, partition=self.domain_partition(),
            )
            y = self.apply(x)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                return y.to_local_process().numpy()

        return ScipyLinearOperator(self.shape, matvec=matvec, dtype=np.float64)

    def free(self) -> None:
        self.container.free()

    def __repr__(self) -> str:
        return (f"BlockOperator(shape={self.shape}, grid_shape={self.grid_shape}, "
                f"is_diagonal={self.is_diagonal}, workers={len(self.partition.workers)})")


# =============================================================================
# Construction
# =============================================================================

def build_distributed_operator(
    grid_shape: Sequence[int],
    block_constructor: Callable[[range, range], Any],
    cluster: Cluster,
    workers: Optional[Iterable[Hashable]] = None,
    distribution: Optional[Sequence[int]] = None,
    is_diagonal: bool = False,
    order: str = "C",
    verbose: bool = False,
) -> BlockOperator:
    """
    Build a BlockOperator with every cell constructed on its owner.

    Parameters
    ----------
    grid_shape : Sequence[int]
        (rows, cols) number of blocks
    block_constructor : Callable
        ``block_constructor(rows, cols)`` returns the local
        ``len(rows) x len(cols)`` grid of blocks (LinearOperators, 2-D
        tensors or scipy-style operators). Runs on the owning worker.
    cluster : Cluster
        Cluster providing the workers
    workers : Iterable, optional
        Worker ids to use; all live workers by default
    distribution : Sequence[int], optional
        Chunks per dimension; tall-and-skinny by default
    is_diagonal : bool
        Assert that off-diagonal blocks are zero (see BlockOperator)
    order : str
        'C' or 'F' cell assignment order
    verbose : bool
        Print the partition
    """
    container = DistributedBlockContainer.build(
        grid_shape, AsOperators(block_constructor), cluster,
        workers=workers, distribution=distribution, order=order, verbose=verbose,
    )
    try:
        return BlockOperator(container, is_diagonal=is_diagonal)
    except InconsistentBlockSizeError:
        container.free()
        raise


def block_diagonal(
    block_fn: Callable[[int], Any],
    shapes: Sequence,
    cluster: Cluster,
    workers: Optional[Iterable[Hashable]] = None,
    distribution: Optional[Sequence[int]] = None,
    dtype: torch.dtype = torch.float64,
    verbose: bool = False,
) -> BlockOperator:
    """
    Block-diagonal operator with ``block_fn(i)`` as diagonal block i.

    Parameters
    ----------
    block_fn : Callable
        Builds diagonal block i on its owner
    shapes : Sequence
        Shape of each diagonal block, as (m, n) pairs or ints for square
        blocks; sizes the ZeroOperator placeholders
    cluster : Cluster
        Cluster providing the workers
    """
    shapes = [(s, s) if isinstance(s, int) else (int(s[0]), int(s[1])) for s in shapes]
    n = len(shapes)
    return build_distributed_operator(
        (n, n), BlockDiagonal(block_fn, shapes, dtype), cluster,
        workers=workers, distribution=distribution, is_diagonal=True, verbose=verbose,
    )
