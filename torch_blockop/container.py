"""
Distributed block container.

A logical grid of blocks (operators or array segments) whose cells live on
the workers that own them. Blocks are built *on* their owner by a
constructor shipped there, so the full grid never exists in one process;
the caller only keeps a PartitionMap and small per-block metadata.

All access from outside a worker goes through ``get_block`` / ``set_block``,
which copy values to and from the single owner of the block.

Example
-------
>>> import torch
>>> from torch_blockop import LocalCluster, DistributedBlockContainer
>>>
>>> def ones_blocks(rows, cols):
...     return [[torch.ones(2, 2) for j in cols] for i in rows]
>>>
>>> cluster = LocalCluster(2)
>>> C = DistributedBlockContainer.build((4, 1), ones_blocks, cluster)
>>> C.owner_of(3, 0)
'worker-1'
>>> C.set_block(3, 0, torch.zeros(2, 2))
>>> C.get_block(3, 0).sum()
tensor(0.)
"""

import copy
import uuid
import warnings
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import torch

from .check import (
    ConfigurationError,
    WorkerLostError,
    check_block_index,
    check_block_shape,
    check_grid_shape,
)
from .partition import Cell, PartitionMap, compute_partition, default_distribution
from .workers import Cluster, Deferred, local_store, peer_submit


# =============================================================================
# Block metadata
# =============================================================================

@dataclass(frozen=True)
class BlockInfo:
    """What the caller knows about a remote block without fetching it"""
    shape: Tuple[int, ...]
    dtype: Optional[torch.dtype]
    supports_adjoint: bool

    @classmethod
    def of(cls, block: Any) -> "BlockInfo":
        shape = getattr(block, "shape", None)
        shape = tuple(int(s) for s in shape) if shape is not None else ()
        if isinstance(block, torch.Tensor):
            supports_adjoint = block.ndim == 2
        else:
            supports_adjoint = bool(getattr(block, "supports_adjoint", False))
        return cls(shape, getattr(block, "dtype", None), supports_adjoint)


class LocalRef(NamedTuple):
    """Address of a block inside a worker's store."""
    key: str
    cell_index: Tuple[int, int]
    li: int
    lj: int


class RemoteRef(NamedTuple):
    """Address of a block in another worker's store, fetched by the worker that needs it."""
    owner: Hashable
    ref: LocalRef


# =============================================================================
# Worker-side functions
# =============================================================================

def lookup(ref: LocalRef) -> Any:
    """Block addressed by ``ref`` in the calling worker's store (no copy)."""
    return local_store()[(ref.key, ref.cell_index)][ref.li][ref.lj]


def fetch_inputs(values: Sequence[Any]) -> List[Any]:
    """
    Values of call inputs on the calling worker.

    LocalRefs are read from the local store, RemoteRefs are copied from
    their owners (all requested before any is awaited), anything else is
    passed through.
    """
    fetches = {
        k: peer_submit(v.owner, _get_block, *v.ref)
        for k, v in enumerate(values) if isinstance(v, RemoteRef)
    }
    out = []
    for k, v in enumerate(values):
        if k in fetches:
            out.append(fetches[k].resolve())
        elif isinstance(v, LocalRef):
            out.append(lookup(v))
        else:
            out.append(v)
    return out


def block_infos(local: Sequence[Sequence[Any]]) -> List[List[BlockInfo]]:
    return [[BlockInfo.of(block) for block in row] for row in local]


def store_cell(key: str, cell_index: Tuple[int, int], local: List[List[Any]]) -> List[List[BlockInfo]]:
    local_store()[(key, cell_index)] = local
    return block_infos(local)


def _as_local_array(local: Any, rows: range, cols: range) -> List[List[Any]]:
    try:
        local = [list(row) for row in local]
    except TypeError:
        raise ConfigurationError(
            f"constructor must return a {len(rows)}x{len(cols)} nested sequence of blocks, "
            f"got {type(local).__name__}"
        ) from None
    if len(local) != len(rows) or any(len(row) != len(cols) for row in local):
        got = (len(local), len(local[0]) if local else 0)
        raise ConfigurationError(
            f"constructor returned a {got[0]}x{got[1]} local array for "
            f"rows {rows} x cols {cols}, expected {len(rows)}x{len(cols)}"
        )
    return local


def _construct_cell(key, cell_index, constructor, rows, cols):
    local = _as_local_array(constructor(rows, cols), rows, cols)
    return store_cell(key, cell_index, local)


def _get_block(key, cell_index, li, lj):
    return copy.deepcopy(local_store()[(key, cell_index)][li][lj])


def _set_block(key, cell_index, li, lj, value):
    local_store()[(key, cell_index)][li][lj] = copy.deepcopy(value)
    return BlockInfo.of(value)


def _map_cell(src_key, dst_key, cell_index, fn):
    local = local_store()[(src_key, cell_index)]
    return store_cell(dst_key, cell_index, [[fn(block) for block in row] for row in local])


def _gather_cell(key, cell_index):
    return copy.deepcopy(local_store()[(key, cell_index)])


def _pop_cell(key, cell_index):
    return local_store().pop((key, cell_index))


def _free(key):
    store = local_store()
    for entry in [k for k in store if k[0] == key]:
        del store[entry]


def _release(cluster: Cluster, workers: Iterable[Hashable], key: str) -> None:
    """Drop a container's cells from its workers, ignoring dead ones."""
    for worker_id in workers:
        if cluster.is_alive(worker_id):
            try:
                cluster.submit(worker_id, _free, key)
            except WorkerLostError:
                pass


class Blockwise:
    """Per-cell constructor built from a per-block function ``block_fn(i, j)``."""

    def __init__(self, block_fn: Callable[[int, int], Any]):
        self.block_fn = block_fn

    def __call__(self, rows: range, cols: range):
        return [[self.block_fn(i, j) for j in cols] for i in rows]


class Prepared:
    """Per-cell constructor returning blocks computed by the caller."""

    def __init__(self, local: List[List[Any]]):
        self.local = local

    def __call__(self, rows: range, cols: range):
        return self.local


# =============================================================================
# Container
# =============================================================================

class DistributedBlockContainer:
    """
    Grid of blocks distributed across the workers of a cluster.

    Each block has exactly one owner and is never replicated. The caller
    holds the PartitionMap and a BlockInfo per block; remote storage is
    released by ``free()`` or when the container is garbage collected.

    Attributes
    ----------
    key : str
        Name of the container in the worker stores
    partition : PartitionMap
        Cell ownership
    cluster : Cluster
        Cluster holding the cells
    """

    def __init__(
        self,
        key: str,
        partition: PartitionMap,
        infos: List[List[BlockInfo]],
        cluster: Cluster,
        verbose: bool = False,
    ):
        self.key = key
        self.partition = partition
        self.cluster = cluster
        self._infos = infos
        self._finalizer = weakref.finalize(self, _release, cluster, partition.workers, key)
        self._finalizer.atexit = False
        if verbose:
            self._print_partition_info()

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def build(
        cls,
        grid_shape: Sequence[int],
        constructor: Callable[[range, range], Any],
        cluster: Cluster,
        workers: Optional[Iterable[Hashable]] = None,
        distribution: Optional[Sequence[int]] = None,
        order: str = "C",
        verbose: bool = False,
    ) -> "DistributedBlockContainer":
        """
        Partition a grid and construct every cell on its owner.

        Parameters
        ----------
        grid_shape : Sequence[int]
            (rows, cols) number of blocks
        constructor : Callable
            ``constructor(rows, cols)`` runs on the owning worker and returns
            the ``len(rows) x len(cols)`` nested sequence of local blocks.
            Must be picklable for process clusters.
        cluster : Cluster
            Cluster providing the workers
        workers : Iterable, optional
            Worker ids to use, in assignment order; all live workers by default
        distribution : Sequence[int], optional
            Chunks per dimension; tall-and-skinny by default
        order : str
            'C' or 'F' cell assignment order
        verbose : bool
            Print one line per cell
        """
        grid_shape = check_grid_shape(grid_shape)
        workers = list(cluster.workers if workers is None else workers)
        if distribution is None:
            distribution = default_distribution(grid_shape, len(workers))
        partition = compute_partition(grid_shape, distribution, workers, order)
        return cls.from_partition(partition, constructor, cluster, verbose=verbose)

    @classmethod
    def build_blockwise(
        cls,
        grid_shape: Sequence[int],
        block_fn: Callable[[int, int], Any],
        cluster: Cluster,
        **kwargs,
    ) -> "DistributedBlockContainer":
        """Like ``build`` with ``block_fn(i, j)`` building one block at a time."""
        return cls.build(grid_shape, Blockwise(block_fn), cluster, **kwargs)

    @classmethod
    def from_partition(
        cls,
        partition: PartitionMap,
        constructor: Callable[[range, range], Any],
        cluster: Cluster,
        verbose: bool = False,
    ) -> "DistributedBlockContainer":
        return cls.materialize(
            partition, cluster,
            lambda key, cell: (_construct_cell, (key, cell.index, constructor, cell.rows, cell.cols)),
            verbose=verbose,
        )

    @classmethod
    def materialize(
        cls,
        partition: PartitionMap,
        cluster: Cluster,
        make_call: Callable[[str, Cell], Tuple[Callable, tuple]],
        verbose: bool = False,
    ) -> "DistributedBlockContainer":
        """
        Create a container by running one call per cell on its owner.

        ``make_call(key, cell)`` returns ``(fn, args)``; ``fn(*args)`` must
        store the cell under ``(key, cell.index)`` and return its BlockInfo
        grid. If any cell fails, the cells already built are released and the
        error is raised.
        """
        key = uuid.uuid4().hex
        calls = []
        try:
            for cell in partition:
                fn, args = make_call(key, cell)
                calls.append((cell, cluster.submit(cell.owner, fn, *args)))
            rows, cols = partition.grid_shape
            infos = [[None] * cols for _ in range(rows)]
            for cell, deferred in calls:
                local = deferred.resolve()
                for li, i in enumerate(cell.rows):
                    for lj, j in enumerate(cell.cols):
                        infos[i][j] = local[li][lj]
        except BaseException:
            _release(cluster, partition.workers, key)
            raise
        return cls(key, partition, infos, cluster, verbose=verbose)

    def _print_partition_info(self):
        """Print partition info for user awareness"""
        n = len(self.partition)
        for k, cell in enumerate(self.partition):
            print(f"[Partition {k}/{n}] "
                  f"Blocks: rows {cell.rows.start}..{cell.rows.stop - 1} x "
                  f"cols {cell.cols.start}..{cell.cols.stop - 1} | "
                  f"Worker: {cell.owner} | "
                  f"Grid: {self.grid_shape[0]}x{self.grid_shape[1]}")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.partition.grid_shape

    @property
    def alive(self) -> bool:
        """False once the remote storage has been released."""
        return self._finalizer.alive

    def block_info(self, i: int, j: int) -> BlockInfo:
        check_block_index(i, j, self.grid_shape)
        return self._infos[i][j]

    def block_shapes(self) -> List[List[Tuple[int, ...]]]:
        return [[info.shape for info in row] for row in self._infos]

    def owner_of(self, i: int, j: int) -> Hashable:
        return self.partition.owner_of(i, j)

    def local_ranges(self, worker_id: Hashable) -> List[Tuple[range, range]]:
        return self.partition.local_ranges(worker_id)

    def ref(self, i: int, j: int) -> LocalRef:
        """Store address of block (i, j), valid on its owner only."""
        cell = self.partition.cell_of(i, j)
        return LocalRef(self.key, cell.index, i - cell.rows.start, j - cell.cols.start)

    # =========================================================================
    # Block access
    # =========================================================================

    def get_block_async(self, i: int, j: int) -> Deferred:
        """Deferred copy of block (i, j); the caller is not blocked."""
        cell = self.partition.cell_of(i, j)
        ref = self.ref(i, j)
        return self.cluster.submit(cell.owner, _get_block, ref.key, ref.cell_index, ref.li, ref.lj)

    def get_block(self, i: int, j: int) -> Any:
        """Copy of block (i, j)."""
        return self.get_block_async(i, j).resolve()

    def set_block(self, i: int, j: int, value: Any) -> None:
        """
        Overwrite block (i, j) on its owner.

        ``value`` must have the block's shape; otherwise ShapeMismatchError
        is raised and the block is left unchanged. Returns once the owner
        has stored the value, so a following ``get_block`` sees it.
        """
        check_block_index(i, j, self.grid_shape)
        check_block_shape(f"block ({i}, {j})", value, self._infos[i][j].shape)
        cell = self.partition.cell_of(i, j)
        ref = self.ref(i, j)
        info = self.cluster.submit(cell.owner, _set_block, ref.key, ref.cell_index, ref.li, ref.lj, value).resolve()
        self._infos[i][j] = info

    def __getitem__(self, ij: Tuple[int, int]) -> Any:
        return self.get_block(*ij)

    def __setitem__(self, ij: Tuple[int, int], value: Any) -> None:
        self.set_block(ij[0], ij[1], value)

    # =========================================================================
    # Whole-container operations
    # =========================================================================

    def map_blocks(self, fn: Callable[[Any], Any], verbose: bool = False) -> "DistributedBlockContainer":
        """New container with ``fn(block)`` computed on each block's owner."""
        return type(self).materialize(
            self.partition, self.cluster,
            lambda key, cell: (_map_cell, (self.key, key, cell.index, fn)),
            verbose=verbose,
        )

    def gather(self) -> List[List[Any]]:
        """
        Copy every block to the caller.

        WARNING: This gathers all data to a single process.
        Only use for small grids or debugging.
        """
        warnings.warn("gather() copies every block to the calling process. "
                      "Only use for debugging or small grids.")
        return self._gather()

    def _gather(self) -> List[List[Any]]:
        rows, cols = self.grid_shape
        grid = [[None] * cols for _ in range(rows)]
        calls = [(cell, self.cluster.submit(cell.owner, _gather_cell, self.key, cell.index))
                 for cell in self.partition]
        for cell, deferred in calls:
            local = deferred.resolve()
            for li, i in enumerate(cell.rows):
                for lj, j in enumerate(cell.cols):
                    grid[i][j] = local[li][lj]
        return grid

    def free(self) -> None:
        """Release the remote storage now instead of at garbage collection."""
        self._finalizer()

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(grid_shape={self.grid_shape}, cells={len(self.partition)}, "
                f"workers={len(self.partition.workers)})")
