"""
Distributed arrays aligned with the domain or range of a block operator.

A DistributedArray is a column of 1-D segments, segment ``i`` matching
block column (domain) or block row (range) ``i`` of an operator. Segments
live on their owners; factories build them there and arithmetic runs there,
only scalars and explicitly requested segments travel to the caller.
"""

import functools
import warnings
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Union

import torch

from .check import ConfigurationError, ShapeMismatchError
from .container import (
    DistributedBlockContainer,
    LocalRef,
    Prepared,
    RemoteRef,
    _construct_cell,
    fetch_inputs,
    store_cell,
)
from .partition import PartitionMap, compute_partition, default_distribution
from .workers import Cluster, Deferred


# =============================================================================
# Worker-side constructors and kernels
# =============================================================================

class _Fill:
    def __init__(self, sizes: Sequence[int], value: float, dtype: torch.dtype):
        self.sizes = list(sizes)
        self.value = value
        self.dtype = dtype

    def __call__(self, rows, cols):
        return [[torch.full((self.sizes[i],), self.value, dtype=self.dtype)] for i in rows]


class _RandomFill:
    """
    Random segments generated on the owner.

    Segment ``i`` uses seed ``seed + i``, so values do not depend on the
    partition.
    """

    def __init__(self, sizes: Sequence[int], seed: int, dtype: torch.dtype, distribution: str):
        self.sizes = list(sizes)
        self.seed = seed
        self.dtype = dtype
        self.distribution = distribution

    def __call__(self, rows, cols):
        local = []
        for i in rows:
            generator = torch.Generator().manual_seed(self.seed + i)
            if self.distribution == "normal":
                segment = torch.randn(self.sizes[i], generator=generator, dtype=self.dtype)
            else:
                segment = torch.rand(self.sizes[i], generator=generator, dtype=self.dtype)
            local.append([segment])
        return local


def _scale(segment: torch.Tensor, alpha) -> torch.Tensor:
    return segment * alpha


def _clone(segment: torch.Tensor) -> torch.Tensor:
    return segment.clone()


def _combine_cell(dst_key, cell_index, a_refs, b_inputs, alpha, beta):
    """alpha * a + beta * b for every segment of a cell."""
    local = []
    for a, b in zip(fetch_inputs(a_refs), fetch_inputs(b_inputs)):
        local.append([alpha * a + beta * b])
    return store_cell(dst_key, cell_index, local)


def _dot_cell(a_refs, b_inputs):
    total = None
    for a, b in zip(fetch_inputs(a_refs), fetch_inputs(b_inputs)):
        part = torch.sum(a.conj() * b)
        total = part if total is None else total + part
    return total


# =============================================================================
# DistributedArray
# =============================================================================

class DistributedArray:
    """
    Column of 1-D tensor segments distributed across workers.

    Parameters
    ----------
    container : DistributedBlockContainer
        (n, 1) container holding the segments

    Example
    -------
    >>> from torch_blockop import LocalCluster, DistributedArray
    >>> cluster = LocalCluster(2)
    >>> x = DistributedArray.ones([2, 2, 3], cluster=cluster)
    >>> x.sizes
    [2, 2, 3]
    >>> x.to_local_process()
    tensor([1., 1., 1., 1., 1., 1., 1.], dtype=torch.float64)
    """

    def __init__(self, container: DistributedBlockContainer):
        if container.grid_shape[1] != 1:
            raise ConfigurationError(f"a distributed array needs an (n, 1) grid, got {container.grid_shape}")
        self.container = container

    # =========================================================================
    # Factories
    # =========================================================================

    @staticmethod
    def _partition_for(
        sizes: Sequence[int],
        partition: Optional[PartitionMap],
        cluster: Cluster,
        workers: Optional[Iterable[Hashable]] = None,
    ) -> PartitionMap:
        if partition is not None:
            if partition.grid_shape != (len(sizes), 1):
                raise ShapeMismatchError("partition", partition.grid_shape, (len(sizes), 1))
            return partition
        workers = list(cluster.workers if workers is None else workers)
        grid_shape = (len(sizes), 1)
        return compute_partition(grid_shape, default_distribution(grid_shape, len(workers)), workers)

    @classmethod
    def from_constructor(
        cls,
        sizes: Sequence[int],
        constructor: Callable[[range, range], Any],
        cluster: Cluster,
        partition: Optional[PartitionMap] = None,
        workers: Optional[Iterable[Hashable]] = None,
    ) -> "DistributedArray":
        """Build every segment on its owner with ``constructor(rows, cols)``."""
        sizes = [int(s) for s in sizes]
        partition = cls._partition_for(sizes, partition, cluster, workers)
        container = DistributedBlockContainer.from_partition(partition, constructor, cluster)
        array = cls(container)
        if array.sizes != sizes:
            container.free()
            raise ShapeMismatchError("segments", tuple(array.sizes), tuple(sizes))
        return array

    @classmethod
    def full(
        cls,
        sizes: Sequence[int],
        value: float,
        cluster: Cluster,
        partition: Optional[PartitionMap] = None,
        dtype: torch.dtype = torch.float64,
        workers: Optional[Iterable[Hashable]] = None,
    ) -> "DistributedArray":
        return cls.from_constructor(sizes, _Fill(sizes, value, dtype), cluster, partition, workers)

    @classmethod
    def zeros(cls, sizes, cluster, partition=None, dtype=torch.float64, workers=None) -> "DistributedArray":
        return cls.full(sizes, 0.0, cluster, partition, dtype, workers)

    @classmethod
    def ones(cls, sizes, cluster, partition=None, dtype=torch.float64, workers=None) -> "DistributedArray":
        return cls.full(sizes, 1.0, cluster, partition, dtype, workers)

    @classmethod
    def fill_random(
        cls,
        sizes: Sequence[int],
        cluster: Cluster,
        partition: Optional[PartitionMap] = None,
        seed: Optional[int] = None,
        dtype: torch.dtype = torch.float64,
        distribution: str = "normal",
        workers: Optional[Iterable[Hashable]] = None,
    ) -> "DistributedArray":
        """
        Random array generated segment by segment on the owners.

        Parameters
        ----------
        sizes : Sequence[int]
            Length of each segment
        cluster : Cluster
            Cluster holding the segments
        partition : PartitionMap, optional
            (len(sizes), 1) partition; tall-and-skinny over all workers by default
        seed : int, optional
            Base seed, drawn from torch's global generator when omitted
        dtype : torch.dtype
            Segment dtype
        distribution : str
            'normal' or 'uniform'
        """
        if distribution not in ("normal", "uniform"):
            raise ValueError(f"Unknown distribution: {distribution}")
        if seed is None:
            seed = int(torch.randint(0, 2 ** 31 - 1, (1,)).item())
        return cls.from_constructor(sizes, _RandomFill(sizes, seed, dtype, distribution),
                                    cluster, partition, workers)

    @classmethod
    def from_segments(
        cls,
        segments: Sequence[torch.Tensor],
        cluster: Cluster,
        partition: Optional[PartitionMap] = None,
        workers: Optional[Iterable[Hashable]] = None,
    ) -> "DistributedArray":
        """Scatter caller-side segments; each owner receives only its own."""
        segments = list(segments)
        for k, segment in enumerate(segments):
            if segment.ndim != 1:
                raise ShapeMismatchError(f"segment {k}", tuple(segment.shape), "[n]")
        sizes = [int(s.shape[0]) for s in segments]
        partition = cls._partition_for(sizes, partition, cluster, workers)
        container = DistributedBlockContainer.materialize(
            partition, cluster,
            lambda key, cell: (_construct_cell, (
                key, cell.index, Prepared([[segments[i].clone()] for i in cell.rows]), cell.rows, cell.cols
            )),
        )
        return cls(container)

    @classmethod
    def from_tensor(
        cls,
        x: torch.Tensor,
        sizes: Sequence[int],
        cluster: Cluster,
        partition: Optional[PartitionMap] = None,
        workers: Optional[Iterable[Hashable]] = None,
    ) -> "DistributedArray":
        """Split a local 1-D tensor into segments of ``sizes`` and scatter them."""
        sizes = [int(s) for s in sizes]
        if x.ndim != 1 or x.shape[0] != sum(sizes):
            raise ShapeMismatchError("x", tuple(x.shape), (sum(sizes),))
        return cls.from_segments(list(torch.split(x, sizes)), cluster, partition, workers)

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
    def num_blocks(self) -> int:
        return self.container.grid_shape[0]

    @property
    def sizes(self) -> List[int]:
        return [int(row[0][0]) if row[0] else 0 for row in self.container.block_shapes()]

    @property
    def size(self) -> int:
        return sum(self.sizes)

    @property
    def dtype(self) -> Optional[torch.dtype]:
        return self.container.block_info(0, 0).dtype

    def is_aligned_with(self, sizes: Sequence[int]) -> bool:
        """True if segment boundaries match ``sizes`` exactly."""
        return self.sizes == [int(s) for s in sizes]

    def owner_of(self, i: int) -> Hashable:
        return self.container.owner_of(i, 0)

    def local_ranges(self, worker_id: Hashable) -> List[range]:
        return [rows for rows, _ in self.container.local_ranges(worker_id)]

    def ref(self, i: int) -> LocalRef:
        return self.container.ref(i, 0)

    # =========================================================================
    # Segment access
    # =========================================================================

    def get_block(self, i: int) -> torch.Tensor:
        """Copy of segment i."""
        return self.container.get_block(i, 0)

    def get_block_async(self, i: int) -> Deferred:
        return self.container.get_block_async(i, 0)

    def set_block(self, i: int, value: torch.Tensor) -> None:
        """Overwrite segment i on its owner with a copy of ``value``."""
        self.container.set_block(i, 0, value)

    def __getitem__(self, i: int) -> torch.Tensor:
        return self.get_block(i)

    def __setitem__(self, i: int, value: torch.Tensor) -> None:
        self.set_block(i, value)

    def __len__(self) -> int:
        return self.num_blocks

    def segments(self) -> List[torch.Tensor]:
        """
        Copy every segment to the caller, in block order.

        WARNING: This gathers all data to a single process.
        """
        warnings.warn("segments() copies every segment to the calling process. "
                      "Only use for debugging or small arrays.")
        return [row[0] for row in self.container._gather()]

    def to_local_process(self) -> torch.Tensor:
        """
        Concatenate all segments into one local tensor.

        WARNING: This gathers all data to a single process and has no size
        cap. Only use for small arrays or debugging.
        """
        warnings.warn("to_local_process() gathers all data to a single process. "
                      "Only use for debugging or small arrays.")
        return torch.cat([row[0] for row in self.container._gather()])

    # =========================================================================
    # Arithmetic on the owners
    # =========================================================================

    def inputs_for(self, indices: Iterable[int], worker_id: Hashable) -> Dict[int, Union[LocalRef, RemoteRef]]:
        """
        How a task on ``worker_id`` reads segments ``indices``.

        Segments the worker owns are passed by reference into its store;
        the others are fetched by the worker itself from their owners, so
        no segment data passes through the caller.
        """
        inputs = {}
        for i in indices:
            owner = self.owner_of(i)
            inputs[i] = self.ref(i) if owner == worker_id else RemoteRef(owner, self.ref(i))
        return inputs

    def _check_aligned(self, other: "DistributedArray"):
        if not isinstance(other, DistributedArray):
            raise TypeError(f"expected a DistributedArray, got {type(other).__name__}")
        if other.sizes != self.sizes:
            raise ShapeMismatchError("other", tuple(other.sizes), tuple(self.sizes))

    def _combine(self, other: "DistributedArray", alpha, beta) -> "DistributedArray":
        self._check_aligned(other)

        def make_call(key, cell):
            b_inputs = other.inputs_for(cell.rows, cell.owner)
            a_refs = [self.ref(i) for i in cell.rows]
            return _combine_cell, (key, cell.index, a_refs, [b_inputs[i] for i in cell.rows], alpha, beta)

        container = DistributedBlockContainer.materialize(self.partition, self.cluster, make_call)
        return DistributedArray(container)

    def axpy(self, alpha, x: "DistributedArray") -> "DistributedArray":
        """self + alpha * x"""
        return self._combine(x, 1, alpha)

    def __add__(self, other):
        if not isinstance(other, DistributedArray):
            return NotImplemented
        return self._combine(other, 1, 1)

    def __sub__(self, other):
        if not isinstance(other, DistributedArray):
            return NotImplemented
        return self._combine(other, 1, -1)

    def __mul__(self, alpha):
        if isinstance(alpha, DistributedArray):
            return NotImplemented
        return self.map(functools.partial(_scale, alpha=alpha))

    __rmul__ = __mul__

    def __neg__(self):
        return self * -1

    def map(self, fn: Callable[[torch.Tensor], torch.Tensor]) -> "DistributedArray":
        """New array with ``fn(segment)`` computed on each owner."""
        return DistributedArray(self.container.map_blocks(fn))

    def copy(self) -> "DistributedArray":
        return self.map(_clone)

    def dot(self, other: "DistributedArray") -> torch.Tensor:
        """Inner product; partial sums computed on the owners of ``self``."""
        self._check_aligned(other)
        calls = []
        for cell in self.partition:
            b_inputs = other.inputs_for(cell.rows, cell.owner)
            a_refs = [self.ref(i) for i in cell.rows]
            calls.append(self.cluster.submit(cell.owner, _dot_cell, a_refs, [b_inputs[i] for i in cell.rows]))
        parts = [d.resolve() for d in calls]
        return functools.reduce(torch.add, [p for p in parts if p is not None])

    def norm(self) -> torch.Tensor:
        return torch.sqrt(self.dot(self).real)

    def free(self) -> None:
        self.container.free()

    def __repr__(self) -> str:
        return f"DistributedArray(sizes={self.sizes}, workers={len(self.partition.workers)})"
