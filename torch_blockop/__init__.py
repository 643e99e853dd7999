"""
torch-blockop: Distributed Block Operators for PyTorch

Block operators and block-aligned arrays whose blocks live on the worker
processes that own them, plus a dynamic scheduler for bulk independent work
(e.g. one task per seismic shot).

Features
--------
- Partition maps of a block grid over workers (chunked, row- or column-major)
- Blocks constructed on their owner; the full grid never sits in one process
- Block operators acting on distributed arrays, with a diagonal fast path
- Copy-in/copy-out block access with read-after-write for the same caller
- Dynamic scheduling with greedy rebalancing, worker-loss recovery and retries

Usage
-----
>>> import torch
>>> from torch_blockop import LocalCluster, build_distributed_operator, pmap
>>>
>>> def blocks(rows, cols):
...     return [[torch.eye(3, dtype=torch.float64) * (i + 1) if i == j
...               else torch.zeros(3, 3, dtype=torch.float64) for j in cols] for i in rows]
>>>
>>> cluster = LocalCluster(2)
>>> A = build_distributed_operator((2, 2), blocks, cluster)
>>> y = A @ A.domain_array(1.0)
>>> y.get_block(1)
tensor([2., 2., 2.], dtype=torch.float64)
>>>
>>> pmap(abs, [-1, -2, -3], cluster)
[1, 2, 3]
"""

from .check import (
    BlockOpError,
    ConfigurationError,
    OutOfRangeError,
    ShapeMismatchError,
    InconsistentBlockSizeError,
    UnsupportedOperationError,
    NoWorkersAvailableError,
    TaskError,
    WorkerLostError,
    RemoteError,
)

from .config import (
    SchedulerConfig,
    default_num_workers,
)

from .partition import (
    Cell,
    PartitionMap,
    compute_partition,
    default_distribution,
)

from .workers import (
    Cluster,
    LocalCluster,
    ProcessCluster,
    WorkerSet,
    Deferred,
    resolve_all,
    current_worker,
    local_store,
    peer_submit,
)

from .operators import (
    LinearOperator,
    MatrixOperator,
    DiagonalOperator,
    IdentityOperator,
    ZeroOperator,
    CallableOperator,
    aslinearoperator,
)

from .container import (
    BlockInfo,
    DistributedBlockContainer,
)

from .darray import DistributedArray

from .block_operator import (
    BlockOperator,
    build_distributed_operator,
    block_diagonal,
)

from .scheduler import (
    SchedulerState,
    DispatchEvent,
    TaskResult,
    ResultStream,
    schedule_dynamic,
    pmap,
)

from .random import (
    RandomBlocks,
    random_operator,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "BlockOpError",
    "ConfigurationError",
    "OutOfRangeError",
    "ShapeMismatchError",
    "InconsistentBlockSizeError",
    "UnsupportedOperationError",
    "NoWorkersAvailableError",
    "TaskError",
    "WorkerLostError",
    "RemoteError",
    # Configuration
    "SchedulerConfig",
    "default_num_workers",
    # Partitioning
    "Cell",
    "PartitionMap",
    "compute_partition",
    "default_distribution",
    # Workers
    "Cluster",
    "LocalCluster",
    "ProcessCluster",
    "WorkerSet",
    "Deferred",
    "resolve_all",
    "current_worker",
    "local_store",
    "peer_submit",
    # Operators
    "LinearOperator",
    "MatrixOperator",
    "DiagonalOperator",
    "IdentityOperator",
    "ZeroOperator",
    "CallableOperator",
    "aslinearoperator",
    # Distributed containers
    "BlockInfo",
    "DistributedBlockContainer",
    "DistributedArray",
    "BlockOperator",
    "build_distributed_operator",
    "block_diagonal",
    # Scheduling
    "SchedulerState",
    "DispatchEvent",
    "TaskResult",
    "ResultStream",
    "schedule_dynamic",
    "pmap",
    # Random
    "RandomBlocks",
    "random_operator",
    # Version
    "__version__",
]
