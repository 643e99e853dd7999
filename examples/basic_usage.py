#!/usr/bin/env python
"""
Basic Usage Examples for torch-blockop

This example demonstrates:
1. Partitioning a block grid over workers
2. Building a block-diagonal operator on the workers
3. Applying a general block operator and its adjoint
4. Reading and writing single blocks

Run with:
    python examples/basic_usage.py
"""

import torch
from torch_blockop import (
    DistributedArray,
    ProcessCluster,
    block_diagonal,
    compute_partition,
    random_operator,
)
from torch_blockop.operators import DiagonalOperator


def scaling_block(i):
    """Diagonal block i scales its 3 entries by i + 1."""
    return DiagonalOperator(torch.full((3,), float(i + 1), dtype=torch.float64))


# =============================================================================
# 1. Partitioning
# =============================================================================

def example_1_partition():
    P = compute_partition((4, 4), (2, 2), ["w0", "w1", "w2", "w3"])
    print(P)
    for cell in P:
        print(f"  cell {cell.index}: rows {cell.rows}, cols {cell.cols} -> {cell.owner}")


# =============================================================================
# 2. Block-diagonal operator
# =============================================================================

def example_2_block_diagonal(cluster):
    A = block_diagonal(scaling_block, [3, 3, 3, 3], cluster, verbose=True)
    x = A.domain_array(1.0)
    y = A @ x
    print(f"{A}")
    print(f"A @ 1 = {y.to_local_process()}")


# =============================================================================
# 3. General operator and adjoint
# =============================================================================

def example_3_apply(cluster):
    A = random_operator((4, 2), (5, 3), cluster, seed=0, distribution=(2, 2))
    x = A.random_domain_array(seed=1)
    y = A @ x

    # <A x, y> == <x, A^H y>
    lhs = y.dot(y)
    rhs = x.dot(A.H @ y)
    print(f"<Ax, Ax> = {lhs.item():.6f}, <x, A^H A x> = {rhs.item():.6f}")

    error = (A.to_dense() @ x.to_local_process() - y.to_local_process()).abs().max()
    print(f"max |dense - distributed| = {error.item():.2e}")


# =============================================================================
# 4. Block access
# =============================================================================

def example_4_blocks(cluster):
    x = DistributedArray.zeros([2, 2, 2, 2], cluster)
    for i in range(len(x)):
        x[i] = torch.full((2,), float(i), dtype=torch.float64)
        print(f"  segment {i} on {x.owner_of(i)}: {x[i]}")
    print(f"gathered: {x.to_local_process()}")


if __name__ == "__main__":
    example_1_partition()
    with ProcessCluster(4) as cluster:
        example_2_block_diagonal(cluster)
        example_3_apply(cluster)
        example_4_blocks(cluster)
