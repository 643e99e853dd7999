import torch
from typing import Hashable, Iterable, Optional, Sequence, Tuple

from .operators import MatrixOperator


class RandomBlocks:
    """
    Per-cell constructor of random dense blocks.

    Block (i, j) is drawn from its own generator seeded with
    ``seed + i * cols + j``, so the grid does not depend on the partition.

    Parameters
    ----------
    grid_cols : int
        Number of block columns, used to derive per-block seeds
    block_shape : Tuple[int, int]
        (m, n) shape of every block
    seed : int
        Base seed
    density : float, optional
        Fraction of entries kept, by default 1.0 (dense)
    dtype : torch.dtype, optional
        Data type of the blocks, by default torch.float64
    """

    def __init__(self,
                 grid_cols: int,
                 block_shape: Tuple[int, int],
                 seed: int,
                 density: float = 1.0,
                 dtype=torch.float64):
        assert 0.0 < density <= 1.0, "density must be in (0, 1]"
        self.grid_cols = grid_cols
        self.block_shape = tuple(block_shape)
        self.seed = seed
        self.density = density
        self.dtype = dtype

    def block(self, i: int, j: int) -> torch.Tensor:
        generator = torch.Generator().manual_seed(self.seed + i * self.grid_cols + j)
        val = torch.randn(self.block_shape, generator=generator, dtype=self.dtype)
        if self.density < 1.0:
            keep = torch.rand(self.block_shape, generator=generator) < self.density
            val = val * keep
        return val

    def __call__(self, rows: range, cols: range):
        return [[MatrixOperator(self.block(i, j)) for j in cols] for i in rows]


def random_operator(grid_shape: Tuple[int, int],
                    block_shape: Tuple[int, int],
                    cluster,
                    seed: Optional[int] = None,
                    density: float = 1.0,
                    workers: Optional[Iterable[Hashable]] = None,
                    distribution: Optional[Sequence[int]] = None,
                    dtype=torch.float64):
    """
    random distributed block operator

    Parameters
    ----------
    grid_shape : tuple
        (rows, cols) number of blocks
    block_shape : tuple
        (m, n) shape of every block
    cluster : Cluster
        Cluster holding the blocks
    seed : int, optional
        Base seed, drawn from torch's global generator when omitted
    density : float, optional
        Fraction of nonzero entries per block, by default 1.0
    workers : Iterable, optional
        Workers to use, by default all live workers
    distribution : Sequence[int], optional
        Chunks per dimension, by default tall-and-skinny
    dtype : torch.dtype, optional
        Data type of the blocks, by default torch.float64

    Returns
    -------
    BlockOperator
        Operator of shape (rows * m, cols * n), every block built on its owner
    """
    from .block_operator import build_distributed_operator

    if seed is None:
        seed = int(torch.randint(0, 2 ** 31 - 1, (1,)).item())
    constructor = RandomBlocks(grid_shape[1], block_shape, seed, density, dtype)
    return build_distributed_operator(grid_shape, constructor, cluster,
                                      workers=workers, distribution=distribution)
