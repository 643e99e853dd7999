"""
Linear operators used as blocks of a BlockOperator.

A block only has to know its shape, apply itself to a 1-D tensor and, if it
can, produce its adjoint. Wrapping a dense tensor, a diagonal or an opaque
modeling kernel all look the same to the block container.

Example
-------
>>> import torch
>>> from torch_blockop.operators import DiagonalOperator, MatrixOperator
>>> D = DiagonalOperator(torch.tensor([1.0, 2.0]))
>>> D @ torch.ones(2)
tensor([1., 2.])
>>> A = MatrixOperator(torch.tensor([[1.0, 2.0], [3.0, 4.0]]))
>>> A.H.to_dense()
tensor([[1., 3.],
        [2., 4.]])
"""

from typing import Callable, Optional, Tuple

import torch

from .check import ShapeMismatchError, UnsupportedOperationError


class LinearOperator:
    """
    Base class of block operators.

    Subclasses set ``shape`` and ``dtype`` and implement ``_matvec``;
    ``_adjoint`` is optional.
    """

    shape: Tuple[int, int]
    dtype: torch.dtype = torch.float64

    @property
    def supports_adjoint(self) -> bool:
        return type(self)._adjoint is not LinearOperator._adjoint

    def matvec(self, x: torch.Tensor) -> torch.Tensor:
        if x.ndim != 1 or x.shape[0] != self.shape[1]:
            raise ShapeMismatchError("x", tuple(x.shape), (self.shape[1],))
        return self._matvec(x)

    def _matvec(self, x: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def adjoint(self) -> "LinearOperator":
        if not self.supports_adjoint:
            raise UnsupportedOperationError(f"{type(self).__name__} has no adjoint")
        return self._adjoint()

    def _adjoint(self) -> "LinearOperator":
        raise NotImplementedError

    @property
    def H(self) -> "LinearOperator":
        return self.adjoint()

    def to_dense(self) -> torch.Tensor:
        """Dense matrix, built column by column from ``matvec``."""
        eye = torch.eye(self.shape[1], dtype=self.dtype)
        return torch.stack([self.matvec(eye[:, k]) for k in range(self.shape[1])], dim=1)

    def __matmul__(self, x: torch.Tensor) -> torch.Tensor:
        return self.matvec(x)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape}, dtype={self.dtype})"


class MatrixOperator(LinearOperator):
    """Dense or torch-sparse 2-D matrix."""

    def __init__(self, matrix: torch.Tensor):
        if matrix.ndim != 2:
            raise ShapeMismatchError("matrix", tuple(matrix.shape), "(m, n)")
        self.matrix = matrix
        self.shape = (int(matrix.shape[0]), int(matrix.shape[1]))
        self.dtype = matrix.dtype

    def _matvec(self, x):
        if self.matrix.is_sparse:
            return torch.sparse.mm(self.matrix, x.unsqueeze(1)).squeeze(1)
        return self.matrix @ x

    def _adjoint(self):
        if not self.matrix.is_sparse:
            return MatrixOperator(self.matrix.t().conj())
        coo = self.matrix.coalesce()
        return MatrixOperator(torch.sparse_coo_tensor(
            coo.indices().flip(0), torch.conj_physical(coo.values()),
            (self.shape[1], self.shape[0]),
        ).coalesce())

    def to_dense(self):
        return self.matrix.to_dense() if self.matrix.is_sparse else self.matrix.clone()


class DiagonalOperator(LinearOperator):
    """Elementwise scaling by ``diag``."""

    def __init__(self, diag: torch.Tensor):
        if diag.ndim != 1:
            raise ShapeMismatchError("diag", tuple(diag.shape), "[n]")
        self.diag = diag
        self.shape = (int(diag.shape[0]), int(diag.shape[0]))
        self.dtype = diag.dtype

    def _matvec(self, x):
        return self.diag * x

    def _adjoint(self):
        return DiagonalOperator(self.diag.conj())

    def to_dense(self):
        return torch.diag(self.diag)


class IdentityOperator(LinearOperator):
    def __init__(self, n: int, dtype: torch.dtype = torch.float64):
        self.shape = (n, n)
        self.dtype = dtype

    def _matvec(self, x):
        return x.clone()

    def _adjoint(self):
        return self


class ZeroOperator(LinearOperator):
    """
    No-op block, the placeholder for empty off-diagonal blocks.

    Applying it returns zeros of the range size.
    """

    def __init__(self, m: int, n: int, dtype: torch.dtype = torch.float64):
        self.shape = (m, n)
        self.dtype = dtype

    def _matvec(self, x):
        return torch.zeros(self.shape[0], dtype=x.dtype, device=x.device)

    def _adjoint(self):
        return ZeroOperator(self.shape[1], self.shape[0], self.dtype)

    def to_dense(self):
        return torch.zeros(self.shape, dtype=self.dtype)


class CallableOperator(LinearOperator):
    """
    Operator defined by black-box forward (and optional adjoint) kernels.

    Parameters
    ----------
    matvec : Callable
        x [n] -> y [m]
    shape : Tuple[int, int]
        (m, n)
    rmatvec : Callable, optional
        y [m] -> x [n]; without it the operator has no adjoint
    dtype : torch.dtype
        Value type of the operator
    """

    def __init__(
        self,
        matvec: Callable[[torch.Tensor], torch.Tensor],
        shape: Tuple[int, int],
        rmatvec: Optional[Callable[[torch.Tensor], torch.Tensor]] = None,
        dtype: torch.dtype = torch.float64,
    ):
        self._forward = matvec
        self._backward = rmatvec
        self.shape = (int(shape[0]), int(shape[1]))
        self.dtype = dtype

    @property
    def supports_adjoint(self) -> bool:
        return self._backward is not None

    def _matvec(self, x):
        return self._forward(x)

    def _adjoint(self):
        return CallableOperator(self._backward, (self.shape[1], self.shape[0]),
                                rmatvec=self._forward, dtype=self.dtype)


class _ScipyOperator(LinearOperator):
    """Adapter for scipy-style operators exposing ``matvec``/``rmatvec``."""

    def __init__(self, op):
        self.op = op
        self.shape = (int(op.shape[0]), int(op.shape[1]))
        self.dtype = torch.float64

    @property
    def supports_adjoint(self) -> bool:
        return hasattr(self.op, "rmatvec") or hasattr(self.op, "adjoint")

    def _matvec(self, x):
        y = self.op.matvec(x.detach().cpu().numpy())
        return torch.as_tensor(y).reshape(-1).to(x.dtype)

    def _adjoint(self):
        return _ScipyOperator(self.op.adjoint() if hasattr(self.op, "adjoint") else self.op.H)


def aslinearoperator(obj) -> LinearOperator:
    """
    View ``obj`` as a LinearOperator.

    Accepts LinearOperator instances, 2-D tensors and scipy-style operators
    (anything with ``shape`` and ``matvec``).
    """
    if isinstance(obj, LinearOperator):
        return obj
    if isinstance(obj, torch.Tensor):
        return MatrixOperator(obj)
    if hasattr(obj, "shape") and hasattr(obj, "matvec"):
        return _ScipyOperator(obj)
    raise TypeError(f"Cannot use {type(obj).__name__} as a linear operator")
