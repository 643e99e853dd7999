import pytest
import torch

from torch_blockop import (
    CallableOperator,
    DiagonalOperator,
    IdentityOperator,
    MatrixOperator,
    ShapeMismatchError,
    UnsupportedOperationError,
    ZeroOperator,
    aslinearoperator,
)


def dense(m: int, n: int, seed: int = 0):
    generator = torch.Generator().manual_seed(seed)
    return torch.randn(m, n, generator=generator, dtype=torch.float64)


class TestOperators:

    def test_matrix_operator(self):
        A = dense(3, 2)
        x = torch.tensor([1.0, -2.0], dtype=torch.float64)
        op = MatrixOperator(A)
        assert op.shape == (3, 2)
        assert torch.allclose(op @ x, A @ x)
        assert torch.allclose(op.H.to_dense(), A.t())

    def test_sparse_matrix_operator(self):
        A = dense(4, 4)
        op = MatrixOperator(A.to_sparse())
        x = torch.ones(4, dtype=torch.float64)
        assert torch.allclose(op @ x, A @ x)
        assert torch.allclose(op.to_dense(), A)

    def test_sparse_adjoint_conjugates(self):
        A = torch.complex(dense(3, 2, seed=1), dense(3, 2, seed=2))
        A[0, 1] = 0
        op = MatrixOperator(A.to_sparse())
        H = op.H
        assert H.shape == (2, 3)
        assert torch.allclose(H.to_dense(), A.t().conj())
        x = torch.ones(3, dtype=torch.complex128)
        assert torch.allclose(H @ x, A.t().conj() @ x)

    def test_diagonal_and_identity(self):
        d = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
        x = torch.ones(3, dtype=torch.float64)
        assert torch.allclose(DiagonalOperator(d) @ x, d)
        assert torch.allclose(IdentityOperator(3) @ d, d)
        assert torch.allclose(DiagonalOperator(d).to_dense(), torch.diag(d))

    def test_zero_operator(self):
        Z = ZeroOperator(2, 5)
        assert torch.equal(Z @ torch.ones(5, dtype=torch.float64), torch.zeros(2, dtype=torch.float64))
        assert Z.H.shape == (5, 2)

    def test_shape_checked(self):
        with pytest.raises(ShapeMismatchError):
            MatrixOperator(dense(3, 2)) @ torch.ones(3, dtype=torch.float64)

    def test_callable_without_adjoint(self):
        op = CallableOperator(lambda x: 2 * x, (3, 3))
        assert not op.supports_adjoint
        assert torch.allclose(op.to_dense(), 2 * torch.eye(3, dtype=torch.float64))
        with pytest.raises(UnsupportedOperationError):
            op.adjoint()

    def test_callable_with_adjoint(self):
        A = dense(2, 3)
        op = CallableOperator(lambda x: A @ x, (2, 3), rmatvec=lambda y: A.t() @ y)
        assert op.supports_adjoint
        assert torch.allclose(op.H.to_dense(), A.t())

    def test_aslinearoperator(self):
        op = MatrixOperator(dense(2, 2))
        assert aslinearoperator(op) is op
        assert isinstance(aslinearoperator(dense(2, 2)), MatrixOperator)
        with pytest.raises(TypeError):
            aslinearoperator("not an operator")

    def test_scipy_operator(self):
        scipy_linalg = pytest.importorskip("scipy.sparse.linalg")
        A = dense(3, 3)
        op = aslinearoperator(scipy_linalg.aslinearoperator(A.numpy()))
        x = torch.ones(3, dtype=torch.float64)
        assert torch.allclose(op @ x, A @ x)
        assert op.supports_adjoint
        assert torch.allclose(op.H @ x, A.t() @ x)
