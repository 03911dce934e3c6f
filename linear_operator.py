import jax.numpy as jnp
from jax.experimental import sparse as jsparse

from exceptions import InvalidInput


class LinearOperator:
  """Hermitian linear map applied to blocks of column vectors.

  The solver only ever calls ``apply``; the storage behind it is opaque.
  Hermiticity is assumed, not checked.

  Args:
    matmul: callable. matmul(X) with X shape (n, k) returns A@X.
    n: int. Row (and column) dimension of the map.
    dtype: dtype or None. Scalar type of the map, None when unknown.
    matrix: ndarray, JAXSparse or None. Backing storage of dense and sparse
      maps, used by astype and diagonal.
    kind: str. "dense", "sparse" or "matrix_free".
  """

  def __init__(self, matmul, n, dtype=None, matrix=None, kind="matrix_free"):
    self._matmul = matmul
    self.n = int(n)
    self.dtype = None if dtype is None else jnp.dtype(dtype)
    self.matrix = matrix
    self.kind = kind

  @property
  def shape(self):
    return (self.n, self.n)

  def apply(self, X):
    """Apply the map to every column of X.

    Args:
      X: (n,) or (n, k) ndarray.

    Returns:
      AX: (n, k) ndarray.
    """
    X = jnp.asarray(X)
    X2 = X if X.ndim == 2 else X[:, None]
    if X2.shape[0] != self.n:
      raise InvalidInput(
        f"block has {X2.shape[0]} rows, operator dimension is {self.n}"
      )
    AX = jnp.asarray(self._matmul(X2))
    AX = AX if AX.ndim == 2 else AX[:, None]
    if AX.shape != X2.shape:
      raise InvalidInput(
        f"operator returned shape {AX.shape} for a block of shape {X2.shape}"
      )
    return AX

  __call__ = apply

  def __matmul__(self, X):
    return self.apply(X)

  def astype(self, dtype):
    """Same map with scalar type dtype."""
    dtype = jnp.dtype(dtype)
    if self.kind == "dense":
      return dense_operator(self.matrix.astype(dtype))
    if self.kind == "sparse" and isinstance(self.matrix, jsparse.BCOO):
      A = jsparse.BCOO(
        (self.matrix.data.astype(dtype), self.matrix.indices),
        shape=self.matrix.shape,
      )
      return sparse_operator(A)
    matmul = self._matmul
    return LinearOperator(
      lambda X: jnp.asarray(matmul(X)).astype(dtype),
      self.n,
      dtype=dtype,
      matrix=self.matrix,
      kind=self.kind,
    )

  def diagonal(self):
    """Main diagonal of a dense or sparse map."""
    if self.kind == "dense":
      return jnp.diagonal(self.matrix)
    if self.kind == "sparse":
      A = self.matrix
      if isinstance(A, jsparse.BCSR):
        A = A.to_bcoo()
      if isinstance(A, jsparse.BCOO):
        rows, cols = A.indices[:, 0], A.indices[:, 1]
        on_diag = jnp.where(rows == cols, A.data, jnp.zeros_like(A.data))
        return jnp.zeros((self.n,), dtype=A.dtype).at[rows].add(on_diag)
      return jnp.diagonal(A.todense())
    raise TypeError("matrix-free operators do not expose their diagonal")

  def __repr__(self):
    return f"LinearOperator(kind={self.kind!r}, n={self.n}, dtype={self.dtype})"


def _check_square(shape):
  if len(shape) != 2 or shape[0] != shape[1]:
    raise InvalidInput(f"operator must be square, got shape {tuple(shape)}")


def dense_operator(A):
  """Operator backed by a dense (n, n) array."""
  A = jnp.asarray(A)
  _check_square(A.shape)

  def matmul(X):
    return A @ X

  return LinearOperator(matmul, A.shape[0], dtype=A.dtype, matrix=A,
                        kind="dense")


def sparse_operator(A):
  """Operator backed by a jax.experimental.sparse matrix (BCOO, BCSR)."""
  if not isinstance(A, jsparse.JAXSparse):
    raise InvalidInput(f"expected a JAXSparse matrix, got {type(A).__name__}")
  _check_square(A.shape)

  def matmul(X):
    return A @ X

  return LinearOperator(matmul, A.shape[0], dtype=A.dtype, matrix=A,
                        kind="sparse")


def matrix_free_operator(matmul, n, dtype=None):
  """Operator given only by its action matmul(X) on (n, k) blocks."""
  if not callable(matmul):
    raise InvalidInput("matmul must be callable")
  return LinearOperator(matmul, n, dtype=dtype, kind="matrix_free")


def aslinearoperator(A, n=None, dtype=None):
  """Wrap a dense array, sparse matrix or callable as a LinearOperator.

  Args:
    A: LinearOperator, JAXSparse, callable or array-like.
    n: int or None. Problem size, required for callables.
    dtype: dtype or None. Scalar type of a callable, if known.
  """
  if isinstance(A, LinearOperator):
    return A
  if isinstance(A, jsparse.JAXSparse):
    return sparse_operator(A)
  if callable(A):
    if n is None:
      raise InvalidInput("Provide n for a matrix-free operator.")
    return matrix_free_operator(A, n, dtype=dtype)
  return dense_operator(A)


__all__ = [
  "LinearOperator",
  "aslinearoperator",
  "dense_operator",
  "matrix_free_operator",
  "sparse_operator",
]
