from typing import NamedTuple

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float, Inexact

from exceptions import NumericalFailure
from precision import compute_dtype, real_dtype


class RitzPairs(NamedTuple):
  """Lowest Ritz pairs of the current subspace and their residual.

  Attributes:
    values: (nev,) ndarray. Ritz values, ascending.
    vectors: (n, nev) ndarray. Ritz vectors X = S @ Y.
    residual: (n, nev) ndarray. R = A @ X - X @ diag(values).
    residual_norm: float. Frobenius norm of R.
  """
  values: Float[Array, "nev"]
  vectors: Inexact[Array, "n nev"]
  residual: Inexact[Array, "n nev"]
  residual_norm: float


def _all_finite(x):
  return bool(jnp.all(jnp.isfinite(x)))


@jax.jit
def _projected_matrix(S, AS):
  P = jnp.conj(S).T @ AS
  # Rounding leaves S^H A S slightly non-Hermitian.
  return 0.5 * (P + jnp.conj(P).T)


@jax.jit
def _eigh(P):
  return jnp.linalg.eigh(P)


@jax.jit
def _ritz_kernel(S, AS, Y, theta):
  X = S @ Y
  R = AS @ Y - X * theta[None, :]
  return X, R, jnp.linalg.norm(R)


def project(
  S: Inexact[Array, "n m"], AS: Inexact[Array, "n m"]
) -> Inexact[Array, "m m"]:
  """Hermitian projected matrix (S^H A S + (S^H A S)^H) / 2."""
  cdt = compute_dtype(S.dtype)
  return _projected_matrix(S.astype(cdt), AS.astype(cdt))


def rayleigh_ritz(S, AS, iteration=None):
  """Full eigendecomposition of the operator projected onto span(S).

  Args:
    S: (n, m) ndarray. Orthonormal search basis.
    AS: (n, m) ndarray. Operator applied to S.
    iteration: int or None. Reported in NumericalFailure.

  Returns:
    evals: (m,) ndarray. Eigenvalues of the projected matrix, ascending.
    evecs: (m, m) ndarray. Corresponding eigenvectors as columns.
  """
  P = project(S, AS)
  if not _all_finite(P):
    raise NumericalFailure(
      "projected matrix has non-finite entries", iteration, "projection"
    )
  evals, evecs = _eigh(P)
  if not (_all_finite(evals) and _all_finite(evecs)):
    raise NumericalFailure(
      "projected eigendecomposition produced non-finite values",
      iteration,
      "projection",
    )
  return evals, evecs


def ritz_vectors(S, AS, evals, evecs, nev):
  """Ritz pairs for the nev lowest projected eigenvalues.

  Args:
    S: (n, m) ndarray. Orthonormal search basis.
    AS: (n, m) ndarray. Operator applied to S.
    evals: (m,) ndarray. Output of rayleigh_ritz.
    evecs: (m, m) ndarray. Output of rayleigh_ritz.
    nev: int. Number of pairs sought.
  """
  cdt = compute_dtype(S.dtype)
  Y = evecs[:, :nev]
  theta = evals[:nev]
  X, R, rnorm = _ritz_kernel(S.astype(cdt), AS.astype(cdt), Y, theta)
  return RitzPairs(
    values=theta.astype(real_dtype(S.dtype)),
    vectors=X.astype(S.dtype),
    residual=R.astype(S.dtype),
    residual_norm=float(rnorm),
  )


def residual_norm(R):
  """Frobenius norm of a residual block as a Python float."""
  R = jnp.asarray(R)
  return float(jnp.linalg.norm(R.astype(compute_dtype(R.dtype))))


__all__ = [
  "RitzPairs",
  "project",
  "rayleigh_ritz",
  "residual_norm",
  "ritz_vectors",
]
