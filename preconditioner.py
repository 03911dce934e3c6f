import jax
import jax.numpy as jnp

from exceptions import InvalidInput
from linear_operator import LinearOperator


class Preconditioner:
  """Map from a residual block to a correction block.

  Args:
    fn: callable. fn(R) or, with uses_ritz_values, fn(R, theta) where R has
      shape (n, k) and theta shape (k,). Returns an (n, k) block.
    uses_ritz_values: bool. Whether fn takes the current Ritz values.
  """

  def __init__(self, fn, uses_ritz_values=False):
    self.fn = fn
    self.uses_ritz_values = uses_ritz_values

  def apply(self, R, ritz_values=None):
    R2 = R if R.ndim == 2 else R[:, None]
    if self.uses_ritz_values:
      Z = self.fn(R2, ritz_values)
    else:
      Z = self.fn(R2)
    Z = jnp.asarray(Z)
    return Z if Z.ndim == 2 else Z[:, None]

  __call__ = apply


def identity_preconditioner():
  return Preconditioner(lambda R: R)


def _scaling_preconditioner(P):
  P = jnp.asarray(P)
  if P.ndim == 1:
    P = P[:, None]

  def scale(R):
    return P * R

  return Preconditioner(scale)


@jax.jit
def _davidson_correction(R, theta, diag, floor):
  denom = diag[:, None] - theta[None, :]
  denom = jnp.where(jnp.abs(denom) < floor, floor, denom)
  return R / denom


def diagonal_preconditioner(diag, floor=None):
  """Davidson correction r_i / (diag - theta_i).

  Args:
    diag: (n,) ndarray. Diagonal of the operator (or an approximation).
    floor: float or None. Denominators smaller in magnitude are replaced by
      floor. Defaults to sqrt(eps) of the diagonal's dtype.
  """
  diag = jnp.asarray(diag)
  if diag.ndim != 1:
    raise InvalidInput(f"diag must be a vector, got shape {diag.shape}")
  if floor is None:
    floor = float(jnp.sqrt(jnp.finfo(diag.dtype).eps))

  def correct(R, theta):
    theta = jnp.asarray(theta, dtype=jnp.real(diag).dtype)
    Z = _davidson_correction(R, theta, diag.astype(R.dtype), floor)
    return Z.astype(R.dtype)

  return Preconditioner(correct, uses_ritz_values=True)


def as_preconditioner(preconditioner):
  """Normalize the preconditioner argument of the solver.

  Args:
    preconditioner: None, Preconditioner, LinearOperator, callable or
      ndarray. Callables are M^{-1}(R) with R shape (n, k). An ndarray is
      elementwise scaling; a vector of shape (n,) or (n, 1) is broadcast
      across columns.
  """
  if preconditioner is None:
    return identity_preconditioner()
  if isinstance(preconditioner, Preconditioner):
    return preconditioner
  if isinstance(preconditioner, LinearOperator):
    return Preconditioner(preconditioner.apply)
  if callable(preconditioner):
    return Preconditioner(preconditioner)
  return _scaling_preconditioner(preconditioner)


__all__ = [
  "Preconditioner",
  "as_preconditioner",
  "diagonal_preconditioner",
  "identity_preconditioner",
]
