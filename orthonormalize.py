import logging
import math
from typing import Optional

import jax
import jax.numpy as jnp
from jaxtyping import Array, Inexact

from precision import compute_dtype, default_ortho_tol, default_rank_tol, eps

logger = logging.getLogger(__name__)


def project_out(W, basis, reorth=True):
  """Remove from W its components in span(basis).

  Args:
    W: (n, p) ndarray.
    basis: (n, m) ndarray with orthonormal columns.
    reorth: bool. Project a second time; one pass loses orthogonality when
      W is nearly inside span(basis).
  """
  Vh = jnp.conj(basis).T
  W = W - basis @ (Vh @ W)
  if reorth:
    W = W - basis @ (Vh @ W)
  return W


@jax.jit
def _qr(W):
  Q, R = jnp.linalg.qr(W, mode="reduced")
  return Q, jnp.abs(jnp.diagonal(R))


@jax.jit
def _svd(W):
  U, s, _ = jnp.linalg.svd(W, full_matrices=False)
  return U, s


def _orthonormal_columns(W, rank_tol, scale):
  """Orthonormal columns for W and the smallest pivot that was kept."""
  n, p = W.shape
  cutoff = rank_tol * scale
  if p <= n:
    Q, d = _qr(W)
    if bool(jnp.all(d > cutoff)):
      return Q, float(jnp.min(d))
  # Plain QR cannot tell which direction went missing; the SVD can.
  U, s = _svd(W)
  rank = int(jnp.sum(s > cutoff))
  logger.debug("rank-deficient block: kept %d of %d directions", rank, p)
  smallest = float(s[rank - 1]) if rank else 0.0
  return U[:, :rank], smallest


def orthonormalize(
  W: Inexact[Array, "n p"],
  basis: Optional[Inexact[Array, "n m"]] = None,
  rank_tol=None,
  reorth=True,
) -> Inexact[Array, "n q"]:
  """Orthonormal basis of span(basis) + span(W).

  The columns of basis, when given, are kept verbatim as the leading
  columns. Directions of W whose norm after projection falls below
  rank_tol times the largest column norm of W are dropped, so the result
  has between m and m + p columns.

  Args:
    W: (n, p) ndarray. Candidate directions.
    basis: (n, m) ndarray or None. Orthonormal basis to extend.
    rank_tol: float or None. Relative dependency threshold. Defaults to
      precision.default_rank_tol of the working dtype.
    reorth: bool. Project W against basis twice.

  Returns:
    Q: (n, q) ndarray in the dtype of basis (or W) with orthonormal columns.
  """
  W = jnp.asarray(W)
  if W.ndim == 1:
    W = W[:, None]
  dtype = W.dtype if basis is None else basis.dtype
  if rank_tol is None:
    rank_tol = default_rank_tol(dtype)
  cdt = compute_dtype(dtype)

  if W.shape[1] == 0:
    if basis is None:
      return jnp.zeros((W.shape[0], 0), dtype=dtype)
    return basis

  Wc = W.astype(cdt)
  scale = float(jnp.max(jnp.linalg.norm(Wc, axis=0)))
  Vc = None
  if basis is not None and basis.shape[1]:
    Vc = basis.astype(cdt)
    Wc = project_out(Wc, Vc, reorth=reorth)

  Q, smallest = _orthonormal_columns(Wc, rank_tol, scale)
  if Vc is not None and Q.shape[1] and smallest < math.sqrt(eps(cdt)) * scale:
    # Normalizing a weak direction amplifies its residual overlap with
    # basis by scale / smallest; one more projection and QR removes it.
    Q, _ = _qr(project_out(Q, Vc, reorth=False))
  Q = Q.astype(dtype)
  if basis is None:
    return Q
  return jnp.concatenate([basis, Q], axis=1)


def orthonormality_error(S):
  """max |S^H S - I| evaluated in the compute dtype."""
  S = jnp.asarray(S)
  if S.ndim == 1:
    S = S[:, None]
  if S.shape[1] == 0:
    return 0.0
  Sc = S.astype(compute_dtype(S.dtype))
  G = jnp.conj(Sc).T @ Sc
  return float(jnp.max(jnp.abs(G - jnp.eye(G.shape[0], dtype=G.dtype))))


def is_orthonormal(S, tol=None):
  if tol is None:
    tol = default_ortho_tol(jnp.asarray(S).dtype)
  return orthonormality_error(S) <= tol


__all__ = [
  "is_orthonormal",
  "orthonormality_error",
  "orthonormalize",
  "project_out",
]
