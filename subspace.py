import enum
import logging
from typing import NamedTuple

from orthonormalize import orthonormalize

logger = logging.getLogger(__name__)


class SubspaceState(enum.Enum):
  EXPANDING = "expanding"
  RESTARTING = "restarting"


class SubspaceUpdate(NamedTuple):
  """Result of one expansion or restart.

  Attributes:
    basis: (n, m') ndarray. New orthonormal search basis.
    state: SubspaceState. Which transition was taken.
    added: int. Correction directions that survived orthonormalization.
  """
  basis: object
  state: SubspaceState
  added: int


def next_state(size, nev, maxsubspace):
  """Restart when appending nev directions would exceed maxsubspace."""
  if size + nev > maxsubspace:
    return SubspaceState.RESTARTING
  return SubspaceState.EXPANDING


def update_subspace(S, X, Z, nev, maxsubspace, rank_tol=None):
  """Grow the search basis by Z, or restart it from [X, Z].

  Args:
    S: (n, m) ndarray. Current orthonormal basis.
    X: (n, nev) ndarray. Current Ritz vectors.
    Z: (n, nev) ndarray. Preconditioned residual block.
    nev: int. Number of eigenpairs sought.
    maxsubspace: int. Largest basis an expansion may produce.
    rank_tol: float or None. Passed to orthonormalize.

  Returns:
    SubspaceUpdate. After a restart the basis spans [X, Z] only, so it can
    hold up to 2 * nev columns even when maxsubspace is smaller.
  """
  state = next_state(S.shape[1], nev, maxsubspace)
  if state is SubspaceState.RESTARTING:
    seed = orthonormalize(X, rank_tol=rank_tol)
    basis = orthonormalize(Z, basis=seed, rank_tol=rank_tol)
    added = basis.shape[1] - seed.shape[1]
    logger.debug(
      "restart: %d -> %d columns (%d new)", S.shape[1], basis.shape[1], added
    )
  else:
    basis = orthonormalize(Z, basis=S, rank_tol=rank_tol)
    added = basis.shape[1] - S.shape[1]
  if added < Z.shape[1]:
    logger.debug("dropped %d dependent directions", Z.shape[1] - added)
  return SubspaceUpdate(basis=basis, state=state, added=added)


__all__ = ["SubspaceState", "SubspaceUpdate", "next_state", "update_subspace"]
