import dataclasses
import logging
import operator as _operator
from typing import Any, Callable, NamedTuple, Optional, Tuple

import jax
import jax.numpy as jnp

from exceptions import InvalidInput, NotConverged, NumericalFailure
from linear_operator import aslinearoperator
from orthonormalize import orthonormality_error, orthonormalize
from precision import (
  compute_dtype,
  default_ortho_tol,
  default_rank_tol,
  default_tol,
  working_dtype,
)
from preconditioner import as_preconditioner
from rayleigh_ritz import rayleigh_ritz, ritz_vectors
from subspace import SubspaceState, update_subspace

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class DavidsonConfig:
  """Settings of a single solve.

  Fields left as None are derived once at call entry by resolve():
    tol = 20 * n * eps(dtype)
    maxsubspace = 8 * m0
    ortho_tol = sqrt(eps(dtype))
    rank_tol = min(1000 * eps(dtype), sqrt(eps(dtype)))

  Attributes:
    maxiter: int. Maximum number of iterations.
    tol: float or None. Threshold on the Frobenius norm of the residual block.
    maxsubspace: int or None. Basis size that triggers a restart.
    preconditioner: None, Preconditioner, LinearOperator, callable or
      ndarray. See preconditioner.as_preconditioner. None is the identity.
    ortho_tol: float or None. Accepted deviation of the initial basis from
      orthonormality, measured as max |S^H S - I|.
    rank_tol: float or None. Relative threshold for dropping dependent
      directions during orthonormalization.
    callback: callable or None. Called with an IterationState after every
      iteration that did not converge. Returning True cancels the solve.
  """
  maxiter: int = 100
  tol: Optional[float] = None
  maxsubspace: Optional[int] = None
  preconditioner: Any = None
  ortho_tol: Optional[float] = None
  rank_tol: Optional[float] = None
  callback: Optional[Callable] = None

  def resolve(self, n, m0, dtype):
    """Copy with every derived default filled in."""
    return dataclasses.replace(
      self,
      tol=default_tol(n, dtype) if self.tol is None else float(self.tol),
      maxsubspace=8 * m0 if self.maxsubspace is None else int(
        self.maxsubspace
      ),
      ortho_tol=(
        default_ortho_tol(dtype) if self.ortho_tol is None
        else float(self.ortho_tol)
      ),
      rank_tol=(
        default_rank_tol(dtype) if self.rank_tol is None
        else float(self.rank_tol)
      ),
    )


class DavidsonInfo(NamedTuple):
  """Diagnostics of a converged solve.

  Attributes:
    iterations: int. Iterations performed, the converging one included.
    residual_norm: float. Final residual norm.
    residual_history: tuple of float. Residual norm per iteration.
    restarts: int. Number of restarts.
    subspace_size: int. Basis size in the final iteration.
  """
  iterations: int
  residual_norm: float
  residual_history: Tuple[float, ...]
  restarts: int
  subspace_size: int


class IterationState(NamedTuple):
  """What a callback sees after an iteration that did not converge."""
  iteration: int
  subspace_size: int
  ritz_values: Any
  residual_norm: float


def _check_finite(x, message, iteration, stage):
  if not bool(jnp.all(jnp.isfinite(x))):
    raise NumericalFailure(message, iteration, stage)


def _validate(op, S, nev, cfg):
  n, m0 = S.shape
  if op.n != n:
    raise InvalidInput(
      f"operator dimension {op.n} does not match basis rows {n}"
    )
  if m0 < 1:
    raise InvalidInput("initial basis has no columns")
  if m0 > n:
    raise InvalidInput(f"initial basis has {m0} columns for n = {n}")
  if not 1 <= nev <= m0:
    raise InvalidInput(f"nev must lie in [1, {m0}], got {nev}")
  if cfg.maxiter < 1:
    raise InvalidInput(f"maxiter must be positive, got {cfg.maxiter}")
  if not cfg.tol > 0:
    raise InvalidInput(f"tol must be positive, got {cfg.tol}")
  if m0 > cfg.maxsubspace:
    raise InvalidInput(
      f"initial basis width {m0} exceeds maxsubspace {cfg.maxsubspace}"
    )
  err = orthonormality_error(S)
  if not err <= cfg.ortho_tol:
    raise InvalidInput(
      f"initial basis is not column-orthonormal: max |S^H S - I| = {err:.3e}"
    )


def _not_converged(pairs, iterations, reason, history):
  return NotConverged(
    residual_norm=pairs.residual_norm,
    iterations=iterations,
    reason=reason,
    eigenvalues=pairs.values,
    eigenvectors=pairs.vectors,
    residual_history=history,
  )


def solve_eigenproblem(
  operator,
  initial_basis,
  nev=None,
  config=None,
  *,
  return_info=False,
  **options,
):
  """Lowest eigenpairs of a Hermitian operator by block Davidson.

  Each iteration applies the operator to the search basis, solves the
  projected eigenproblem, and checks the residual of the nev lowest Ritz
  pairs. Unless converged, the preconditioned residual is appended to the
  basis; when that would exceed maxsubspace the basis is restarted from the
  Ritz vectors and the new correction alone.

  Args:
    operator: ndarray, JAXSparse, LinearOperator or callable. A Hermitian
      map; a callable gets (n, k) blocks.
    initial_basis: (n, m0) ndarray with orthonormal columns. It is checked,
      not re-normalized. Its dtype sets the working precision.
    nev: int or None. Number of eigenpairs, 1 <= nev <= m0. Defaults to m0.
    config: DavidsonConfig or None.
    return_info: bool. Also return a DavidsonInfo.
    **options: Overrides of DavidsonConfig fields, e.g. tol=1e-10.

  Returns:
    eigenvalues: (nev,) ndarray, ascending.
    eigenvectors: (n, nev) ndarray with orthonormal columns.
    info: DavidsonInfo, only with return_info.

  Raises:
    InvalidInput: before any operator application.
    NumericalFailure: non-finite data from the operator, the projection or
      the preconditioner.
    NotConverged: maxiter exhausted, no progress possible, or cancelled by
      the callback.
  """
  S = jnp.asarray(initial_basis)
  if S.ndim == 1:
    S = S[:, None]
  if S.ndim != 2:
    raise InvalidInput(f"initial basis must be 2-D, got shape {S.shape}")
  n, m0 = S.shape

  op = aslinearoperator(operator, n=n)
  dtype = working_dtype(S.dtype, op.dtype)
  if op.dtype is not None and op.dtype != dtype and op.kind != "matrix_free":
    op = op.astype(dtype)
  S = S.astype(dtype)

  nev = m0 if nev is None else _operator.index(nev)
  cfg = config if config is not None else DavidsonConfig()
  if options:
    known = {f.name for f in dataclasses.fields(DavidsonConfig)}
    unknown = sorted(set(options) - known)
    if unknown:
      raise InvalidInput(f"unknown option(s): {', '.join(unknown)}")
    cfg = dataclasses.replace(cfg, **options)
  cfg = cfg.resolve(n, m0, dtype)
  _validate(op, S, nev, cfg)
  precond = as_preconditioner(cfg.preconditioner)

  logger.debug(
    "davidson: n=%d m0=%d nev=%d dtype=%s tol=%.3e maxsubspace=%d",
    n, m0, nev, dtype, cfg.tol, cfg.maxsubspace,
  )

  history = []
  restarts = 0
  for it in range(1, cfg.maxiter + 1):
    AS = op.apply(S)
    if AS.dtype != dtype:
      # A matrix-free operator may reveal itself as complex only here.
      promoted = working_dtype(dtype, AS.dtype)
      if promoted != dtype:
        dtype = promoted
        S = S.astype(dtype)
      AS = AS.astype(dtype)
    _check_finite(AS, "operator produced non-finite values", it, "operator")

    evals, evecs = rayleigh_ritz(S, AS, iteration=it)
    pairs = ritz_vectors(S, AS, evals, evecs, nev)
    history.append(pairs.residual_norm)
    logger.debug(
      "iter %d: subspace %d, residual %.3e", it, S.shape[1],
      pairs.residual_norm,
    )

    if pairs.residual_norm < cfg.tol:
      logger.info(
        "davidson converged in %d iterations, residual %.3e",
        it, pairs.residual_norm,
      )
      if return_info:
        info = DavidsonInfo(
          iterations=it,
          residual_norm=pairs.residual_norm,
          residual_history=tuple(history),
          restarts=restarts,
          subspace_size=S.shape[1],
        )
        return pairs.values, pairs.vectors, info
      return pairs.values, pairs.vectors

    if cfg.callback is not None:
      state = IterationState(
        iteration=it,
        subspace_size=S.shape[1],
        ritz_values=pairs.values,
        residual_norm=pairs.residual_norm,
      )
      if cfg.callback(state):
        raise _not_converged(pairs, it, "cancelled", history)

    Z = precond.apply(pairs.residual, pairs.values)
    if Z.shape != pairs.residual.shape:
      raise InvalidInput(
        f"preconditioner returned shape {Z.shape} for a residual of shape "
        f"{pairs.residual.shape}"
      )
    Z = Z.astype(dtype)
    _check_finite(
      Z, "preconditioner produced non-finite values", it, "preconditioner"
    )

    update = update_subspace(
      S, pairs.vectors, Z, nev, cfg.maxsubspace, rank_tol=cfg.rank_tol
    )
    if update.state is SubspaceState.RESTARTING:
      restarts += 1
    if update.added == 0:
      logger.debug("iter %d: no new search direction", it)
      raise _not_converged(pairs, it, "stagnation", history)
    S = update.basis

  raise _not_converged(pairs, cfg.maxiter, "maxiter", history)


davidson = solve_eigenproblem


def random_initial_basis(n, m, dtype=None, seed=0):
  """Random (n, m) matrix with orthonormal columns.

  Args:
    n: int. Number of rows.
    m: int. Number of columns, m <= n.
    dtype: dtype or None. Defaults to the default JAX float type.
    seed: int. PRNG seed.
  """
  dtype = jnp.dtype(jnp.result_type(float) if dtype is None else dtype)
  key = jax.random.PRNGKey(seed)
  W = jax.random.normal(key, (n, m), dtype=compute_dtype(dtype))
  return orthonormalize(W).astype(dtype)


def lowest_eigenpairs(A, nev, n=None, block_size=None, dtype=None, seed=0,
                      **options):
  """Lowest eigenpairs of A from a random initial block.

  Args:
    A: ndarray, JAXSparse, LinearOperator or callable.
    nev: int. Number of eigenpairs.
    n: int or None. Problem size, required for callables.
    block_size: int or None. Width of the random initial basis, at least
      nev. Defaults to nev.
    dtype: dtype or None. Working dtype. Defaults to the operator dtype.
    seed: int. PRNG seed for the initial basis.
    **options: Forwarded to solve_eigenproblem.
  """
  op = aslinearoperator(A, n=n)
  if dtype is None:
    dtype = op.dtype
  m0 = nev if block_size is None else block_size
  V0 = random_initial_basis(op.n, m0, dtype=dtype, seed=seed)
  return solve_eigenproblem(op, V0, nev=nev, **options)


__all__ = [
  "DavidsonConfig",
  "DavidsonInfo",
  "IterationState",
  "davidson",
  "lowest_eigenpairs",
  "random_initial_basis",
  "solve_eigenproblem",
]
