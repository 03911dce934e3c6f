import logging

import jax.numpy as jnp

from davidson import solve_eigenproblem
from exceptions import InvalidInput
from linear_operator import aslinearoperator
from orthonormalize import orthonormalize
from precision import compute_dtype

logger = logging.getLogger(__name__)


def _reseed(V, dtype):
  """Cast a previous eigenvector block and restore orthonormality."""
  V = jnp.asarray(V).astype(compute_dtype(dtype))
  return orthonormalize(V).astype(dtype)


def solve_mixed_precision(
  operator,
  initial_basis,
  dtypes=(jnp.float32, jnp.float64),
  nev=None,
  tols=None,
  config=None,
  return_info=False,
  **options,
):
  """Solve in a cheap precision first, then refine in higher ones.

  Every stage after the first starts from the eigenvectors of the previous
  stage, cast to the new dtype and re-orthonormalized.

  Args:
    operator: ndarray, JAXSparse, LinearOperator or callable.
    initial_basis: (n, m0) ndarray. Starting block of the first stage; it is
      cast to dtypes[0] and re-orthonormalized.
    dtypes: sequence of dtypes, lowest precision first.
    nev: int or None. Number of eigenpairs.
    tols: sequence of float/None or None. Per-stage tolerance; None uses the
      default of the stage dtype.
    config: DavidsonConfig or None. Shared by all stages.
    return_info: bool. Also return the list of per-stage DavidsonInfo.
    **options: Overrides of DavidsonConfig fields for all stages.

  Returns:
    eigenvalues: (nev,) ndarray in the last dtype.
    eigenvectors: (n, nev) ndarray in the last dtype.
    infos: list of DavidsonInfo, only with return_info.
  """
  dtypes = [jnp.dtype(d) for d in dtypes]
  if not dtypes:
    raise InvalidInput("dtypes must name at least one precision")
  if tols is None:
    tols = [None] * len(dtypes)
  if len(tols) != len(dtypes):
    raise InvalidInput(
      f"got {len(tols)} tolerances for {len(dtypes)} precisions"
    )

  V0 = jnp.asarray(initial_basis)
  if V0.ndim == 1:
    V0 = V0[:, None]
  op = aslinearoperator(operator, n=V0.shape[0])

  V = V0
  infos = []
  evals = None
  for stage, (dtype, tol) in enumerate(zip(dtypes, tols)):
    stage_op = op if op.kind == "matrix_free" else op.astype(dtype)
    stage_opts = dict(options)
    if tol is not None:
      stage_opts["tol"] = tol
    evals, V, info = solve_eigenproblem(
      stage_op,
      _reseed(V, dtype),
      nev=nev,
      config=config,
      return_info=True,
      **stage_opts,
    )
    logger.info(
      "stage %d (%s): %d iterations, residual %.3e",
      stage, dtype, info.iterations, info.residual_norm,
    )
    infos.append(info)
    nev = V.shape[1]

  if return_info:
    return evals, V, infos
  return evals, V


__all__ = ["solve_mixed_precision"]
