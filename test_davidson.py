import os
os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")

import jax
jax.config.update("jax_enable_x64", True)
import jax.numpy as jnp
import pytest
from jax.experimental import sparse as jsparse

from davidson import (
  DavidsonConfig,
  lowest_eigenpairs,
  random_initial_basis,
  solve_eigenproblem,
)
from exceptions import InvalidInput, NotConverged, NumericalFailure
from linear_operator import dense_operator, matrix_free_operator
from orthonormalize import orthonormality_error
from preconditioner import diagonal_preconditioner


def _assert_close(a, b, tol=1e-4):
  err = jnp.max(jnp.abs(a - b))
  assert err < tol, f"max abs diff {err} >= {tol}"


def _random_orthogonal(key, n, dtype=jnp.float64):
  M = jax.random.normal(key, (n, n), dtype=dtype)
  Q, _ = jnp.linalg.qr(M)
  return Q


def _random_unitary(key, n):
  key_r, key_i = jax.random.split(key)
  Mr = jax.random.normal(key_r, (n, n), dtype=jnp.float64)
  Mi = jax.random.normal(key_i, (n, n), dtype=jnp.float64)
  Q, _ = jnp.linalg.qr(Mr + 1j * Mi)
  return Q


def _hermitian_with_spectrum(Q, evals):
  return Q @ jnp.diag(evals).astype(Q.dtype) @ Q.conj().T


def _separated_spectrum(n, nev):
  """nev wanted values in [-1, -0.5], the rest in [1, 2]."""
  wanted = jnp.linspace(-1.0, -0.5, nev)
  rest = jnp.linspace(1.0, 2.0, n - nev)
  return jnp.concatenate([wanted, rest]), wanted


def _residual(A, evals, evecs):
  return jnp.linalg.norm(A @ evecs - evecs * evals[None, :])


@pytest.mark.parametrize("n", [10, 50, 200])
@pytest.mark.parametrize("nev", [1, 2, 5])
def test_diagonal_recovers_lowest(n, nev):
  spectrum, wanted = _separated_spectrum(n, nev)
  perm = jax.random.permutation(jax.random.PRNGKey(n + nev), n)
  A = jnp.diag(spectrum[perm])
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=n * nev)

  evals, evecs = solve_eigenproblem(A, V0, tol=1e-9)

  assert evals.shape == (nev,)
  assert evecs.shape == (n, nev)
  _assert_close(evals, wanted, tol=1e-8)
  assert _residual(A, evals, evecs) < 1e-8


def test_eigenvectors_orthonormal():
  n, nev = 60, 4
  spectrum, _ = _separated_spectrum(n, nev)
  A = _hermitian_with_spectrum(
    _random_orthogonal(jax.random.PRNGKey(0), n), spectrum
  )
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=1)

  _, evecs = solve_eigenproblem(A, V0, tol=1e-9)

  assert orthonormality_error(evecs) < 1e-10


def test_random_symmetric_scenario():
  n, nev = 20, 2
  B = jax.random.normal(jax.random.PRNGKey(42), (n, n), dtype=jnp.float64)
  A = B + B.T + jnp.eye(n)
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=7)

  evals, evecs, info = solve_eigenproblem(
    A, V0, nev=nev, tol=1e-10, maxiter=100, return_info=True
  )

  evals_ref = jnp.linalg.eigh(A)[0][:nev]
  print(f"Eigenvals(Davidson): {evals}")
  print(f"Eigenvals(Reference): {evals_ref}")
  assert info.iterations <= 100
  assert info.residual_norm < 1e-10
  _assert_close(evals, evals_ref, tol=1e-8)


def test_scaled_identity_converges_first_iteration():
  n = 10
  A = 5.0 * jnp.eye(n, dtype=jnp.float64)
  V0 = random_initial_basis(n, 3, dtype=jnp.float64, seed=3)

  evals, evecs, info = solve_eigenproblem(A, V0, return_info=True)

  assert info.iterations == 1
  assert info.restarts == 0
  assert info.residual_norm < 20 * n * jnp.finfo(jnp.float64).eps
  _assert_close(evals, jnp.full((3,), 5.0), tol=1e-12)


def test_maxiter_one_reports_last_iterate():
  n, nev = 50, 2
  A = jnp.diag(jnp.linspace(1.0, 50.0, n))
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=11)

  with pytest.raises(NotConverged) as excinfo:
    solve_eigenproblem(A, V0, tol=1e-12, maxiter=1)

  err = excinfo.value
  assert err.iterations == 1
  assert err.reason == "maxiter"
  assert len(err.residual_history) == 1
  recomputed = _residual(A, err.eigenvalues, err.eigenvectors)
  assert jnp.abs(recomputed - err.residual_norm) < 1e-8 * err.residual_norm


def test_restart_every_iteration():
  n, nev = 10, 2
  spectrum = jnp.concatenate(
    [jnp.array([1.0, 2.0]), jnp.linspace(10.0, 17.0, n - nev)]
  )
  A = jnp.diag(spectrum)
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=5)

  evals, _, info = solve_eigenproblem(
    A, V0, nev=nev, maxsubspace=nev, maxiter=200, tol=1e-8,
    return_info=True,
  )

  assert info.restarts == info.iterations - 1
  assert info.subspace_size <= 2 * nev
  _assert_close(evals, jnp.array([1.0, 2.0]), tol=1e-8)


def test_residual_decreases_over_run():
  n, nev = 100, 3
  spectrum = jnp.concatenate(
    [jnp.linspace(0.1, 0.3, nev), jnp.linspace(2.0, 10.0, n - nev)]
  )
  A = _hermitian_with_spectrum(
    _random_orthogonal(jax.random.PRNGKey(4), n), spectrum
  )
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=4)

  _, _, info = solve_eigenproblem(
    A, V0, tol=1e-9, maxsubspace=12, maxiter=300, return_info=True
  )

  hist = jnp.log(jnp.array(info.residual_history))
  third = max(1, len(hist) // 3)
  assert hist[-1] < hist[0]
  assert jnp.mean(hist[-third:]) < jnp.mean(hist[:third])


def test_operator_variants_agree():
  n, nev = 40, 3
  spectrum, wanted = _separated_spectrum(n, nev)
  A = _hermitian_with_spectrum(
    _random_orthogonal(jax.random.PRNGKey(8), n), spectrum
  )
  A = 0.5 * (A + A.T)
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=8)

  def matmul(X):
    assert X.ndim == 2
    return A @ X

  operators = [
    A,
    dense_operator(A),
    jsparse.BCOO.fromdense(A),
    matmul,
    matrix_free_operator(matmul, n, dtype=A.dtype),
  ]
  for op in operators:
    evals, _ = solve_eigenproblem(op, V0, tol=1e-9)
    _assert_close(evals, wanted, tol=1e-8)


def test_complex_hermitian_promotes_real_basis():
  n, nev = 30, 2
  spectrum, wanted = _separated_spectrum(n, nev)
  A = _hermitian_with_spectrum(_random_unitary(jax.random.PRNGKey(9), n),
                               spectrum)
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=9)

  evals, evecs = solve_eigenproblem(A, V0, tol=1e-9)

  assert evecs.dtype == jnp.complex128
  assert evals.dtype == jnp.float64
  _assert_close(evals, wanted, tol=1e-8)


def test_diagonal_preconditioner():
  n, nev = 60, 2
  B = jax.random.normal(jax.random.PRNGKey(10), (n, n), dtype=jnp.float64)
  A = jnp.diag(jnp.arange(1.0, n + 1.0)) + 1e-2 * (B + B.T)
  V0 = jnp.eye(n, dtype=jnp.float64)[:, :nev]

  evals, _, info = solve_eigenproblem(
    A, V0, tol=1e-9, return_info=True,
    preconditioner=diagonal_preconditioner(jnp.diagonal(A)),
  )

  _assert_close(evals, jnp.linalg.eigh(A)[0][:nev], tol=1e-8)
  assert info.iterations < 30


def test_lowest_eigenpairs_random_start():
  n, nev = 50, 2
  spectrum, wanted = _separated_spectrum(n, nev)
  A = jnp.diag(spectrum)

  evals, evecs = lowest_eigenpairs(A, nev, block_size=4, tol=1e-9, seed=2)

  assert evecs.shape == (n, nev)
  _assert_close(evals, wanted, tol=1e-8)


def test_config_object_and_overrides():
  n, nev = 30, 2
  spectrum, wanted = _separated_spectrum(n, nev)
  A = jnp.diag(spectrum)
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=6)
  cfg = DavidsonConfig(maxiter=50, tol=1e-6)

  evals, _, info = solve_eigenproblem(
    A, V0, config=cfg, tol=1e-9, return_info=True
  )

  assert info.residual_norm < 1e-9
  _assert_close(evals, wanted, tol=1e-8)
  resolved = cfg.resolve(n, nev, jnp.float64)
  assert resolved.maxsubspace == 8 * nev
  assert resolved.tol == 1e-6
  assert cfg.maxsubspace is None


def test_invalid_inputs_fail_before_operator_application():
  n = 12
  A = jnp.diag(jnp.arange(1.0, n + 1.0))
  V0 = random_initial_basis(n, 2, dtype=jnp.float64, seed=0)
  calls = []

  def matmul(X):
    calls.append(X.shape)
    return A @ X

  with pytest.raises(InvalidInput):
    solve_eigenproblem(matmul, V0, nev=3)
  with pytest.raises(InvalidInput):
    solve_eigenproblem(matmul, V0, nev=0)
  with pytest.raises(InvalidInput):
    solve_eigenproblem(matmul, V0, maxsubspace=1)
  with pytest.raises(InvalidInput):
    solve_eigenproblem(matmul, 2.0 * V0)
  with pytest.raises(InvalidInput):
    solve_eigenproblem(matmul, V0, maxiter=0)
  with pytest.raises(InvalidInput):
    solve_eigenproblem(jnp.eye(n + 1), V0)
  assert calls == []


def test_nan_operator_raises_numerical_failure():
  n = 8
  V0 = random_initial_basis(n, 2, dtype=jnp.float64, seed=0)

  def matmul(X):
    return X * jnp.nan

  with pytest.raises(NumericalFailure) as excinfo:
    solve_eigenproblem(matmul, V0)
  assert excinfo.value.iteration == 1
  assert excinfo.value.stage == "operator"


def test_nan_preconditioner_raises_numerical_failure():
  n, nev = 20, 2
  A = jnp.diag(jnp.linspace(1.0, 20.0, n))
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=15)

  with pytest.raises(NumericalFailure) as excinfo:
    solve_eigenproblem(A, V0, preconditioner=lambda R: R * jnp.nan)

  assert excinfo.value.iteration == 1
  assert excinfo.value.stage == "preconditioner"


def test_misspelled_option_is_invalid_input():
  A = jnp.diag(jnp.linspace(1.0, 10.0, 10))
  V0 = random_initial_basis(10, 2, dtype=jnp.float64, seed=16)

  with pytest.raises(InvalidInput, match="maxiters"):
    solve_eigenproblem(A, V0, maxiters=5)


def test_callback_cancels():
  n, nev = 50, 2
  A = jnp.diag(jnp.linspace(1.0, 50.0, n))
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=12)
  seen = []

  def callback(state):
    seen.append(state)
    return state.iteration == 3

  with pytest.raises(NotConverged) as excinfo:
    solve_eigenproblem(A, V0, tol=1e-14, callback=callback)

  assert excinfo.value.reason == "cancelled"
  assert excinfo.value.iterations == 3
  assert [s.iteration for s in seen] == [1, 2, 3]
  assert seen[0].subspace_size == nev


def test_annihilating_preconditioner_stagnates():
  n, nev = 20, 2
  A = jnp.diag(jnp.linspace(1.0, 20.0, n))
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=13)

  with pytest.raises(NotConverged) as excinfo:
    solve_eigenproblem(A, V0, preconditioner=jnp.zeros_like)

  assert excinfo.value.reason == "stagnation"
  assert excinfo.value.iterations == 1


def test_annihilating_preconditioner_stagnates_after_restart():
  n, nev = 20, 2
  A = jnp.diag(jnp.linspace(1.0, 20.0, n))
  V0 = random_initial_basis(n, nev, dtype=jnp.float64, seed=17)

  with pytest.raises(NotConverged) as excinfo:
    solve_eigenproblem(
      A, V0, maxsubspace=nev, preconditioner=jnp.zeros_like
    )

  assert excinfo.value.reason == "stagnation"
  assert excinfo.value.iterations == 1


def test_reduced_precision_runs():
  n, nev = 16, 2
  spectrum = jnp.concatenate(
    [jnp.array([0.1, 0.3]), jnp.linspace(2.0, 10.0, n - nev)]
  )
  A = _hermitian_with_spectrum(
    _random_orthogonal(jax.random.PRNGKey(14), n), spectrum
  ).astype(jnp.float32)
  V0 = random_initial_basis(n, nev, dtype=jnp.bfloat16, seed=14)

  evals, evecs = solve_eigenproblem(A, V0)

  assert evals.dtype == jnp.bfloat16
  assert evecs.dtype == jnp.bfloat16
  evals = evals.astype(jnp.float32)
  assert jnp.all(jnp.isfinite(evals))
  assert jnp.all(evals >= spectrum.min() - 0.5)
  assert jnp.all(evals <= spectrum.max() + 0.5)


def main():
  for n in (10, 50, 200):
    for nev in (1, 2, 5):
      test_diagonal_recovers_lowest(n, nev)
  test_eigenvectors_orthonormal()
  test_random_symmetric_scenario()
  test_scaled_identity_converges_first_iteration()
  test_maxiter_one_reports_last_iterate()
  test_restart_every_iteration()
  test_residual_decreases_over_run()
  test_operator_variants_agree()
  test_complex_hermitian_promotes_real_basis()
  test_diagonal_preconditioner()
  test_lowest_eigenpairs_random_start()
  test_config_object_and_overrides()
  test_invalid_inputs_fail_before_operator_application()
  test_nan_operator_raises_numerical_failure()
  test_nan_preconditioner_raises_numerical_failure()
  test_misspelled_option_is_invalid_input()
  test_callback_cancels()
  test_annihilating_preconditioner_stagnates()
  test_annihilating_preconditioner_stagnates_after_restart()
  test_reduced_precision_runs()
  print("All Davidson tests passed.")


if __name__ == "__main__":
  main()
