import math

import jax.numpy as jnp

REDUCED_DTYPES = (jnp.dtype(jnp.bfloat16), jnp.dtype(jnp.float16))


def real_dtype(dtype):
  """Real counterpart of a (possibly complex) dtype."""
  return jnp.dtype(jnp.finfo(dtype).dtype)


def eps(dtype):
  """Machine epsilon of the working scalar type as a Python float."""
  return float(jnp.finfo(dtype).eps)


def is_reduced(dtype):
  return real_dtype(dtype) in REDUCED_DTYPES


def compute_dtype(dtype):
  """Dtype used for QR, SVD and the small eigendecomposition.

  XLA does not factorize half precision matrices, so reduced precision
  blocks are promoted to float32 for the factorizations and cast back.
  """
  dtype = jnp.dtype(dtype)
  if is_reduced(dtype):
    return jnp.dtype(jnp.float32)
  return dtype


def working_dtype(basis_dtype, operator_dtype=None):
  """Dtype a solve runs in.

  The initial basis fixes the precision; a complex operator promotes a real
  basis to the complex type of the same precision.
  """
  dtype = jnp.dtype(basis_dtype)
  if not jnp.issubdtype(dtype, jnp.inexact):
    dtype = jnp.dtype(jnp.result_type(float))
  if operator_dtype is None:
    return dtype
  if (
    jnp.issubdtype(jnp.dtype(operator_dtype), jnp.complexfloating)
    and not jnp.issubdtype(dtype, jnp.complexfloating)
  ):
    return jnp.dtype(jnp.result_type(compute_dtype(dtype), jnp.complex64))
  return dtype


def default_tol(n, dtype):
  """Residual tolerance 20 * n * eps, scaled by size and precision."""
  return 20.0 * n * eps(dtype)


def default_ortho_tol(dtype):
  return math.sqrt(eps(dtype))


def default_rank_tol(dtype):
  """Relative norm below which a new direction counts as dependent."""
  e = eps(dtype)
  return min(1000.0 * e, math.sqrt(e))


__all__ = [
  "REDUCED_DTYPES",
  "compute_dtype",
  "default_ortho_tol",
  "default_rank_tol",
  "default_tol",
  "eps",
  "is_reduced",
  "real_dtype",
  "working_dtype",
]
