class DavidsonError(Exception):
  """Base class for eigensolver failures."""


class InvalidInput(DavidsonError, ValueError):
  """Inputs rejected before any operator application."""


class NumericalFailure(DavidsonError, ArithmeticError):
  """Non-finite values appeared during an iteration.

  Args:
    message: str. Human readable description.
    iteration: int or None. 1-based iteration in which the failure occurred.
    stage: str or None. One of "operator", "projection", "preconditioner".
  """

  def __init__(self, message, iteration=None, stage=None):
    super().__init__(message)
    self.iteration = iteration
    self.stage = stage

  def __reduce__(self):
    return (self.__class__, (self.args[0], self.iteration, self.stage))


class NotConverged(DavidsonError, RuntimeError):
  """Residual norm did not drop below tol.

  The last iterate is attached for diagnostics only; it is not a result.

  Attributes:
    residual_norm: float. Frobenius norm of the final residual block.
    iterations: int. Number of iterations performed.
    reason: str. "maxiter", "stagnation" or "cancelled".
    eigenvalues: (nev,) ndarray. Ritz values of the last iterate.
    eigenvectors: (n, nev) ndarray. Ritz vectors of the last iterate.
    residual_history: tuple of float. Residual norm per iteration.
  """

  def __init__(
    self,
    residual_norm,
    iterations,
    reason="maxiter",
    eigenvalues=None,
    eigenvectors=None,
    residual_history=(),
  ):
    super().__init__(
      f"Davidson did not converge ({reason}) after {iterations} iterations, "
      f"residual norm {residual_norm:.3e}"
    )
    self.residual_norm = residual_norm
    self.iterations = iterations
    self.reason = reason
    self.eigenvalues = eigenvalues
    self.eigenvectors = eigenvectors
    self.residual_history = tuple(residual_history)

  def __reduce__(self):
    return (
      self.__class__,
      (
        self.residual_norm,
        self.iterations,
        self.reason,
        self.eigenvalues,
        self.eigenvectors,
        self.residual_history,
      ),
    )


__all__ = ["DavidsonError", "InvalidInput", "NotConverged", "NumericalFailure"]
