"""Log density gradients by automatic differentiation."""

from __future__ import annotations

from functools import wraps
from typing import TYPE_CHECKING

AUTOGRAD_AVAILABLE = True
try:
    import autograd
except ImportError:
    AUTOGRAD_AVAILABLE = False

if TYPE_CHECKING:
    from typing import Optional

    from numpy.typing import ArrayLike

    from hamchain.types import GradientFunction, ScalarFunction, ScalarLike


def _autograd_grad_and_value(log_density: ScalarFunction) -> GradientFunction:
    value_and_grad = autograd.value_and_grad(log_density)

    @wraps(log_density)
    def grad_and_value(v: ArrayLike) -> tuple[ArrayLike, ScalarLike]:
        value, grad = value_and_grad(v)
        return grad, value

    return grad_and_value


"""Gradient constructors and availability flags of the supported backends."""
BACKENDS = {"autograd": (_autograd_grad_and_value, AUTOGRAD_AVAILABLE)}

"""Backend used when none is specified."""
DEFAULT_BACKEND = "autograd"


def gradient_or_fallback(
    grad_log_density: Optional[GradientFunction],
    log_density: ScalarFunction,
    backend: Optional[str] = DEFAULT_BACKEND,
) -> GradientFunction:
    """Return a gradient function for a log density, deriving one if needed.

    Args:
        grad_log_density: Gradient function supplied by the user, or `None`.
        log_density: Log density function to differentiate if no gradient function
            is supplied.
        backend: Name of automatic differentiation backend, or `None` to require
            an explicit gradient function.

    Returns:
        `grad_log_density` if not `None`, otherwise a function returning the
        gradient and value of `log_density` as a tuple.

    Raises:
        ValueError: If no gradient function is supplied and the backend is `None`,
            unknown or not installed.
    """
    if grad_log_density is not None:
        return grad_log_density
    if backend is None:
        msg = "No autodiff backend selected so grad_log_density must be provided."
        raise ValueError(msg)
    backend = backend.lower()
    if backend not in BACKENDS:
        msg = f"Autodiff backend {backend} not recognised, options: {tuple(BACKENDS)}."
        raise ValueError(msg)
    make_gradient, available = BACKENDS[backend]
    if not available:
        msg = (
            f"Autodiff backend {backend} is not available so grad_log_density "
            "must be provided."
        )
        raise ValueError(msg)
    return make_gradient(log_density)
