"""Exception types."""


class Error(RuntimeError):
    """Base class for errors."""


class OutOfBoundsError(Error):
    """Error raised when a point lies outside the support of a posterior."""


class IntegratorError(Error):
    """Error raised when integrator step fails."""


class HamiltonianDivergenceError(IntegratorError):
    """Error raised when integration of Hamiltonian dynamics diverges."""


class AdaptationError(Error):
    """Error raised when adaptation of transition parameters fails."""


class BurninError(Error):
    """Error raised when burn-in of chains fails to converge in strict mode."""
