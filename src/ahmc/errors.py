"""Exception and warning types."""


class Error(RuntimeError):
    """Base class for errors."""


class IntegratorError(Error):
    """Error raised when integrator step fails."""


class HamiltonianDivergenceError(IntegratorError):
    """Error raised when integration of Hamiltonian dynamics diverges."""


class DomainError(Error):
    """Error raised by a log density function evaluated outside of its domain.

    Log density functions passed to the samplers may raise this exception to indicate
    the position they were evaluated at is infeasible. Within an integrator step it is
    treated identically to a non-finite log density, that is as a divergence.
    """


class DimensionMismatchError(Error):
    """Error raised when the gradient and position arrays differ in shape."""


class LinAlgError(Error):
    """Error raised when a matrix operation raises a linear algebra error."""


class AdaptationError(Error):
    """Error raised when adaptation of transition parameters fails."""


class ReadOnlyStateError(Error):
    """Error raised when writing to attributes of read-only chain state."""


class DivergenceWarning(UserWarning):
    """Warning issued when the proportion of divergent transitions is high."""
