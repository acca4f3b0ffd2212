"""Hamiltonian systems encapsulating energy functions and their derivatives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

from ahmc.errors import DimensionMismatchError, DomainError, HamiltonianDivergenceError
from ahmc.preconditioners import Preconditioner, UnitPreconditioner
from ahmc.states import cache_in_state

if TYPE_CHECKING:
    from numpy.random import Generator
    from numpy.typing import NDArray

    from ahmc.states import PointState
    from ahmc.types import LogDensityFunction


class System(ABC):
    r"""Base class for Hamiltonian systems.

    The Hamiltonian function :math:`h` is assumed to have the general form

    .. math::

        h(q, p) = h_1(q) + h_2(p)

    where :math:`q` and :math:`p` are the position and momentum variables respectively,
    :math:`h_1(q) = -\log \pi(q)` is the negative logarithm of the (unnormalized) target
    density and :math:`h_2` a kinetic energy term. The exact flows of both components
    are assumed to be tractable so they can be composed in a splitting integrator.
    """

    def __init__(self, log_dens_and_grad: LogDensityFunction):
        """
        Args:
            log_dens_and_grad: Function which given a position array returns a tuple
                with first entry the (unnormalized) log density of the target
                distribution at that position and second entry the gradient of the log
                density with respect to the position, an array of the same shape as the
                position. May raise :py:exc:`ahmc.errors.DomainError` if evaluated at a
                position outside of the support of the target distribution.
        """
        self._log_dens_and_grad = log_dens_and_grad

    @cache_in_state("pos")
    def log_dens_and_grad(self, state: PointState) -> tuple[float, NDArray]:
        """Log density of target distribution and its gradient.

        Args:
            state: State to evaluate at.

        Returns:
            Tuple of log density and gradient with respect to position.

        Raises:
            HamiltonianDivergenceError: If the log density function signals the
                position is outside of its domain.
            DimensionMismatchError: If the gradient and position shapes differ.
        """
        try:
            log_dens, grad = self._log_dens_and_grad(state.pos)
        except DomainError as e:
            msg = f"Log density evaluated outside of domain: {e}"
            raise HamiltonianDivergenceError(msg) from e
        grad = np.asarray(grad, dtype=np.float64)
        if grad.shape != np.shape(state.pos):
            msg = (
                f"Gradient shape {grad.shape} does not match position shape "
                f"{np.shape(state.pos)}."
            )
            raise DimensionMismatchError(msg)
        return float(log_dens), grad

    def log_dens(self, state: PointState) -> float:
        return self.log_dens_and_grad(state)[0]

    def grad_log_dens(self, state: PointState) -> NDArray:
        return self.log_dens_and_grad(state)[1]

    def h1(self, state: PointState) -> float:
        """Negative log density component of Hamiltonian."""
        return -self.log_dens(state)

    def dh1_dpos(self, state: PointState) -> NDArray:
        """Derivative of `h1` Hamiltonian component with respect to position."""
        return -self.grad_log_dens(state)

    def h1_flow(self, state: PointState, dt: float):
        """Apply exact flow map corresponding to `h1` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state: State to start flow at.
            dt: Time interval to simulate flow for.
        """
        state.mom = state.mom - dt * self.dh1_dpos(state)

    @abstractmethod
    def h2(self, state: PointState) -> float:
        """Kinetic energy component of Hamiltonian."""

    @abstractmethod
    def dh2_dmom(self, state: PointState) -> NDArray:
        """Derivative of `h2` Hamiltonian component with respect to momentum."""

    def h2_flow(self, state: PointState, dt: float):
        """Apply exact flow map corresponding to `h2` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state: State to start flow at.
            dt: Time interval to simulate flow for.
        """
        state.pos = state.pos + dt * self.dh2_dmom(state)

    def h(self, state: PointState) -> float:
        """Hamiltonian function for system."""
        return self.h1(state) + self.h2(state)

    @abstractmethod
    def sample_momentum(self, state: PointState, rng: Generator) -> NDArray:
        """Sample a momentum from its conditional distribution given a position.

        Args:
            state: State to use position component from.
            rng: Numpy random number generator.

        Returns:
            Sampled momentum.
        """


class EuclideanMetricSystem(System):
    r"""Hamiltonian system with a Euclidean metric on the position space.

    The kinetic energy is

    .. math::

        h_2(p) = \frac{1}{2} p^T M^{-1} p

    where the positive definite matrix :math:`M` is the preconditioner (also called the
    metric or mass matrix) and the momentum is marginally distributed as
    :math:`\mathcal{N}(0, M)`.
    """

    def __init__(
        self,
        log_dens_and_grad: LogDensityFunction,
        *,
        metric: Preconditioner | None = None,
    ):
        """
        Args:
            log_dens_and_grad: Function returning the log density of the target
                distribution and its gradient at a position. See :py:class:`System`.
            metric: Preconditioner defining kinetic energy. Defaults to the identity.
        """
        super().__init__(log_dens_and_grad)
        self.metric = UnitPreconditioner(None) if metric is None else metric

    @property
    def metric(self) -> Preconditioner:
        return self._metric

    @metric.setter
    def metric(self, value: Preconditioner):
        if not isinstance(value, Preconditioner):
            msg = "metric must be a Preconditioner instance."
            raise TypeError(msg)
        self._metric = value

    # Cached momentum derivatives are keyed by system not metric so are only valid
    # while the metric is unchanged, which holds within a single transition.
    @cache_in_state("mom")
    def h2(self, state: PointState) -> float:
        return 0.5 * self.metric.quadratic_form_inv(state.mom)

    @cache_in_state("mom")
    def dh2_dmom(self, state: PointState) -> NDArray:
        return self.metric.inv @ state.mom

    def sample_momentum(
        self,
        state: PointState,
        rng: Generator,
    ) -> NDArray:
        return self.metric.sqrt @ rng.standard_normal(np.shape(state.pos))
