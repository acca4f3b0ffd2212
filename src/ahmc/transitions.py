"""Markov transition kernels used to construct Hamiltonian Monte Carlo chains."""

from __future__ import annotations

from abc import ABC, abstractmethod
from math import exp, isfinite, isnan
from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from numpy.random import Generator

    from ahmc.integrators import Integrator
    from ahmc.states import PointState
    from ahmc.systems import System


class HMCStats(NamedTuple):
    """Statistics of a single integration transition.

    Parameters:
        accept_prob: Metropolis acceptance probability of the proposed move.
        accepted: Whether the proposed move was accepted.
        step_size: Integrator step size used.
        n_step: Number of integrator steps completed, fewer than the number requested
            if the trajectory diverged.
        diverging: Whether the trajectory was terminated by a divergence.
    """

    accept_prob: float
    accepted: bool
    step_size: float
    n_step: int
    diverging: bool


class Transition(ABC):
    """Base class for Markov transitions."""

    @abstractmethod
    def sample(
        self, state: PointState, rng: Generator
    ) -> tuple[PointState, HMCStats | None]:
        """Sample a new chain state from the Markov transition kernel.

        Args:
            state: Current chain state to condition transition kernel on.
            rng: Numpy random number generator.

        Returns:
            Tuple of new chain state and transition statistics, with the statistics
            `None` for transitions which do not record any.
        """


class IndependentMomentumTransition(Transition):
    """Independent momentum transition.

    Independently resamples the momentum component of the state from its conditional
    distribution given the remaining state.
    """

    def __init__(self, system: System):
        """
        Args:
            system: Hamiltonian system defining conditional distribution on momentum.
        """
        self.system = system

    def sample(self, state: PointState, rng: Generator) -> tuple[PointState, None]:
        state = state.copy()
        state.mom = self.system.sample_momentum(state, rng)
        return state, None


class IntegrationTransition(Transition):
    """Base class for Markov transitions based on simulating Hamiltonian dynamics.

    Trajectories are simulated with a symplectic integrator from the current state with
    the final state of the trajectory proposed as the next chain state and accepted or
    rejected in a Metropolis step. A trajectory terminated early by a divergence is
    always rejected.
    """

    def __init__(self, system: System, integrator: Integrator):
        """
        Args:
            system: Hamiltonian system defining the Hamiltonian function.
            integrator: Symplectic integrator used to simulate dynamics.
        """
        self.system = system
        self.integrator = integrator

    def _sample_n_step(
        self, state: PointState, n_step: int, rng: Generator
    ) -> tuple[PointState, HMCStats]:
        h_init = self.system.h(state)
        trajectory = self.integrator.integrate(state, n_step)
        diverging = trajectory.diverging
        if diverging:
            accept_prob = 0.0
        else:
            h_final = self.system.h(trajectory.state)
            diverging = not isfinite(h_final)
            h_diff = h_init - h_final
            # Explicitly check for NaN as min(0, NaN) = 0
            accept_prob = 0.0 if diverging or isnan(h_diff) else exp(min(0, h_diff))
        # Uniform always drawn so random stream consumption does not depend on outcome
        accepted = rng.uniform() < accept_prob
        if accepted:
            state = trajectory.state
        stats = HMCStats(
            accept_prob=accept_prob,
            accepted=accepted,
            step_size=self.integrator.step_size,
            n_step=trajectory.n_step,
            diverging=diverging,
        )
        return state, stats

    @abstractmethod
    def sample(
        self, state: PointState, rng: Generator
    ) -> tuple[PointState, HMCStats]:
        pass


class MetropolisStaticIntegrationTransition(IntegrationTransition):
    """Static integration transition with Metropolis sampling of a proposed state.

    The Hamiltonian dynamics are simulated for a fixed number of integrator steps and
    the final state accepted with probability :math:`\\min(1, \\exp(h_0 - h_L))`.

    References:
      1. Duane, S., Kennedy, A.D., Pendleton, B.J. and Roweth, D., 1987.
         Hybrid Monte Carlo. Physics letters B, 195(2), pp.216-222.
      2. Neal, R.M., 2011. MCMC using Hamiltonian dynamics. Handbook of Markov Chain
         Monte Carlo, 2(11), p.2.
    """

    def __init__(self, system: System, integrator: Integrator, n_step: int):
        """
        Args:
            system: Hamiltonian system defining the Hamiltonian function.
            integrator: Symplectic integrator used to simulate dynamics.
            n_step: Number of integrator steps to simulate in each transition.
        """
        super().__init__(system, integrator)
        if not (isinstance(n_step, int) and n_step > 0):
            msg = "n_step must be a positive integer."
            raise ValueError(msg)
        self.n_step = n_step

    def sample(
        self, state: PointState, rng: Generator
    ) -> tuple[PointState, HMCStats]:
        return self._sample_n_step(state, self.n_step, rng)


class MetropolisFixedTimeIntegrationTransition(IntegrationTransition):
    """Fixed integration time transition with Metropolis sampling of a proposed state.

    The number of integrator steps is chosen so that the simulated time is close to a
    fixed integration time for the current step size, which is useful when the step
    size is being adapted.

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
    """

    def __init__(
        self,
        system: System,
        integrator: Integrator,
        integration_time: float,
        max_n_step: int = 1000,
    ):
        """
        Args:
            system: Hamiltonian system defining the Hamiltonian function.
            integrator: Symplectic integrator used to simulate dynamics.
            integration_time: Total time to simulate dynamics for in each transition.
            max_n_step: Upper bound on the number of integrator steps.
        """
        super().__init__(system, integrator)
        if not integration_time > 0:
            msg = "integration_time must be positive."
            raise ValueError(msg)
        self.integration_time = integration_time
        self.max_n_step = max_n_step

    def sample(
        self, state: PointState, rng: Generator
    ) -> tuple[PointState, HMCStats]:
        n_step = max(1, round(self.integration_time / self.integrator.step_size))
        return self._sample_n_step(state, min(n_step, self.max_n_step), rng)
