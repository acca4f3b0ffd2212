"""Symplectic integrators for simulation of Hamiltonian dynamics."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from ahmc.errors import AdaptationError, HamiltonianDivergenceError, IntegratorError

if TYPE_CHECKING:
    from ahmc.states import PointState
    from ahmc.systems import System


logger = logging.getLogger(__name__)


class Trajectory(NamedTuple):
    """Outcome of simulating a sequence of integrator steps.

    Parameters:
        state: State at end of last successfully completed step.
        n_step: Number of integrator steps successfully completed.
        diverging: Whether the simulation was terminated early by an integrator error.
    """

    state: PointState
    n_step: int
    diverging: bool


class Integrator(ABC):
    r"""Base class for integrators for simulating Hamiltonian dynamics.

    For a Hamiltonian function :math:`h` with position variables :math:`q` and momentum
    variables :math:`p`, the canonical Hamiltonian dynamic is defined by the ordinary
    differential equation system

    .. math::

        \dot{q} = \nabla_2 h(q, p),  \qquad \dot{p} = -\nabla_1 h(q, p),

    with the flow map :math:`\Phi` corresponding to the solution of the corresponding
    initial value problem a time-reversible and symplectic (and by consequence
    volume-preserving) map.

    Derived classes implement a :py:meth:`_step` method which approximates the flow-map
    over some small time interval while conserving the properties of being
    time-reversible and symplectic.
    """

    def __init__(self, system: System, step_size: float | None = None):
        """
        Args:
            system: Hamiltonian system to integrate the dynamics of.
            step_size: Integrator time step. If set to :code:`None` it is assumed that a
                step size adapter will be used to set the step size before calling the
                `step` method.
        """
        self.system = system
        self.step_size = step_size

    def step(self, state: PointState) -> PointState:
        """Perform a single integrator step from a supplied state.

        Args:
            state: System state to perform integrator step from. Not modified.

        Returns:
            New object corresponding to stepped state.

        Raises:
            HamiltonianDivergenceError: If the log density or its gradient is
                non-finite at the stepped position.
        """
        if self.step_size is None:
            msg = (
                "Integrator `step_size` is `None`. This value should only be used if a "
                "step size adapter is being used to set the step size."
            )
            raise AdaptationError(msg)
        state = state.copy()
        self._step(state, self.step_size)
        return state

    def integrate(self, state: PointState, n_step: int) -> Trajectory:
        """Simulate a fixed number of integrator steps.

        Simulation stops at the first step raising an
        :py:exc:`ahmc.errors.IntegratorError`, with the trajectory then marked as
        diverging.

        Args:
            state: State to start from. Not modified.
            n_step: Number of steps to simulate.

        Returns:
            Final state, number of completed steps and divergence flag.
        """
        for s in range(n_step):
            try:
                state = self.step(state)
            except IntegratorError as e:
                logger.info(f"Terminating trajectory after {s} steps due to error:\n{e}")
                return Trajectory(state, s, True)
        return Trajectory(state, n_step, False)

    @abstractmethod
    def _step(self, state: PointState, time_step: float):
        """Implementation of single integrator step.

        Args:
            state: System state to perform integrator step from. Updated in place.
            time_step: Integrator time step. May be positive or negative.
        """


class LeapfrogIntegrator(Integrator):
    r"""Leapfrog integrator for Hamiltonian systems with tractable component flows.

    The overall integrator step :math:`\Psi` is defined by the symmetric composition

    .. math::

        \Psi(t) = \Phi_1(t/2) \circ \Phi_2(t) \circ \Phi_1(t/2)

    where :math:`\Phi_1` and :math:`\Phi_2` are the exact flow maps associated with the
    Hamiltonian components :math:`h_1` and :math:`h_2` respectively. For separable
    Hamiltonians this is the Störmer-Verlet method, a symmetric, second-order accurate
    symplectic integrator.

    References:
      1. Leimkuhler, B., & Reich, S. (2004). Simulating Hamiltonian dynamics (Vol. 14).
         Cambridge University Press.
    """

    def _step(self, state: PointState, time_step: float):
        self.system.h1_flow(state, 0.5 * time_step)
        self.system.h2_flow(state, time_step)
        log_dens, grad = self.system.log_dens_and_grad(state)
        if not (np.isfinite(log_dens) and np.all(np.isfinite(grad))):
            msg = "Non-finite log density or gradient at integrator step position."
            raise HamiltonianDivergenceError(msg)
        self.system.h1_flow(state, 0.5 * time_step)
