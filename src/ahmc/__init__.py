"""Hamiltonian Monte Carlo with adaptive step size and preconditioner warm up."""

__authors__ = "Matt Graham"
__license__ = "MIT"

import ahmc.adapters
import ahmc.errors
import ahmc.integrators
import ahmc.preconditioners
import ahmc.samplers
import ahmc.schedulers
import ahmc.states
import ahmc.systems
import ahmc.transitions
from ahmc.samplers import HamiltonianMonteCarlo, SamplerConfig
