"""Methods for adaptively setting algorithmic parameters of transitions."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from math import exp, isfinite, log
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from ahmc.errors import AdaptationError, IntegratorError, LinAlgError
from ahmc.preconditioners import DensePreconditioner, DiagonalPreconditioner

if TYPE_CHECKING:
    from typing import Any

    from numpy.random import Generator
    from numpy.typing import NDArray

    from ahmc.integrators import Integrator
    from ahmc.states import PointState
    from ahmc.systems import System
    from ahmc.transitions import HMCStats, IntegrationTransition
    from ahmc.types import AdaptationStatisticFunction, AdapterState


logger = logging.getLogger(__name__)


class DualAveragingState(NamedTuple):
    """State of a dual averaging step size adapter.

    Parameters:
        iter: Number of updates performed so far. Never reset during warm up.
        adapt_stat_error: Running weighted average of the difference between the
            target and observed adaptation statistic.
        log_step_size: Logarithm of step size to use for the next transition.
        smoothed_log_step_size: Iterate-averaged logarithm of step size, used as the
            final step size once adaptation stops.
        log_step_size_reg_target: Value the log step size is regularized towards.
    """

    iter: int
    adapt_stat_error: float
    log_step_size: float
    smoothed_log_step_size: float
    log_step_size_reg_target: float

    def to_dict(self) -> dict[str, Any]:
        return self._asdict()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DualAveragingState:
        return cls(**data)


class WelfordAccumulator(NamedTuple):
    """Online mean and sum of squared deviation statistics of chain positions.

    Parameters:
        iter: Number of positions accumulated.
        mean: Running mean of positions.
        sum_diff: Running sum of squared deviations from the mean. A 1D array of
            per-component sums for variance estimates or a 2D array of summed outer
            products for covariance estimates.
    """

    iter: int
    mean: NDArray
    sum_diff: NDArray

    def to_dict(self) -> dict[str, Any]:
        return {
            "iter": self.iter,
            "mean": self.mean.tolist(),
            "sum_diff": self.sum_diff.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WelfordAccumulator:
        return cls(
            data["iter"],
            np.array(data["mean"], dtype=np.float64),
            np.array(data["sum_diff"], dtype=np.float64),
        )


class Adapter(ABC):
    """Abstract adapter for implementing schemes to adapt transition parameters.

    Adaptation schemes are assumed to be based on updating a collection of adaptation
    variables (collectively termed the adapter state here) after each chain transition
    based on the sampled chain state and/or statistics of the transition such as an
    acceptance probability statistic. After completing a sequence of adaptive
    transitions, the final adapter state is used to update the transition parameters.

    Adapter states are immutable: :py:meth:`update` returns a new state rather than
    altering the one passed, which allows states to be snapshotted for resuming a chain.
    """

    @abstractmethod
    def initialize(
        self,
        chain_state: PointState,
        transition: IntegrationTransition,
        rng: Generator,
    ) -> AdapterState:
        """Initialize adapter state prior to starting adaptive transitions.

        Args:
            chain_state: Initial chain state adaptive transition will be started from.
                May be used to calculate initial adapter state but should not be mutated
                by method.
            transition: Markov transition being adapted. Attributes of the transition or
                child objects may be updated in-place by the method.
            rng: Random number generator, used if initialization requires random draws.

        Returns:
            Initial adapter state.
        """

    @abstractmethod
    def update(
        self,
        adapt_state: AdapterState,
        chain_state: PointState,
        trans_stats: HMCStats,
        transition: IntegrationTransition,
    ) -> AdapterState:
        """Update adapter state after sampling from transition being adapted.

        Args:
            adapt_state: Current adapter state.
            chain_state: Current chain state following sampling from transition being
                adapted. Should not be mutated by method.
            trans_stats: Statistics of the transition being adapted.
            transition: Markov transition being adapted. Attributes of the transition or
                child objects may be updated in-place by the method.

        Returns:
            Updated adapter state.
        """

    @abstractmethod
    def finalize(self, adapt_state: AdapterState, transition: IntegrationTransition):
        """Update transition parameters based on final adapter state.

        Args:
            adapt_state: Final adapter state.
            transition: Markov transition being adapted. Attributes of the transition or
                child objects will be updated in-place by the method.
        """

    @property
    @abstractmethod
    def is_fast(self) -> bool:
        """Whether the adapter is 'fast' or 'slow'.

        An adapter which requires only local information to adapt the transition
        parameters should be classified as fast while one which requires more global
        information and so more chain iterations should be classified as slow i.e.
        :code:`is_fast == False`.
        """


def default_adapt_stat_func(stats: HMCStats) -> float:
    """Function to extract default statistic used for step-size adaptation.

    Args:
        stats: Transition statistics.

    Returns:
        Metropolis acceptance probability.
    """
    return stats.accept_prob


def _single_step_accept_prob(
    system: System,
    integrator: Integrator,
    state: PointState,
    h_init: float,
) -> float:
    try:
        h_diff = h_init - system.h(integrator.step(state))
    except IntegratorError:
        return 0.0
    # Explicitly check if h_diff is NaN as min(0, NaN) = 0
    return 0.0 if np.isnan(h_diff) else exp(min(0.0, h_diff))


class DualAveragingStepSizeAdapter(Adapter):
    """Dual averaging integrator step size adapter.

    Implementation of the dual algorithm step size adaptation algorithm described in
    Hoffman and Gelman (2014), a modified version of the stochastic optimisation scheme
    of Nesterov (2009). By default the adaptation is performed to control the
    Metropolis acceptance probability of an integration transition to be close to a
    target value but the statistic adapted on can be altered by changing the
    :code:`adapt_stat_func`.

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
      2. Nesterov, Y. (2009). Primal-dual subgradient methods for convex problems.
         Mathematical programming 120(1), pp.221-259.
    """

    is_fast = True

    def __init__(
        self,
        adapt_stat_target: float = 0.8,
        adapt_stat_func: AdaptationStatisticFunction | None = None,
        log_step_size_reg_target: float | None = None,
        log_step_size_reg_coefficient: float = 0.05,
        iter_decay_coeff: float = 0.75,
        iter_offset: int = 10,
        max_init_step_size_iters: int = 100,
        init_step_size_guess: float = 1.0,
    ):
        """
        Args:
            adapt_stat_target: Target value for the transition statistic being
                controlled during adaptation.
            adapt_stat_func: Function which given the transition statistics outputs the
                value of the statistic to control during adaptation. By default this
                selects the :code:`accept_prob` field.
            log_step_size_reg_target: Value to regularize the controlled output
                (logarithm of the integrator step size) towards. If :code:`None` set to
                :code:`log(10 * init_step_size)` where :code:`init_step_size` is the
                initial step size, either set on the integrator before adaptation
                starts or found by a coarse search as recommended in Hoffman and
                Gelman (2014).
            log_step_size_reg_coefficient: Coefficient controlling amount of
                regularisation of controlled output towards
                :code:`log_step_size_reg_target`. Defaults to 0.05 as recommended in
                Hoffman and Gelman (2014).
            iter_decay_coeff: Coefficient controlling exponent of decay in schedule
                weighting stochastic updates to smoothed log step size estimate. Should
                be in the interval (0.5, 1] to ensure asymptotic convergence of
                adaptation. Defaults to 0.75 as recommended in Hoffman and Gelman
                (2014).
            iter_offset: Offset used for the iteration based weighting of the adaptation
                statistic error estimate. Should be set to a non-negative value. A value
                > 0 has the effect of stabilising early iterations. Defaults to 10.
            max_init_step_size_iters: Maximum number of iterations to use in initial
                search for a reasonable step size with an
                :py:exc:`ahmc.errors.AdaptationError` exception raised if a suitable
                step size is not found within this many iterations.
            init_step_size_guess: Step size the initial search starts from.
        """
        if not 0 < adapt_stat_target < 1:
            msg = "adapt_stat_target should be in the open interval (0, 1)."
            raise ValueError(msg)
        self.adapt_stat_target = adapt_stat_target
        self.adapt_stat_func = (
            default_adapt_stat_func if adapt_stat_func is None else adapt_stat_func
        )
        self.log_step_size_reg_target = log_step_size_reg_target
        self.log_step_size_reg_coefficient = log_step_size_reg_coefficient
        self.iter_decay_coeff = iter_decay_coeff
        self.iter_offset = iter_offset
        self.max_init_step_size_iters = max_init_step_size_iters
        self.init_step_size_guess = init_step_size_guess

    def initialize(
        self,
        chain_state: PointState,
        transition: IntegrationTransition,
        rng: Generator,
    ) -> DualAveragingState:
        integrator = transition.integrator
        if integrator.step_size is None:
            init_step_size = self.find_and_set_init_step_size(
                chain_state, transition.system, integrator, rng
            )
        else:
            init_step_size = integrator.step_size
        if self.log_step_size_reg_target is None:
            reg_target = log(10 * init_step_size)
        else:
            reg_target = self.log_step_size_reg_target
        return DualAveragingState(
            iter=0,
            adapt_stat_error=0.0,
            log_step_size=log(init_step_size),
            # Weight of first smoothing update is one so initial value is arbitrary.
            # Using regularization target makes exact targeting a fixed point.
            smoothed_log_step_size=reg_target,
            log_step_size_reg_target=reg_target,
        )

    def find_and_set_init_step_size(
        self,
        state: PointState,
        system: System,
        integrator: Integrator,
        rng: Generator,
    ) -> float:
        """Find initial step size by coarse search using single step statistics.

        Adaptation of Algorithm 4 in Hoffman and Gelman (2014). A momentum is drawn once
        and the step size is repeatedly doubled (if the Metropolis acceptance
        probability of a single integrator step is above 0.5) or halved (if below) until
        the acceptance probability crosses 0.5. An integrator step which fails, for
        example due to a divergence, is treated as having zero acceptance probability.

        Args:
            state: State to search from. Not mutated.
            system: Hamiltonian system being simulated.
            integrator: Integrator whose `step_size` attribute is set by the search.
            rng: Random number generator used to draw the momentum.

        Returns:
            Initial step size found.

        Raises:
            AdaptationError: If the Hamiltonian is non-finite at `state` or the search
                does not terminate within `max_init_step_size_iters` iterations.
        """
        init_state = state.copy()
        init_state.mom = system.sample_momentum(init_state, rng)
        h_init = system.h(init_state)
        if not isfinite(h_init):
            msg = "Hamiltonian evaluating to a non-finite value at initial state."
            raise AdaptationError(msg)
        integrator.step_size = self.init_step_size_guess
        direction = None
        for _ in range(self.max_init_step_size_iters):
            accept_prob = _single_step_accept_prob(system, integrator, init_state, h_init)
            step_size_too_big = accept_prob < 0.5
            if direction is None:
                direction = -1 if step_size_too_big else 1
            elif step_size_too_big == (direction == 1):
                logger.info(f"Initial step size search found {integrator.step_size}.")
                return integrator.step_size
            integrator.step_size *= 2.0**direction
        msg = (
            f"Could not find reasonable initial step size in "
            f"{self.max_init_step_size_iters} iterations (final step size "
            f"{integrator.step_size}). A very large final step size may indicate that "
            f"the target distribution is improper such that the log density is flat "
            f"in one or more directions while a very small final step size may "
            f"indicate that the density function is insufficiently smooth at the point "
            f"initialized at."
        )
        raise AdaptationError(msg)

    def update(
        self,
        adapt_state: DualAveragingState,
        chain_state: PointState,  # noqa: ARG002
        trans_stats: HMCStats,
        transition: IntegrationTransition,
    ) -> DualAveragingState:
        n_iter = adapt_state.iter + 1
        error_weight = 1 / (self.iter_offset + n_iter)
        adapt_stat_error = adapt_state.adapt_stat_error + error_weight * (
            self.adapt_stat_target
            - self.adapt_stat_func(trans_stats)
            - adapt_state.adapt_stat_error
        )
        log_step_size = adapt_state.log_step_size_reg_target - (
            adapt_stat_error * n_iter**0.5 / self.log_step_size_reg_coefficient
        )
        smoothing_weight = (1 / n_iter) ** self.iter_decay_coeff
        smoothed_log_step_size = adapt_state.smoothed_log_step_size + (
            smoothing_weight * (log_step_size - adapt_state.smoothed_log_step_size)
        )
        transition.integrator.step_size = exp(log_step_size)
        return DualAveragingState(
            n_iter,
            adapt_stat_error,
            log_step_size,
            smoothed_log_step_size,
            adapt_state.log_step_size_reg_target,
        )

    def reset_reg_target(
        self, adapt_state: DualAveragingState, step_size: float
    ) -> DualAveragingState:
        """Regularize future log step sizes towards `log(10 * step_size)`.

        Used at the end of each growing adaptation window, whether or not the metric
        was changed.
        """
        if self.log_step_size_reg_target is not None:
            return adapt_state
        return adapt_state._replace(log_step_size_reg_target=log(10 * step_size))

    def finalize(
        self, adapt_state: DualAveragingState, transition: IntegrationTransition
    ):
        transition.integrator.step_size = exp(adapt_state.smoothed_log_step_size)


class OnlineVarianceMetricAdapter(Adapter):
    """Diagonal metric adapter using online variance estimates.

    Uses Welford's algorithm (Welford, 1962) to stably compute an online estimate of the
    sample variances of the chain state position components during sampling. The
    variance estimates are regularized towards a common scalar value, with increasing
    weight for small number of samples, to decrease the effect of noisy estimates for
    small sample sizes, following the approach in Stan (Carpenter et al., 2017). The
    preconditioner is set to a diagonal matrix with diagonal elements corresponding to
    the reciprocal of the (regularized) variance estimates.

    References:
      1. Welford, B. P. (1962). Note on a method for calculating corrected sums of
         squares and products. Technometrics, 4(3), pp. 419-420.
      2. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B., Betancourt,
         M., Brubaker, M., Guo, J., Li, P. and Riddell, A.  (2017). Stan: A
         probabilistic programming language. Journal of Statistical Software, 76(1).
    """

    is_fast = False

    def __init__(self, reg_iter_offset: int = 5, reg_scale: float = 1e-3):
        """
        Args:
            reg_iter_offset: Iteration offset used for calculating iteration dependent
                weighting between regularisation target and current variance estimate.
                Higher values cause stronger regularisation during initial iterations.
            reg_scale: Positive scalar defining value variance estimates are regularized
                towards.
        """
        if reg_iter_offset < 0 or reg_scale <= 0:
            msg = "reg_iter_offset must be non-negative and reg_scale positive."
            raise ValueError(msg)
        self.reg_iter_offset = reg_iter_offset
        self.reg_scale = reg_scale

    def _init_sum_diff(self, pos: NDArray) -> NDArray:
        return np.zeros_like(pos, dtype=np.float64)

    def _increment_sum_diff(
        self, pos_minus_old_mean: NDArray, pos_minus_new_mean: NDArray
    ) -> NDArray:
        return pos_minus_old_mean * pos_minus_new_mean

    def initialize(
        self,
        chain_state: PointState,
        transition: IntegrationTransition,  # noqa: ARG002
        rng: Generator | None = None,  # noqa: ARG002
    ) -> WelfordAccumulator:
        return WelfordAccumulator(
            0,
            np.zeros_like(chain_state.pos, dtype=np.float64),
            self._init_sum_diff(chain_state.pos),
        )

    def update(
        self,
        adapt_state: WelfordAccumulator,
        chain_state: PointState,
        trans_stats: HMCStats,  # noqa: ARG002
        transition: IntegrationTransition,  # noqa: ARG002
    ) -> WelfordAccumulator:
        # Use Welford (1962) incremental algorithm to update statistics
        # https://en.wikipedia.org/wiki/
        #   Algorithms_for_calculating_variance#Welford's_online_algorithm
        n_iter = adapt_state.iter + 1
        pos_minus_mean = chain_state.pos - adapt_state.mean
        mean = adapt_state.mean + pos_minus_mean / n_iter
        sum_diff = adapt_state.sum_diff + self._increment_sum_diff(
            pos_minus_mean, chain_state.pos - mean
        )
        return WelfordAccumulator(n_iter, mean, sum_diff)

    def _regularize(self, estimate: NDArray, n_iter: int) -> NDArray:
        """Shrink estimate towards `reg_scale` times identity."""
        weight = n_iter / (self.reg_iter_offset + n_iter)
        return weight * estimate + (1 - weight) * self.reg_scale

    def _estimate(self, adapt_state: WelfordAccumulator) -> NDArray:
        return self._regularize(
            adapt_state.sum_diff / (adapt_state.iter - 1), adapt_state.iter
        )

    def _make_metric(self, estimate: NDArray) -> DiagonalPreconditioner:
        # Built from array alone so a metric restored by `from_dict` is identical
        return DiagonalPreconditioner(1.0 / estimate)

    def finalize(
        self, adapt_state: WelfordAccumulator, transition: IntegrationTransition
    ) -> bool:
        """Set metric of system from accumulated statistics.

        If fewer than two positions were accumulated or the estimate is not finite and
        positive definite, the current metric is retained.

        Returns:
            Whether the metric was updated.
        """
        if adapt_state.iter < 2:  # noqa: PLR2004
            logger.warning(
                f"Only {adapt_state.iter} samples in adaptation window, at least two "
                f"required to estimate metric. Retaining current metric."
            )
            return False
        estimate = self._estimate(adapt_state)
        if not np.all(np.isfinite(estimate)):
            logger.warning("Non-finite metric estimate. Retaining current metric.")
            return False
        try:
            metric = self._make_metric(estimate)
        except (LinAlgError, ValueError) as e:
            logger.warning(f"Invalid metric estimate ({e}). Retaining current metric.")
            return False
        transition.system.metric = metric
        logger.info(f"Metric updated from {adapt_state.iter} samples.")
        return True


class OnlineCovarianceMetricAdapter(OnlineVarianceMetricAdapter):
    """Dense metric adapter using online covariance estimates.

    Uses Welford's algorithm (Welford, 1962) to stably compute an online estimate of the
    sample covariance matrix of the chain state position components during sampling.
    The covariance matrix estimates are regularized towards a scaled identity matrix,
    with increasing weight for small number of samples, following the approach in Stan
    (Carpenter et al., 2017). The preconditioner is set to a dense positive definite
    matrix corresponding to the inverse of the (regularized) covariance matrix estimate.

    References:
      1. Welford, B. P. (1962). Note on a method for calculating corrected sums of
         squares and products. Technometrics, 4(3), pp. 419-420.
      2. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B., Betancourt,
         M., Brubaker, M., Guo, J., Li, P. and Riddell, A.  (2017). Stan: A
         probabilistic programming language. Journal of Statistical Software, 76(1).
    """

    def _init_sum_diff(self, pos: NDArray) -> NDArray:
        return np.zeros((pos.shape[0], pos.shape[0]), dtype=np.float64)

    def _increment_sum_diff(
        self, pos_minus_old_mean: NDArray, pos_minus_new_mean: NDArray
    ) -> NDArray:
        return np.outer(pos_minus_new_mean, pos_minus_old_mean)

    def _regularize(self, estimate: NDArray, n_iter: int) -> NDArray:
        weight = n_iter / (self.reg_iter_offset + n_iter)
        estimate = weight * estimate
        estimate[np.diag_indices_from(estimate)] += (1 - weight) * self.reg_scale
        # Outer products of differing mean residuals are only symmetric in expectation
        return 0.5 * (estimate + estimate.T)

    def _make_metric(self, estimate: NDArray) -> DensePreconditioner:
        return DensePreconditioner(DensePreconditioner(estimate).inv.array)
