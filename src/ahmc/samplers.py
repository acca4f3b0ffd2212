"""Adaptive Hamiltonian Monte Carlo samplers."""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from pickle import PicklingError
from typing import TYPE_CHECKING, NamedTuple
from warnings import warn

import numpy as np
from numpy.random import default_rng

from ahmc.adapters import (
    DualAveragingStepSizeAdapter,
    OnlineCovarianceMetricAdapter,
    OnlineVarianceMetricAdapter,
)
from ahmc.errors import (
    DimensionMismatchError,
    DivergenceWarning,
    DomainError,
)
from ahmc.integrators import LeapfrogIntegrator
from ahmc.preconditioners import PRECONDITIONER_KINDS, make_preconditioner
from ahmc.schedulers import (
    INIT_PHASE,
    AdaptationScheduler,
    WindowedAdaptationSchedule,
)
from ahmc.states import ChainState, PointState
from ahmc.systems import EuclideanMetricSystem
from ahmc.transitions import (
    HMCStats,
    IndependentMomentumTransition,
    MetropolisFixedTimeIntegrationTransition,
    MetropolisStaticIntegrationTransition,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from numpy.random import Generator
    from numpy.typing import ArrayLike, NDArray

    from ahmc.schedulers import AdaptationPhase
    from ahmc.transitions import IntegrationTransition
    from ahmc.types import LogDensityFunction

# Preferentially import from multiprocess library if available as able to
# serialize much wider range of types including lambdas and nested functions
try:
    from multiprocess import Pool

    MULTIPROCESS_AVAILABLE = True
except ImportError:
    from multiprocessing import Pool

    MULTIPROCESS_AVAILABLE = False


logger = logging.getLogger(__name__)


class SamplerConfig(NamedTuple):
    """Configuration of an adaptive Hamiltonian Monte Carlo sampler.

    Parameters:
        n_warm_up_iter: Number of adaptive warm-up iterations.
        n_step: Number of leapfrog steps per proposal. Ignored if `integration_time`
            is set.
        integration_time: If not `None` the number of leapfrog steps is instead
            recomputed each iteration so that the simulated time is approximately this.
        max_n_step: Upper bound on number of leapfrog steps when `integration_time` is
            set.
        step_size: Initial integrator step size. If `None` an initial step size is
            found by a search before the first iteration.
        adapt_stat_target: Target Metropolis acceptance probability.
        preconditioner: Kind of preconditioner, one of `"unit"`, `"diagonal"` or
            `"dense"`. A unit preconditioner is never adapted.
        n_init_window_iter: Number of iterations in first growing adaptation window.
        n_final_window_iter: Number of iterations in final step size only window.
        window_multiplier: Growth factor of consecutive adaptation windows.
        log_step_size_reg_coefficient: Dual averaging regularization coefficient.
        iter_offset: Dual averaging iteration offset.
        iter_decay_coeff: Dual averaging smoothing decay exponent.
        max_init_step_size_iters: Maximum iterations of initial step size search.
        metric_reg_iter_offset: Iteration offset weighting metric regularization.
        metric_reg_scale: Scale metric estimates are regularized towards.
        divergence_warn_threshold: Proportion of divergent post warm-up iterations
            above which a :py:class:`ahmc.errors.DivergenceWarning` is issued.
    """

    n_warm_up_iter: int = 1000
    n_step: int = 10
    integration_time: float | None = None
    max_n_step: int = 1000
    step_size: float | None = None
    adapt_stat_target: float = 0.8
    preconditioner: str = "diagonal"
    n_init_window_iter: int = 75
    n_final_window_iter: int = 50
    window_multiplier: float = 2
    log_step_size_reg_coefficient: float = 0.05
    iter_offset: int = 10
    iter_decay_coeff: float = 0.75
    max_init_step_size_iters: int = 100
    metric_reg_iter_offset: int = 5
    metric_reg_scale: float = 1e-3
    divergence_warn_threshold: float = 0.05


def _validate_config(config: SamplerConfig):
    if config.n_warm_up_iter < 0:
        msg = "n_warm_up_iter must be non-negative."
        raise ValueError(msg)
    if config.integration_time is None and not config.n_step >= 1:
        msg = "n_step must be a positive integer."
        raise ValueError(msg)
    if config.step_size is not None and not config.step_size > 0:
        msg = "step_size must be positive or None."
        raise ValueError(msg)
    if config.preconditioner not in PRECONDITIONER_KINDS:
        msg = (
            f"Unknown preconditioner kind {config.preconditioner!r}, expected one of "
            f"{PRECONDITIONER_KINDS}."
        )
        raise ValueError(msg)
    if not 0 <= config.divergence_warn_threshold <= 1:
        msg = "divergence_warn_threshold must be in [0, 1]."
        raise ValueError(msg)


class ChainIteration(NamedTuple):
    """Output of a single chain iteration.

    Parameters:
        pos: Position after iteration.
        log_dens: Log density at position.
        stats: Statistics of integration transition.
        warm_up: Whether the iteration was an adaptive warm-up iteration.
    """

    pos: NDArray
    log_dens: float
    stats: HMCStats
    warm_up: bool


class ChainSummary(NamedTuple):
    """Summary of a sampled chain.

    Acceptance, divergence and integration step statistics are computed over the post
    warm-up iterations, or all iterations if there were none.
    """

    n_iter: int
    mean_accept_prob: float
    accept_rate: float
    n_divergent: int
    divergence_rate: float
    mean_n_step: float
    step_size: float
    n_oracle_call: int


class ChainOutputs(NamedTuple):
    """Outputs of sampling a chain.

    Parameters:
        final_state: Snapshot of chain after final iteration, which can be used to
            resume sampling.
        traces: Dictionary with `pos` and `log_dens` arrays with leading dimension
            corresponding to the iteration index.
        statistics: Dictionary with an array for each :py:class:`HMCStats` field plus a
            boolean `warm_up` array.
        summary: Summary statistics of the chain.
    """

    final_state: ChainState
    traces: dict[str, NDArray]
    statistics: dict[str, NDArray]
    summary: ChainSummary


class MarkovChain:
    """Markov chain simulated by an adaptive Hamiltonian Monte Carlo sampler.

    Owns the per-chain system, integrator, transitions, adapters and random number
    generator constructed from a :py:class:`ahmc.states.ChainState` snapshot. The chain
    is advanced with :py:meth:`iterate` and its state captured with
    :py:meth:`snapshot`.
    """

    def __init__(
        self,
        log_dens_and_grad: LogDensityFunction,
        config: SamplerConfig,
        chain_state: ChainState,
    ):
        self.config = config
        self.system = EuclideanMetricSystem(
            log_dens_and_grad, metric=chain_state.preconditioner
        )
        self.integrator = LeapfrogIntegrator(self.system, chain_state.step_size)
        self.momentum_transition = IndependentMomentumTransition(self.system)
        self.integration_transition = self._make_integration_transition()
        self.scheduler = AdaptationScheduler(
            WindowedAdaptationSchedule(
                config.n_warm_up_iter,
                config.n_init_window_iter,
                config.n_final_window_iter,
                config.window_multiplier,
            ),
            DualAveragingStepSizeAdapter(
                adapt_stat_target=config.adapt_stat_target,
                log_step_size_reg_coefficient=config.log_step_size_reg_coefficient,
                iter_decay_coeff=config.iter_decay_coeff,
                iter_offset=config.iter_offset,
                max_init_step_size_iters=config.max_init_step_size_iters,
            ),
            self._make_metric_adapter(),
        )
        self.rng = chain_state.make_rng()
        self.point = PointState(np.array(chain_state.pos, dtype=np.float64))
        self.iteration = chain_state.iteration
        self.adapt_state = chain_state.adaptation
        self._initialized = chain_state.adaptation is not None

    def _make_integration_transition(self) -> IntegrationTransition:
        if self.config.integration_time is None:
            return MetropolisStaticIntegrationTransition(
                self.system, self.integrator, self.config.n_step
            )
        return MetropolisFixedTimeIntegrationTransition(
            self.system,
            self.integrator,
            self.config.integration_time,
            self.config.max_n_step,
        )

    def _make_metric_adapter(self) -> OnlineVarianceMetricAdapter | None:
        if self.config.preconditioner == "diagonal":
            return OnlineVarianceMetricAdapter(
                self.config.metric_reg_iter_offset, self.config.metric_reg_scale
            )
        if self.config.preconditioner == "dense":
            return OnlineCovarianceMetricAdapter(
                self.config.metric_reg_iter_offset, self.config.metric_reg_scale
            )
        return None

    @property
    def phase(self) -> AdaptationPhase:
        """Adaptation phase of the next chain iteration."""
        if not self._initialized and self.integrator.step_size is None:
            return INIT_PHASE
        return self.scheduler.schedule.phase_at(self.iteration)

    @property
    def n_oracle_call(self) -> int:
        """Number of log density evaluations since chain was constructed."""
        return self.point.call_count("log_dens_and_grad")

    def _initialize(self):
        if not self._initialized:
            self.adapt_state = self.scheduler.initialize(
                self.point, self.integration_transition, self.rng, self.iteration
            )
            self._initialized = True

    def step(self) -> ChainIteration:
        """Perform one chain iteration.

        Samples a new momentum, simulates a trajectory, accepts or rejects the proposal
        and, during warm up, updates the adaptation state.

        Returns:
            Output of the iteration.
        """
        self._initialize()
        warm_up = self.scheduler.schedule.phase_at(self.iteration).is_adapting
        self.point, _ = self.momentum_transition.sample(self.point, self.rng)
        self.point, stats = self.integration_transition.sample(self.point, self.rng)
        self.adapt_state = self.scheduler.update(
            self.adapt_state,
            self.iteration,
            self.point,
            stats,
            self.integration_transition,
        )
        self.iteration += 1
        return ChainIteration(
            self.point.pos, self.system.log_dens(self.point), stats, warm_up
        )

    def iterate(self, n_iter: int) -> Iterator[ChainIteration]:
        """Iterate chain, yielding the output of each iteration.

        Args:
            n_iter: Number of iterations to perform.
        """
        for _ in range(n_iter):
            yield self.step()

    def snapshot(self) -> ChainState:
        """Capture the current state of the chain.

        The snapshot can be serialized and passed to
        :py:meth:`HamiltonianMonteCarlo.sample_chain` to continue sampling the chain
        exactly as if it had not been interrupted.
        """
        return ChainState(
            pos=np.array(self.point.pos, dtype=np.float64),
            step_size=self.integrator.step_size,
            preconditioner=self.system.metric,
            adaptation=self.adapt_state,
            iteration=self.iteration,
            rng_state=copy.deepcopy(self.rng.bit_generator.state),
        )


def _summarize(
    statistics: dict[str, NDArray], step_size: float, n_oracle_call: int
) -> ChainSummary:
    main = ~statistics["warm_up"]
    if not np.any(main):
        main = np.ones_like(main)
    n_iter = statistics["warm_up"].shape[0]
    n_main = int(main.sum())
    n_divergent = int(statistics["diverging"][main].sum())
    return ChainSummary(
        n_iter=n_iter,
        mean_accept_prob=(
            float(statistics["accept_prob"][main].mean()) if n_main else np.nan
        ),
        accept_rate=float(statistics["accepted"][main].mean()) if n_main else np.nan,
        n_divergent=n_divergent,
        divergence_rate=n_divergent / n_main if n_main else 0.0,
        mean_n_step=float(statistics["n_step"][main].mean()) if n_main else np.nan,
        step_size=step_size,
        n_oracle_call=n_oracle_call,
    )


def _get_per_chain_rngs(base_rng: Generator, n_chain: int) -> list[Generator]:
    """Construct random number generators (RNGs) for each of a set of chains.

    If the base RNG bit generator has a `jumped` method this is used to produce a
    sequence of independent random substreams. Otherwise if the base RNG bit generator
    has a `seed_seq` attribute this is used to spawn a sequence off generators.
    """
    bit_generator = base_rng.bit_generator
    if hasattr(bit_generator, "jumped"):
        return [default_rng(bit_generator.jumped(i)) for i in range(n_chain)]
    if getattr(bit_generator, "seed_seq", None) is not None:
        return [default_rng(seed) for seed in bit_generator.seed_seq.spawn(n_chain)]
    msg = f"Unsupported random number generator type {type(base_rng)}."
    raise ValueError(msg)


def _sample_chain_worker(
    sampler: HamiltonianMonteCarlo,
    init: ArrayLike | ChainState,
    n_iter: int,
    rng: Generator,
) -> ChainOutputs:
    try:
        return sampler.sample_chain(init, n_iter, rng)
    except Exception:
        # Log exception here so that correct traceback is logged
        logger.exception("Exception encountered in chain worker process")
        raise


@contextmanager
def _pool_context_manager(n_process: int):
    """Context-manager for process pool that ensures clean exiting.

    Compared to built-in context-manager protocol implementation on Pool object which
    calls the `terminate` method on exit which immediately stops the worker processes,
    this manager instead ensures a clean exit by calling `close` to prevent any
    additional jobs being submitted to pool, and then `join` to wait for processes to
    exit.
    """
    pool = Pool(n_process)
    try:
        yield pool
    finally:
        pool.close()
        pool.join()


class HamiltonianMonteCarlo:
    """Adaptive Hamiltonian Monte Carlo sampler.

    Chains are simulated with a Metropolis-adjusted leapfrog integration transition
    using either a fixed number of integrator steps or a fixed integration time, after
    a warm-up phase in which the integrator step size is tuned by dual averaging and the
    preconditioner by windowed estimation of the target covariance.

    Example:
        >>> import numpy as np
        >>> sampler = HamiltonianMonteCarlo(
        ...     lambda x: (-0.5 * x @ x, -x), SamplerConfig(n_warm_up_iter=500)
        ... )
        >>> outputs = sampler.sample_chain(np.zeros(2), 1000, np.random.default_rng(1))
        >>> outputs.traces["pos"].shape
        (1000, 2)

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
      2. Neal, R.M., 2011. MCMC using Hamiltonian dynamics. Handbook of Markov Chain
         Monte Carlo, 2(11), p.2.
    """

    def __init__(
        self,
        log_dens_and_grad: LogDensityFunction,
        config: SamplerConfig | None = None,
    ):
        """
        Args:
            log_dens_and_grad: Function which given a 1D position array returns a tuple
                of the (unnormalized) log density of the target distribution and its
                gradient. May raise :py:exc:`ahmc.errors.DomainError` at positions
                outside of the target's support, which is treated as a divergence.
            config: Sampler configuration. Defaults to `SamplerConfig()`.
        """
        self.log_dens_and_grad = log_dens_and_grad
        self.config = SamplerConfig() if config is None else config
        _validate_config(self.config)

    def init_chain_state(self, pos: ArrayLike, rng: Generator) -> ChainState:
        """Create state to start a new chain from.

        Args:
            pos: Initial position. Must have finite log density.
            rng: Random number generator. Its state is copied rather than advanced.

        Returns:
            Initial chain state.

        Raises:
            ValueError: If the position is not 1D or its log density or gradient is not
                finite.
            DimensionMismatchError: If the gradient and position shapes differ.
        """
        pos = np.array(pos, dtype=np.float64)
        if pos.ndim != 1:
            msg = "Initial position must be a 1D array."
            raise ValueError(msg)
        try:
            log_dens, grad = self.log_dens_and_grad(pos)
        except DomainError as e:
            msg = "Initial position outside of domain of log density."
            raise ValueError(msg) from e
        if np.shape(grad) != pos.shape:
            msg = (
                f"Gradient shape {np.shape(grad)} does not match position shape "
                f"{pos.shape}."
            )
            raise DimensionMismatchError(msg)
        if not np.isfinite(log_dens):
            msg = f"Non-finite log density {log_dens} at initial position."
            raise ValueError(msg)
        if not np.all(np.isfinite(grad)):
            msg = "Non-finite gradient of log density at initial position."
            raise ValueError(msg)
        return ChainState(
            pos=pos,
            step_size=self.config.step_size,
            preconditioner=make_preconditioner(self.config.preconditioner, pos.size),
            adaptation=None,
            iteration=0,
            rng_state=copy.deepcopy(rng.bit_generator.state),
        )

    def chain(self, chain_state: ChainState) -> MarkovChain:
        """Construct a Markov chain continuing from a chain state.

        Raises:
            ValueError: If the kind of the preconditioner of the chain state differs
                from the configured preconditioner kind.
        """
        if chain_state.preconditioner.kind != self.config.preconditioner:
            msg = (
                f"Chain state has {chain_state.preconditioner.kind} preconditioner but "
                f"sampler is configured with {self.config.preconditioner} "
                "preconditioner."
            )
            raise ValueError(msg)
        return MarkovChain(self.log_dens_and_grad, self.config, chain_state)

    def sample_chain(
        self,
        init: ArrayLike | ChainState,
        n_iter: int,
        rng: Generator | None = None,
    ) -> ChainOutputs:
        """Sample a Markov chain.

        Args:
            init: Initial position or a chain state snapshot to resume sampling from.
            n_iter: Number of chain iterations to perform, including any warm-up
                iterations not yet completed.
            rng: Random number generator, used only if `init` is a position. A
                resumed chain continues the random stream recorded in its state.

        Returns:
            Final chain state, traces, per-iteration statistics and summary.

        Raises:
            AdaptationError: If the initial step size search fails.
            DimensionMismatchError: If the log density gradient has the wrong shape.
            ValueError: If a chain state with a preconditioner kind not matching the
                configuration is given.
        """
        if isinstance(init, ChainState):
            chain_state = init
            n_init_oracle_call = 0
        else:
            chain_state = self.init_chain_state(
                init, default_rng() if rng is None else rng
            )
            n_init_oracle_call = 1
        chain = self.chain(chain_state)
        iterations = list(chain.iterate(n_iter))
        traces = {
            "pos": np.array([it.pos for it in iterations]).reshape(
                n_iter, chain_state.pos.shape[0]
            ),
            "log_dens": np.array([it.log_dens for it in iterations], dtype=np.float64),
        }
        statistics = {
            field: np.array([getattr(it.stats, field) for it in iterations])
            for field in HMCStats._fields
        }
        statistics["accepted"] = statistics["accepted"].astype(bool)
        statistics["diverging"] = statistics["diverging"].astype(bool)
        statistics["warm_up"] = np.array([it.warm_up for it in iterations], dtype=bool)
        summary = _summarize(
            statistics,
            chain.integrator.step_size,
            n_init_oracle_call + chain.n_oracle_call,
        )
        logger.info(
            f"Sampled {summary.n_iter} iterations: mean accept probability "
            f"{summary.mean_accept_prob:.3f}, {summary.n_divergent} divergent "
            f"transitions, {summary.mean_n_step:.1f} leapfrog steps per iteration, "
            f"final step size {summary.step_size}, {chain.system.metric.kind} "
            f"preconditioner, {chain.phase.kind.value} phase."
        )
        if summary.divergence_rate > self.config.divergence_warn_threshold:
            warn(
                f"{summary.n_divergent} of {summary.n_iter} iterations were divergent "
                f"(rate {summary.divergence_rate:.3f} above threshold "
                f"{self.config.divergence_warn_threshold}). Consider increasing the "
                f"target acceptance probability or reparameterizing the target.",
                DivergenceWarning,
                stacklevel=2,
            )
        return ChainOutputs(chain.snapshot(), traces, statistics, summary)

    def sample_chains(
        self,
        inits: Sequence[ArrayLike | ChainState],
        n_iter: int,
        rng: Generator,
        n_process: int = 1,
    ) -> list[ChainOutputs]:
        """Sample multiple independent Markov chains.

        Each chain started from a position is given an independent random stream
        derived from `rng`. Chains can be run in parallel over several processes, in
        which case the `multiprocess` package is used if installed as it can serialize
        lambda and nested log density functions.

        Args:
            inits: Initial positions or chain states, one per chain.
            n_iter: Number of iterations per chain.
            rng: Base random number generator.
            n_process: Number of processes to run chains in. If one, chains are run
                sequentially in the current process.

        Returns:
            Outputs of each chain in the order of `inits`.
        """
        rngs = _get_per_chain_rngs(rng, len(inits))
        if n_process == 1:
            return [
                self.sample_chain(init, n_iter, r)
                for init, r in zip(inits, rngs, strict=True)
            ]
        try:
            with _pool_context_manager(n_process) as pool:
                return pool.starmap(
                    _sample_chain_worker,
                    [
                        (self, init, n_iter, r)
                        for init, r in zip(inits, rngs, strict=True)
                    ],
                )
        except (PicklingError, AttributeError) as e:
            if not MULTIPROCESS_AVAILABLE and (
                isinstance(e, PicklingError) or "pickle" in str(e)
            ):
                msg = (
                    "Error encountered while trying to run chains on multiple processes "
                    "in parallel. The inbuilt multiprocessing module uses pickle to "
                    "communicate between processes and pickle does not support pickling "
                    "anonymous or nested functions. Installing the Python package "
                    "multiprocess, which is able to serialise anonymous and nested "
                    "functions and will be used in preference to multiprocessing when "
                    "available, may resolve this error."
                )
                raise RuntimeError(msg) from e
            raise
