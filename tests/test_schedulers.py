import numpy as np
import pytest

from ahmc import adapters, integrators, preconditioners, schedulers, systems, transitions
from ahmc.schedulers import PhaseKind
from ahmc.states import PointState

SEED = 3046987125


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


def test_default_window_sizes():
    schedule = schedulers.WindowedAdaptationSchedule(1000)
    assert schedule.window_sizes == [75, 150, 300, 425]
    assert schedule.n_final_window_iter == 50
    assert sum(schedule.window_sizes) + schedule.n_final_window_iter == 1000


@pytest.mark.parametrize("n_warm_up_iter", [0, 1, 10, 124, 125, 200, 500, 1000, 5000])
def test_windows_partition_warm_up(n_warm_up_iter):
    schedule = schedulers.WindowedAdaptationSchedule(n_warm_up_iter)
    assert sum(schedule.window_sizes) + schedule.n_final_window_iter == n_warm_up_iter
    assert all(size > 0 for size in schedule.window_sizes)


@pytest.mark.parametrize("n_warm_up_iter", [500, 1000, 5000])
def test_windows_double_until_last(n_warm_up_iter):
    schedule = schedulers.WindowedAdaptationSchedule(n_warm_up_iter)
    sizes = schedule.window_sizes
    assert sizes[0] == 75
    for size, next_size in zip(sizes[:-2], sizes[1:-1], strict=True):
        assert next_size == 2 * size
    assert sizes[-1] >= 75


def test_short_warm_up_windows():
    schedule = schedulers.WindowedAdaptationSchedule(100)
    assert schedule.n_final_window_iter == 10
    assert schedule.window_sizes == [90]


def test_phase_at():
    schedule = schedulers.WindowedAdaptationSchedule(1000)
    assert schedule.phase_at(0) == schedulers.AdaptationPhase(
        PhaseKind.GROWING_WINDOW, 0, 0, 75
    )
    assert schedule.phase_at(75) == schedulers.AdaptationPhase(
        PhaseKind.GROWING_WINDOW, 1, 75, 225
    )
    assert schedule.phase_at(949).window_index == 3
    assert schedule.phase_at(950).kind == PhaseKind.FINAL_WINDOW
    assert schedule.phase_at(999).kind == PhaseKind.FINAL_WINDOW
    assert schedule.phase_at(1000).kind == PhaseKind.FROZEN
    assert not schedule.phase_at(1000).is_adapting


def test_phases_sequence():
    schedule = schedulers.WindowedAdaptationSchedule(1000)
    kinds = [phase.kind for phase in schedule.phases()]
    assert kinds == [PhaseKind.GROWING_WINDOW] * 4 + [
        PhaseKind.FINAL_WINDOW,
        PhaseKind.FROZEN,
    ]


def test_phase_dict_round_trip():
    phase = schedulers.AdaptationPhase(PhaseKind.GROWING_WINDOW, 2, 225, 525)
    assert schedulers.AdaptationPhase.from_dict(phase.to_dict()) == phase


def test_invalid_schedule():
    with pytest.raises(ValueError, match="n_init_window_iter"):
        schedulers.WindowedAdaptationSchedule(100, n_init_window_iter=0)


def _gaussian_log_dens_and_grad(pos):
    scales = np.array([1.0, 3.0])
    return -0.5 * np.sum((pos / scales) ** 2), -pos / scales**2


@pytest.fixture
def transition():
    system = systems.EuclideanMetricSystem(
        _gaussian_log_dens_and_grad,
        metric=preconditioners.make_preconditioner("diagonal", 2),
    )
    integrator = integrators.LeapfrogIntegrator(system)
    return transitions.MetropolisStaticIntegrationTransition(system, integrator, 5)


@pytest.fixture
def scheduler():
    return schedulers.AdaptationScheduler(
        schedulers.WindowedAdaptationSchedule(
            40, n_init_window_iter=10, n_final_window_iter=10
        ),
        adapters.DualAveragingStepSizeAdapter(),
        adapters.OnlineVarianceMetricAdapter(),
    )


def _run(scheduler, transition, rng, n_iter):
    momentum_transition = transitions.IndependentMomentumTransition(transition.system)
    point = PointState(np.zeros(2))
    adapt_state = scheduler.initialize(point, transition, rng)
    history = [(adapt_state, transition.system.metric)]
    for iteration in range(n_iter):
        point, _ = momentum_transition.sample(point, rng)
        point, stats = transition.sample(point, rng)
        adapt_state = scheduler.update(
            adapt_state, iteration, point, stats, transition
        )
        history.append((adapt_state, transition.system.metric))
    return history


def test_scheduler_initialize_searches_step_size(scheduler, transition, rng):
    adapt_state = scheduler.initialize(PointState(np.zeros(2)), transition, rng)
    assert transition.integrator.step_size is not None
    assert adapt_state.phase.kind == PhaseKind.GROWING_WINDOW
    assert adapt_state.metric_state.iter == 0


def test_scheduler_commits_metric_at_window_ends(scheduler, transition, rng):
    # Windows of 10 and 20 iterations then a final window of 10
    history = _run(scheduler, transition, rng, 40)
    metrics = [metric for _, metric in history]
    assert metrics[9] is metrics[0]
    assert metrics[10] is not metrics[9]
    assert metrics[29] is metrics[10]
    assert metrics[30] is not metrics[29]
    assert metrics[40] is metrics[30]


def test_scheduler_resets_accumulator_and_reg_target(scheduler, transition, rng):
    history = _run(scheduler, transition, rng, 11)
    before, after = history[9][0], history[10][0]
    assert before.metric_state.iter == 9
    assert after.metric_state.iter == 0
    assert after.step_size_state.iter == before.step_size_state.iter + 1
    assert after.phase.window_index == 1
    assert np.isclose(
        after.step_size_state.log_step_size_reg_target,
        np.log(10) + after.step_size_state.log_step_size,
    )


def test_scheduler_freezes(scheduler, transition, rng):
    history = _run(scheduler, transition, rng, 45)
    final_window_state = history[39][0]
    assert final_window_state.phase.kind == PhaseKind.FINAL_WINDOW
    assert history[40][0] is None
    frozen_step_size = transition.integrator.step_size
    # Smoothed step size from final dual averaging state used once frozen
    assert frozen_step_size > 0
    assert all(state is None for state, _ in history[40:])


def test_scheduler_no_warm_up_still_searches(transition, rng):
    scheduler = schedulers.AdaptationScheduler(
        schedulers.WindowedAdaptationSchedule(0),
        adapters.DualAveragingStepSizeAdapter(),
    )
    adapt_state = scheduler.initialize(PointState(np.zeros(2)), transition, rng)
    assert adapt_state is None
    assert transition.integrator.step_size is not None


def _assert_reg_target_reset(adapt_state):
    assert np.isclose(
        adapt_state.step_size_state.log_step_size_reg_target,
        np.log(10) + adapt_state.step_size_state.log_step_size,
    )


def test_scheduler_resets_reg_target_without_metric_adapter(transition, rng):
    scheduler = schedulers.AdaptationScheduler(
        schedulers.WindowedAdaptationSchedule(
            40, n_init_window_iter=10, n_final_window_iter=10
        ),
        adapters.DualAveragingStepSizeAdapter(),
    )
    init_metric = transition.system.metric
    history = _run(scheduler, transition, rng, 31)
    assert history[10][0].metric_state is None
    assert not np.isclose(
        history[9][0].step_size_state.log_step_size_reg_target,
        np.log(10) + history[9][0].step_size_state.log_step_size,
    )
    _assert_reg_target_reset(history[10][0])
    _assert_reg_target_reset(history[30][0])
    assert all(metric is init_metric for _, metric in history)


def test_scheduler_resets_reg_target_when_estimate_discarded(transition, rng):
    # A first window of one iteration gives too few samples for an estimate
    scheduler = schedulers.AdaptationScheduler(
        schedulers.WindowedAdaptationSchedule(
            20, n_init_window_iter=1, n_final_window_iter=10
        ),
        adapters.DualAveragingStepSizeAdapter(),
        adapters.OnlineVarianceMetricAdapter(),
    )
    init_metric = transition.system.metric
    history = _run(scheduler, transition, rng, 1)
    assert history[1][1] is init_metric
    assert history[1][0].metric_state.iter == 0
    _assert_reg_target_reset(history[1][0])
