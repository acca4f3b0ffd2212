from math import exp, log

import numpy as np
import pytest

from ahmc import adapters, integrators, preconditioners, systems, transitions
from ahmc.errors import AdaptationError
from ahmc.states import PointState

SEED = 3046987125
STATE_DIM = 5


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


def _gaussian_log_dens_and_grad(pos):
    return -0.5 * pos @ pos, -pos


@pytest.fixture
def system():
    return systems.EuclideanMetricSystem(_gaussian_log_dens_and_grad)


@pytest.fixture
def integrator(system):
    return integrators.LeapfrogIntegrator(system, None)


@pytest.fixture
def transition(system, integrator):
    return transitions.MetropolisStaticIntegrationTransition(system, integrator, 5)


@pytest.fixture
def chain_state(rng):
    return PointState(rng.standard_normal(STATE_DIM))


def _stats(accept_prob, step_size=0.1):
    return transitions.HMCStats(accept_prob, True, step_size, 5, False)


class GenericAdapterTests:
    def test_initialize_does_not_mutate_state(
        self, adapter, chain_state, transition, rng
    ):
        chain_state = chain_state.copy(read_only=True)
        adapter.initialize(chain_state, transition, rng)

    def test_update_returns_new_state(self, adapter, chain_state, transition, rng):
        adapter_state = adapter.initialize(chain_state, transition, rng)
        read_only_state = chain_state.copy(read_only=True)
        new_adapter_state = adapter.update(
            adapter_state, read_only_state, _stats(0.5), transition
        )
        assert new_adapter_state is not adapter_state
        assert new_adapter_state.iter == adapter_state.iter + 1


class TestDualAveragingStepSizeAdapter(GenericAdapterTests):
    @pytest.fixture
    def adapter(self):
        return adapters.DualAveragingStepSizeAdapter()

    def test_is_fast(self, adapter):
        assert adapter.is_fast

    def test_initial_step_size_search_sets_step_size(
        self, adapter, chain_state, transition, rng
    ):
        adapter_state = adapter.initialize(chain_state, transition, rng)
        step_size = transition.integrator.step_size
        assert step_size is not None and step_size > 0
        assert adapter_state.log_step_size == log(step_size)
        assert np.isclose(adapter_state.log_step_size_reg_target, log(10 * step_size))

    def test_initial_step_size_power_of_two(self, adapter, chain_state, transition, rng):
        adapter.initialize(chain_state, transition, rng)
        assert float(np.log2(transition.integrator.step_size)).is_integer()

    def test_existing_step_size_not_searched(self, adapter, chain_state, transition, rng):
        transition.integrator.step_size = 0.25
        adapter_state = adapter.initialize(chain_state, transition, rng)
        assert transition.integrator.step_size == 0.25
        assert adapter_state.log_step_size == log(0.25)

    def test_fixed_point_at_target(self, adapter, chain_state, transition):
        transition.integrator.step_size = 0.3
        adapter_state = adapter.initialize(chain_state, transition, None)
        init_smoothed = adapter_state.smoothed_log_step_size
        for _ in range(200):
            adapter_state = adapter.update(
                adapter_state, chain_state, _stats(0.8), transition
            )
            assert adapter_state.smoothed_log_step_size == init_smoothed
            assert adapter_state.adapt_stat_error == 0
        adapter.finalize(adapter_state, transition)
        assert transition.integrator.step_size == exp(init_smoothed)

    def test_step_size_moves_in_direction_of_target(
        self, adapter, chain_state, transition
    ):
        transition.integrator.step_size = 0.3
        adapter_state = adapter.initialize(chain_state, transition, None)
        low_state = adapter.update(adapter_state, chain_state, _stats(0.1), transition)
        high_state = adapter.update(adapter_state, chain_state, _stats(1.0), transition)
        assert low_state.log_step_size < high_state.log_step_size

    def test_update_sets_integrator_step_size(self, adapter, chain_state, transition):
        transition.integrator.step_size = 0.3
        adapter_state = adapter.initialize(chain_state, transition, None)
        adapter_state = adapter.update(
            adapter_state, chain_state, _stats(0.6), transition
        )
        assert transition.integrator.step_size == exp(adapter_state.log_step_size)

    def test_update_formula(self, adapter, chain_state, transition):
        transition.integrator.step_size = 0.3
        mu = log(3.0)
        adapter_state = adapter.initialize(chain_state, transition, None)
        adapter_state = adapter.update(
            adapter_state, chain_state, _stats(0.5), transition
        )
        expected_error = (0.8 - 0.5) / 11
        assert np.isclose(adapter_state.adapt_stat_error, expected_error)
        assert np.isclose(adapter_state.log_step_size, mu - expected_error / 0.05)
        assert np.isclose(
            adapter_state.smoothed_log_step_size, adapter_state.log_step_size
        )

    def test_reset_reg_target(self, adapter, chain_state, transition):
        transition.integrator.step_size = 0.3
        adapter_state = adapter.initialize(chain_state, transition, None)
        adapter_state = adapter.update(
            adapter_state, chain_state, _stats(0.5), transition
        )
        reset_state = adapter.reset_reg_target(adapter_state, 0.7)
        assert np.isclose(reset_state.log_step_size_reg_target, log(7.0))
        assert reset_state.iter == adapter_state.iter

    def test_search_fails_for_flat_density(self, chain_state, rng):
        system = systems.EuclideanMetricSystem(
            lambda pos: (0.0, np.zeros_like(pos))
        )
        integrator = integrators.LeapfrogIntegrator(system)
        transition = transitions.MetropolisStaticIntegrationTransition(
            system, integrator, 1
        )
        adapter = adapters.DualAveragingStepSizeAdapter(max_init_step_size_iters=20)
        with pytest.raises(AdaptationError, match="initial step size"):
            adapter.initialize(chain_state, transition, rng)

    def test_invalid_target(self):
        with pytest.raises(ValueError, match="adapt_stat_target"):
            adapters.DualAveragingStepSizeAdapter(adapt_stat_target=1.5)


def _accumulate(adapter, positions, transition):
    adapter_state = adapter.initialize(PointState(positions[0]), transition)
    for pos in positions:
        adapter_state = adapter.update(
            adapter_state, PointState(pos), _stats(0.8), transition
        )
    return adapter_state


class TestOnlineVarianceMetricAdapter(GenericAdapterTests):
    @pytest.fixture
    def adapter(self):
        return adapters.OnlineVarianceMetricAdapter()

    def test_is_slow(self, adapter):
        assert not adapter.is_fast

    def test_accumulated_statistics(self, adapter, transition, rng):
        positions = rng.standard_normal((50, STATE_DIM))
        adapter_state = _accumulate(adapter, positions, transition)
        assert adapter_state.iter == 50
        assert np.allclose(adapter_state.mean, positions.mean(0))
        assert np.allclose(adapter_state.sum_diff / 49, positions.var(0, ddof=1))

    def test_finalize_sets_regularized_metric(self, adapter, transition, rng):
        positions = 2 * rng.standard_normal((100, STATE_DIM))
        adapter_state = _accumulate(adapter, positions, transition)
        assert adapter.finalize(adapter_state, transition)
        metric = transition.system.metric
        assert isinstance(metric, preconditioners.DiagonalPreconditioner)
        expected_var = (100 / 105) * positions.var(0, ddof=1) + (5 / 105) * 1e-3
        assert np.allclose(metric.inv.diagonal, expected_var)

    def test_finalize_too_few_samples(self, adapter, transition, rng, caplog):
        init_metric = transition.system.metric
        adapter_state = _accumulate(adapter, rng.standard_normal((1, 2)), transition)
        assert not adapter.finalize(adapter_state, transition)
        assert transition.system.metric is init_metric
        assert "Retaining current metric" in caplog.text

    def test_finalize_non_finite_estimate(self, adapter, transition, caplog):
        init_metric = transition.system.metric
        positions = np.array([[0.0, 1.0], [np.inf, 2.0], [1.0, 3.0]])
        adapter_state = _accumulate(adapter, positions, transition)
        assert not adapter.finalize(adapter_state, transition)
        assert transition.system.metric is init_metric


class TestOnlineCovarianceMetricAdapter(GenericAdapterTests):
    @pytest.fixture
    def adapter(self):
        return adapters.OnlineCovarianceMetricAdapter()

    def test_accumulated_statistics(self, adapter, transition, rng):
        positions = rng.standard_normal((50, STATE_DIM))
        adapter_state = _accumulate(adapter, positions, transition)
        assert np.allclose(adapter_state.mean, positions.mean(0))
        assert np.allclose(adapter_state.sum_diff / 49, np.cov(positions.T))

    def test_finalize_sets_regularized_metric(self, adapter, transition, rng):
        sqrt = rng.standard_normal((STATE_DIM, STATE_DIM))
        positions = rng.standard_normal((200, STATE_DIM)) @ sqrt.T
        adapter_state = _accumulate(adapter, positions, transition)
        assert adapter.finalize(adapter_state, transition)
        metric = transition.system.metric
        assert isinstance(metric, preconditioners.DensePreconditioner)
        expected_covar = (200 / 205) * np.cov(positions.T) + (
            5 / 205
        ) * 1e-3 * np.identity(STATE_DIM)
        assert np.allclose(metric.inv.array, expected_covar)

    def test_finalize_singular_samples_regularized(self, adapter, transition):
        # Identical positions give a zero covariance which regularization fixes
        positions = np.ones((10, 3))
        adapter_state = _accumulate(adapter, positions, transition)
        assert adapter.finalize(adapter_state, transition)
        assert np.allclose(
            transition.system.metric.inv.array, (5 / 15) * 1e-3 * np.identity(3)
        )
