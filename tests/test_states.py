import pickle
from collections import Counter

import numpy as np
import pytest

import ahmc
from ahmc.adapters import DualAveragingState, WelfordAccumulator
from ahmc.preconditioners import DensePreconditioner, DiagonalPreconditioner
from ahmc.schedulers import AdaptationPhase, AdaptationState, PhaseKind

SEED = 3046987125


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture
def point_state(rng):
    return ahmc.states.PointState(
        pos=rng.standard_normal(3), mom=rng.standard_normal(3)
    )


class _CountingSystem:
    def __init__(self):
        self.n_pos_call = 0

    @ahmc.states.cache_in_state("pos")
    def pos_norm(self, state):
        self.n_pos_call += 1
        return np.sum(state.pos**2)


def test_state_construction(rng):
    pos, mom = rng.standard_normal((2, 3))
    state = ahmc.states.PointState(pos, mom)
    assert state.pos is pos
    assert state.mom is mom


def test_state_unknown_attribute(point_state):
    with pytest.raises(AttributeError):
        point_state.spam  # noqa: B018


def test_state_copy_independent(point_state):
    state_copy = point_state.copy()
    init_pos = point_state.pos.copy()
    state_copy.pos *= 2
    assert np.all(point_state.pos == init_pos)


def test_state_copy_read_only(point_state):
    state_copy = point_state.copy(read_only=True)
    for name in ("pos", "mom"):
        with pytest.raises(ahmc.errors.ReadOnlyStateError):
            setattr(state_copy, name, None)


def test_state_pickling(point_state):
    unpickled_state = pickle.loads(pickle.dumps(point_state))
    assert isinstance(unpickled_state, ahmc.states.PointState)
    assert np.all(unpickled_state.pos == point_state.pos)
    assert np.all(unpickled_state.mom == point_state.mom)


def test_cache_in_state_memoizes(point_state):
    system = _CountingSystem()
    value = system.pos_norm(point_state)
    assert system.pos_norm(point_state) == value
    assert system.n_pos_call == 1


def test_cache_in_state_cleared_on_dependency_update(point_state):
    system = _CountingSystem()
    system.pos_norm(point_state)
    point_state.pos = point_state.pos + 1
    assert np.isclose(system.pos_norm(point_state), np.sum(point_state.pos**2))
    assert system.n_pos_call == 2


def test_cache_in_state_not_cleared_on_other_update(point_state):
    system = _CountingSystem()
    system.pos_norm(point_state)
    point_state.mom = -point_state.mom
    system.pos_norm(point_state)
    assert system.n_pos_call == 1


def test_call_counts_shared_between_copies(point_state):
    system = _CountingSystem()
    system.pos_norm(point_state)
    state_copy = point_state.copy()
    state_copy.pos = state_copy.pos * 2
    system.pos_norm(state_copy)
    assert point_state.call_count("pos_norm") == 2
    assert isinstance(point_state._call_counts, Counter)


@pytest.fixture(params=["diagonal", "dense", "frozen"])
def chain_state(request, rng):
    if request.param == "frozen":
        return ahmc.states.ChainState(
            pos=rng.standard_normal(2),
            step_size=0.3,
            preconditioner=DiagonalPreconditioner(np.exp(rng.standard_normal(2))),
            adaptation=None,
            iteration=1200,
            rng_state=rng.bit_generator.state,
        )
    if request.param == "dense":
        sqrt = rng.standard_normal((2, 2))
        preconditioner = DensePreconditioner(sqrt @ sqrt.T + np.identity(2))
        sum_diff = np.identity(2) * 3.0
    else:
        preconditioner = DiagonalPreconditioner(np.exp(rng.standard_normal(2)))
        sum_diff = np.array([1.5, 2.5])
    adaptation = AdaptationState(
        phase=AdaptationPhase(PhaseKind.GROWING_WINDOW, 1, 75, 225),
        step_size_state=DualAveragingState(12, 0.01, -0.7, -0.65, np.log(3.0)),
        metric_state=WelfordAccumulator(12, rng.standard_normal(2), sum_diff),
    )
    return ahmc.states.ChainState(
        pos=rng.standard_normal(2),
        step_size=0.5,
        preconditioner=preconditioner,
        adaptation=adaptation,
        iteration=87,
        rng_state=rng.bit_generator.state,
    )


def _assert_chain_states_equal(state, other):
    assert np.all(state.pos == other.pos)
    assert state.step_size == other.step_size
    assert state.preconditioner == other.preconditioner
    assert state.iteration == other.iteration
    assert state.rng_state == other.rng_state
    if state.adaptation is None:
        assert other.adaptation is None
        return
    assert state.adaptation.phase == other.adaptation.phase
    assert state.adaptation.step_size_state == other.adaptation.step_size_state
    for field in WelfordAccumulator._fields:
        assert np.all(
            getattr(state.adaptation.metric_state, field)
            == getattr(other.adaptation.metric_state, field)
        )


def test_chain_state_dict_round_trip(chain_state):
    restored = ahmc.states.ChainState.from_dict(chain_state.to_dict())
    _assert_chain_states_equal(chain_state, restored)


def test_chain_state_json_round_trip(chain_state):
    restored = ahmc.states.ChainState.from_json(chain_state.to_json())
    _assert_chain_states_equal(chain_state, restored)


def test_chain_state_make_rng_continues_stream(chain_state):
    expected = chain_state.make_rng().standard_normal(5)
    restored = ahmc.states.ChainState.from_json(chain_state.to_json())
    assert np.all(restored.make_rng().standard_normal(5) == expected)


@pytest.mark.parametrize(
    "bit_generator", ["PCG64", "PCG64DXSM", "MT19937", "Philox", "SFC64"]
)
def test_chain_state_json_round_trip_bit_generators(bit_generator):
    rng = np.random.Generator(getattr(np.random, bit_generator)(SEED))
    rng.standard_normal(3)
    chain_state = ahmc.states.ChainState(
        pos=np.zeros(2),
        step_size=0.5,
        preconditioner=DiagonalPreconditioner(np.ones(2)),
        adaptation=None,
        iteration=10,
        rng_state=rng.bit_generator.state,
    )
    restored = ahmc.states.ChainState.from_json(chain_state.to_json())
    restored_rng = restored.make_rng()
    assert type(restored_rng.bit_generator) is type(rng.bit_generator)
    assert np.all(restored_rng.standard_normal(5) == rng.standard_normal(5))
