"""Objects for recording state of a Markov chain and caching computations."""

from __future__ import annotations

import copy
import json
from collections import Counter
from functools import wraps
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from ahmc.errors import ReadOnlyStateError
from ahmc.preconditioners import preconditioner_from_dict
from ahmc.schedulers import AdaptationState

if TYPE_CHECKING:
    from typing import Any, Callable

    from numpy.random import Generator
    from numpy.typing import ArrayLike, NDArray

    from ahmc.preconditioners import Preconditioner
    from ahmc.systems import System


def _cache_key_func(system: System, method: Callable | str) -> tuple[str, int]:
    """Construct cache key for a given system and method pair."""
    if not isinstance(method, str):
        method = method.__name__
    return (f"{type(system).__name__}.{method}", id(system))


def cache_in_state(*depends_on: str):
    """Memoizing decorator for system methods.

    Used to decorate :py:class:`ahmc.systems.System` methods which compute a function of
    one or more point state variables, with the decorated method caching the value
    returned by the method being wrapped in the :py:class:`PointState` object to prevent
    recomputation on future calls if the variables the returned value depends on have
    not been changed in between the calls.

    Every time the wrapped method is actually called (i.e. when there is no valid cached
    value available) a counter for the method in the `_call_counts` attribute of the
    state is incremented, which allows the number of log density evaluations over a
    whole chain to be monitored.

    Args:
       *depends_on: One or more strings corresponding to the names of any state
           variables the value returned by the method depends on, e.g. 'pos' or 'mom',
           such that the cache in the state object is correctly cleared when the value
           of any of these variables (attributes) of the state object changes.
    """

    def cache_in_state_decorator(method):
        @wraps(method)
        def wrapper(self, state):
            key = _cache_key_func(self, method)
            if key not in state._cache:
                for dep in depends_on:
                    state._dependencies[dep].add(key)
            if state._cache.get(key) is None:
                state._cache[key] = method(self, state)
                state._call_counts[key] += 1
            return state._cache[key]

        return wrapper

    return cache_in_state_decorator


class PointState:
    """Position and momentum of a point in phase space.

    As well as recording the position and momentum, the state object is used to cache
    derived quantities such as the log density and its gradient to avoid recalculation
    if these values are subsequently reused. Assigning a new value to :code:`pos` or
    :code:`mom` clears any cached values depending on that variable. Variables should
    therefore be updated by assignment rather than by in-place array operations.
    """

    _variable_names = ("pos", "mom")

    def __init__(
        self,
        pos: ArrayLike,
        mom: NDArray | None = None,
        *,
        _call_counts: Counter | None = None,
        _read_only: bool = False,
        _dependencies: dict[str, set] | None = None,
        _cache: dict | None = None,
    ):
        """
        Args:
            pos: Position vector.
            mom: Momentum vector or `None` if not yet sampled.
            _call_counts: Counter of calls to methods decorated with `cache_in_state`.
                Shared between all copies of a state so counts calls over a whole chain.
            _read_only: If `True` a :py:exc:`ahmc.errors.ReadOnlyStateError` exception
                will be raised when attempting to set variables after construction.
            _dependencies: Intended for internal use only. Mapping from variable names
                to sets of cache keys depending on that variable.
            _cache: Intended for internal use only. Mapping from cache keys to cached
                values or `None` for invalidated values.
        """
        # Set attributes by directly writing to __dict__ to ensure set before any call
        # to __setattr__
        self.__dict__["_variables"] = {"pos": pos, "mom": mom}
        if _dependencies is None:
            _dependencies = {name: set() for name in self._variable_names}
        self.__dict__["_dependencies"] = _dependencies
        self.__dict__["_cache"] = {} if _cache is None else _cache
        self.__dict__["_call_counts"] = (
            Counter() if _call_counts is None else _call_counts
        )
        self.__dict__["_read_only"] = _read_only

    def __getattr__(self, name: str) -> Any:
        if name in self._variables:
            return self._variables[name]
        msg = f"'{type(self).__name__}' object has no attribute '{name}'"
        raise AttributeError(msg)

    def __setattr__(self, name: str, value: Any):
        if self._read_only:
            msg = "PointState instance is read-only."
            raise ReadOnlyStateError(msg)
        if name in self._variables:
            self._variables[name] = value
            for dep in self._dependencies[name]:
                self._cache[dep] = None
        else:
            super().__setattr__(name, value)

    def copy(self, *, read_only: bool = False) -> PointState:
        """Create a deep copy of the state object.

        Args:
            read_only: Whether the state copy should be read-only.

        Returns:
            A copy of the state object with variable attributes that are independent
            copies of the original state object's variables.
        """
        return type(self)(
            **{name: copy.copy(val) for name, val in self._variables.items()},
            _call_counts=self._call_counts,
            _read_only=read_only,
            _dependencies=self._dependencies,
            _cache=self._cache.copy(),
        )

    def call_count(self, method_name: str) -> int:
        """Number of evaluations of a cached method over all copies of this state.

        Args:
            method_name: Name of method decorated with `cache_in_state`, for example
                `"log_dens_and_grad"`.
        """
        return sum(
            count
            for (key, _), count in self._call_counts.items()
            if key.rsplit(".", 1)[-1] == method_name
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(pos={self.pos}, mom={self.mom})"

    def __getstate__(self) -> dict[str, Any]:
        return {
            "variables": self._variables,
            "dependencies": self._dependencies,
            "cache": self._cache,
            "call_counts": self._call_counts,
            "read_only": self._read_only,
        }

    def __setstate__(self, state: dict[str, Any]):
        self.__dict__["_variables"] = state["variables"]
        self.__dict__["_dependencies"] = state["dependencies"]
        self.__dict__["_cache"] = state["cache"]
        self.__dict__["_call_counts"] = state["call_counts"]
        self.__dict__["_read_only"] = state["read_only"]


def _array_values_to_lists(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _array_values_to_lists(val) for key, val in value.items()}
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


def generator_from_state(rng_state: dict[str, Any]) -> Generator:
    """Construct a random number generator from a bit generator state dictionary.

    Array valued entries of the state (as used by for example the `MT19937`, `Philox`
    and `SFC64` bit generators) may be given as lists of integers.
    """
    bit_generator = getattr(np.random, rng_state["bit_generator"])()
    bit_generator.state = rng_state
    return np.random.Generator(bit_generator)


class ChainState(NamedTuple):
    """Snapshot of a Markov chain sufficient to resume sampling it.

    Parameters:
        pos: Current position of chain.
        step_size: Current integrator step size or `None` if the initial step size is
            still to be found by a search.
        preconditioner: Current preconditioner (metric) of the Hamiltonian system.
        adaptation: State of warm-up adaptation or `None` once adaptation has frozen.
        iteration: Number of chain iterations completed so far.
        rng_state: State of the bit generator of the chain's random number generator.
    """

    pos: NDArray
    step_size: float | None
    preconditioner: Preconditioner
    adaptation: AdaptationState | None
    iteration: int
    rng_state: dict[str, Any]

    def make_rng(self) -> Generator:
        """Create a random number generator continuing from the recorded stream."""
        return generator_from_state(self.rng_state)

    def to_dict(self) -> dict[str, Any]:
        """Plain Python representation of state, inverted by :py:meth:`from_dict`."""
        return {
            "pos": np.asarray(self.pos).tolist(),
            "step_size": self.step_size,
            "preconditioner": self.preconditioner.to_dict(),
            "adaptation": (
                None if self.adaptation is None else self.adaptation.to_dict()
            ),
            "iteration": self.iteration,
            "rng_state": _array_values_to_lists(self.rng_state),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainState:
        return cls(
            pos=np.array(data["pos"], dtype=np.float64),
            step_size=data["step_size"],
            preconditioner=preconditioner_from_dict(data["preconditioner"]),
            adaptation=(
                None
                if data["adaptation"] is None
                else AdaptationState.from_dict(data["adaptation"])
            ),
            iteration=data["iteration"],
            rng_state=copy.deepcopy(data["rng_state"]),
        )

    def to_json(self, **kwargs) -> str:
        """Serialize state to a JSON string.

        Args:
            **kwargs: Any keyword arguments to pass to :py:func:`json.dumps`.
        """
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_json(cls, string: str) -> ChainState:
        return cls.from_dict(json.loads(string))
