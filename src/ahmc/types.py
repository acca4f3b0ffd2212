"""Type aliases."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias

from numpy.typing import ArrayLike, NDArray

from ahmc.adapters import DualAveragingState, WelfordAccumulator
from ahmc.transitions import HMCStats

LogDensityFunction: TypeAlias = Callable[[NDArray], tuple[float, ArrayLike]]
"""Function returning the log density of the target distribution and its gradient.

May raise :py:exc:`ahmc.errors.DomainError` if evaluated outside of the support of the
target distribution.
"""

AdaptationStatisticFunction: TypeAlias = Callable[[HMCStats], float]
"""Function returning adaptation statistic given transition statistics."""

AdapterState: TypeAlias = DualAveragingState | WelfordAccumulator
"""State of an :py:class:`ahmc.adapters.Adapter`."""
