"""Scheduling of warm-up adaptation over growing, memoryless windows.

Warm up is split into a sequence of phases

    INIT -> GROWING_WINDOW(0) -> GROWING_WINDOW(1) -> ... -> FINAL_WINDOW -> FROZEN

In the initial phase a reasonable initial step size is found, if not already set.
During the growing windows both the step size and the preconditioner (metric) are
adapted, with the metric estimate accumulated over each window committed at the
window's end and the accumulator then reset. At the end of every growing window the
regularization target of the step size adaptation is also reset. During the final window only the step
size is adapted. Once warm up completes the smoothed step size found by dual averaging
is used for all subsequent iterations with no further adaptation.

This follows the approach used in Stan (Carpenter et al., 2017).

References:
  1. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B., Betancourt, M.,
     Brubaker, M., Guo, J., Li, P. and Riddell, A.  (2017). Stan: A probabilistic
     programming language. Journal of Statistical Software, 76(1).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

from ahmc.adapters import DualAveragingState, WelfordAccumulator

if TYPE_CHECKING:
    from typing import Any

    from numpy.random import Generator

    from ahmc.adapters import (
        DualAveragingStepSizeAdapter,
        OnlineVarianceMetricAdapter,
    )
    from ahmc.states import PointState
    from ahmc.transitions import HMCStats, IntegrationTransition


logger = logging.getLogger(__name__)


class PhaseKind(Enum):
    INIT = "init"
    GROWING_WINDOW = "growing_window"
    FINAL_WINDOW = "final_window"
    FROZEN = "frozen"


class AdaptationPhase(NamedTuple):
    """Phase of warm-up adaptation.

    Parameters:
        kind: Kind of phase.
        window_index: Zero-based index of growing window or `None` for other phases.
        start: Index of first chain iteration in phase.
        end: Index one past last chain iteration in phase, `None` if unbounded.
    """

    kind: PhaseKind
    window_index: int | None
    start: int
    end: int | None

    @property
    def is_adapting(self) -> bool:
        return self.kind in (PhaseKind.GROWING_WINDOW, PhaseKind.FINAL_WINDOW)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "window_index": self.window_index,
            "start": self.start,
            "end": self.end,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AdaptationPhase:
        return cls(
            PhaseKind(data["kind"]), data["window_index"], data["start"], data["end"]
        )


INIT_PHASE = AdaptationPhase(PhaseKind.INIT, None, 0, 0)


class AdaptationState(NamedTuple):
    """State of warm-up adaptation carried between chain iterations.

    Parameters:
        phase: Phase of the next chain iteration.
        step_size_state: State of the dual averaging step size adapter.
        metric_state: State of the metric estimate accumulated over the current window
            or `None` if the metric is not being adapted.
    """

    phase: AdaptationPhase
    step_size_state: DualAveragingState
    metric_state: WelfordAccumulator | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.to_dict(),
            "step_size_state": self.step_size_state.to_dict(),
            "metric_state": (
                None if self.metric_state is None else self.metric_state.to_dict()
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AdaptationState:
        return cls(
            AdaptationPhase.from_dict(data["phase"]),
            DualAveragingState.from_dict(data["step_size_state"]),
            (
                None
                if data["metric_state"] is None
                else WelfordAccumulator.from_dict(data["metric_state"])
            ),
        )


class WindowedAdaptationSchedule:
    """Partition of warm-up iterations into growing windows and a final window.

    The growing windows start at `n_init_window_iter` iterations with each subsequent
    window `window_multiplier` times longer than the last. The window sizes are
    truncated so that together they take up all warm-up iterations other than those in
    the final window: if the remaining iterations after a window would number fewer
    than `n_init_window_iter` they are absorbed into that window, and a window which
    would overrun is shortened to the remaining iterations.

    If `n_init_window_iter + n_final_window_iter` exceeds the number of warm-up
    iterations, the final window is set to 10% of the warm-up iterations and a single
    growing window takes the rest.
    """

    def __init__(
        self,
        n_warm_up_iter: int,
        n_init_window_iter: int = 75,
        n_final_window_iter: int = 50,
        window_multiplier: float = 2,
    ):
        """
        Args:
            n_warm_up_iter: Total number of warm-up iterations.
            n_init_window_iter: Number of iterations in first (smallest) growing window.
            n_final_window_iter: Number of iterations in final step size only window.
            window_multiplier: Factor by which each growing window is longer than its
                predecessor.
        """
        if n_warm_up_iter < 0 or n_init_window_iter < 1 or n_final_window_iter < 0:
            msg = (
                "n_warm_up_iter and n_final_window_iter must be non-negative and "
                "n_init_window_iter positive."
            )
            raise ValueError(msg)
        if window_multiplier < 1:
            msg = "window_multiplier must be at least one."
            raise ValueError(msg)
        self.n_warm_up_iter = n_warm_up_iter
        if n_init_window_iter + n_final_window_iter > n_warm_up_iter:
            n_final_window_iter = int(0.1 * n_warm_up_iter)
            n_init_window_iter = n_warm_up_iter - n_final_window_iter
        self.n_final_window_iter = n_final_window_iter
        self.window_sizes = self._window_sizes(
            n_warm_up_iter - n_final_window_iter, n_init_window_iter, window_multiplier
        )
        self.window_bounds = []
        start = 0
        for size in self.window_sizes:
            self.window_bounds.append((start, start + size))
            start += size

    @staticmethod
    def _window_sizes(
        n_window_iter_total: int, n_init_window_iter: int, window_multiplier: float
    ) -> list[int]:
        sizes = []
        counter = 0
        n_window_iter = n_init_window_iter
        while counter < n_window_iter_total:
            n_remaining = n_window_iter_total - counter
            if (
                n_window_iter > n_remaining
                or n_remaining - n_window_iter < n_init_window_iter
            ):
                n_window_iter = n_remaining
            sizes.append(n_window_iter)
            counter += n_window_iter
            n_window_iter = int(window_multiplier * n_window_iter)
        return sizes

    @property
    def n_window(self) -> int:
        return len(self.window_sizes)

    def phase_at(self, iteration: int) -> AdaptationPhase:
        """Adaptation phase of a (zero-based) chain iteration index."""
        if iteration >= self.n_warm_up_iter:
            return AdaptationPhase(PhaseKind.FROZEN, None, self.n_warm_up_iter, None)
        for index, (start, end) in enumerate(self.window_bounds):
            if start <= iteration < end:
                return AdaptationPhase(PhaseKind.GROWING_WINDOW, index, start, end)
        return AdaptationPhase(
            PhaseKind.FINAL_WINDOW,
            None,
            self.n_warm_up_iter - self.n_final_window_iter,
            self.n_warm_up_iter,
        )

    def phases(self) -> list[AdaptationPhase]:
        """All phases in order, excluding the initial step size search."""
        phases = [
            AdaptationPhase(PhaseKind.GROWING_WINDOW, i, start, end)
            for i, (start, end) in enumerate(self.window_bounds)
        ]
        if self.n_final_window_iter > 0:
            phases.append(self.phase_at(self.n_warm_up_iter - 1))
        phases.append(self.phase_at(self.n_warm_up_iter))
        return phases


class AdaptationScheduler:
    """State machine coordinating step size and metric adaptation during warm up.

    The scheduler holds no mutable state itself: all state is carried in the
    :py:class:`AdaptationState` values passed to and returned from its methods, with
    the transition being adapted updated in place.
    """

    def __init__(
        self,
        schedule: WindowedAdaptationSchedule,
        step_size_adapter: DualAveragingStepSizeAdapter,
        metric_adapter: OnlineVarianceMetricAdapter | None = None,
    ):
        """
        Args:
            schedule: Partition of warm-up iterations into phases.
            step_size_adapter: Adapter for integrator step size.
            metric_adapter: Adapter for metric of Hamiltonian system. If `None` the
                metric is left fixed.
        """
        self.schedule = schedule
        self.step_size_adapter = step_size_adapter
        self.metric_adapter = metric_adapter

    def initialize(
        self,
        point: PointState,
        transition: IntegrationTransition,
        rng: Generator,
        iteration: int = 0,
    ) -> AdaptationState | None:
        """Run initial phase, finding a step size if none is set.

        Args:
            point: Chain state to start adaptation from. Not modified.
            transition: Transition being adapted. Its integrator step size is set in
                place if currently `None`.
            rng: Random number generator for the initial step size search.
            iteration: Index of next chain iteration.

        Returns:
            Initial adaptation state or `None` if there are no warm-up iterations
            remaining.
        """
        phase = self.schedule.phase_at(iteration)
        if phase.kind == PhaseKind.FROZEN:
            if transition.integrator.step_size is None:
                self.step_size_adapter.find_and_set_init_step_size(
                    point, transition.system, transition.integrator, rng
                )
            return None
        step_size_state = self.step_size_adapter.initialize(point, transition, rng)
        metric_state = (
            None
            if self.metric_adapter is None
            else self.metric_adapter.initialize(point, transition)
        )
        return AdaptationState(phase, step_size_state, metric_state)

    def update(
        self,
        adapt_state: AdaptationState | None,
        iteration: int,
        point: PointState,
        stats: HMCStats,
        transition: IntegrationTransition,
    ) -> AdaptationState | None:
        """Update adaptation state after a chain iteration.

        Args:
            adapt_state: Adaptation state before the iteration or `None` if frozen.
            iteration: Index of completed chain iteration.
            point: Chain state after the iteration. Not modified.
            stats: Statistics of the integration transition in the iteration.
            transition: Transition being adapted. Updated in place.

        Returns:
            Adaptation state for next iteration or `None` if adaptation has frozen.
        """
        if adapt_state is None:
            return None
        phase = self.schedule.phase_at(iteration)
        step_size_state = self.step_size_adapter.update(
            adapt_state.step_size_state, point, stats, transition
        )
        metric_state = adapt_state.metric_state
        if phase.kind == PhaseKind.GROWING_WINDOW:
            if self.metric_adapter is not None:
                metric_state = self.metric_adapter.update(
                    metric_state, point, stats, transition
                )
            if iteration + 1 == phase.end:
                logger.info(
                    f"End of adaptation window {phase.window_index + 1}/"
                    f"{self.schedule.n_window} at iteration {iteration + 1}."
                )
                if self.metric_adapter is not None:
                    self.metric_adapter.finalize(metric_state, transition)
                    metric_state = self.metric_adapter.initialize(point, transition)
                step_size_state = self.step_size_adapter.reset_reg_target(
                    step_size_state, transition.integrator.step_size
                )
        next_phase = self.schedule.phase_at(iteration + 1)
        if next_phase.kind == PhaseKind.FROZEN:
            self.step_size_adapter.finalize(step_size_state, transition)
            logger.info(
                f"Adaptation frozen after {iteration + 1} iterations with step size "
                f"{transition.integrator.step_size}."
            )
            return None
        return AdaptationState(next_phase, step_size_state, metric_state)
