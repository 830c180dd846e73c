"""
Progress reporting and cancellation for MLSim replicate runs.

A run is ``n_conditions`` conditions of ``n_replicates`` replicates each.
``ProgressReporter`` counts finished replicates across the whole run,
reports them through a ``(completed, total)`` callback and polls an
optional ``cancel_check`` between replicates. The callback works from
scripts (``PrintReporter``, ``TqdmReporter``) and GUI applications alike.
"""

import sys
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised when a replicate run is cancelled between replicates.

    Attributes:
        completed: Replicates finished before cancellation, across all
            conditions.
        condition: 0-based condition that was running, or ``None`` for a
            single-condition run.
    """

    def __init__(self, message: str, completed: int = 0, condition: Optional[int] = None):
        super().__init__(message)
        self.completed = completed
        self.condition = condition


class ProgressReporter:
    """Replicate counter for a run of one or more conditions.

    The callback fires on ``start``, at most once every *update_every*
    replicates, at the end of every condition and on completion.

    Args:
        n_replicates: Replicates per condition.
        callback: Called as ``callback(completed, total)``; ``None`` only
            counts.
        n_conditions: Number of conditions in the run.
        cancel_check: Polled by ``check_cancelled``; returning ``True``
            cancels the run.
        update_every: Throttle for the callback. Defaults to
            ``max(1, total // 200)`` (~200 updates total).
    """

    def __init__(
        self,
        n_replicates: int,
        callback: Optional[Callable[[int, int], None]] = None,
        n_conditions: int = 1,
        cancel_check: Optional[Callable[[], bool]] = None,
        update_every: Optional[int] = None,
    ):
        self.n_replicates = n_replicates
        self.n_conditions = n_conditions
        self.total = compute_total_replicates(n_replicates, n_conditions)
        self.completed = 0
        self._callback = callback
        self._cancel_check = cancel_check
        self.update_every = update_every if update_every is not None else max(1, self.total // 200)

    @property
    def condition(self) -> int:
        """0-based condition the next replicate belongs to."""
        return min(self.completed // self.n_replicates, self.n_conditions - 1)

    def _notify(self):
        if self._callback is not None:
            self._callback(self.completed, self.total)

    def start(self):
        """Reset the counter and fire an initial ``(0, total)`` update."""
        self.completed = 0
        self._notify()

    def replicate_done(self):
        """Count one finished replicate, firing the callback when due."""
        self.completed += 1
        if self.completed >= self.total or self.completed % self.n_replicates == 0 or self.completed % self.update_every == 0:
            self._notify()

    def check_cancelled(self):
        """Raise ``SimulationCancelled`` if the cancel check asks for it."""
        if self._cancel_check is None or not self._cancel_check():
            return
        message = f"Simulation cancelled after {self.completed} of {self.total} replicates"
        condition = None
        if self.n_conditions > 1:
            condition = self.condition
            message += f" (in condition {condition + 1} of {self.n_conditions})"
        raise SimulationCancelled(message, completed=self.completed, condition=condition)

    def finish(self):
        """Fire a final ``(total, total)`` update if the last one was throttled away."""
        if self.completed < self.total:
            self.completed = self.total
            self._notify()


def _condition_label(current: int, total: int, replicates_per_condition: Optional[int]) -> str:
    if not replicates_per_condition or total <= replicates_per_condition:
        return ""
    n_conditions = -(-total // replicates_per_condition)
    condition = min(current // replicates_per_condition, n_conditions - 1) + 1
    return f", condition {condition}/{n_conditions}"


class PrintReporter:
    """Console progress: ``\\rProgress:  45.0% (45/100 replicates, condition 2/4)``.

    Args:
        replicates_per_condition: Replicates per condition of a
            ``simulate_conditions`` run; adds the running condition to the
            line.
    """

    def __init__(self, replicates_per_condition: Optional[int] = None):
        self.replicates_per_condition = replicates_per_condition

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        pct = 100.0 * current / total
        label = _condition_label(current, total, self.replicates_per_condition)
        sys.stderr.write(f"\rProgress: {pct:5.1f}% ({current}/{total} replicates{label})")
        sys.stderr.flush()
        if current >= total:
            sys.stderr.write("\n")
            sys.stderr.flush()


class TqdmReporter:
    """Optional tqdm progress bar (lazy import, needs the ``progress`` extra).

    Usage::

        from mlsim.progress import TqdmReporter
        sim.simulate_replicates(500, progress_callback=TqdmReporter())

    Args:
        replicates_per_condition: Show the running condition as the bar
            postfix.
        **tqdm_kwargs: Passed to ``tqdm``.
    """

    def __init__(self, replicates_per_condition: Optional[int] = None, **tqdm_kwargs):
        self.replicates_per_condition = replicates_per_condition
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="rep", **self._tqdm_kwargs)

        label = _condition_label(current, total, self.replicates_per_condition)
        if label:
            self._bar.set_postfix_str(label.lstrip(", "), refresh=False)

        delta = current - self._bar.n
        if delta > 0:
            self._bar.update(delta)

        if current >= total:
            self._bar.close()
            self._bar = None


def compute_total_replicates(n_replicates: int, n_conditions: int = 1) -> int:
    """Total number of replicates across all conditions of a run."""
    return n_replicates * n_conditions
