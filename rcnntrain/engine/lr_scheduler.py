"""Piecewise learning rate and weight decay schedule.

A schedule is an ordered list of inclusive iteration ranges, each carrying a
learning rate and a weight decay. Before every iteration the row containing
the iteration overwrites both values in the live optimizer; iterations that
fall outside every row keep the previous values.

Example:
    >>> schedule = PiecewiseSchedule(DEFAULT_SGD_SCHEDULE)
    >>> for iteration in range(1, 50001):
    ...     schedule.apply(iteration, optimizer, optimizer_config)
    ...     optimizer.step(closure)
"""

import math
from typing import Any, Iterable, List, NamedTuple, Optional, Sequence, Union

from torch.optim import Optimizer


class ScheduleRow(NamedTuple):
    """One schedule entry covering iterations ``start`` to ``end`` inclusive."""

    start: int
    end: float
    lr: float
    weight_decay: float

    def contains(self, iteration: int) -> bool:
        return self.start <= iteration <= self.end


DEFAULT_SGD_SCHEDULE = (
    ScheduleRow(1, 8000, 5e-4, 5e-5),
    ScheduleRow(8001, 16000, 1e-4, 1e-5),
    ScheduleRow(16001, 24000, 1e-5, 0.0),
    ScheduleRow(24001, 35000, 1e-5, 0.0),
    ScheduleRow(35001, math.inf, 1e-5, 0.0),
)


class PiecewiseSchedule:
    """Iteration-range scoped overrides of learning rate and weight decay.

    Args:
        rows: Schedule rows or ``(start, end, lr, weight_decay)`` sequences.
            An ``end`` of None means open-ended.

    Raises:
        ValueError: If a row is inverted or rows overlap / are unordered.
    """

    def __init__(self, rows: Iterable[Union[ScheduleRow, Sequence[Any]]]):
        self.rows: List[ScheduleRow] = []
        for row in rows:
            start, end, lr, weight_decay = row
            end = math.inf if end is None else end
            row = ScheduleRow(int(start), end, float(lr), float(weight_decay))
            if row.end < row.start:
                raise ValueError(f"Schedule row ends before it starts: {tuple(row)}")
            if self.rows and row.start <= self.rows[-1].end:
                raise ValueError(
                    f"Schedule rows must be ordered and non-overlapping: "
                    f"{tuple(self.rows[-1])} then {tuple(row)}"
                )
            self.rows.append(row)

    def lookup(self, iteration: int) -> Optional[ScheduleRow]:
        """Return the row containing ``iteration``, or None."""
        for row in self.rows:
            if row.contains(iteration):
                return row
        return None

    def apply(self, iteration: int, optimizer: Optimizer, config: Optional[Any] = None) -> Optional[ScheduleRow]:
        """Write the matching row into the optimizer and its config.

        Args:
            iteration: 1-based iteration index.
            optimizer: Optimizer whose param groups are updated.
            config: Optional OptimizerConfig kept in sync with the groups.

        Returns:
            The applied row, or None when no row matched.
        """
        row = self.lookup(iteration)
        if row is None:
            return None
        for group in optimizer.param_groups:
            group["lr"] = row.lr
            group["weight_decay"] = row.weight_decay
        if config is not None:
            config.hyperparameters["lr"] = row.lr
            config.hyperparameters["weight_decay"] = row.weight_decay
        return row

    def __len__(self) -> int:
        return len(self.rows)

    def __repr__(self) -> str:
        return f"PiecewiseSchedule({[tuple(r) for r in self.rows]})"
