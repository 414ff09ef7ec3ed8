"""Optimization strategy selection.

This module maps a strategy name to its optimizer class, its initial
hyperparameters and, for SGD, a piecewise learning rate schedule.

Supported strategies:
    - CG: conjugate gradient (rcnntrain.engine.cg)
    - LBFGS: limited-memory BFGS
    - sgd: Nesterov momentum SGD with the default step schedule
    - rmsprop, adagrad, adam, adadelta

Example:
    >>> config = select_optimizer("sgd", lr=1e-3)
    >>> optimizer = build_optimizer(config, params)
    >>> config.schedule.apply(1, optimizer, config)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Type, Union

import torch
from torch.optim import Optimizer

from .cg import ConjugateGradient
from .lr_scheduler import DEFAULT_SGD_SCHEDULE, PiecewiseSchedule

logger = logging.getLogger("rcnntrain.optimizer")


class OptimizerName(str, Enum):
    """Recognized optimization strategies."""

    CG = "CG"
    LBFGS = "LBFGS"
    SGD = "sgd"
    RMSPROP = "rmsprop"
    ADAGRAD = "adagrad"
    ADAM = "adam"
    ADADELTA = "adadelta"


@dataclass
class OptimizerConfig:
    """Selected strategy and its live hyperparameters.

    Attributes:
        name: The strategy.
        hyperparameters: Keyword arguments for the optimizer class. Only the
            schedule writes to this mapping after selection.
        schedule: Piecewise lr/weight decay schedule, SGD only.
    """

    name: OptimizerName
    hyperparameters: Dict[str, Any]
    schedule: Optional[PiecewiseSchedule] = None

    @property
    def optimizer_class(self) -> Type[Optimizer]:
        return OPTIMIZER_CLASSES[self.name]

    def numeric_items(self) -> Dict[str, float]:
        """Hyperparameters that are plain numbers, for reports."""
        return {
            k: v for k, v in self.hyperparameters.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }


OPTIMIZER_CLASSES: Dict[OptimizerName, Type[Optimizer]] = {
    OptimizerName.CG: ConjugateGradient,
    OptimizerName.LBFGS: torch.optim.LBFGS,
    OptimizerName.SGD: torch.optim.SGD,
    OptimizerName.RMSPROP: torch.optim.RMSprop,
    OptimizerName.ADAGRAD: torch.optim.Adagrad,
    OptimizerName.ADAM: torch.optim.Adam,
    OptimizerName.ADADELTA: torch.optim.Adadelta,
}

_HYPERPARAMETERS: Dict[OptimizerName, Callable[[float, float], Dict[str, Any]]] = {
    OptimizerName.CG: lambda lr, rms_decay: {"max_iter": 10000},
    OptimizerName.LBFGS: lambda lr, rms_decay: {
        "lr": lr,
        "max_iter": 10000,
        "history_size": 10,
    },
    OptimizerName.SGD: lambda lr, rms_decay: {
        "lr": lr,
        "weight_decay": 1e-5,
        "momentum": 0.8,
        "nesterov": True,
        "dampening": 0.0,
    },
    OptimizerName.RMSPROP: lambda lr, rms_decay: {
        "lr": lr,
        "alpha": rms_decay,
        "eps": 1e-3,
    },
    OptimizerName.ADAGRAD: lambda lr, rms_decay: {
        "lr": lr,
        "lr_decay": 0.0,
        "weight_decay": 0.0,
    },
    OptimizerName.ADAM: lambda lr, rms_decay: {
        "lr": lr,
        "betas": (0.9, 0.999),
    },
    OptimizerName.ADADELTA: lambda lr, rms_decay: {
        "rho": 0.9,
        "weight_decay": 0.0,
    },
}


def select_optimizer(
    name: Union[str, OptimizerName],
    lr: float = 1e-3,
    rms_decay: float = 0.9,
    schedule_rows: Optional[Iterable[Sequence[Any]]] = None,
) -> OptimizerConfig:
    """Select an optimization strategy by name.

    Args:
        name: Strategy name, e.g. "adam" or "sgd". Case sensitive.
        lr: Learning rate for strategies that take one.
        rms_decay: Moving average factor for rmsprop.
        schedule_rows: Custom SGD schedule rows replacing the default.

    Returns:
        OptimizerConfig with initial hyperparameters and optional schedule.

    Raises:
        ValueError: If the strategy name is unknown.
    """
    try:
        name = OptimizerName(name)
    except ValueError:
        raise ValueError(
            f"Unknown optimizer type: {name}. Expected one of {[n.value for n in OptimizerName]}"
        ) from None

    hyperparameters = _HYPERPARAMETERS[name](lr, rms_decay)

    schedule = None
    if name == OptimizerName.SGD:
        schedule = PiecewiseSchedule(schedule_rows if schedule_rows else DEFAULT_SGD_SCHEDULE)
    elif schedule_rows:
        logger.warning(f"Learning rate schedule is only applied with sgd; ignored for {name.value}")

    return OptimizerConfig(name=name, hyperparameters=hyperparameters, schedule=schedule)


def build_optimizer(config: OptimizerConfig, params: Iterable[torch.Tensor]) -> Optimizer:
    """Instantiate the optimizer of a selected strategy over ``params``."""
    return config.optimizer_class(list(params), **config.hyperparameters)
