"""Training and evaluation engine for rcnntrain.

This module provides:
    - Trainer: Iteration-driven training loop with warm starts and snapshots
    - Optimizers: strategy selection, SGD step schedule, conjugate gradient
    - Modes: flat parameter store and pnet/cnet freezing
    - Hooks: CheckpointHook, LoggingHook, EvalHook
    - Evaluator: match classification, precision/recall and average precision

Example:
    >>> from rcnntrain.engine import Trainer, build_trainer
    >>> trainer = build_trainer(model, objective, source, make_detector, config=config)
    >>> trainer.train()
"""

from .trainer import Trainer, TrainingState, build_trainer
from .cg import ConjugateGradient
from .checkpoint import checkpoint_path, load_checkpoint, save_checkpoint
from .context import ConfusionMatrix, TrainingContext, TrainingStats
from .lr_scheduler import DEFAULT_SGD_SCHEDULE, PiecewiseSchedule, ScheduleRow
from .modes import ParameterStore, TrainingMode, TrainingModeController
from .optimizer import OptimizerConfig, OptimizerName, build_optimizer, select_optimizer
from .hooks import (
    Hook,
    CheckpointHook,
    LoggingHook,
    EvalHook,
)
from .evaluator import (
    EvaluationRunner,
    EvaluationSummary,
    MatchResult,
    average_precision,
    build_evaluator,
    classify_matches,
    compute_iou_matrix,
    eleven_point_ap,
    precision_recall_curve,
    voc_ap,
)
from .report import ReportWriter, draw_detections, plot_training_progress

__all__ = [
    # Trainer
    "Trainer",
    "TrainingState",
    "build_trainer",
    # Optimization
    "ConjugateGradient",
    "OptimizerConfig",
    "OptimizerName",
    "build_optimizer",
    "select_optimizer",
    "DEFAULT_SGD_SCHEDULE",
    "PiecewiseSchedule",
    "ScheduleRow",
    # Modes and context
    "ParameterStore",
    "TrainingMode",
    "TrainingModeController",
    "ConfusionMatrix",
    "TrainingContext",
    "TrainingStats",
    # Checkpoints
    "checkpoint_path",
    "load_checkpoint",
    "save_checkpoint",
    # Hooks
    "Hook",
    "CheckpointHook",
    "LoggingHook",
    "EvalHook",
    # Evaluator
    "EvaluationRunner",
    "EvaluationSummary",
    "MatchResult",
    "average_precision",
    "build_evaluator",
    "classify_matches",
    "compute_iou_matrix",
    "eleven_point_ap",
    "precision_recall_curve",
    "voc_ap",
    # Report
    "ReportWriter",
    "draw_detections",
    "plot_training_progress",
]
