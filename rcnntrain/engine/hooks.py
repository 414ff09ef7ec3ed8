"""Training hooks for rcnntrain.

This module provides modular callbacks for the training loop, including:
    - Loss logging to console and TensorBoard
    - Periodic evaluation and reporting (every ``plot`` iterations)
    - Periodic snapshots (every ``snapshot`` iterations)

Iterations are 1-based.

Example:
    >>> hooks = [
    ...     LoggingHook(log_interval=1),
    ...     EvalHook(interval=100),
    ...     CheckpointHook(interval=1000),
    ... ]
    >>> trainer = Trainer(model, objective, batch_source, detector_factory, hooks=hooks)
"""

import logging
import time
from abc import ABC
from pathlib import Path
from typing import Any, Dict, Optional

# Optional TensorBoard import
try:
    from torch.utils.tensorboard import SummaryWriter
    HAS_TENSORBOARD = True
except ImportError:
    HAS_TENSORBOARD = False


class Hook(ABC):
    """Base class for training hooks.

    Hooks provide a modular way to extend training functionality
    without modifying the core training loop.
    """

    def before_train(self, trainer: Any) -> None:
        """Called before training starts."""
        pass

    def after_train(self, trainer: Any) -> None:
        """Called after training ends."""
        pass

    def before_iter(self, trainer: Any, iteration: int) -> None:
        """Called before each iteration."""
        pass

    def after_iter(self, trainer: Any, iteration: int, outputs: Dict) -> None:
        """Called after each iteration with outputs."""
        pass


class LoggingHook(Hook):
    """Hook for logging training progress.

    Logs to console and optionally TensorBoard.

    Args:
        log_interval: Log every N iterations.
        log_dir: Directory for TensorBoard logs (optional).

    Example:
        >>> hook = LoggingHook(log_interval=50, log_dir="logs")
    """

    def __init__(
        self,
        log_interval: int = 1,
        log_dir: Optional[str] = None,
    ):
        self.log_interval = log_interval
        self.log_dir = log_dir

        self.logger = logging.getLogger("rcnntrain.trainer")
        self.writer = None

        self.iter_start_time = 0.0
        self.running_loss = 0.0
        self.num_iters = 0

    def before_train(self, trainer: Any) -> None:
        """Initialize TensorBoard writer if log_dir specified."""
        if self.log_dir and HAS_TENSORBOARD:
            log_path = Path(self.log_dir)
            log_path.mkdir(parents=True, exist_ok=True)
            self.writer = SummaryWriter(str(log_path))

    def after_train(self, trainer: Any) -> None:
        """Close TensorBoard writer."""
        if self.writer:
            self.writer.close()

    def before_iter(self, trainer: Any, iteration: int) -> None:
        """Record iteration start time."""
        self.iter_start_time = time.time()

    def after_iter(self, trainer: Any, iteration: int, outputs: Dict) -> None:
        """Log iteration loss."""
        loss = float(outputs.get("loss", 0.0))

        self.running_loss += loss
        self.num_iters += 1

        if iteration % self.log_interval == 0:
            iter_time = time.time() - self.iter_start_time
            avg_loss = self.running_loss / self.num_iters

            self.logger.info(
                f"Iter [{iteration}/{trainer.iterations}] "
                f"loss: {loss:.6f} (avg: {avg_loss:.6f}) "
                f"lr: {trainer.get_current_lr():.2e} "
                f"time: {iter_time:.3f}s"
            )

        if self.writer:
            self.writer.add_scalar("train/iter_loss", loss, iteration)
            self.writer.add_scalar("train/lr", trainer.get_current_lr(), iteration)


class EvalHook(Hook):
    """Hook for periodic evaluation.

    Every ``interval`` iterations the trainer finalizes its confusion
    matrices, logs training accuracy, plots progress, evaluates detections
    and resets the confusion matrices.

    Args:
        interval: Evaluate every N iterations.

    Example:
        >>> hook = EvalHook(interval=100)
    """

    def __init__(self, interval: int = 100):
        self.interval = interval
        self.logger = logging.getLogger("rcnntrain.trainer")

    def after_iter(self, trainer: Any, iteration: int, outputs: Dict) -> None:
        """Run evaluation if interval met."""
        if iteration % self.interval == 0:
            self.logger.info(f"Running evaluation at iteration {iteration}")
            summary = trainer.evaluate(iteration)
            if summary is not None and summary.scored:
                trainer.metrics["mAP"] = summary.mAP
                trainer.metrics["ap11"] = summary.ap11


class CheckpointHook(Hook):
    """Hook for saving snapshots of the flat weights and loss histories.

    Args:
        interval: Save a snapshot every N iterations.
        save_final: Also save a snapshot when training ends.

    Example:
        >>> hook = CheckpointHook(interval=1000)
    """

    def __init__(self, interval: int = 1000, save_final: bool = False):
        self.interval = interval
        self.save_final = save_final

    def after_iter(self, trainer: Any, iteration: int, outputs: Dict) -> None:
        """Save snapshot if interval met."""
        if iteration % self.interval == 0:
            trainer.save_checkpoint(iteration)

    def after_train(self, trainer: Any) -> None:
        """Save final snapshot after training if requested."""
        if self.save_final and trainer.global_step > 0 and trainer.global_step % self.interval != 0:
            trainer.save_checkpoint(trainer.global_step)
