"""Training engine for rcnntrain.

This module provides the iteration-driven Trainer for two-stage detectors:
    - Optimizer strategy selection with an SGD step schedule
    - Training modes that freeze the proposal or classification network
    - One flat weight/gradient store shared by both networks
    - Periodic evaluation, reporting and snapshots through hooks

The loop moves through INIT -> RUNNING -> (EVALUATING | SNAPSHOTTING)* ->
TERMINATED and runs a fixed number of iterations.

Example:
    >>> from rcnntrain.engine import Trainer
    >>> from rcnntrain.configs import get_default_config
    >>>
    >>> config = get_default_config()
    >>> trainer = Trainer(model, objective, batch_source, detector_factory, config=config)
    >>> trainer.train()
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import torch

from ..structures import BatchSource, DetectionModel, Detector, ObjectiveFn
from .checkpoint import checkpoint_path, load_checkpoint as load_snapshot, save_checkpoint as save_snapshot
from .context import TrainingContext
from .evaluator import EvaluationRunner, EvaluationSummary, build_evaluator
from .hooks import CheckpointHook, EvalHook, Hook, LoggingHook
from .modes import ParameterStore, TrainingModeController
from .optimizer import build_optimizer, select_optimizer
from .report import ReportWriter

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("rcnntrain.trainer")

DetectorFactory = Callable[[TrainingContext], Detector]


class TrainingState(str, Enum):
    """Lifecycle state of a Trainer."""

    INIT = "init"
    RUNNING = "running"
    EVALUATING = "evaluating"
    SNAPSHOTTING = "snapshotting"
    TERMINATED = "terminated"


class Trainer:
    """Main training engine for two-stage detectors.

    Handles optimizer selection, warm starts, the per-iteration schedule and
    optimizer step, and delegates periodic work to hooks.

    Args:
        model: Detector exposing ``pnet`` and ``cnet`` modules.
        objective: Called as ``objective(weights, context)``; returns the
            loss and the flat gradient.
        batch_source: Supplier of training batches and validation samples.
        detector_factory: Builds a Detector from the training context for
            each evaluation cycle.
        config: Configuration object with ``get(key, default)``.
        device: Device for both networks. Uses ``system.device`` or CUDA when
            available if None.
        hooks: List of training hooks. Defaults to logging, evaluation and
            checkpoint hooks at the configured cadences.
        reporter: Report writer. Built from config if None.
        evaluator: Evaluation runner. Built from config if None.
        restore_pnet: Snapshot to warm-start the proposal network from.
        restore_cnet: Snapshot to warm-start the classification network from.

    Attributes:
        state: Current TrainingState.
        store: Flat parameter store of both networks.
        context: Loss histories, confusion matrices and frozen pnet.
        optimizer_config: Selected strategy and live hyperparameters.
        optimizer: The torch optimizer over the trainable ranges.
        global_step: Last completed iteration.
        metrics: Dictionary of tracked metrics.

    Raises:
        ValueError: If the optimizer type or training mode is unknown.

    Example:
        >>> trainer = Trainer(model, objective, source, make_detector, config=config)
        >>> trainer.train()
    """

    def __init__(
        self,
        model: DetectionModel,
        objective: ObjectiveFn,
        batch_source: BatchSource,
        detector_factory: DetectorFactory,
        config: Optional[Any] = None,
        device: Optional[torch.device] = None,
        hooks: Optional[List[Hook]] = None,
        reporter: Optional[ReportWriter] = None,
        evaluator: Optional[EvaluationRunner] = None,
        restore_pnet: Optional[str] = None,
        restore_cnet: Optional[str] = None,
    ):
        self.state = TrainingState.INIT
        self.config = config

        # Mode and optimizer strategy are fixed for the run
        self.mode_controller = TrainingModeController(self._get_config("train.mode", "both"))
        self.mode = self.mode_controller.mode
        self.optimizer_config = select_optimizer(
            self._get_config("train.optimizer.type", "adam"),
            lr=self._get_config("train.optimizer.lr", 1e-3),
            rms_decay=self._get_config("train.optimizer.rms_decay", 0.9),
            schedule_rows=self._get_config("train.schedule", None),
        )

        # Set device
        if device is None:
            device = self._get_config("system.device", None)
            if device is None:
                device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = torch.device(device)

        self.model = model
        self.model.pnet.to(self.device)
        self.model.cnet.to(self.device)
        self.store = ParameterStore({"pnet": self.model.pnet, "cnet": self.model.cnet})

        # Training state
        self.iterations = self._get_config("train.iterations", 50000)
        self.plot_interval = self._get_config("train.plot_interval", 100)
        self.snapshot_interval = self._get_config("train.snapshot_interval", 1000)
        self.result_dir = Path(self._get_config("output.result_dir", "logs"))
        self.name = self._get_config("output.name", "imgnet")
        self.global_step = 0
        self.metrics: Dict[str, float] = {}

        self.context = TrainingContext.create(
            class_count=self._get_config("model.class_count", 20),
            mode=self.mode,
        )

        # Warm start
        if restore_pnet is None:
            restore_pnet = self._get_config("train.restore_pnet", None)
        if restore_cnet is None:
            restore_cnet = self._get_config("train.restore_cnet", None)
        load_snapshot(restore_pnet, self.store, networks=("pnet",))
        if self.mode_controller.needs_frozen_proposal:
            # Copy before any cnet snapshot touches the store
            self.context.frozen_proposal_network = (
                self.mode_controller.freeze_proposal_network(self.model.pnet)
            )
            stats = load_snapshot(restore_cnet, self.store, networks=("cnet",))
            if stats is not None:
                self.context.stats = stats
        else:
            load_snapshot(restore_cnet, self.store, networks=("cnet",))

        self.optimizer = build_optimizer(
            self.optimizer_config,
            self.mode_controller.trainable_parameters(self.store),
        )

        self.objective = objective
        self.batch_source = batch_source
        self.detector_factory = detector_factory

        if reporter is None:
            reporter = ReportWriter(
                self.result_dir,
                self.name,
                save_images=self._get_config("eval.save_images", True),
                background_class=self._get_config("eval.background_class", None),
            )
        self.reporter = reporter

        if evaluator is None:
            evaluator = build_evaluator(
                batch_source, config, mode=self.mode, reporter=self.reporter
            )
        self.evaluator = evaluator

        self.hooks = hooks if hooks is not None else self._default_hooks()

    def _get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value with fallback to default."""
        if self.config is None:
            return default
        return self.config.get(key, default)

    def _default_hooks(self) -> List[Hook]:
        """Create default training hooks."""
        log_interval = self._get_config("train.log_interval", 1)
        return [
            LoggingHook(log_interval=log_interval),
            EvalHook(interval=self.plot_interval),
            CheckpointHook(interval=self.snapshot_interval),
        ]

    def _closure(self) -> Any:
        """Evaluate the objective and expose its gradient to the optimizer."""
        loss, gradient = self.objective(self.store.weights, self.context)
        if gradient is not self.store.gradient:
            self.store.gradient.copy_(gradient.reshape(-1))
        self.mode_controller.attach_gradients(self.store)
        return loss

    def train(self, iterations: Optional[int] = None) -> Dict[str, float]:
        """Run the training loop up to ``iterations``.

        Args:
            iterations: Total iteration budget. Uses config if None.

        Returns:
            Dictionary of final metrics.
        """
        if iterations is not None:
            self.iterations = iterations

        logger.info(f"Starting training for {self.iterations} iterations")
        logger.info(f"Device: {self.device}")
        logger.info(f"Mode: {self.mode.value}")
        logger.info(f"Optimizer: {self.optimizer_config.name.value} {self.optimizer_config.hyperparameters}")

        for hook in self.hooks:
            hook.before_train(self)

        self.state = TrainingState.RUNNING
        try:
            for iteration in range(self.global_step + 1, self.iterations + 1):
                for hook in self.hooks:
                    hook.before_iter(self, iteration)

                outputs = self.train_step(iteration)
                self.global_step = iteration
                self.metrics["loss"] = outputs["loss"]

                for hook in self.hooks:
                    hook.after_iter(self, iteration, outputs)

        finally:
            for hook in self.hooks:
                hook.after_train(self)
            self.state = TrainingState.TERMINATED

        logger.info("Training complete!")
        return self.metrics

    def train_step(self, iteration: int) -> Dict[str, float]:
        """Execute single training iteration.

        Args:
            iteration: 1-based iteration index.

        Returns:
            Dictionary with the loss and the step time.
        """
        schedule = self.optimizer_config.schedule
        if schedule is not None:
            schedule.apply(iteration, self.optimizer, self.optimizer_config)

        start = time.time()
        loss = self.optimizer.step(self._closure)
        if isinstance(loss, torch.Tensor):
            loss = loss.item()

        return {"loss": float(loss), "time": time.time() - start}

    def evaluate(self, iteration: int) -> EvaluationSummary:
        """Run one reporting cycle.

        Finalizes the confusion matrices, logs training accuracy, plots the
        loss histories, evaluates the detector, writes the report and resets
        the confusion matrices.

        Args:
            iteration: Current iteration.

        Returns:
            EvaluationSummary of the cycle.
        """
        self.state = TrainingState.EVALUATING

        train_acc_pnet, train_acc_cnet = self.context.finalize_confusion()
        logger.info(f"Train accuracy: pnet {train_acc_pnet:.2f} cnet: {train_acc_cnet:.2f}")
        logger.info(f"training pnet confusion:\n{self.context.proposal_confusion}")
        if self.mode_controller.scores_detections:
            logger.info(f"training cnet confusion:\n{self.context.classification_confusion}")

        self.reporter.plot_progress(self.context.stats)

        with torch.no_grad():
            detector = self.detector_factory(self.context)
            summary = self.evaluator.evaluate(detector, iteration)

        self.reporter.write(iteration, self.optimizer_config, summary, self.context)
        self.context.reset_confusion()

        self.state = TrainingState.RUNNING
        return summary

    def get_current_lr(self) -> float:
        """Get current learning rate.

        Returns:
            Current learning rate from first param group.
        """
        return self.optimizer.param_groups[0].get("lr", 0.0)

    def save_checkpoint(self, iteration: Optional[int] = None) -> Path:
        """Save a snapshot of the flat weights and loss histories.

        Args:
            iteration: Iteration used in the file name. Defaults to the
                last completed iteration.

        Returns:
            Path of the written snapshot.
        """
        if iteration is None:
            iteration = self.global_step
        previous = self.state
        self.state = TrainingState.SNAPSHOTTING

        extra = {"config": self.config.to_dict()} if hasattr(self.config, "to_dict") else None
        path = save_snapshot(
            checkpoint_path(self.result_dir, self.name, iteration),
            self.store,
            iteration=iteration,
            mode=self.mode,
            optimizer=self.optimizer_config.name.value,
            stats=self.context.stats,
            extra=extra,
        )

        self.state = previous
        return path

    def load_checkpoint(self, filepath: Union[str, Path], networks=("pnet", "cnet")) -> None:
        """Load network weights (and loss histories, if stored) from a snapshot.

        Args:
            filepath: Path to snapshot file.
            networks: Sub-networks to restore.
        """
        stats = load_snapshot(filepath, self.store, networks=networks)
        if stats is not None:
            self.context.stats = stats


def build_trainer(
    model: DetectionModel,
    objective: ObjectiveFn,
    batch_source: BatchSource,
    detector_factory: DetectorFactory,
    config: Optional[Any] = None,
    **kwargs,
) -> Trainer:
    """Build Trainer from a model and its collaborators.

    Convenience function for creating a Trainer with standard settings.

    Args:
        model: Detector with ``pnet`` and ``cnet``.
        objective: Loss/gradient evaluator.
        batch_source: Training and validation data supplier.
        detector_factory: Builds the evaluation detector.
        config: Configuration object.
        **kwargs: Additional arguments for Trainer.

    Returns:
        Configured Trainer instance.
    """
    return Trainer(
        model=model,
        objective=objective,
        batch_source=batch_source,
        detector_factory=detector_factory,
        config=config,
        **kwargs,
    )
