"""
Tests for Trainer class.

This module tests the training loop: optimizer selection at init, the
per-iteration schedule, training modes, periodic evaluation with confusion
resets, snapshots and warm starts.
"""

from pathlib import Path

import pytest
import torch

from rcnntrain.engine.checkpoint import checkpoint_path
from rcnntrain.engine.hooks import CheckpointHook, EvalHook, Hook, LoggingHook
from rcnntrain.engine.modes import TrainingMode
from rcnntrain.engine.optimizer import OptimizerName
from rcnntrain.engine.trainer import Trainer, TrainingState, build_trainer


class ConfusionProbe(Hook):
    """Records the proposal confusion total after every iteration."""

    def __init__(self):
        self.totals = []

    def after_iter(self, trainer, iteration, outputs):
        self.totals.append(trainer.context.proposal_confusion.mat.sum().item())


class FailingObjective:
    """Objective that raises on its n-th call."""

    def __init__(self, fail_at):
        self.fail_at = fail_at
        self.calls = 0

    def __call__(self, weights, context):
        self.calls += 1
        if self.calls == self.fail_at:
            raise RuntimeError("objective failed")
        return 0.0, torch.zeros_like(weights)


@pytest.fixture
def make_trainer(toy_model, objective, batch_source, detector, train_config):
    """Build a Trainer over the toy collaborators with optional overrides."""
    def _make(model=None, objective_fn=None, **kwargs):
        return Trainer(
            model=model if model is not None else toy_model,
            objective=objective_fn if objective_fn is not None else objective,
            batch_source=batch_source,
            detector_factory=lambda context: detector,
            config=kwargs.pop("config", train_config),
            **kwargs,
        )
    return _make


class TestTrainerBasic:
    """Basic tests for Trainer class."""

    def test_trainer_creation(self, make_trainer, toy_model):
        """Test Trainer can be created from config."""
        trainer = make_trainer()

        assert trainer.state is TrainingState.INIT
        assert trainer.model is toy_model
        assert trainer.device == torch.device("cpu")
        assert trainer.iterations == 4
        assert trainer.mode is TrainingMode.BOTH
        assert trainer.optimizer_config.name is OptimizerName.ADAM
        assert isinstance(trainer.optimizer, torch.optim.Adam)
        assert set(trainer.store.ranges) == {"pnet", "cnet"}
        assert trainer.context.classification_confusion.num_classes == 3

    def test_default_hooks(self, make_trainer):
        trainer = make_trainer()

        assert [type(h) for h in trainer.hooks] == [LoggingHook, EvalHook, CheckpointHook]
        assert trainer.hooks[1].interval == 2
        assert trainer.hooks[2].interval == 2

    def test_unknown_optimizer_is_fatal(self, make_trainer, train_config):
        train_config.set("train.optimizer.type", "momentum")

        with pytest.raises(ValueError, match="Unknown optimizer type"):
            make_trainer()

    def test_unknown_mode_is_fatal(self, make_trainer, train_config):
        train_config.set("train.mode", "onlyDnet")

        with pytest.raises(ValueError, match="Unknown training mode"):
            make_trainer()

    def test_get_current_lr(self, make_trainer):
        assert make_trainer().get_current_lr() == pytest.approx(0.1)

    def test_build_trainer(self, toy_model, objective, batch_source, detector, train_config):
        trainer = build_trainer(toy_model, objective, batch_source,
                                lambda context: detector, config=train_config, hooks=[])

        assert isinstance(trainer, Trainer)
        assert trainer.hooks == []


class TestTrainingLoop:
    """Tests for Trainer.train."""

    def test_runs_iteration_budget(self, make_trainer, objective):
        trainer = make_trainer(hooks=[])

        metrics = trainer.train()

        assert trainer.global_step == 4
        assert trainer.state is TrainingState.TERMINATED
        assert objective.calls == 4
        assert len(trainer.context.stats) == 4
        assert "loss" in metrics

    def test_weights_move_toward_minimum(self, make_trainer):
        trainer = make_trainer(hooks=[])
        start = trainer.store.weights.norm().item()

        trainer.train(iterations=20)

        assert trainer.store.weights.norm().item() < start

    def test_module_parameters_follow_flat_weights(self, make_trainer, toy_model):
        trainer = make_trainer(hooks=[])

        trainer.train()

        flat_pnet = trainer.store.view("pnet")
        assert torch.equal(toy_model.pnet.weight.detach().reshape(-1),
                           flat_pnet[:toy_model.pnet.weight.numel()])

    def test_periodic_outputs(self, make_trainer, train_config):
        """Evaluation, report and snapshots happen at their cadence."""
        trainer = make_trainer()

        trainer.train()

        result_dir = Path(train_config.get("output.result_dir"))
        assert checkpoint_path(result_dir, "toy", 2).exists()
        assert checkpoint_path(result_dir, "toy", 4).exists()
        assert not checkpoint_path(result_dir, "toy", 3).exists()
        assert (result_dir / "report.html").exists()
        assert (result_dir / "toyproposal_progress.png").exists()
        assert trainer.metrics["mAP"] == pytest.approx(100.0)
        assert "ap11" in trainer.metrics

    def test_confusion_reset_each_cycle(self, make_trainer):
        """Confusion tallies are zero right after evaluation and grow in between."""
        probe = ConfusionProbe()
        trainer = make_trainer(hooks=[EvalHook(interval=2), probe])

        trainer.train(iterations=6)

        assert probe.totals == [2, 0, 2, 0, 2, 0]

    def test_objective_failure_aborts(self, make_trainer):
        """Objective errors propagate; after_train hooks still run."""
        calls = []

        class AfterTrain(Hook):
            def after_train(self, trainer):
                calls.append(trainer.global_step)

        trainer = make_trainer(objective_fn=FailingObjective(fail_at=3), hooks=[AfterTrain()])

        with pytest.raises(RuntimeError, match="objective failed"):
            trainer.train()

        assert calls == [2]
        assert trainer.state is TrainingState.TERMINATED

    def test_lbfgs_may_evaluate_several_times(self, make_trainer, train_config, objective):
        train_config.set("train.optimizer.type", "LBFGS")
        trainer = make_trainer(hooks=[])

        trainer.train(iterations=1)

        assert objective.calls > 1
        assert len(trainer.context.stats) == objective.calls


class TestSchedule:
    """Tests for the SGD schedule inside the loop."""

    def test_default_schedule_applied(self, make_trainer, train_config):
        train_config.set("train.optimizer.type", "sgd")
        trainer = make_trainer(hooks=[])

        trainer.train(iterations=1)

        assert trainer.get_current_lr() == 5e-4
        assert trainer.optimizer.param_groups[0]["weight_decay"] == 5e-5
        assert trainer.optimizer_config.hyperparameters["lr"] == 5e-4

    def test_custom_schedule(self, make_trainer, train_config):
        train_config.set("train.optimizer.type", "sgd")
        train_config.set("train.schedule", [[1, 2, 0.05, 0.0], [3, None, 0.01, 0.001]])
        trainer = make_trainer(hooks=[])
        seen = []

        class LrProbe(Hook):
            def after_iter(self, trainer, iteration, outputs):
                seen.append(trainer.get_current_lr())

        trainer.hooks = [LrProbe()]
        trainer.train()

        assert seen == [0.05, 0.05, 0.01, 0.01]
        assert trainer.optimizer.param_groups[0]["weight_decay"] == 0.001

    def test_no_schedule_for_adam(self, make_trainer):
        trainer = make_trainer(hooks=[])

        trainer.train()

        assert trainer.optimizer_config.schedule is None
        assert trainer.get_current_lr() == pytest.approx(0.1)


class TestTrainingModes:
    """Tests for onlyPnet and onlyCnet runs."""

    def test_only_pnet_freezes_cnet(self, make_trainer, train_config, toy_model):
        train_config.set("train.mode", "onlyPnet")
        trainer = make_trainer()
        cnet_before = trainer.store.view("cnet").clone()
        pnet_before = trainer.store.view("pnet").clone()

        trainer.train()

        assert torch.equal(trainer.store.view("cnet"), cnet_before)
        assert not torch.equal(trainer.store.view("pnet"), pnet_before)
        assert "mAP" not in trainer.metrics

    def test_only_cnet_freezes_pnet(self, make_trainer, train_config):
        train_config.set("train.mode", "onlyCnet")
        trainer = make_trainer(hooks=[])
        pnet_before = trainer.store.view("pnet").clone()

        trainer.train()

        assert torch.equal(trainer.store.view("pnet"), pnet_before)
        frozen = trainer.context.frozen_proposal_network
        assert frozen is not None
        assert torch.equal(frozen.weight.detach().reshape(-1),
                           pnet_before[:frozen.weight.numel()])

    def test_only_cnet_warm_start(self, make_trainer, model_factory, train_config):
        """pnet and cnet snapshots restore their own ranges; stats come from cnet."""
        donor = make_trainer(model=model_factory(), hooks=[])
        donor.train(iterations=3)
        pnet_path = donor.save_checkpoint(3)
        donor.store.view("cnet").fill_(0.5)
        donor.context.stats.append(9.0, 9.0, 9.0, 9.0)
        cnet_path = donor.save_checkpoint(4)

        train_config.set("train.mode", "onlyCnet")
        trainer = make_trainer(model=model_factory(), hooks=[],
                               restore_pnet=str(pnet_path), restore_cnet=str(cnet_path))

        assert torch.equal(trainer.store.view("pnet"), donor.store.view("pnet"))
        assert torch.all(trainer.store.view("cnet") == 0.5)
        assert len(trainer.context.stats) == 4
        assert trainer.context.stats.pcls[-1] == 9.0
        frozen = trainer.context.frozen_proposal_network
        assert torch.equal(frozen.bias.detach(), trainer.model.pnet.bias.detach())

    def test_warm_start_from_config(self, make_trainer, model_factory, train_config):
        donor = make_trainer(model=model_factory(), hooks=[])
        path = donor.save_checkpoint(1)

        train_config.set("train.restore_pnet", str(path))
        trainer = make_trainer(model=model_factory(), hooks=[])

        assert torch.equal(trainer.store.view("pnet"), donor.store.view("pnet"))

    def test_missing_restore_is_fatal(self, make_trainer, tmp_path):
        with pytest.raises(FileNotFoundError):
            make_trainer(restore_pnet=str(tmp_path / "missing.pth"))


class TestTrainerCheckpoint:
    """Tests for checkpoint save/load functionality."""

    def test_save_and_load_checkpoint(self, make_trainer, model_factory):
        trainer = make_trainer(model=model_factory(), hooks=[])
        trainer.train()
        path = trainer.save_checkpoint()

        fresh = make_trainer(model=model_factory(), hooks=[])
        fresh.load_checkpoint(path)

        assert path.name == "toy_000004.pth"
        assert torch.equal(fresh.store.weights, trainer.store.weights)
        assert fresh.context.stats == trainer.context.stats

    def test_checkpoint_contains_config(self, make_trainer):
        trainer = make_trainer(hooks=[])

        checkpoint = torch.load(trainer.save_checkpoint(0), map_location="cpu")

        assert checkpoint["config"]["output"]["name"] == "toy"
        assert checkpoint["mode"] == "both"
        assert checkpoint["optimizer"] == "adam"

    def test_save_restores_state(self, make_trainer):
        trainer = make_trainer(hooks=[])

        trainer.save_checkpoint(1)

        assert trainer.state is TrainingState.INIT


class TestEvaluate:
    """Tests for Trainer.evaluate."""

    def test_evaluate_returns_summary(self, make_trainer, detector):
        trainer = make_trainer(hooks=[])
        trainer.context.proposal_confusion.add(1, 1)

        summary = trainer.evaluate(10)

        assert summary.iteration == 10
        assert summary.num_samples == 2
        assert detector.images == 2
        assert trainer.context.proposal_confusion.mat.sum().item() == 0
        assert trainer.state is TrainingState.RUNNING

    def test_detector_built_from_context(self, toy_model, objective, batch_source, detector, train_config):
        contexts = []

        def factory(context):
            contexts.append(context)
            return detector

        trainer = Trainer(toy_model, objective, batch_source, factory, config=train_config, hooks=[])
        trainer.evaluate(1)

        assert contexts == [trainer.context]
