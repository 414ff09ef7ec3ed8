"""
Pytest fixtures and configuration for the rcnntrain test suite.

This module provides a tiny two-stage detector, a quadratic objective and
scripted detector / batch source collaborators, so the training engine can
be exercised without real networks or datasets.
"""

from typing import List, Optional

import pytest
import torch
import torch.nn as nn
from torch import Tensor

from rcnntrain.configs import Config
from rcnntrain.structures import Detection, GroundTruthInstance, Sample


# ============================================================================
# Fake collaborators
# ============================================================================

class ToyDetectionModel(nn.Module):
    """Two-stage model with a small proposal and classification network."""

    def __init__(self):
        super().__init__()
        self.pnet = nn.Linear(4, 3)
        self.cnet = nn.Linear(3, 2)


class QuadraticObjective:
    """Loss 0.5 * ||weights - target||^2 with gradient (weights - target).

    Records the four loss components and a tally into both confusion
    matrices on every call, the way a real objective would.
    """

    def __init__(self, target: Optional[Tensor] = None):
        self.target = target
        self.calls = 0

    def __call__(self, weights: Tensor, context):
        if self.target is None:
            self.target = torch.zeros_like(weights)
        self.calls += 1
        diff = weights - self.target
        loss = 0.5 * diff.pow(2).sum().item()
        context.stats.append(loss, loss / 2, loss / 3, loss / 4)
        context.proposal_confusion.add(torch.tensor([1, 0]), torch.tensor([1, 1]))
        context.classification_confusion.add(0, 0)
        return loss, diff.clone()


class ScriptedDetector:
    """Detector returning the same detections for every image."""

    def __init__(self, detections: List[Detection]):
        self.detections = detections
        self.images = 0

    def detect(self, image: Tensor) -> List[Detection]:
        self.images += 1
        return list(self.detections)


class ListBatchSource:
    """Batch source cycling through a fixed list of samples."""

    def __init__(self, samples: List[Sample]):
        self.samples = samples
        self.training_tags: List[str] = []
        self.validation_draws = 0

    def next_training(self, tag: str) -> List[Sample]:
        self.training_tags.append(tag)
        return list(self.samples)

    def next_validation(self, count: int) -> List[Sample]:
        drawn = []
        for _ in range(count):
            drawn.append(self.samples[self.validation_draws % len(self.samples)])
            self.validation_draws += 1
        return drawn


# ============================================================================
# Device Fixtures
# ============================================================================

@pytest.fixture
def cpu_device() -> torch.device:
    """Get CPU device for deterministic tests."""
    return torch.device("cpu")


# ============================================================================
# Data Fixtures
# ============================================================================

@pytest.fixture
def ground_truth() -> List[GroundTruthInstance]:
    """Two annotated objects of classes 1 and 2."""
    return [
        GroundTruthInstance(box=torch.tensor([0.0, 0.0, 10.0, 10.0]), label=1),
        GroundTruthInstance(box=torch.tensor([20.0, 20.0, 30.0, 30.0]), label=2),
    ]


@pytest.fixture
def samples(ground_truth) -> List[Sample]:
    """Three small samples sharing the same annotations."""
    torch.manual_seed(0)
    return [
        Sample(
            image=torch.rand(3, 32, 32),
            rois=list(ground_truth),
            positive=[(None, gt) for gt in ground_truth],
        )
        for _ in range(3)
    ]


@pytest.fixture
def perfect_detections() -> List[Detection]:
    """Detections matching both ground-truth objects exactly."""
    return [
        Detection(box=[0.0, 0.0, 10.0, 10.0], label=1, confidence=0.9),
        Detection(box=[15.0, 15.0, 35.0, 35.0], label=2, confidence=0.8,
                  refined_box=[20.0, 20.0, 30.0, 30.0]),
    ]


@pytest.fixture
def batch_source(samples) -> ListBatchSource:
    return ListBatchSource(samples)


@pytest.fixture
def detector(perfect_detections) -> ScriptedDetector:
    return ScriptedDetector(perfect_detections)


@pytest.fixture
def toy_model() -> ToyDetectionModel:
    torch.manual_seed(0)
    return ToyDetectionModel()


@pytest.fixture
def model_factory():
    """Callable building a fresh ToyDetectionModel with its own weights."""
    return ToyDetectionModel


@pytest.fixture
def objective_factory():
    """Callable building a fresh QuadraticObjective."""
    return QuadraticObjective


@pytest.fixture
def batch_source_factory():
    """Callable building a ListBatchSource from samples."""
    return ListBatchSource


@pytest.fixture
def objective() -> QuadraticObjective:
    return QuadraticObjective()


# ============================================================================
# Config Fixtures
# ============================================================================

@pytest.fixture
def train_config(tmp_path) -> Config:
    """Short CPU run writing into a temporary directory."""
    return Config({
        "model": {"class_count": 2},
        "train": {
            "mode": "both",
            "iterations": 4,
            "plot_interval": 2,
            "snapshot_interval": 2,
            "log_interval": 1,
            "optimizer": {"type": "adam", "lr": 0.1},
        },
        "eval": {"num_samples": 2, "save_images": False},
        "output": {"result_dir": str(tmp_path / "logs"), "name": "toy"},
        "system": {"device": "cpu"},
    })
