"""Core data structures and collaborator contracts.

This module defines the records exchanged between the training engine and
the collaborators it drives but does not own:
    - Detection / GroundTruthInstance / Sample: evaluation records
    - DetectionModel: holder of the proposal and classification networks
    - ObjectiveFn, Detector, BatchSource: call contracts

Boxes are always (x1, y1, x2, y2) in pixel coordinates.

Example:
    >>> det = Detection(box=[0, 0, 10, 10], label=1, confidence=0.9)
    >>> gt = GroundTruthInstance(box=[0, 0, 10, 10], label=1)
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, Tuple, Union

from torch import nn, Tensor

BoxLike = Union[Tensor, Sequence[float]]


@dataclass
class Detection:
    """A single predicted detection.

    Attributes:
        box: Proposal box in xyxy format.
        label: Predicted class index.
        confidence: Detection score. Values <= 0 mark the detection as
            not a candidate; it is skipped during scoring.
        refined_box: Box after classification-stage regression, if any.
    """

    box: BoxLike
    label: int
    confidence: float
    refined_box: Optional[BoxLike] = None

    @property
    def scored_box(self) -> BoxLike:
        """Box used for overlap scoring (refined box when available)."""
        return self.refined_box if self.refined_box is not None else self.box


@dataclass
class GroundTruthInstance:
    """Annotated object: a box and its class index."""

    box: BoxLike
    label: int


GroundTruthEntry = Union[GroundTruthInstance, Tuple[Any, ...], List[Any]]


@dataclass
class Sample:
    """One training/validation item produced by a BatchSource.

    Attributes:
        image: Image tensor of shape (C, H, W).
        rois: All ground-truth instances of the image.
        positive: Ground-truth subset used when scoring a training batch.
            Entries may be wrapped as ``(anchor, instance)`` pairs.
    """

    image: Tensor
    rois: List[GroundTruthInstance] = field(default_factory=list)
    positive: List[GroundTruthEntry] = field(default_factory=list)


class DetectionModel(Protocol):
    """Two-stage detector made of a proposal and a classification network."""

    pnet: nn.Module
    cnet: nn.Module


class ObjectiveFn(Protocol):
    """Loss/gradient evaluator called once per optimizer closure evaluation.

    Receives the flat weight vector and the training context; returns the
    scalar loss and the flat gradient. May record losses into
    ``context.stats`` and predictions into the context's confusion matrices.
    """

    def __call__(self, weights: Tensor, context: Any) -> Tuple[Any, Tensor]:
        ...


class Detector(Protocol):
    """Runs the full detection pipeline on one image."""

    def detect(self, image: Tensor) -> List[Detection]:
        ...


class BatchSource(Protocol):
    """Supplies training batches and validation samples."""

    def next_training(self, tag: str) -> List[Sample]:
        ...

    def next_validation(self, count: int) -> List[Sample]:
        ...
