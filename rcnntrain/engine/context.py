"""Mutable training state shared between the loop and its collaborators.

This module provides:
    - TrainingStats: append-only loss histories persisted with checkpoints
    - ConfusionMatrix: resettable per-class prediction tally
    - TrainingContext: the single object the loop lends to the objective
      and detector factories

Example:
    >>> context = TrainingContext.create(class_count=20)
    >>> context.proposal_confusion.add(torch.tensor([1, 0]), torch.tensor([1, 1]))
    >>> pnet_acc, cnet_acc = context.finalize_confusion()
    >>> context.reset_confusion()
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch
from torch import nn, Tensor

from .modes import TrainingMode

LOSS_KEYS = ("pcls", "preg", "dcls", "dreg")


@dataclass
class TrainingStats:
    """Loss histories, one entry per objective evaluation.

    Attributes:
        pcls: Proposal classification loss.
        preg: Proposal box regression loss.
        dcls: Detection classification loss.
        dreg: Detection box regression loss.
    """

    pcls: List[float] = field(default_factory=list)
    preg: List[float] = field(default_factory=list)
    dcls: List[float] = field(default_factory=list)
    dreg: List[float] = field(default_factory=list)

    def append(self, pcls: float, preg: float, dcls: float, dreg: float) -> None:
        """Record the four loss components of one evaluation."""
        self.pcls.append(float(pcls))
        self.preg.append(float(preg))
        self.dcls.append(float(dcls))
        self.dreg.append(float(dreg))

    def __len__(self) -> int:
        return len(self.pcls)

    def to_dict(self) -> Dict[str, List[float]]:
        return {key: list(getattr(self, key)) for key in LOSS_KEYS}

    @classmethod
    def from_dict(cls, data: Dict[str, Sequence[float]]) -> "TrainingStats":
        return cls(**{key: [float(v) for v in data.get(key, [])] for key in LOSS_KEYS})


class ConfusionMatrix:
    """Per-class confusion tally with validity summaries.

    Rows index the target class, columns the predicted class.

    Args:
        num_classes: Number of classes.
        class_names: Optional display names, one per class.

    Attributes:
        mat: Count matrix. Shape: (num_classes, num_classes).
        valids: Per-class recall computed by ``update_valids``.
        total_valid: Fraction of all tallied items predicted correctly.
        average_valid: Mean of ``valids``.
    """

    def __init__(self, num_classes: int, class_names: Optional[List[str]] = None):
        if num_classes < 1:
            raise ValueError(f"num_classes must be positive, got {num_classes}")
        self.num_classes = num_classes
        self.class_names = class_names
        self.mat = torch.zeros(num_classes, num_classes, dtype=torch.long)
        self.valids = torch.zeros(num_classes, dtype=torch.float64)
        self.total_valid = 0.0
        self.average_valid = 0.0

    def add(self, prediction: Union[int, Tensor], target: Union[int, Tensor]) -> None:
        """Tally predictions against targets.

        Args:
            prediction: Class index, 1-D tensor of class indices, or a score
                tensor of shape (N, num_classes) reduced by argmax.
            target: Class index or 1-D tensor of class indices.
        """
        prediction = torch.as_tensor(prediction).detach().cpu()
        target = torch.as_tensor(target).detach().cpu()
        if prediction.dim() == 2:
            prediction = prediction.argmax(dim=1)
        prediction = prediction.reshape(-1).long()
        target = target.reshape(-1).long()
        if prediction.numel() != target.numel():
            raise ValueError(
                f"prediction and target sizes differ: {prediction.numel()} vs {target.numel()}"
            )
        ones = torch.ones(prediction.numel(), dtype=torch.long)
        self.mat.index_put_((target, prediction), ones, accumulate=True)

    def update_valids(self) -> None:
        """Recompute per-class and global accuracy from the tally."""
        total = self.mat.sum().item()
        self.total_valid = self.mat.diag().sum().item() / total if total > 0 else 0.0

        row_sums = self.mat.sum(dim=1).double()
        diag = self.mat.diag().double()
        self.valids = torch.where(
            row_sums > 0, diag / row_sums.clamp(min=1), torch.zeros_like(diag)
        )
        self.average_valid = self.valids.mean().item()

    def zero(self) -> None:
        """Reset all counts and summaries."""
        self.mat.zero_()
        self.valids.zero_()
        self.total_valid = 0.0
        self.average_valid = 0.0

    def __str__(self) -> str:
        self.update_valids()
        width = max(4, len(str(self.mat.max().item())) + 1)
        lines = ["ConfusionMatrix:"]
        for i in range(self.num_classes):
            row = " ".join(f"{v:>{width}d}" for v in self.mat[i].tolist())
            opening = "[[" if i == 0 else " ["
            closing = "]]" if i == self.num_classes - 1 else "] "
            name = self.class_names[i] if self.class_names else str(i)
            lines.append(
                f"{opening}{row}{closing}  {100 * self.valids[i].item():7.3f}%\t[class: {name}]"
            )
        lines.append(f" + average row correct: {100 * self.average_valid:.3f}%")
        lines.append(f" + global correct: {100 * self.total_valid:.3f}%")
        return "\n".join(lines)


@dataclass
class TrainingContext:
    """State the training loop owns and lends to its collaborators.

    Attributes:
        stats: Loss histories.
        proposal_confusion: Background/foreground tally of the proposal net.
        classification_confusion: Tally over ``class_count + 1`` classes
            (the extra class is background).
        mode: Training mode of the run.
        frozen_proposal_network: Proposal network snapshot used to generate
            proposals in ``onlyCnet`` mode, else None.
    """

    stats: TrainingStats
    proposal_confusion: ConfusionMatrix
    classification_confusion: ConfusionMatrix
    mode: TrainingMode = TrainingMode.BOTH
    frozen_proposal_network: Optional[nn.Module] = None

    @classmethod
    def create(cls, class_count: int, mode: TrainingMode = TrainingMode.BOTH) -> "TrainingContext":
        return cls(
            stats=TrainingStats(),
            proposal_confusion=ConfusionMatrix(2, ["background", "foreground"]),
            classification_confusion=ConfusionMatrix(class_count + 1),
            mode=mode,
        )

    def finalize_confusion(self) -> Tuple[float, float]:
        """Update both matrices and return training accuracies in percent."""
        self.proposal_confusion.update_valids()
        self.classification_confusion.update_valids()
        return (
            self.proposal_confusion.total_valid * 100,
            self.classification_confusion.total_valid * 100,
        )

    def reset_confusion(self) -> None:
        self.proposal_confusion.zero()
        self.classification_confusion.zero()
