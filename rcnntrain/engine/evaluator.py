"""Detection scoring and periodic evaluation.

This module scores predicted detections against ground truth and reduces the
per-sample counts to an average precision summary.

Key features:
    - IoU matching at 0.5 with per-pair TP/FP counting
    - Cumulative precision-recall curves over ordered samples
    - 11-point interpolated AP (perfect-precision points only)
    - PASCAL VOC monotonic-envelope AP, reported as mAP
    - EvaluationRunner sampling a training batch or random validation images

Reference:
    PASCAL VOC devkit: http://host.robots.ox.ac.uk/pascal/VOC/

Example:
    >>> runner = EvaluationRunner(batch_source, mode="both")
    >>> summary = runner.evaluate(detector, iteration=100)
    >>> print(f"mAP: {summary.mAP:.2f}")
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from ..structures import BatchSource, Detection, Detector, GroundTruthEntry, GroundTruthInstance, Sample
from .modes import TrainingMode

logger = logging.getLogger("rcnntrain.evaluator")

PRECISION_EPS = 1e-16


def compute_iou_matrix(pred_boxes: Tensor, gt_boxes: Tensor) -> Tensor:
    """Compute IoU matrix between predictions and ground truth boxes.

    Args:
        pred_boxes: Predicted boxes in xyxy format. Shape: (N, 4).
        gt_boxes: Ground truth boxes in xyxy format. Shape: (M, 4).

    Returns:
        IoU matrix. Shape: (N, M).

    Example:
        >>> pred = torch.tensor([[0, 0, 10, 10], [5, 5, 15, 15]])
        >>> gt = torch.tensor([[0, 0, 10, 10]])
        >>> iou = compute_iou_matrix(pred, gt)
        >>> print(iou.shape)  # (2, 1)
    """
    if pred_boxes.numel() == 0 or gt_boxes.numel() == 0:
        return torch.zeros((pred_boxes.shape[0], gt_boxes.shape[0]),
                          device=pred_boxes.device)

    pred_area = (pred_boxes[:, 2] - pred_boxes[:, 0]) * \
                (pred_boxes[:, 3] - pred_boxes[:, 1])
    gt_area = (gt_boxes[:, 2] - gt_boxes[:, 0]) * \
              (gt_boxes[:, 3] - gt_boxes[:, 1])

    lt = torch.max(pred_boxes[:, None, :2], gt_boxes[:, :2])  # (N, M, 2)
    rb = torch.min(pred_boxes[:, None, 2:], gt_boxes[:, 2:])  # (N, M, 2)

    wh = (rb - lt).clamp(min=0)  # (N, M, 2)
    intersection = wh[:, :, 0] * wh[:, :, 1]  # (N, M)

    union = pred_area[:, None] + gt_area - intersection

    return intersection / (union + 1e-8)


def _stack_boxes(boxes: Sequence[Any]) -> Tensor:
    if len(boxes) == 0:
        return torch.zeros((0, 4), dtype=torch.float64)
    return torch.stack([
        torch.as_tensor(b, dtype=torch.float64).detach().cpu().reshape(4) for b in boxes
    ])


def normalize_ground_truth(entry: GroundTruthEntry) -> GroundTruthInstance:
    """Unwrap a ground-truth entry to a flat instance.

    Some batch sources wrap an instance as ``(instance,)`` or
    ``(anchor, instance)``; the instance is always the last element.

    Raises:
        TypeError: If the entry holds no GroundTruthInstance.
    """
    if isinstance(entry, (tuple, list)) and len(entry) > 0:
        entry = entry[-1]
    if not isinstance(entry, GroundTruthInstance):
        raise TypeError(f"Expected a GroundTruthInstance, got {type(entry).__name__}")
    return entry


class MatchResult(NamedTuple):
    """Per-sample TP/FP counts and number of ground-truth instances."""

    tp: int
    fp: int
    npos: int


def classify_matches(
    matches: Sequence[Detection],
    ground_truth: Sequence[GroundTruthEntry],
    iou_threshold: float = 0.5,
) -> MatchResult:
    """Count true and false positives of one sample.

    Detections with non-positive confidence are dropped. Every remaining
    (detection, ground truth) pair with IoU above ``iou_threshold`` counts
    once: as TP when the labels agree, else as FP. Detections are not
    assigned one-to-one, so a detection overlapping several ground-truth
    boxes contributes several counts.

    Args:
        matches: Detections of the sample.
        ground_truth: Ground-truth entries, possibly wrapped.
        iou_threshold: Minimum IoU (exclusive) for a pair to count.

    Returns:
        MatchResult with ``npos = len(ground_truth)``.
    """
    instances = [normalize_ground_truth(g) for g in ground_truth]
    npos = len(instances)

    candidates = [m for m in matches if m.confidence > 0]
    if not candidates or not instances:
        return MatchResult(0, 0, npos)

    iou = compute_iou_matrix(
        _stack_boxes([m.scored_box for m in candidates]),
        _stack_boxes([g.box for g in instances]),
    )
    pred_labels = torch.tensor([int(m.label) for m in candidates])
    gt_labels = torch.tensor([int(g.label) for g in instances])

    overlapping = iou > iou_threshold
    same_class = pred_labels[:, None] == gt_labels[None, :]

    tp = int((overlapping & same_class).sum().item())
    fp = int((overlapping & ~same_class).sum().item())
    return MatchResult(tp, fp, npos)


def precision_recall_curve(
    tp: Union[Tensor, Sequence[int]],
    fp: Union[Tensor, Sequence[int]],
    npos: int,
    eps: float = PRECISION_EPS,
) -> Tuple[Tensor, Tensor]:
    """Cumulative recall and precision over ordered samples.

    Samples must already be ordered by descending confidence for the result
    to be a meaningful curve; no sorting happens here.

    Args:
        tp: Per-sample true positive counts.
        fp: Per-sample false positive counts.
        npos: Total number of ground-truth instances.
        eps: Added to the precision denominator.

    Returns:
        Tuple of (recall, precision), float64 tensors of the input length.
        Recall is all zeros when ``npos`` is 0.
    """
    cum_tp = torch.cumsum(torch.as_tensor(tp, dtype=torch.float64), dim=0)
    cum_fp = torch.cumsum(torch.as_tensor(fp, dtype=torch.float64), dim=0)

    if npos > 0:
        recall = cum_tp / npos
    else:
        recall = torch.zeros_like(cum_tp)
    precision = cum_tp / (cum_tp + cum_fp + eps)
    return recall, precision


def eleven_point_ap(recall: Tensor, precision: Tensor) -> float:
    """11-point interpolated AP counting only perfect-precision points.

    For each recall threshold 0, 0.1, ..., 1.0 the interpolated precision
    is the best precision at or beyond the threshold; any value below 1 is
    zeroed before averaging.
    """
    ap = 0.0
    for i in range(11):
        t = i / 10
        mask = recall >= t
        p = precision[mask].max().item() if mask.any() else 0.0
        if p < 1:
            p = 0.0
        ap += p / 11
    return ap


def average_precision(
    tp: Union[Tensor, Sequence[int]],
    fp: Union[Tensor, Sequence[int]],
    npos: int,
) -> Tuple[Tensor, Tensor, float]:
    """Build the precision-recall curve and its 11-point AP.

    Returns:
        Tuple of (recall, precision, ap).
    """
    recall, precision = precision_recall_curve(tp, fp, npos)
    return recall, precision, eleven_point_ap(recall, precision)


def voc_ap(recall: Tensor, precision: Tensor) -> float:
    """PASCAL VOC average precision over the monotonic precision envelope.

    Args:
        recall: Recall values in sample order. Shape: (N,).
        precision: Precision values corresponding to recall. Shape: (N,).

    Returns:
        Average Precision value in [0, 1].

    Example:
        >>> voc_ap(torch.tensor([0.5, 1.0]), torch.tensor([1.0, 1.0]))
        1.0
    """
    recall = torch.as_tensor(recall, dtype=torch.float64)
    precision = torch.as_tensor(precision, dtype=torch.float64)

    mrec = torch.cat([torch.zeros(1, dtype=torch.float64), recall,
                      torch.ones(1, dtype=torch.float64)])
    mpre = torch.cat([torch.zeros(1, dtype=torch.float64), precision,
                      torch.zeros(1, dtype=torch.float64)])

    # Make precision monotonically decreasing (from right to left)
    for i in range(len(mpre) - 2, -1, -1):
        mpre[i] = torch.max(mpre[i], mpre[i + 1])

    changed = torch.nonzero(mrec[1:] != mrec[:-1], as_tuple=True)[0] + 1
    return torch.sum((mrec[changed] - mrec[changed - 1]) * mpre[changed]).item()


@dataclass
class EvaluationSummary:
    """Result of one evaluation cycle.

    Attributes:
        iteration: Training iteration the evaluation ran at.
        mAP: VOC AP in percent; 0 when detections were not scored.
        ap: VOC AP in [0, 1].
        ap11: 11-point AP of the same curve, kept for logging.
        npos: Total ground-truth instances over all samples.
        tp: Per-sample true positive counts.
        fp: Per-sample false positive counts.
        recall: Cumulative recall curve, None when not scored.
        precision: Cumulative precision curve, None when not scored.
        scored: Whether detections were scored against ground truth.
    """

    iteration: int
    mAP: float
    ap: float
    ap11: float
    npos: int
    tp: Tensor
    fp: Tensor
    recall: Optional[Tensor] = None
    precision: Optional[Tensor] = None
    scored: bool = True

    @property
    def num_samples(self) -> int:
        return self.tp.numel()


class EvaluationRunner:
    """Samples data, runs the detector and summarizes detection quality.

    Two sampling policies are supported:
        - single-batch: every item of one training batch, scored against
          the batch's ``positive`` ground truth
        - random: ``num_samples`` independent validation draws, scored
          against all ``rois``

    Args:
        batch_source: Supplier of training batches and validation samples.
        mode: Training mode; under ``onlyPnet`` nothing is scored.
        one_batch_training: Use the single-batch policy.
        num_samples: Number of validation draws for the random policy.
        iou_threshold: IoU above which a pair is counted.
        reporter: Optional object with ``save_sample(index, image,
            detections, ground_truth)`` used to write annotated images.

    Example:
        >>> runner = EvaluationRunner(source, mode=TrainingMode.BOTH)
        >>> summary = runner.evaluate(detector)
    """

    def __init__(
        self,
        batch_source: BatchSource,
        mode: Union[str, TrainingMode] = TrainingMode.BOTH,
        one_batch_training: bool = False,
        num_samples: int = 20,
        iou_threshold: float = 0.5,
        reporter: Optional[Any] = None,
    ) -> None:
        self.batch_source = batch_source
        self.mode = TrainingMode.parse(mode)
        self.one_batch_training = one_batch_training
        self.num_samples = num_samples
        self.iou_threshold = iou_threshold
        self.reporter = reporter

    @property
    def scores_detections(self) -> bool:
        return self.mode != TrainingMode.ONLY_PNET

    def _samples(self) -> Iterator[Tuple[Sample, Sequence[GroundTruthEntry]]]:
        if self.one_batch_training:
            for sample in self.batch_source.next_training("detector"):
                yield sample, sample.positive
        else:
            for _ in range(self.num_samples):
                sample = self.batch_source.next_validation(1)[0]
                yield sample, sample.rois

    def evaluate(self, detector: Detector, iteration: int = 0) -> EvaluationSummary:
        """Run one evaluation cycle.

        Args:
            detector: Detector used for this cycle.
            iteration: Current training iteration, for logging.

        Returns:
            EvaluationSummary of the cycle.
        """
        tp: List[int] = []
        fp: List[int] = []
        npos = 0

        for index, (sample, ground_truth) in enumerate(self._samples()):
            matches = detector.detect(sample.image)

            if self.scores_detections:
                result = classify_matches(matches, ground_truth, self.iou_threshold)
                tp.append(result.tp)
                fp.append(result.fp)
                npos += result.npos
            else:
                tp.append(0)
                fp.append(0)

            if self.reporter is not None:
                self.reporter.save_sample(index + 1, sample.image, matches, sample.rois)

        tp_t = torch.tensor(tp, dtype=torch.float64)
        fp_t = torch.tensor(fp, dtype=torch.float64)

        if not self.scores_detections:
            return EvaluationSummary(
                iteration=iteration, mAP=0.0, ap=0.0, ap11=0.0, npos=0,
                tp=tp_t, fp=fp_t, scored=False,
            )

        recall, precision, ap11 = average_precision(tp_t, fp_t, npos)
        ap = voc_ap(recall, precision)
        mAP = ap * 100
        logger.info(f"mAP : {mAP:.4f}; npos = {npos}; ap= {ap:.4f}; ap11= {ap11:.4f}")

        return EvaluationSummary(
            iteration=iteration,
            mAP=mAP,
            ap=ap,
            ap11=ap11,
            npos=npos,
            tp=tp_t,
            fp=fp_t,
            recall=recall,
            precision=precision,
        )


def build_evaluator(batch_source: BatchSource, config: Optional[Any] = None, **kwargs) -> EvaluationRunner:
    """Build EvaluationRunner from configuration.

    Args:
        batch_source: Supplier of evaluation samples.
        config: Configuration object with ``get(key, default)``.
        **kwargs: Overrides for EvaluationRunner arguments.

    Returns:
        Configured EvaluationRunner instance.
    """
    def _get(key: str, default: Any) -> Any:
        return default if config is None else config.get(key, default)

    options = dict(
        mode=_get("train.mode", TrainingMode.BOTH.value),
        one_batch_training=_get("train.one_batch_training", False),
        num_samples=_get("eval.num_samples", 20),
        iou_threshold=_get("eval.iou_threshold", 0.5),
    )
    options.update(kwargs)
    return EvaluationRunner(batch_source=batch_source, **options)
