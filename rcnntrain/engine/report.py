"""Training progress report.

This module renders what each evaluation cycle leaves on disk:
    - proposal and detection loss plots (PNG)
    - annotated evaluation images (JPEG)
    - an HTML summary embedding the plots, the numeric optimizer
      hyperparameters, the images and both confusion matrices

Failing to write the HTML summary is logged and never stops training.

Example:
    >>> reporter = ReportWriter("logs", "imgnet")
    >>> reporter.plot_progress(context.stats)
    >>> reporter.write(iteration, optimizer_config, summary, context)
"""

import base64
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
from PIL import Image, ImageDraw, ImageFont
from torch import Tensor

from ..structures import Detection, GroundTruthEntry
from .context import TrainingContext, TrainingStats
from .evaluator import EvaluationSummary, normalize_ground_truth

logger = logging.getLogger("rcnntrain.report")

RED = (255, 0, 0)
GREEN = (0, 255, 0)
WHITE = (255, 255, 255)


def plot_training_progress(
    result_dir: Union[str, Path],
    prefix: str,
    stats: TrainingStats,
) -> Tuple[Path, Path]:
    """Plot proposal and detection loss histories.

    Returns:
        Paths of the proposal plot and the detection plot.
    """
    result_dir = Path(result_dir)
    result_dir.mkdir(parents=True, exist_ok=True)
    proposal_path = result_dir / f"{prefix}proposal_progress.png"
    detection_path = result_dir / f"{prefix}detection_progress.png"

    xs = np.arange(1, len(stats) + 1)
    panels = [
        (proposal_path, "proposal", [("preg", stats.preg), ("pcls", stats.pcls)]),
        (detection_path, "detection", [("dreg", stats.dreg), ("dcls", stats.dcls)]),
    ]
    for path, title, series in panels:
        fig, ax = plt.subplots(figsize=(8, 5))
        for label, values in series:
            ax.plot(xs, values, "-", label=label)
        ax.set_title(f"Training progress over time ({title})")
        ax.set_xlim(0, max(len(stats), 1))
        ax.set_ylim(0, 2)
        ax.set_xlabel("iteration")
        ax.set_ylabel("loss")
        ax.legend()
        fig.savefig(path)
        plt.close(fig)

    return proposal_path, detection_path


def image_to_pil(image: Union[Tensor, np.ndarray, Image.Image]) -> Image.Image:
    """Convert a (C, H, W) float tensor in [0, 1] to an RGB PIL image."""
    if isinstance(image, Image.Image):
        return image.convert("RGB")
    if isinstance(image, Tensor):
        image = image.detach().float().cpu().numpy()
    array = np.asarray(image, dtype=np.float32)
    if array.ndim == 3 and array.shape[0] in (1, 3):
        array = array.transpose(1, 2, 0)
    if array.ndim == 3 and array.shape[2] == 1:
        array = array[:, :, 0]
    array = (np.clip(array, 0.0, 1.0) * 255).astype(np.uint8)
    return Image.fromarray(array).convert("RGB")


def _box_list(box: Any) -> List[float]:
    if isinstance(box, Tensor):
        box = box.detach().cpu().reshape(-1).tolist()
    x1, y1, x2, y2 = (float(v) for v in box)
    # Pillow rejects inverted rectangles
    return [min(x1, x2), min(y1, y2), max(x1, x2), max(y1, y2)]


def draw_detections(
    image: Union[Tensor, np.ndarray, Image.Image],
    detections: Sequence[Detection],
    ground_truth: Sequence[GroundTruthEntry],
    background_class: Optional[int] = None,
    line_width: int = 2,
) -> Image.Image:
    """Draw detections and ground truth on a copy of ``image``.

    Background-class detections are drawn in red on their proposal box,
    other detections in green on their refined box, ground truth in white.
    """
    image = image_to_pil(image).copy()
    draw = ImageDraw.Draw(image)
    font = ImageFont.load_default()

    for det in detections:
        if background_class is not None and det.label == background_class:
            box, color = _box_list(det.box), RED
        else:
            box, color = _box_list(det.scored_box), GREEN
        draw.rectangle(box, outline=color, width=line_width)
        draw.text((box[0] + 2, box[1] + 2), f"CI: {int(det.label)}", fill=color, font=font)

    for entry in ground_truth:
        instance = normalize_ground_truth(entry)
        box = _box_list(instance.box)
        draw.rectangle(box, outline=WHITE, width=line_width)
        draw.text((box[0] + 2, box[1] + 2), f"CI: {int(instance.label)}", fill=WHITE, font=font)

    return image


def _read_base64(path: Path) -> str:
    if not path.exists():
        return ""
    return base64.b64encode(path.read_bytes()).decode("ascii")


class ReportWriter:
    """Writes plots, annotated images and the HTML summary of a run.

    Args:
        result_dir: Output directory.
        name: Experiment name used as file prefix.
        save_images: Whether ``save_sample`` writes annotated images.
        background_class: Class index drawn as background.
        max_images: Number of annotated images kept and linked.
    """

    def __init__(
        self,
        result_dir: Union[str, Path],
        name: str,
        save_images: bool = True,
        background_class: Optional[int] = None,
        max_images: int = 20,
    ):
        self.result_dir = Path(result_dir)
        self.name = name
        self.save_images = save_images
        self.background_class = background_class
        self.max_images = max_images
        self.result_dir.mkdir(parents=True, exist_ok=True)

    @property
    def report_path(self) -> Path:
        return self.result_dir / "report.html"

    def plot_progress(self, stats: TrainingStats) -> Tuple[Path, Path]:
        return plot_training_progress(self.result_dir, self.name, stats)

    def save_sample(
        self,
        index: int,
        image: Union[Tensor, np.ndarray, Image.Image],
        detections: Sequence[Detection],
        ground_truth: Sequence[GroundTruthEntry],
    ) -> Optional[Path]:
        """Save annotated image ``output{index}.jpg`` (1-based index)."""
        if not self.save_images or index > self.max_images:
            return None
        path = self.result_dir / f"output{index}.jpg"
        draw_detections(image, detections, ground_truth, self.background_class).save(path)
        return path

    def write(
        self,
        iteration: int,
        optimizer_config: Optional[Any],
        summary: Optional[EvaluationSummary],
        context: TrainingContext,
    ) -> bool:
        """Write ``report.html``.

        Returns:
            True if the report was written, False if the file could not be
            opened.
        """
        proposal_b64 = _read_base64(self.result_dir / f"{self.name}proposal_progress.png")
        detection_b64 = _read_base64(self.result_dir / f"{self.name}detection_progress.png")

        try:
            f = open(self.report_path, "w", encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Unable to write {self.report_path}: {exc}")
            return False

        with f:
            f.write("<!DOCTYPE html>\n<html>\n<body>\n")
            f.write(f"<title>{self.result_dir} - {iteration}</title>\n")
            f.write(f'<img src="data:image/png;base64,{proposal_b64}">\n')
            f.write(f'<img src="data:image/png;base64,{detection_b64}">\n')
            f.write("<h4>optimizer:</h4>\n<table>\n")
            if optimizer_config is not None:
                for key, value in optimizer_config.numeric_items().items():
                    f.write(f"<tr><td>{key}</td><td>{value}</td></tr>\n")
            f.write("</table>\n<table>\n")
            for i in range(1, self.max_images + 1):
                f.write(
                    f'<tr><img src="output{i}.jpg" alt="output" width="244" height="244" ></tr>\n'
                )
            f.write("</table>\n")
            f.write("<pre>\nTraining pcls\n")
            f.write(f"{context.proposal_confusion}\n")
            f.write("</pre>\n<pre>\nTraining ccls\n")
            f.write(f"{context.classification_confusion}\n")
            if summary is not None and summary.scored:
                f.write(f"==> mean AP : {summary.mAP:.4f};")
            f.write("</pre>\n</body></html>\n")

        logger.info(f"Wrote report to {self.report_path}")
        return True
