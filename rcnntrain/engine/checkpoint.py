"""Checkpoint persistence for the flat parameter store.

A checkpoint holds the flat weight tensor, the offset range of every
sub-network, the training mode, the optimizer name, the iteration and the
loss histories. Either sub-network can be warm-started from its own
checkpoint.

Example:
    >>> path = checkpoint_path("logs", "imgnet", 1000)
    >>> save_checkpoint(path, store, iteration=1000, mode=TrainingMode.BOTH,
    ...                 optimizer="adam", stats=context.stats)
    >>> stats = load_checkpoint(path, store, networks=("cnet",))
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import torch

from .context import TrainingStats
from .modes import ParameterStore, TrainingMode

logger = logging.getLogger("rcnntrain.checkpoint")


def checkpoint_path(result_dir: Union[str, Path], prefix: str, iteration: int) -> Path:
    """Path of the snapshot taken at ``iteration``."""
    return Path(result_dir) / f"{prefix}_{iteration:06d}.pth"


def save_checkpoint(
    filepath: Union[str, Path],
    store: ParameterStore,
    iteration: int,
    mode: TrainingMode,
    optimizer: str,
    stats: TrainingStats,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write a checkpoint, replacing any existing file at ``filepath``.

    The file is written next to its destination and moved into place, so a
    crash leaves the previous snapshot intact.

    Returns:
        The checkpoint path.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    checkpoint = {
        "weights": store.weights.detach().cpu().clone(),
        "ranges": dict(store.ranges),
        "mode": TrainingMode.parse(mode).value,
        "optimizer": optimizer,
        "iteration": iteration,
        "stats": stats.to_dict(),
    }
    if extra:
        checkpoint.update(extra)

    fd, tmp_path = tempfile.mkstemp(prefix=filepath.name + ".tmp_", dir=str(filepath.parent))
    os.close(fd)
    try:
        torch.save(checkpoint, tmp_path)
        os.replace(tmp_path, filepath)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    logger.info(f"Saved checkpoint to {filepath}")
    return filepath


def load_checkpoint(
    filepath: Optional[Union[str, Path]],
    store: ParameterStore,
    networks: Iterable[str] = ("pnet", "cnet"),
) -> Optional[TrainingStats]:
    """Copy the weights of selected sub-networks from a checkpoint.

    Args:
        filepath: Checkpoint path. None or "" means no warm start.
        store: Parameter store to load into.
        networks: Range names to restore; other ranges are left untouched.

    Returns:
        The stored TrainingStats if present, else None.

    Raises:
        FileNotFoundError: If a non-empty path does not exist.
        ValueError: If a stored range does not match the store's layout.
    """
    if not filepath:
        return None
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    checkpoint = torch.load(filepath, map_location="cpu")
    weights = checkpoint["weights"].reshape(-1)
    ranges = checkpoint.get("ranges")

    for name in networks:
        if ranges is not None:
            if name not in ranges:
                raise ValueError(f"Checkpoint {filepath} has no range '{name}'")
            start, end = ranges[name]
        elif weights.numel() == store.weights.numel():
            start, end = store.ranges[name]
        else:
            raise ValueError(
                f"Checkpoint {filepath} holds {weights.numel()} weights without ranges, "
                f"expected {store.weights.numel()}"
            )
        store.load_range(name, weights[start:end])
        logger.info(f"Loaded {name} from: {filepath}")

    stats = checkpoint.get("stats")
    return TrainingStats.from_dict(stats) if stats is not None else None
