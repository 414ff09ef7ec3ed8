#!/usr/bin/env python3
"""Training script for two-stage region-proposal detectors.

The networks, the objective, the detector and the data pipeline are supplied
by a user factory given as ``package.module:function``. The factory is called
with the loaded config and the device, and returns
``(model, objective, detector_factory, batch_source)``.

Usage:
    Basic training:
        python tools/train.py --model mydet.factory:build --config configs/imagenet.yaml

    Train only the classification network on top of a trained pnet:
        python tools/train.py --model mydet.factory:build \\
            --restore-pnet logs/imgnet_050000.pth --opts train.mode=onlyCnet

    Override options:
        python tools/train.py --model mydet.factory:build \\
            --opts train.optimizer.type=sgd train.iterations=35000
"""

import argparse
import importlib
import logging
import random
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List

import numpy as np
import torch

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rcnntrain.configs import Config, get_default_config
from rcnntrain.engine.trainer import Trainer

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("train")


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        description="Train a two-stage region-proposal detector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Joint training with the default configuration
    python tools/train.py --model mydet.factory:build

    # SGD with the step schedule
    python tools/train.py --model mydet.factory:build --opts train.optimizer.type=sgd

    # Warm start both networks
    python tools/train.py --model mydet.factory:build \\
        --restore-pnet logs/pnet_010000.pth --restore-cnet logs/cnet_010000.pth
        """,
    )

    parser.add_argument(
        "--model",
        type=str,
        required=True,
        help="Factory returning model, objective, detector factory and batch source "
             "(format: package.module:function)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file, merged over the defaults",
    )
    parser.add_argument(
        "--restore-pnet",
        type=str,
        default=None,
        help="Snapshot to warm-start the proposal network from",
    )
    parser.add_argument(
        "--restore-cnet",
        type=str,
        default=None,
        help="Snapshot to warm-start the classification network from",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed (default: system.seed from config)",
    )
    parser.add_argument(
        "--opts",
        nargs="*",
        default=[],
        help="Override config options (format: key=value, e.g., train.mode=onlyPnet)",
    )

    return parser.parse_args()


def set_seed(seed: int) -> None:
    """Set random seeds for reproducibility.

    Args:
        seed: Random seed value.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def parse_opts(opts: List[str]) -> Dict[str, Any]:
    """Parse CLI option overrides.

    Args:
        opts: List of "key=value" strings.

    Returns:
        Dictionary of parsed overrides.
    """
    overrides = {}
    for opt in opts:
        if "=" not in opt:
            raise ValueError(f"Invalid option format: {opt}. Use key=value format.")
        key, value = opt.split("=", 1)

        lowered = value.lower()
        if lowered in ("true", "false"):
            value = lowered == "true"
        elif lowered == "none":
            value = None
        else:
            for cast in (int, float):
                try:
                    value = cast(value)
                    break
                except ValueError:
                    continue

        overrides[key] = value

    return overrides


def apply_overrides(config: Config, overrides: Dict[str, Any]) -> None:
    """Apply CLI overrides to configuration."""
    for key, value in overrides.items():
        config.set(key, value)
        logger.info(f"Override: {key} = {value}")


def load_factory(target: str) -> Callable:
    """Import ``package.module:function``.

    Raises:
        ValueError: If ``target`` has no ``:`` separator.
        AttributeError: If the module has no such function.
    """
    if ":" not in target:
        raise ValueError(f"Invalid factory: {target}. Use package.module:function format.")
    module_name, attr = target.split(":", 1)
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def main() -> None:
    """Main training function."""
    args = parse_args()

    config = get_default_config()
    if args.config:
        config = config.merge(Config.from_file(args.config))
    apply_overrides(config, parse_opts(args.opts))

    seed = args.seed if args.seed is not None else config.get("system.seed", 0)
    set_seed(seed)
    torch.set_num_threads(config.get("system.threads", 8))
    logger.info(f"Seed: {seed}, threads: {torch.get_num_threads()}")

    device = config.get("system.device", None)
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"
    device = torch.device(device)
    logger.info(f"Using device: {device}")

    output_dir = Path(config.get("output.result_dir", "logs"))
    output_dir.mkdir(parents=True, exist_ok=True)
    config.save(output_dir / "config.yaml")
    logger.info(f"Output directory: {output_dir}")

    logger.info(f"Building model from {args.model}...")
    model, objective, detector_factory, batch_source = load_factory(args.model)(config, device)

    trainer = Trainer(
        model=model,
        objective=objective,
        batch_source=batch_source,
        detector_factory=detector_factory,
        config=config,
        device=device,
        restore_pnet=args.restore_pnet,
        restore_cnet=args.restore_cnet,
    )

    start_time = time.time()
    metrics = trainer.train()
    elapsed = time.time() - start_time
    logger.info(f"Training complete! Total time: {elapsed / 3600:.2f} hours")
    logger.info(f"Final metrics: {metrics}")


if __name__ == "__main__":
    main()
