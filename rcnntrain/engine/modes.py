"""Training modes and the shared flat parameter store.

Both sub-networks keep their parameters inside one flat weight tensor and one
flat gradient tensor. Each network owns a named offset range of the store;
its ``nn.Parameter`` objects are views into that range, so an optimizer
stepping the flat tensors updates the live networks in place.

The training mode decides which ranges the optimizer may touch:
    - both: pnet and cnet ranges
    - onlyPnet: pnet range only; detections are not scored
    - onlyCnet: cnet range only; proposals come from a frozen pnet copy

Example:
    >>> store = ParameterStore({"pnet": model.pnet, "cnet": model.cnet})
    >>> controller = TrainingModeController("onlyCnet")
    >>> params = controller.trainable_parameters(store)
    >>> optimizer = torch.optim.Adam(params, lr=1e-3)
"""

import copy
import logging
from enum import Enum
from typing import Dict, List, Mapping, Tuple, Union

import torch
from torch import nn, Tensor

logger = logging.getLogger("rcnntrain.modes")

NETWORK_NAMES = ("pnet", "cnet")


class TrainingMode(str, Enum):
    """Which sub-networks are optimized during a run."""

    ONLY_PNET = "onlyPnet"
    ONLY_CNET = "onlyCnet"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Union[str, "TrainingMode"]) -> "TrainingMode":
        """Convert a config string to a TrainingMode.

        Raises:
            ValueError: If the value names no mode.
        """
        if isinstance(value, cls):
            return value
        for mode in cls:
            if mode.value == value:
                return mode
        raise ValueError(
            f"Unknown training mode: {value}. Expected one of {[m.value for m in cls]}"
        )


class ParameterStore:
    """Flat weight and gradient buffers shared by several networks.

    Parameters of every network are copied into ``weights`` and rebound as
    views into it; their ``.grad`` is rebound to the matching slice of
    ``gradient``. Objectives must clear gradients with ``zero_grad`` rather
    than ``Module.zero_grad``, which would drop the aliasing.

    Args:
        networks: Ordered mapping of range name to network.

    Attributes:
        weights: Flat weight tensor.
        gradient: Flat gradient tensor, same shape as ``weights``.
        ranges: Mapping of name to ``(start, end)`` offsets, end exclusive.
    """

    def __init__(self, networks: Mapping[str, nn.Module]):
        params: Dict[str, List[nn.Parameter]] = {}
        seen = set()
        for name, network in networks.items():
            params[name] = []
            for p in network.parameters():
                if id(p) in seen:
                    raise ValueError(f"Parameter shared between networks found in '{name}'")
                seen.add(id(p))
                params[name].append(p)

        flat = [p for group in params.values() for p in group]
        dtype = flat[0].dtype if flat else torch.float32
        device = flat[0].device if flat else torch.device("cpu")
        total = sum(p.numel() for p in flat)

        self.weights = torch.zeros(total, dtype=dtype, device=device)
        self.gradient = torch.zeros_like(self.weights)
        self.ranges: Dict[str, Tuple[int, int]] = {}

        offset = 0
        with torch.no_grad():
            for name, group in params.items():
                start = offset
                for p in group:
                    n = p.numel()
                    self.weights[offset:offset + n].copy_(p.detach().reshape(-1))
                    p.data = self.weights[offset:offset + n].view_as(p)
                    p.grad = self.gradient[offset:offset + n].view_as(p)
                    offset += n
                self.ranges[name] = (start, offset)

        logger.info(
            "Flattened parameters: "
            + ", ".join(f"{name}={end - start:,}" for name, (start, end) in self.ranges.items())
        )

    def numel(self, name: str) -> int:
        start, end = self.ranges[name]
        return end - start

    def view(self, name: str) -> Tensor:
        """Weights of one range as a view into the flat tensor."""
        start, end = self.ranges[name]
        return self.weights[start:end]

    def grad_view(self, name: str) -> Tensor:
        """Gradient of one range as a view into the flat tensor."""
        start, end = self.ranges[name]
        return self.gradient[start:end]

    def zero_grad(self) -> None:
        self.gradient.zero_()

    def zero_range(self, name: str) -> None:
        self.grad_view(name).zero_()

    def load_range(self, name: str, values: Tensor) -> None:
        """Overwrite the weights of one range.

        Raises:
            ValueError: If ``values`` does not match the range size.
        """
        target = self.view(name)
        values = values.reshape(-1)
        if values.numel() != target.numel():
            raise ValueError(
                f"Cannot load {values.numel()} values into range '{name}' of size {target.numel()}"
            )
        with torch.no_grad():
            target.copy_(values.to(dtype=target.dtype, device=target.device))


class TrainingModeController:
    """Maps a training mode to trainable ranges and scoring behavior.

    The mode is fixed for the lifetime of a run.

    Args:
        mode: A TrainingMode or its config string.

    Raises:
        ValueError: If ``mode`` is not a known training mode.
    """

    def __init__(self, mode: Union[str, TrainingMode] = TrainingMode.BOTH):
        self.mode = TrainingMode.parse(mode)
        self._param_cache: Dict[int, List[Tensor]] = {}

    @property
    def trainable_networks(self) -> Tuple[str, ...]:
        if self.mode == TrainingMode.ONLY_PNET:
            return ("pnet",)
        if self.mode == TrainingMode.ONLY_CNET:
            return ("cnet",)
        return NETWORK_NAMES

    @property
    def frozen_networks(self) -> Tuple[str, ...]:
        return tuple(n for n in NETWORK_NAMES if n not in self.trainable_networks)

    @property
    def needs_frozen_proposal(self) -> bool:
        """Whether proposals must come from a frozen pnet copy."""
        return self.mode == TrainingMode.ONLY_CNET

    @property
    def scores_detections(self) -> bool:
        """Whether evaluation scores detections against ground truth."""
        return self.mode != TrainingMode.ONLY_PNET

    def freeze_proposal_network(self, pnet: nn.Module) -> nn.Module:
        """Return an owned deep copy of ``pnet`` with gradients disabled."""
        frozen = copy.deepcopy(pnet)
        for p in frozen.parameters():
            p.requires_grad_(False)
        logger.info("Holding frozen copy of the proposal network")
        return frozen

    def trainable_parameters(self, store: ParameterStore) -> List[Tensor]:
        """Views of the trainable ranges, stable across calls.

        The optimizer keys its state on these tensor objects, so the same
        list is returned every time for a given store.
        """
        key = id(store)
        if key not in self._param_cache:
            self._param_cache[key] = [store.view(name) for name in self.trainable_networks]
        return self._param_cache[key]

    def attach_gradients(self, store: ParameterStore) -> None:
        """Point each trainable view at its gradient slice and clear frozen ones."""
        for name in self.frozen_networks:
            store.zero_range(name)
        for name, param in zip(self.trainable_networks, self.trainable_parameters(store)):
            param.grad = store.grad_view(name)
