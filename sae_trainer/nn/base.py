from __future__ import annotations

from typing import Any, Dict, Iterable, List, Protocol, Sequence, Tuple

import numpy as np


class GraphError(ValueError):
    pass


class ParameterGroup:
    """
    Ordered, named parameter blocks plus same-shaped gradient blocks.

    A group is created once by the layer that owns it. Every other layer or
    graph that uses the same storage (noisy encoder, tied decoder, any graph
    view) holds a reference to this object, never a copy, so a gradient or an
    update written through one view is visible through all of them.
    """

    def __init__(
        self,
        name: str,
        blocks: Sequence[Tuple[str, Tuple[int, ...]]],
        *,
        l1_decay: float = 0.0,
        l2_decay: float = 0.0,
        bias_decay: float = 0.0,
    ) -> None:
        if not blocks:
            raise ValueError("parameter group requires at least one block")
        self.name = name
        self.values: Dict[str, Any] = {}
        self.grads: Dict[str, Any] = {}
        for block_name, shape in blocks:
            if block_name in self.values:
                raise ValueError(f"duplicate block name: {block_name}")
            self.values[block_name] = np.zeros(shape, dtype=np.float64)
            self.grads[block_name] = np.zeros(shape, dtype=np.float64)
        self.l1_decay = float(l1_decay)
        self.l2_decay = float(l2_decay)
        self.bias_decay = float(bias_decay)

    @property
    def block_names(self) -> List[str]:
        return list(self.values)

    @property
    def size(self) -> int:
        return int(sum(block.size for block in self.values.values()))

    def zero_grad(self) -> None:
        for grad in self.grads.values():
            grad.fill(0.0)

    def flat_values(self) -> Any:
        return np.concatenate([block.reshape(-1) for block in self.values.values()])

    def flat_grads(self) -> Any:
        return np.concatenate([grad.reshape(-1) for grad in self.grads.values()])

    def load_values(self, arrays: Dict[str, Any]) -> None:
        for block_name, block in self.values.items():
            if block_name not in arrays:
                raise ValueError(f"{self.name}: missing block {block_name}")
            source = np.asarray(arrays[block_name], dtype=np.float64)
            if source.shape != block.shape:
                raise ValueError(
                    f"{self.name}.{block_name}: shape {source.shape} != expected {block.shape}"
                )
            block[...] = source

    def __repr__(self) -> str:
        return f"ParameterGroup({self.name!r}, size={self.size})"


class Layer(Protocol):
    name: str
    n_inputs: int
    n_outputs: int
    partial_backprop: bool
    outputs: Any
    beta: Any

    def forward(self, inputs: Any) -> Any:
        ...

    def backward(self, inputs: Any, upstream: Any) -> Any:
        """Accumulate parameter gradients for the last forward of `inputs`."""
        ...

    def parameter_groups(self) -> List[ParameterGroup]:
        ...


def unique_groups(layers: Iterable[Layer]) -> List[ParameterGroup]:
    seen: set[int] = set()
    groups: List[ParameterGroup] = []
    for layer in layers:
        for group in layer.parameter_groups():
            if id(group) in seen:
                continue
            seen.add(id(group))
            groups.append(group)
    return groups


def parameter_count(layers: Iterable[Layer]) -> int:
    return sum(group.size for group in unique_groups(layers))


def zero_grads(groups: Iterable[ParameterGroup]) -> None:
    for group in groups:
        group.zero_grad()
