from __future__ import annotations

from typing import Iterable, Set

import numpy as np

from sae_trainer.nn.base import ParameterGroup


def decay_gradient(group: ParameterGroup, block_name: str) -> np.ndarray:
    values = group.values[block_name]
    if block_name == "bias":
        return group.bias_decay * values
    return group.l2_decay * values + group.l1_decay * np.sign(values)


def apply_sgd_update(
    groups: Iterable[ParameterGroup],
    learning_rate: float,
    decayed: Set[int] | None = None,
) -> Set[int]:
    """
    One SGD step over each distinct group. Weight decay is added only for
    groups whose id is not yet in `decayed`; the set is updated and returned
    so that several updates within one example step share it.
    """
    if decayed is None:
        decayed = set()
    applied: Set[int] = set()
    for group in groups:
        if id(group) in applied:
            continue
        applied.add(id(group))
        with_decay = id(group) not in decayed
        for block_name, values in group.values.items():
            step = group.grads[block_name]
            if with_decay:
                step = step + decay_gradient(group, block_name)
            values -= learning_rate * step
        decayed.add(id(group))
    return decayed
