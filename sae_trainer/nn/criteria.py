from __future__ import annotations

from typing import Any, Protocol

import numpy as np

_EPS = 1e-12


class Criterion(Protocol):
    name: str

    def forward(self, outputs: Any, target: Any) -> float:
        ...

    def backward(self, outputs: Any, target: Any) -> Any:
        ...


def _as_vector(values: Any) -> Any:
    return np.asarray(values, dtype=np.float64).reshape(-1)


class MSECriterion:
    name = "mse"

    def __init__(self, average_frame_size: bool = False) -> None:
        self.average_frame_size = average_frame_size

    def _scale(self, n: int) -> float:
        return 1.0 / n if self.average_frame_size else 1.0

    def forward(self, outputs: Any, target: Any) -> float:
        y = _as_vector(outputs)
        diff = y - _as_vector(target)
        return float(np.dot(diff, diff)) * self._scale(y.shape[0])

    def backward(self, outputs: Any, target: Any) -> Any:
        y = _as_vector(outputs)
        return 2.0 * (y - _as_vector(target)) * self._scale(y.shape[0])


class CrossEntropyCriterion:
    """Binary cross-entropy between outputs in (0, 1) and targets in [0, 1]."""

    name = "xentropy"

    def __init__(self, average_frame_size: bool = False) -> None:
        self.average_frame_size = average_frame_size

    def _scale(self, n: int) -> float:
        return 1.0 / n if self.average_frame_size else 1.0

    def forward(self, outputs: Any, target: Any) -> float:
        y = np.clip(_as_vector(outputs), _EPS, 1.0 - _EPS)
        t = _as_vector(target)
        loss = -np.sum(t * np.log(y) + (1.0 - t) * np.log(1.0 - y))
        return float(loss) * self._scale(y.shape[0])

    def backward(self, outputs: Any, target: Any) -> Any:
        y = np.clip(_as_vector(outputs), _EPS, 1.0 - _EPS)
        t = _as_vector(target)
        return (-(t / y) + (1.0 - t) / (1.0 - y)) * self._scale(y.shape[0])


class ClassNLLCriterion:
    """Negative log-likelihood of an integer class given log-probabilities."""

    name = "class_nll"

    def _class_index(self, outputs: Any, target: Any) -> int:
        if target is None:
            raise ValueError("class_nll requires a class target")
        index = int(target)
        if index < 0 or index >= outputs.shape[0]:
            raise ValueError(f"class target {index} out of range 0..{outputs.shape[0] - 1}")
        return index

    def forward(self, outputs: Any, target: Any) -> float:
        y = _as_vector(outputs)
        return -float(y[self._class_index(y, target)])

    def backward(self, outputs: Any, target: Any) -> Any:
        y = _as_vector(outputs)
        beta = np.zeros_like(y)
        beta[self._class_index(y, target)] = -1.0
        return beta


RECONSTRUCTION_COSTS = ("mse", "xentropy")


def reconstruction_criterion(cost: str, average_frame_size: bool = False) -> Criterion:
    key = cost.lower()
    if key == "mse":
        return MSECriterion(average_frame_size=average_frame_size)
    if key == "xentropy":
        return CrossEntropyCriterion(average_frame_size=average_frame_size)
    raise ValueError(f"unknown reconstruction cost: {cost}")
