from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

import numpy as np

from sae_trainer.data.dataset import ArrayDataSet
from sae_trainer.nn.base import ParameterGroup, zero_grads
from sae_trainer.nn.graph import Graph
from sae_trainer.training.aggregate import LossAggregate

GRADIENT_WARNING_THRESHOLD = 10.0
DEFAULT_PROBE_EXAMPLES = 1000


@dataclass(frozen=True)
class GradientWarning:
    group: str
    index: int
    value: float

    def as_dict(self) -> Dict[str, Any]:
        return {"group": self.group, "index": self.index, "value": self.value}


class GradientMoments:
    """Running per-parameter sum and sum of squares of gradient samples."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("gradient moments require size > 0")
        self.size = int(size)
        self.count = 0
        self.total = np.zeros(self.size)
        self.total_sq = np.zeros(self.size)

    def add(self, sample: Any) -> None:
        x = np.asarray(sample, dtype=np.float64).reshape(-1)
        if x.shape[0] != self.size:
            raise ValueError(f"gradient sample has {x.shape[0]} values, expected {self.size}")
        self.count += 1
        self.total += x
        self.total_sq += x * x

    def means(self) -> Any:
        if self.count == 0:
            raise ValueError("no gradient samples")
        return self.total / self.count

    def variances(self) -> Any:
        means = self.means()
        return self.total_sq / self.count - means * means

    def max_variance(self) -> float:
        return float(np.max(self.variances()))


def variance_weight(reference_variance: float, layer_variance: float) -> float:
    if layer_variance <= 0.0:
        raise ZeroDivisionError("layer gradient variance is zero")
    return math.sqrt(reference_variance / layer_variance)


def gradient_outliers(
    groups: Sequence[ParameterGroup],
    threshold: float = GRADIENT_WARNING_THRESHOLD,
) -> List[GradientWarning]:
    warnings: List[GradientWarning] = []
    for group in groups:
        flat = group.flat_grads()
        for index in np.flatnonzero(np.abs(flat) > threshold):
            warnings.append(GradientWarning(group.name, int(index), float(flat[index])))
    return warnings


def probe_max_variance(
    aggregate: LossAggregate,
    dataset: ArrayDataSet,
    n_probe: int,
    on_warning: Callable[[GradientWarning], None] | None = None,
) -> float:
    """
    Forward and backward the first `n_probe` examples through the aggregate's
    graph, one at a time, and return the variance of the parameter whose
    gradient varies the most.
    """
    graph: Graph = aggregate.graph
    groups = graph.parameter_groups()
    moments = GradientMoments(sum(group.size for group in groups))
    for index in range(min(n_probe, dataset.example_count)):
        zero_grads(groups)
        example = dataset.select_example(index)
        outputs = graph.forward(example.inputs)
        result = aggregate.evaluate(outputs, example)
        graph.backward(example.inputs, result.beta)
        if on_warning is not None:
            for warning in gradient_outliers(groups):
                on_warning(warning)
        moments.add(np.concatenate([group.flat_grads() for group in groups]))
    zero_grads(groups)
    return moments.max_variance()


@dataclass
class CriterionWeights:
    weights: List[float]
    variances: List[float] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"weights": list(self.weights), "variances": list(self.variances)}


def estimate_criterion_weights(
    supervised: LossAggregate,
    layers: Sequence[LossAggregate],
    dataset: ArrayDataSet,
    previous: Sequence[float],
    n_probe: int = DEFAULT_PROBE_EXAMPLES,
    on_warning: Callable[[GradientWarning], None] | None = None,
) -> CriterionWeights:
    """
    weight_i = sqrt(var_sup / var_i) where each variance is the one of the
    maximum-variance parameter of its graph. The supervised weight stays 1.0.
    A layer whose variance is zero keeps its previous weight.
    """
    if len(previous) != len(layers) + 1:
        raise ValueError(f"{len(previous)} previous weights for {len(layers) + 1} criteria")
    reference = probe_max_variance(supervised, dataset, n_probe, on_warning)
    weights = [1.0]
    variances = [reference]
    for i, aggregate in enumerate(layers):
        variance = probe_max_variance(aggregate, dataset, n_probe, on_warning)
        variances.append(variance)
        if variance <= 0.0:
            weights.append(float(previous[i + 1]))
        else:
            weights.append(variance_weight(reference, variance))
    return CriterionWeights(weights=weights, variances=variances)
