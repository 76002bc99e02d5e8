from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Sequence

import numpy as np

from sae_trainer.data.dataset import Example
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.nn.base import GraphError
from sae_trainer.nn.criteria import ClassNLLCriterion, Criterion
from sae_trainer.nn.graph import Graph

TargetFn = Callable[[Example], Any]


@dataclass(frozen=True)
class Objective:
    name: str
    criterion: Criterion
    target: TargetFn
    weight: float = 1.0


@dataclass(frozen=True)
class AggregateResult:
    loss: float
    beta: Any
    losses: List[float]


def class_target(example: Example) -> Any:
    return example.target


def reconstruction_target(model: StackedAutoencoder, layer: int) -> TargetFn:
    """Target of autoencoder `layer`: the clean input of its encoder."""
    if layer == 0:
        return lambda example: example.inputs
    lower = model.encoders[layer - 1]
    return lambda example: lower.outputs


class LossAggregate:
    """
    Ordered objectives bound to the output segments of one built graph.

    `evaluate` returns the weighted loss and the gradient with respect to the
    graph's concatenated outputs, each segment scaled by its objective weight.
    """

    def __init__(self, graph: Graph, objectives: Sequence[Objective]) -> None:
        segments = graph.output_segments
        if len(objectives) != len(segments):
            raise GraphError(
                f"{graph.name}: {len(objectives)} objectives for {len(segments)} output segments"
            )
        self.graph = graph
        self.objectives = list(objectives)
        self._segments = [segment for _, segment in segments]

    @property
    def weights(self) -> List[float]:
        return [objective.weight for objective in self.objectives]

    def set_weights(self, weights: Sequence[float]) -> None:
        if len(weights) != len(self.objectives):
            raise ValueError(
                f"{len(weights)} weights for {len(self.objectives)} objectives"
            )
        self.objectives = [
            Objective(obj.name, obj.criterion, obj.target, float(weight))
            for obj, weight in zip(self.objectives, weights)
        ]

    def evaluate(self, outputs: Any, example: Example) -> AggregateResult:
        y = np.asarray(outputs, dtype=np.float64).reshape(-1)
        if y.shape[0] != self.graph.n_outputs:
            raise ValueError(
                f"{self.graph.name}: {y.shape[0]} outputs, expected {self.graph.n_outputs}"
            )
        beta = np.zeros_like(y)
        losses: List[float] = []
        total = 0.0
        for objective, segment in zip(self.objectives, self._segments):
            part = y[segment]
            target = objective.target(example)
            loss = objective.criterion.forward(part, target)
            losses.append(loss)
            total += objective.weight * loss
            beta[segment] = objective.weight * objective.criterion.backward(part, target)
        return AggregateResult(loss=total, beta=beta, losses=losses)


def reconstruction_objectives(
    model: StackedAutoencoder,
    criterion: Criterion,
    layers: Sequence[int],
    weight: float = 1.0,
) -> List[Objective]:
    return [
        Objective(f"recons_{i}", criterion, reconstruction_target(model, i), weight)
        for i in layers
    ]


def supervised_aggregate(model: StackedAutoencoder) -> LossAggregate:
    return LossAggregate(
        model.supervised, [Objective("class_nll", ClassNLLCriterion(), class_target)]
    )


def layer_aggregate(model: StackedAutoencoder, criterion: Criterion, layer: int) -> LossAggregate:
    return LossAggregate(
        model.chained[layer], reconstruction_objectives(model, criterion, [layer])
    )


def unsupervised_aggregate(model: StackedAutoencoder, criterion: Criterion) -> LossAggregate:
    layers = range(model.n_hidden_layers)
    return LossAggregate(model.unsupervised, reconstruction_objectives(model, criterion, layers))


def joint_aggregate(
    model: StackedAutoencoder,
    criterion: Criterion,
    unsup_weight: float = 1.0,
) -> LossAggregate:
    objectives = [Objective("class_nll", ClassNLLCriterion(), class_target, 1.0)]
    objectives.extend(
        reconstruction_objectives(model, criterion, range(model.n_hidden_layers), unsup_weight)
    )
    return LossAggregate(model.joint, objectives)
