from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Tuple, Union


@dataclass(frozen=True)
class LayerwiseUnsup:
    kind: ClassVar[str] = "layerwise"
    layer: int

    def describe(self) -> Dict[str, Any]:
        return {"layer": self.layer}


@dataclass(frozen=True)
class SelectiveUnsup:
    kind: ClassVar[str] = "selective"
    layers: Tuple[bool, ...]
    partial_backprop: bool = False

    @property
    def selected(self) -> Tuple[int, ...]:
        return tuple(i for i, flag in enumerate(self.layers) if flag)

    def describe(self) -> Dict[str, Any]:
        return {"layers": [int(flag) for flag in self.layers], "partial_backprop": self.partial_backprop}


@dataclass(frozen=True)
class JointUnsup:
    kind: ClassVar[str] = "unsup"
    train_outputer: bool = False

    def describe(self) -> Dict[str, Any]:
        return {"train_outputer": self.train_outputer}


@dataclass(frozen=True)
class JointSupUnsup:
    kind: ClassVar[str] = "supunsup"
    unsup_weight: float = 1.0
    eval_weights: bool = False
    probe_examples: int = 1000
    profile_gradients: bool = False

    def describe(self) -> Dict[str, Any]:
        return {
            "unsup_weight": self.unsup_weight,
            "eval_weights": self.eval_weights,
            "probe_examples": self.probe_examples,
            "profile_gradients": self.profile_gradients,
        }


@dataclass(frozen=True)
class FineTune:
    kind: ClassVar[str] = "finetune"
    learning_rates: Tuple[float, ...] | None = None

    @property
    def is_layer_specific(self) -> bool:
        return self.learning_rates is not None

    def describe(self) -> Dict[str, Any]:
        rates = list(self.learning_rates) if self.learning_rates is not None else None
        return {"learning_rates": rates}


@dataclass(frozen=True)
class SupervisedTopK:
    kind: ClassVar[str] = "topk"
    k: int

    def describe(self) -> Dict[str, Any]:
        return {"k": self.k}


TrainingPhase = Union[LayerwiseUnsup, SelectiveUnsup, JointUnsup, JointSupUnsup, FineTune, SupervisedTopK]


@dataclass(frozen=True)
class SgdSettings:
    learning_rate: float
    max_iter: int
    lr_decay: float = 0.0
    end_accuracy: float = 1e-5
    shuffle: bool = True

    def rate_at(self, epoch: int) -> float:
        return self.learning_rate / (1.0 + epoch * self.lr_decay)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "learning_rate": self.learning_rate,
            "max_iter": self.max_iter,
            "lr_decay": self.lr_decay,
            "end_accuracy": self.end_accuracy,
            "shuffle": self.shuffle,
        }


def phase_name(phase: TrainingPhase) -> str:
    if isinstance(phase, LayerwiseUnsup):
        return f"layerwise_{phase.layer}"
    return phase.kind
