from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, List, TextIO

import numpy as np

from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.nn.base import zero_grads

SIGNALS = ("up", "sup", "unsup")
ANGLE_PAIRS = (("up", "sup"), ("up", "unsup"), ("sup", "unsup"))


class RunningStats:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.count = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.min = math.inf
        self.max = -math.inf

    def add(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self._m2 += delta * (value - self.mean)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    @property
    def std(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self._m2 / (self.count - 1))

    def as_dict(self) -> Dict[str, Any]:
        if self.count == 0:
            return {"count": 0, "mean": None, "std": None, "min": None, "max": None}
        return {
            "count": self.count,
            "mean": self.mean,
            "std": self.std,
            "min": self.min,
            "max": self.max,
        }


def angle_degrees(a: Any, b: Any) -> float | None:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return None
    cosine = float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))
    return math.degrees(math.acos(cosine))


class _LayerProfile:
    def __init__(self) -> None:
        self.norms = {signal: RunningStats() for signal in SIGNALS}
        self.angles = {f"{a}_{b}": RunningStats() for a, b in ANGLE_PAIRS}

    def add(self, vectors: Dict[str, Any]) -> None:
        for signal in SIGNALS:
            self.norms[signal].add(float(np.linalg.norm(vectors[signal])))
        for a, b in ANGLE_PAIRS:
            angle = angle_degrees(vectors[a], vectors[b])
            if angle is not None:
                self.angles[f"{a}_{b}"].add(angle)

    def summary(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {signal: self.norms[signal].as_dict() for signal in SIGNALS}
        payload["angles"] = {name: stats.as_dict() for name, stats in self.angles.items()}
        return payload

    def reset(self) -> None:
        for stats in [*self.norms.values(), *self.angles.values()]:
            stats.reset()


class GradientProfiler:
    """
    Per-layer statistics of the gradients reaching each encoder's output.

    For hidden layer i three signals are captured on every profiled example:
      - sup: gradient from above (encoder i+1, or the outputer for the top
        layer) when only the supervised loss is backpropagated;
      - up: the same location when the joint loss is backpropagated;
      - unsup: the gradient coming out of decoder i under the joint loss.

    `profile_example` replaces the regular backward of a joint step: it zeroes
    every gradient, backpropagates the supervised part alone, zeroes again and
    finishes with the joint backward, so the gradients left behind are exactly
    those of an unprofiled step.
    """

    def __init__(self, model: StackedAutoencoder, out_dir: str | Path | None = None) -> None:
        if model.is_noisy:
            raise ValueError(
                "cannot profile gradients of noisy autoencoders: the decoders are "
                "connected to the noisy encoders"
            )
        self.model = model
        self._layers = [_LayerProfile() for _ in range(model.n_hidden_layers)]
        self._sup_segment = model.joint.output_segments[0][1]
        self._files: Dict[str, TextIO] = {}
        if out_dir is not None:
            grad_dir = Path(out_dir) / "grad"
            grad_dir.mkdir(parents=True, exist_ok=True)
            for i in range(model.n_hidden_layers):
                for kind in (*SIGNALS, "angles"):
                    path = grad_dir / f"stats_grad_{kind}_{i}.txt"
                    self._files[f"{kind}_{i}"] = path.open("w", encoding="utf-8")

    def _upper_beta(self, i: int) -> Any:
        if i < self.model.n_hidden_layers - 1:
            return self.model.encoders[i + 1].beta
        return self.model.outputer.beta

    def profile_example(self, inputs: Any, joint_beta: Any) -> None:
        model = self.model
        groups = model.parameter_groups()
        joint_beta = np.asarray(joint_beta, dtype=np.float64)
        sup_beta = joint_beta[self._sup_segment]

        zero_grads(groups)
        model.supervised.backward(inputs, sup_beta)
        sup = [np.array(self._upper_beta(i), copy=True) for i in range(model.n_hidden_layers)]

        zero_grads(groups)
        model.joint.backward(inputs, joint_beta)
        for i, layer in enumerate(self._layers):
            layer.add(
                {
                    "up": np.array(self._upper_beta(i), copy=True),
                    "sup": sup[i],
                    "unsup": np.array(model.decoders[i].beta, copy=True),
                }
            )

    def end_epoch(self, epoch: int) -> List[Dict[str, Any]]:
        summaries: List[Dict[str, Any]] = []
        for i, layer in enumerate(self._layers):
            summary = layer.summary()
            summary["layer"] = i
            summaries.append(summary)
            self._write_layer(epoch, i, layer)
            layer.reset()
        return summaries

    def _write_layer(self, epoch: int, i: int, layer: _LayerProfile) -> None:
        if not self._files:
            return
        for signal in SIGNALS:
            stats = layer.norms[signal]
            self._files[f"{signal}_{i}"].write(_stats_line(epoch, [stats]))
        self._files[f"angles_{i}"].write(_stats_line(epoch, list(layer.angles.values())))
        for fh in self._files.values():
            fh.flush()

    def close(self) -> None:
        for fh in self._files.values():
            fh.close()
        self._files = {}


def _stats_line(epoch: int, stats: List[RunningStats]) -> str:
    fields = [str(epoch)]
    for item in stats:
        if item.count == 0:
            fields.extend(["nan", "nan"])
        else:
            fields.extend([f"{item.mean:.6g}", f"{item.std:.6g}"])
    return " ".join(fields) + "\n"
