from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List

import numpy as np

from sae_trainer.model.assembler import StackedAutoencoder


@dataclass(frozen=True)
class ValueHistogram:
    counts: Any
    edges: Any

    @classmethod
    def fit(cls, values: Any, n_bins: int = 100) -> "ValueHistogram":
        flat = np.asarray(values, dtype=np.float64).reshape(-1)
        if flat.size == 0:
            raise ValueError("cannot fit a histogram on an empty array")
        counts, edges = np.histogram(flat, bins=n_bins)
        return cls(counts=counts, edges=edges)

    def sample(self, rng: Any, shape: Any) -> Any:
        probs = self.counts / self.counts.sum()
        bins = rng.choice(len(self.counts), size=shape, p=probs)
        low = self.edges[bins]
        high = self.edges[bins + 1]
        return low + (high - low) * rng.random(size=shape)


def reinit_from_model(
    model: StackedAutoencoder,
    source: StackedAutoencoder,
    rng: Any,
    n_bins: int = 100,
) -> List[str]:
    """
    Re-draw every encoder's weights and biases from the value distribution of
    the matching encoder in `source`. The outputer is left untouched.
    """
    if source.n_hidden_layers != model.n_hidden_layers:
        raise ValueError(
            f"source model has {source.n_hidden_layers} hidden layers, "
            f"target has {model.n_hidden_layers}"
        )
    touched: List[str] = []
    for target, reference in zip(model.encoders, source.encoders):
        for block in ("weights", "bias"):
            histogram = ValueHistogram.fit(reference.params.values[block], n_bins=n_bins)
            values = target.params.values[block]
            values[...] = histogram.sample(rng, values.shape)
        touched.append(target.name)
    return touched
