from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np

from sae_trainer.data.dataset import ArrayDataSet
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.nn.criteria import Criterion


def _to_float(value: object) -> float | None:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _quantile(sorted_values: Sequence[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("quantile requires non-empty list")
    if q <= 0:
        return float(sorted_values[0])
    if q >= 1:
        return float(sorted_values[-1])
    k = (len(sorted_values) - 1) * q
    f = int(math.floor(k))
    c = int(math.ceil(k))
    if f == c:
        return float(sorted_values[f])
    d = k - f
    return float(sorted_values[f] * (1.0 - d) + sorted_values[c] * d)


def _summary_stats(values: List[float]) -> Dict[str, Any] | None:
    if not values:
        return None
    values_sorted = sorted(values)
    count = len(values_sorted)
    return {
        "count": count,
        "min": float(values_sorted[0]),
        "p50": _quantile(values_sorted, 0.5),
        "max": float(values_sorted[-1]),
        "mean": float(sum(values_sorted)) / count,
        "last": float(values[-1]),
    }


def predict(model: StackedAutoencoder, dataset: ArrayDataSet) -> Any:
    """Log-probabilities of the supervised graph, one row per example."""
    rows = [np.array(model.forward(example.inputs), copy=True) for example in dataset]
    if not rows:
        return np.zeros((0, model.registry.n_outputs))
    return np.vstack(rows)


def classification_metrics(model: StackedAutoencoder, dataset: ArrayDataSet) -> Dict[str, Any]:
    if not dataset.has_targets:
        raise ValueError(f"{dataset.name}: classification metrics need class targets")
    outputs = predict(model, dataset)
    targets = dataset.targets
    count = int(outputs.shape[0])
    if count == 0:
        return {"dataset": dataset.name, "examples": 0, "class_error": None, "nll": None}
    predicted = np.argmax(outputs, axis=1)
    errors = int(np.sum(predicted != targets))
    nll = float(-np.mean(outputs[np.arange(count), targets]))
    return {
        "dataset": dataset.name,
        "examples": count,
        "class_error": errors / count,
        "nll": nll,
    }


def reconstruction_metrics(
    model: StackedAutoencoder,
    dataset: ArrayDataSet,
    criterion: Criterion,
) -> Dict[str, Any]:
    """Mean reconstruction cost of every clean autoencoder on its encoder's clean input."""
    n = model.n_hidden_layers
    totals = np.zeros(n)
    for example in dataset:
        model.forward(example.inputs)
        for i in range(n):
            source = example.inputs if i == 0 else model.encoders[i - 1].outputs
            code = model.encoders[i].outputs
            reconstruction = model.decoders[i].forward(code)
            totals[i] += criterion.forward(reconstruction, source)
    count = max(dataset.example_count, 1)
    return {
        "dataset": dataset.name,
        "examples": dataset.example_count,
        "criterion": criterion.name,
        "layers": [float(value) / count for value in totals],
    }


def load_events(path: str | Path) -> List[Dict[str, Any]]:
    path = Path(path)
    events = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        events.append(json.loads(line))
    return events


def compute_metrics(events: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    events = list(events)
    epoch_end = [e for e in events if e.get("event") == "epoch_end"]
    phase_end = [e for e in events if e.get("event") == "phase_end"]
    skipped = [e for e in events if e.get("event") == "phase_skipped"]
    warnings = [e for e in events if e.get("event") == "numerical_warning"]
    evals = [e for e in events if e.get("event") == "eval"]
    saved = [e for e in events if e.get("event") == "model_saved"]
    weights = [e for e in events if e.get("event") == "criterion_weights"]

    phases: Dict[str, Dict[str, Any]] = {}
    for event in epoch_end:
        name = str(event.get("phase"))
        loss = _to_float(event.get("loss"))
        entry = phases.setdefault(name, {"epochs": 0, "losses": []})
        entry["epochs"] += 1
        if loss is not None:
            entry["losses"].append(loss)
    for event in phase_end:
        name = str(event.get("phase"))
        entry = phases.setdefault(name, {"epochs": 0, "losses": []})
        entry["stopped_early"] = bool(event.get("stopped_early"))
    phase_summary = {
        name: {
            "epochs": entry["epochs"],
            "loss": _summary_stats(entry["losses"]),
            "stopped_early": entry.get("stopped_early", False),
        }
        for name, entry in phases.items()
    }

    class_error: Dict[str, List[float]] = {}
    for event in evals:
        value = _to_float(event.get("class_error"))
        if value is not None:
            class_error.setdefault(str(event.get("dataset")), []).append(value)

    return {
        "epoch_count": len(epoch_end),
        "phases": phase_summary,
        "skipped_phases": [str(e.get("phase")) for e in skipped],
        "numerical_warning_count": len(warnings),
        "models_saved": [str(e.get("tag")) for e in saved],
        "criterion_weights": (list(weights[-1].get("weights") or []) if weights else None),
        "class_error": {name: _summary_stats(values) for name, values in class_error.items()},
    }
