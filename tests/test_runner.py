import json
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pytest

from sae_trainer.config.trainspec import ConfigError, TrainSpec
from sae_trainer.data.dataset import load_dataset
from sae_trainer.model.serialization import load_model
from sae_trainer.runtime.clock import FakeClock
from sae_trainer.training.phases import (
    FineTune,
    JointSupUnsup,
    JointUnsup,
    LayerwiseUnsup,
    SelectiveUnsup,
    SupervisedTopK,
)
from sae_trainer.training.runner import build_schedule, run_experiment


def _write_data(tmp_path: Path, targets: bool = True) -> Dict[str, str]:
    rng = np.random.default_rng(0)
    paths = {}
    for name, count in (("train", 8), ("valid", 4)):
        path = tmp_path / f"{name}.npz"
        inputs = rng.random((count, 4))
        if targets:
            np.savez(path, inputs=inputs, targets=np.arange(count) % 2)
        else:
            np.savez(path, inputs=inputs)
        paths[name] = str(path)
    return paths


def _spec(tmp_path: Path, run_id: str = "demo", **phases: Any) -> TrainSpec:
    paths = _write_data(tmp_path)
    data = {
        "run_id": run_id,
        "model": {"n_inputs": 4, "n_classes": 2, "hidden_units": [3, 2], "recons_cost": "mse"},
        "data": {"train_path": paths["train"], "valid_path": paths["valid"]},
        "output": {"out_dir": str(tmp_path / "out")},
        "phases": phases,
        "optim": {"end_accuracy": 0.0},
    }
    return TrainSpec.from_dict(data)


def _events(path: Path) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_build_schedule_orders_phases(tmp_path: Path) -> None:
    spec = _spec(
        tmp_path,
        layerwise={"max_iter": 1, "learning_rate": 0.2},
        supunsup={"max_iter": 1, "unsup_weight": 0.5, "eval_weights": True},
        finetune={"max_iter": 2, "layer_learning_rates": [0.1, 0.1, 0.2]},
    )
    schedule = build_schedule(spec)
    phases = [phase for phase, _ in schedule.all()]
    assert phases == [
        LayerwiseUnsup(0),
        LayerwiseUnsup(1),
        JointUnsup(False),
        JointSupUnsup(unsup_weight=0.5, eval_weights=True),
        FineTune((0.1, 0.1, 0.2)),
    ]
    assert schedule.pretraining[0][1].learning_rate == 0.2
    assert schedule.supervised[0][1].max_iter == 2

    selective = build_schedule(
        _spec(tmp_path, selective={"layers": [0, 1]}, finetune={"top_k": 2})
    )
    assert selective.pretraining[0][0] == SelectiveUnsup((False, True), False)
    assert selective.supervised[0][0] == SupervisedTopK(2)


def test_run_experiment_end_to_end(tmp_path: Path) -> None:
    spec = _spec(
        tmp_path,
        layerwise={"max_iter": 1, "learning_rate": 0.1},
        unsup={"max_iter": 1, "learning_rate": 0.1},
        supunsup={"max_iter": 1, "learning_rate": 0.1},
        finetune={"max_iter": 2, "learning_rate": 0.1},
    )
    data = spec.as_dict()
    data["output"].update(
        {"save_model_afterinit": True, "save_model_afterpretraining": True, "save_outputs": True}
    )
    spec = TrainSpec.from_dict(data)

    result = run_experiment(spec, clock=FakeClock(1000))

    out_dir = tmp_path / "out" / "demo"
    assert result.out_dir == out_dir
    assert result.log_path == out_dir / "demo_train.jsonl"
    assert [phase.phase for phase in result.phases] == [
        "layerwise_0",
        "layerwise_1",
        "unsup",
        "supunsup",
        "finetune",
    ]
    assert sorted(result.manifests) == ["afterinit", "afterpretraining", "final"]
    for tag in result.manifests:
        assert (out_dir / f"model_{tag}" / "manifest.json").exists()

    finetune_lines = (out_dir / "results_finetune.txt").read_text(encoding="utf-8").splitlines()
    assert len(finetune_lines) == 2
    assert (out_dir / "results_layerwise_1.txt").exists()

    outputs = load_dataset(out_dir / "outputs_valid.txt", n_inputs=2)
    assert outputs.example_count == 4
    assert np.allclose(np.exp(outputs.inputs).sum(axis=1), 1.0, atol=1e-6)
    final = load_model(out_dir / "model_final")
    valid = load_dataset(spec.data.valid_path, n_inputs=4)
    assert np.allclose(final.forward(valid.select_example(0).inputs), outputs.inputs[0], atol=1e-6)

    events = _events(result.log_path)
    names = [event["event"] for event in events]
    assert names[0] == "run_start"
    assert names.count("eval") == 6
    assert names.count("model_saved") == 3
    assert names.index("model_saved") < names.index("phase_start")
    saved = [event for event in events if event["event"] == "model_saved"]
    assert saved[-1]["params_hash"] == result.manifests["final"].params_hash
    assert result.evaluations["valid"]["examples"] == 4
    assert all(event["ts_ms"] == 1000 for event in events)


def test_default_spec_skips_every_phase(tmp_path: Path) -> None:
    result = run_experiment(_spec(tmp_path))
    assert all(phase.skipped for phase in result.phases)
    events = _events(result.log_path)
    assert [event["event"] for event in events].count("phase_skipped") == 5
    assert sorted(result.manifests) == ["final"]
    assert not list(result.out_dir.glob("results_*.txt"))


def test_init_from_model_reinitializes_before_finetuning(tmp_path: Path) -> None:
    first = run_experiment(_spec(tmp_path, run_id="first", finetune={"max_iter": 1}))
    source = str(first.out_dir / "model_final")
    second = run_experiment(
        _spec(tmp_path, run_id="second", init_from_model=source, finetune={"max_iter": 1})
    )
    names = [event["event"] for event in _events(second.log_path)]
    assert names.index("reinit") < names.index("phase_start")
    reinit = [event for event in _events(second.log_path) if event["event"] == "reinit"][0]
    assert reinit["layers"] == ["encoder_0", "encoder_1"]
    assert reinit["source"] == source


def test_supervised_phase_without_targets_fails(tmp_path: Path) -> None:
    spec = _spec(tmp_path, finetune={"max_iter": 1})
    _write_data(tmp_path, targets=False)
    with pytest.raises(ConfigError, match="no class targets"):
        run_experiment(spec)


def test_invalid_spec_is_rejected_before_any_output(tmp_path: Path) -> None:
    spec = _spec(tmp_path, finetune={"top_k": 5})
    with pytest.raises(ConfigError, match="top_k"):
        run_experiment(spec)
    assert not (tmp_path / "out").exists()
