from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, TextIO

import numpy as np

from sae_trainer.config.manifest import ModelManifest
from sae_trainer.config.trainspec import TrainSpec
from sae_trainer.data.dataset import ArrayDataSet, load_dataset
from sae_trainer.experiments.metrics import classification_metrics, predict
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.model.reinit import reinit_from_model
from sae_trainer.model.serialization import (
    build_model,
    load_model,
    parameters_fingerprint,
    save_model,
)
from sae_trainer.nn.criteria import reconstruction_criterion
from sae_trainer.runtime.clock import Clock
from sae_trainer.runtime.logging import JsonlLogger
from sae_trainer.training.phases import (
    FineTune,
    JointSupUnsup,
    JointUnsup,
    LayerwiseUnsup,
    SelectiveUnsup,
    SgdSettings,
    SupervisedTopK,
    TrainingPhase,
    phase_name,
)
from sae_trainer.training.scheduler import EpochResult, PhaseResult, SaeTrainer, Schedule


@dataclass
class RunSchedule:
    pretraining: List[Any] = field(default_factory=list)
    joint: List[Any] = field(default_factory=list)
    supervised: List[Any] = field(default_factory=list)

    def all(self) -> Schedule:
        return [*self.pretraining, *self.joint, *self.supervised]


@dataclass
class RunResult:
    run_id: str
    out_dir: Path
    log_path: Path
    phases: List[PhaseResult]
    manifests: Dict[str, ModelManifest]
    evaluations: Dict[str, Dict[str, Any]]


def _settings(spec: TrainSpec, learning_rate: float, max_iter: int) -> SgdSettings:
    return SgdSettings(
        learning_rate=learning_rate,
        max_iter=max_iter,
        lr_decay=spec.optim.lr_decay,
        end_accuracy=spec.optim.end_accuracy,
        shuffle=spec.optim.shuffle,
    )


def build_schedule(spec: TrainSpec) -> RunSchedule:
    phases = spec.phases
    n_layers = spec.model.n_layers
    schedule = RunSchedule()

    layerwise = _settings(spec, phases.layerwise.learning_rate, phases.layerwise.max_iter)
    if phases.selective.layers is not None:
        schedule.pretraining.append(
            (
                SelectiveUnsup(tuple(phases.selective.layers), phases.selective.partial_backprop),
                layerwise,
            )
        )
    else:
        schedule.pretraining.extend((LayerwiseUnsup(i), layerwise) for i in range(n_layers))

    unsup = phases.unsup
    schedule.pretraining.append(
        (JointUnsup(unsup.trains_outputer), _settings(spec, unsup.learning_rate, unsup.max_iter))
    )

    supunsup = phases.supunsup
    schedule.joint.append(
        (
            JointSupUnsup(
                unsup_weight=supunsup.unsup_weight,
                eval_weights=supunsup.eval_weights,
                probe_examples=supunsup.probe_examples,
                profile_gradients=supunsup.profile_gradients,
            ),
            _settings(spec, supunsup.learning_rate, supunsup.max_iter),
        )
    )

    finetune = phases.finetune
    settings = _settings(spec, finetune.learning_rate, finetune.max_iter)
    if finetune.top_k is not None:
        phase: TrainingPhase = SupervisedTopK(finetune.top_k)
    elif finetune.layer_learning_rates is not None:
        phase = FineTune(tuple(finetune.layer_learning_rates))
    else:
        phase = FineTune()
    schedule.supervised.append((phase, settings))
    return schedule


def build_model_from_spec(spec: TrainSpec) -> StackedAutoencoder:
    model_spec = spec.model
    model = build_model(
        model_spec.n_inputs,
        list(model_spec.hidden_units),
        model_spec.n_classes,
        nonlinearity=model_spec.nonlinearity,
        tied_weights=model_spec.tied_weights,
        corrupt_prob=model_spec.corrupt_prob,
        corrupt_value=model_spec.corrupt_value,
        seed=model_spec.seed,
    )
    model.registry.set_decay(model_spec.l1_decay, model_spec.l2_decay, model_spec.bias_decay)
    return model


def save_outputs(model: StackedAutoencoder, dataset: ArrayDataSet, path: str | Path) -> Path:
    path = Path(path)
    outputs = predict(model, dataset)
    rows, cols = outputs.shape
    np.savetxt(path, outputs, fmt="%.8g", header=f"{rows} {cols}", comments="")
    return path


def _load_datasets(spec: TrainSpec) -> Dict[str, ArrayDataSet]:
    data = spec.data
    n_inputs = spec.model.n_inputs
    datasets = {
        "train": load_dataset(
            data.train_path, n_inputs=n_inputs, max_load=data.max_train_load, name="train"
        )
    }
    if data.valid_path:
        datasets["valid"] = load_dataset(
            data.valid_path, n_inputs=n_inputs, max_load=data.max_load, name="valid"
        )
    if data.test_path:
        datasets["test"] = load_dataset(
            data.test_path, n_inputs=n_inputs, max_load=data.max_load, name="test"
        )
    return datasets


def run_experiment(spec: TrainSpec, clock: Clock | None = None) -> RunResult:
    spec.validate()
    out_dir = Path(spec.output.out_dir) / spec.run_id
    datasets = _load_datasets(spec)
    train_data = datasets["train"]
    eval_sets = [datasets[name] for name in ("valid", "test") if name in datasets]
    model = build_model_from_spec(spec)
    criterion = reconstruction_criterion(spec.model.recons_cost, spec.model.criter_avg_framesize)
    schedule = build_schedule(spec)
    manifests: Dict[str, ModelManifest] = {}
    evaluations: Dict[str, Dict[str, Any]] = {}
    outcomes: List[PhaseResult] = []

    with ExitStack() as stack:
        logger = stack.enter_context(JsonlLogger(out_dir, spec.run_id, clock=clock))
        trainer = SaeTrainer(
            model,
            criterion,
            logger=logger,
            seed=spec.optim.seed,
            profile_dir=str(out_dir),
        )
        trainer.validate(schedule.all())
        logger.log_run_start(spec, model_fingerprint=parameters_fingerprint(model))

        def evaluate(phase: TrainingPhase, result: EpochResult) -> None:
            for dataset in eval_sets:
                if not dataset.has_targets:
                    continue
                metrics = classification_metrics(model, dataset)
                evaluations[dataset.name] = metrics
                logger.log_event("eval", {"phase": result.phase, "epoch": result.epoch, **metrics})

        trainer.add_hook("after_iteration", evaluate)

        def results_file(phase: TrainingPhase) -> TextIO | None:
            if not spec.output.results_files:
                return None
            path = out_dir / f"results_{phase_name(phase)}.txt"
            return stack.enter_context(path.open("a", encoding="utf-8"))

        def checkpoint(tag: str) -> None:
            manifest = save_model(model, out_dir / f"model_{tag}", tag=tag, notes={"run_id": spec.run_id})
            manifests[tag] = manifest
            logger.log_event(
                "model_saved",
                {"tag": tag, "path": str(out_dir / f"model_{tag}"), "params_hash": manifest.params_hash},
            )

        if spec.output.save_model_afterinit:
            checkpoint("afterinit")
        outcomes.extend(trainer.run(schedule.pretraining, train_data, results_file))
        if spec.output.save_model_afterpretraining:
            checkpoint("afterpretraining")
        outcomes.extend(trainer.run(schedule.joint, train_data, results_file))

        if spec.phases.init_from_model:
            source = load_model(spec.phases.init_from_model)
            touched = reinit_from_model(model, source, model.registry.rng)
            logger.log_event(
                "reinit", {"source": spec.phases.init_from_model, "layers": touched}
            )
        outcomes.extend(trainer.run(schedule.supervised, train_data, results_file))

        if spec.output.save_model:
            checkpoint("final")
        if spec.output.save_outputs:
            for name, dataset in datasets.items():
                save_outputs(model, dataset, out_dir / f"outputs_{name}.txt")
        log_path = logger.path

    return RunResult(
        run_id=spec.run_id,
        out_dir=out_dir,
        log_path=log_path,
        phases=outcomes,
        manifests=manifests,
        evaluations=evaluations,
    )
