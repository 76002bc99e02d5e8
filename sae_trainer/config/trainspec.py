from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

# learning rates for at most four encoders plus the classifier
MAX_FINETUNE_LAYERS = 5
NONLINEARITIES = ("sigmoid", "tanh", "linear")
RECONS_COSTS = ("xentropy", "mse")


class ConfigError(ValueError):
    pass


def _require_keys(data: Dict[str, Any], keys: Iterable[str], context: str) -> None:
    missing = [key for key in keys if key not in data]
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"missing {context} keys: {joined}")


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"invalid int value: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"", "none", "null"}:
            return None
        return int(text)
    raise ConfigError(f"invalid int value: {value!r}")


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"", "none", "null"}:
            return None
        if text in {"1", "true", "on", "yes"}:
            return True
        if text in {"0", "false", "off", "no"}:
            return False
    raise ConfigError(f"invalid bool value: {value!r}")


def _flag(data: Dict[str, Any], key: str, default: bool) -> bool:
    value = _optional_bool(data.get(key))
    return default if value is None else value


def _optional_float_list(value: Any) -> List[float] | None:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"expected a list of numbers, got {value!r}")
    return [float(v) for v in value]


def _optional_bool_list(value: Any) -> List[bool] | None:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"expected a list of flags, got {value!r}")
    flags = [_optional_bool(v) for v in value]
    if any(flag is None for flag in flags):
        raise ConfigError(f"expected a list of flags, got {value!r}")
    return [bool(flag) for flag in flags]


@dataclass(frozen=True)
class ModelSpec:
    n_inputs: int
    n_classes: int
    hidden_units: List[int]
    tied_weights: bool = False
    nonlinearity: str = "sigmoid"
    recons_cost: str = "xentropy"
    corrupt_prob: float = 0.0
    corrupt_value: float = 0.0
    l1_decay: float = 0.0
    l2_decay: float = 0.0
    bias_decay: float = 0.0
    criter_avg_framesize: bool = False
    seed: int | None = 2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelSpec":
        _require_keys(data, ["n_inputs", "n_classes"], "model")
        if "hidden_units" in data:
            hidden_units = [int(units) for units in data["hidden_units"]]
        else:
            n_layers = int(data.get("n_layers", 2))
            hidden_units = [int(data.get("n_hidden_units", 5))] * n_layers
        return cls(
            n_inputs=int(data["n_inputs"]),
            n_classes=int(data["n_classes"]),
            hidden_units=hidden_units,
            tied_weights=_flag(data, "tied_weights", False),
            nonlinearity=str(data.get("nonlinearity", "sigmoid")),
            recons_cost=str(data.get("recons_cost", "xentropy")),
            corrupt_prob=float(data.get("corrupt_prob", 0.0)),
            corrupt_value=float(data.get("corrupt_value", 0.0)),
            l1_decay=float(data.get("l1_decay", 0.0)),
            l2_decay=float(data.get("l2_decay", 0.0)),
            bias_decay=float(data.get("bias_decay", 0.0)),
            criter_avg_framesize=_flag(data, "criter_avg_framesize", False),
            seed=_optional_int(data.get("seed", 2)),
        )

    @property
    def n_layers(self) -> int:
        return len(self.hidden_units)

    @property
    def is_noisy(self) -> bool:
        return self.corrupt_prob > 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "n_inputs": self.n_inputs,
            "n_classes": self.n_classes,
            "hidden_units": list(self.hidden_units),
            "tied_weights": self.tied_weights,
            "nonlinearity": self.nonlinearity,
            "recons_cost": self.recons_cost,
            "corrupt_prob": self.corrupt_prob,
            "corrupt_value": self.corrupt_value,
            "l1_decay": self.l1_decay,
            "l2_decay": self.l2_decay,
            "bias_decay": self.bias_decay,
            "criter_avg_framesize": self.criter_avg_framesize,
            "seed": self.seed,
        }


@dataclass(frozen=True)
class DataSpec:
    train_path: str
    valid_path: str | None = None
    test_path: str | None = None
    max_load: int | None = None
    max_train_load: int | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSpec":
        _require_keys(data, ["train_path"], "data")
        return cls(
            train_path=str(data["train_path"]),
            valid_path=(str(data["valid_path"]) if data.get("valid_path") else None),
            test_path=(str(data["test_path"]) if data.get("test_path") else None),
            max_load=_optional_int(data.get("max_load")),
            max_train_load=_optional_int(data.get("max_train_load")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "train_path": self.train_path,
            "valid_path": self.valid_path,
            "test_path": self.test_path,
            "max_load": self.max_load,
            "max_train_load": self.max_train_load,
        }


@dataclass(frozen=True)
class LayerwiseSpec:
    max_iter: int = 0
    learning_rate: float = 1e-3

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "LayerwiseSpec":
        data = data or {}
        return cls(
            max_iter=int(data.get("max_iter", 0)),
            learning_rate=float(data.get("learning_rate", 1e-3)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {"max_iter": self.max_iter, "learning_rate": self.learning_rate}


@dataclass(frozen=True)
class SelectiveSpec:
    layers: List[bool] | None = None
    partial_backprop: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "SelectiveSpec":
        data = data or {}
        return cls(
            layers=_optional_bool_list(data.get("layers")),
            partial_backprop=_flag(data, "partial_backprop", False),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "layers": (list(self.layers) if self.layers is not None else None),
            "partial_backprop": self.partial_backprop,
        }


@dataclass(frozen=True)
class UnsupSpec:
    max_iter: int = 0
    learning_rate: float = 1e-3
    trains_outputer: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "UnsupSpec":
        data = data or {}
        return cls(
            max_iter=int(data.get("max_iter", 0)),
            learning_rate=float(data.get("learning_rate", 1e-3)),
            trains_outputer=_flag(data, "trains_outputer", False),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_iter": self.max_iter,
            "learning_rate": self.learning_rate,
            "trains_outputer": self.trains_outputer,
        }


@dataclass(frozen=True)
class SupUnsupSpec:
    max_iter: int = 0
    learning_rate: float = 1e-3
    unsup_weight: float = 1.0
    eval_weights: bool = False
    probe_examples: int = 1000
    profile_gradients: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "SupUnsupSpec":
        data = data or {}
        return cls(
            max_iter=int(data.get("max_iter", 0)),
            learning_rate=float(data.get("learning_rate", 1e-3)),
            unsup_weight=float(data.get("unsup_weight", 1.0)),
            eval_weights=_flag(data, "eval_weights", False),
            probe_examples=int(data.get("probe_examples", 1000)),
            profile_gradients=_flag(data, "profile_gradients", False),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_iter": self.max_iter,
            "learning_rate": self.learning_rate,
            "unsup_weight": self.unsup_weight,
            "eval_weights": self.eval_weights,
            "probe_examples": self.probe_examples,
            "profile_gradients": self.profile_gradients,
        }


@dataclass(frozen=True)
class FineTuneSpec:
    max_iter: int = 0
    learning_rate: float = 1e-3
    layer_learning_rates: List[float] | None = None
    top_k: int | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "FineTuneSpec":
        data = data or {}
        return cls(
            max_iter=int(data.get("max_iter", 0)),
            learning_rate=float(data.get("learning_rate", 1e-3)),
            layer_learning_rates=_optional_float_list(data.get("layer_learning_rates")),
            top_k=_optional_int(data.get("top_k")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "max_iter": self.max_iter,
            "learning_rate": self.learning_rate,
            "layer_learning_rates": (
                list(self.layer_learning_rates) if self.layer_learning_rates is not None else None
            ),
            "top_k": self.top_k,
        }


@dataclass(frozen=True)
class PhasesSpec:
    layerwise: LayerwiseSpec = field(default_factory=LayerwiseSpec)
    selective: SelectiveSpec = field(default_factory=SelectiveSpec)
    unsup: UnsupSpec = field(default_factory=UnsupSpec)
    supunsup: SupUnsupSpec = field(default_factory=SupUnsupSpec)
    finetune: FineTuneSpec = field(default_factory=FineTuneSpec)
    init_from_model: str | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "PhasesSpec":
        data = data or {}
        return cls(
            layerwise=LayerwiseSpec.from_dict(data.get("layerwise")),
            selective=SelectiveSpec.from_dict(data.get("selective")),
            unsup=UnsupSpec.from_dict(data.get("unsup")),
            supunsup=SupUnsupSpec.from_dict(data.get("supunsup")),
            finetune=FineTuneSpec.from_dict(data.get("finetune")),
            init_from_model=(str(data["init_from_model"]) if data.get("init_from_model") else None),
        )

    @property
    def has_pretraining(self) -> bool:
        return bool(self.layerwise.max_iter or self.unsup.max_iter or self.supunsup.max_iter)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "layerwise": self.layerwise.as_dict(),
            "selective": self.selective.as_dict(),
            "unsup": self.unsup.as_dict(),
            "supunsup": self.supunsup.as_dict(),
            "finetune": self.finetune.as_dict(),
            "init_from_model": self.init_from_model,
        }


@dataclass(frozen=True)
class OptimSpec:
    lr_decay: float = 0.0
    end_accuracy: float = 1e-5
    shuffle: bool = True
    seed: int | None = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "OptimSpec":
        data = data or {}
        return cls(
            lr_decay=float(data.get("lr_decay", 0.0)),
            end_accuracy=float(data.get("end_accuracy", 1e-5)),
            shuffle=_flag(data, "shuffle", True),
            seed=_optional_int(data.get("seed", 1)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lr_decay": self.lr_decay,
            "end_accuracy": self.end_accuracy,
            "shuffle": self.shuffle,
            "seed": self.seed,
        }


@dataclass(frozen=True)
class OutputSpec:
    out_dir: str
    save_model: bool = True
    save_model_afterinit: bool = False
    save_model_afterpretraining: bool = False
    save_outputs: bool = False
    results_files: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutputSpec":
        _require_keys(data, ["out_dir"], "output")
        return cls(
            out_dir=str(data["out_dir"]),
            save_model=_flag(data, "save_model", True),
            save_model_afterinit=_flag(data, "save_model_afterinit", False),
            save_model_afterpretraining=_flag(data, "save_model_afterpretraining", False),
            save_outputs=_flag(data, "save_outputs", False),
            results_files=_flag(data, "results_files", True),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "out_dir": self.out_dir,
            "save_model": self.save_model,
            "save_model_afterinit": self.save_model_afterinit,
            "save_model_afterpretraining": self.save_model_afterpretraining,
            "save_outputs": self.save_outputs,
            "results_files": self.results_files,
        }


@dataclass(frozen=True)
class TrainSpec:
    run_id: str
    model: ModelSpec
    data: DataSpec
    output: OutputSpec
    phases: PhasesSpec = field(default_factory=PhasesSpec)
    optim: OptimSpec = field(default_factory=OptimSpec)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainSpec":
        _require_keys(data, ["run_id", "model", "data", "output"], "trainspec")
        return cls(
            run_id=str(data["run_id"]),
            model=ModelSpec.from_dict(data["model"]),
            data=DataSpec.from_dict(data["data"]),
            output=OutputSpec.from_dict(data["output"]),
            phases=PhasesSpec.from_dict(data.get("phases")),
            optim=OptimSpec.from_dict(data.get("optim")),
        )

    def validate(self) -> None:
        model = self.model
        phases = self.phases
        if not self.run_id:
            raise ConfigError("run_id must be non-empty")
        if model.n_inputs <= 0 or model.n_classes <= 0:
            raise ConfigError("model n_inputs and n_classes must be > 0")
        if not model.hidden_units or any(units <= 0 for units in model.hidden_units):
            raise ConfigError("model hidden_units must be a non-empty list of sizes > 0")
        if model.nonlinearity not in NONLINEARITIES:
            raise ConfigError(f"invalid nonlinearity: {model.nonlinearity}")
        if model.recons_cost not in RECONS_COSTS:
            raise ConfigError(f"invalid recons_cost: {model.recons_cost}")
        if model.recons_cost == "xentropy" and model.nonlinearity != "sigmoid":
            raise ConfigError(
                "xentropy reconstruction requires a transfer function with outputs in [0,1] "
                "(nonlinearity=sigmoid)"
            )
        if not 0.0 <= model.corrupt_prob < 1.0:
            raise ConfigError("corrupt_prob must be in [0, 1)")
        if min(model.l1_decay, model.l2_decay, model.bias_decay) < 0:
            raise ConfigError("decay values must be >= 0")

        budgets = [
            phases.layerwise.max_iter,
            phases.unsup.max_iter,
            phases.supunsup.max_iter,
            phases.finetune.max_iter,
        ]
        if any(budget < 0 for budget in budgets):
            raise ConfigError("phase max_iter values must be >= 0")

        if phases.selective.layers is not None:
            if len(phases.selective.layers) != model.n_layers:
                raise ConfigError(
                    f"selective layers has {len(phases.selective.layers)} entries, "
                    f"model has {model.n_layers} hidden layers"
                )
            if model.n_layers > MAX_FINETUNE_LAYERS - 1:
                raise ConfigError(
                    f"selective pretraining supports at most {MAX_FINETUNE_LAYERS - 1} layers"
                )

        finetune = phases.finetune
        if finetune.layer_learning_rates is not None:
            if model.n_layers + 1 > MAX_FINETUNE_LAYERS:
                raise ConfigError(
                    f"layer specific finetuning not supported for more than "
                    f"{MAX_FINETUNE_LAYERS - 1} layers"
                )
            if len(finetune.layer_learning_rates) != model.n_layers + 1:
                raise ConfigError(
                    f"finetune layer_learning_rates needs {model.n_layers + 1} values "
                    "(one per encoder plus the classifier)"
                )
        if finetune.top_k is not None:
            if finetune.layer_learning_rates is not None:
                raise ConfigError("finetune top_k and layer_learning_rates are exclusive")
            if not 1 <= finetune.top_k <= model.n_layers + 1:
                raise ConfigError(f"finetune top_k must be 1..{model.n_layers + 1}")

        if phases.init_from_model and phases.has_pretraining:
            raise ConfigError(
                "init_from_model initializes weights before supervised training; "
                "no pretraining phase may be requested"
            )
        supunsup = phases.supunsup
        if supunsup.probe_examples <= 0:
            raise ConfigError("supunsup probe_examples must be > 0")
        if supunsup.profile_gradients and model.is_noisy:
            raise ConfigError(
                "cannot profile gradients with noisy autoencoders: the decoders are "
                "plugged into the noisy encoders"
            )
        if self.optim.lr_decay < 0 or self.optim.end_accuracy < 0:
            raise ConfigError("optim lr_decay and end_accuracy must be >= 0")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "model": self.model.as_dict(),
            "data": self.data.as_dict(),
            "output": self.output.as_dict(),
            "phases": self.phases.as_dict(),
            "optim": self.optim.as_dict(),
        }


def _load_json(path: Path) -> Dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        import yaml
    except ImportError as exc:
        raise RuntimeError("PyYAML is required to load YAML trainspecs") from exc
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def load_trainspec(path: str | Path) -> TrainSpec:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = _load_yaml(path)
    else:
        data = _load_json(path)
    spec = TrainSpec.from_dict(data)
    spec.validate()
    return spec


def save_trainspec(path: str | Path, spec: TrainSpec) -> None:
    path = Path(path)
    data = spec.as_dict()
    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError as exc:
            raise RuntimeError("PyYAML is required to write YAML trainspecs") from exc
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    else:
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
