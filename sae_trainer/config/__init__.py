from sae_trainer.config.manifest import ModelManifest, hash_file
from sae_trainer.config.trainspec import (
    MAX_FINETUNE_LAYERS,
    ConfigError,
    DataSpec,
    FineTuneSpec,
    ModelSpec,
    OptimSpec,
    OutputSpec,
    LayerwiseSpec,
    PhasesSpec,
    SelectiveSpec,
    SupUnsupSpec,
    TrainSpec,
    UnsupSpec,
    load_trainspec,
    save_trainspec,
)

__all__ = [
    "TrainSpec",
    "ModelSpec",
    "DataSpec",
    "PhasesSpec",
    "LayerwiseSpec",
    "SelectiveSpec",
    "UnsupSpec",
    "SupUnsupSpec",
    "FineTuneSpec",
    "OptimSpec",
    "OutputSpec",
    "ConfigError",
    "MAX_FINETUNE_LAYERS",
    "load_trainspec",
    "save_trainspec",
    "ModelManifest",
    "hash_file",
]
