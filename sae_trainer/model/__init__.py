from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.model.registry import LayerRegistry
from sae_trainer.model.reinit import reinit_from_model
from sae_trainer.model.serialization import (
    ModelFormatError,
    build_model,
    load_model,
    load_parameters,
    parameters_fingerprint,
    save_model,
)

__all__ = [
    "LayerRegistry",
    "StackedAutoencoder",
    "ModelFormatError",
    "build_model",
    "save_model",
    "load_model",
    "load_parameters",
    "parameters_fingerprint",
    "reinit_from_model",
]
