from sae_trainer.experiments.metrics import (
    classification_metrics,
    compute_metrics,
    load_events,
    predict,
    reconstruction_metrics,
)

__all__ = [
    "classification_metrics",
    "reconstruction_metrics",
    "predict",
    "compute_metrics",
    "load_events",
]
