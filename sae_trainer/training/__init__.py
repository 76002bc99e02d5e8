from sae_trainer.training.aggregate import (
    AggregateResult,
    LossAggregate,
    Objective,
    joint_aggregate,
    layer_aggregate,
    supervised_aggregate,
    unsupervised_aggregate,
)
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
from sae_trainer.training.profiler import GradientProfiler
from sae_trainer.training.runner import build_schedule, run_experiment
from sae_trainer.training.scheduler import EpochResult, PhaseResult, SaeTrainer, partial_backprop
from sae_trainer.training.sgd import apply_sgd_update
from sae_trainer.training.weighting import (
    GradientMoments,
    estimate_criterion_weights,
    variance_weight,
)

__all__ = [
    "LossAggregate",
    "Objective",
    "AggregateResult",
    "supervised_aggregate",
    "layer_aggregate",
    "unsupervised_aggregate",
    "joint_aggregate",
    "LayerwiseUnsup",
    "SelectiveUnsup",
    "JointUnsup",
    "JointSupUnsup",
    "FineTune",
    "SupervisedTopK",
    "TrainingPhase",
    "SgdSettings",
    "phase_name",
    "SaeTrainer",
    "EpochResult",
    "PhaseResult",
    "partial_backprop",
    "GradientProfiler",
    "GradientMoments",
    "estimate_criterion_weights",
    "variance_weight",
    "apply_sgd_update",
    "build_schedule",
    "run_experiment",
]
