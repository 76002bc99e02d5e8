from sae_trainer.nn.base import (
    GraphError,
    Layer,
    ParameterGroup,
    parameter_count,
    unique_groups,
    zero_grads,
)
from sae_trainer.nn.criteria import (
    ClassNLLCriterion,
    CrossEntropyCriterion,
    Criterion,
    MSECriterion,
    reconstruction_criterion,
)
from sae_trainer.nn.graph import INPUT, Graph
from sae_trainer.nn.layers import Coder, Corruption, Identity, get_nonlinearity

__all__ = [
    "GraphError",
    "Layer",
    "ParameterGroup",
    "parameter_count",
    "unique_groups",
    "zero_grads",
    "Criterion",
    "MSECriterion",
    "CrossEntropyCriterion",
    "ClassNLLCriterion",
    "reconstruction_criterion",
    "Graph",
    "INPUT",
    "Coder",
    "Corruption",
    "Identity",
    "get_nonlinearity",
]
