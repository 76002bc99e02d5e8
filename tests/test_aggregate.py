import numpy as np
import pytest

from sae_trainer.data.dataset import ArrayDataSet
from sae_trainer.model.serialization import build_model
from sae_trainer.nn.base import GraphError
from sae_trainer.nn.criteria import MSECriterion
from sae_trainer.training.aggregate import (
    LossAggregate,
    Objective,
    class_target,
    joint_aggregate,
    layer_aggregate,
    supervised_aggregate,
    unsupervised_aggregate,
)


def _dataset() -> ArrayDataSet:
    rng = np.random.default_rng(4)
    return ArrayDataSet(rng.random((3, 4)), [0, 1, 0], name="train")


def test_joint_loss_is_the_weighted_sum_of_its_parts() -> None:
    model = build_model(4, [3, 2], 2, seed=1)
    criterion = MSECriterion()
    example = _dataset().select_example(1)

    joint = joint_aggregate(model, criterion, unsup_weight=1.0)
    outputs = model.joint.forward(example.inputs)
    plain = joint.evaluate(outputs, example)
    assert len(plain.losses) == 3
    assert plain.loss == pytest.approx(sum(plain.losses))

    joint.set_weights([1.0, 0.5, 2.0])
    weighted = joint.evaluate(outputs, example)
    assert weighted.losses == plain.losses
    assert weighted.loss == pytest.approx(plain.losses[0] + 0.5 * plain.losses[1] + 2.0 * plain.losses[2])
    assert np.allclose(weighted.beta[:2], plain.beta[:2])
    assert np.allclose(weighted.beta[2:6], 0.5 * plain.beta[2:6])
    assert np.allclose(weighted.beta[6:], 2.0 * plain.beta[6:])
    assert joint.weights == [1.0, 0.5, 2.0]


def test_reconstruction_targets_follow_the_clean_encoder_below() -> None:
    model = build_model(4, [3, 2], 2, seed=1)
    criterion = MSECriterion()
    example = _dataset().select_example(0)

    top = layer_aggregate(model, criterion, 1)
    outputs = model.chained[1].forward(example.inputs)
    result = top.evaluate(outputs, example)
    expected = criterion.forward(outputs, model.encoders[0].outputs)
    assert result.loss == pytest.approx(expected)

    bottom = layer_aggregate(model, criterion, 0)
    outputs = model.chained[0].forward(example.inputs)
    assert bottom.evaluate(outputs, example).loss == pytest.approx(
        criterion.forward(outputs, example.inputs)
    )


def test_unsupervised_and_supervised_aggregates() -> None:
    model = build_model(4, [3, 2], 2, seed=1)
    example = _dataset().select_example(2)

    unsup = unsupervised_aggregate(model, MSECriterion())
    assert [objective.name for objective in unsup.objectives] == ["recons_0", "recons_1"]
    unsup.evaluate(model.unsupervised.forward(example.inputs), example)

    sup = supervised_aggregate(model)
    outputs = model.supervised.forward(example.inputs)
    result = sup.evaluate(outputs, example)
    assert result.loss == pytest.approx(-outputs[example.target])


def test_aggregate_mismatch_errors() -> None:
    model = build_model(4, [3, 2], 2, seed=1)
    objective = Objective("class_nll", MSECriterion(), class_target)
    with pytest.raises(GraphError, match="2 objectives for 3 output segments"):
        LossAggregate(model.joint, [objective, objective])
    aggregate = supervised_aggregate(model)
    with pytest.raises(ValueError, match="2 weights for 1 objectives"):
        aggregate.set_weights([1.0, 1.0])
    with pytest.raises(ValueError, match="3 outputs, expected 2"):
        aggregate.evaluate(np.zeros(3), _dataset().select_example(0))
