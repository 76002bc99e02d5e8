import io
import json
from pathlib import Path
from typing import Any, Dict, List, Set

import numpy as np
import pytest

from sae_trainer.config.trainspec import ConfigError
from sae_trainer.data.dataset import ArrayDataSet
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.model.serialization import build_model
from sae_trainer.nn.criteria import MSECriterion
from sae_trainer.runtime.clock import FakeClock
from sae_trainer.runtime.logging import JsonlLogger
from sae_trainer.training.phases import (
    FineTune,
    JointSupUnsup,
    JointUnsup,
    LayerwiseUnsup,
    SelectiveUnsup,
    SgdSettings,
    SupervisedTopK,
)
from sae_trainer.training.scheduler import SaeTrainer, partial_backprop


def _model(**kwargs: Any) -> StackedAutoencoder:
    return build_model(4, [3, 2], 2, seed=5, **kwargs)


def _dataset(targets: bool = True, count: int = 6) -> ArrayDataSet:
    rng = np.random.default_rng(9)
    labels = [i % 2 for i in range(count)] if targets else None
    return ArrayDataSet(rng.random((count, 4)), labels, name="train")


def _snapshot(model: StackedAutoencoder) -> Dict[str, Any]:
    return {group.name: group.flat_values().copy() for group in model.parameter_groups()}


def _changed(model: StackedAutoencoder, before: Dict[str, Any]) -> Set[str]:
    after = _snapshot(model)
    return {name for name, values in after.items() if not np.array_equal(values, before[name])}


def _settings(max_iter: int = 1, **kwargs: Any) -> SgdSettings:
    kwargs.setdefault("end_accuracy", 0.0)
    kwargs.setdefault("shuffle", False)
    return SgdSettings(learning_rate=0.1, max_iter=max_iter, **kwargs)


def _train(model: StackedAutoencoder, phase: Any, **kwargs: Any) -> Set[str]:
    trainer = SaeTrainer(model, MSECriterion(), seed=0)
    before = _snapshot(model)
    trainer.train_phase(phase, _dataset(), _settings(**kwargs))
    return _changed(model, before)


def _events(logger: JsonlLogger) -> List[Dict[str, Any]]:
    logger.close()
    return [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]


@pytest.mark.parametrize(
    "phase,expected",
    [
        (LayerwiseUnsup(0), {"encoder_0", "decoder_0"}),
        (LayerwiseUnsup(1), {"encoder_1", "decoder_1"}),
        (SelectiveUnsup((False, True)), {"encoder_0", "encoder_1", "decoder_1"}),
        (SelectiveUnsup((False, True), partial_backprop=True), {"encoder_1", "decoder_1"}),
        (SelectiveUnsup((True, True), partial_backprop=True), {"encoder_0", "encoder_1", "decoder_0", "decoder_1"}),
        (JointUnsup(), {"encoder_0", "encoder_1", "decoder_0", "decoder_1"}),
        (JointUnsup(train_outputer=True), {"encoder_0", "encoder_1", "decoder_0", "decoder_1", "outputer"}),
        (JointSupUnsup(), {"encoder_0", "encoder_1", "decoder_0", "decoder_1", "outputer"}),
        (FineTune(), {"encoder_0", "encoder_1", "outputer"}),
        (FineTune((0.0, 0.1, 0.1)), {"encoder_1", "outputer"}),
        (SupervisedTopK(1), {"outputer"}),
        (SupervisedTopK(2), {"encoder_1", "outputer"}),
        (SupervisedTopK(3), {"encoder_0", "encoder_1", "outputer"}),
    ],
)
def test_each_phase_updates_only_its_groups(phase: Any, expected: Set[str]) -> None:
    assert _train(_model(), phase) == expected


def test_noisy_layerwise_updates_the_shared_encoder() -> None:
    model = _model(corrupt_prob=0.2)
    assert _train(model, LayerwiseUnsup(0)) == {"encoder_0", "decoder_0"}
    assert _train(model, JointUnsup()) == {"encoder_0", "encoder_1", "decoder_0", "decoder_1"}


def test_unsup_with_outputer_leaves_encoder_updates_unsupervised() -> None:
    plain = _model()
    with_outputer = _model()
    _train(plain, JointUnsup())
    _train(with_outputer, JointUnsup(train_outputer=True))
    for name in ("encoder_0", "encoder_1", "decoder_0", "decoder_1"):
        assert np.allclose(_snapshot(plain)[name], _snapshot(with_outputer)[name])
    assert with_outputer.outputer.partial_backprop is False


def test_partial_backprop_restores_previous_flags() -> None:
    model = _model()
    model.encoders[0].partial_backprop = True
    with partial_backprop(model.encoders):
        assert all(encoder.partial_backprop for encoder in model.encoders)
    assert model.encoders[0].partial_backprop is True
    assert model.encoders[1].partial_backprop is False


def test_flags_are_restored_when_a_phase_fails() -> None:
    model = _model()
    trainer = SaeTrainer(model, MSECriterion())

    def fail(phase: Any, epoch: int) -> None:
        raise RuntimeError("stop")

    trainer.add_hook("before_iteration", fail)
    with pytest.raises(RuntimeError, match="stop"):
        trainer.train_phase(
            SelectiveUnsup((True, True), partial_backprop=True), _dataset(), _settings()
        )
    assert not any(encoder.partial_backprop for encoder in model.encoders)


def _five_layer_finetune() -> None:
    model = build_model(4, [3, 3, 3, 3, 3], 2, seed=1)
    SaeTrainer(model, MSECriterion()).validate_phase(FineTune((0.1,) * 6), _settings())


@pytest.mark.parametrize(
    "phase,settings,match",
    [
        (LayerwiseUnsup(2), _settings(), "layerwise layer 2 out of range"),
        (SelectiveUnsup((True,)), _settings(), "selective layers has 1 entries"),
        (FineTune((0.1, 0.1)), _settings(), "finetuning needs 3 learning rates, got 2"),
        (SupervisedTopK(0), _settings(), "top k must be in 1..3, got 0"),
        (SupervisedTopK(4), _settings(), "top k must be in 1..3, got 4"),
        (JointSupUnsup(probe_examples=0), _settings(), "probe_examples must be > 0"),
        (JointUnsup(), _settings(max_iter=-1), "unsup: max_iter must be >= 0"),
    ],
)
def test_phase_validation(phase: Any, settings: SgdSettings, match: str) -> None:
    with pytest.raises(ConfigError, match=match):
        SaeTrainer(_model(), MSECriterion()).validate_phase(phase, settings)


def test_more_specific_validation_errors() -> None:
    with pytest.raises(ConfigError, match="not supported for more than 4 hidden layers"):
        _five_layer_finetune()
    noisy = SaeTrainer(_model(corrupt_prob=0.2), MSECriterion())
    with pytest.raises(ConfigError, match="cannot profile gradients with noisy autoencoders"):
        noisy.validate_phase(JointSupUnsup(profile_gradients=True), _settings())


def test_run_validates_the_whole_schedule_first() -> None:
    model = _model()
    before = _snapshot(model)
    trainer = SaeTrainer(model, MSECriterion())
    schedule = [(LayerwiseUnsup(0), _settings()), (SupervisedTopK(9), _settings())]
    with pytest.raises(ConfigError, match="top k"):
        trainer.run(schedule, _dataset())
    assert _changed(model, before) == set()


def test_hooks_fire_in_order() -> None:
    trainer = SaeTrainer(_model(), MSECriterion())
    calls: List[str] = []
    trainer.add_hook("before_phase", lambda phase: calls.append("before_phase"))
    trainer.add_hook("before_iteration", lambda phase, epoch: calls.append(f"before_{epoch}"))
    trainer.add_hook("after_iteration", lambda phase, result: calls.append(f"after_{result.epoch}"))
    trainer.add_hook("after_phase", lambda phase, outcome: calls.append(outcome.phase))
    trainer.train_phase(FineTune(), _dataset(), _settings(max_iter=2))
    assert calls == ["before_phase", "before_0", "after_0", "before_1", "after_1", "finetune"]
    with pytest.raises(ValueError, match="unknown hook"):
        trainer.add_hook("on_batch", print)


def test_results_sink_gets_one_line_per_epoch() -> None:
    trainer = SaeTrainer(_model(), MSECriterion())
    sink = io.StringIO()
    outcome = trainer.train_phase(JointSupUnsup(), _dataset(), _settings(max_iter=3), sink)
    lines = sink.getvalue().splitlines()
    assert len(lines) == 3
    fields = lines[2].split()
    assert fields[0] == "2"
    assert len(fields) == 2 + 3
    assert float(fields[1]) == pytest.approx(outcome.final_loss, rel=1e-6)
    assert len(outcome.epochs[0].losses) == 3
    assert outcome.epochs[0].examples == 6


def test_learning_rate_decays_per_epoch() -> None:
    trainer = SaeTrainer(_model(), MSECriterion())
    outcome = trainer.train_phase(
        FineTune(), _dataset(), _settings(max_iter=3, lr_decay=1.0)
    )
    rates = [epoch.learning_rate for epoch in outcome.epochs]
    assert rates == pytest.approx([0.1, 0.05, 0.1 / 3])


def test_per_layer_finetuning_rates_do_not_decay(monkeypatch: pytest.MonkeyPatch) -> None:
    import sae_trainer.training.scheduler as scheduler

    seen: List[float] = []
    original = scheduler.apply_sgd_update

    def recording_update(groups: Any, learning_rate: float, decayed: Any = None) -> Set[int]:
        seen.append(learning_rate)
        return original(groups, learning_rate, decayed)

    monkeypatch.setattr(scheduler, "apply_sgd_update", recording_update)
    trainer = SaeTrainer(_model(), MSECriterion())
    outcome = trainer.train_phase(
        FineTune((0.2, 0.3, 0.4)), _dataset(), _settings(max_iter=2, lr_decay=1.0)
    )
    assert len(seen) == 2 * 6 * 3
    per_epoch = len(seen) // 2
    assert seen[:3] == [0.2, 0.3, 0.4]
    assert seen[:per_epoch] == seen[per_epoch:]
    assert [epoch.learning_rate for epoch in outcome.epochs] == pytest.approx([0.1, 0.05])


def test_phase_stops_when_the_loss_settles() -> None:
    trainer = SaeTrainer(_model(), MSECriterion())
    outcome = trainer.train_phase(FineTune(), _dataset(), _settings(max_iter=5, end_accuracy=1e9))
    assert outcome.stopped_early
    assert len(outcome.epochs) == 2


def test_skipped_phases_are_logged(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path, "run", clock=FakeClock(5))
    trainer = SaeTrainer(_model(), MSECriterion(), logger=logger)
    model_before = _snapshot(trainer.model)
    outcomes = trainer.run(
        [
            (LayerwiseUnsup(0), _settings(max_iter=0)),
            (SelectiveUnsup((False, False)), _settings()),
        ],
        _dataset(),
    )
    assert [outcome.skipped for outcome in outcomes] == [True, True]
    assert _changed(trainer.model, model_before) == set()
    events = _events(logger)
    assert [event["event"] for event in events] == ["phase_skipped", "phase_skipped"]
    assert events[0]["phase"] == "layerwise_0"
    assert events[1]["reason"] == "no layer selected"
    assert all(event["ts_ms"] == 5 for event in events)


def test_supervised_phases_need_targets() -> None:
    trainer = SaeTrainer(_model(), MSECriterion())
    unlabeled = _dataset(targets=False)
    with pytest.raises(ConfigError, match="finetune: dataset train has no class targets"):
        trainer.train_phase(FineTune(), unlabeled, _settings())
    with pytest.raises(ConfigError, match="has no class targets"):
        trainer.train_phase(JointUnsup(train_outputer=True), unlabeled, _settings())
    trainer.train_phase(LayerwiseUnsup(0), unlabeled, _settings())


def test_phase_events(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path, "run", clock=FakeClock())
    trainer = SaeTrainer(_model(), MSECriterion(), logger=logger)
    trainer.train_phase(SupervisedTopK(2), _dataset(), _settings(max_iter=2))
    events = _events(logger)
    assert [event["event"] for event in events] == [
        "phase_start",
        "epoch_end",
        "epoch_end",
        "phase_end",
    ]
    assert events[0]["phase"] == "topk"
    assert events[0]["k"] == 2
    assert events[0]["settings"]["max_iter"] == 2
    assert events[3]["epochs"] == 2
    assert events[3]["final_loss"] == pytest.approx(events[2]["loss"])


def test_criterion_weights_are_reestimated_after_the_first_epoch(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path, "run", clock=FakeClock())
    trainer = SaeTrainer(_model(), MSECriterion(), logger=logger)
    trainer.train_phase(
        JointSupUnsup(eval_weights=True, probe_examples=4), _dataset(), _settings(max_iter=3)
    )
    events = _events(logger)
    weight_events = [event for event in events if event["event"] == "criterion_weights"]
    assert len(weight_events) == 2
    assert weight_events[-1]["weights"][0] == 1.0
    assert len(weight_events[-1]["variances"]) == 3
    assert trainer.criterion_weights == weight_events[-1]["weights"]


def test_zero_variance_keeps_weights_and_warns(tmp_path: Path) -> None:
    logger = JsonlLogger(tmp_path, "run", clock=FakeClock())
    trainer = SaeTrainer(_model(), MSECriterion(), logger=logger)
    trainer.train_phase(
        JointSupUnsup(eval_weights=True, unsup_weight=0.5),
        _dataset(count=1),
        _settings(max_iter=2),
    )
    events = _events(logger)
    warnings = [
        event
        for event in events
        if event["event"] == "numerical_warning" and event["reason"] == "zero_variance"
    ]
    assert [event["layer"] for event in warnings] == [0, 1]
    assert trainer.criterion_weights == [1.0, 0.5, 0.5]


def test_profiling_does_not_change_training(tmp_path: Path) -> None:
    plain = _model()
    profiled = _model()
    SaeTrainer(plain, MSECriterion()).train_phase(JointSupUnsup(), _dataset(), _settings(max_iter=2))

    logger = JsonlLogger(tmp_path, "run", clock=FakeClock())
    trainer = SaeTrainer(profiled, MSECriterion(), logger=logger, profile_dir=str(tmp_path))
    trainer.train_phase(JointSupUnsup(profile_gradients=True), _dataset(), _settings(max_iter=2))

    for name, values in _snapshot(plain).items():
        assert np.allclose(values, _snapshot(profiled)[name])

    profiles = [event for event in _events(logger) if event["event"] == "gradient_profile"]
    assert [event["epoch"] for event in profiles] == [0, 1]
    layers = profiles[0]["layers"]
    assert [layer["layer"] for layer in layers] == [0, 1]
    assert layers[0]["up"]["count"] == 6
    assert set(layers[0]["angles"]) == {"up_sup", "up_unsup", "sup_unsup"}

    for kind in ("up", "sup", "unsup", "angles"):
        for i in range(2):
            lines = (tmp_path / "grad" / f"stats_grad_{kind}_{i}.txt").read_text().splitlines()
            assert [line.split()[0] for line in lines] == ["0", "1"]
