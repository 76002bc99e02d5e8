from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Sequence, Set, TextIO, Tuple

import numpy as np

from sae_trainer.config.trainspec import MAX_FINETUNE_LAYERS, ConfigError
from sae_trainer.data.dataset import ArrayDataSet, Example
from sae_trainer.model.assembler import StackedAutoencoder
from sae_trainer.nn.base import Layer, ParameterGroup, zero_grads
from sae_trainer.nn.criteria import Criterion
from sae_trainer.nn.graph import Graph
from sae_trainer.runtime.logging import JsonlLogger
from sae_trainer.training.aggregate import (
    LossAggregate,
    joint_aggregate,
    layer_aggregate,
    reconstruction_objectives,
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
from sae_trainer.training.sgd import apply_sgd_update
from sae_trainer.training.weighting import GradientWarning, estimate_criterion_weights

HOOK_NAMES = ("before_phase", "after_phase", "before_iteration", "after_iteration")

Schedule = Sequence[Tuple[TrainingPhase, SgdSettings]]
SinkFactory = Callable[[TrainingPhase], "TextIO | None"]


@dataclass(frozen=True)
class EpochResult:
    phase: str
    epoch: int
    loss: float
    losses: List[float]
    learning_rate: float
    examples: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "epoch": self.epoch,
            "loss": self.loss,
            "losses": list(self.losses),
            "learning_rate": self.learning_rate,
            "examples": self.examples,
        }


@dataclass
class PhaseResult:
    phase: str
    epochs: List[EpochResult] = field(default_factory=list)
    skipped: bool = False
    stopped_early: bool = False

    @property
    def final_loss(self) -> float | None:
        if not self.epochs:
            return None
        return self.epochs[-1].loss


@contextmanager
def partial_backprop(layers: Iterable[Layer]) -> Iterator[None]:
    """Flag `layers` as partial-backprop for the duration of the block."""
    layers = list(layers)
    previous = [layer.partial_backprop for layer in layers]
    for layer in layers:
        layer.partial_backprop = True
        layer.beta = np.zeros(layer.n_inputs)
    try:
        yield
    finally:
        for layer, flag in zip(layers, previous):
            layer.partial_backprop = flag


@dataclass
class _PhasePlan:
    graph: Graph
    aggregate: LossAggregate
    backward: Callable[[Example, Any], None]
    update: Callable[[float, int], None]
    needs_targets: bool


class SaeTrainer:
    """
    Runs training phases over one `StackedAutoencoder`.

    Every phase is a per-example SGD loop: forward the active graph, evaluate
    the active loss aggregate, backpropagate its gradient, update the active
    parameter groups. Phases never overlap; partial-backprop flags set for a
    phase are restored when it ends, also on error.
    """

    def __init__(
        self,
        model: StackedAutoencoder,
        recons_criterion: Criterion,
        *,
        logger: JsonlLogger | None = None,
        seed: int | None = None,
        profile_dir: str | None = None,
    ) -> None:
        self.model = model
        self.recons_criterion = recons_criterion
        self.logger = logger
        self.rng = np.random.default_rng(seed)
        self.profile_dir = profile_dir
        self.criterion_weights = [1.0] * (model.n_hidden_layers + 1)
        self._hooks: Dict[str, List[Callable[..., None]]] = {name: [] for name in HOOK_NAMES}

    def add_hook(self, name: str, hook: Callable[..., None]) -> None:
        if name not in self._hooks:
            raise ValueError(f"unknown hook {name!r} (expected one of: {', '.join(HOOK_NAMES)})")
        self._hooks[name].append(hook)

    def _fire(self, name: str, *args: Any) -> None:
        for hook in self._hooks[name]:
            hook(*args)

    def _log(self, event: str, fields: Dict[str, Any]) -> None:
        if self.logger is not None:
            self.logger.log_event(event, fields)

    def _on_gradient_warning(self, warning: GradientWarning) -> None:
        self._log("numerical_warning", {"reason": "large_gradient", **warning.as_dict()})

    # validation

    def validate_phase(self, phase: TrainingPhase, settings: SgdSettings) -> None:
        n = self.model.n_hidden_layers
        if settings.max_iter < 0:
            raise ConfigError(f"{phase_name(phase)}: max_iter must be >= 0")
        if settings.learning_rate < 0 or settings.lr_decay < 0:
            raise ConfigError(f"{phase_name(phase)}: learning rate and decay must be >= 0")
        if isinstance(phase, LayerwiseUnsup):
            if not 0 <= phase.layer < n:
                raise ConfigError(f"layerwise layer {phase.layer} out of range 0..{n - 1}")
        elif isinstance(phase, SelectiveUnsup):
            if len(phase.layers) != n:
                raise ConfigError(
                    f"selective layers has {len(phase.layers)} entries, model has {n} hidden layers"
                )
        elif isinstance(phase, FineTune):
            if phase.is_layer_specific:
                if n + 1 > MAX_FINETUNE_LAYERS:
                    raise ConfigError(
                        f"layer specific finetuning not supported for more than "
                        f"{MAX_FINETUNE_LAYERS - 1} hidden layers"
                    )
                if len(phase.learning_rates) != n + 1:
                    raise ConfigError(
                        f"finetuning needs {n + 1} learning rates, got {len(phase.learning_rates)}"
                    )
        elif isinstance(phase, SupervisedTopK):
            if not 1 <= phase.k <= n + 1:
                raise ConfigError(f"top k must be in 1..{n + 1}, got {phase.k}")
        elif isinstance(phase, JointSupUnsup):
            if phase.profile_gradients and self.model.is_noisy:
                raise ConfigError("cannot profile gradients with noisy autoencoders")
            if phase.probe_examples <= 0:
                raise ConfigError("probe_examples must be > 0")
        elif not isinstance(phase, JointUnsup):
            raise ConfigError(f"unknown training phase: {phase!r}")

    def validate(self, schedule: Schedule) -> None:
        for phase, settings in schedule:
            self.validate_phase(phase, settings)

    # phase plans

    def _update_groups(self, groups: Sequence[ParameterGroup]) -> Callable[[float, int], None]:
        def update(learning_rate: float, epoch: int) -> None:
            apply_sgd_update(groups, learning_rate)

        return update

    def _graph_backward(self, graph: Graph) -> Callable[[Example, Any], None]:
        def backward(example: Example, beta: Any) -> None:
            graph.backward(example.inputs, beta)

        return backward

    def _encoder_input(self, example: Example, layer: int) -> Any:
        if layer == 0:
            return example.inputs
        return self.model.encoders[layer - 1].outputs

    def _layerwise_plan(self, phase: LayerwiseUnsup) -> _PhasePlan:
        i = phase.layer
        autoencoder = self.model.autoencoders[i]

        def backward(example: Example, beta: Any) -> None:
            autoencoder.backward(self._encoder_input(example, i), beta)

        return _PhasePlan(
            graph=self.model.chained[i],
            aggregate=layer_aggregate(self.model, self.recons_criterion, i),
            backward=backward,
            update=self._update_groups(autoencoder.parameter_groups()),
            needs_targets=False,
        )

    def _selective_plan(self, phase: SelectiveUnsup, stack: ExitStack) -> _PhasePlan:
        model = self.model
        graph = model.selective_graph(phase.layers)
        if phase.partial_backprop:
            flagged: List[Any] = list(model.encoders)
            if model.is_noisy:
                flagged.extend(model.autoencoders[i] for i in phase.selected)
            stack.enter_context(partial_backprop(flagged))
        aggregate = LossAggregate(
            graph, reconstruction_objectives(model, self.recons_criterion, phase.selected)
        )
        return _PhasePlan(
            graph=graph,
            aggregate=aggregate,
            backward=self._graph_backward(graph),
            update=self._update_groups(graph.parameter_groups()),
            needs_targets=False,
        )

    def _unsup_plan(self, phase: JointUnsup, stack: ExitStack) -> _PhasePlan:
        model = self.model
        if phase.train_outputer:
            stack.enter_context(partial_backprop([model.outputer]))
            graph = model.joint
            aggregate = joint_aggregate(model, self.recons_criterion, 1.0)
        else:
            graph = model.unsupervised
            aggregate = unsupervised_aggregate(model, self.recons_criterion)
        return _PhasePlan(
            graph=graph,
            aggregate=aggregate,
            backward=self._graph_backward(graph),
            update=self._update_groups(graph.parameter_groups()),
            needs_targets=phase.train_outputer,
        )

    def _supunsup_plan(self, phase: JointSupUnsup, profiler: GradientProfiler | None) -> _PhasePlan:
        model = self.model
        graph = model.joint
        aggregate = joint_aggregate(model, self.recons_criterion, phase.unsup_weight)
        self.criterion_weights = aggregate.weights

        if profiler is not None:

            def backward(example: Example, beta: Any) -> None:
                profiler.profile_example(example.inputs, beta)

        else:
            backward = self._graph_backward(graph)

        return _PhasePlan(
            graph=graph,
            aggregate=aggregate,
            backward=backward,
            update=self._update_groups(graph.parameter_groups()),
            needs_targets=True,
        )

    def _finetune_plan(self, phase: FineTune) -> _PhasePlan:
        model = self.model
        graph = model.supervised
        if not phase.is_layer_specific:
            update = self._update_groups(graph.parameter_groups())
        else:
            rates = list(phase.learning_rates)
            coders = [*model.encoders, model.outputer]

            # per-layer rates are fixed for the whole phase
            def update(learning_rate: float, epoch: int) -> None:
                decayed: Set[int] = set()
                for coder, rate in zip(coders, rates):
                    if rate <= 0.0:
                        continue
                    apply_sgd_update(coder.parameter_groups(), rate, decayed)

        return _PhasePlan(
            graph=graph,
            aggregate=supervised_aggregate(model),
            backward=self._graph_backward(graph),
            update=update,
            needs_targets=True,
        )

    def _topk_plan(self, phase: SupervisedTopK) -> _PhasePlan:
        model = self.model
        n = model.n_hidden_layers
        trained = list(range(n - 1, n - phase.k, -1))

        def backward(example: Example, beta: Any) -> None:
            model.outputer.backward(model.encoders[-1].outputs, beta)
            upstream = model.outputer.beta
            for i in trained:
                upstream = model.encoders[i].backward(self._encoder_input(example, i), upstream)

        groups: List[ParameterGroup] = list(model.outputer.parameter_groups())
        for i in trained:
            groups.extend(model.encoders[i].parameter_groups())
        return _PhasePlan(
            graph=model.supervised,
            aggregate=supervised_aggregate(model),
            backward=backward,
            update=self._update_groups(groups),
            needs_targets=True,
        )

    # training

    def _refresh_criterion_weights(
        self, phase: JointSupUnsup, aggregate: LossAggregate, dataset: ArrayDataSet
    ) -> None:
        model = self.model
        layers = [
            layer_aggregate(model, self.recons_criterion, i) for i in range(model.n_hidden_layers)
        ]
        estimate = estimate_criterion_weights(
            supervised_aggregate(model),
            layers,
            dataset,
            aggregate.weights,
            n_probe=phase.probe_examples,
            on_warning=self._on_gradient_warning,
        )
        for i, variance in enumerate(estimate.variances[1:]):
            if variance <= 0.0:
                self._log(
                    "numerical_warning",
                    {"reason": "zero_variance", "layer": i, "kept_weight": estimate.weights[i + 1]},
                )
        aggregate.set_weights(estimate.weights)
        self.criterion_weights = list(estimate.weights)
        self._log("criterion_weights", estimate.as_dict())

    def train_phase(
        self,
        phase: TrainingPhase,
        dataset: ArrayDataSet,
        settings: SgdSettings,
        results: TextIO | None = None,
    ) -> PhaseResult:
        self.validate_phase(phase, settings)
        name = phase_name(phase)
        outcome = PhaseResult(phase=name)
        if settings.max_iter == 0:
            outcome.skipped = True
            self._log("phase_skipped", {"phase": name, "reason": "max_iter is 0"})
            return outcome
        if isinstance(phase, SelectiveUnsup) and not phase.selected:
            outcome.skipped = True
            self._log("phase_skipped", {"phase": name, "reason": "no layer selected"})
            return outcome
        if dataset.example_count == 0:
            raise ValueError(f"{dataset.name}: cannot train on an empty dataset")

        with ExitStack() as stack:
            profiler: GradientProfiler | None = None
            if isinstance(phase, LayerwiseUnsup):
                plan = self._layerwise_plan(phase)
            elif isinstance(phase, SelectiveUnsup):
                plan = self._selective_plan(phase, stack)
            elif isinstance(phase, JointUnsup):
                plan = self._unsup_plan(phase, stack)
            elif isinstance(phase, JointSupUnsup):
                if phase.profile_gradients:
                    profiler = GradientProfiler(self.model, self.profile_dir)
                    stack.callback(profiler.close)
                plan = self._supunsup_plan(phase, profiler)
            elif isinstance(phase, FineTune):
                plan = self._finetune_plan(phase)
            else:
                plan = self._topk_plan(phase)

            if plan.needs_targets and not dataset.has_targets:
                raise ConfigError(f"{name}: dataset {dataset.name} has no class targets")

            self._fire("before_phase", phase)
            self._log(
                "phase_start",
                {"phase": name, "settings": settings.as_dict(), **phase.describe()},
            )
            self._run_epochs(phase, plan, dataset, settings, results, profiler, outcome)

        self._log(
            "phase_end",
            {
                "phase": name,
                "epochs": len(outcome.epochs),
                "final_loss": outcome.final_loss,
                "stopped_early": outcome.stopped_early,
            },
        )
        self._fire("after_phase", phase, outcome)
        return outcome

    def _run_epochs(
        self,
        phase: TrainingPhase,
        plan: _PhasePlan,
        dataset: ArrayDataSet,
        settings: SgdSettings,
        results: TextIO | None,
        profiler: GradientProfiler | None,
        outcome: PhaseResult,
    ) -> None:
        groups = self.model.parameter_groups()
        n_objectives = len(plan.aggregate.objectives)
        previous_loss: float | None = None
        for epoch in range(settings.max_iter):
            self._fire("before_iteration", phase, epoch)
            if isinstance(phase, JointSupUnsup) and phase.eval_weights and epoch > 0:
                self._refresh_criterion_weights(phase, plan.aggregate, dataset)

            learning_rate = settings.rate_at(epoch)
            total = 0.0
            losses = np.zeros(n_objectives)
            order = dataset.order(self.rng if settings.shuffle else None)
            for index in order:
                example = dataset.select_example(index)
                zero_grads(groups)
                outputs = plan.graph.forward(example.inputs)
                result = plan.aggregate.evaluate(outputs, example)
                plan.backward(example, result.beta)
                plan.update(learning_rate, epoch)
                total += result.loss
                losses += result.losses

            count = len(order)
            epoch_result = EpochResult(
                phase=outcome.phase,
                epoch=epoch,
                loss=total / count,
                losses=[float(value) for value in losses / count],
                learning_rate=learning_rate,
                examples=count,
            )
            outcome.epochs.append(epoch_result)
            if results is not None:
                fields = [str(epoch), f"{epoch_result.loss:.8g}"]
                fields.extend(f"{value:.8g}" for value in epoch_result.losses)
                results.write(" ".join(fields) + "\n")
                results.flush()
            self._log("epoch_end", epoch_result.as_dict())
            if profiler is not None:
                self._log(
                    "gradient_profile",
                    {"phase": outcome.phase, "epoch": epoch, "layers": profiler.end_epoch(epoch)},
                )
            self._fire("after_iteration", phase, epoch_result)

            if previous_loss is not None and abs(previous_loss - epoch_result.loss) < settings.end_accuracy:
                outcome.stopped_early = True
                break
            previous_loss = epoch_result.loss

    def run(
        self,
        schedule: Schedule,
        dataset: ArrayDataSet,
        results: SinkFactory | None = None,
    ) -> List[PhaseResult]:
        """Validate the whole schedule, then run its phases in order."""
        self.validate(schedule)
        outcomes: List[PhaseResult] = []
        for phase, settings in schedule:
            sink = results(phase) if results is not None and settings.max_iter > 0 else None
            outcomes.append(self.train_phase(phase, dataset, settings, sink))
        return outcomes
