from __future__ import annotations

from typing import Any, List, Sequence

from sae_trainer.model.registry import LayerRegistry
from sae_trainer.nn.base import ParameterGroup, parameter_count
from sae_trainer.nn.graph import INPUT, Graph


class StackedAutoencoder:
    """
    Named computation graphs over the layers of one `LayerRegistry`.

    Graph views never copy a layer: the same encoder object is a node of its
    chained autoencoder graphs, of the supervised graph and of the joint graph,
    so training through any view updates the storage every other view reads.

    With input corruption enabled, the noisy autoencoder of layer 0 cannot be
    connected on the graph input directly; the registry's pass-through
    `input_adapter` is spliced in as the first node and the autoencoder is
    connected on it.
    """

    def __init__(self, registry: LayerRegistry, name: str = "sae") -> None:
        self.name = name
        self.registry = registry
        self.autoencoders: List[Graph] = [
            self._build_autoencoder(i) for i in range(registry.n_hidden_layers)
        ]
        self.chained: List[Graph] = [
            self._build_chained(i) for i in range(registry.n_hidden_layers)
        ]
        self.supervised = self._build_supervised()
        self.unsupervised = self._build_unsupervised()
        self.joint = self._build_joint()

    @property
    def n_hidden_layers(self) -> int:
        return self.registry.n_hidden_layers

    @property
    def is_noisy(self) -> bool:
        return self.registry.is_noisy

    @property
    def encoders(self) -> List[Any]:
        return self.registry.encoders

    @property
    def decoders(self) -> List[Any]:
        return self.registry.decoders

    @property
    def outputer(self) -> Any:
        return self.registry.outputer

    def graphs(self) -> List[Graph]:
        return [*self.autoencoders, *self.chained, self.supervised, self.unsupervised, self.joint]

    def parameter_groups(self) -> List[ParameterGroup]:
        return self.registry.all_groups()

    def _build_autoencoder(self, i: int) -> Graph:
        encoder = self.registry.encoder_for_training(i)
        graph = Graph(f"autoencoder_{i}", encoder.n_inputs)
        graph.add(encoder)
        graph.add(self.registry.decoders[i], [encoder], output=True)
        return graph.build()

    def _build_chained(self, i: int) -> Graph:
        graph = Graph(f"chained_{i}", self.registry.n_inputs)
        previous: Any = INPUT
        for j in range(i):
            previous = graph.add(self.registry.encoders[j], [previous])
        encoder = graph.add(self.registry.encoder_for_training(i), [previous])
        graph.add(self.registry.decoders[i], [encoder], output=True)
        return graph.build()

    def _add_encoders(self, graph: Graph, count: int, include_input_adapter: bool) -> None:
        previous: Any = INPUT
        for i in range(count):
            previous = graph.add(self.registry.encoders[i], [previous])
        if include_input_adapter:
            graph.add(self.registry.input_adapter)

    def _attach_reconstruction(self, graph: Graph, i: int) -> None:
        if not self.is_noisy:
            graph.add(self.registry.decoders[i], [self.registry.encoders[i]], output=True)
            return
        if i > 0:
            source: Any = self.registry.encoders[i - 1]
        else:
            source = self.registry.input_adapter
        graph.add(self.autoencoders[i], [source], output=True)

    def _build_supervised(self) -> Graph:
        graph = Graph("supervised", self.registry.n_inputs)
        self._add_encoders(graph, self.n_hidden_layers, include_input_adapter=False)
        graph.add(self.outputer, [self.encoders[-1]], output=True)
        return graph.build()

    def _build_unsupervised(self) -> Graph:
        # the top clean encoder has no consumer when the reconstructions go
        # through the noisy autoencoders, so it is left out
        n_encoders = self.n_hidden_layers - 1 if self.is_noisy else self.n_hidden_layers
        graph = Graph("unsupervised", self.registry.n_inputs)
        self._add_encoders(graph, n_encoders, include_input_adapter=self.is_noisy)
        for i in range(self.n_hidden_layers):
            self._attach_reconstruction(graph, i)
        return graph.build()

    def _build_joint(self) -> Graph:
        graph = Graph("joint", self.registry.n_inputs)
        self._add_encoders(graph, self.n_hidden_layers, include_input_adapter=self.is_noisy)
        graph.add(self.outputer, [self.encoders[-1]], output=True)
        for i in range(self.n_hidden_layers):
            self._attach_reconstruction(graph, i)
        return graph.build()

    def encoder_stack(self, index_up_to_included: int, include_input_adapter: bool) -> Graph:
        if index_up_to_included >= self.n_hidden_layers:
            raise ValueError(
                f"encoder index {index_up_to_included} out of range for "
                f"{self.n_hidden_layers} hidden layers"
            )
        graph = Graph(f"encoders_0_{index_up_to_included}", self.registry.n_inputs)
        self._add_encoders(graph, index_up_to_included + 1, include_input_adapter)
        return graph

    def selective_graph(self, layers: Sequence[bool]) -> Graph:
        if len(layers) != self.n_hidden_layers:
            raise ValueError(
                f"layer mask has {len(layers)} entries, model has {self.n_hidden_layers} layers"
            )
        selected = [i for i, flag in enumerate(layers) if flag]
        if not selected:
            raise ValueError("selective graph requires at least one selected layer")
        topmost = selected[-1]
        if self.is_noisy:
            graph = self.encoder_stack(topmost - 1, include_input_adapter=bool(layers[0]))
        else:
            graph = self.encoder_stack(topmost, include_input_adapter=False)
        graph.name = "selective_" + "".join("1" if flag else "0" for flag in layers)
        for i in selected:
            self._attach_reconstruction(graph, i)
        return graph.build()

    def parameter_count(self, graph: Graph) -> int:
        return parameter_count(graph.layers)

    def forward(self, inputs: Any) -> Any:
        return self.supervised.forward(inputs)
