from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from sae_trainer.nn.base import GraphError, Layer, ParameterGroup, unique_groups


class _GraphInput:
    def __repr__(self) -> str:
        return "INPUT"


INPUT = _GraphInput()


@dataclass
class _Node:
    layer: Layer
    sources: List[Any]
    is_output: bool
    consumers: List["_Node"] = field(default_factory=list)


class Graph:
    """
    Directed acyclic composition of layers.

    Nodes may only consume the graph input or nodes added before them, so the
    insertion order is a topological order. A node's input is the
    concatenation of its sources' outputs; the graph output is the
    concatenation of the output nodes in insertion order. A built graph also
    satisfies the layer contract, which lets an autoencoder graph be a node of
    a larger graph.
    """

    def __init__(self, name: str, n_inputs: int) -> None:
        if n_inputs <= 0:
            raise GraphError(f"{name}: n_inputs must be > 0")
        self.name = name
        self.n_inputs = int(n_inputs)
        self.n_outputs = 0
        self.partial_backprop = False
        self.outputs = np.zeros(0)
        self.beta = np.zeros(self.n_inputs)
        self._nodes: List[_Node] = []
        self._by_layer: Dict[int, _Node] = {}
        self._segments: List[Tuple[Layer, slice]] = []
        self._built = False

    @property
    def is_built(self) -> bool:
        return self._built

    @property
    def layers(self) -> List[Layer]:
        return [node.layer for node in self._nodes]

    @property
    def output_layers(self) -> List[Layer]:
        return [node.layer for node in self._nodes if node.is_output]

    @property
    def output_segments(self) -> List[Tuple[Layer, slice]]:
        self._require_built()
        return list(self._segments)

    def __contains__(self, layer: object) -> bool:
        return id(layer) in self._by_layer

    def __len__(self) -> int:
        return len(self._nodes)

    def add(self, layer: Layer, inputs: Sequence[Any] = (INPUT,), *, output: bool = False) -> Layer:
        if self._built:
            raise GraphError(f"{self.name}: graph is built and cannot be modified")
        if id(layer) in self._by_layer:
            raise GraphError(f"{self.name}: layer {layer.name} already in graph")
        if not inputs:
            raise GraphError(f"{self.name}: layer {layer.name} has no incoming edge")
        sources: List[Any] = []
        for source in inputs:
            if source is INPUT:
                sources.append(INPUT)
                continue
            node = self._by_layer.get(id(source))
            if node is None:
                raise GraphError(
                    f"{self.name}: {layer.name} connects on {source.name}, which is not in the graph"
                )
            sources.append(node)
        node = _Node(layer=layer, sources=sources, is_output=output)
        for source in sources:
            if source is not INPUT:
                source.consumers.append(node)
        self._nodes.append(node)
        self._by_layer[id(layer)] = node
        return layer

    def mark_output(self, layer: Layer) -> None:
        if self._built:
            raise GraphError(f"{self.name}: graph is built and cannot be modified")
        node = self._by_layer.get(id(layer))
        if node is None:
            raise GraphError(f"{self.name}: {layer.name} is not in the graph")
        node.is_output = True

    def _source_size(self, source: Any) -> int:
        if source is INPUT:
            return self.n_inputs
        return int(source.layer.n_outputs)

    def build(self) -> "Graph":
        if self._built:
            return self
        if not self._nodes:
            raise GraphError(f"{self.name}: cannot build an empty graph")
        offset = 0
        segments: List[Tuple[Layer, slice]] = []
        for node in self._nodes:
            expected = sum(self._source_size(source) for source in node.sources)
            if expected != node.layer.n_inputs:
                raise GraphError(
                    f"{self.name}: {node.layer.name} expects {node.layer.n_inputs} inputs, "
                    f"its sources provide {expected}"
                )
            if not node.is_output and not node.consumers:
                raise GraphError(
                    f"{self.name}: {node.layer.name} is neither an output nor consumed "
                    "by another layer"
                )
            if node.is_output:
                size = int(node.layer.n_outputs)
                segments.append((node.layer, slice(offset, offset + size)))
                offset += size
        if not segments:
            raise GraphError(f"{self.name}: graph has no output layer")
        self._segments = segments
        self.n_outputs = offset
        self.outputs = np.zeros(self.n_outputs)
        self._built = True
        return self

    def _require_built(self) -> None:
        if not self._built:
            raise GraphError(f"{self.name}: graph must be built before use")

    def parameter_groups(self) -> List[ParameterGroup]:
        return unique_groups(self.layers)

    def _gather(self, node: _Node, inputs: Any) -> Any:
        parts = [inputs if source is INPUT else source.layer.outputs for source in node.sources]
        if len(parts) == 1:
            return parts[0]
        return np.concatenate(parts)

    def forward(self, inputs: Any) -> Any:
        self._require_built()
        x = np.asarray(inputs, dtype=np.float64).reshape(-1)
        if x.shape[0] != self.n_inputs:
            raise ValueError(f"{self.name}: input length {x.shape[0]} != {self.n_inputs}")
        for node in self._nodes:
            node.layer.forward(self._gather(node, x))
        self.outputs = np.concatenate([layer.outputs for layer, _ in self._segments])
        return self.outputs

    def backward(self, inputs: Any, upstream: Any) -> Any:
        self._require_built()
        x = np.asarray(inputs, dtype=np.float64).reshape(-1)
        upstream = np.asarray(upstream, dtype=np.float64).reshape(-1)
        if upstream.shape[0] != self.n_outputs:
            raise ValueError(
                f"{self.name}: upstream gradient length {upstream.shape[0]} != {self.n_outputs}"
            )
        grads: Dict[int, Any] = {
            id(node): np.zeros(node.layer.n_outputs) for node in self._nodes
        }
        for layer, segment in self._segments:
            grads[id(self._by_layer[id(layer)])] += upstream[segment]

        beta_in = np.zeros(self.n_inputs)
        for node in reversed(self._nodes):
            # sources are read from the live layer outputs, which may have been
            # produced by the forward of another graph sharing these layers
            node_beta = node.layer.backward(self._gather(node, x), grads[id(node)])
            offset = 0
            for source in node.sources:
                size = self._source_size(source)
                part = node_beta[offset : offset + size]
                if source is INPUT:
                    beta_in += part
                else:
                    grads[id(source)] += part
                offset += size

        if self.partial_backprop:
            self.beta = np.zeros(self.n_inputs)
        else:
            self.beta = beta_in
        return self.beta

    def __repr__(self) -> str:
        names = ", ".join(layer.name for layer in self.layers)
        return f"Graph({self.name!r}, [{names}])"
