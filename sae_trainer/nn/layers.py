from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

import numpy as np

from sae_trainer.nn.base import ParameterGroup


def _sigmoid(a: Any) -> Any:
    return 0.5 * (1.0 + np.tanh(0.5 * a))


def _logsoftmax(a: Any) -> Any:
    shifted = a - np.max(a)
    return shifted - math.log(float(np.sum(np.exp(shifted))))


@dataclass(frozen=True)
class Nonlinearity:
    name: str
    apply: Callable[[Any], Any]
    backward: Callable[[Any, Any], Any]


# backward(outputs, upstream) -> gradient wrt the pre-activation
NONLINEARITIES: Dict[str, Nonlinearity] = {
    "sigmoid": Nonlinearity("sigmoid", _sigmoid, lambda y, g: g * y * (1.0 - y)),
    "tanh": Nonlinearity("tanh", np.tanh, lambda y, g: g * (1.0 - y * y)),
    "linear": Nonlinearity("linear", lambda a: a, lambda y, g: g),
    "logsoftmax": Nonlinearity(
        "logsoftmax", _logsoftmax, lambda y, g: g - np.exp(y) * float(np.sum(g))
    ),
}


def get_nonlinearity(name: str) -> Nonlinearity:
    try:
        return NONLINEARITIES[name.lower()]
    except KeyError:
        known = ", ".join(sorted(NONLINEARITIES))
        raise ValueError(f"unknown nonlinearity {name!r} (expected one of: {known})") from None


@dataclass
class Corruption:
    prob: float
    value: float
    rng: Any

    def apply(self, inputs: Any) -> tuple[Any, Any]:
        keep = self.rng.random(inputs.shape[0]) >= self.prob
        return np.where(keep, inputs, self.value), keep


class Coder:
    """
    Affine transform followed by a nonlinearity.

    Three storage modes share this class:
      - owning: creates its own `weights` (n_outputs x n_inputs) and `bias` group;
      - shared: `shares=other` reuses other's group as-is (noisy encoder);
      - tied: `tied_to=encoder` borrows the encoder's group and uses the
        transposed weights; the decoder then owns only a `bias` group.
    """

    def __init__(
        self,
        name: str,
        n_inputs: int,
        n_outputs: int,
        nonlinearity: str,
        *,
        shares: "Coder | None" = None,
        tied_to: "Coder | None" = None,
        corruption: Corruption | None = None,
    ) -> None:
        if n_inputs <= 0 or n_outputs <= 0:
            raise ValueError(f"{name}: n_inputs and n_outputs must be > 0")
        if shares is not None and tied_to is not None:
            raise ValueError(f"{name}: a coder cannot both share and tie its weights")
        self.name = name
        self.n_inputs = int(n_inputs)
        self.n_outputs = int(n_outputs)
        self.nonlinearity = get_nonlinearity(nonlinearity)
        self.corruption = corruption
        self.partial_backprop = False
        self.is_tied = tied_to is not None
        self.outputs = np.zeros(self.n_outputs)
        self.beta = np.zeros(self.n_inputs)
        self._keep: Any = None

        self.borrowed: ParameterGroup | None = None
        if shares is not None:
            if (shares.n_inputs, shares.n_outputs) != (self.n_inputs, self.n_outputs):
                raise ValueError(f"{name}: shared coder dimensions differ")
            self.params = shares.params
            self.borrowed = shares.borrowed
            self.is_tied = shares.is_tied
        elif tied_to is not None:
            if (tied_to.n_inputs, tied_to.n_outputs) != (self.n_outputs, self.n_inputs):
                raise ValueError(f"{name}: tied coder must mirror its encoder dimensions")
            self.borrowed = tied_to.params
            self.params = ParameterGroup(name, [("bias", (self.n_outputs,))])
        else:
            self.params = ParameterGroup(
                name,
                [("weights", (self.n_outputs, self.n_inputs)), ("bias", (self.n_outputs,))],
            )

    @property
    def weights(self) -> Any:
        if self.borrowed is not None:
            return self.borrowed.values["weights"].T
        return self.params.values["weights"]

    @property
    def bias(self) -> Any:
        return self.params.values["bias"]

    def reset(self, rng: Any) -> None:
        bound = 1.0 / math.sqrt(self.n_inputs)
        if self.borrowed is None and "weights" in self.params.values:
            self.params.values["weights"][...] = rng.uniform(
                -bound, bound, size=(self.n_outputs, self.n_inputs)
            )
        self.params.values["bias"][...] = rng.uniform(-bound, bound, size=self.n_outputs)

    def parameter_groups(self) -> List[ParameterGroup]:
        if self.borrowed is not None:
            return [self.borrowed, self.params]
        return [self.params]

    def forward(self, inputs: Any) -> Any:
        x = np.asarray(inputs, dtype=np.float64).reshape(-1)
        if x.shape[0] != self.n_inputs:
            raise ValueError(f"{self.name}: input length {x.shape[0]} != {self.n_inputs}")
        if self.corruption is not None and self.corruption.prob > 0.0:
            x, self._keep = self.corruption.apply(x)
        else:
            self._keep = None
        self.outputs = self.nonlinearity.apply(self.weights @ x + self.bias)
        return self.outputs

    def backward(self, inputs: Any, upstream: Any) -> Any:
        delta = self.nonlinearity.backward(self.outputs, np.asarray(upstream, dtype=np.float64))
        # `inputs` are the ones given to the matching forward; the corruption
        # mask drawn there is replayed
        x = np.asarray(inputs, dtype=np.float64).reshape(-1)
        if self._keep is not None:
            x = np.where(self._keep, x, self.corruption.value)
        if self.borrowed is not None:
            self.borrowed.grads["weights"] += np.outer(x, delta)
        else:
            self.params.grads["weights"] += np.outer(delta, x)
        self.params.grads["bias"] += delta

        if self.partial_backprop:
            self.beta = np.zeros(self.n_inputs)
            return self.beta
        beta = self.weights.T @ delta
        if self._keep is not None:
            beta = np.where(self._keep, beta, 0.0)
        self.beta = beta
        return self.beta

    def __repr__(self) -> str:
        return f"Coder({self.name!r}, {self.n_inputs}->{self.n_outputs}, {self.nonlinearity.name})"


class Identity:
    def __init__(self, n_units: int, name: str = "input_adapter") -> None:
        if n_units <= 0:
            raise ValueError("identity layer requires n_units > 0")
        self.name = name
        self.n_inputs = int(n_units)
        self.n_outputs = int(n_units)
        self.partial_backprop = False
        self.outputs = np.zeros(self.n_outputs)
        self.beta = np.zeros(self.n_inputs)

    def parameter_groups(self) -> List[ParameterGroup]:
        return []

    def forward(self, inputs: Any) -> Any:
        self.outputs = np.asarray(inputs, dtype=np.float64).reshape(-1)
        return self.outputs

    def backward(self, inputs: Any, upstream: Any) -> Any:
        if self.partial_backprop:
            self.beta = np.zeros(self.n_inputs)
        else:
            self.beta = np.asarray(upstream, dtype=np.float64).copy()
        return self.beta
