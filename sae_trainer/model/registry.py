from __future__ import annotations

from typing import Any, List, Sequence

import numpy as np

from sae_trainer.nn.base import ParameterGroup, unique_groups
from sae_trainer.nn.layers import Coder, Corruption, Identity


class LayerRegistry:
    """
    Owns every elementary layer of a stacked autoencoder.

    Encoders, decoders and the outputer each own their parameter group, except
    a tied decoder, which borrows its encoder's weights and owns only a bias.
    Noisy encoders are separate layer objects (they keep their own activations)
    that share the clean encoder's group.
    """

    def __init__(
        self,
        n_inputs: int,
        hidden_units: Sequence[int],
        n_outputs: int,
        *,
        nonlinearity: str = "sigmoid",
        tied_weights: bool = False,
        corrupt_prob: float = 0.0,
        corrupt_value: float = 0.0,
        seed: int | None = None,
    ) -> None:
        if n_inputs <= 0 or n_outputs <= 0:
            raise ValueError("n_inputs and n_outputs must be > 0")
        if not hidden_units:
            raise ValueError("at least one hidden layer is required")
        if any(int(units) <= 0 for units in hidden_units):
            raise ValueError("hidden layer sizes must be > 0")
        if not 0.0 <= corrupt_prob < 1.0:
            raise ValueError("corrupt_prob must be in [0, 1)")
        self.n_inputs = int(n_inputs)
        self.hidden_units = [int(units) for units in hidden_units]
        self.n_outputs = int(n_outputs)
        self.nonlinearity = nonlinearity
        self.tied_weights = bool(tied_weights)
        self.is_noisy = corrupt_prob > 0.0
        self.rng = np.random.default_rng(seed)
        self._corruption = Corruption(prob=float(corrupt_prob), value=float(corrupt_value), rng=self.rng)

        self.units_per_layer = [self.n_inputs, *self.hidden_units, self.n_outputs]
        self.input_adapter = Identity(self.n_inputs)
        self.encoders: List[Coder] = []
        self.noisy_encoders: List[Coder] = []
        self.decoders: List[Coder] = []
        for i in range(self.n_hidden_layers):
            encoder = Coder(
                f"encoder_{i}",
                self.units_per_layer[i],
                self.units_per_layer[i + 1],
                nonlinearity,
            )
            self.encoders.append(encoder)
            if self.is_noisy:
                self.noisy_encoders.append(
                    Coder(
                        f"noisy_encoder_{i}",
                        encoder.n_inputs,
                        encoder.n_outputs,
                        nonlinearity,
                        shares=encoder,
                        corruption=self._corruption,
                    )
                )
            self.decoders.append(
                Coder(
                    f"decoder_{i}",
                    encoder.n_outputs,
                    encoder.n_inputs,
                    nonlinearity,
                    tied_to=encoder if self.tied_weights else None,
                )
            )
        self.outputer = Coder(
            "outputer", self.hidden_units[-1], self.n_outputs, "logsoftmax"
        )
        self.reset()

    @property
    def n_hidden_layers(self) -> int:
        return len(self.hidden_units)

    @property
    def corrupt_prob(self) -> float:
        return self._corruption.prob

    @property
    def corrupt_value(self) -> float:
        return self._corruption.value

    def reset(self) -> None:
        for coder in self.owning_coders():
            coder.reset(self.rng)

    def owning_coders(self) -> List[Coder]:
        return [*self.encoders, *self.decoders, self.outputer]

    def encoder_for_training(self, index: int) -> Coder:
        if self.is_noisy:
            return self.noisy_encoders[index]
        return self.encoders[index]

    def groups_in_save_order(self) -> List[ParameterGroup]:
        coders: List[Any] = [*self.encoders, *self.decoders, self.outputer]
        return [coder.params for coder in coders]

    def all_groups(self) -> List[ParameterGroup]:
        return unique_groups(self.owning_coders())

    def set_decay(self, l1_decay: float = 0.0, l2_decay: float = 0.0, bias_decay: float = 0.0) -> None:
        weight_owners: List[Coder] = [*self.encoders, self.outputer]
        if not self.tied_weights:
            weight_owners.extend(self.decoders)
        for coder in weight_owners:
            coder.params.l1_decay = float(l1_decay)
            coder.params.l2_decay = float(l2_decay)
        for encoder in self.encoders:
            encoder.params.bias_decay = float(bias_decay)

    def set_corruption(self, prob: float, value: float) -> None:
        if not self.is_noisy:
            return
        if not 0.0 < prob < 1.0:
            raise ValueError("corrupt_prob must be in (0, 1) for a noisy model")
        self._corruption.prob = float(prob)
        self._corruption.value = float(value)
