"""
Single-timestep computation graphs for the encoder and decoder.

A step graph is built once per model and invoked at every timestep, so its
parameters are shared across time. It maps a flat list of inputs to a flat
list of outputs; optional inputs shift positions depending on the
configuration, so each graph records `input_index` / `output_index` and the
sequencers look slots up by name.

Encoder step:
    (s^1_{t-1}, ..., s^N_{t-1}, [input_mask], recurrent_mask, x_t)
        => (s^1_t, ..., s^N_t)

Decoder step:
    (s^1_{t-1}, ..., s^N_{t-1}, x_t, H, [if_{t-1}], [C_{t-1}])
        => (s^1_t, ..., s^N_t, [C_t], a_t)

where s are cell/hidden states (N = num_effective_layers), H is the source
context, if is the input-feeding vector, C the coverage vector and a the
attended output.
"""

import logging
from typing import Dict, List, Tuple

import torch
import torch.nn as nn

from nmt_core.models.attention import build_attention

logger = logging.getLogger(__name__)


class EncoderStep(nn.Module):
    """One encoder timestep: embed the source token and advance the stacked cell."""

    def __init__(self, input_network: nn.Module, rnn: nn.Module):
        """
        Args:
            input_network: Maps token indices to step inputs (e.g. nn.Embedding)
            rnn: Stacked cell exposing num_effective_layers and layers
        """
        super().__init__()

        self.input_network = input_network
        self.rnn = rnn
        self.num_effective_layers = rnn.num_effective_layers

        index = self.num_effective_layers
        self.input_index: Dict[str, int] = {}
        if rnn.layers > 1:
            self.input_index["input_mask"] = index
            index += 1
        self.input_index["recurrent_mask"] = index
        self.input_index["x"] = index + 1

        self.output_index: Dict[str, int] = {"states": 0}

    @property
    def num_inputs(self) -> int:
        return self.input_index["x"] + 1

    @property
    def num_outputs(self) -> int:
        return self.num_effective_layers

    @property
    def differentiable_inputs(self) -> Tuple[int, ...]:
        """Positions whose gradients the backward pass reads: states and the source input."""
        return tuple(range(self.num_effective_layers)) + (self.input_index["x"],)

    def forward(self, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        states = inputs[: self.num_effective_layers]
        input_mask = None
        if "input_mask" in self.input_index:
            input_mask = inputs[self.input_index["input_mask"]]
        recurrent_mask = inputs[self.input_index["recurrent_mask"]]

        x = self.input_network(inputs[self.input_index["x"]])
        return self.rnn(states, x, input_mask=input_mask, recurrent_mask=recurrent_mask)


class DecoderStep(nn.Module):
    """
    One decoder timestep with attention, optional input feeding and coverage.

    The attended output a_t is the last output; with coverage enabled the
    next coverage vector sits right before it.
    """

    def __init__(
        self,
        input_network: nn.Module,
        rnn: nn.Module,
        input_feed: bool = True,
        coverage_size: int = 0,
        attention: str = "global",
    ):
        """
        Args:
            input_network: Maps token indices to step inputs (e.g. nn.Embedding)
            rnn: Stacked cell exposing num_effective_layers, output_size, dropout
            input_feed: Concatenate the previous attended output to the input
            coverage_size: Size of the coverage vector (0 disables coverage)
            attention: "global" or "cgate"; ignored when coverage_size > 0
        """
        super().__init__()

        self.input_network = input_network
        self.rnn = rnn
        self.num_effective_layers = rnn.num_effective_layers
        self.rnn_size = rnn.output_size
        self.input_feed = input_feed
        self.coverage_size = coverage_size

        n = self.num_effective_layers
        self.input_index: Dict[str, int] = {"x": n, "context": n + 1}
        if input_feed:
            self.input_index["input_feed"] = len(self.input_index) + n
        if coverage_size > 0:
            logger.info(" * Maintaining context coverage with GRU-based model")
            self.input_index["coverage"] = len(self.input_index) + n

        self.output_index: Dict[str, int] = {"states": 0}
        if coverage_size > 0:
            self.output_index["coverage"] = n
        self.output_index["attn"] = len(self.output_index) + n - 1

        self.attn = build_attention(attention, self.rnn_size, coverage_size)
        self.dropout = nn.Dropout(rnn.dropout) if rnn.dropout > 0 else None

    @property
    def num_inputs(self) -> int:
        return self.num_effective_layers + len(self.input_index)

    @property
    def num_outputs(self) -> int:
        return self.output_index["attn"] + 1

    @property
    def differentiable_inputs(self) -> Tuple[int, ...]:
        """Positions whose gradients the backward pass reads (everything but the token)."""
        return tuple(i for i in range(self.num_inputs) if i != self.input_index["x"])

    def forward(self, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        states = inputs[: self.num_effective_layers]
        context = inputs[self.input_index["context"]]

        step_input = self.input_network(inputs[self.input_index["x"]])
        if self.input_feed:
            step_input = torch.cat([step_input, inputs[self.input_index["input_feed"]]], dim=1)

        outputs = self.rnn(states, step_input)

        # h^L queries the source context.
        if self.coverage_size > 0:
            attn_output, next_coverage = self.attn(
                outputs[-1], context, inputs[self.input_index["coverage"]]
            )
            outputs.append(next_coverage)
        else:
            attn_output = self.attn(outputs[-1], context)

        if self.dropout is not None:
            attn_output = self.dropout(attn_output)
        outputs.append(attn_output)

        return outputs
