"""
Stacked recurrent cells implemented from scratch.

Both stacks run a single timestep over a flat list of per-layer states, the
layout the step graphs thread through time:

    StackedRNN:  [h^1, ..., h^L]                 (num_effective_layers = L)
    StackedLSTM: [c^1, h^1, ..., c^L, h^L]       (num_effective_layers = 2L)

The top-layer output is always the last entry of the returned list.

When variational masks are passed, they replace the standard inter-layer
dropout: `input_mask[:, l - 1]` scales the input of layer l > 1 and
`recurrent_mask[:, l]` scales the previous hidden state of layer l.
"""

from typing import List, Optional, Tuple

import torch
import torch.nn as nn


class RNNCell(nn.Module):
    """
    Vanilla RNN cell from scratch.

    Implements a single step of the recurrent computation:
        h_t = tanh(W_ih @ x_t + W_hh @ h_{t-1} + b)
    """

    def __init__(self, input_dim: int, hidden_dim: int, bias: bool = True):
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim

        self.W_ih = nn.Linear(input_dim, hidden_dim, bias=bias)
        self.W_hh = nn.Linear(hidden_dim, hidden_dim, bias=bias)

    def forward(self, x: torch.Tensor, hidden: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: Input tensor (batch_size, input_dim)
            hidden: Previous hidden state (batch_size, hidden_dim)

        Returns:
            New hidden state (batch_size, hidden_dim)
        """
        return torch.tanh(self.W_ih(x) + self.W_hh(hidden))


class LSTMCell(nn.Module):
    """
    LSTM cell from scratch.

    Gates are computed in one projection and split:
        i, f, g, o = W_ih @ x_t + W_hh @ h_{t-1} + b
        c_t = sigmoid(f) * c_{t-1} + sigmoid(i) * tanh(g)
        h_t = sigmoid(o) * tanh(c_t)
    """

    def __init__(self, input_dim: int, hidden_dim: int, bias: bool = True):
        super().__init__()

        self.input_dim = input_dim
        self.hidden_dim = hidden_dim

        self.W_ih = nn.Linear(input_dim, 4 * hidden_dim, bias=bias)
        self.W_hh = nn.Linear(hidden_dim, 4 * hidden_dim, bias=False)

    def forward(
        self, x: torch.Tensor, state: Tuple[torch.Tensor, torch.Tensor]
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            x: Input tensor (batch_size, input_dim)
            state: Previous (cell, hidden), each (batch_size, hidden_dim)

        Returns:
            New (cell, hidden), each (batch_size, hidden_dim)
        """
        c_prev, h_prev = state
        gates = self.W_ih(x) + self.W_hh(h_prev)
        in_gate, forget_gate, cell_gate, out_gate = gates.chunk(4, dim=1)

        c_new = torch.sigmoid(forget_gate) * c_prev + torch.sigmoid(in_gate) * torch.tanh(
            cell_gate
        )
        h_new = torch.sigmoid(out_gate) * torch.tanh(c_new)

        return c_new, h_new


class StackedRNN(nn.Module):
    """
    Multi-layer vanilla RNN running one timestep per call.

    Exposes the attributes the step graphs rely on: `layers`, `output_size`,
    `num_effective_layers` and `dropout`.
    """

    def __init__(
        self,
        layers: int,
        input_size: int,
        hidden_size: int,
        dropout: float = 0.0,
    ):
        """
        Args:
            layers: Number of stacked RNN layers
            input_size: Dimension of the step input
            hidden_size: Dimension of hidden state per layer
            dropout: Dropout probability between layers (not after the last one)
        """
        super().__init__()

        self.layers = layers
        self.output_size = hidden_size
        self.num_effective_layers = layers
        self.dropout = dropout

        self.cells = nn.ModuleList()
        for layer in range(layers):
            layer_input_dim = input_size if layer == 0 else hidden_size
            self.cells.append(RNNCell(layer_input_dim, hidden_size))

        self.drop = nn.Dropout(dropout) if dropout > 0 and layers > 1 else None

    def forward(
        self,
        states: List[torch.Tensor],
        x: torch.Tensor,
        input_mask: Optional[torch.Tensor] = None,
        recurrent_mask: Optional[torch.Tensor] = None,
    ) -> List[torch.Tensor]:
        """
        Args:
            states: Previous hidden states [h^1, ..., h^L]
            x: Step input (batch_size, input_size)
            input_mask: Optional variational mask (batch_size, layers - 1, hidden_size)
            recurrent_mask: Optional variational mask (batch_size, layers, hidden_size)

        Returns:
            Next hidden states [h^1, ..., h^L]
        """
        next_states = []
        layer_input = x

        for layer, cell in enumerate(self.cells):
            h_prev = states[layer]
            if recurrent_mask is not None:
                h_prev = h_prev * recurrent_mask[:, layer]

            if layer > 0:
                if input_mask is not None:
                    layer_input = layer_input * input_mask[:, layer - 1]
                elif self.drop is not None:
                    layer_input = self.drop(layer_input)

            h_new = cell(layer_input, h_prev)
            next_states.append(h_new)
            layer_input = h_new

        return next_states


class StackedLSTM(nn.Module):
    """Multi-layer LSTM running one timestep per call; states are [c^1, h^1, ..., c^L, h^L]."""

    def __init__(
        self,
        layers: int,
        input_size: int,
        hidden_size: int,
        dropout: float = 0.0,
    ):
        super().__init__()

        self.layers = layers
        self.output_size = hidden_size
        self.num_effective_layers = 2 * layers
        self.dropout = dropout

        self.cells = nn.ModuleList()
        for layer in range(layers):
            layer_input_dim = input_size if layer == 0 else hidden_size
            self.cells.append(LSTMCell(layer_input_dim, hidden_size))

        self.drop = nn.Dropout(dropout) if dropout > 0 and layers > 1 else None

    def forward(
        self,
        states: List[torch.Tensor],
        x: torch.Tensor,
        input_mask: Optional[torch.Tensor] = None,
        recurrent_mask: Optional[torch.Tensor] = None,
    ) -> List[torch.Tensor]:
        next_states = []
        layer_input = x

        for layer, cell in enumerate(self.cells):
            c_prev = states[2 * layer]
            h_prev = states[2 * layer + 1]
            if recurrent_mask is not None:
                h_prev = h_prev * recurrent_mask[:, layer]

            if layer > 0:
                if input_mask is not None:
                    layer_input = layer_input * input_mask[:, layer - 1]
                elif self.drop is not None:
                    layer_input = self.drop(layer_input)

            c_new, h_new = cell(layer_input, (c_prev, h_prev))
            next_states.extend([c_new, h_new])
            layer_input = h_new

        return next_states


def build_cell(
    cell: str, layers: int, input_size: int, hidden_size: int, dropout: float = 0.0
) -> nn.Module:
    """Instantiate a stacked cell by name ("lstm" or "rnn")."""
    if cell == "lstm":
        return StackedLSTM(layers, input_size, hidden_size, dropout)
    if cell == "rnn":
        return StackedRNN(layers, input_size, hidden_size, dropout)
    raise ValueError(f"Unknown cell type: {cell}")
