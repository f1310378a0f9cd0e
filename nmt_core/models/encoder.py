"""
Unidirectional encoder sequencer for the source language.

    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
     .      .      .             .
     |      |      |             |
    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
    x_1    x_2    x_3           x_n

The encoder uses variational dropout: one set of masks is sampled per forward
pass and reused at every timestep.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

import torch
import torch.nn as nn

from nmt_core.models.sequencer import Sequencer
from nmt_core.models.step_graph import EncoderStep

GradInput = Union[None, torch.Tensor, List[torch.Tensor]]


class Encoder(Sequencer):
    """
    Encode a source batch into final states and a context matrix.

    Args:
        input_network: Source embedding module
        rnn: Stacked recurrent cell (see models/cells/rnn_cell.py)
        dropout: Variational dropout on inputs of layers 2..L
        rec_dropout: Variational dropout on recurrent connections
    """

    def __init__(
        self,
        input_network: nn.Module,
        rnn: nn.Module,
        dropout: float = 0.0,
        rec_dropout: float = 0.0,
    ):
        super().__init__(EncoderStep(input_network, rnn))

        self.args: Dict[str, Any] = {
            "rnn_size": rnn.output_size,
            "num_effective_layers": rnn.num_effective_layers,
            "layers": rnn.layers,
            "dropout": dropout,
            "rec_dropout": rec_dropout,
        }
        self.mask_pad = False

    @classmethod
    def load(
        cls, pretrained: Dict[str, Any], input_network: nn.Module, rnn: nn.Module
    ) -> "Encoder":
        """Return a new Encoder from data produced by serialize()."""
        args = pretrained["args"]
        encoder = cls(input_network, rnn, args["dropout"], args["rec_dropout"])
        encoder.load_state_dict(pretrained["state_dict"])
        return encoder

    def serialize(self) -> Dict[str, Any]:
        """Return data to serialize."""
        return {"name": "Encoder", "args": dict(self.args), "state_dict": self.state_dict()}

    def mask_padding(self) -> None:
        """Force padded positions to zero state and track per-element final states."""
        self.mask_pad = True

    def _like(self) -> torch.Tensor:
        return next(self.parameters())

    def generate_dropout_mask(self, batch_size: int) -> List[torch.Tensor]:
        """
        Sample the variational dropout masks for one forward pass.

        Masks are filled with 1 and only Bernoulli-sampled (and rescaled by
        1 / (1 - p)) in training mode with a non-zero rate.

        Returns:
            [input_mask, recurrent_mask] when layers > 1, else [recurrent_mask]
        """
        like = self._like()
        layers = self.args["layers"]
        rnn_size = self.args["rnn_size"]
        masks = []

        with torch.no_grad():
            if layers > 1:
                input_mask = self._pool.reuse(
                    "input_mask", (batch_size, layers - 1, rnn_size), like
                ).fill_(1)
                p = self.args["dropout"]
                if self.training and p > 0:
                    input_mask.bernoulli_(1 - p).div_(1 - p)
                masks.append(input_mask)

            recurrent_mask = self._pool.reuse(
                "recurrent_mask", (batch_size, layers, rnn_size), like
            ).fill_(1)
            p = self.args["rec_dropout"]
            if self.training and p > 0:
                recurrent_mask.bernoulli_(1 - p).div_(1 - p)
            masks.append(recurrent_mask)

        return masks

    def forward(self, batch) -> Tuple[List[torch.Tensor], torch.Tensor]:
        """
        Compute the context representation of a source batch.

        Args:
            batch: Batch container (see data/batch.py)

        Returns:
            Tuple of (final_states, context) where:
            - final_states: num_effective_layers tensors (batch_size, rnn_size)
            - context: Top-layer output at every step (batch_size, src_len, rnn_size)
        """
        like = self._like()
        rnn_size = self.args["rnn_size"]
        num_states = self.args["num_effective_layers"]

        # Same masks for every timestep of this pass.
        masks = self.generate_dropout_mask(batch.size)

        states = self._pool.reuse_table("states", num_states, (batch.size, rnn_size), like)
        context = self._pool.reuse("context", (batch.size, batch.source_length, rnn_size), like)

        right_padded = self.mask_pad and not batch.source_input_pad_left
        final_states = None
        if right_padded:
            final_states = self._pool.copy_table("final_states", states)

        self._reset_records()

        for t in range(batch.source_length):
            inputs = list(states) + masks + [batch.get_source_input(t)]
            states = self._forward_step(t, inputs)

            if self.mask_pad:
                padded = batch.source_pad_mask(t).unsqueeze(1)
                states = [s.masked_fill(padded, 0) for s in states]
                if right_padded:
                    ended = batch.source_size == t + 1
                    with torch.no_grad():
                        for final, state in zip(final_states, states):
                            final[ended] = state.detach()[ended]

            # h^L_t is the last state slot.
            with torch.no_grad():
                context[:, t].copy_(states[-1].detach())

        if final_states is None:
            final_states = states

        return final_states, context

    def backward(
        self,
        batch,
        grad_states_output: Optional[List[torch.Tensor]],
        grad_context_output: torch.Tensor,
    ) -> Dict[int, GradInput]:
        """
        Backpropagate through the recorded forward pass (training only).

        Args:
            batch: The batch given to forward()
            grad_states_output: Gradient w.r.t. final_states, or None if unused
            grad_context_output: Gradient w.r.t. the full context matrix

        Returns:
            Mapping timestep -> gradient of the non-state step inputs that
            received one (a tensor, a list of tensors, or None)
        """
        rnn_size = self.args["rnn_size"]
        num_states = self.args["num_effective_layers"]

        grad_states = self._pool.reuse_table(
            "grad_states", num_states, (batch.size, rnn_size), grad_context_output
        )

        right_padded = self.mask_pad and not batch.source_input_pad_left
        if grad_states_output is not None and not right_padded:
            with torch.no_grad():
                for buffer, grad in zip(grad_states, grad_states_output):
                    buffer.copy_(grad)

        grad_inputs: Dict[int, GradInput] = {}

        for t in range(batch.source_length - 1, -1, -1):
            with torch.no_grad():
                # Context gradients add onto the last hidden state gradient.
                grad_states[-1].add_(grad_context_output[:, t])

                if self.mask_pad:
                    if right_padded and grad_states_output is not None:
                        ended = batch.source_size == t + 1
                        for buffer, grad in zip(grad_states, grad_states_output):
                            buffer[ended] += grad[ended]
                    padded = batch.source_pad_mask(t).unsqueeze(1)
                    for buffer in grad_states:
                        buffer.masked_fill_(padded, 0)

            grad_input = self._backward_step(t, grad_states)

            # Prepare the state gradients of step t - 1.
            with torch.no_grad():
                for buffer, grad in zip(grad_states, grad_input[:num_states]):
                    buffer.copy_(grad)

            extra = [g for g in grad_input[num_states:] if g is not None]
            if not extra:
                grad_inputs[t] = None
            elif len(extra) == 1:
                grad_inputs[t] = extra[0]
            else:
                grad_inputs[t] = extra

        self._reset_records()
        return grad_inputs
