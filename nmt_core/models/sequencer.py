"""
Base class for modules that unroll a step graph through time.

During training every timestep's inputs are detached into fresh leaves and
recorded together with the step outputs. The backward pass walks the
timesteps in reverse, feeding gradient buffers into the recorded step and
reading the gradients left on its input leaves. Parameters accumulate their
gradients in `.grad` as usual.

Recorded steps are owned by the sequencer: a second forward pass before the
matching backward pass discards them.
"""

from typing import Dict, List, Optional, Sequence

import torch
import torch.nn as nn

from nmt_core.tensor_pool import TensorPool


class Sequencer(nn.Module):
    """Drive a single step network across timesteps and replay it backward."""

    def __init__(self, network: nn.Module):
        super().__init__()
        self.network = network
        self._inputs: Dict[int, List[torch.Tensor]] = {}
        self._outputs: Dict[int, List[torch.Tensor]] = {}
        self._pool = TensorPool()

    def reset_preallocation(self) -> None:
        """Drop every preallocated buffer."""
        self._pool.clear()

    def net(self, t: int) -> nn.Module:
        """Step network for timestep `t` (the same shared module at every step)."""
        return self.network

    def _recording(self) -> bool:
        return self.training and torch.is_grad_enabled()

    def _reset_records(self) -> None:
        self._inputs = {}
        self._outputs = {}

    def _forward_step(self, t: int, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        """
        Run the step network for timestep `t`.

        Args:
            t: Timestep index
            inputs: Flat input list in the step network's order

        Returns:
            Flat list of step outputs
        """
        if not self._recording():
            return self.net(t)(inputs)

        differentiable = set(self.network.differentiable_inputs)
        leaves = []
        for i, x in enumerate(inputs):
            if i in differentiable and torch.is_tensor(x) and x.is_floating_point():
                x = x.detach().requires_grad_()
            leaves.append(x)

        outputs = self.net(t)(leaves)

        # Remember inputs for the backward pass.
        self._inputs[t] = leaves
        self._outputs[t] = outputs
        return outputs

    def _backward_step(
        self, t: int, grad_outputs: Sequence[torch.Tensor]
    ) -> List[Optional[torch.Tensor]]:
        """
        Backpropagate `grad_outputs` through the recorded step `t`.

        Args:
            t: Timestep recorded by the forward pass
            grad_outputs: One gradient per step output, in output order

        Returns:
            Gradient w.r.t. each step input; zeros for differentiable inputs
            that received none, None for non-differentiable ones
        """
        inputs = self._inputs[t]
        outputs = self._outputs[t]

        tensors, grads = [], []
        for output, grad in zip(outputs, grad_outputs):
            if output.requires_grad:
                tensors.append(output)
                grads.append(grad)
        torch.autograd.backward(tensors, grads)

        grad_inputs = []
        for x in inputs:
            if torch.is_tensor(x) and x.requires_grad:
                grad_inputs.append(x.grad if x.grad is not None else torch.zeros_like(x))
            else:
                grad_inputs.append(None)
        return grad_inputs
