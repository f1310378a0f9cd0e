"""
Preallocated tensor buffers keyed by role.

Each sequencer owns one TensorPool. Buffers are reused across timesteps and
across batches and are only reallocated when the requested shape, dtype or
device changes. A pool must not be shared by two passes running at once.
"""

import logging
from typing import Dict, Hashable, List, Sequence

import torch

logger = logging.getLogger(__name__)


class TensorPool:
    """Reusable scratch tensors for states, gradients, context, masks and sampling."""

    def __init__(self):
        self._buffers: Dict[Hashable, torch.Tensor] = {}

    def __contains__(self, role: Hashable) -> bool:
        return role in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def clear(self) -> None:
        """Forget every buffer; the next request allocates fresh memory."""
        self._buffers.clear()

    @torch.no_grad()
    def reuse(
        self, role: Hashable, size: Sequence[int], like: torch.Tensor
    ) -> torch.Tensor:
        """
        Get the zero-filled buffer for `role` with shape `size`.

        Args:
            role: Key identifying the buffer (e.g. "context", ("states", 0))
            size: Requested shape
            like: Tensor whose dtype and device the buffer must match

        Returns:
            A zeroed tensor of shape `size`; the same storage as the previous
            call for this role whenever dtype and device are unchanged
        """
        size = torch.Size(size)
        buffer = self._buffers.get(role)

        if buffer is None or buffer.dtype != like.dtype or buffer.device != like.device:
            logger.debug("Allocating buffer %s with shape %s", role, tuple(size))
            buffer = like.new_zeros(size)
            self._buffers[role] = buffer
            return buffer

        if buffer.size() != size:
            logger.debug(
                "Resizing buffer %s from %s to %s", role, tuple(buffer.size()), tuple(size)
            )
            buffer.resize_(size)

        return buffer.zero_()

    def reuse_table(
        self, role: Hashable, n: int, size: Sequence[int], like: torch.Tensor
    ) -> List[torch.Tensor]:
        """Get `n` zeroed buffers of shape `size`, one per table slot."""
        return [self.reuse((role, i), size, like) for i in range(n)]

    @torch.no_grad()
    def copy_table(
        self, role: Hashable, tensors: Sequence[torch.Tensor]
    ) -> List[torch.Tensor]:
        """Copy `tensors` by value into the buffers of `role`."""
        table = []
        for i, tensor in enumerate(tensors):
            buffer = self.reuse((role, i), tensor.size(), tensor)
            buffer.copy_(tensor.detach())
            table.append(buffer)
        return table
