"""
Batch container for parallel translation data.

Sources are padded on the left by default so that the last encoder step
always sees a real token; targets are padded on the right. All token tensors
are time-major: (seq_len, batch_size).
"""

from typing import List, Optional, Sequence, Tuple, Union

import torch

from nmt_core import constants

Tokens = Union[Sequence[int], torch.Tensor]


def _pad(
    sequences: List[torch.Tensor], length: int, pad_left: bool, pad_idx: int
) -> torch.Tensor:
    """Stack sequences into a (length, batch_size) tensor padded with `pad_idx`."""
    padded = torch.full((length, len(sequences)), pad_idx, dtype=torch.long)
    for b, seq in enumerate(sequences):
        if pad_left:
            padded[length - seq.size(0) :, b] = seq
        else:
            padded[: seq.size(0), b] = seq
    return padded


class Batch:
    """
    A batch of source (and optionally target) sequences.

    Attributes:
        size: Number of sequences in the batch
        source_length: Padded source length
        source_size: True source lengths (batch_size,)
        source_input: Source tokens (source_length, batch_size)
        source_input_pad_left: Whether sources are padded on the left
        target_length: Padded target length (BOS + tokens, tokens + EOS)
        target_size: True target lengths including BOS/EOS (batch_size,)
        target_input: Decoder inputs, BOS + target (target_length, batch_size)
        target_output: Decoder outputs, target + EOS (target_length, batch_size)
        total_size: Number of non-padding target output tokens
        uneven: Whether source lengths differ within the batch
    """

    def __init__(
        self,
        source: Sequence[Tokens],
        target: Optional[Sequence[Tokens]] = None,
        pad_left: bool = True,
    ):
        """
        Args:
            source: Source token sequences, without BOS/EOS
            target: Target token sequences, without BOS/EOS
            pad_left: Pad sources on the left (True) or on the right (False)
        """
        source = [torch.as_tensor(s, dtype=torch.long) for s in source]

        self.size = len(source)
        self.source_size = torch.tensor([s.size(0) for s in source], dtype=torch.long)
        self.source_length = int(self.source_size.max())
        self.source_input_pad_left = pad_left
        self.source_input = _pad(source, self.source_length, pad_left, constants.PAD)
        self.uneven = bool((self.source_size != self.source_length).any())

        self.target_length = 0
        self.target_size = None
        self.target_input = None
        self.target_output = None
        self.total_size = 0

        if target is not None:
            target = [torch.as_tensor(t, dtype=torch.long) for t in target]
            bos = torch.tensor([constants.BOS], dtype=torch.long)
            eos = torch.tensor([constants.EOS], dtype=torch.long)

            target_input = [torch.cat([bos, t]) for t in target]
            target_output = [torch.cat([t, eos]) for t in target]

            self.target_size = torch.tensor([t.size(0) for t in target_input], dtype=torch.long)
            self.target_length = int(self.target_size.max())
            self.target_input = _pad(target_input, self.target_length, False, constants.PAD)
            self.target_output = _pad(target_output, self.target_length, False, constants.PAD)
            self.total_size = int(self.target_size.sum())

    def to(self, device: Union[str, torch.device]) -> "Batch":
        """Move every tensor of the batch to `device` in place."""
        for name in ("source_size", "source_input", "target_size", "target_input", "target_output"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, value.to(device))
        return self

    def get_source_input(self, t: int) -> torch.Tensor:
        """Source tokens at step t (batch_size,)."""
        return self.source_input[t]

    def get_target_input(self, t: int) -> torch.Tensor:
        """Decoder input tokens at step t (batch_size,)."""
        return self.target_input[t]

    def get_target_output(self, t: int) -> torch.Tensor:
        """Gold output tokens at step t (batch_size,)."""
        return self.target_output[t]

    def source_pad_mask(self, t: int) -> torch.Tensor:
        """Boolean (batch_size,) marking elements whose source position t is padding."""
        if self.source_input_pad_left:
            return t < self.source_length - self.source_size
        return t >= self.source_size


def collate_fn(
    batch: List[Tuple[torch.Tensor, torch.Tensor]], pad_left: bool = True
) -> Batch:
    """
    Collate function for DataLoader building a Batch from (src, tgt) pairs.

    Args:
        batch: List of (src, tgt) token tensors without BOS/EOS
        pad_left: Pad sources on the left

    Returns:
        Batch holding the padded, time-major sequences
    """
    src_batch, tgt_batch = zip(*batch)
    return Batch(list(src_batch), list(tgt_batch), pad_left=pad_left)
