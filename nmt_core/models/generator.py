"""Output projection and training criterion used by the decoder."""

from typing import List, Sequence, Union

import torch
import torch.nn as nn

from nmt_core import constants


class Generator(nn.Module):
    """
    Project attended decoder outputs to log-probabilities over the vocabulary.

    Returns a single-element list so callers can treat single and
    multi-head generators alike.
    """

    def __init__(self, rnn_size: int, vocab_size: int):
        super().__init__()
        self.proj = nn.Linear(rnn_size, vocab_size)
        self.log_softmax = nn.LogSoftmax(dim=-1)

    def forward(self, output: torch.Tensor) -> List[torch.Tensor]:
        return [self.log_softmax(self.proj(output))]


class NMTCriterion(nn.Module):
    """Summed negative log-likelihood over every generator head, ignoring PAD targets."""

    def __init__(self, num_heads: int = 1, pad_idx: int = constants.PAD):
        super().__init__()
        self.losses = nn.ModuleList(
            [nn.NLLLoss(ignore_index=pad_idx, reduction="sum") for _ in range(num_heads)]
        )

    def forward(
        self,
        preds: Sequence[torch.Tensor],
        targets: Union[torch.Tensor, Sequence[torch.Tensor]],
    ) -> torch.Tensor:
        if isinstance(targets, torch.Tensor):
            targets = [targets]
        loss = 0
        for criterion, pred, target in zip(self.losses, preds, targets):
            loss = loss + criterion(pred, target)
        return loss
