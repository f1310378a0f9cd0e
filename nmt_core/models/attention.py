"""
Attention layers read by the decoder step graph.

Every layer takes the top-layer decoder state h (batch, dim) and the source
context H (batch, src_len, dim) and returns an attended output (batch, dim).
CoverageAttention additionally threads a coverage vector
(batch, src_len, coverage_size) and returns its next value.

The softmax that turns scores into weights is a submodule (`self.softmax`) so
the decoder can swap it for a MaskedSoftmax when the source batch is padded.
"""

import logging
from typing import Optional, Tuple

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)


class MaskedSoftmax(nn.Module):
    """
    Softmax over source positions that gives zero weight to padding.

    Args:
        source_sizes: True length of each source sequence (batch_size,)
        source_length: Padded source length
        pad_left: Whether padding sits before (True) or after (False) the tokens
    """

    def __init__(self, source_sizes: torch.Tensor, source_length: int, pad_left: bool = True):
        super().__init__()
        positions = torch.arange(source_length, device=source_sizes.device).unsqueeze(0)
        sizes = source_sizes.unsqueeze(1)
        if pad_left:
            pad_mask = positions < (source_length - sizes)
        else:
            pad_mask = positions >= sizes
        self.register_buffer("pad_mask", pad_mask, persistent=False)

    def forward(self, scores: torch.Tensor) -> torch.Tensor:
        scores = scores.masked_fill(self.pad_mask.to(scores.device), float("-inf"))
        return torch.softmax(scores, dim=-1)


class AttentionBase(nn.Module):
    """Shared scoring-to-context plumbing for the attention variants."""

    def __init__(self):
        super().__init__()
        self.softmax = nn.Softmax(dim=-1)

    def set_softmax(self, softmax: nn.Module) -> None:
        self.softmax = softmax

    def attend(
        self, scores: torch.Tensor, context: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Normalize scores and average the context.

        Args:
            scores: Alignment scores (batch_size, src_len)
            context: Encoder outputs (batch_size, src_len, dim)

        Returns:
            Tuple of (weights, weighted_context) with shapes
            (batch_size, src_len) and (batch_size, dim)
        """
        weights = self.softmax(scores)
        weighted = torch.bmm(weights.unsqueeze(1), context).squeeze(1)
        return weights, weighted


class GlobalAttention(AttentionBase):
    """
    Luong "general" global attention.

        a = softmax(H W h)
        out = tanh(W_out [a H ; h])
    """

    def __init__(self, dim: int):
        super().__init__()
        self.linear_in = nn.Linear(dim, dim, bias=False)
        self.linear_out = nn.Linear(2 * dim, dim, bias=False)

    def forward(self, h: torch.Tensor, context: torch.Tensor) -> torch.Tensor:
        target = self.linear_in(h).unsqueeze(2)  # (batch_size, dim, 1)
        scores = torch.bmm(context, target).squeeze(2)  # (batch_size, src_len)
        _, weighted = self.attend(scores, context)
        return torch.tanh(self.linear_out(torch.cat([weighted, h], dim=1)))


class ContextGateAttention(AttentionBase):
    """
    Global attention whose output mixes source and target information
    through a learned context gate.

        z = sigmoid(W_z [a H ; h])
        out = tanh(W_out [z * a H ; (1 - z) * h])
    """

    def __init__(self, dim: int):
        super().__init__()
        self.linear_in = nn.Linear(dim, dim, bias=False)
        self.gate = nn.Linear(2 * dim, dim)
        self.linear_out = nn.Linear(2 * dim, dim, bias=False)

    def forward(self, h: torch.Tensor, context: torch.Tensor) -> torch.Tensor:
        target = self.linear_in(h).unsqueeze(2)
        scores = torch.bmm(context, target).squeeze(2)
        _, weighted = self.attend(scores, context)

        z = torch.sigmoid(self.gate(torch.cat([weighted, h], dim=1)))
        gated = torch.cat([z * weighted, (1 - z) * h], dim=1)
        return torch.tanh(self.linear_out(gated))


class CoverageAttention(AttentionBase):
    """
    Additive attention conditioned on a per-position coverage vector.

    Scores follow Bahdanau-style energy with an extra coverage term; after
    attending, every source position updates its coverage with a GRU cell fed
    by (attention weight, decoder state, source annotation).

        e_j = v^T tanh(W_h h + W_c H_j + W_cov C_j)
        C'_j = GRU([a_j ; h ; H_j], C_j)
    """

    def __init__(self, dim: int, coverage_size: int):
        super().__init__()
        self.dim = dim
        self.coverage_size = coverage_size

        self.linear_query = nn.Linear(dim, dim, bias=False)
        self.linear_context = nn.Linear(dim, dim)
        self.linear_coverage = nn.Linear(coverage_size, dim, bias=False)
        self.v = nn.Linear(dim, 1, bias=False)
        self.linear_out = nn.Linear(2 * dim, dim, bias=False)
        self.coverage_rnn = nn.GRUCell(1 + 2 * dim, coverage_size)

    def forward(
        self, h: torch.Tensor, context: torch.Tensor, coverage: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            h: Top-layer decoder state (batch_size, dim)
            context: Encoder outputs (batch_size, src_len, dim)
            coverage: Previous coverage (batch_size, src_len, coverage_size)

        Returns:
            Tuple of (attended output, next coverage)
        """
        batch_size, src_len, _ = context.size()

        energy = torch.tanh(
            self.linear_context(context)
            + self.linear_query(h).unsqueeze(1)
            + self.linear_coverage(coverage)
        )
        scores = self.v(energy).squeeze(2)
        weights, weighted = self.attend(scores, context)
        output = torch.tanh(self.linear_out(torch.cat([weighted, h], dim=1)))

        query = h.unsqueeze(1).expand(batch_size, src_len, self.dim)
        update_input = torch.cat([weights.unsqueeze(2), query, context], dim=2)
        next_coverage = self.coverage_rnn(
            update_input.reshape(batch_size * src_len, -1),
            coverage.reshape(batch_size * src_len, self.coverage_size),
        ).view(batch_size, src_len, self.coverage_size)

        return output, next_coverage


def build_attention(kind: str, dim: int, coverage_size: int = 0) -> AttentionBase:
    """
    Select the attention layer for a decoder.

    A positive `coverage_size` always yields CoverageAttention; coverage and
    the other two kinds are mutually exclusive.
    """
    if coverage_size > 0:
        if kind not in ("coverage", "global"):
            logger.warning(
                "Attention type %r ignored: coverage_size=%d forces coverage attention",
                kind,
                coverage_size,
            )
        return CoverageAttention(dim, coverage_size)
    if kind == "global":
        return GlobalAttention(dim)
    if kind == "cgate":
        return ContextGateAttention(dim)
    raise ValueError(f"Unknown attention type: {kind}")


def find_attention(module: nn.Module) -> Optional[str]:
    """Return the qualified name of the first attention layer inside `module`, if any."""
    for name, child in module.named_modules():
        if isinstance(child, AttentionBase):
            return name
    return None
