"""
Complete encoder-decoder model wiring the two sequencers together.

The encoder's final states initialize the decoder and its context matrix is
the attention memory of every decoder step. Training runs the manual
backward pass of both sequencers: decoder first, then encoder with the
gradients the decoder returns.
"""

from typing import Any, Dict, Optional

import torch
import torch.nn as nn

from nmt_core import constants
from nmt_core.config import DecoderConfig, EncoderConfig
from nmt_core.models.cells.rnn_cell import build_cell
from nmt_core.models.decoder import Decoder
from nmt_core.models.encoder import Encoder
from nmt_core.models.generator import Generator


class Seq2Seq(nn.Module):
    """
    Attention sequence-to-sequence model built from an Encoder and a Decoder.

    Args:
        encoder: Source sequencer
        decoder: Target sequencer with its generator
        mask_padding: Zero out padded source steps and give them no attention
    """

    def __init__(self, encoder: Encoder, decoder: Decoder, mask_padding: bool = True):
        super().__init__()

        self.encoder = encoder
        self.decoder = decoder
        self.mask_pad = mask_padding
        self.config: Dict[str, Any] = {}

        if mask_padding:
            self.encoder.mask_padding()

    def _prepare(self, batch) -> None:
        if not self.mask_pad:
            return
        if batch.uneven:
            self.decoder.mask_padding(
                batch.source_size, batch.source_length, batch.source_input_pad_left
            )
        else:
            self.decoder.mask_padding()

    def encode(self, batch):
        """Run the encoder; returns (final_states, context)."""
        self._prepare(batch)
        return self.encoder(batch)

    def forward(self, batch):
        """
        Forward pass with teacher forcing.

        Args:
            batch: Batch with targets

        Returns:
            List of attended decoder outputs, one per target step
        """
        encoder_states, context = self.encode(batch)
        return self.decoder(batch, encoder_states, context)

    def train_batch(self, batch, criterion: nn.Module) -> float:
        """
        One forward/backward cycle over a batch.

        Parameter gradients are accumulated into `.grad`; the caller owns
        zeroing them and stepping an optimizer.

        Args:
            batch: Batch with targets
            criterion: Summed criterion taking (preds, target)

        Returns:
            Summed loss over all target tokens
        """
        encoder_states, context = self.encode(batch)
        outputs = self.decoder(batch, encoder_states, context)

        grad_states, grad_context, loss = self.decoder.backward(batch, outputs, criterion)
        self.encoder.backward(batch, grad_states, grad_context)

        return loss

    @torch.no_grad()
    def compute_loss(self, batch, criterion: nn.Module) -> float:
        """Summed loss of a batch without recording anything for backward."""
        encoder_states, context = self.encode(batch)
        return self.decoder.compute_loss(batch, encoder_states, context, criterion)

    @torch.no_grad()
    def compute_score(self, batch) -> torch.Tensor:
        """Per-element log-likelihood of the gold targets (batch_size,)."""
        encoder_states, context = self.encode(batch)
        return self.decoder.compute_score(batch, encoder_states, context)

    @torch.no_grad()
    def sample(self, batch, max_length: Optional[int] = None, **kwargs) -> torch.Tensor:
        """Greedy decoding; returns tokens (actual_length, batch_size)."""
        encoder_states, context = self.encode(batch)
        return self.decoder.sample_batch(batch, encoder_states, context, max_length, **kwargs)

    def serialize(self) -> Dict[str, Any]:
        """Return data to serialize: the build config and both sequencers."""
        if not self.config:
            raise ValueError(
                "Cannot serialize a Seq2Seq without a build config; "
                "create it with build_seq2seq()"
            )
        return {
            "config": dict(self.config),
            "mask_padding": self.mask_pad,
            "encoder": self.encoder.serialize(),
            "decoder": self.decoder.serialize(),
        }

    @classmethod
    def load(cls, checkpoint: Dict[str, Any]) -> "Seq2Seq":
        """Rebuild a model from serialize() output, migrating older decoder configs."""
        config = checkpoint["config"]
        model = build_seq2seq(
            config["src_vocab_size"],
            config["tgt_vocab_size"],
            EncoderConfig.from_dict(config["encoder"]),
            DecoderConfig.from_dict(config["decoder"]),
            mask_padding=checkpoint.get("mask_padding", True),
        )
        model.encoder.load_state_dict(checkpoint["encoder"]["state_dict"])
        model.decoder.load_state_dict(checkpoint["decoder"]["state_dict"])
        return model


def build_seq2seq(
    src_vocab_size: int,
    tgt_vocab_size: int,
    encoder_config: Optional[EncoderConfig] = None,
    decoder_config: Optional[DecoderConfig] = None,
    mask_padding: bool = True,
) -> Seq2Seq:
    """
    Assemble embeddings, stacked cells, generator and both sequencers.

    Args:
        src_vocab_size: Size of source vocabulary
        tgt_vocab_size: Size of target vocabulary
        encoder_config: Encoder hyperparameters (defaults if None)
        decoder_config: Decoder hyperparameters (defaults if None)
        mask_padding: Enable source padding masks

    Returns:
        Seq2Seq model
    """
    encoder_config = encoder_config or EncoderConfig()
    decoder_config = decoder_config or DecoderConfig()

    src_embedding = nn.Embedding(
        src_vocab_size, encoder_config.word_vec_size, padding_idx=constants.PAD
    )
    # Variational masks replace the encoder cell's own inter-layer dropout.
    encoder_rnn = build_cell(
        encoder_config.cell,
        encoder_config.layers,
        encoder_config.word_vec_size,
        encoder_config.rnn_size,
    )
    encoder = Encoder(
        src_embedding, encoder_rnn, encoder_config.dropout, encoder_config.rec_dropout
    )

    tgt_embedding = nn.Embedding(
        tgt_vocab_size, decoder_config.word_vec_size, padding_idx=constants.PAD
    )
    decoder_input_size = decoder_config.word_vec_size
    if decoder_config.input_feed:
        decoder_input_size += decoder_config.rnn_size
    decoder_rnn = build_cell(
        decoder_config.cell,
        decoder_config.layers,
        decoder_input_size,
        decoder_config.rnn_size,
        decoder_config.dropout,
    )
    generator = Generator(decoder_config.rnn_size, tgt_vocab_size)
    decoder = Decoder(
        tgt_embedding,
        decoder_rnn,
        generator,
        input_feed=decoder_config.input_feed,
        coverage_size=decoder_config.coverage_size,
        attention=decoder_config.attention,
    )

    model = Seq2Seq(encoder, decoder, mask_padding=mask_padding)
    model.config = {
        "src_vocab_size": src_vocab_size,
        "tgt_vocab_size": tgt_vocab_size,
        "encoder": encoder_config.to_dict(),
        "decoder": decoder_config.to_dict(),
    }
    return model
