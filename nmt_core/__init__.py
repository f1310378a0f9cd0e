"""
Recurrent encoder/decoder core for attention-based neural machine translation.

Unrolls a stacked recurrent cell across time, threads state, input feeding and
coverage between decoder steps, and backpropagates through time by replaying
each recorded step.
"""

from nmt_core.data.batch import Batch, collate_fn
from nmt_core.models.decoder import Decoder
from nmt_core.models.encoder import Encoder
from nmt_core.models.seq2seq import Seq2Seq, build_seq2seq

__all__ = ["Batch", "collate_fn", "Decoder", "Encoder", "Seq2Seq", "build_seq2seq"]
