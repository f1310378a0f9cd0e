"""
Configuration containers for the encoder and decoder sequencers.

Both configs round-trip through plain dicts so they can be stored next to a
state_dict in a checkpoint. Loading a decoder config goes through
DecoderConfig.from_dict, which fills in fields that older checkpoints lack.
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

__all__ = ["EncoderConfig", "DecoderConfig", "migrate_decoder_args", "CELL_TYPES", "ATTENTION_TYPES"]

CELL_TYPES = ("lstm", "rnn")
ATTENTION_TYPES = ("global", "cgate", "coverage")

logger = logging.getLogger(__name__)


def _coverage_attention(attention: str, coverage_size: int) -> str:
    """Attention kind forced by a positive coverage size."""
    if attention not in ("coverage", "global"):
        logger.warning(
            "Attention type %r ignored: coverage_size=%d forces coverage attention",
            attention,
            coverage_size,
        )
    return "coverage"


@dataclass
class EncoderConfig:
    """Hyperparameters of the source-side sequencer.

    `dropout` is the variational dropout applied to inputs of layers 2..L and
    `rec_dropout` the one applied to recurrent connections of every layer.
    """
    word_vec_size: int = 256
    rnn_size: int = 512
    layers: int = 2
    cell: str = "lstm"
    dropout: float = 0.3
    rec_dropout: float = 0.0

    def __post_init__(self):
        if self.cell not in CELL_TYPES:
            raise ValueError(f"Unknown cell type: {self.cell}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, args: Dict[str, Any]) -> "EncoderConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in args.items() if k in known})


@dataclass
class DecoderConfig:
    """Hyperparameters of the target-side sequencer.

    `coverage_size > 0` enables the coverage recurrence and always selects
    coverage attention, whatever `attention` says.
    """
    word_vec_size: int = 256
    rnn_size: int = 512
    layers: int = 2
    cell: str = "lstm"
    dropout: float = 0.3
    input_feed: bool = True
    coverage_size: int = 0
    attention: str = "global"

    def __post_init__(self):
        if self.cell not in CELL_TYPES:
            raise ValueError(f"Unknown cell type: {self.cell}")
        if self.attention not in ATTENTION_TYPES:
            raise ValueError(f"Unknown attention type: {self.attention}")
        if self.coverage_size > 0:
            self.attention = _coverage_attention(self.attention, self.coverage_size)
        elif self.attention == "coverage":
            raise ValueError("Coverage attention requires coverage_size > 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, args: Dict[str, Any]) -> "DecoderConfig":
        """Build a config from stored arguments, migrating older layouts.

        Checkpoints written before coverage existed carry neither
        `coverage_size` nor `attention`; they load as global attention
        without coverage.
        """
        args = migrate_decoder_args(args)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in args.items() if k in known})


def migrate_decoder_args(args: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `args` with absent coverage/attention fields defaulted."""
    args = dict(args)
    if args.get("coverage_size") is None:
        args["coverage_size"] = 0
    if args.get("attention") is None:
        args["attention"] = "global"
    if args["coverage_size"] > 0:
        args["attention"] = _coverage_attention(args["attention"], args["coverage_size"])
    return args
