"""
Utility functions for the translation core.

Includes helpers for greedy decoding, parameter counting and checkpoints.
"""

from typing import Optional, Union

import torch

from nmt_core import constants
from nmt_core.models.seq2seq import Seq2Seq


def greedy_decode(
    model: Seq2Seq,
    batch,
    max_len: int = constants.MAX_TARGET_LENGTH,
    bos_idx: int = constants.BOS,
    eos_idx: int = constants.EOS,
    pad_idx: int = constants.PAD,
) -> torch.Tensor:
    """
    Greedy decoding for sequence generation.

    Args:
        model: Seq2Seq model
        batch: Source batch
        max_len: Maximum generation length
        bos_idx: Index of BOS token
        eos_idx: Index of EOS token
        pad_idx: Index of PAD token

    Returns:
        Generated sequences (batch_size, actual_len), PAD after each EOS
    """
    was_training = model.training
    model.eval()
    try:
        output = model.sample(
            batch, max_len, bos_idx=bos_idx, eos_idx=eos_idx, pad_idx=pad_idx
        )
    finally:
        model.train(was_training)

    return output.t().contiguous()


def strip_special(tokens, eos_idx: int = constants.EOS, pad_idx: int = constants.PAD) -> list:
    """Cut a decoded id sequence at its first EOS and drop padding."""
    result = []
    for token in tokens:
        if token == eos_idx:
            break
        if token != pad_idx:
            result.append(token)
    return result


def count_parameters(model: torch.nn.Module) -> int:
    """
    Count trainable parameters in a model.

    Args:
        model: PyTorch model

    Returns:
        Number of trainable parameters
    """
    return sum(p.numel() for p in model.parameters() if p.requires_grad)


def save_checkpoint(
    model: Seq2Seq,
    path: str,
    optimizer: Optional[torch.optim.Optimizer] = None,
    **kwargs,
) -> None:
    """
    Save a model checkpoint.

    Args:
        model: Model to save
        path: Path to save checkpoint
        optimizer: Optional optimizer to save
        **kwargs: Additional items to save
    """
    checkpoint = {"model": model.serialize(), **kwargs}
    if optimizer is not None:
        checkpoint["optimizer_state_dict"] = optimizer.state_dict()
    torch.save(checkpoint, path)


def load_checkpoint(
    path: str,
    device: Union[str, torch.device] = "cpu",
    optimizer: Optional[torch.optim.Optimizer] = None,
) -> Seq2Seq:
    """
    Load a model checkpoint.

    Args:
        path: Path to checkpoint
        device: Device to map tensors onto
        optimizer: Optional optimizer to load state into

    Returns:
        Rebuilt Seq2Seq model on `device`
    """
    checkpoint = torch.load(path, map_location=device)
    model = Seq2Seq.load(checkpoint["model"]).to(device)

    if optimizer is not None and "optimizer_state_dict" in checkpoint:
        optimizer.load_state_dict(checkpoint["optimizer_state_dict"])

    return model
