"""
Greedy sampling script for trained seq2seq checkpoints.

Reads one source sentence per line as whitespace-separated token ids and
writes the greedy translation of each line in the same format.
"""

import argparse
from pathlib import Path
from typing import List

import torch
from tqdm import tqdm

from nmt_core import constants
from nmt_core.data.batch import Batch
from nmt_core.utils import count_parameters, greedy_decode, load_checkpoint, strip_special


def read_id_file(path: Path) -> List[List[int]]:
    """Read whitespace-separated token ids, one sequence per line."""
    with open(path, "r", encoding="utf-8") as f:
        return [[int(token) for token in line.split()] for line in f if line.strip()]


def sample_file(
    model,
    sources: List[List[int]],
    device: torch.device,
    batch_size: int = 32,
    max_len: int = constants.MAX_TARGET_LENGTH,
) -> List[List[int]]:
    """
    Greedily decode every source sequence.

    Args:
        model: Trained Seq2Seq model
        sources: Source token id sequences
        device: Device for computation
        batch_size: Number of sequences decoded together
        max_len: Maximum generation length

    Returns:
        Decoded token id sequences, cut at EOS
    """
    predictions = []

    for start in tqdm(range(0, len(sources), batch_size), desc="Sampling"):
        batch = Batch(sources[start : start + batch_size]).to(device)
        output = greedy_decode(model, batch, max_len)
        for row in output.cpu().tolist():
            predictions.append(strip_special(row))

    return predictions


def main():
    parser = argparse.ArgumentParser(description="Greedy decoding with a seq2seq checkpoint")

    parser.add_argument("--model", type=str, required=True, help="Checkpoint path")
    parser.add_argument("--src", type=str, required=True, help="Source token id file")
    parser.add_argument(
        "--output", type=str, default="pred.txt", help="Where to write decoded ids"
    )
    parser.add_argument("--batch-size", type=int, default=32, help="Batch size")
    parser.add_argument(
        "--max-len",
        type=int,
        default=constants.MAX_TARGET_LENGTH,
        help="Maximum generation length",
    )
    parser.add_argument("--device", type=str, default="cpu", help="Device (mps/cuda/cpu)")

    args = parser.parse_args()

    if args.device == "mps" and torch.backends.mps.is_available():
        device = torch.device("mps")
    elif args.device == "cuda" and torch.cuda.is_available():
        device = torch.device("cuda")
    else:
        device = torch.device("cpu")

    print(f"Loading model from {args.model}...")
    model = load_checkpoint(args.model, device)
    print(f"Parameters: {count_parameters(model):,}")

    sources = read_id_file(Path(args.src))
    print(f"Source sentences: {len(sources):,}")

    predictions = sample_file(model, sources, device, args.batch_size, args.max_len)

    with open(args.output, "w", encoding="utf-8") as f:
        for pred in predictions:
            f.write(" ".join(str(token) for token in pred) + "\n")

    print(f"Translations saved to: {args.output}")


if __name__ == "__main__":
    main()
