"""
Attention decoder sequencer for the target language.

    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
     .      .      .             .
     |      |      |             |
    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
    x_1    x_2    x_3           x_n

Each step attends over the encoder context with the top-layer state. With
input feeding, the previous attended output is concatenated to the next
step's input; with coverage, a per-source-position coverage vector is
threaded through time alongside the states.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import torch
import torch.nn as nn

from nmt_core import constants
from nmt_core.config import migrate_decoder_args
from nmt_core.models.attention import MaskedSoftmax, find_attention
from nmt_core.models.sequencer import Sequencer
from nmt_core.models.step_graph import DecoderStep

StepInput = Union[torch.Tensor, List[torch.Tensor]]


class Decoder(Sequencer):
    """
    Decode target sequences conditioned on encoder states and context.

    Args:
        input_network: Target embedding module
        rnn: Stacked recurrent cell; with input feeding its input size must be
            embedding size + rnn_size
        generator: Maps attended outputs to a list of log-probability tensors
        input_feed: Enable input feeding
        coverage_size: Size of the coverage vector (0 disables coverage)
        attention: "global" or "cgate"; coverage attention when coverage_size > 0
    """

    def __init__(
        self,
        input_network: nn.Module,
        rnn: nn.Module,
        generator: nn.Module,
        input_feed: bool = True,
        coverage_size: Optional[int] = 0,
        attention: Optional[str] = "global",
    ):
        args = migrate_decoder_args(
            {"input_feed": input_feed, "coverage_size": coverage_size, "attention": attention}
        )
        super().__init__(
            DecoderStep(
                input_network,
                rnn,
                input_feed=args["input_feed"],
                coverage_size=args["coverage_size"],
                attention=args["attention"],
            )
        )

        self.args: Dict[str, Any] = {
            "rnn_size": rnn.output_size,
            "num_effective_layers": rnn.num_effective_layers,
            **args,
        }
        self.args["input_index"] = dict(self.network.input_index)
        self.args["output_index"] = dict(self.network.output_index)

        # The generator turns decoder outputs into likelihoods over the target vocabulary.
        self.generator = generator
        self._decoder_attn_path: Optional[str] = None

    @classmethod
    def load(
        cls,
        pretrained: Dict[str, Any],
        input_network: nn.Module,
        rnn: nn.Module,
        generator: nn.Module,
    ) -> "Decoder":
        """Return a new Decoder from data produced by serialize()."""
        args = migrate_decoder_args(pretrained["args"])
        decoder = cls(
            input_network,
            rnn,
            generator,
            input_feed=args["input_feed"],
            coverage_size=args["coverage_size"],
            attention=args["attention"],
        )
        decoder.load_state_dict(pretrained["state_dict"])
        return decoder

    def serialize(self) -> Dict[str, Any]:
        """Return data to serialize."""
        return {"name": "Decoder", "args": dict(self.args), "state_dict": self.state_dict()}

    def mask_padding(
        self,
        source_sizes: Optional[torch.Tensor] = None,
        source_length: Optional[int] = None,
        pad_left: bool = True,
    ) -> None:
        """
        Constrain attention to give zero weight to source padding.

        Args:
            source_sizes: True source lengths (batch_size,); None restores a
                plain softmax
            source_length: Padded source length
            pad_left: Side the source batch is padded on
        """
        if self._decoder_attn_path is None:
            self._decoder_attn_path = find_attention(self.network)
        decoder_attn = self.network.get_submodule(self._decoder_attn_path)

        if source_sizes is not None:
            softmax = MaskedSoftmax(source_sizes, source_length, pad_left)
        else:
            softmax = nn.Softmax(dim=-1)
        decoder_attn.set_softmax(softmax)

    def forward_one(
        self,
        input: StepInput,
        prev_states: List[torch.Tensor],
        context: torch.Tensor,
        prev_out: Optional[torch.Tensor] = None,
        prev_coverage: Optional[torch.Tensor] = None,
        t: int = 0,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], List[torch.Tensor]]:
        """
        Run one step of the decoder.

        Args:
            input: Target tokens at this step (batch_size,)
            prev_states: Previous layer states, each (batch_size, rnn_size)
            context: Encoder output (batch_size, src_len, rnn_size)
            prev_out: Previous attended output (batch_size, rnn_size); zeros if None
            prev_coverage: Previous coverage (batch_size, src_len, coverage_size);
                zeros if None
            t: Current timestep

        Returns:
            Tuple of (out, next_coverage, states) where out is the attended
            output, next_coverage is None without coverage, and states are
            the next layer states
        """
        batch_size = input[0].size(0) if isinstance(input, (list, tuple)) else input.size(0)

        inputs = list(prev_states)
        inputs.append(input)
        inputs.append(context)

        if self.args["input_feed"]:
            if prev_out is None:
                prev_out = self._pool.reuse(
                    "input_feed", (batch_size, self.args["rnn_size"]), context
                )
            inputs.append(prev_out)

        if self.args["coverage_size"] > 0:
            if prev_coverage is None:
                prev_coverage = self._pool.reuse(
                    "coverage_input",
                    (batch_size, context.size(1), self.args["coverage_size"]),
                    context,
                )
            inputs.append(prev_coverage)

        outputs = self._forward_step(t, inputs)

        output_index = self.args["output_index"]
        out = outputs[output_index["attn"]]
        next_coverage = outputs[output_index["coverage"]] if "coverage" in output_index else None
        states = outputs[: self.args["num_effective_layers"]]

        return out, next_coverage, states

    def forward_and_apply(
        self,
        batch,
        encoder_states: List[torch.Tensor],
        context: torch.Tensor,
        func: Callable[[torch.Tensor, int], None],
    ) -> None:
        """
        Run every decoder step, calling `func(out, t)` after each one.

        Args:
            batch: Batch container
            encoder_states: Initial decoder states (copied, never mutated)
            context: Encoder output (batch_size, src_len, rnn_size)
            func: Callback receiving the attended output and timestep
        """
        states = self._pool.copy_table("states", encoder_states)
        prev_out, prev_coverage = None, None

        for t in range(batch.target_length):
            prev_out, prev_coverage, states = self.forward_one(
                batch.get_target_input(t), states, context, prev_out, prev_coverage, t
            )
            func(prev_out, t)

    def _initial_states(self, batch, context: torch.Tensor) -> List[torch.Tensor]:
        return self._pool.reuse_table(
            "init_states",
            self.args["num_effective_layers"],
            (batch.size, self.args["rnn_size"]),
            context,
        )

    def forward(
        self,
        batch,
        encoder_states: Optional[List[torch.Tensor]],
        context: torch.Tensor,
    ) -> List[torch.Tensor]:
        """
        Compute all forward steps.

        Args:
            batch: Batch container
            encoder_states: Initial decoder states; zeros if None
            context: The context to apply attention to

        Returns:
            List of attended outputs, one (batch_size, rnn_size) per timestep
        """
        if encoder_states is None:
            encoder_states = self._initial_states(batch, context)

        self._reset_records()
        outputs = []
        self.forward_and_apply(batch, encoder_states, context, lambda out, t: outputs.append(out))
        return outputs

    def _generator_backward(
        self, output: torch.Tensor, target: torch.Tensor, criterion: nn.Module, normalizer: float
    ) -> Tuple[float, torch.Tensor]:
        """
        Run generator and criterion on one step and backpropagate to the output.

        The criterion gradient is divided by `normalizer` before flowing into
        the generator; the returned loss is not.

        Returns:
            Tuple of (loss, gradient w.r.t. the attended output)
        """
        output = output.detach().requires_grad_()
        with torch.enable_grad():
            preds = self.generator(output)
            loss = criterion(preds, target)
            grad_preds = torch.autograd.grad(loss, preds, retain_graph=True)
            torch.autograd.backward(preds, [g / normalizer for g in grad_preds])
        return loss.item(), output.grad

    def backward(
        self, batch, outputs: List[torch.Tensor], criterion: nn.Module
    ) -> Tuple[List[torch.Tensor], torch.Tensor, float]:
        """
        Backpropagate through the recorded decoder steps.

        Runs the generator and criterion on every output as part of the
        reverse walk, so the returned loss comes for free.

        Args:
            batch: The batch given to forward()
            outputs: Attended outputs returned by forward()
            criterion: Summed criterion taking (preds, target)

        Returns:
            Tuple of (grad_states_input, grad_context_input, loss) where
            grad_states_input is the gradient w.r.t. the initial decoder
            states and grad_context_input the gradient w.r.t. the context
        """
        rnn_size = self.args["rnn_size"]
        num_states = self.args["num_effective_layers"]
        coverage_size = self.args["coverage_size"]
        input_index = self.args["input_index"]
        like = outputs[0]

        grad_states = self._pool.reuse_table(
            "grad_states", num_states, (batch.size, rnn_size), like
        )
        grad_context = self._pool.reuse(
            "grad_context", (batch.size, batch.source_length, rnn_size), like
        )

        # Gradient slots follow the step output order: states, [coverage], attn.
        grad_outputs = list(grad_states)
        grad_coverage = None
        if coverage_size > 0:
            grad_coverage = self._pool.reuse(
                "grad_coverage", (batch.size, batch.source_length, coverage_size), like
            )
            grad_outputs.append(grad_coverage)
        grad_out = self._pool.reuse("grad_hidden", (batch.size, rnn_size), like)
        grad_outputs.append(grad_out)

        loss = 0.0

        for t in range(batch.target_length - 1, -1, -1):
            step_loss, grad_gen = self._generator_backward(
                outputs[t], batch.get_target_output(t), criterion, batch.total_size
            )
            loss += step_loss

            with torch.no_grad():
                grad_out.add_(grad_gen)

            grad_input = self._backward_step(t, grad_outputs)

            with torch.no_grad():
                # Every step attends over the same context.
                grad_context.add_(grad_input[input_index["context"]])
                grad_out.zero_()

                if self.args["input_feed"] and t > 0:
                    grad_out.add_(grad_input[input_index["input_feed"]])

                # Coverage only receives gradient through the next step.
                if grad_coverage is not None:
                    grad_coverage.copy_(grad_input[input_index["coverage"]])

                for buffer, grad in zip(grad_states, grad_input[:num_states]):
                    buffer.copy_(grad)

        self._reset_records()
        return grad_states, grad_context, loss

    @torch.no_grad()
    def compute_loss(
        self,
        batch,
        encoder_states: Optional[List[torch.Tensor]],
        context: torch.Tensor,
        criterion: nn.Module,
    ) -> float:
        """
        Compute the summed loss on a batch.

        Args:
            batch: Batch to score
            encoder_states: Initialization of the decoder; zeros if None
            context: The attention context
            criterion: Summed criterion taking (preds, target)
        """
        if encoder_states is None:
            encoder_states = self._initial_states(batch, context)

        loss = 0.0

        def accumulate(out, t):
            nonlocal loss
            preds = self.generator(out)
            loss += criterion(preds, batch.get_target_output(t)).item()

        self.forward_and_apply(batch, encoder_states, context, accumulate)
        return loss

    @torch.no_grad()
    def compute_score(
        self,
        batch,
        encoder_states: Optional[List[torch.Tensor]],
        context: torch.Tensor,
    ) -> torch.Tensor:
        """
        Sum the gold-token log-probabilities of each batch element.

        Returns:
            Scores (batch_size,), counting only steps within each target's length
        """
        if encoder_states is None:
            encoder_states = self._initial_states(batch, context)

        score = context.new_zeros(batch.size)

        def accumulate(out, t):
            pred = self.generator(out)[0]
            target = batch.get_target_output(t)
            log_probs = pred.gather(1, target.unsqueeze(1)).squeeze(1)
            in_target = (batch.target_size > t).to(log_probs.dtype)
            score.add_(log_probs * in_target)

        self.forward_and_apply(batch, encoder_states, context, accumulate)
        return score

    @torch.no_grad()
    def sample_batch(
        self,
        batch,
        encoder_states: List[torch.Tensor],
        context: torch.Tensor,
        max_length: Optional[int] = None,
        bos_idx: int = constants.BOS,
        eos_idx: int = constants.EOS,
        pad_idx: int = constants.PAD,
    ) -> torch.Tensor:
        """
        Greedy decoding of a batch.

        Row 0 starts as BOS and every other row as PAD. Step t reads row t - 1
        (BOS at t = 0) and writes the arg-max token into row t. Elements whose
        input at a step is EOS or PAD emit PAD. Decoding stops once every
        element has produced EOS.

        Args:
            batch: Batch container (only its size is read)
            encoder_states: Initial decoder states
            context: Encoder output (batch_size, src_len, rnn_size)
            max_length: Maximum number of steps (MAX_TARGET_LENGTH if None)
            bos_idx: Index of BOS token
            eos_idx: Index of EOS token
            pad_idx: Index of PAD token

        Returns:
            Sampled tokens (actual_length, batch_size)
        """
        if max_length is None:
            max_length = constants.MAX_TARGET_LENGTH
        like = torch.empty(0, dtype=torch.long, device=context.device)
        if max_length <= 0:
            return like.new_full((0, batch.size), pad_idx)

        sampled = self._pool.reuse("sampling", (max_length, batch.size), like)
        sampled.fill_(pad_idx)
        sampled[0].fill_(bos_idx)

        states = self._pool.copy_table("states", encoder_states)
        prev_out, prev_coverage = None, None
        finished = torch.zeros(batch.size, dtype=torch.bool, device=context.device)
        real_length = max_length

        for t in range(max_length):
            input = sampled[0] if t == 0 else sampled[t - 1]
            # The input row is read before row t is overwritten below.
            input = input.clone()

            prev_out, prev_coverage, states = self.forward_one(
                input, states, context, prev_out, prev_coverage, t
            )

            pred = self.generator(prev_out)[0]
            sampled[t].copy_(pred.argmax(dim=1))

            # After EOS (or PAD) only PAD is emitted.
            stopped = (input == eos_idx) | (input == pad_idx)
            sampled[t].masked_fill_(stopped, pad_idx)

            finished |= sampled[t] == eos_idx
            if finished.all():
                real_length = t + 1
                break

        return sampled.narrow(0, 0, real_length).clone()
