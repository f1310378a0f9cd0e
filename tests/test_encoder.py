import pytest
import torch
import torch.nn as nn

from nmt_core.data.batch import Batch
from nmt_core.models.cells.rnn_cell import build_cell
from nmt_core.models.encoder import Encoder

VOCAB = 20
EMB = 5
RNN = 7


def make_encoder(cell="lstm", layers=2, dropout=0.0, rec_dropout=0.0):
    torch.manual_seed(0)
    rnn = build_cell(cell, layers, EMB, RNN)
    return Encoder(nn.Embedding(VOCAB, EMB), rnn, dropout, rec_dropout).double()


def unroll(encoder, batch):
    """Differentiable reference unrolling of the encoder step graph."""
    n = encoder.args["num_effective_layers"]
    like = next(encoder.parameters())
    states = [like.new_zeros(batch.size, RNN) for _ in range(n)]
    masks = [m.clone() for m in encoder.generate_dropout_mask(batch.size)]
    finals = list(states)
    columns = []

    for t in range(batch.source_length):
        states = encoder.network(states + masks + [batch.get_source_input(t)])
        if encoder.mask_pad:
            padded = batch.source_pad_mask(t).unsqueeze(1)
            states = [s.masked_fill(padded, 0) for s in states]
            ended = (batch.source_size == t + 1).unsqueeze(1)
            finals = [torch.where(ended, s, f) for s, f in zip(states, finals)]
        columns.append(states[-1])

    if not (encoder.mask_pad and not batch.source_input_pad_left):
        finals = states
    return finals, torch.stack(columns, dim=1)


@pytest.mark.parametrize("cell", ["lstm", "rnn"])
def test_context_holds_top_state_of_every_step(cell):
    encoder = make_encoder(cell)
    encoder.eval()
    batch = Batch([[4, 5, 6, 7], [8, 9, 10, 11]])

    final_states, context = encoder(batch)

    masks = encoder.generate_dropout_mask(batch.size)
    states = [torch.zeros(batch.size, RNN, dtype=torch.float64) for _ in final_states]
    for t in range(batch.source_length):
        states = encoder.network(states + masks + [batch.get_source_input(t)])
        torch.testing.assert_close(context[:, t], states[-1].detach())

    for final, state in zip(final_states, states):
        torch.testing.assert_close(final.detach(), state.detach())


def test_right_padding_keeps_state_of_last_real_token():
    encoder = make_encoder()
    encoder.mask_padding()
    encoder.eval()
    batch = Batch([[4, 5, 6], [4, 5, 6, 7, 8]], pad_left=False)

    short_states, short_context = encoder(Batch([[4, 5, 6]]))
    short_states = [s.detach().clone() for s in short_states]
    short_context = short_context.clone()
    long_states, _ = encoder(Batch([[4, 5, 6, 7, 8]]))

    final_states, context = encoder(batch)
    for final, short, long in zip(final_states, short_states, long_states):
        torch.testing.assert_close(final[0], short[0])
        torch.testing.assert_close(final[1], long[0].detach())
    torch.testing.assert_close(context[0, :3], short_context[0])
    assert torch.all(context[0, 3:] == 0)


def test_left_padding_zeroes_leading_steps():
    encoder = make_encoder()
    encoder.mask_padding()
    encoder.eval()

    short_states, _ = encoder(Batch([[4, 5, 6]]))
    short_states = [s.detach().clone() for s in short_states]

    final_states, context = encoder(Batch([[4, 5, 6], [4, 5, 6, 7, 8]]))
    assert torch.all(context[0, :2] == 0)
    for final, short in zip(final_states, short_states):
        torch.testing.assert_close(final[0].detach(), short[0])


def test_dropout_masks_are_shared_across_timesteps():
    encoder = make_encoder(layers=3, dropout=0.5, rec_dropout=0.5)
    encoder.train()
    batch = Batch([[4, 5, 6, 7], [8, 9, 10, 11]])

    encoder(batch)

    for name in ("input_mask", "recurrent_mask"):
        index = encoder.network.input_index[name]
        first = encoder._inputs[0][index]
        assert all(encoder._inputs[t][index] is first for t in range(batch.source_length))
        values = set(first.unique().tolist())
        assert values <= {0.0, 2.0}


def test_masks_are_ones_without_dropout_or_outside_training():
    encoder = make_encoder(layers=2, dropout=0.0, rec_dropout=0.0)
    encoder.train()
    assert all(torch.all(m == 1) for m in encoder.generate_dropout_mask(3))

    encoder = make_encoder(layers=2, dropout=0.5, rec_dropout=0.5)
    encoder.eval()
    masks = encoder.generate_dropout_mask(3)
    assert [m.shape for m in masks] == [(3, 1, RNN), (3, 2, RNN)]
    assert all(torch.all(m == 1) for m in masks)


def test_nothing_is_recorded_outside_training():
    encoder = make_encoder()
    encoder.eval()
    encoder(Batch([[4, 5, 6]]))

    assert encoder._inputs == {}


@pytest.mark.parametrize("pad_left", [True, False])
def test_backward_matches_unrolled_autograd(pad_left):
    encoder = make_encoder()
    encoder.mask_padding()
    encoder.train()
    batch = Batch([[4, 5, 6], [7, 8, 9, 10, 11], [12, 13, 14, 15]], pad_left=pad_left)

    torch.manual_seed(1)
    n = encoder.args["num_effective_layers"]
    grad_final = [torch.randn(batch.size, RNN, dtype=torch.float64) for _ in range(n)]
    grad_context = torch.randn(batch.size, batch.source_length, RNN, dtype=torch.float64)

    encoder.zero_grad()
    encoder(batch)
    grad_inputs = encoder.backward(batch, grad_final, grad_context)
    manual = {name: p.grad.clone() for name, p in encoder.named_parameters()}

    assert sorted(grad_inputs) == list(range(batch.source_length))
    assert all(g is None for g in grad_inputs.values())

    encoder.zero_grad()
    finals, context = unroll(encoder, batch)
    loss = (context * grad_context).sum()
    for final, grad in zip(finals, grad_final):
        loss = loss + (final * grad).sum()
    loss.backward()

    for name, p in encoder.named_parameters():
        torch.testing.assert_close(manual[name], p.grad, msg=name)


@pytest.mark.parametrize("pad_left", [True, False])
def test_backward_without_final_state_gradient(pad_left):
    encoder = make_encoder()
    encoder.mask_padding()
    encoder.train()
    batch = Batch([[4, 5, 6], [7, 8, 9, 10, 11]], pad_left=pad_left)
    n = encoder.args["num_effective_layers"]

    torch.manual_seed(1)
    grad_context = torch.randn(batch.size, batch.source_length, RNN, dtype=torch.float64)
    zeros = [torch.zeros(batch.size, RNN, dtype=torch.float64) for _ in range(n)]

    encoder.zero_grad()
    encoder(batch)
    encoder.backward(batch, None, grad_context)
    unused = {name: p.grad.clone() for name, p in encoder.named_parameters()}

    encoder.zero_grad()
    encoder(batch)
    encoder.backward(batch, zeros, grad_context)

    for name, p in encoder.named_parameters():
        torch.testing.assert_close(unused[name], p.grad, msg=name)
