import pytest
import torch
import torch.nn as nn

from nmt_core.data.batch import Batch
from nmt_core.models.attention import GlobalAttention, MaskedSoftmax
from nmt_core.models.cells.rnn_cell import build_cell
from nmt_core.models.decoder import Decoder
from nmt_core.models.generator import Generator, NMTCriterion

VOCAB = 15
EMB = 4
RNN = 6
COVERAGE = 3

CONFIGS = [
    dict(input_feed=True, coverage_size=0, attention="global"),
    dict(input_feed=False, coverage_size=0, attention="cgate"),
    dict(input_feed=True, coverage_size=COVERAGE, attention="global"),
    dict(input_feed=False, coverage_size=COVERAGE, attention="cgate"),
]


def make_decoder(cell="lstm", layers=2, dropout=0.0, **options):
    torch.manual_seed(0)
    input_feed = options.get("input_feed", True)
    rnn = build_cell(cell, layers, EMB + (RNN if input_feed else 0), RNN, dropout)
    decoder = Decoder(nn.Embedding(VOCAB, EMB), rnn, Generator(RNN, VOCAB), **options)
    return decoder.double()


def make_inputs(decoder, batch, source_length=4):
    torch.manual_seed(2)
    n = decoder.args["num_effective_layers"]
    states = [torch.randn(batch.size, RNN, dtype=torch.float64) for _ in range(n)]
    context = torch.randn(batch.size, source_length, RNN, dtype=torch.float64)
    return states, context


def unroll_loss(decoder, batch, states, context, criterion):
    """Differentiable reference: plain autograd over every decoder step."""
    prev_out = context.new_zeros(batch.size, RNN)
    coverage = context.new_zeros(batch.size, context.size(1), COVERAGE)
    n = decoder.args["num_effective_layers"]
    loss = 0

    for t in range(batch.target_length):
        inputs = list(states) + [batch.get_target_input(t), context]
        if decoder.args["input_feed"]:
            inputs.append(prev_out)
        if decoder.args["coverage_size"] > 0:
            inputs.append(coverage)
        outputs = decoder.network(inputs)
        states = outputs[:n]
        prev_out = outputs[-1]
        if decoder.args["coverage_size"] > 0:
            coverage = outputs[n]
        loss = loss + criterion(decoder.generator(prev_out), batch.get_target_output(t))

    return loss


def target_batch():
    return Batch([[4, 5, 6, 7]] * 3, [[4, 5], [6, 7, 8, 9], [10]])


@pytest.mark.parametrize("options", CONFIGS)
def test_backward_matches_unrolled_autograd(options):
    decoder = make_decoder(**options)
    decoder.train()
    batch = target_batch()
    criterion = NMTCriterion()
    states, context = make_inputs(decoder, batch)

    decoder.zero_grad()
    outputs = decoder(batch, states, context)
    grad_states, grad_context, loss = decoder.backward(batch, outputs, criterion)
    grad_states = [g.clone() for g in grad_states]
    grad_context = grad_context.clone()
    manual = {name: p.grad.clone() for name, p in decoder.named_parameters()}

    decoder.zero_grad()
    ref_states = [s.clone().requires_grad_() for s in states]
    ref_context = context.clone().requires_grad_()
    ref_loss = unroll_loss(decoder, batch, ref_states, ref_context, criterion)
    (ref_loss / batch.total_size).backward()

    assert loss == pytest.approx(ref_loss.item())
    torch.testing.assert_close(grad_context, ref_context.grad)
    for grad, ref in zip(grad_states, ref_states):
        torch.testing.assert_close(grad, ref.grad)
    for name, p in decoder.named_parameters():
        torch.testing.assert_close(manual[name], p.grad, msg=name)


def test_backward_releases_recorded_steps():
    decoder = make_decoder()
    decoder.train()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)

    outputs = decoder(batch, states, context)
    assert sorted(decoder._inputs) == list(range(batch.target_length))

    decoder.backward(batch, outputs, NMTCriterion())
    assert decoder._inputs == {}


@pytest.mark.parametrize("options", CONFIGS)
def test_forward_one_substitutes_zeros_for_missing_inputs(options):
    decoder = make_decoder(**options)
    decoder.eval()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    tokens = batch.get_target_input(0)
    zero_out = context.new_zeros(batch.size, RNN)
    zero_coverage = context.new_zeros(batch.size, context.size(1), COVERAGE)

    with torch.no_grad():
        out, coverage, next_states = decoder.forward_one(tokens, states, context)
        explicit = decoder.forward_one(
            tokens,
            states,
            context,
            zero_out if options["input_feed"] else None,
            zero_coverage if options["coverage_size"] else None,
        )

    torch.testing.assert_close(out, explicit[0])
    assert len(next_states) == decoder.args["num_effective_layers"]
    if options["coverage_size"]:
        assert coverage.shape == (batch.size, context.size(1), COVERAGE)
        torch.testing.assert_close(coverage, explicit[1])
    else:
        assert coverage is None


def test_forward_one_is_deterministic():
    decoder = make_decoder(input_feed=True, coverage_size=COVERAGE)
    decoder.eval()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    tokens = batch.get_target_input(1)
    prev_out = torch.randn(batch.size, RNN, dtype=torch.float64)

    with torch.no_grad():
        first = decoder.forward_one(tokens, states, context, prev_out, None, 1)
        second = decoder.forward_one(tokens, states, context, prev_out, None, 1)

    torch.testing.assert_close(first[0], second[0])
    torch.testing.assert_close(first[1], second[1])
    for a, b in zip(first[2], second[2]):
        torch.testing.assert_close(a, b)


def test_forward_without_encoder_states_starts_from_zero():
    decoder = make_decoder()
    decoder.eval()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    zeros = [torch.zeros_like(s) for s in states]

    with torch.no_grad():
        implicit = decoder(batch, None, context)
        explicit = decoder(batch, zeros, context)

    assert len(implicit) == batch.target_length
    for a, b in zip(implicit, explicit):
        torch.testing.assert_close(a, b)


def test_score_and_loss_agree():
    decoder = make_decoder(coverage_size=COVERAGE)
    decoder.eval()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    criterion = NMTCriterion()

    loss = decoder.compute_loss(batch, states, context, criterion)
    score = decoder.compute_score(batch, states, context)

    assert score.shape == (batch.size,)
    assert score.sum().item() == pytest.approx(-loss)


def test_compute_loss_matches_backward_loss():
    decoder = make_decoder()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    criterion = NMTCriterion()

    decoder.eval()
    loss = decoder.compute_loss(batch, states, context, criterion)

    decoder.train()
    outputs = decoder(batch, states, context)
    _, _, train_loss = decoder.backward(batch, outputs, criterion)

    assert train_loss == pytest.approx(loss)


def test_mask_padding_swaps_softmax_idempotently():
    decoder = make_decoder()
    keys = set(decoder.state_dict())
    sizes = torch.tensor([2, 4, 3])

    decoder.mask_padding(sizes, 4)
    decoder.mask_padding(sizes, 4)
    assert isinstance(decoder.network.attn.softmax, MaskedSoftmax)
    assert set(decoder.state_dict()) == keys

    decoder.mask_padding()
    assert isinstance(decoder.network.attn.softmax, nn.Softmax)


@pytest.mark.parametrize("pad_left", [True, False])
def test_masked_softmax_ignores_padding(pad_left):
    attention = GlobalAttention(RNN)
    attention.set_softmax(MaskedSoftmax(torch.tensor([2, 4]), 4, pad_left))

    weights = attention.softmax(torch.randn(2, 4))

    padding = [0, 1] if pad_left else [2, 3]
    assert torch.all(weights[0, padding] == 0)
    torch.testing.assert_close(weights.sum(dim=1), torch.ones(2))


def test_load_migrates_args_without_coverage():
    decoder = make_decoder().float()
    pretrained = decoder.serialize()
    for key in ("coverage_size", "attention"):
        del pretrained["args"][key]

    torch.manual_seed(1)
    rnn = build_cell("lstm", 2, EMB + RNN, RNN)
    restored = Decoder.load(pretrained, nn.Embedding(VOCAB, EMB), rnn, Generator(RNN, VOCAB))

    assert restored.args["coverage_size"] == 0
    assert isinstance(restored.network.attn, GlobalAttention)
    for key, value in decoder.state_dict().items():
        torch.testing.assert_close(restored.state_dict()[key], value)


def test_reset_preallocation_drops_buffers():
    decoder = make_decoder()
    decoder.eval()
    batch = target_batch()
    states, context = make_inputs(decoder, batch)
    decoder.compute_loss(batch, states, context, NMTCriterion())
    assert len(decoder._pool) > 0

    decoder.reset_preallocation()
    assert len(decoder._pool) == 0
