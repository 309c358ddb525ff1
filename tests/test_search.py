import math
import random

import pytest

from core.errors import ConfigurationError, ObserverError, OracleError
from core.models import StopReason
from core.observer import ResponseCollector
from core.oracle import ModelOracle
from core.search import BeamSearchDriver, run_beam_search
from tests.fakes import A, B, C, D, EOS, RecordingObserver, TableOracle


def test_first_step_ranks_and_diverges(recorder):
    oracle = TableOracle(default={A: 0.6, B: 0.4})
    tokens = run_beam_search(oracle, recorder, width=2, start_position=0, max_new_tokens=3)

    first = recorder.states[0]
    assert first.is_first_call and not first.is_last_call
    assert [b.tokens for b in first.beams] == [(A,), (B,)]
    assert first.beams[0].cumulative_log_prob == pytest.approx(math.log(0.6))
    assert first.beams[1].cumulative_log_prob == pytest.approx(math.log(0.4))
    assert first.common_prefix_length == 0

    # step 2 keeps AA and AB (AB ties BA and came first), so A is confirmed
    second = recorder.states[1]
    assert [b.tokens for b in second.beams] == [(A, A), (A, B)]
    assert second.common_prefix == (A,)

    assert tokens == [A, A, A]
    assert len(recorder.states) == 4
    assert recorder.states[-1].is_last_call
    assert not any(s.is_first_call for s in recorder.states[1:])


def test_forced_common_token_is_confirmed(recorder):
    oracle = TableOracle(
        table={(): {C: 1.0}},
        default={A: 0.6, B: 0.4},
    )
    run_beam_search(oracle, recorder, width=2, start_position=0, max_new_tokens=2)

    assert recorder.states[0].common_prefix_length == 1
    assert recorder.states[0].common_prefix == (C,)
    assert [b.tokens for b in recorder.states[0].beams] == [(C,)]
    assert recorder.states[1].common_prefix_length == 0


def test_pruning_converges_to_common_prefix(recorder):
    oracle = TableOracle(table={
        (): {A: 0.6, B: 0.4},
        (A,): {C: 0.9, D: 0.1},
        (B,): {C: 0.01, D: 0.01},
    })
    tokens = run_beam_search(oracle, recorder, width=2, start_position=0, max_new_tokens=2)

    assert [b.tokens for b in recorder.states[1].beams] == [(A, C), (A, D)]
    assert recorder.states[1].common_prefix == (A,)
    assert tokens == [A, C]


def test_eos_beam_gets_no_more_continuations(recorder):
    oracle = TableOracle(table={
        (): {EOS: 0.6, A: 0.4},
        (A,): {B: 0.5, C: 0.5},
    })
    driver = BeamSearchDriver(oracle, recorder, width=2, max_new_tokens=2, eos_token_id=EOS)
    result = driver.run()

    step1 = recorder.states[0]
    assert step1.beams[0].tokens == (EOS,) and step1.beams[0].is_terminal
    assert not step1.beams[1].is_terminal

    second_batch = oracle.batches[1]
    assert [r.tokens for r in second_batch] == [(A,)]
    assert second_batch[0].beam_index == 1

    step2 = recorder.states[1]
    assert step2.beams[0].tokens == (EOS,)
    assert step2.beams[0].is_terminal
    assert result.tokens == [EOS]
    assert result.stop_reason is StopReason.MAX_NEW_TOKENS


def test_all_terminal_at_once_stops_without_more_requests(recorder):
    oracle = TableOracle(table={
        (): {A: 0.6, B: 0.4},
        (A,): {EOS: 1.0},
        (B,): {EOS: 1.0},
    })
    driver = BeamSearchDriver(oracle, recorder, width=2, max_new_tokens=10, eos_token_id=EOS)
    result = driver.run()

    assert len(oracle.batches) == 2
    assert result.stop_reason is StopReason.ALL_TERMINAL
    assert result.steps == 2
    assert result.tokens == [A, EOS]
    assert result.best_beam.is_terminal


def test_stop_when_best_terminal():
    oracle = TableOracle(table={(): {EOS: 0.6, A: 0.4}}, default={B: 1.0})
    driver = BeamSearchDriver(
        oracle, None, width=2, max_new_tokens=5, eos_token_id=EOS, stop_when_best_terminal=True
    )
    result = driver.run()
    assert result.stop_reason is StopReason.BEST_TERMINAL
    assert result.tokens == [EOS]
    assert len(oracle.batches) == 1


def test_observer_can_cancel_search():
    observer = RecordingObserver(terminate=lambda s: range(len(s.beams)))
    oracle = TableOracle(default={A: 0.6, B: 0.4})
    result = BeamSearchDriver(oracle, observer, width=2, max_new_tokens=10).run()

    assert len(oracle.batches) == 1
    assert result.stop_reason is StopReason.ALL_TERMINAL
    assert result.tokens == [A]
    assert observer.states[-1].is_last_call


def test_observer_termination_is_honoured_next_step():
    # stop beam B after step 1 even though no EOS was produced
    def stop_b(state):
        return {i for i, b in enumerate(state.beams) if b.tokens[-1:] == (B,)}

    observer = RecordingObserver(terminate=stop_b)
    oracle = TableOracle(default={A: 0.6, B: 0.4})
    BeamSearchDriver(oracle, observer, width=2, max_new_tokens=2).run()

    assert [r.tokens for r in oracle.batches[1]] == [(A,)]
    assert observer.states[0].beams[1].is_terminal is False
    assert any(b.tokens == (B,) and b.is_terminal for b in observer.states[1].beams)


def test_failed_beam_is_kept_as_terminal(recorder):
    oracle = TableOracle(table={
        (): {A: 0.6, B: 0.4},
        (A,): {C: 1.0},
        (B,): OracleError("context too long"),
        (A, C): {D: 1.0},
    })
    result = BeamSearchDriver(oracle, recorder, width=2, max_new_tokens=3).run()

    step2 = recorder.states[1]
    assert [b.tokens for b in step2.beams] == [(A, C), (B,)]
    assert step2.beams[1].is_terminal
    assert step2.beams[1].cumulative_log_prob == pytest.approx(math.log(0.4))
    assert result.tokens == [A, C, D]


def test_all_beams_failing_ends_search(recorder):
    oracle = TableOracle(table={(): {A: 1.0}, (A,): OracleError("backend down")})
    result = BeamSearchDriver(oracle, recorder, width=1, max_new_tokens=5).run()

    assert result.stop_reason is StopReason.ORACLE_FAILED
    assert result.steps == 1
    assert result.tokens == [A]
    last = recorder.states[-1]
    assert last.is_last_call
    assert last.common_prefix_length == 0


def test_batch_oracle_error_before_first_step(recorder):
    class DownOracle(ModelOracle):
        def continue_sequence(self, request):
            raise AssertionError("not used")

        def continue_many(self, requests):
            raise OracleError("unavailable")

    result = BeamSearchDriver(DownOracle(), recorder, width=2, max_new_tokens=5).run()

    assert result.tokens == []
    assert result.steps == 0
    assert result.stop_reason is StopReason.ORACLE_FAILED
    assert len(recorder.states) == 1
    assert recorder.states[0].is_first_call and recorder.states[0].is_last_call


@pytest.mark.parametrize("kwargs", [
    {"width": 0, "max_new_tokens": 5},
    {"width": 2, "max_new_tokens": 0},
    {"width": 2, "max_new_tokens": 5, "fan_out": 0},
    {"width": True, "max_new_tokens": 5},
    {"width": 2, "max_new_tokens": True},
    {"width": 2, "max_new_tokens": 5, "fan_out": True},
])
def test_bad_configuration_fails_before_stepping(kwargs):
    oracle = TableOracle(default={A: 1.0})
    with pytest.raises(ConfigurationError):
        run_beam_search(oracle, None, start_position=0, **kwargs)
    assert oracle.batches == []


def test_observer_exception_surfaces_as_observer_error():
    def explode(state):
        if state.step == 2:
            raise RuntimeError("boom")

    oracle = TableOracle(table={(): {A: 1.0}}, default={B: 0.6, C: 0.4})
    driver = BeamSearchDriver(oracle, explode, width=2, max_new_tokens=5)
    with pytest.raises(ObserverError) as excinfo:
        driver.run()

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    # step 1 confirmed A; step 2 was fully applied before the observer ran
    assert driver.confirmed_tokens == [A]
    assert len(driver.beam_set) == 2
    assert [b.tokens for b in driver.beam_set.beams] == [[A, B], [A, C]]


def test_observer_bad_index_is_observer_error():
    oracle = TableOracle(default={A: 0.6, B: 0.4})
    driver = BeamSearchDriver(oracle, lambda s: [7], width=2, max_new_tokens=3)
    with pytest.raises(ObserverError):
        driver.run()
    assert not any(b.is_terminal for b in driver.beam_set.beams)


def test_fan_out_limits_candidates(recorder):
    oracle = TableOracle(default={A: 0.5, B: 0.3, C: 0.2})
    run_beam_search(oracle, recorder, width=2, start_position=0, max_new_tokens=1, fan_out=1)
    assert [b.tokens for b in recorder.states[0].beams] == [(A,)]


def test_renormalize_scores(recorder):
    oracle = TableOracle(default={A: 0.3, B: 0.1})
    run_beam_search(oracle, recorder, width=2, start_position=0, max_new_tokens=1, renormalize=True)
    probs = [b.probability for b in recorder.states[0].beams]
    assert probs == pytest.approx([0.75, 0.25])


def test_requests_carry_position_and_pending_tokens():
    oracle = TableOracle(default={A: 1.0})
    run_beam_search(oracle, None, width=1, start_position=5, max_new_tokens=3)

    positions = [batch[0].position for batch in oracle.batches]
    assert positions == [5, 6, 7]
    last = oracle.batches[-1][0]
    assert last.tokens == (A, A)
    assert last.confirmed_length == 2
    assert last.pending == ()


def test_response_collector_matches_return_value():
    collector = ResponseCollector()
    oracle = TableOracle(default={A: 0.6, B: 0.4})
    tokens = run_beam_search(oracle, collector, width=3, start_position=0, max_new_tokens=4)
    assert collector.tokens == tokens
    assert collector.finished


class HashedOracle(ModelOracle):
    """Arbitrary but deterministic distributions keyed on the context."""

    def __init__(self, vocab=6):
        self.vocab = vocab

    def continue_sequence(self, request):
        rng = random.Random(repr(request.tokens))
        weights = [rng.random() + 0.01 for _ in range(self.vocab)]
        total = sum(weights)
        dist = {tok: math.log(w / total) for tok, w in enumerate(weights)}
        return dist


@pytest.mark.parametrize("width,max_new", [(1, 5), (2, 6), (3, 8), (4, 5)])
def test_step_invariants_hold(width, max_new):
    observer = RecordingObserver()
    result = BeamSearchDriver(
        HashedOracle(), observer, width=width, max_new_tokens=max_new, eos_token_id=0
    ).run()

    streamed = []
    for state in observer.states:
        scores = [b.cumulative_log_prob for b in state.beams]
        assert len(state.beams) <= width
        assert scores == sorted(scores, reverse=True)

        start = state.confirmed_length - state.common_prefix_length
        for beam in state.beams:
            assert len(beam.tokens) >= state.confirmed_length
            assert beam.tokens[start:state.confirmed_length] == state.common_prefix
        streamed.extend(state.common_prefix)

        # what has been streamed so far is a prefix of every live beam
        for beam in state.beams:
            assert list(beam.tokens[:len(streamed)]) == streamed

    assert streamed == result.tokens
    assert list(result.best_beam.tokens) == result.tokens


def test_deterministic_runs():
    def run():
        obs = RecordingObserver()
        res = BeamSearchDriver(HashedOracle(), obs, width=3, max_new_tokens=6).run()
        return res.tokens, [(s.beams, s.common_prefix) for s in obs.states]

    assert run() == run()
