import pytest

from roundcrank.domain.records import RoundPhase, RoundSnapshot, Transition
from roundcrank.domain.state_machine import PhaseStateMachine, StateMachineError


def _snap(phase, **extra):
    data = {"round_id": 42, "phase": phase, "start_time": 1000, "end_time": 1030, "counter_round_id": 42}
    data.update(extra)
    return RoundSnapshot.model_validate(data)


def test_forward_progression_allowed():
    assert PhaseStateMachine.validate_progression(RoundPhase.WAITING, RoundPhase.AWAITING_RANDOMNESS)
    assert PhaseStateMachine.validate_progression(RoundPhase.AWAITING_RANDOMNESS, RoundPhase.FINISHED)
    # Single-wager rounds finish at close.
    assert PhaseStateMachine.validate_progression(RoundPhase.WAITING, RoundPhase.FINISHED)
    assert PhaseStateMachine.validate_progression(RoundPhase.FINISHED, RoundPhase.FINISHED)


def test_backward_progression_rejected():
    with pytest.raises(StateMachineError):
        PhaseStateMachine.validate_progression(RoundPhase.FINISHED, RoundPhase.WAITING)
    with pytest.raises(StateMachineError):
        PhaseStateMachine.validate_progression(RoundPhase.AWAITING_RANDOMNESS, RoundPhase.WAITING)


def test_regression_detection():
    assert PhaseStateMachine.is_regression(RoundPhase.FINISHED, RoundPhase.AWAITING_RANDOMNESS)
    assert not PhaseStateMachine.is_regression(RoundPhase.WAITING, RoundPhase.FINISHED)
    assert not PhaseStateMachine.is_regression(None, RoundPhase.WAITING)


def test_close_window_preconditions():
    waiting = _snap("waiting")
    assert not PhaseStateMachine.precondition_holds(Transition.CLOSE_WINDOW, waiting, now=1029)
    assert PhaseStateMachine.precondition_holds(Transition.CLOSE_WINDOW, waiting, now=1030)
    assert not PhaseStateMachine.is_applied(Transition.CLOSE_WINDOW, waiting)
    assert PhaseStateMachine.is_applied(Transition.CLOSE_WINDOW, _snap("awaitingWinnerRandomness"))
    assert PhaseStateMachine.is_applied(Transition.CLOSE_WINDOW, _snap("finished"))


def test_select_winner_preconditions():
    awaiting = _snap("awaitingWinnerRandomness", randomness_handle="H")
    assert PhaseStateMachine.precondition_holds(Transition.SELECT_WINNER, awaiting, now=0)
    assert not PhaseStateMachine.precondition_holds(Transition.SELECT_WINNER, _snap("awaitingWinnerRandomness"), now=0)
    assert not PhaseStateMachine.precondition_holds(Transition.SELECT_WINNER, _snap("waiting"), now=5000)


def test_select_winner_applied_only_once_counter_advances():
    partial = _snap("finished", winner="alice")
    assert not PhaseStateMachine.is_applied(Transition.SELECT_WINNER, partial)
    assert PhaseStateMachine.precondition_holds(Transition.SELECT_WINNER, partial, now=0)

    complete = _snap("finished", winner="alice", counter_round_id=43)
    assert PhaseStateMachine.is_applied(Transition.SELECT_WINNER, complete)
    assert not PhaseStateMachine.precondition_holds(Transition.SELECT_WINNER, complete, now=0)


def test_next_phase_and_job_action():
    assert PhaseStateMachine.next_phase(Transition.CLOSE_WINDOW) == RoundPhase.AWAITING_RANDOMNESS
    assert PhaseStateMachine.next_phase(Transition.SELECT_WINNER) == RoundPhase.FINISHED
    assert Transition.CLOSE_WINDOW.job_action.value == "close_window"
    assert Transition.SELECT_WINNER.job_action.value == "poll_randomness"
