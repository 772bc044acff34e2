from typing import Dict, Optional, Set
from roundcrank.domain.records import RoundPhase, RoundSnapshot, Transition

class StateMachineError(Exception):
    """Raised when an invalid phase progression is attempted."""
    pass

class PhaseStateMachine:
    """
    Mechanical enforcer for round phases.
    Phases only move forward within a round id: Waiting -> AwaitingRandomness -> Finished.
    """

    _ORDER: Dict[RoundPhase, int] = {
        RoundPhase.WAITING: 0,
        RoundPhase.AWAITING_RANDOMNESS: 1,
        RoundPhase.FINISHED: 2,
    }

    # Single-participant rounds are refunded at close and skip straight to Finished.
    _TRANSITIONS: Dict[RoundPhase, Set[RoundPhase]] = {
        RoundPhase.WAITING: {RoundPhase.AWAITING_RANDOMNESS, RoundPhase.FINISHED},
        RoundPhase.AWAITING_RANDOMNESS: {RoundPhase.FINISHED},
        RoundPhase.FINISHED: set(), # Final State
    }

    _NEXT_PHASE: Dict[Transition, RoundPhase] = {
        Transition.CLOSE_WINDOW: RoundPhase.AWAITING_RANDOMNESS,
        Transition.SELECT_WINNER: RoundPhase.FINISHED,
    }

    @staticmethod
    def rank(phase: RoundPhase) -> int:
        return PhaseStateMachine._ORDER[phase]

    @staticmethod
    def is_regression(previous: Optional[RoundPhase], observed: RoundPhase) -> bool:
        if previous is None:
            return False
        return PhaseStateMachine.rank(observed) < PhaseStateMachine.rank(previous)

    @staticmethod
    def validate_progression(current: RoundPhase, requested: RoundPhase) -> bool:
        """Raises unless `requested` is `current` or a legal forward step from it."""
        if requested == current:
            return True
        if requested not in PhaseStateMachine._TRANSITIONS.get(current, set()):
            raise StateMachineError(f"Invalid phase progression: {current.value} -> {requested.value}")
        return True

    @staticmethod
    def next_phase(transition: Transition) -> RoundPhase:
        return PhaseStateMachine._NEXT_PHASE[transition]

    @staticmethod
    def is_applied(transition: Transition, snapshot: RoundSnapshot) -> bool:
        """Whether the ledger already reflects `transition` for this round."""
        if transition == Transition.CLOSE_WINDOW:
            return snapshot.phase != RoundPhase.WAITING
        # Winner selection is complete only when the round counter moved on as well.
        return snapshot.phase == RoundPhase.FINISHED and snapshot.round_advanced

    @staticmethod
    def precondition_holds(transition: Transition, snapshot: RoundSnapshot, now: float) -> bool:
        """Whether the ledger would accept `transition` right now."""
        if transition == Transition.CLOSE_WINDOW:
            return snapshot.phase == RoundPhase.WAITING and now >= snapshot.end_time
        if snapshot.phase == RoundPhase.AWAITING_RANDOMNESS:
            return snapshot.randomness_handle is not None
        # Finished on the ledger but the counter never advanced: payout partially applied.
        return snapshot.phase == RoundPhase.FINISHED and not snapshot.round_advanced
