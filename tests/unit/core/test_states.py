"""
InitState 状态机测试
"""
import pytest

from core.states import PIPELINE_ORDER, TERMINAL_STATES, VALID_TRANSITIONS, InitState, validate_transition


class TestInitStateTransitions:

    def test_pipeline_is_strictly_forward(self):
        for current, following in zip(PIPELINE_ORDER, PIPELINE_ORDER[1:]):
            assert validate_transition(current, following)
            assert not validate_transition(following, current)

    def test_every_non_terminal_state_can_fail(self):
        for state in PIPELINE_ORDER[:-1]:
            assert validate_transition(state, InitState.FAILED)

    def test_skipping_a_stage_is_illegal(self):
        assert not validate_transition(InitState.CHECKING_STORAGE, InitState.LOADING_TOKEN)
        assert not validate_transition(InitState.NOT_STARTED, InitState.FULLY_LOADED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_have_no_exit(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()
        for state in InitState:
            assert not validate_transition(terminal, state)

    def test_accepts_raw_values(self):
        assert validate_transition("not_started", "checking_storage")

    def test_unknown_state_is_rejected(self):
        assert not validate_transition("not_started", "bogus")
        assert not validate_transition("bogus", "failed")
