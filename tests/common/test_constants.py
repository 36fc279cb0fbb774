# tests/common/test_constants.py
"""
Тесты для модуля констант и иерархии ошибок.
"""

import pytest

from src.common.constants import (
    ASSIGNED_STATES,
    DISPATCHING_STATES,
    TERMINAL_STATES,
    ProblemType,
    RequestState,
    Role,
    Skill,
    TypeMsg,
    required_skill,
)
from src.common.errors import (
    AuthorizationDenied,
    CapacityExceeded,
    DispatchError,
    InvalidInput,
    InvalidOrigin,
    NotFound,
    RadiusTooLarge,
    StaleConflict,
    StalePresence,
    StatePrecondition,
    TerminalState,
    Unavailable,
)


class TestTypeMsg:
    """Тесты для enum TypeMsg."""

    def test_type_msg_values(self) -> None:
        assert TypeMsg.DEBUG.value == "debug"
        assert TypeMsg.CRITICAL.value == "critical"

    def test_type_msg_is_str_enum(self) -> None:
        assert isinstance(TypeMsg.DEBUG, str)
        assert TypeMsg.INFO == "info"


class TestRequestStates:
    """Тесты групп состояний заявки."""

    def test_groups_do_not_overlap(self) -> None:
        """Проверяет, что поиск механика и терминальные состояния не пересекаются."""
        assert not DISPATCHING_STATES & TERMINAL_STATES
        assert not DISPATCHING_STATES & ASSIGNED_STATES

    def test_completed_is_assigned_and_terminal(self) -> None:
        assert RequestState.COMPLETED in ASSIGNED_STATES
        assert RequestState.COMPLETED in TERMINAL_STATES

    def test_every_state_is_grouped(self) -> None:
        grouped = DISPATCHING_STATES | ASSIGNED_STATES | TERMINAL_STATES
        assert grouped == set(RequestState)

    def test_role_values(self) -> None:
        assert {role.value for role in Role} == {"user", "mechanic", "admin"}


class TestRequiredSkill:
    @pytest.mark.parametrize(
        ("problem_type", "skill"),
        [
            (ProblemType.TIRE_CHANGE, Skill.TIRE_CHANGE),
            (ProblemType.TOWING, Skill.TOWING),
            (ProblemType.EMERGENCY_SERVICE, Skill.EMERGENCY_SERVICE),
        ],
    )
    def test_skill_matches_problem(self, problem_type: ProblemType, skill: Skill) -> None:
        assert required_skill(problem_type) == skill

    def test_other_needs_no_skill(self) -> None:
        assert required_skill(ProblemType.OTHER) is None

    def test_every_problem_maps_to_skill(self) -> None:
        """Проверяет, что для каждого типа неисправности есть навык."""
        for problem_type in ProblemType:
            if problem_type != ProblemType.OTHER:
                assert isinstance(required_skill(problem_type), Skill)


class TestErrors:
    """Тесты иерархии доменных ошибок."""

    @pytest.mark.parametrize(
        ("error", "kind", "status"),
        [
            (InvalidInput, "InvalidInput", 400),
            (StatePrecondition, "StatePrecondition", 409),
            (AuthorizationDenied, "AuthorizationDenied", 403),
            (StaleConflict, "StaleConflict", 409),
            (CapacityExceeded, "CapacityExceeded", 409),
            (Unavailable, "Unavailable", 503),
            (TerminalState, "Terminal", 409),
            (NotFound, "NotFound", 404),
        ],
    )
    def test_kind_and_status(self, error: type[DispatchError], kind: str, status: int) -> None:
        exc = error("сообщение")

        assert exc.kind == kind
        assert exc.http_status == status
        assert isinstance(exc, DispatchError)

    def test_subclasses_keep_parent_kind(self) -> None:
        """Проверяет, что уточнённые ошибки отдаются кодом родителя."""
        assert InvalidOrigin().kind == "InvalidInput"
        assert RadiusTooLarge().kind == "InvalidInput"
        assert StalePresence().kind == "Unavailable"
        assert StalePresence.http_status == 400

    def test_to_dict(self) -> None:
        exc = NotFound("Заявка не найдена", request_id="R1")

        assert exc.to_dict() == {
            "error_code": "NotFound",
            "message": "Заявка не найдена",
            "details": {"request_id": "R1"},
        }

    def test_default_message(self) -> None:
        exc = CapacityExceeded()

        assert str(exc) == "CapacityExceeded"
        assert exc.to_dict()["details"] is None
