"""Tests for the job state machine."""

import random

import pytest

from scalingad.commerce.errors import IllegalTransition, TerminalState
from scalingad.commerce.jobs.models import JobStatus
from scalingad.commerce.jobs.state_machine import (
    TERMINAL_STATUSES,
    VALID_JOB_TRANSITIONS,
    allowed_targets,
    can_transition,
    check_transition,
    is_terminal,
    sources_for,
)

S = JobStatus

EXPECTED_EDGES = {
    (S.DRAFT, S.PENDING),
    (S.DRAFT, S.CANCELLED),
    (S.PENDING, S.UNFUNDED),
    (S.PENDING, S.DECLINED),
    (S.PENDING, S.CANCELLED),
    (S.UNFUNDED, S.FUNDED),
    (S.UNFUNDED, S.CANCELLED),
    (S.FUNDED, S.IN_PROGRESS),
    (S.FUNDED, S.REFUNDED),
    (S.IN_PROGRESS, S.REVIEW),
    (S.IN_PROGRESS, S.REFUNDED),
    (S.REVIEW, S.APPROVED),
    (S.REVIEW, S.REVISION),
    (S.REVIEW, S.REFUNDED),
    (S.REVISION, S.REVIEW),
    (S.APPROVED, S.PAID_OUT),
    (S.APPROVED, S.REFUNDED),
}


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(VALID_JOB_TRANSITIONS) == set(JobStatus)

    def test_edges_match_lifecycle(self):
        edges = {(src, dst) for src, targets in VALID_JOB_TRANSITIONS.items() for dst in targets}
        assert edges == EXPECTED_EDGES

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {S.PAID_OUT, S.DECLINED, S.CANCELLED, S.REFUNDED}

    def test_no_path_back_to_draft(self):
        assert sources_for(S.DRAFT) == frozenset()

    def test_cannot_cancel_after_funding(self):
        assert sources_for(S.CANCELLED) == {S.DRAFT, S.PENDING, S.UNFUNDED}

    def test_payout_only_from_approved(self):
        assert sources_for(S.PAID_OUT) == {S.APPROVED}


class TestCheckTransition:
    @pytest.mark.parametrize(
        "src,dst", sorted(EXPECTED_EDGES, key=lambda e: (e[0].value, e[1].value))
    )
    def test_allowed_edges(self, src, dst):
        assert check_transition(src, dst) == dst
        assert can_transition(src.value, dst.value)

    def test_accepts_plain_strings(self):
        assert check_transition("unfunded", "funded") is S.FUNDED

    def test_illegal_edge_reports_required_status(self):
        with pytest.raises(IllegalTransition) as exc_info:
            check_transition(S.DRAFT, S.FUNDED)
        err = exc_info.value
        assert err.current == "draft"
        assert err.target == "funded"
        assert err.required == ["unfunded"]
        assert err.to_dict()["code"] == "illegal_transition"
        assert "unfunded" in err.message

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_status_refuses_everything(self, terminal):
        for target in JobStatus:
            with pytest.raises(TerminalState) as exc_info:
                check_transition(terminal, target)
            assert exc_info.value.current == terminal.value

    def test_unknown_status_raises_value_error(self):
        with pytest.raises(ValueError):
            check_transition("draft", "shipped")

    def test_helpers(self):
        assert allowed_targets("revision") == {S.REVIEW}
        assert is_terminal("refunded")
        assert not is_terminal("approved")


class TestRandomWalks:
    """Random walks never leave the table and always stop at a terminal status."""

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234, 98765])
    def test_walk_follows_table(self, seed):
        rng = random.Random(seed)
        for _ in range(50):
            status = S.DRAFT
            steps = 0
            while not is_terminal(status):
                # Try an arbitrary target first; illegal ones must be refused
                candidate = rng.choice(list(JobStatus))
                if candidate in VALID_JOB_TRANSITIONS[status]:
                    assert check_transition(status, candidate) == candidate
                else:
                    with pytest.raises(IllegalTransition):
                        check_transition(status, candidate)

                status = check_transition(status, rng.choice(sorted(allowed_targets(status))))
                steps += 1
                # review <-> revision can loop; cap the walk
                if steps > 200:
                    break
            assert steps > 0
