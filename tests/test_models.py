from __future__ import annotations

import pytest

from bulkline.errors import SpecInvalid
from bulkline.models import (
    ExecutionStatus,
    FilterOp,
    FilterSpec,
    Predicate,
    PreviewResult,
    can_transition,
)


class TestFilterSpec:
    def test_ids_form_dedupes_in_first_seen_order(self) -> None:
        spec = FilterSpec.parse({"ids": [3, 1, 3, 2, 1]})
        assert spec.ids == (3, 1, 2)
        assert spec.to_dict() == {"ids": [3, 1, 2]}

    def test_where_form(self) -> None:
        spec = FilterSpec.parse(
            {"where": [{"column": "status", "op": "eq", "value": "active"}], "include_deleted": True}
        )
        assert spec.where == (Predicate("status", FilterOp.EQ, "active"),)
        assert spec.include_deleted
        assert spec.to_dict() == {
            "where": [{"column": "status", "op": "eq", "value": "active"}],
            "include_deleted": True,
        }

    def test_all_form(self) -> None:
        assert FilterSpec.parse({"all": True}).match_all

    def test_parse_is_idempotent_on_parsed_specs(self) -> None:
        spec = FilterSpec.parse({"all": True})
        assert FilterSpec.parse(spec) is spec

    def test_round_trip_through_dict(self) -> None:
        raw = {"where": [{"column": "score", "op": "between", "value": [1, 5]}]}
        assert FilterSpec.parse(FilterSpec.parse(raw).to_dict()) == FilterSpec.parse(raw)

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            [],
            {},
            {"ids": [1], "all": True},
            {"ids": []},
            {"ids": "1,2"},
            {"where": []},
            {"all": "yes"},
        ],
    )
    def test_rejects_malformed_specs(self, raw) -> None:
        with pytest.raises(SpecInvalid):
            FilterSpec.parse(raw)


class TestPredicate:
    def test_op_defaults_to_eq(self) -> None:
        assert Predicate.parse({"column": "name", "value": "x"}).op is FilterOp.EQ

    def test_valueless_ops_drop_value(self) -> None:
        predicate = Predicate.parse({"column": "deleted_at", "op": "isNull", "value": "ignored"})
        assert predicate.value is None
        assert predicate.to_dict() == {"column": "deleted_at", "op": "isNull"}

    def test_list_ops_store_tuples(self) -> None:
        predicate = Predicate.parse({"column": "id", "op": "notIn", "value": [1, 2]})
        assert predicate.value == (1, 2)
        assert predicate.to_dict()["value"] == [1, 2]

    @pytest.mark.parametrize(
        "raw",
        [
            {"op": "eq", "value": 1},
            {"column": "", "value": 1},
            {"column": "a", "op": "like", "value": "%x%"},
            {"column": "a", "op": "in", "value": []},
            {"column": "a", "op": "in", "value": 5},
            {"column": "a", "op": "between", "value": [1]},
            {"column": "a", "op": "gt"},
            "a = 1",
        ],
    )
    def test_rejects_invalid_predicates(self, raw) -> None:
        with pytest.raises(SpecInvalid):
            Predicate.parse(raw)


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (ExecutionStatus.SCHEDULED, ExecutionStatus.PENDING),
            (ExecutionStatus.SCHEDULED, ExecutionStatus.CANCELLED),
            (ExecutionStatus.PENDING, ExecutionStatus.PROCESSING),
            (ExecutionStatus.PENDING, ExecutionStatus.COMPLETED),
            (ExecutionStatus.PROCESSING, ExecutionStatus.FAILED),
            (ExecutionStatus.PROCESSING, ExecutionStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current: ExecutionStatus, target: ExecutionStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.parametrize("terminal", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED])
    def test_terminal_states_never_leave(self, terminal: ExecutionStatus) -> None:
        assert terminal.is_terminal
        assert not any(can_transition(terminal, target) for target in ExecutionStatus)

    def test_processing_cannot_go_back(self) -> None:
        assert not can_transition(ExecutionStatus.PROCESSING, ExecutionStatus.PENDING)
        assert not can_transition(ExecutionStatus.PENDING, ExecutionStatus.SCHEDULED)


def test_preview_truncated() -> None:
    assert PreviewResult(total=10, sample_ids=[1, 2], sample=[{}, {}]).truncated
    assert not PreviewResult(total=2, sample_ids=[1, 2], sample=[{}, {}]).truncated
