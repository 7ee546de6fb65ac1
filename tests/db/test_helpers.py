from __future__ import annotations

import pytest
from sqlalchemy import Table, insert, select

from bulkline.db.helpers import atomic_increment, guarded_update, validate_identifier
from bulkline.db.session import DbSession


def _seed(engine, table: Table, **values) -> None:
    row = {"id": 1, "value": 0, "hits": 0, "state": "open", "note": None}
    row.update(values)
    with DbSession(engine) as session:
        session.execute(insert(table).values(**row))


def _read(engine, table: Table, id_value: int = 1) -> dict:
    with DbSession(engine) as session:
        row = session.fetch_one(select(table).where(table.c.id == id_value))
    assert row is not None
    return row


class TestAtomicIncrement:
    def test_adds_to_every_counter_in_one_statement(self, engine, counters: Table) -> None:
        _seed(engine, counters, value=10, hits=1)

        with DbSession(engine) as session:
            rc = atomic_increment(session, counters, {"id": 1}, {"value": 5, "hits": 2})

        assert rc == 1
        row = _read(engine, counters)
        assert (row["value"], row["hits"]) == (15, 3)

    def test_successive_increments_accumulate(self, engine, counters: Table) -> None:
        _seed(engine, counters)
        for _ in range(7):
            with DbSession(engine) as session:
                atomic_increment(session, counters, {"id": 1}, {"value": 3})

        assert _read(engine, counters)["value"] == 21

    def test_guard_failure_changes_nothing(self, engine, counters: Table) -> None:
        _seed(engine, counters, value=10, state="closed")

        with DbSession(engine) as session:
            rc = atomic_increment(
                session,
                counters,
                {"id": 1},
                {"value": 5},
                where=counters.c.state == "open",
                also_set={"note": "touched"},
            )

        assert rc == 0
        row = _read(engine, counters)
        assert (row["value"], row["note"]) == (10, None)

    def test_also_set_applies_with_the_increment(self, engine, counters: Table) -> None:
        _seed(engine, counters)

        with DbSession(engine) as session:
            atomic_increment(session, counters, {"id": 1}, {"hits": 1}, also_set={"note": "seen"})

        row = _read(engine, counters)
        assert (row["hits"], row["note"]) == (1, "seen")

    def test_zero_deltas_are_a_noop(self, engine, counters: Table) -> None:
        _seed(engine, counters, value=4)

        with DbSession(engine) as session:
            assert atomic_increment(session, counters, {"id": 1}, {"value": 0}) == 0

        assert _read(engine, counters)["value"] == 4

    def test_missing_row_returns_zero(self, engine, counters: Table) -> None:
        with DbSession(engine) as session:
            assert atomic_increment(session, counters, {"id": 404}, {"value": 1}) == 0

    def test_requires_key(self, engine, counters: Table) -> None:
        with DbSession(engine) as session:
            with pytest.raises(ValueError):
                atomic_increment(session, counters, {}, {"value": 1})

    def test_requires_active_dbsession(self, engine, counters: Table) -> None:
        with pytest.raises(RuntimeError):
            atomic_increment(DbSession(engine), counters, {"id": 1}, {"value": 1})


class TestGuardedUpdate:
    def test_applies_when_precondition_holds(self, engine, counters: Table) -> None:
        _seed(engine, counters, state="open")

        with DbSession(engine) as session:
            rc = guarded_update(session, counters, {"id": 1}, {"state": "open"}, {"state": "closed", "note": "x"})

        assert rc == 1
        row = _read(engine, counters)
        assert (row["state"], row["note"]) == ("closed", "x")

    def test_lost_race_returns_zero_and_leaves_row(self, engine, counters: Table) -> None:
        _seed(engine, counters, state="closed", note="kept")

        with DbSession(engine) as session:
            rc = guarded_update(session, counters, {"id": 1}, {"state": "open"}, {"state": "done", "note": "lost"})

        assert rc == 0
        row = _read(engine, counters)
        assert (row["state"], row["note"]) == ("closed", "kept")

    def test_second_transition_from_same_state_fails(self, engine, counters: Table) -> None:
        """Only one of two callers expecting the same state wins."""
        _seed(engine, counters, state="scheduled")

        results = []
        for _ in range(2):
            with DbSession(engine) as session:
                results.append(
                    guarded_update(session, counters, {"id": 1}, {"state": "scheduled"}, {"state": "pending"})
                )

        assert results == [1, 0]

    def test_list_precondition_means_any_of(self, engine, counters: Table) -> None:
        _seed(engine, counters, state="processing")

        with DbSession(engine) as session:
            rc = guarded_update(
                session, counters, {"id": 1}, {"state": ["pending", "processing"]}, {"state": "cancelled"}
            )

        assert rc == 1
        assert _read(engine, counters)["state"] == "cancelled"

    def test_none_precondition_matches_null(self, engine, counters: Table) -> None:
        _seed(engine, counters, note=None)

        with DbSession(engine) as session:
            assert guarded_update(session, counters, {"id": 1}, {"note": None}, {"note": "claimed"}) == 1
        with DbSession(engine) as session:
            assert guarded_update(session, counters, {"id": 1}, {"note": None}, {"note": "again"}) == 0

        assert _read(engine, counters)["note"] == "claimed"

    def test_empty_updates_are_a_noop(self, engine, counters: Table) -> None:
        _seed(engine, counters)
        with DbSession(engine) as session:
            assert guarded_update(session, counters, {"id": 1}, {"state": "open"}, {}) == 0


class TestValidateIdentifier:
    @pytest.mark.parametrize("name", ["users", "_tmp", "Order_Items2"])
    def test_accepts_safe_names(self, name: str) -> None:
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "1users", "users;drop", "a b", "x" * 65])
    def test_rejects_unsafe_names(self, name: str) -> None:
        with pytest.raises(ValueError):
            validate_identifier(name)

    def test_rejects_non_strings(self) -> None:
        with pytest.raises(TypeError):
            validate_identifier(123)  # type: ignore[arg-type]
