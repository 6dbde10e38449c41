"""Property-based tests for resolver convergence invariants."""

from __future__ import annotations

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from domain.entities import EntityKind, EntityState
from domain.mutations import MutationOp, MutationRecord
from domain.resolver import merge

PROPERTY_SETTINGS = settings(
    max_examples=250,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_ORIGINS = st.sampled_from(["dev-a", "dev-b", "dev-c"])
_TIMESTAMPS = st.integers(min_value=1, max_value=6)
_FIELDS = st.dictionaries(
    keys=st.sampled_from(["title", "notes", "priority"]),
    values=st.one_of(st.text(max_size=5), st.integers(min_value=0, max_value=3), st.none()),
    max_size=3,
)


@st.composite
def _records(draw: st.DrawFn) -> MutationRecord:
    op = draw(st.sampled_from([MutationOp.UPSERT, MutationOp.UPSERT, MutationOp.DELETE]))
    return MutationRecord(
        entity=EntityKind.TASK,
        op=op,
        id="t1",
        updated_at=draw(_TIMESTAMPS),
        origin_device=draw(_ORIGINS),
        fields=draw(_FIELDS) if op is MutationOp.UPSERT else {},
    )


# A device never issues two writes with the same (timestamp, origin).
_HISTORIES = st.lists(
    _records(),
    min_size=1,
    max_size=8,
    unique_by=lambda r: (r.updated_at, r.origin_device),
)


def _apply_all(records: list[MutationRecord]) -> EntityState | None:
    state: EntityState | None = None
    for record in records:
        state = merge(state, record).state
    return state


class TestResolverProperties:
    @PROPERTY_SETTINGS
    @given(history=_HISTORIES, data=st.data())
    def test_final_state_is_independent_of_order(
        self, history: list[MutationRecord], data: st.DataObject
    ) -> None:
        shuffled = data.draw(st.permutations(history))
        assert _apply_all(history) == _apply_all(list(shuffled))

    @PROPERTY_SETTINGS
    @given(history=_HISTORIES)
    def test_reapplying_history_is_a_no_op(self, history: list[MutationRecord]) -> None:
        state = _apply_all(history)
        assert state is not None
        for record in history:
            outcome = merge(state, record)
            assert outcome.stale
            assert outcome.state == state

    @PROPERTY_SETTINGS
    @given(history=_HISTORIES)
    def test_each_field_holds_its_greatest_write(self, history: list[MutationRecord]) -> None:
        state = _apply_all(history)
        assert state is not None
        for name, clock in state.clocks.items():
            writers = [r for r in history if name in r.effective_fields()]
            winner = max(writers, key=lambda r: (r.updated_at, r.origin_device))
            assert (clock.updated_at, clock.origin) == (winner.updated_at, winner.origin_device)
            expected = winner.effective_fields()[name]
            if name == "deletedAt":
                assert state.deleted_at == expected
            else:
                assert state.fields[name] == expected

    @PROPERTY_SETTINGS
    @given(history=_HISTORIES)
    def test_updated_at_is_max_field_clock(self, history: list[MutationRecord]) -> None:
        state = _apply_all(history)
        assert state is not None
        assert state.updated_at == max(r.updated_at for r in history)
