"""Tests for snapshot functions and the observable entity store."""

from __future__ import annotations

import pytest

from boardsync.errors import ValidationError
from boardsync.models.entities import Card
from boardsync.models.enums import EntityKind
from boardsync.store import (
    EntityStore,
    Snapshot,
    cascade,
    rekey,
    remove,
    replace_all,
    upsert,
    with_current_board,
    with_loading,
)
from tests.helpers.gateway import make_board, make_card, make_column, make_tag

pytestmark = pytest.mark.unit


def _sprint() -> tuple[Snapshot, dict[str, str]]:
    board = make_board("Sprint 1")
    todo = make_column(board.id, "To Do", 0)
    done = make_column(board.id, "Done", 1)
    urgent = make_tag("urgent")
    a = make_card(todo.id, "A", 0, tag_ids=(urgent.id,))
    b = make_card(todo.id, "B", 1)
    c = make_card(done.id, "C", 0)
    snapshot = upsert(Snapshot(current_board_id=board.id), board, todo, done, urgent, a, b, c)
    ids = {
        "board": board.id,
        "todo": todo.id,
        "done": done.id,
        "urgent": urgent.id,
        "A": a.id,
        "B": b.id,
        "C": c.id,
    }
    return snapshot, ids


class TestPureFunctions:
    def test_upsert_returns_new_snapshot_and_leaves_input_untouched(self) -> None:
        snapshot, ids = _sprint()
        renamed = snapshot.card(ids["A"]).model_copy(update={"title": "A2"})

        updated = upsert(snapshot, renamed)

        assert updated is not snapshot
        assert updated.card(ids["A"]).title == "A2"
        assert snapshot.card(ids["A"]).title == "A"

    def test_upsert_rejects_entity_without_id(self) -> None:
        with pytest.raises(ValidationError):
            upsert(Snapshot(), Card(id="", column_id="c", title="x"))

    def test_remove_unknown_id_is_noop(self) -> None:
        snapshot, _ = _sprint()
        assert remove(snapshot, EntityKind.CARD, "missing") is snapshot

    def test_remove_column_cascades_to_its_cards(self) -> None:
        snapshot, ids = _sprint()

        result = remove(snapshot, EntityKind.COLUMN, ids["todo"])

        assert result.column(ids["todo"]) is None
        assert result.card(ids["A"]) is None
        assert result.card(ids["B"]) is None
        assert result.card(ids["C"]) is not None

    def test_remove_board_cascades_and_clears_selection(self) -> None:
        snapshot, ids = _sprint()

        result = remove(snapshot, EntityKind.BOARD, ids["board"])

        assert result.current_board_id is None
        assert result.current_board is None
        assert not result.columns
        assert not result.cards

    def test_remove_tag_strips_it_from_cards(self) -> None:
        snapshot, ids = _sprint()

        result = remove(snapshot, EntityKind.TAG, ids["urgent"])

        assert result.tag(ids["urgent"]) is None
        assert result.card(ids["A"]).tag_ids == ()

    def test_cascade_lists_parents_before_children(self) -> None:
        snapshot, ids = _sprint()

        kinds = [entity.kind for entity in cascade(snapshot, EntityKind.BOARD, ids["board"])]

        assert kinds[0] is EntityKind.BOARD
        assert kinds.index(EntityKind.COLUMN) < kinds.index(EntityKind.CARD)
        assert len(kinds) == 6

    def test_replace_all_swaps_one_collection(self) -> None:
        snapshot, ids = _sprint()
        other = make_board("Other")

        result = replace_all(snapshot, EntityKind.BOARD, [other])

        assert list(result.boards) == [other.id]
        assert result.columns == snapshot.columns

    def test_replace_all_rejects_wrong_kind(self) -> None:
        with pytest.raises(ValueError):
            replace_all(Snapshot(), EntityKind.BOARD, [make_tag("x")])

    def test_rekey_column_rewrites_card_references(self) -> None:
        snapshot, ids = _sprint()

        result = rekey(snapshot, EntityKind.COLUMN, ids["todo"], "server-todo")

        assert result.column(ids["todo"]) is None
        assert result.column("server-todo").id == "server-todo"
        assert [c.title for c in result.cards_in("server-todo")] == ["A", "B"]

    def test_rekey_board_moves_selection(self) -> None:
        snapshot, ids = _sprint()

        result = rekey(snapshot, EntityKind.BOARD, ids["board"], "server-board")

        assert result.current_board_id == "server-board"
        assert {c.board_id for c in result.columns.values()} == {"server-board"}

    def test_rekey_tag_rewrites_card_tag_sets(self) -> None:
        snapshot, ids = _sprint()

        result = rekey(snapshot, EntityKind.TAG, ids["urgent"], "server-tag")

        assert result.card(ids["A"]).tag_ids == ("server-tag",)

    def test_with_current_board_drops_previous_view(self) -> None:
        snapshot, _ = _sprint()

        result = with_current_board(snapshot, None)

        assert result.current_board_id is None
        assert not result.columns
        assert not result.cards
        assert result.boards == snapshot.boards

    def test_with_loading_returns_same_snapshot_when_unchanged(self) -> None:
        snapshot = Snapshot()
        assert with_loading(snapshot, False) is snapshot
        assert with_loading(snapshot, True).is_loading


class TestSnapshotViews:
    def test_cards_in_orders_by_position(self) -> None:
        board = make_board()
        column = make_column(board.id, "To Do", 0)
        late = make_card(column.id, "late", 5)
        early = make_card(column.id, "early", 1)
        snapshot = upsert(Snapshot(), board, column, late, early)

        assert [c.title for c in snapshot.cards_in(column.id)] == ["early", "late"]

    def test_board_views_are_limited_to_current_board(self) -> None:
        snapshot, ids = _sprint()
        other = make_board("Other")
        stray = make_column(other.id, "Stray", 0)
        snapshot = upsert(snapshot, other, stray)

        assert [c.title for c in snapshot.board_columns()] == ["To Do", "Done"]
        assert [c.title for c in snapshot.board_cards()] == ["A", "B", "C"]

    def test_ordered_tags_sorts_by_name_case_insensitively(self) -> None:
        snapshot = upsert(Snapshot(), make_tag("beta"), make_tag("Alpha"), make_tag("gamma"))
        assert [t.name for t in snapshot.ordered_tags()] == ["Alpha", "beta", "gamma"]


class TestEntityStore:
    def test_commit_notifies_observers_once(self) -> None:
        store = EntityStore()
        seen: list[Snapshot] = []
        store.subscribe(seen.append)

        snapshot = upsert(store.snapshot, make_board())
        store.commit(snapshot)

        assert seen == [snapshot]

    def test_batch_coalesces_commits(self) -> None:
        store = EntityStore()
        seen: list[Snapshot] = []
        store.subscribe(seen.append)

        with store.batch():
            store.commit(upsert(store.snapshot, make_board("one")))
            with store.batch():
                store.commit(upsert(store.snapshot, make_board("two")))

        assert len(seen) == 1
        assert len(seen[0].boards) == 2

    def test_unsubscribe_stops_notifications(self) -> None:
        store = EntityStore()
        seen: list[Snapshot] = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()

        store.commit(upsert(store.snapshot, make_board()))

        assert seen == []

    def test_failing_observer_does_not_break_commit(self, caplog: pytest.LogCaptureFixture) -> None:
        store = EntityStore()
        seen: list[Snapshot] = []

        def _boom(_: Snapshot) -> None:
            raise RuntimeError("observer exploded")

        store.subscribe(_boom)
        store.subscribe(seen.append)

        assert store.commit(upsert(store.snapshot, make_board()))
        assert len(seen) == 1
        assert "observer exploded" in caplog.text

    def test_touched_ids_bump_revisions(self) -> None:
        store = EntityStore()
        board = make_board()

        store.commit(upsert(store.snapshot, board), touched=[board.id])
        store.commit(store.snapshot, touched=[board.id])

        assert store.revision(board.id) == 2
        assert store.revision("other") == 0

    def test_new_view_advances_epoch(self) -> None:
        store = EntityStore()
        store.commit(store.snapshot, new_view=True)
        assert store.epoch == 1

    def test_commit_after_close_is_ignored(self) -> None:
        store = EntityStore()
        store.close()

        assert not store.commit(upsert(store.snapshot, make_board()))
        assert not store.snapshot.boards

    def test_carry_revision_keeps_history_under_new_id(self) -> None:
        store = EntityStore()
        store.commit(store.snapshot, touched=["local"])

        store.carry_revision("local", "server")

        assert store.revision("server") == 1
        assert store.revision("local") == 0
