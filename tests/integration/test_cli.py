"""CLI tests against a real SQLite database."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from click.testing import CliRunner

from boardsync import __version__
from boardsync.__main__ import cli
from boardsync.config import BoardSyncConfig

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from click.testing import Result

pytestmark = pytest.mark.integration

type Invoke = Callable[..., Result]


@pytest.fixture
def invoke(tmp_path: Path) -> Invoke:
    runner = CliRunner()
    base = ["--db", str(tmp_path / "boards.db"), "--config", str(tmp_path / "config.toml")]

    def _invoke(*args: str, input: str | None = None) -> Result:
        return runner.invoke(cli, [*base, *args], input=input)

    return _invoke


@pytest.fixture
def sprint(invoke: Invoke) -> Invoke:
    """A board "Sprint 1" with To Do [A, B] and an empty Done column."""
    for args in (
        ("new-board", "Sprint 1"),
        ("add-column", "Sprint 1", "To Do"),
        ("add-column", "Sprint 1", "Done"),
        ("add-card", "Sprint 1", "To Do", "A"),
        ("add-card", "Sprint 1", "To Do", "B"),
    ):
        result = invoke(*args)
        assert result.exit_code == 0, result.output
    return invoke


class TestBoards:
    def test_version(self, invoke: Invoke) -> None:
        result = invoke("--version")
        assert __version__ in result.output

    def test_empty_listing(self, invoke: Invoke) -> None:
        result = invoke("boards")

        assert result.exit_code == 0
        assert "No boards found." in result.output

    def test_new_board_is_listed(self, invoke: Invoke) -> None:
        assert invoke("new-board", "Sprint 1").exit_code == 0

        result = invoke("boards")

        assert "Sprint 1" in result.output

    def test_blank_title_is_an_error(self, invoke: Invoke) -> None:
        result = invoke("new-board", "  ")

        assert result.exit_code != 0
        assert "Board title is required" in result.output

    def test_unknown_board(self, invoke: Invoke) -> None:
        result = invoke("show", "nowhere")

        assert result.exit_code != 0
        assert "No board matches" in result.output


class TestCards:
    def test_show_lists_columns_in_order(self, sprint: Invoke) -> None:
        result = sprint("show", "Sprint 1")

        assert result.exit_code == 0
        output = result.output
        assert output.index("To Do") < output.index("Done")
        assert "0. A" in output
        assert "1. B" in output

    def test_move_into_empty_column(self, sprint: Invoke) -> None:
        result = sprint("move", "Sprint 1", "A", "Done")
        assert result.exit_code == 0, result.output
        assert "Card moved to Done" in result.output

        output = sprint("show", "Sprint 1").output
        todo, done = output.split("Done")
        assert "0. B" in todo
        assert "0. A" in done

    def test_reorder_with_position(self, sprint: Invoke) -> None:
        sprint("add-card", "Sprint 1", "To Do", "C")

        assert sprint("move", "Sprint 1", "C", "To Do", "-p", "0").exit_code == 0

        output = sprint("show", "Sprint 1").output
        assert output.index("0. C") < output.index("1. A") < output.index("2. B")

    def test_tag_and_untag(self, sprint: Invoke) -> None:
        assert sprint("new-tag", "urgent").exit_code == 0
        assert sprint("tag", "Sprint 1", "A", "urgent").exit_code == 0
        assert "[urgent]" in sprint("show", "Sprint 1").output

        assert sprint("untag", "Sprint 1", "A", "urgent").exit_code == 0

        assert "[urgent]" not in sprint("show", "Sprint 1").output
        assert "urgent" in sprint("tags").output

    def test_delete_card_requires_board(self, sprint: Invoke) -> None:
        result = sprint("delete", "card", "A", "-y")
        assert result.exit_code != 0
        assert "--board is required" in result.output

    def test_delete_column_removes_cards(self, sprint: Invoke) -> None:
        result = sprint("delete", "column", "To Do", "-b", "Sprint 1", "-y")
        assert result.exit_code == 0, result.output

        output = sprint("show", "Sprint 1").output
        assert "To Do" not in output
        assert "A (" not in output

    def test_delete_confirmation_can_be_declined(self, sprint: Invoke) -> None:
        result = sprint("delete", "board", "Sprint 1", input="n\n")

        assert "Cancelled." in result.output
        assert "Sprint 1" in sprint("boards").output


class TestConfig:
    def test_config_updates_file(self, invoke: Invoke, tmp_path: Path) -> None:
        result = invoke("config", "sync.notify_success", "false")

        assert result.exit_code == 0, result.output
        assert BoardSyncConfig.load(tmp_path / "config.toml").sync.notify_success is False

    def test_unknown_setting(self, invoke: Invoke) -> None:
        result = invoke("config", "general.colour", "blue")

        assert result.exit_code != 0
        assert "Unknown setting" in result.output

    def test_malformed_setting(self, invoke: Invoke) -> None:
        assert invoke("config", "notify_success", "false").exit_code != 0
