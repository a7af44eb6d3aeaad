"""CLI entry point for boardsync."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from boardsync import __version__
from boardsync.errors import ValidationError
from boardsync.limits import DEFAULT_TAG_COLOR

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from boardsync.bootstrap import AppContext
    from boardsync.models.entities import Entity
    from boardsync.services.types import SyncResult

_SHORT_ID = 8


def _label(entity: Entity) -> str:
    return str(getattr(entity, "title", None) or getattr(entity, "name", ""))


def _find[E: Entity](candidates: Iterable[E], ref: str, noun: str) -> E:
    """Match ``ref`` against ids, unique id prefixes, then titles/names."""
    items = list(candidates)
    for item in items:
        if item.id == ref:
            return item
    by_prefix = [item for item in items if item.id.startswith(ref)]
    if len(by_prefix) == 1:
        return by_prefix[0]
    by_label = [item for item in items if _label(item).casefold() == ref.casefold()]
    if len(by_label) == 1:
        return by_label[0]
    if len(by_prefix) > 1 or len(by_label) > 1:
        raise click.ClickException(f"Ambiguous {noun}: {ref}")
    raise click.ClickException(f"No {noun} matches {ref!r}")


def _report(result: SyncResult[Any], success: str) -> bool:
    if result.ok:
        click.secho(success, fg="green")
        return True
    click.secho(f"Failed to {result.operation}: {result.error}", fg="red")
    return False


def _run(obj: dict[str, Any], action: Callable[[AppContext], Awaitable[bool | None]]) -> None:
    """Bootstrap, run ``action`` against the context, and tear down."""
    from boardsync.bootstrap import bootstrap_app

    async def _main() -> bool | None:
        async with bootstrap_app(obj["config_path"], obj["db_path"]) as ctx:
            return await action(ctx)

    try:
        ok = asyncio.run(_main())
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    if ok is False:
        sys.exit(1)


async def _open_board(ctx: AppContext, ref: str) -> str:
    board = _find(ctx.store.snapshot.ordered_boards(), ref, "board")
    result = await ctx.engine.select_board(board.id)
    if not result.ok:
        raise click.ClickException(f"Could not load board {board.title}: {result.error}")
    return board.id


@click.group()
@click.version_option(__version__, prog_name="boardsync")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to SQLite database",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml",
)
@click.option("-v", "--verbose", is_flag=True, help="Log to stderr")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, config_path: Path | None, verbose: bool) -> None:
    """Kanban boards with optimistic synchronization."""
    from boardsync.config import BoardSyncConfig
    from boardsync.log import setup_logging

    config = BoardSyncConfig.load(config_path)
    setup_logging(config.general.log_level, verbose=verbose)
    ctx.obj = {"db_path": db_path, "config_path": config_path}


@cli.command()
@click.pass_obj
def boards(obj: dict[str, Any]) -> None:
    """List boards, newest first."""

    async def _action(ctx: AppContext) -> bool:
        snapshot = ctx.store.snapshot
        if not snapshot.boards:
            click.secho("No boards found.", fg="yellow")
            return True
        for board in snapshot.ordered_boards():
            created = board.created_at.strftime("%Y-%m-%d")
            click.echo(
                f"  {click.style(board.id[:_SHORT_ID], fg='cyan')}  "
                f"{click.style(board.title, bold=True)}  (created {created})"
            )
        return True

    _run(obj, _action)


@cli.command(name="new-board")
@click.argument("title")
@click.pass_obj
def new_board(obj: dict[str, Any], title: str) -> None:
    """Create a board."""

    async def _action(ctx: AppContext) -> bool:
        result = await ctx.engine.create_board(title)
        board_id = result.value.id[:_SHORT_ID] if result.value else "?"
        return _report(result, f"Board created: {title} ({board_id})")

    _run(obj, _action)


@cli.command()
@click.argument("board")
@click.pass_obj
def show(obj: dict[str, Any], board: str) -> None:
    """Show a board's columns, cards and tags."""

    async def _action(ctx: AppContext) -> bool:
        await _open_board(ctx, board)
        snapshot = ctx.store.snapshot
        current = snapshot.current_board
        assert current is not None
        click.secho(current.title, bold=True)
        columns = snapshot.board_columns()
        if not columns:
            click.secho("  No columns yet.", fg="yellow")
        for column in columns:
            cards = snapshot.cards_in(column.id)
            click.echo(f"  {click.style(column.title, fg='cyan', bold=True)} ({len(cards)})")
            for card in cards:
                tags = [snapshot.tags[t].name for t in card.tag_ids if t in snapshot.tags]
                suffix = f"  [{', '.join(tags)}]" if tags else ""
                click.echo(f"    {card.position}. {card.title} ({card.short_id}){suffix}")
        return True

    _run(obj, _action)


@cli.command(name="add-column")
@click.argument("board")
@click.argument("title")
@click.pass_obj
def add_column(obj: dict[str, Any], board: str, title: str) -> None:
    """Append a column to BOARD."""

    async def _action(ctx: AppContext) -> bool:
        board_id = await _open_board(ctx, board)
        result = await ctx.engine.create_column(title, board_id)
        return _report(result, f"Column created: {title}")

    _run(obj, _action)


@cli.command(name="add-card")
@click.argument("board")
@click.argument("column")
@click.argument("title")
@click.option("-d", "--description", default=None, help="Card description")
@click.pass_obj
def add_card(
    obj: dict[str, Any], board: str, column: str, title: str, description: str | None
) -> None:
    """Append a card to COLUMN of BOARD."""

    async def _action(ctx: AppContext) -> bool:
        await _open_board(ctx, board)
        target = _find(ctx.store.snapshot.board_columns(), column, "column")
        result = await ctx.engine.create_card(title, target.id, description=description)
        return _report(result, f"Card created in {target.title}: {title}")

    _run(obj, _action)


@cli.command()
@click.argument("board")
@click.argument("card")
@click.argument("column")
@click.option(
    "-p", "--position", type=click.IntRange(min=0), default=None, help="Index in column"
)
@click.pass_obj
def move(obj: dict[str, Any], board: str, card: str, column: str, position: int | None) -> None:
    """Move CARD to COLUMN (appended unless --position is given)."""

    async def _action(ctx: AppContext) -> bool:
        await _open_board(ctx, board)
        snapshot = ctx.store.snapshot
        moving = _find(snapshot.board_cards(), card, "card")
        target = _find(snapshot.board_columns(), column, "column")
        result = await ctx.engine.move_card(moving.id, target.id, position)
        return _report(result, f"Card moved to {target.title}")

    _run(obj, _action)


@cli.command()
@click.pass_obj
def tags(obj: dict[str, Any]) -> None:
    """List tags by name."""

    async def _action(ctx: AppContext) -> bool:
        ordered = ctx.store.snapshot.ordered_tags()
        if not ordered:
            click.secho("No tags found.", fg="yellow")
        for tag in ordered:
            click.echo(f"  {click.style(tag.id[:_SHORT_ID], fg='cyan')}  {tag.name}  {tag.color}")
        return True

    _run(obj, _action)


@cli.command(name="new-tag")
@click.argument("name")
@click.option("-c", "--color", default=DEFAULT_TAG_COLOR, show_default=True)
@click.pass_obj
def new_tag(obj: dict[str, Any], name: str, color: str) -> None:
    """Create a tag."""

    async def _action(ctx: AppContext) -> bool:
        return _report(await ctx.engine.create_tag(name, color), f"Tag created: {name}")

    _run(obj, _action)


@cli.command()
@click.argument("board")
@click.argument("card")
@click.argument("tag_ref", metavar="TAG")
@click.pass_obj
def tag(obj: dict[str, Any], board: str, card: str, tag_ref: str) -> None:
    """Attach TAG to CARD."""

    async def _action(ctx: AppContext) -> bool:
        await _open_board(ctx, board)
        snapshot = ctx.store.snapshot
        target = _find(snapshot.board_cards(), card, "card")
        label = _find(snapshot.tags.values(), tag_ref, "tag")
        result = await ctx.engine.add_tag_to_card(target.id, label.id)
        return _report(result, f"Tagged {target.title} with {label.name}")

    _run(obj, _action)


@cli.command()
@click.argument("board")
@click.argument("card")
@click.argument("tag_ref", metavar="TAG")
@click.pass_obj
def untag(obj: dict[str, Any], board: str, card: str, tag_ref: str) -> None:
    """Detach TAG from CARD."""

    async def _action(ctx: AppContext) -> bool:
        await _open_board(ctx, board)
        snapshot = ctx.store.snapshot
        target = _find(snapshot.board_cards(), card, "card")
        label = _find(snapshot.tags.values(), tag_ref, "tag")
        result = await ctx.engine.remove_tag_from_card(target.id, label.id)
        return _report(result, f"Removed {label.name} from {target.title}")

    _run(obj, _action)


@cli.command()
@click.argument("kind", type=click.Choice(["board", "column", "card", "tag"]))
@click.argument("ref")
@click.option("-b", "--board", default=None, help="Board holding the column or card")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def delete(obj: dict[str, Any], kind: str, ref: str, board: str | None, yes: bool) -> None:
    """Delete a board, column, card or tag (with everything under it)."""
    if kind in ("column", "card") and board is None:
        raise click.UsageError(f"--board is required to delete a {kind}")

    async def _action(ctx: AppContext) -> bool:
        snapshot = ctx.store.snapshot
        if kind == "board":
            target: Entity = _find(snapshot.boards.values(), ref, "board")
        elif kind == "tag":
            target = _find(snapshot.tags.values(), ref, "tag")
        else:
            assert board is not None
            await _open_board(ctx, board)
            snapshot = ctx.store.snapshot
            pool = snapshot.board_columns() if kind == "column" else snapshot.board_cards()
            target = _find(pool, ref, kind)

        if not yes and not click.confirm(f"Delete {kind} {_label(target)!r}?", default=False):
            click.secho("Cancelled.", fg="yellow")
            return True

        engine = ctx.engine
        operations = {
            "board": engine.delete_board,
            "column": engine.delete_column,
            "card": engine.delete_card,
            "tag": engine.delete_tag,
        }
        result = await operations[kind](target.id)
        return _report(result, f"Deleted {kind} {_label(target)}")

    _run(obj, _action)


@cli.command(name="config")
@click.argument("setting")
@click.argument("value")
@click.pass_obj
def config_cmd(obj: dict[str, Any], setting: str, value: str) -> None:
    """Change a setting, e.g. ``sync.notify_success false``."""
    from boardsync.config import BoardSyncConfig
    from boardsync.paths import get_config_path

    section, _, key = setting.partition(".")
    if not key:
        raise click.UsageError("SETTING must look like section.key")
    path = obj["config_path"] or get_config_path()
    config = BoardSyncConfig.load(path)
    try:
        asyncio.run(config.update_setting(path, section, key, value))
    except (KeyError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"{section}.{key} = {getattr(getattr(config, section), key)}", fg="green")


if __name__ == "__main__":
    cli()
