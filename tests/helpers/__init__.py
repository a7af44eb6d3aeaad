"""Test helpers package."""

from tests.helpers.board import SeededBoard, positions_in, seed_board, titles_in
from tests.helpers.gateway import (
    FakeGateway,
    Gate,
    make_board,
    make_card,
    make_column,
    make_tag,
)

__all__ = [
    "FakeGateway",
    "Gate",
    "SeededBoard",
    "make_board",
    "make_card",
    "make_column",
    "make_tag",
    "positions_in",
    "seed_board",
    "titles_in",
]
