from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

EntityKind = Literal["deals", "leads"]


@dataclass(frozen=True)
class Column:
    id: str
    title: str


@dataclass
class Card:
    id: str
    status: str
    entity: EntityKind
    title: str = ""
    data: dict[str, Any] = field(default_factory=dict)


DEAL_COLUMNS: tuple[Column, ...] = (
    Column("offer", "Offer"),
    Column("inspection", "Inspection"),
    Column("legal", "Legal"),
    Column("payment", "Payment"),
    Column("handover", "Handover"),
)

LEAD_COLUMNS: tuple[Column, ...] = (
    Column("new", "New"),
    Column("contacted", "Contacted"),
    Column("qualified", "Qualified"),
    Column("tour", "Tour"),
    Column("offer", "Offer"),
    Column("closed_won", "Closed Won"),
    Column("nurturing", "Nurturing"),
)


def card_from_row(entity: EntityKind, row: Mapping[str, Any]) -> Card:
    if entity == "leads":
        title = f"{row.get('first_name', '')} {row.get('last_name', '')}".strip()
    else:
        title = f"Deal {row.get('deal_value', '')}".strip()
    return Card(id=str(row["id"]), status=str(row["status"]), entity=entity, title=title, data=dict(row))


def build_board(cards: Iterable[Card], columns: Iterable[Column]) -> dict[str, list[Card]]:
    """Group cards into their status column; cards outside the board's columns are left out."""
    board: dict[str, list[Card]] = {column.id: [] for column in columns}
    for card in cards:
        if card.status in board:
            board[card.status].append(card)
    return board
