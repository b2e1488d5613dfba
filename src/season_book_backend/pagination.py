"""
Pagination of journal entries into fixed-size print pages.

Heights are estimated in template pixels against the printable safe area of
one interior page (7.125in at roughly 260 PPI once bleed, margins and the
page number are removed). Entries are atomic: an entry is never split across
pages, so an oversize entry simply sits on a page of its own.

Photo entries always occupy a page alone. Earlier notes suggested a photo may
share its page with one short text entry; the layout never did that and the
templates do not support it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import BookData, Entry, EntryType, GameResult

PAGE_BUDGET = 1850
DIVIDER_COST = 50

HEADER_HEIGHT = 60
SCORE_HEIGHT = 80
OPPONENT_HEIGHT = 35
PHOTO_HEIGHT = 800
VENUE_HEIGHT = 35
LINE_WIDTH = 42
LINE_HEIGHT = 48

# title + summary before the content pages, closing after
FRONT_MATTER_PAGES = 2
BACK_MATTER_PAGES = 1

Page = Tuple[Entry, ...]


def estimate_height(entry: Entry) -> int:
    height = HEADER_HEIGHT
    if entry.has_score:
        height += SCORE_HEIGHT
    if entry.opponent:
        height += OPPONENT_HEIGHT
    if entry.has_photo:
        height += PHOTO_HEIGHT
    if entry.text:
        height += math.ceil(len(entry.text) / LINE_WIDTH) * LINE_HEIGHT
    if entry.venue:
        height += VENUE_HEIGHT
    return height


def sort_entries(entries: Iterable[Entry]) -> List[Entry]:
    # sorted() is stable, so same-day entries keep their input order
    return sorted(entries, key=lambda entry: entry.date)


def paginate(entries: Iterable[Entry]) -> List[Page]:
    """Greedily pack date-ordered entries into pages under ``PAGE_BUDGET``."""
    pages: List[Page] = []
    current: List[Entry] = []
    current_height = 0

    for entry in sort_entries(entries):
        height = estimate_height(entry)

        if entry.has_photo:
            if current:
                pages.append(tuple(current))
                current = []
                current_height = 0
            pages.append((entry,))
            continue

        needed = height + DIVIDER_COST if current else height
        if current and current_height + needed > PAGE_BUDGET:
            pages.append(tuple(current))
            current = [entry]
            current_height = height
        else:
            current.append(entry)
            current_height += needed

    if current:
        pages.append(tuple(current))
    return pages


@dataclass(frozen=True)
class SeasonSummary:
    games: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    practices: int = 0
    tournaments: int = 0
    first_date: Optional[str] = None
    last_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "games": self.games,
            "wins": self.wins,
            "losses": self.losses,
            "draws": self.draws,
            "practices": self.practices,
            "tournaments": self.tournaments,
            "first_date": self.first_date,
            "last_date": self.last_date,
        }


def summarize_season(entries: Sequence[Entry]) -> SeasonSummary:
    ordered = sort_entries(entries)
    games = [e for e in ordered if e.type in (EntryType.GAME, EntryType.TOURNAMENT)]
    return SeasonSummary(
        games=len(games),
        wins=sum(1 for e in games if e.result == GameResult.WIN),
        losses=sum(1 for e in games if e.result == GameResult.LOSS),
        draws=sum(1 for e in games if e.result == GameResult.DRAW),
        practices=sum(1 for e in ordered if e.type == EntryType.PRACTICE),
        tournaments=sum(1 for e in ordered if e.type == EntryType.TOURNAMENT),
        first_date=ordered[0].date.isoformat() if ordered else None,
        last_date=ordered[-1].date.isoformat() if ordered else None,
    )


@dataclass(frozen=True)
class Book:
    """Title page, summary page, content pages and closing page."""

    data: BookData
    content_pages: Tuple[Page, ...]
    summary: SeasonSummary = field(default_factory=SeasonSummary)

    @property
    def total_pages(self) -> int:
        return FRONT_MATTER_PAGES + len(self.content_pages) + BACK_MATTER_PAGES

    def to_template_payload(self, page_count: Optional[int] = None) -> Dict[str, Any]:
        """Serialize for the HTML template; ``page_count`` pads with blank pages."""
        printed = max(page_count or 0, self.total_pages)
        pages: List[Dict[str, Any]] = [{"kind": "title"}, {"kind": "summary", "summary": self.summary.to_dict()}]
        pages.extend({"kind": "content", "entries": [e.to_template() for e in page]} for page in self.content_pages)
        pages.append({"kind": "closing"})
        return {
            "team": self.data.team.model_dump(),
            "season": self.data.season,
            "players": self.data.players,
            "summary": self.summary.to_dict(),
            "pages": pages,
            "total_pages": self.total_pages,
            "page_count": printed,
            "blank_pages": printed - self.total_pages,
        }


def build_book(book_data: BookData) -> Book:
    return Book(
        data=book_data,
        content_pages=tuple(paginate(book_data.entries)),
        summary=summarize_season(book_data.entries),
    )
