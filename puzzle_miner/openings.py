"""Opening attribution from PGN headers or a SAN move-prefix book.

Two stages:
  1. Explicit ECO / Opening / Variation headers are trusted verbatim
     (source=pgn). An ECO with no Opening header gets its name from the book.
  2. Otherwise the first moves of the game are walked down a trie built from
     the book. The deepest entry that is a full prefix of the game wins; if
     two entries share the same moves the one declared first wins
     (source=guess). No match gives source=unknown with every field empty.

Usage:
    from puzzle_miner.openings import OpeningBook
    book = OpeningBook()
    info = book.classify({}, ["e4", "e5", "Nf3", "Nc6", "Bc4", "Bc5"])
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from puzzle_miner.models import OpeningInfo, OpeningSource

logger = logging.getLogger(__name__)

# Only the first moves of a game take part in book matching
MAX_BOOK_PLIES = 16

_ENTRY_KEY = "_entry"


@dataclass(frozen=True)
class BookEntry:
    eco: str
    name: str
    variation: str | None
    moves_san: tuple[str, ...]


# Declaration order matters: it breaks ties between identical move lists.
DEFAULT_BOOK: tuple[BookEntry, ...] = (
    BookEntry("C20", "King's Pawn Game", None, ("e4", "e5")),
    BookEntry("C40", "King's Knight Opening", None, ("e4", "e5", "Nf3")),
    BookEntry("C50", "Italian Game", None, ("e4", "e5", "Nf3", "Nc6", "Bc4")),
    BookEntry("C54", "Italian Game", "Giuoco Piano", ("e4", "e5", "Nf3", "Nc6", "Bc4", "Bc5")),
    BookEntry("C60", "Ruy Lopez", None, ("e4", "e5", "Nf3", "Nc6", "Bb5")),
    BookEntry("C70", "Ruy Lopez", "Morphy Defense", ("e4", "e5", "Nf3", "Nc6", "Bb5", "a6")),
    BookEntry("B20", "Sicilian Defense", None, ("e4", "c5")),
    BookEntry("C00", "French Defense", None, ("e4", "e6")),
    BookEntry("B10", "Caro-Kann Defense", None, ("e4", "c6")),
    BookEntry("B01", "Scandinavian Defense", None, ("e4", "d5")),
    BookEntry("D00", "Queen's Pawn Game", None, ("d4", "d5")),
    BookEntry("D06", "Queen's Gambit", None, ("d4", "d5", "c4")),
    BookEntry("A40", "Queen's Pawn Game", "English Defense", ("d4", "b6")),
    BookEntry("E60", "King's Indian Defense", None, ("d4", "Nf6", "c4", "g6")),
    BookEntry("E20", "Nimzo-Indian Defense", None, ("d4", "Nf6", "c4", "e6", "Nc3", "Bb4")),
    BookEntry("A10", "English Opening", None, ("c4",)),
)


class OpeningBook:
    """Ordered opening book with trie lookup over SAN moves."""

    def __init__(self, entries: tuple[BookEntry, ...] | list[BookEntry] | None = None) -> None:
        self._entries = tuple(entries) if entries is not None else DEFAULT_BOOK
        self._trie = self._build_trie(self._entries)
        self._eco_names = self._build_eco_names(self._entries)

    @classmethod
    def from_json(cls, path: str | Path) -> OpeningBook:
        """Load a book from a JSON list of {eco, name, variation?, moves}.

        Falls back to the default book when the file is missing or invalid.
        """
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
            entries = [
                BookEntry(
                    eco=item["eco"],
                    name=item["name"],
                    variation=item.get("variation") or None,
                    moves_san=tuple(item["moves"]),
                )
                for item in raw
            ]
        except (json.JSONDecodeError, OSError, KeyError, TypeError) as exc:
            logger.warning("Could not load opening book %s: %s", path, exc)
            return cls()
        return cls(entries)

    @property
    def entries(self) -> tuple[BookEntry, ...]:
        return self._entries

    @staticmethod
    def _build_trie(entries: tuple[BookEntry, ...]) -> dict:
        trie: dict = {}
        for entry in entries:
            if not entry.moves_san:
                continue
            node = trie
            for san in entry.moves_san:
                node = node.setdefault(san, {})
            # First declaration wins a duplicate move list
            node.setdefault(_ENTRY_KEY, entry)
        return trie

    @staticmethod
    def _build_eco_names(entries: tuple[BookEntry, ...]) -> dict[str, str]:
        names: dict[str, str] = {}
        for entry in entries:
            names.setdefault(entry.eco, entry.name)
        return names

    def name_for_eco(self, eco: str | None) -> str | None:
        if not eco:
            return None
        return self._eco_names.get(eco.strip().upper())

    # ── Stage 2: book match ─────────────────────────────────────────

    def match(self, moves_san: list[str]) -> BookEntry | None:
        """Return the longest book entry that is a prefix of the moves."""
        node = self._trie
        best: BookEntry | None = None
        for san in moves_san[:MAX_BOOK_PLIES]:
            if san not in node:
                break
            node = node[san]
            entry = node.get(_ENTRY_KEY)
            if entry is not None:
                best = entry
        return best

    # ── Full classification ─────────────────────────────────────────

    def classify(self, headers: dict[str, str] | None, moves_san: list[str]) -> OpeningInfo:
        """Attribute an opening to a game.

        Args:
            headers: PGN headers (may be empty).
            moves_san: Mainline moves in SAN from the initial position.

        Returns:
            OpeningInfo with source pgn, guess or unknown.
        """
        from_headers = self._from_headers(headers or {})
        if from_headers is not None:
            return from_headers

        entry = self.match(moves_san)
        if entry is None:
            return OpeningInfo()
        return OpeningInfo(
            eco=entry.eco,
            name=entry.name,
            variation=entry.variation,
            source=OpeningSource.GUESS,
        )

    def _from_headers(self, headers: dict[str, str]) -> OpeningInfo | None:
        eco = _header_value(headers, "ECO")
        name = _header_value(headers, "Opening")
        variation = _header_value(headers, "Variation")
        if eco is None and name is None and variation is None:
            return None
        if name is None and eco is not None:
            name = self.name_for_eco(eco)
        return OpeningInfo(eco=eco, name=name, variation=variation, source=OpeningSource.PGN)


def _header_value(headers: dict[str, str], key: str) -> str | None:
    # "?" is the PGN placeholder for an unknown tag value
    value = (headers.get(key) or "").strip()
    if not value or value == "?":
        return None
    return value
