"""Idempotent (re-)extraction: import games, analyze them, replace puzzle sets.

The ingestion boundary accepts loosely-shaped puzzle records (from the
extraction pipeline or from a client), drops malformed ones individually and
normalizes the rest before the store swaps the whole set for the game.

Usage:
    from puzzle_miner.sync import import_game, sync_game
    game_id = import_game(store, "user-1", pgn, username="alice")
    result = sync_game(store, "user-1", game_id, config, evaluator)
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Mapping

from puzzle_miner.attempts import accepted_move_set
from puzzle_miner.config import AnalysisConfig
from puzzle_miner.errors import PuzzleMinerError
from puzzle_miner.extraction import analyze_game
from puzzle_miner.games import infer_user_color, parse_pgn
from puzzle_miner.models import (
    KIND_TAG_PREFIX,
    MAX_TAGS,
    GamePhase,
    OpeningInfo,
    OpeningSource,
    PlyEvaluation,
    PuzzleKind,
    PuzzleType,
    Severity,
    kind_tag,
)
from puzzle_miner.openings import OpeningBook

if TYPE_CHECKING:
    from puzzle_miner.store import PuzzleStore

logger = logging.getLogger(__name__)

# Pseudo-tags older clients stuffed into the tag list
_LEGACY_TYPE_TAGS = {t.value: t for t in PuzzleType}
_LEGACY_PREFIXES = (KIND_TAG_PREFIX, "eco:", "opening:", "openingVar:")

_SEVERITY_NAMES = {"small": Severity.SMALL, "medium": Severity.MEDIUM, "big": Severity.BIG}

_ALIASES = {
    "source_ply": "sourcePly",
    "best_move_uci": "bestMoveUci",
    "best_line_uci": "bestLineUci",
    "accepted_moves_uci": "acceptedMovesUci",
}


def _field(record: Mapping[str, Any], key: str) -> Any:
    if key in record:
        return record[key]
    return record.get(_ALIASES.get(key, key))


def _is_str_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


def is_puzzle_record(record: Any) -> bool:
    """Shape check for one incoming record. Accepts snake_case or camelCase keys."""
    if not isinstance(record, Mapping):
        return False
    ply = _field(record, "source_ply")
    if isinstance(ply, bool) or not isinstance(ply, (int, float)):
        return False
    if not math.isfinite(ply) or ply < 0:
        return False
    fen = _field(record, "fen")
    best = _field(record, "best_move_uci")
    if not isinstance(fen, str) or not fen.strip():
        return False
    if not isinstance(best, str) or not best.strip():
        return False
    return _is_str_list(_field(record, "best_line_uci")) and _is_str_list(record.get("tags"))


def strip_legacy_tags(tags: list[str]) -> tuple[list[str], dict[str, str]]:
    """Remove pseudo-tags, returning the clean tags and what they carried."""
    clean: list[str] = []
    legacy: dict[str, str] = {}
    for tag in tags:
        tag = tag.strip()
        if not tag:
            continue
        if tag in _LEGACY_TYPE_TAGS:
            legacy.setdefault("type", tag)
            continue
        prefix = next((p for p in _LEGACY_PREFIXES if tag.startswith(p)), None)
        if prefix is not None:
            legacy.setdefault(prefix.rstrip(":"), tag[len(prefix):])
            continue
        if tag not in clean:
            clean.append(tag)
    return clean, legacy


def _enum_or(enum_cls, raw: Any, default):
    try:
        return enum_cls(raw)
    except ValueError:
        return default


def _severity(raw: Any) -> int | None:
    if isinstance(raw, str):
        named = _SEVERITY_NAMES.get(raw.strip().lower())
        return int(named) if named is not None else None
    if isinstance(raw, int) and not isinstance(raw, bool) and raw in {s.value for s in Severity}:
        return raw
    return None


def _score(raw: Any) -> dict | None:
    if not isinstance(raw, Mapping):
        return None
    cp, mate = raw.get("cp"), raw.get("mate")
    cp = cp if isinstance(cp, int) and not isinstance(cp, bool) else None
    mate = mate if isinstance(mate, int) and not isinstance(mate, bool) else None
    if cp is None and mate is None:
        return None
    return {"cp": cp, "mate": mate}


def _opening(record: Mapping[str, Any], legacy: dict[str, str]) -> OpeningInfo:
    raw = record.get("opening")
    if isinstance(raw, Mapping):
        eco, name, variation = raw.get("eco"), raw.get("name"), raw.get("variation")
    else:
        eco = record.get("opening_eco") or record.get("openingEco")
        name = record.get("opening_name") or record.get("openingName")
        variation = record.get("opening_variation") or record.get("openingVariation")
    eco = eco or legacy.get("eco")
    name = name or legacy.get("opening")
    variation = variation or legacy.get("openingVar")
    if not (eco or name or variation):
        return OpeningInfo()
    return OpeningInfo(eco=eco or None, name=name or None, variation=variation or None, source=OpeningSource.PGN)


def normalize_record(record: Mapping[str, Any]) -> dict:
    """Turn a shape-checked record into a store row.

    Legacy pseudo-tags are stripped and the canonical ``kind:<type>`` marker
    re-added; type and kind fall back to what the legacy tags carried.
    """
    tags, legacy = strip_legacy_tags(list(record.get("tags") or []))

    puzzle_type = _enum_or(PuzzleType, record.get("type"), None)
    if puzzle_type is None:
        puzzle_type = _LEGACY_TYPE_TAGS.get(legacy.get("type", ""), PuzzleType.AVOID_BLUNDER)
    kind = _enum_or(PuzzleKind, record.get("kind"), None)
    if kind is None:
        kind = _enum_or(PuzzleKind, legacy.get("kind"), PuzzleKind.BLUNDER)
    phase = _enum_or(GamePhase, record.get("phase"), None)

    tags = tags[: MAX_TAGS - 1]
    tags.append(kind_tag(puzzle_type))

    opening = _opening(record, legacy)
    label = record.get("label")
    return {
        "source_ply": max(0, int(_field(record, "source_ply"))),
        "fen": _field(record, "fen").strip(),
        "type": puzzle_type.value,
        "kind": kind.value,
        "phase": phase.value if phase is not None else None,
        "severity": _severity(record.get("severity")),
        "best_move_uci": _field(record, "best_move_uci").strip().lower(),
        "accepted_moves": accepted_move_set(
            _field(record, "best_move_uci"), _field(record, "accepted_moves_uci") or [],
        ),
        "best_line": [m.strip().lower() for m in _field(record, "best_line_uci")],
        "score": _score(record.get("score")),
        "tags": tags,
        "opening_eco": opening.eco,
        "opening_name": opening.name,
        "opening_variation": opening.variation,
        "label": label if isinstance(label, str) and label.strip() else None,
    }


def ingest_puzzles(store: PuzzleStore, user_id: str, game_id: str, records: list[Any]) -> dict:
    """Replace a game's puzzle set with the well-formed records of a batch.

    Returns:
        Dict with received / accepted / dropped / inserted counts.

    Raises:
        GameNotFoundError: If the game does not belong to the user.
        ReplaceFailedError: If the replace transaction failed.
    """
    records = list(records or [])
    rows = [normalize_record(r) for r in records if is_puzzle_record(r)]
    dropped = len(records) - len(rows)
    if dropped:
        logger.info("Game %s: dropped %d malformed puzzle record(s)", game_id, dropped)
    inserted = store.replace_game_puzzles(user_id, game_id, rows)
    return {
        "received": len(records),
        "accepted": len(rows),
        "dropped": dropped,
        "inserted": inserted,
    }


def import_game(
    store: PuzzleStore,
    user_id: str,
    pgn: str,
    username: str | None = None,
    game_id: str | None = None,
    provider: str | None = None,
    book: OpeningBook | None = None,
) -> str:
    """Parse a PGN, attribute its opening and user colour, and store it.

    Raises:
        ValueError: If the PGN is invalid.
    """
    game = parse_pgn(pgn)
    book = book or OpeningBook()
    opening = book.classify(game.headers, game.sans)
    played_at = game.headers.get("UTCDate") or game.headers.get("Date")
    if played_at and "?" in played_at:
        played_at = None
    return store.upsert_game(
        user_id,
        pgn,
        game_id=game_id,
        user_color=infer_user_color(game.headers, username),
        opening=opening,
        provider=provider,
        played_at=played_at,
    )


def sync_game(
    store: PuzzleStore,
    user_id: str,
    game_id: str,
    config: AnalysisConfig,
    evaluator=None,
    evaluations: Mapping[int, PlyEvaluation | None] | None = None,
    book: OpeningBook | None = None,
) -> dict:
    """Analyze a stored game and atomically replace its puzzle set.

    Analysis happens before the store is touched, so a failure leaves the
    previous puzzle set intact. Runs for the same game hold the store's
    game lock from analysis to replace, so they never interleave and the
    run that starts later commits later.

    Raises:
        GameNotFoundError: If the game does not belong to the user.
        AnalysisError: If the engine could not analyze the game.
        ReplaceFailedError: If the replace transaction failed.
    """
    with store.game_lock(user_id, game_id):
        game = store.get_game(user_id, game_id)
        analysis = analyze_game(
            game["pgn"],
            config,
            evaluator=evaluator,
            evaluations=evaluations,
            user_color=game["user_color"],
            book=book,
        )
        result = ingest_puzzles(store, user_id, game_id, [p.to_dict() for p in analysis.puzzles])
    logger.info("Synced game %s: %d puzzle(s)", game_id, result["inserted"])
    return {
        "game_id": game_id,
        "puzzles": result["inserted"],
        "plies": analysis.game.ply_count,
        "user_color": analysis.user_color,
        "opening": analysis.opening.to_dict(),
        "accuracy": analysis.accuracy,
    }


def sync_games(
    store: PuzzleStore,
    user_id: str,
    game_ids: list[str],
    config: AnalysisConfig,
    evaluator=None,
    workers: int = 2,
) -> dict[str, dict]:
    """Sync several games in parallel. Games are independent of each other.

    Returns:
        Mapping game id -> sync result, or ``{"error": ...}`` for a game
        that failed.
    """
    results: dict[str, dict] = {}
    if not game_ids:
        return results

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = {
            gid: pool.submit(sync_game, store, user_id, gid, config, evaluator)
            for gid in dict.fromkeys(game_ids)
        }
        for gid, future in futures.items():
            try:
                results[gid] = future.result()
            except (PuzzleMinerError, ValueError) as exc:
                logger.warning("Sync of game %s failed: %s", gid, exc)
                results[gid] = {"error": str(exc)}
    return results
