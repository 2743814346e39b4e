"""Attempt grading and read-time statistics.

Correctness is decided here from the stored accepted-move set; a
client-supplied verdict is never consulted. Statistics are a pure fold over
the most-recent-first attempt history and are never persisted.

Usage:
    from puzzle_miner.attempts import submit_attempt
    attempt, stats = submit_attempt(store, puzzle_id, "user-1", "e2e4", 5400)
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from puzzle_miner.errors import InvalidAttemptError
from puzzle_miner.models import MAX_ACCEPTED_MOVES, AttemptStats, PuzzleAttempt

if TYPE_CHECKING:
    from puzzle_miner.store import PuzzleStore

logger = logging.getLogger(__name__)

TOP_OPENINGS = 10
RECENT_ATTEMPTS = 20


def normalize_uci(move: str | None) -> str:
    return (move or "").strip().lower()


def accepted_move_set(best_move_uci: str, alternates: list[str] | tuple[str, ...] | None = None) -> list[str]:
    """Best move followed by the alternates, normalized and deduplicated."""
    moves: list[str] = []
    for raw in [best_move_uci, *(alternates or [])]:
        move = normalize_uci(raw) if isinstance(raw, str) else ""
        if move and move not in moves:
            moves.append(move)
    return moves[:MAX_ACCEPTED_MOVES]


def grade_move(user_move_uci: str, best_move_uci: str, alternates: list[str] | None = None) -> bool:
    """Whether the move is in the accepted set after normalization."""
    move = normalize_uci(user_move_uci)
    return bool(move) and move in accepted_move_set(best_move_uci, alternates)


def coerce_time_spent(raw) -> int | None:
    """Keep a finite, non-negative whole number of milliseconds; drop anything else."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if not math.isfinite(raw):
        return None
    return max(0, int(raw))


def aggregate_stats(history: list[PuzzleAttempt]) -> AttemptStats:
    """Fold a most-recent-first attempt history into statistics.

    Args:
        history: Attempts of one user on one puzzle, newest first.

    Returns:
        AttemptStats. An empty history gives zero counts and None rates.
    """
    if not history:
        return AttemptStats()

    total = len(history)
    correct = sum(1 for a in history if a.was_correct)
    newest, oldest = history[0], history[-1]

    streak = 0
    for attempt in history:
        if attempt.was_correct != newest.was_correct:
            break
        streak += 1

    times = [a.time_spent_ms for a in history if a.time_spent_ms is not None]
    return AttemptStats(
        total=total,
        correct=correct,
        success_rate=round(correct / total, 4),
        first_attempt_correct=oldest.was_correct,
        last_attempted_at=newest.attempted_at,
        last_was_correct=newest.was_correct,
        current_streak=streak,
        solved=correct > 0,
        failed=correct == 0,
        average_time_ms=round(sum(times) / len(times)) if times else None,
        history=list(history),
    )


def submit_attempt(
    store: PuzzleStore,
    puzzle_id: str,
    user_id: str,
    user_move_uci: str | None,
    time_spent_ms=None,
) -> tuple[PuzzleAttempt, AttemptStats]:
    """Grade a move, append the attempt and return the refreshed stats.

    Raises:
        InvalidAttemptError: If the move is empty after trimming.
        PuzzleNotFoundError: If the puzzle does not exist for this user.
    """
    move = normalize_uci(user_move_uci)
    if not move:
        raise InvalidAttemptError("user_move_uci is required")

    puzzle = store.get_puzzle(user_id, puzzle_id)
    was_correct = move in accepted_move_set(puzzle["best_move_uci"], puzzle["accepted_moves_uci"])

    attempt = PuzzleAttempt(
        id=str(uuid.uuid4()),
        puzzle_id=puzzle_id,
        user_id=user_id,
        user_move_uci=move,
        was_correct=was_correct,
        time_spent_ms=coerce_time_spent(time_spent_ms),
        attempted_at=datetime.now(timezone.utc).isoformat(),
    )
    store.add_attempt(attempt)
    logger.debug("Attempt on %s by %s: %s (%s)", puzzle_id, user_id, move, was_correct)
    return attempt, aggregate_stats(store.list_attempts(user_id, puzzle_id))


def puzzle_with_stats(store: PuzzleStore, user_id: str, puzzle_id: str) -> dict:
    """A stored puzzle plus its attempt statistics."""
    puzzle = store.get_puzzle(user_id, puzzle_id)
    puzzle["stats"] = aggregate_stats(store.list_attempts(user_id, puzzle_id)).to_dict(history_limit=10)
    return puzzle


def user_overview(store: PuzzleStore, user_id: str) -> dict:
    """Totals, per-type and per-kind breakdowns, top openings and recent attempts."""
    puzzles = store.user_puzzle_rows(user_id)
    attempts = store.user_attempt_rows(user_id)

    attempted: set[str] = set()
    solved: set[str] = set()
    for row in attempts:
        attempted.add(row["puzzle_id"])
        if row["was_correct"]:
            solved.add(row["puzzle_id"])
    correct_attempts = sum(1 for row in attempts if row["was_correct"])

    def _breakdown(column: str) -> dict[str, dict]:
        out: dict[str, dict] = {}
        for row in puzzles:
            bucket = out.setdefault(row[column], {"puzzles": 0, "attempted": 0, "solved": 0})
            bucket["puzzles"] += 1
            bucket["attempted"] += row["id"] in attempted
            bucket["solved"] += row["id"] in solved
        return out

    eco_counts = Counter(row["opening_eco"] for row in puzzles if row["opening_eco"])
    eco_names: dict[str, str | None] = {}
    for row in puzzles:
        if row["opening_eco"]:
            eco_names.setdefault(row["opening_eco"], row["opening_name"])
    top_openings = [
        {"eco": eco, "name": eco_names.get(eco), "puzzles": count}
        for eco, count in sorted(eco_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_OPENINGS]
    ]

    recent = [
        {
            "puzzle_id": row["puzzle_id"],
            "type": row["type"],
            "kind": row["kind"],
            "user_move_uci": row["user_move_uci"],
            "was_correct": bool(row["was_correct"]),
            "time_spent_ms": row["time_spent_ms"],
            "attempted_at": row["attempted_at"],
        }
        for row in attempts[:RECENT_ATTEMPTS]
    ]

    return {
        "totals": {
            "puzzles": len(puzzles),
            "attempted": len(attempted),
            "solved": len(solved),
            "failed": len(attempted - solved),
            "attempts": len(attempts),
            "correct_attempts": correct_attempts,
            "success_rate": round(correct_attempts / len(attempts), 4) if attempts else None,
        },
        "by_type": _breakdown("type"),
        "by_kind": _breakdown("kind"),
        "top_openings": top_openings,
        "recent_attempts": recent,
    }
