"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste.
The SQLite store and CLI JSON output are NOT affected, only MCP return values.

Scores are rendered as short strings ("+1.25", "#3", "#-2") which read
naturally for the LLM agent.
"""

from __future__ import annotations

import os

# Principal variations beyond this many plies are cut
_LINE_PLIES = 6
# Attempts echoed back with stats
_HISTORY_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_puzzle(puzzle: dict) -> dict:
    """Minify a puzzle dict (stored row or extracted puzzle) for MCP response.

    Drops ownership/timestamp columns, truncates the solution line, turns
    the score into a short string and only keeps alternates when the
    puzzle actually has more than one accepted move.

    Args:
        puzzle: Puzzle dict from PuzzleStore or ExtractedPuzzle.to_dict().

    Returns:
        Minified dict.
    """
    result = {}

    for key in (
        "id", "game_id", "source_ply", "fen", "type", "kind", "phase",
        "severity", "best_move_uci", "tags", "label",
    ):
        if key in puzzle:
            result[key] = puzzle[key]

    best_line = puzzle.get("best_line_uci", [])
    result["best_line_uci"] = list(best_line)[:_LINE_PLIES] if isinstance(best_line, (list, tuple)) else []

    accepted = puzzle.get("accepted_moves_uci") or []
    if len(accepted) > 1:
        result["accepted_moves_uci"] = list(accepted)

    result["score"] = _score_string(puzzle.get("score"))

    opening = puzzle.get("opening")
    if isinstance(opening, dict):
        eco, name = opening.get("eco"), opening.get("name")
    else:
        eco, name = puzzle.get("opening_eco"), puzzle.get("opening_name")
    result["opening"] = {"eco": eco, "name": name} if (eco or name) else None

    stats = puzzle.get("stats")
    if isinstance(stats, dict):
        result["stats"] = minify_stats(stats)

    return result


def minify_stats(stats: dict) -> dict:
    """Minify AttemptStats.to_dict(): keep counts, trim history."""
    result = {
        key: stats.get(key)
        for key in (
            "total", "correct", "success_rate", "first_attempt_correct",
            "last_attempted_at", "last_was_correct", "current_streak",
            "solved", "failed", "average_time_ms",
        )
    }
    history = stats.get("history") or []
    result["history"] = [
        {
            "user_move_uci": a.get("user_move_uci"),
            "was_correct": a.get("was_correct"),
            "attempted_at": a.get("attempted_at"),
        }
        for a in history[:_HISTORY_ATTEMPTS]
    ]
    return result


def minify_puzzle_page(total: int, page: int, limit: int, puzzles: list[dict]) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "puzzles": [minify_puzzle(p) for p in puzzles],
    }


def minify_attempt(attempt: dict, stats: dict) -> dict:
    """Minify a submit_puzzle_attempt response.

    Args:
        attempt: PuzzleAttempt.to_dict().
        stats: AttemptStats.to_dict().

    Returns:
        Verdict plus compact stats.
    """
    return {
        "attempt_id": attempt.get("id"),
        "puzzle_id": attempt.get("puzzle_id"),
        "user_move_uci": attempt.get("user_move_uci"),
        "was_correct": attempt.get("was_correct"),
        "time_spent_ms": attempt.get("time_spent_ms"),
        "stats": minify_stats(stats),
    }


def minify_extraction(response: dict) -> dict:
    """Minify a dry-run extraction response (opening, accuracy, puzzles)."""
    return {
        "plies": response.get("plies"),
        "user_color": response.get("user_color"),
        "opening": response.get("opening"),
        "accuracy": response.get("accuracy"),
        "puzzle_count": len(response.get("puzzles", [])),
        "puzzles": [minify_puzzle(p) for p in response.get("puzzles", [])],
    }


def minify_overview(overview: dict) -> dict:
    """Minify a user overview: trim recent attempts, keep everything else."""
    result = dict(overview)
    result["recent_attempts"] = [
        {
            "puzzle_id": a.get("puzzle_id"),
            "type": a.get("type"),
            "was_correct": a.get("was_correct"),
            "attempted_at": a.get("attempted_at"),
        }
        for a in overview.get("recent_attempts", [])[:_HISTORY_ATTEMPTS * 2]
    ]
    return result


# ---------------------------------------------------------------------------
# Helper: score to short string
# ---------------------------------------------------------------------------


def _score_string(score: dict | None) -> str | None:
    """Convert a {cp, mate} score to a short string.

    E.g., {"cp": 125} -> '+1.25', {"mate": 3} -> '#3'

    Args:
        score: Score dict or None.

    Returns:
        Short score string, or None when unscored.
    """
    if not isinstance(score, dict):
        return None
    if score.get("mate") is not None:
        return f"#{score['mate']}"
    if score.get("cp") is not None:
        return f"{score['cp'] / 100.0:+.2f}"
    return None


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

PUZZLE_SCHEMA = {
    "fen": str,
    "source_ply": int,
    "type": str,
    "kind": str,
    "best_move_uci": str,
    "best_line_uci": list,
    "tags": list,
    "score": (str, type(None)),
    "opening": (dict, type(None)),
}

PUZZLE_PAGE_SCHEMA = {
    "total": int,
    "page": int,
    "limit": int,
    "puzzles": list,
}

ATTEMPT_SCHEMA = {
    "attempt_id": str,
    "puzzle_id": str,
    "user_move_uci": str,
    "was_correct": bool,
    "time_spent_ms": (int, type(None)),
    "stats": dict,
}

EXTRACTION_SCHEMA = {
    "plies": int,
    "user_color": (str, type(None)),
    "opening": dict,
    "accuracy": dict,
    "puzzle_count": int,
    "puzzles": list,
}

SYNC_SCHEMA = {
    "game_id": str,
    "puzzles": int,
    "opening": dict,
}

OPENING_SCHEMA = {
    "eco": (str, type(None)),
    "name": (str, type(None)),
    "variation": (str, type(None)),
    "source": str,
}

OVERVIEW_SCHEMA = {
    "totals": dict,
    "by_type": dict,
    "by_kind": dict,
    "top_openings": list,
    "recent_attempts": list,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when PUZZLE_MINER_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("PUZZLE_MINER_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors
