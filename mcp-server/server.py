"""MCP server for the chess puzzle miner.

Exposes game import, puzzle extraction, puzzle queries and attempt grading
via FastMCP. Everything is persisted in the SQLite puzzle store
($PUZZLE_MINER_DB, default data/puzzles.db). The Stockfish evaluator is
started lazily on the first tool that needs it.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

from mcp.server.fastmcp import FastMCP

from puzzle_miner.attempts import puzzle_with_stats, submit_attempt, user_overview
from puzzle_miner.config import AnalysisConfig, load_config, merge_preferences
from puzzle_miner.engine import EngineEvaluator
from puzzle_miner.errors import PuzzleMinerError
from puzzle_miner.extraction import analyze_game as run_analysis
from puzzle_miner.games import parse_pgn
from puzzle_miner.openings import OpeningBook
from puzzle_miner.store import PuzzleStore
from puzzle_miner.sync import ingest_puzzles, import_game as store_game, sync_game

from response_schemas import (  # noqa: E402
    minify_attempt,
    minify_extraction,
    minify_overview,
    minify_puzzle,
    minify_puzzle_page,
)

mcp = FastMCP("puzzle-miner")

_store: PuzzleStore | None = None
_evaluator: EngineEvaluator | None = None
_book = OpeningBook()
_lazy_lock = threading.Lock()


def _get_store() -> PuzzleStore:
    """Open the puzzle store on first use."""
    global _store
    with _lazy_lock:
        if _store is None:
            _store = PuzzleStore()
        return _store


def _get_evaluator() -> EngineEvaluator:
    """Start the engine pool on first use.

    Raises:
        EngineUnavailableError: If Stockfish cannot be found or started.
    """
    global _evaluator
    with _lazy_lock:
        if _evaluator is None:
            _evaluator = EngineEvaluator(workers=2)
        return _evaluator


def _config(preferences: dict | None) -> AnalysisConfig:
    """Merge per-call preferences over the configured defaults."""
    base = load_config()
    if not preferences:
        return base
    return AnalysisConfig.from_preferences(merge_preferences(base.to_preferences(), preferences))


# ---------------------------------------------------------------------------
# Game tools
# ---------------------------------------------------------------------------


@mcp.tool()
def import_game(
    user_id: str,
    pgn: str,
    username: str | None = None,
    provider: str | None = None,
    game_id: str | None = None,
) -> dict:
    """Store a finished game for a user.

    The opening and the user's colour (from the White/Black headers) are
    attributed once at import.

    Args:
        user_id: Owner of the game.
        pgn: Full PGN text of one game.
        username: Player name in the PGN headers, to pick the user's colour.
        provider: Optional source label, e.g. 'lichess'.
        game_id: Optional id; re-importing the same id updates the PGN.

    Returns:
        Dict with game_id, user_color and opening.
    """
    store = _get_store()
    try:
        gid = store_game(store, user_id, pgn, username=username, game_id=game_id, provider=provider, book=_book)
        game = store.get_game(user_id, gid)
    except (PuzzleMinerError, ValueError) as exc:
        return {"error": str(exc)}
    return {
        "game_id": gid,
        "user_color": game["user_color"],
        "opening": {"eco": game["opening_eco"], "name": game["opening_name"]},
        "analyzed": game["analyzed_at"] is not None,
    }


@mcp.tool()
def identify_opening(pgn: str | None = None, moves: list[str] | None = None) -> dict:
    """Identify the opening of a game from its PGN or a list of SAN moves.

    PGN headers (ECO / Opening / Variation) win over the move-based guess.

    Args:
        pgn: PGN text of a game.
        moves: SAN moves from the initial position, e.g. ['e4', 'e5', 'Nf3'].

    Returns:
        Dict with eco, name, variation and source (pgn, guess or unknown).
    """
    if pgn:
        try:
            game = parse_pgn(pgn)
        except ValueError as exc:
            return {"error": str(exc)}
        return _book.classify(game.headers, game.sans).to_dict()
    if moves:
        return _book.classify({}, [m.strip() for m in moves if m and m.strip()]).to_dict()
    return {"error": "Provide pgn or moves"}


# ---------------------------------------------------------------------------
# Extraction tools
# ---------------------------------------------------------------------------


@mcp.tool()
def extract_puzzles(
    pgn: str,
    username: str | None = None,
    user_color: str | None = None,
    preferences: dict | None = None,
) -> dict:
    """Mine puzzles from a PGN without storing anything (dry run).

    Args:
        pgn: PGN text of one finished game.
        username: Player name in the PGN headers, to pick the user's colour.
        user_color: 'white' or 'black'; overrides username. Omit to scan both.
        preferences: Optional analysis preferences, e.g.
            {"puzzle_mode": "punishBlunder", "blunder_swing_cp": 300}.

    Returns:
        Dict with opening, accuracy, plies and the minified puzzles.
    """
    if user_color is not None and user_color not in ("white", "black"):
        return {"error": f"Invalid user_color: {user_color}"}
    try:
        config = _config(preferences)
        analysis = run_analysis(
            pgn, config, evaluator=_get_evaluator(),
            username=username, user_color=user_color, book=_book,
        )
    except (PuzzleMinerError, ValueError) as exc:
        return {"error": str(exc)}
    return minify_extraction({
        "plies": analysis.game.ply_count,
        "user_color": analysis.user_color,
        "opening": analysis.opening.to_dict(),
        "accuracy": analysis.accuracy,
        "puzzles": [p.to_dict() for p in analysis.puzzles],
    })


@mcp.tool()
def analyze_game(user_id: str, game_id: str, preferences: dict | None = None) -> dict:
    """Analyze a stored game and replace its puzzle set.

    Re-running is idempotent: the previous puzzles of the game are swapped
    out atomically. If analysis fails the stored puzzles are left as they were.

    Args:
        user_id: Owner of the game.
        game_id: Id returned by import_game.
        preferences: Optional analysis preferences (see extract_puzzles).

    Returns:
        Dict with game_id, number of puzzles stored, opening and accuracy.
    """
    try:
        config = _config(preferences)
        return sync_game(_get_store(), user_id, game_id, config, evaluator=_get_evaluator(), book=_book)
    except (PuzzleMinerError, ValueError) as exc:
        return {"error": str(exc)}


@mcp.tool()
def replace_game_puzzles(user_id: str, game_id: str, puzzles: list[dict]) -> dict:
    """Replace a game's puzzles with a client-supplied batch.

    Records missing source_ply, fen, best_move_uci, best_line_uci or tags
    are dropped individually; the rest replace the game's set atomically.

    Args:
        user_id: Owner of the game.
        game_id: Target game.
        puzzles: Puzzle records (snake_case or camelCase keys).

    Returns:
        Dict with received, accepted, dropped and inserted counts.
    """
    if not isinstance(puzzles, list):
        return {"error": "puzzles must be a list"}
    try:
        return ingest_puzzles(_get_store(), user_id, game_id, puzzles)
    except PuzzleMinerError as exc:
        return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Puzzle tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_puzzles(
    user_id: str,
    type: str | None = None,
    kind: str | None = None,
    phase: str | None = None,
    game_id: str | None = None,
    opening: str | None = None,
    eco: list[str] | None = None,
    tags: list[str] | None = None,
    multi_solution: str = "any",
    solved: bool = False,
    failed: bool = False,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """List a user's puzzles, newest first.

    Args:
        user_id: Owner of the puzzles.
        type: 'avoidBlunder' or 'punishBlunder'.
        kind: 'blunder', 'missedWin' or 'missedTactic'.
        phase: 'opening', 'middlegame' or 'endgame'.
        game_id: Only puzzles from this game.
        opening: Free-text search over ECO, opening name and variation.
        eco: ECO codes to match exactly (takes precedence over opening).
        tags: Tags that must all be present, e.g. ['fork'].
        multi_solution: 'any', 'single' or 'multi'.
        solved: Only puzzles solved at least once.
        failed: Only puzzles attempted but never solved.
        page: 1-based page number.
        limit: Page size (1-50).

    Returns:
        Dict with total, page, limit and puzzles.
    """
    if multi_solution not in ("any", "single", "multi"):
        return {"error": f"Invalid multi_solution: {multi_solution}"}
    page = max(1, page)
    limit = max(1, min(50, limit))
    total, puzzles = _get_store().list_puzzles(
        user_id,
        page=page,
        limit=limit,
        puzzle_type=type,
        kind=kind,
        phase=phase,
        game_id=game_id,
        opening=opening,
        eco=eco,
        tags=tags,
        multi_solution=multi_solution,
        solved=solved,
        failed=failed,
    )
    return minify_puzzle_page(total, page, limit, puzzles)


@mcp.tool()
def get_puzzle(user_id: str, puzzle_id: str) -> dict:
    """Get one puzzle with the user's attempt statistics.

    Args:
        user_id: Owner of the puzzle.
        puzzle_id: Puzzle id.

    Returns:
        Minified puzzle dict including stats.
    """
    try:
        return minify_puzzle(puzzle_with_stats(_get_store(), user_id, puzzle_id))
    except PuzzleMinerError as exc:
        return {"error": str(exc)}


@mcp.tool()
def random_puzzle(
    user_id: str,
    count: int = 1,
    type: str | None = None,
    kind: str | None = None,
    phase: str | None = None,
    tags: list[str] | None = None,
    exclude_ids: list[str] | None = None,
    prefer_failed: bool = False,
) -> dict:
    """Draw random puzzles for training.

    Args:
        user_id: Owner of the puzzles.
        count: How many to draw (1-20).
        type: Optional puzzle type filter.
        kind: Optional puzzle kind filter.
        phase: Optional game phase filter.
        tags: Tags that must all be present.
        exclude_ids: Puzzle ids to skip (e.g. already seen this session).
        prefer_failed: Draw puzzles attempted but never solved first.

    Returns:
        Dict with the puzzles list (may be shorter than count).
    """
    puzzles = _get_store().random_puzzles(
        user_id,
        count=count,
        exclude_ids=exclude_ids,
        prefer_failed=prefer_failed,
        puzzle_type=type,
        kind=kind,
        phase=phase,
        tags=tags,
    )
    return {"puzzles": [minify_puzzle(p) for p in puzzles]}


@mcp.tool()
def submit_puzzle_attempt(
    user_id: str,
    puzzle_id: str,
    user_move_uci: str,
    time_spent_ms: int | None = None,
) -> dict:
    """Grade a move for a puzzle and record the attempt.

    Correctness is decided server-side against the puzzle's accepted moves.

    Args:
        user_id: The solver.
        puzzle_id: Puzzle id.
        user_move_uci: The move in UCI, e.g. 'e2e4' or 'e7e8q'.
        time_spent_ms: Optional solving time in milliseconds.

    Returns:
        Dict with was_correct and refreshed stats.
    """
    try:
        attempt, stats = submit_attempt(_get_store(), puzzle_id, user_id, user_move_uci, time_spent_ms)
    except PuzzleMinerError as exc:
        return {"error": str(exc)}
    return minify_attempt(attempt.to_dict(), stats.to_dict())


@mcp.tool()
def get_puzzle_stats(user_id: str) -> dict:
    """Overview of a user's puzzles and attempts.

    Args:
        user_id: The user.

    Returns:
        Dict with totals, by_type, by_kind, top_openings and recent_attempts.
    """
    return minify_overview(user_overview(_get_store(), user_id))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    mcp.run()
