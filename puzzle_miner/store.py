"""SQLite persistence for games, puzzles and puzzle attempts.

Connections are opened per operation (thread-safe pattern). A game's
puzzle set is only ever replaced as a whole, inside one IMMEDIATE
transaction, and replaces of the same (user, game) are serialized.
Attempts are append-only.

Usage:
    from puzzle_miner.store import PuzzleStore
    store = PuzzleStore("data/puzzles.db")
    game_id = store.upsert_game("user-1", pgn)
"""

from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from puzzle_miner.errors import GameNotFoundError, PuzzleNotFoundError, ReplaceFailedError
from puzzle_miner.models import OpeningInfo, PuzzleAttempt

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_DEFAULT_DB = _PROJECT_ROOT / "data" / "puzzles.db"

MAX_PAGE_SIZE = 50
MAX_RANDOM_COUNT = 20

_SCHEMA = """
CREATE TABLE IF NOT EXISTS games (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pgn TEXT NOT NULL,
    provider TEXT,
    played_at TEXT,
    user_color TEXT,
    opening_eco TEXT,
    opening_name TEXT,
    opening_variation TEXT,
    opening_source TEXT,
    analyzed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_games_user ON games(user_id);

CREATE TABLE IF NOT EXISTS puzzles (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    game_id TEXT NOT NULL REFERENCES games(id) ON DELETE CASCADE,
    source_ply INTEGER NOT NULL CHECK (source_ply >= 0),
    fen TEXT NOT NULL,
    type TEXT NOT NULL,
    kind TEXT NOT NULL,
    phase TEXT,
    severity INTEGER,
    best_move_uci TEXT NOT NULL,
    accepted_moves TEXT NOT NULL,
    best_line TEXT NOT NULL,
    score TEXT,
    tags TEXT NOT NULL,
    opening_eco TEXT,
    opening_name TEXT,
    opening_variation TEXT,
    label TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, game_id, source_ply, type)
);
CREATE INDEX IF NOT EXISTS idx_puzzles_user_game ON puzzles(user_id, game_id);

CREATE TABLE IF NOT EXISTS puzzle_attempts (
    id TEXT PRIMARY KEY,
    puzzle_id TEXT NOT NULL REFERENCES puzzles(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    user_move_uci TEXT NOT NULL,
    was_correct INTEGER NOT NULL,
    time_spent_ms INTEGER,
    attempted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attempts_user_puzzle
    ON puzzle_attempts(user_id, puzzle_id, attempted_at DESC);
CREATE INDEX IF NOT EXISTS idx_attempts_user_time
    ON puzzle_attempts(user_id, attempted_at DESC);
"""

_PUZZLE_COLUMNS = (
    "id", "user_id", "game_id", "source_ply", "fen", "type", "kind", "phase",
    "severity", "best_move_uci", "accepted_moves", "best_line", "score", "tags",
    "opening_eco", "opening_name", "opening_variation", "label", "created_at",
)

_JSON_COLUMNS = ("accepted_moves", "best_line", "score", "tags")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PuzzleStore:
    """Games, their puzzle sets and the attempts made on them."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = Path(db_path or os.environ.get("PUZZLE_MINER_DB") or _DEFAULT_DB)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._locks: dict[tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection in autocommit mode."""
        conn = sqlite3.connect(str(self._db_path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def game_lock(self, user_id: str, game_id: str) -> threading.RLock:
        """Per-(user, game) lock serializing replaces of that game's puzzle set.

        Re-entrant, so a caller holding it across analysis can still replace.
        """
        with self._locks_guard:
            return self._locks.setdefault((user_id, game_id), threading.RLock())

    # ── Games ───────────────────────────────────────────────────────

    def upsert_game(
        self,
        user_id: str,
        pgn: str,
        game_id: str | None = None,
        user_color: str | None = None,
        opening: OpeningInfo | None = None,
        provider: str | None = None,
        played_at: str | None = None,
    ) -> str:
        """Insert a game or update its PGN/metadata. Returns the game id.

        Puzzles and ``analyzed_at`` are left alone; re-analysis goes
        through ``replace_game_puzzles``.

        Raises:
            GameNotFoundError: If the id exists but belongs to another user.
        """
        game_id = game_id or str(uuid.uuid4())
        opening = opening or OpeningInfo()
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT user_id FROM games WHERE id = ?", (game_id,)).fetchone()
            if row is not None and row["user_id"] != user_id:
                conn.execute("ROLLBACK")
                raise GameNotFoundError(f"Game not found: {game_id}")
            if row is None:
                conn.execute(
                    """INSERT INTO games (id, user_id, pgn, provider, played_at, user_color,
                       opening_eco, opening_name, opening_variation, opening_source, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        game_id, user_id, pgn, provider, played_at, user_color,
                        opening.eco, opening.name, opening.variation, opening.source.value, _now(),
                    ),
                )
            else:
                conn.execute(
                    """UPDATE games SET pgn = ?, provider = COALESCE(?, provider),
                       played_at = COALESCE(?, played_at), user_color = ?,
                       opening_eco = ?, opening_name = ?, opening_variation = ?, opening_source = ?
                       WHERE id = ?""",
                    (
                        pgn, provider, played_at, user_color,
                        opening.eco, opening.name, opening.variation, opening.source.value, game_id,
                    ),
                )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return game_id

    def get_game(self, user_id: str, game_id: str) -> dict:
        """Fetch a game owned by the user.

        Raises:
            GameNotFoundError: If it does not exist for this user.
        """
        conn = self._get_conn()
        try:
            row = conn.execute(
                """SELECT g.*, (SELECT COUNT(*) FROM puzzles p
                                WHERE p.game_id = g.id AND p.user_id = g.user_id) AS puzzle_count
                   FROM games g WHERE g.id = ? AND g.user_id = ?""",
                (game_id, user_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise GameNotFoundError(f"Game not found: {game_id}")
        return dict(row)

    def list_games(self, user_id: str) -> list[dict]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT g.id, g.provider, g.played_at, g.user_color, g.opening_eco,
                          g.opening_name, g.analyzed_at, g.created_at,
                          (SELECT COUNT(*) FROM puzzles p
                           WHERE p.game_id = g.id AND p.user_id = g.user_id) AS puzzle_count
                   FROM games g WHERE g.user_id = ? ORDER BY g.created_at DESC""",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    # ── Puzzle sets ─────────────────────────────────────────────────

    def replace_game_puzzles(self, user_id: str, game_id: str, rows: list[dict]) -> int:
        """Atomically swap a game's puzzle set for ``rows``.

        Existing puzzles of (user, game) are deleted and the new rows are
        inserted in the same transaction; rows colliding on
        (user, game, source_ply, type) are skipped. An empty list is a
        valid "no puzzles" result and still marks the game analyzed.

        Returns:
            Number of rows inserted.

        Raises:
            GameNotFoundError: If the game does not exist for this user.
            ReplaceFailedError: If the transaction failed; nothing changed.
        """
        with self.game_lock(user_id, game_id):
            conn = self._get_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
                owner = conn.execute(
                    "SELECT 1 FROM games WHERE id = ? AND user_id = ?", (game_id, user_id),
                ).fetchone()
                if owner is None:
                    conn.execute("ROLLBACK")
                    raise GameNotFoundError(f"Game not found: {game_id}")

                conn.execute(
                    "DELETE FROM puzzles WHERE user_id = ? AND game_id = ?", (user_id, game_id),
                )
                inserted = 0
                placeholders = ", ".join("?" for _ in _PUZZLE_COLUMNS)
                sql = f"INSERT OR IGNORE INTO puzzles ({', '.join(_PUZZLE_COLUMNS)}) VALUES ({placeholders})"
                now = _now()
                for row in rows:
                    values = self._puzzle_values(row, user_id, game_id, now)
                    inserted += conn.execute(sql, values).rowcount
                conn.execute("UPDATE games SET analyzed_at = ? WHERE id = ?", (now, game_id))
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise ReplaceFailedError(
                    f"Replacing puzzles for game {game_id} failed: {exc}"
                ) from exc
            finally:
                conn.close()

        logger.info("Game %s: stored %d puzzle(s)", game_id, inserted)
        return inserted

    @staticmethod
    def _puzzle_values(row: dict, user_id: str, game_id: str, now: str) -> tuple:
        record = dict(row)
        record["id"] = record.get("id") or str(uuid.uuid4())
        record["user_id"] = user_id
        record["game_id"] = game_id
        record["created_at"] = record.get("created_at") or now
        for column in _JSON_COLUMNS:
            value = record.get(column)
            record[column] = None if value is None else json.dumps(value)
        return tuple(record.get(column) for column in _PUZZLE_COLUMNS)

    @staticmethod
    def _row_to_puzzle(row: sqlite3.Row) -> dict:
        puzzle = dict(row)
        for column in _JSON_COLUMNS:
            value = puzzle.get(column)
            puzzle[column] = json.loads(value) if value is not None else None
        puzzle["accepted_moves_uci"] = puzzle.pop("accepted_moves") or []
        puzzle["best_line_uci"] = puzzle.pop("best_line") or []
        puzzle["tags"] = puzzle["tags"] or []
        return puzzle

    def get_puzzle(self, user_id: str, puzzle_id: str) -> dict:
        """Fetch one of the user's puzzles.

        Raises:
            PuzzleNotFoundError: If it does not exist or belongs to someone else.
        """
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM puzzles WHERE id = ? AND user_id = ?", (puzzle_id, user_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise PuzzleNotFoundError(f"Puzzle not found: {puzzle_id}")
        return self._row_to_puzzle(row)

    def game_puzzles(self, user_id: str, game_id: str) -> list[dict]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM puzzles WHERE user_id = ? AND game_id = ?
                   ORDER BY source_ply, type""",
                (user_id, game_id),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_puzzle(r) for r in rows]

    # ── Queries ─────────────────────────────────────────────────────

    @staticmethod
    def _filter_clause(
        user_id: str,
        puzzle_type: str | None = None,
        kind: str | None = None,
        phase: str | None = None,
        game_id: str | None = None,
        opening: str | None = None,
        eco: list[str] | None = None,
        tags: list[str] | None = None,
        multi_solution: str | None = None,
        solved: bool | None = None,
        failed: bool | None = None,
    ) -> tuple[str, list]:
        conditions = ["p.user_id = ?"]
        params: list = [user_id]

        for column, value in (("type", puzzle_type), ("kind", kind), ("phase", phase), ("game_id", game_id)):
            if value:
                conditions.append(f"p.{column} = ?")
                params.append(value)

        if eco:
            codes = [c.strip().upper() for c in eco if c and c.strip()]
            if codes:
                conditions.append(f"p.opening_eco IN ({', '.join('?' for _ in codes)})")
                params.extend(codes)
        elif opening and opening.strip():
            like = f"%{opening.strip()}%"
            conditions.append(
                "(p.opening_eco LIKE ? OR p.opening_name LIKE ? OR p.opening_variation LIKE ?)"
            )
            params.extend([like, like, like])

        wanted_tags = [t for t in (tags or []) if t]
        if multi_solution == "multi":
            wanted_tags = list(dict.fromkeys([*wanted_tags, "multiSolution"]))
        for tag in wanted_tags:
            conditions.append("EXISTS (SELECT 1 FROM json_each(p.tags) WHERE value = ?)")
            params.append(tag)
        if multi_solution == "single":
            conditions.append(
                "NOT EXISTS (SELECT 1 FROM json_each(p.tags) WHERE value = 'multiSolution')"
            )

        attempted = "EXISTS (SELECT 1 FROM puzzle_attempts a WHERE a.puzzle_id = p.id AND a.user_id = p.user_id)"
        correct = (
            "EXISTS (SELECT 1 FROM puzzle_attempts a WHERE a.puzzle_id = p.id "
            "AND a.user_id = p.user_id AND a.was_correct = 1)"
        )
        if solved and failed:
            conditions.append(attempted)
        elif solved:
            conditions.append(correct)
        elif failed:
            conditions.append(f"{attempted} AND NOT {correct}")

        return " AND ".join(conditions), params

    def list_puzzles(self, user_id: str, page: int = 1, limit: int = 20, **filters) -> tuple[int, list[dict]]:
        """Page through the user's puzzles, newest first.

        Returns:
            Tuple of (total matching, puzzles on this page).
        """
        page = max(1, page)
        limit = max(1, min(MAX_PAGE_SIZE, limit))
        where, params = self._filter_clause(user_id, **filters)
        conn = self._get_conn()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM puzzles p WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""SELECT p.* FROM puzzles p WHERE {where}
                    ORDER BY p.created_at DESC, p.game_id, p.source_ply LIMIT ? OFFSET ?""",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        finally:
            conn.close()
        return total, [self._row_to_puzzle(r) for r in rows]

    def random_puzzles(
        self,
        user_id: str,
        count: int = 1,
        exclude_ids: list[str] | None = None,
        prefer_failed: bool = False,
        rng: random.Random | None = None,
        **filters,
    ) -> list[dict]:
        """Draw up to ``count`` puzzles at random, optionally failed ones first."""
        count = max(1, min(MAX_RANDOM_COUNT, count))
        rng = rng or random.Random()
        excluded = set(exclude_ids or [])
        where, params = self._filter_clause(user_id, **filters)
        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"""SELECT p.*,
                       EXISTS (SELECT 1 FROM puzzle_attempts a WHERE a.puzzle_id = p.id AND a.user_id = p.user_id)
                           AS _attempted,
                       EXISTS (SELECT 1 FROM puzzle_attempts a WHERE a.puzzle_id = p.id
                               AND a.user_id = p.user_id AND a.was_correct = 1) AS _solved
                    FROM puzzles p WHERE {where} ORDER BY p.id""",
                params,
            ).fetchall()
        finally:
            conn.close()

        pool = [r for r in rows if r["id"] not in excluded]
        failed = [r for r in pool if r["_attempted"] and not r["_solved"]]
        rest = [r for r in pool if not (r["_attempted"] and not r["_solved"])]
        rng.shuffle(failed)
        rng.shuffle(rest)
        ordered = failed + rest if prefer_failed else rng.sample(pool, len(pool))

        picked = []
        for row in ordered[:count]:
            puzzle = self._row_to_puzzle(row)
            puzzle.pop("_attempted", None)
            puzzle.pop("_solved", None)
            picked.append(puzzle)
        return picked

    # ── Attempts ────────────────────────────────────────────────────

    def add_attempt(self, attempt: PuzzleAttempt) -> None:
        """Append one attempt record (never overwrites)."""
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO puzzle_attempts
                   (id, puzzle_id, user_id, user_move_uci, was_correct, time_spent_ms, attempted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    attempt.id, attempt.puzzle_id, attempt.user_id, attempt.user_move_uci,
                    1 if attempt.was_correct else 0, attempt.time_spent_ms, attempt.attempted_at,
                ),
            )
        finally:
            conn.close()

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> PuzzleAttempt:
        return PuzzleAttempt(
            id=row["id"],
            puzzle_id=row["puzzle_id"],
            user_id=row["user_id"],
            user_move_uci=row["user_move_uci"],
            was_correct=bool(row["was_correct"]),
            time_spent_ms=row["time_spent_ms"],
            attempted_at=row["attempted_at"],
        )

    def list_attempts(self, user_id: str, puzzle_id: str) -> list[PuzzleAttempt]:
        """A user's attempts at one puzzle, most recent first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM puzzle_attempts WHERE user_id = ? AND puzzle_id = ?
                   ORDER BY attempted_at DESC, rowid DESC""",
                (user_id, puzzle_id),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_attempt(r) for r in rows]

    def user_attempt_rows(self, user_id: str) -> list[dict]:
        """Every attempt of a user joined with its puzzle, most recent first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT a.*, p.type, p.kind, p.opening_eco, p.opening_name
                   FROM puzzle_attempts a JOIN puzzles p ON p.id = a.puzzle_id
                   WHERE a.user_id = ? ORDER BY a.attempted_at DESC, a.rowid DESC""",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def user_puzzle_rows(self, user_id: str) -> list[dict]:
        """Id, type, kind and opening of every puzzle a user owns."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT id, type, kind, opening_eco, opening_name FROM puzzles
                   WHERE user_id = ?""",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]
