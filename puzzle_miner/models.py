"""Shared data models for the puzzle miner.

Engine output (Score, EngineLine, PlyEvaluation), the classified move
stream, openings, extracted puzzles and attempt records are the shared
contract between the extraction pipeline, the store and the MCP server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class PuzzleMode(str, Enum):
    AVOID_BLUNDER = "avoidBlunder"
    PUNISH_BLUNDER = "punishBlunder"
    BOTH = "both"


class PuzzleType(str, Enum):
    """Framing of a puzzle: replay your own mistake, or exploit the opponent's."""

    AVOID_BLUNDER = "avoidBlunder"
    PUNISH_BLUNDER = "punishBlunder"


class PuzzleKind(str, Enum):
    """Evaluation bucket of the move the puzzle was mined from."""

    BLUNDER = "blunder"
    MISSED_WIN = "missedWin"
    MISSED_TACTIC = "missedTactic"


class MoveLabel(str, Enum):
    BEST = "best"
    GOOD = "good"
    INACCURACY = "inaccuracy"
    MISTAKE = "mistake"
    BLUNDER = "blunder"
    UNCLASSIFIED = "unclassified"


class Severity(IntEnum):
    SMALL = 1
    MEDIUM = 2
    BIG = 3


class Motif(str, Enum):
    """Structured puzzle signals. Their values double as display tags."""

    CHECKMATE = "checkmate"
    BACK_RANK_MATE = "backRankMate"
    DOUBLE_CHECK = "doubleCheck"
    DISCOVERED_ATTACK = "discoveredAttack"
    FORK = "fork"
    PIN = "pin"
    SKEWER = "skewer"
    PROMOTION = "promotion"
    MATE_THREAT = "mateThreat"
    HANGING_PIECE = "hangingPiece"
    MULTI_SOLUTION = "multiSolution"


class OpeningSource(str, Enum):
    PGN = "pgn"
    GUESS = "guess"
    UNKNOWN = "unknown"


class GamePhase(str, Enum):
    OPENING = "opening"
    MIDDLEGAME = "middlegame"
    ENDGAME = "endgame"


KIND_TAG_PREFIX = "kind:"
MAX_TAGS = 64
MAX_ACCEPTED_MOVES = 16


# ---------------------------------------------------------------------------
# Engine output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Score:
    """Engine score relative to the side to move.

    Exactly one of cp / mate is normally set. A positive mate means the
    side to move delivers mate; zero or negative means it gets mated.
    """

    cp: int | None = None
    mate: int | None = None

    def to_cp(self, mate_score_cp: int) -> int | None:
        """Collapse to centipawns, clamping into [-mate_score_cp, mate_score_cp]."""
        if self.mate is not None:
            return mate_score_cp if self.mate > 0 else -mate_score_cp
        if self.cp is None:
            return None
        return max(-mate_score_cp, min(mate_score_cp, self.cp))

    def to_dict(self) -> dict:
        return {"cp": self.cp, "mate": self.mate}


@dataclass(frozen=True)
class EngineLine:
    """One ranked candidate: its first move, score and principal variation."""

    move_uci: str
    score: Score
    pv_uci: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlyEvaluation:
    """Ranked engine lines for one position at a given search budget.

    Also the immutable snapshot type streamed by the evaluation adapter.
    """

    fen: str
    lines: tuple[EngineLine, ...] = ()
    depth: int = 0
    time_ms: int = 0
    ply: int | None = None

    @property
    def best(self) -> EngineLine | None:
        return self.lines[0] if self.lines else None

    @property
    def second(self) -> EngineLine | None:
        return self.lines[1] if len(self.lines) > 1 else None


@dataclass(frozen=True)
class ClassifiedPly:
    """Quality of one played move, from the mover's perspective.

    ``swing`` is positive when the move made things worse for the mover.
    """

    ply: int
    move_uci: str
    move_san: str
    mover: str
    fen_before: str
    fen_after: str
    before_cp: int | None
    after_cp: int | None
    swing: int | None
    label: MoveLabel

    @property
    def classified(self) -> bool:
        return self.label is not MoveLabel.UNCLASSIFIED


# ---------------------------------------------------------------------------
# Openings and puzzles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpeningInfo:
    eco: str | None = None
    name: str | None = None
    variation: str | None = None
    source: OpeningSource = OpeningSource.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "eco": self.eco,
            "name": self.name,
            "variation": self.variation,
            "source": self.source.value,
        }


@dataclass
class ExtractedPuzzle:
    """A training position mined from one game."""

    source_ply: int
    fen: str
    best_move_uci: str
    best_line_uci: list[str]
    type: PuzzleType
    kind: PuzzleKind
    severity: Severity | None = None
    score: Score | None = None
    motifs: list[Motif] = field(default_factory=list)
    opening: OpeningInfo = field(default_factory=OpeningInfo)
    label: str | None = None
    phase: GamePhase | None = None
    accepted_moves_uci: list[str] = field(default_factory=list)
    swing: int | None = None

    @property
    def tags(self) -> list[str]:
        """Display tags: motif values plus the ``kind:<type>`` marker."""
        return build_tags(self.motifs, self.type)

    def to_dict(self) -> dict:
        return {
            "source_ply": self.source_ply,
            "fen": self.fen,
            "best_move_uci": self.best_move_uci,
            "best_line_uci": list(self.best_line_uci),
            "accepted_moves_uci": list(self.accepted_moves_uci),
            "type": self.type.value,
            "kind": self.kind.value,
            "severity": int(self.severity) if self.severity is not None else None,
            "score": self.score.to_dict() if self.score is not None else None,
            "tags": self.tags,
            "opening": self.opening.to_dict(),
            "label": self.label,
            "phase": self.phase.value if self.phase is not None else None,
        }


def kind_tag(puzzle_type: PuzzleType) -> str:
    return f"{KIND_TAG_PREFIX}{puzzle_type.value}"


def build_tags(motifs: list[Motif], puzzle_type: PuzzleType) -> list[str]:
    """Deduplicate motif tags, append the type marker and cap the count."""
    values = sorted({m.value for m in motifs})
    values = values[: MAX_TAGS - 1]
    values.append(kind_tag(puzzle_type))
    return values


# ---------------------------------------------------------------------------
# Attempts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PuzzleAttempt:
    id: str
    puzzle_id: str
    user_id: str
    user_move_uci: str
    was_correct: bool
    time_spent_ms: int | None
    attempted_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "puzzle_id": self.puzzle_id,
            "user_move_uci": self.user_move_uci,
            "was_correct": self.was_correct,
            "time_spent_ms": self.time_spent_ms,
            "attempted_at": self.attempted_at,
        }


@dataclass
class AttemptStats:
    """Read-time aggregate over one user's attempts at one puzzle."""

    total: int = 0
    correct: int = 0
    success_rate: float | None = None
    first_attempt_correct: bool | None = None
    last_attempted_at: str | None = None
    last_was_correct: bool | None = None
    current_streak: int = 0
    solved: bool = False
    failed: bool = False
    average_time_ms: int | None = None
    history: list[PuzzleAttempt] = field(default_factory=list)

    def to_dict(self, history_limit: int | None = None) -> dict:
        history = self.history if history_limit is None else self.history[:history_limit]
        return {
            "total": self.total,
            "correct": self.correct,
            "success_rate": self.success_rate,
            "first_attempt_correct": self.first_attempt_correct,
            "last_attempted_at": self.last_attempted_at,
            "last_was_correct": self.last_was_correct,
            "current_streak": self.current_streak,
            "solved": self.solved,
            "failed": self.failed,
            "average_time_ms": self.average_time_ms,
            "history": [a.to_dict() for a in history],
        }
