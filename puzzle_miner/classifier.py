"""Move classification from consecutive position evaluations.

Every evaluation is relative to the side to move of its own position, so
the position after a move is scored from the opponent's point of view and
has to be negated to get the mover's view. Swing is then

    swing = before (mover) - after (mover)

which is positive when the move made things worse for the mover, for
either colour. Mate scores are clamped to ``mate_score_cp`` first.
"""

from __future__ import annotations

import logging
import math
from typing import Mapping

import chess

from puzzle_miner.config import AnalysisConfig
from puzzle_miner.games import ParsedGame, color_name
from puzzle_miner.models import ClassifiedPly, MoveLabel, PlyEvaluation

logger = logging.getLogger(__name__)


def position_cp(evaluation: PlyEvaluation | None, mate_score_cp: int) -> int | None:
    """Best-line score of a position for its side to move, clamped."""
    if evaluation is None or evaluation.best is None:
        return None
    return evaluation.best.score.to_cp(mate_score_cp)


def terminal_cp(board: chess.Board, mate_score_cp: int) -> int | None:
    """Score of a finished position for its side to move, None if not finished."""
    if board.is_checkmate():
        return -mate_score_cp
    if board.is_game_over():
        return 0
    return None


def compute_swing(before_cp: int, after_cp_opponent: int) -> int:
    """Swing of a move given both evaluations relative to their side to move."""
    return before_cp - (-after_cp_opponent)


def label_for_swing(swing: int, config: AnalysisConfig) -> MoveLabel:
    """Map a swing onto the label bands (ascending magnitude)."""
    if swing <= config.best_swing_cp:
        return MoveLabel.BEST
    if swing < config.inaccuracy_swing_cp:
        return MoveLabel.GOOD
    if swing < config.missed_tactic_swing_cp:
        return MoveLabel.INACCURACY
    if swing < config.blunder_swing_cp:
        return MoveLabel.MISTAKE
    return MoveLabel.BLUNDER


def classify_game(
    game: ParsedGame,
    evaluations: Mapping[int, PlyEvaluation | None],
    config: AnalysisConfig,
) -> list[ClassifiedPly]:
    """Classify every played move of a game.

    Args:
        game: The replayed game.
        evaluations: Position evaluations keyed by position ply (0 = start).
            Missing or empty entries are allowed.
        config: Thresholds for the label bands and the mate clamp.

    Returns:
        One ClassifiedPly per move. Moves whose before/after evaluation is
        missing are labelled UNCLASSIFIED with a None swing.
    """
    classified: list[ClassifiedPly] = []
    ceiling = config.mate_score_cp

    for ply, move in enumerate(game.moves):
        board_before = game.board_at(ply)
        board_after = game.board_at(ply + 1)

        before = position_cp(evaluations.get(ply), ceiling)
        after_opp = terminal_cp(board_after, ceiling)
        if after_opp is None:
            after_opp = position_cp(evaluations.get(ply + 1), ceiling)

        if before is None or after_opp is None:
            logger.warning("Ply %d (%s) unclassified: missing evaluation", ply, game.sans[ply])
            classified.append(ClassifiedPly(
                ply=ply,
                move_uci=move.uci(),
                move_san=game.sans[ply],
                mover=color_name(board_before.turn),
                fen_before=game.fens[ply],
                fen_after=game.fens[ply + 1],
                before_cp=before,
                after_cp=None if after_opp is None else -after_opp,
                swing=None,
                label=MoveLabel.UNCLASSIFIED,
            ))
            continue

        swing = compute_swing(before, after_opp)
        classified.append(ClassifiedPly(
            ply=ply,
            move_uci=move.uci(),
            move_san=game.sans[ply],
            mover=color_name(board_before.turn),
            fen_before=game.fens[ply],
            fen_after=game.fens[ply + 1],
            before_cp=before,
            after_cp=-after_opp,
            swing=swing,
            label=label_for_swing(swing, config),
        ))

    return classified


def accuracy(classified: list[ClassifiedPly], color: str) -> float | None:
    """Accuracy percentage for one colour from its average centipawn loss.

    Returns:
        Value in [0, 100] rounded to one decimal, or None if the colour
        has no classified move.
    """
    losses = [
        max(0, p.swing)
        for p in classified
        if p.mover == color and p.swing is not None
    ]
    if not losses:
        return None
    avg_loss = sum(losses) / len(losses)
    raw = 103.1668 * math.exp(-0.04354 * avg_loss) - 3.1669
    return round(max(0.0, min(100.0, raw)), 1)


def label_counts(classified: list[ClassifiedPly], color: str | None = None) -> dict[str, int]:
    """Count moves per label, optionally for one colour only."""
    counts = {label.value: 0 for label in MoveLabel}
    for p in classified:
        if color is None or p.mover == color:
            counts[p.label.value] += 1
    return counts
