"""Puzzle extraction from a classified game.

Every move past the opening window can yield up to two framings:

  avoidBlunder   the position before the move, posed to the side that
                 went wrong (source ply = the move's ply)
  punishBlunder  the position after the move, posed to the opponent who
                 can exploit it (source ply = the move's ply + 1)

Candidates then go through the filter chain (eval band, swing, uniqueness,
tactical, triviality, line length), an optional deeper confirmation pass,
per-type cooldown and deduplication. Survivors are ranked by severity
(descending) then ply (ascending) and the per-game cap keeps the head.

The scan is a pure function of the game, its evaluations and the config,
so re-running it yields the same puzzle set.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Mapping

import chess

from puzzle_miner.classifier import accuracy, classify_game, position_cp
from puzzle_miner.config import AnalysisConfig
from puzzle_miner.errors import AnalysisError, EngineUnavailableError, EvaluationError
from puzzle_miner.games import ParsedGame, infer_user_color, non_king_piece_count, parse_pgn
from puzzle_miner.models import (
    MAX_ACCEPTED_MOVES,
    ClassifiedPly,
    ExtractedPuzzle,
    GamePhase,
    Motif,
    OpeningInfo,
    PlyEvaluation,
    PuzzleKind,
    PuzzleMode,
    PuzzleType,
    Severity,
)
from puzzle_miner.motifs import legal_line, line_contains_tactic, line_motifs, total_material
from puzzle_miner.openings import OpeningBook

logger = logging.getLogger(__name__)

_TYPE_ORDER = {PuzzleType.AVOID_BLUNDER: 0, PuzzleType.PUNISH_BLUNDER: 1}

_TYPE_PROMPTS = {
    PuzzleType.AVOID_BLUNDER: "Find the best move (avoid the mistake)",
    PuzzleType.PUNISH_BLUNDER: "Punish the blunder!",
}

_MOTIF_PHRASES = {
    Motif.CHECKMATE: "deliver mate",
    Motif.BACK_RANK_MATE: "back-rank mate",
    Motif.DOUBLE_CHECK: "double check",
    Motif.DISCOVERED_ATTACK: "discovered attack",
    Motif.FORK: "fork",
    Motif.PIN: "pin",
    Motif.SKEWER: "skewer",
    Motif.PROMOTION: "promotion",
    Motif.MATE_THREAT: "forced mate",
    Motif.HANGING_PIECE: "win material",
}

# Phase thresholds in pawns of non-king material (full set = 78)
_ENDGAME_MATERIAL = 26
_OPENING_MATERIAL = 60
_OPENING_PHASE_PLIES = 20


@dataclass(frozen=True)
class Candidate:
    """A framing that passed the mode gate, before filtering.

    ``reference_cp`` is the fixed half of the swing: for avoid framings the
    mover's eval after the move, for punish framings the mover's eval
    before it. Re-evaluating the start position only moves the other half.
    """

    type: PuzzleType
    source_ply: int
    fen: str
    evaluation: PlyEvaluation
    swing: int
    kind: PuzzleKind
    severity: Severity
    reference_cp: int
    played_move_uci: str | None = None

    def swing_at(self, start_cp: int) -> int:
        if self.type is PuzzleType.AVOID_BLUNDER:
            return start_cp - self.reference_cp
        return self.reference_cp + start_cp


@dataclass
class GameAnalysis:
    """Everything one extraction run produced for a game."""

    game: ParsedGame
    opening: OpeningInfo
    evaluations: dict[int, PlyEvaluation | None]
    classified: list[ClassifiedPly]
    puzzles: list[ExtractedPuzzle]
    user_color: str | None = None
    accuracy: dict[str, float | None] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------


def classify_kind(swing: int, solver_cp: int | None, config: AnalysisConfig) -> PuzzleKind | None:
    """Bucket a swing. When several thresholds hold the highest bucket wins.

    ``solver_cp`` is the puzzle start position from the solver's side; it
    decides whether a miss counts as a thrown-away win.
    """
    if swing >= config.blunder_swing_cp:
        return PuzzleKind.BLUNDER
    if (
        solver_cp is not None
        and solver_cp >= config.winning_threshold_cp
        and swing >= config.missed_win_swing_cp
    ):
        return PuzzleKind.MISSED_WIN
    if swing >= config.missed_tactic_swing_cp:
        return PuzzleKind.MISSED_TACTIC
    return None


def severity_for_swing(swing: int, config: AnalysisConfig) -> Severity:
    if swing >= config.big_swing_cp:
        return Severity.BIG
    if swing >= config.medium_swing_cp:
        return Severity.MEDIUM
    return Severity.SMALL


def game_phase(board: chess.Board, ply: int) -> GamePhase:
    material = total_material(board)
    if material <= _ENDGAME_MATERIAL:
        return GamePhase.ENDGAME
    if ply < _OPENING_PHASE_PLIES and material >= _OPENING_MATERIAL:
        return GamePhase.OPENING
    return GamePhase.MIDDLEGAME


# ---------------------------------------------------------------------------
# Evaluation of the game's positions
# ---------------------------------------------------------------------------


def _same_position(fen_a: str, fen_b: str) -> bool:
    return fen_a.split()[:4] == fen_b.split()[:4]


def evaluate_positions(
    game: ParsedGame,
    config: AnalysisConfig,
    evaluator=None,
    evaluations: Mapping[int, PlyEvaluation | None] | None = None,
) -> dict[int, PlyEvaluation | None]:
    """Collect an evaluation for every non-terminal position of the game.

    Supplied evaluations are used as-is when they match the position;
    the rest are requested from ``evaluator`` (an EngineEvaluator or any
    object with the same ``analyse``). A single failed position is left
    as None and the game goes on.

    Raises:
        AnalysisError: If the engine is unavailable, every requested
            evaluation failed, or no position has an evaluation at all.
    """
    supplied = dict(evaluations or {})
    result: dict[int, PlyEvaluation | None] = {}
    requested: list[int] = []

    for ply, fen in enumerate(game.fens):
        if ply in game.terminal_positions:
            continue
        given = supplied.get(ply)
        if given is not None:
            if _same_position(given.fen, fen):
                result[ply] = given
                continue
            logger.warning("Ignoring evaluation for ply %d: FEN does not match the game", ply)
        requested.append(ply)

    if not requested:
        return result
    if evaluator is None:
        for ply in requested:
            result[ply] = None
        if not any(e is not None for e in result.values()):
            raise AnalysisError("Could not analyze game: no evaluations available")
        return result

    multipv = _search_multipv(config)
    failures = 0
    for ply in requested:
        try:
            result[ply] = evaluator.analyse(game.fens[ply], config.movetime_ms, multipv)
        except EvaluationError as exc:
            logger.warning("Ply %d left unevaluated: %s", ply, exc)
            result[ply] = None
            failures += 1
        except EngineUnavailableError as exc:
            raise AnalysisError(f"Could not analyze game: {exc}") from exc

    if failures == len(requested):
        raise AnalysisError(
            f"Could not analyze game: all {failures} evaluation(s) failed"
        )
    return result


def _search_multipv(config: AnalysisConfig) -> int:
    if config.uniqueness_margin_cp is not None:
        return max(2, config.multipv)
    return config.multipv


# ---------------------------------------------------------------------------
# Candidate generation (mode gate)
# ---------------------------------------------------------------------------


def _avoid_candidate(
    ply: ClassifiedPly,
    evaluations: Mapping[int, PlyEvaluation | None],
    config: AnalysisConfig,
) -> Candidate | None:
    evaluation = evaluations.get(ply.ply)
    if evaluation is None or evaluation.best is None:
        return None
    if evaluation.best.move_uci == ply.move_uci:
        return None
    kind = classify_kind(ply.swing, ply.before_cp, config)
    if kind is None:
        return None
    return Candidate(
        type=PuzzleType.AVOID_BLUNDER,
        source_ply=ply.ply,
        fen=ply.fen_before,
        evaluation=evaluation,
        swing=ply.swing,
        kind=kind,
        severity=severity_for_swing(ply.swing, config),
        reference_cp=ply.after_cp,
        played_move_uci=ply.move_uci,
    )


def _punish_candidate(
    ply: ClassifiedPly,
    game: ParsedGame,
    evaluations: Mapping[int, PlyEvaluation | None],
    config: AnalysisConfig,
) -> Candidate | None:
    start = ply.ply + 1
    if start in game.terminal_positions:
        return None
    evaluation = evaluations.get(start)
    if evaluation is None or evaluation.best is None:
        return None
    # The solver is the blunderer's opponent, to move at the start position
    kind = classify_kind(ply.swing, position_cp(evaluation, config.mate_score_cp), config)
    if kind is None:
        return None

    reply = game.moves[start].uci() if start < game.ply_count else None
    if config.skip_punished_blunders and reply == evaluation.best.move_uci:
        logger.debug("Ply %d: blunder was punished in the game, skipping", ply.ply)
        return None

    return Candidate(
        type=PuzzleType.PUNISH_BLUNDER,
        source_ply=start,
        fen=ply.fen_after,
        evaluation=evaluation,
        swing=ply.swing,
        kind=kind,
        severity=severity_for_swing(ply.swing, config),
        reference_cp=ply.before_cp,
        played_move_uci=reply,
    )


def find_candidates(
    game: ParsedGame,
    classified: list[ClassifiedPly],
    evaluations: Mapping[int, PlyEvaluation | None],
    config: AnalysisConfig,
    user_color: str | None = None,
) -> list[Candidate]:
    """Scan moves in order and emit the framings allowed by the puzzle mode.

    With a known ``user_color`` avoid framings come from the user's moves
    and punish framings from the opponent's. Otherwise both colours count.
    """
    want_avoid = config.puzzle_mode in (PuzzleMode.AVOID_BLUNDER, PuzzleMode.BOTH)
    want_punish = config.puzzle_mode in (PuzzleMode.PUNISH_BLUNDER, PuzzleMode.BOTH)
    candidates: list[Candidate] = []

    for ply in classified:
        if ply.ply < config.opening_skip_plies or not ply.classified:
            continue
        if want_avoid and (user_color is None or ply.mover == user_color):
            candidate = _avoid_candidate(ply, evaluations, config)
            if candidate is not None:
                candidates.append(candidate)
        if want_punish and (user_color is None or ply.mover != user_color):
            candidate = _punish_candidate(ply, game, evaluations, config)
            if candidate is not None:
                candidates.append(candidate)

    return candidates


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def _eval_band_reason(start_cp: int | None, config: AnalysisConfig) -> str | None:
    if start_cp is None:
        return "no start evaluation"
    if config.eval_band_min_cp is not None and start_cp < config.eval_band_min_cp:
        return f"eval {start_cp} below band"
    if config.eval_band_max_cp is not None and start_cp > config.eval_band_max_cp:
        return f"eval {start_cp} above band"
    return None


def _uniqueness_reason(board: chess.Board, evaluation: PlyEvaluation, config: AnalysisConfig) -> str | None:
    margin = config.uniqueness_margin_cp
    if margin is None:
        return None
    second = evaluation.second
    if second is None:
        # A lone legal move is unique by definition
        if board.legal_moves.count() > 1:
            return "no second line to prove uniqueness"
        return None
    best_cp = evaluation.best.score.to_cp(config.mate_score_cp)
    second_cp = second.score.to_cp(config.mate_score_cp)
    if best_cp is None or second_cp is None:
        return "unscored line"
    if best_cp - second_cp < margin:
        return f"ambiguous: gap {best_cp - second_cp} < {margin}"
    return None


def _tactical_reason(board: chess.Board, evaluation: PlyEvaluation, config: AnalysisConfig) -> str | None:
    if not config.require_tactical:
        return None
    if not line_contains_tactic(board, evaluation.best.pv_uci, config.tactical_lookahead_plies):
        return "no capture, check or promotion in reach"
    return None


def _triviality_reason(board: chess.Board, config: AnalysisConfig) -> str | None:
    if config.skip_trivial_endgames and non_king_piece_count(board) < config.min_non_king_pieces:
        return "trivial endgame"
    return None


def _line_length_reason(board: chess.Board, evaluation: PlyEvaluation, config: AnalysisConfig) -> str | None:
    length = len(legal_line(board, evaluation.best.pv_uci))
    if length < max(1, config.min_pv_moves):
        return f"line too short ({length})"
    return None


def rejection_reason(candidate: Candidate, config: AnalysisConfig) -> str | None:
    """Run the filter chain on a candidate. None means it survives."""
    evaluation = candidate.evaluation
    board = chess.Board(candidate.fen)
    start_cp = position_cp(evaluation, config.mate_score_cp)
    return (
        _eval_band_reason(start_cp, config)
        or (None if candidate.kind is not None else "swing below thresholds")
        or _uniqueness_reason(board, evaluation, config)
        or _tactical_reason(board, evaluation, config)
        or _triviality_reason(board, config)
        or _line_length_reason(board, evaluation, config)
    )


# ---------------------------------------------------------------------------
# Confirmation pass
# ---------------------------------------------------------------------------


def reconfirm(candidate: Candidate, deeper: PlyEvaluation, config: AnalysisConfig) -> Candidate | None:
    """Re-validate eval band, swing, uniqueness and tactics on a deeper search.

    Returns the candidate re-graded from the deeper result (possibly a
    lower bucket), or None if it no longer qualifies.
    """
    if deeper.best is None:
        return None
    if deeper.best.move_uci != candidate.evaluation.best.move_uci:
        logger.debug("Ply %d: best move changed on confirmation", candidate.source_ply)
        return None

    start_cp = position_cp(deeper, config.mate_score_cp)
    if _eval_band_reason(start_cp, config) is not None:
        return None

    swing = candidate.swing_at(start_cp)
    kind = classify_kind(swing, start_cp, config)
    if kind is None:
        return None

    board = chess.Board(candidate.fen)
    if _uniqueness_reason(board, deeper, config) or _tactical_reason(board, deeper, config):
        return None

    return replace(
        candidate,
        evaluation=deeper,
        swing=swing,
        kind=kind,
        severity=severity_for_swing(swing, config),
    )


def confirm_candidates(candidates: list[Candidate], evaluator, config: AnalysisConfig) -> list[Candidate]:
    """Re-query every surviving candidate at the confirmation budget.

    Each distinct position is queried once (a punish framing and the next
    avoid framing often share one) on a bounded thread pool. A candidate
    whose re-query fails keeps its shallow result. Order is preserved.
    """
    if not config.confirmation_enabled or evaluator is None or not candidates:
        return candidates

    multipv = _search_multipv(config)
    fens = list(dict.fromkeys(c.fen for c in candidates))
    deeper: dict[str, PlyEvaluation | None] = {}
    workers = min(config.confirm_workers, len(fens))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(evaluator.analyse, fen, config.confirm_movetime_ms, multipv): fen
            for fen in fens
        }
        for future in as_completed(futures):
            fen = futures[future]
            try:
                deeper[fen] = future.result()
            except (EvaluationError, EngineUnavailableError) as exc:
                logger.warning("Confirmation failed for %s: %s", fen, exc)
                deeper[fen] = None

    confirmed: list[Candidate] = []
    for candidate in candidates:
        result = deeper.get(candidate.fen)
        if result is None:
            confirmed.append(candidate)
            continue
        regraded = reconfirm(candidate, result, config)
        if regraded is not None:
            confirmed.append(regraded)
    logger.info("Confirmation kept %d of %d candidate(s)", len(confirmed), len(candidates))
    return confirmed


# ---------------------------------------------------------------------------
# Puzzle construction
# ---------------------------------------------------------------------------


def accepted_moves(evaluation: PlyEvaluation) -> list[str]:
    """Best move plus every other line that mates just as fast."""
    best = evaluation.best
    accepted = [best.move_uci.strip().lower()]
    best_mate = best.score.mate
    if best_mate is not None and best_mate > 0:
        for line in evaluation.lines[1:]:
            move = line.move_uci.strip().lower()
            if line.score.mate == best_mate and move not in accepted:
                accepted.append(move)
    return accepted[:MAX_ACCEPTED_MOVES]


def puzzle_label(puzzle_type: PuzzleType, motifs: list[Motif], opening: OpeningInfo | None) -> str:
    label = _TYPE_PROMPTS[puzzle_type]
    for motif in motifs:
        phrase = _MOTIF_PHRASES.get(motif)
        if phrase is not None:
            label = f"{label} Theme: {phrase}."
            break
    if opening is not None and opening.name:
        label = f"{label} ({opening.name})"
    return label


def build_puzzle(
    candidate: Candidate, opening: OpeningInfo, config: AnalysisConfig
) -> ExtractedPuzzle:
    board = chess.Board(candidate.fen)
    evaluation = candidate.evaluation
    line = legal_line(board, evaluation.best.pv_uci)[: config.max_line_plies]
    best_line = [m.uci() for m in line]

    accepted = accepted_moves(evaluation)
    motifs = line_motifs(board, evaluation)
    if len(accepted) > 1:
        motifs.append(Motif.MULTI_SOLUTION)
    phase = game_phase(board, candidate.source_ply)

    return ExtractedPuzzle(
        source_ply=candidate.source_ply,
        fen=candidate.fen,
        best_move_uci=best_line[0],
        best_line_uci=best_line,
        type=candidate.type,
        kind=candidate.kind,
        severity=candidate.severity,
        score=evaluation.best.score,
        motifs=motifs,
        opening=opening,
        label=puzzle_label(
            candidate.type, motifs, opening if phase is GamePhase.OPENING else None,
        ),
        phase=phase,
        accepted_moves_uci=accepted,
        swing=candidate.swing,
    )


# ---------------------------------------------------------------------------
# Cooldown, dedup, ranking
# ---------------------------------------------------------------------------


def apply_cooldown(candidates: list[Candidate], cooldown_plies: int) -> list[Candidate]:
    """Drop same-type candidates within ``cooldown_plies`` of an accepted one."""
    if cooldown_plies <= 0:
        return candidates
    last: dict[PuzzleType, int] = {}
    kept: list[Candidate] = []
    for c in sorted(candidates, key=lambda c: (c.source_ply, _TYPE_ORDER[c.type])):
        previous = last.get(c.type)
        if previous is not None and c.source_ply <= previous + cooldown_plies:
            continue
        kept.append(c)
        last[c.type] = c.source_ply
    return kept


def _normalize_fen(fen: str) -> str:
    """Normalize FEN for deduplication (strip move counters)."""
    return " ".join(fen.split()[:4])


def dedupe(candidates: list[Candidate]) -> list[Candidate]:
    """One candidate per (source ply, type) and per (position, type)."""
    seen_plies: set[tuple[int, PuzzleType]] = set()
    seen_fens: set[tuple[str, PuzzleType]] = set()
    unique: list[Candidate] = []
    for c in sorted(candidates, key=lambda c: (c.source_ply, _TYPE_ORDER[c.type])):
        ply_key = (c.source_ply, c.type)
        fen_key = (_normalize_fen(c.fen), c.type)
        if ply_key in seen_plies or fen_key in seen_fens:
            continue
        seen_plies.add(ply_key)
        seen_fens.add(fen_key)
        unique.append(c)
    return unique


def rank_key(puzzle: ExtractedPuzzle) -> tuple:
    severity = int(puzzle.severity) if puzzle.severity is not None else 0
    return (-severity, puzzle.source_ply, _TYPE_ORDER[puzzle.type], -(puzzle.swing or 0))


def select_puzzles(puzzles: list[ExtractedPuzzle], cap: int | None) -> list[ExtractedPuzzle]:
    """Sort by severity (desc) then ply (asc) and keep at most ``cap``."""
    ranked = sorted(puzzles, key=rank_key)
    if cap is None or cap <= 0:
        return ranked
    return ranked[:cap]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def extract_puzzles(
    game: ParsedGame,
    classified: list[ClassifiedPly],
    evaluations: Mapping[int, PlyEvaluation | None],
    config: AnalysisConfig,
    opening: OpeningInfo | None = None,
    evaluator=None,
    user_color: str | None = None,
) -> list[ExtractedPuzzle]:
    """Select, grade and rank the puzzles of one classified game.

    Args:
        game: The replayed game.
        classified: Output of ``classify_game`` for the same evaluations.
        evaluations: Position evaluations keyed by position ply.
        config: Thresholds for this run.
        opening: Opening attributed to the game (for labels and storage).
        evaluator: Needed only for the confirmation pass.
        user_color: "white"/"black" to mine from one player's view.

    Returns:
        Puzzles ordered by severity desc, ply asc, at most the cap.
    """
    opening = opening or OpeningInfo()
    candidates = find_candidates(game, classified, evaluations, config, user_color)

    survivors: list[Candidate] = []
    for candidate in candidates:
        reason = rejection_reason(candidate, config)
        if reason is not None:
            logger.debug(
                "Ply %d %s rejected: %s", candidate.source_ply, candidate.type.value, reason,
            )
            continue
        survivors.append(candidate)

    survivors = confirm_candidates(survivors, evaluator, config)
    survivors = apply_cooldown(survivors, config.cooldown_plies)
    survivors = dedupe(survivors)

    puzzles = [build_puzzle(c, opening, config) for c in survivors]
    selected = select_puzzles(puzzles, config.cap)
    logger.info(
        "Extracted %d puzzle(s) from %d candidate(s)", len(selected), len(candidates),
    )
    return selected


def analyze_game(
    pgn: str,
    config: AnalysisConfig,
    evaluator=None,
    evaluations: Mapping[int, PlyEvaluation | None] | None = None,
    username: str | None = None,
    user_color: str | None = None,
    book: OpeningBook | None = None,
) -> GameAnalysis:
    """Full pipeline for one game: parse, evaluate, classify, extract.

    Raises:
        ValueError: If the PGN is invalid.
        AnalysisError: If the engine could not analyze the game at all.
    """
    game = parse_pgn(pgn)
    book = book or OpeningBook()
    opening = book.classify(game.headers, game.sans)
    if user_color is None:
        user_color = infer_user_color(game.headers, username)

    evals = evaluate_positions(game, config, evaluator, evaluations)
    classified = classify_game(game, evals, config)
    puzzles = extract_puzzles(
        game, classified, evals, config,
        opening=opening, evaluator=evaluator, user_color=user_color,
    )
    return GameAnalysis(
        game=game,
        opening=opening,
        evaluations=evals,
        classified=classified,
        puzzles=puzzles,
        user_color=user_color,
        accuracy={color: accuracy(classified, color) for color in ("white", "black")},
    )
