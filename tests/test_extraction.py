"""Tests for the puzzle extraction engine.

Drives the full pipeline (parse -> evaluate -> classify -> extract) with
the scripted evaluations from scripted_game.py, so no engine is needed.
"""

from __future__ import annotations

import time
from dataclasses import replace
from unittest.mock import patch

import chess
import chess.engine
import pytest

from puzzle_miner.config import AnalysisConfig
from puzzle_miner.engine import EngineEvaluator
from puzzle_miner.errors import AnalysisError, EngineUnavailableError, EvaluationError
from puzzle_miner.extraction import (
    Candidate,
    accepted_moves,
    analyze_game,
    apply_cooldown,
    classify_kind,
    dedupe,
    evaluate_positions,
    find_candidates,
    game_phase,
    select_puzzles,
    severity_for_swing,
)
from puzzle_miner.games import parse_pgn
from puzzle_miner.models import (
    ClassifiedPly,
    ExtractedPuzzle,
    GamePhase,
    Motif,
    MoveLabel,
    OpeningSource,
    PlyEvaluation,
    PuzzleKind,
    PuzzleMode,
    PuzzleType,
    Score,
    Severity,
    build_tags,
)
from scripted_game import GAME_PGN, MATE_PGN, FakeEvaluator, build_evaluations, game_fens, line

FENS = game_fens()


def _keys(puzzles: list[ExtractedPuzzle]) -> list[tuple[int, str]]:
    return [(p.source_ply, p.type.value) for p in puzzles]


def _run(config: AnalysisConfig, **kwargs):
    kwargs.setdefault("evaluations", build_evaluations())
    return analyze_game(GAME_PGN, config, **kwargs)


# ---------------------------------------------------------------------------
# The scripted game end to end
# ---------------------------------------------------------------------------


class TestScriptedGame:

    def test_both_framings_of_the_missed_mate(self, base_config):
        puzzles = _run(base_config).puzzles
        assert _keys(puzzles) == [(6, "avoidBlunder"), (6, "punishBlunder")]

    def test_avoid_puzzle_fields(self, base_config):
        avoid = _run(base_config).puzzles[0]
        assert avoid.fen == FENS[6]
        assert avoid.best_move_uci == "h5f7"
        assert avoid.best_line_uci == ["h5f7"]
        assert avoid.accepted_moves_uci == ["h5f7"]
        assert avoid.kind is PuzzleKind.BLUNDER
        assert avoid.severity is Severity.BIG
        assert avoid.score == Score(mate=1)
        assert avoid.swing == 9950
        assert avoid.phase is GamePhase.OPENING

    def test_punish_puzzle_comes_from_the_blunder_before(self, base_config):
        punish = _run(base_config).puzzles[1]
        # 3...Nf6 (ply 5) is the blunder; the puzzle starts after it
        assert punish.source_ply == 6
        assert punish.swing == 9980
        assert punish.fen == FENS[6]

    def test_tags_and_label(self, base_config):
        avoid, punish = _run(base_config).puzzles
        assert "checkmate" in avoid.tags
        assert avoid.tags[-1] == "kind:avoidBlunder"
        assert punish.tags[-1] == "kind:punishBlunder"
        assert avoid.label == "Find the best move (avoid the mistake) Theme: deliver mate. (King's Pawn Game)"
        assert punish.label.startswith("Punish the blunder!")

    def test_opening_guessed_from_moves(self, base_config):
        analysis = _run(base_config)
        assert analysis.opening.eco == "C20"
        assert analysis.opening.name == "King's Pawn Game"
        assert analysis.opening.source is OpeningSource.GUESS
        assert analysis.puzzles[0].opening == analysis.opening

    def test_to_dict_shape(self, base_config):
        data = _run(base_config).puzzles[0].to_dict()
        assert data["type"] == "avoidBlunder"
        assert data["kind"] == "blunder"
        assert data["severity"] == 3
        assert data["score"] == {"cp": None, "mate": 1}
        assert data["opening"]["eco"] == "C20"
        assert data["phase"] == "opening"

    def test_rerun_is_identical(self, base_config):
        first = [p.to_dict() for p in _run(base_config).puzzles]
        second = [p.to_dict() for p in _run(base_config).puzzles]
        assert first == second


# ---------------------------------------------------------------------------
# Mode gate and user colour
# ---------------------------------------------------------------------------


class TestModeGate:

    def test_avoid_only(self, base_config):
        config = replace(base_config, puzzle_mode=PuzzleMode.AVOID_BLUNDER)
        assert _keys(_run(config).puzzles) == [(6, "avoidBlunder")]

    def test_punish_only(self, base_config):
        config = replace(base_config, puzzle_mode=PuzzleMode.PUNISH_BLUNDER)
        puzzles = _run(config).puzzles
        assert _keys(puzzles) == [(6, "punishBlunder")]
        assert puzzles[0].label == "Punish the blunder! Theme: deliver mate. (King's Pawn Game)"

    def test_username_picks_white(self, base_config):
        analysis = _run(base_config, username="alice")
        assert analysis.user_color == "white"
        # White's Qf3 -> avoid, Black's Nf6 -> punish
        assert _keys(analysis.puzzles) == [(6, "avoidBlunder"), (6, "punishBlunder")]

    def test_black_perspective(self, base_config):
        analysis = _run(base_config, username="bob")
        assert analysis.user_color == "black"
        # Black's Nf6 fails the tactical filter, White's Qf3 was punished by Be7
        assert analysis.puzzles == []

    def test_explicit_color_overrides_username(self, base_config):
        analysis = _run(base_config, username="alice", user_color="black")
        assert analysis.user_color == "black"
        assert analysis.puzzles == []


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestFilters:

    def test_opening_window_skips_early_moves(self):
        assert _run(AnalysisConfig(min_pv_moves=1)).puzzles == []

    def test_short_line_rejected(self):
        assert _run(AnalysisConfig(opening_skip_plies=0)).puzzles == []

    def test_quiet_line_rejected_only_when_tactics_required(self, base_config):
        loose = replace(base_config, require_tactical=False)
        assert _keys(_run(loose).puzzles) == [
            (5, "avoidBlunder"), (6, "avoidBlunder"), (6, "punishBlunder"),
        ]

    def test_eval_band(self, base_config):
        assert _run(replace(base_config, eval_band_max_cp=500)).puzzles == []
        assert len(_run(replace(base_config, eval_band_min_cp=-500, eval_band_max_cp=20000)).puzzles) == 2

    def test_uniqueness_margin_passes_clear_best(self, base_config):
        assert len(_run(replace(base_config, uniqueness_margin_cp=200)).puzzles) == 2

    def test_uniqueness_margin_rejects_close_second(self, base_config):
        evals = build_evaluations(overrides={
            6: (line("h5f7", mate=1), line("c4f7", cp=9950, pv=["c4f7", "e8e7"])),
        })
        config = replace(base_config, uniqueness_margin_cp=200)
        assert _run(config, evaluations=evals).puzzles == []

    def test_uniqueness_needs_a_second_line(self, base_config):
        evals = build_evaluations(overrides={6: (line("h5f7", mate=1),)})
        config = replace(base_config, uniqueness_margin_cp=200)
        assert _run(config, evaluations=evals).puzzles == []

    def test_trivial_endgame_rejected(self, base_config):
        config = replace(base_config, min_non_king_pieces=31)
        assert _run(config).puzzles == []
        assert len(_run(replace(config, skip_trivial_endgames=False)).puzzles) == 2

    def test_cap_keeps_highest_ranked(self, base_config):
        config = replace(base_config, max_puzzles_per_game=1)
        assert _keys(_run(config).puzzles) == [(6, "avoidBlunder")]

    def test_cap_zero_means_unlimited(self, base_config):
        assert len(_run(replace(base_config, max_puzzles_per_game=0)).puzzles) == 2

    def test_punished_blunder_skipped(self, base_config):
        loose = replace(base_config, require_tactical=False)
        assert (7, "punishBlunder") not in _keys(_run(loose).puzzles)
        unskipped = replace(loose, skip_punished_blunders=False)
        assert (7, "punishBlunder") in _keys(_run(unskipped).puzzles)

    def test_game_ending_in_mate(self, base_config):
        evals = {p: e for p, e in build_evaluations().items() if p <= 6}
        analysis = analyze_game(MATE_PGN, base_config, evaluations=evals)
        # Nf6 was punished on the board, Qxf7# itself is the best move
        assert analysis.puzzles == []

    def test_multi_solution_tag(self, base_config):
        evals = build_evaluations(overrides={
            6: (line("h5f7", mate=1), line("c4f7", mate=1, pv=["c4f7"])),
        })
        avoid = _run(base_config, evaluations=evals).puzzles[0]
        assert avoid.accepted_moves_uci == ["h5f7", "c4f7"]
        assert "multiSolution" in avoid.tags


# ---------------------------------------------------------------------------
# Monotonicity and cooldown
# ---------------------------------------------------------------------------


class TestThresholdMonotonicity:

    def test_stricter_thresholds_give_a_subset(self, base_config):
        loose = replace(base_config, require_tactical=False)
        strict = replace(loose, require_tactical=True)
        assert set(_keys(_run(strict).puzzles)) <= set(_keys(_run(loose).puzzles))

    def test_unreachable_swing_thresholds(self, base_config):
        config = replace(
            base_config,
            blunder_swing_cp=20000,
            missed_win_swing_cp=20000,
            missed_tactic_swing_cp=20000,
        )
        assert _run(config).puzzles == []

    def test_cooldown_per_type(self, base_config):
        config = replace(base_config, require_tactical=False, cooldown_plies=2)
        assert _keys(_run(config).puzzles) == [(5, "avoidBlunder"), (6, "punishBlunder")]


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class TestEvaluations:

    def test_missing_evaluation_does_not_abort(self, base_config):
        analysis = _run(base_config, evaluations=build_evaluations(drop=(3,)))
        assert len(analysis.puzzles) == 2
        assert analysis.evaluations[3] is None

    def test_missing_key_position_yields_nothing(self, base_config):
        assert _run(base_config, evaluations=build_evaluations(drop=(6,))).puzzles == []

    def test_evaluator_fills_gaps(self, base_config):
        evaluator = FakeEvaluator(build_evaluations())
        analysis = _run(base_config, evaluations=build_evaluations(drop=(6,)), evaluator=evaluator)
        assert len(analysis.puzzles) == 2
        assert evaluator.calls == [(FENS[6], base_config.movetime_ms, base_config.multipv)]

    def test_mismatched_fen_ignored(self, base_config):
        evals = build_evaluations()
        evals[6] = evals[5]
        assert _run(base_config, evaluations=evals).puzzles == []

    def test_uniqueness_requests_two_lines(self):
        config = AnalysisConfig(multipv=1, uniqueness_margin_cp=100)
        evaluator = FakeEvaluator(build_evaluations())
        evaluate_positions(parse_pgn(GAME_PGN), config, evaluator)
        assert {c[2] for c in evaluator.calls} == {2}

    def test_terminal_position_not_evaluated(self, base_config):
        evaluator = FakeEvaluator(build_evaluations())
        game = parse_pgn(MATE_PGN)
        evals = evaluate_positions(game, base_config, evaluator)
        assert 7 not in evals
        assert game.fens[7] not in [c[0] for c in evaluator.calls]

    def test_engine_unavailable_is_analysis_error(self, base_config):
        class Broken:
            def analyse(self, fen, movetime_ms, multipv=1):
                raise EngineUnavailableError("Stockfish not found")

        with pytest.raises(AnalysisError):
            analyze_game(GAME_PGN, base_config, evaluator=Broken())

    def test_all_evaluations_failing_is_analysis_error(self, base_config):
        with pytest.raises(AnalysisError, match="all"):
            analyze_game(GAME_PGN, base_config, evaluator=FakeEvaluator())

    def test_no_evaluations_at_all_is_analysis_error(self, base_config):
        with pytest.raises(AnalysisError, match="no evaluations"):
            analyze_game(GAME_PGN, base_config)
        with pytest.raises(AnalysisError):
            analyze_game(GAME_PGN, base_config, evaluations=build_evaluations(drop=tuple(range(9))))

    def test_invalid_pgn(self, base_config):
        with pytest.raises(ValueError):
            analyze_game("1. e4 e5 2. Ke3 *", base_config)


# ---------------------------------------------------------------------------
# Confirmation pass
# ---------------------------------------------------------------------------


def _deeper(*lines_) -> dict[str, PlyEvaluation]:
    return {FENS[6]: PlyEvaluation(fen=FENS[6], lines=tuple(lines_), depth=22, time_ms=1000)}


class DeepeningAnalysis:
    """Stands in for SimpleAnalysisResult on position 6.

    Depth 1 prefers Bxf7+, depth 20 finds Qxf7#. A search stopped early
    only ever saw the shallow line.
    """

    def __init__(self) -> None:
        self.stopped = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def __iter__(self):
        for depth, ranked in (
            (1, [("c4f7", chess.engine.Cp(300)), ("h5f7", chess.engine.Cp(250))]),
            (20, [("h5f7", chess.engine.Mate(1)), ("c4f7", chess.engine.Cp(300))]),
        ):
            for rank, (move, score) in enumerate(ranked, start=1):
                if self.stopped:
                    return
                yield {
                    "depth": depth,
                    "multipv": rank,
                    "score": chess.engine.PovScore(score, chess.WHITE),
                    "pv": [chess.Move.from_uci(move)],
                }
            time.sleep(0.05)

    def stop(self) -> None:
        self.stopped = True


class TestConfirmation:

    def _config(self, base_config):
        return replace(base_config, confirm_movetime_ms=1000)

    def test_regrades_from_deeper_result(self, base_config):
        evaluator = FakeEvaluator(deeper=_deeper(line("h5f7", cp=400)), deeper_movetime_ms=1000)
        puzzles = _run(self._config(base_config), evaluator=evaluator).puzzles
        assert _keys(puzzles) == [(6, "avoidBlunder"), (6, "punishBlunder")]
        # avoid: 400 - 50, punish: 400 - 20
        assert [p.swing for p in puzzles] == [350, 380]
        assert all(p.severity is Severity.MEDIUM for p in puzzles)
        assert puzzles[0].score == Score(cp=400)
        # Both framings start from position 6: one deeper query
        assert [c[0] for c in evaluator.calls] == [FENS[6]]

    def test_best_move_change_drops_candidate(self, base_config):
        evaluator = FakeEvaluator(
            deeper=_deeper(line("c4f7", cp=300, pv=["c4f7", "e8e7"])), deeper_movetime_ms=1000,
        )
        assert _run(self._config(base_config), evaluator=evaluator).puzzles == []

    def test_swing_below_thresholds_drops_candidate(self, base_config):
        evaluator = FakeEvaluator(deeper=_deeper(line("h5f7", cp=100)), deeper_movetime_ms=1000)
        assert _run(self._config(base_config), evaluator=evaluator).puzzles == []

    def test_failed_requery_keeps_shallow_result(self, base_config):
        evaluator = FakeEvaluator(
            deeper={FENS[6]: EvaluationError("timeout")}, deeper_movetime_ms=1000,
        )
        puzzles = _run(self._config(base_config), evaluator=evaluator).puzzles
        assert len(puzzles) == 2
        assert all(p.severity is Severity.BIG for p in puzzles)

    def test_shared_position_searched_once_to_full_depth(self, base_config):
        with patch("chess.engine.SimpleEngine.popen_uci") as popen:
            engine = popen.return_value
            engine.analysis.side_effect = lambda *args, **kwargs: DeepeningAnalysis()
            config = replace(base_config, confirm_movetime_ms=500)
            with EngineEvaluator(stockfish_path="/usr/bin/stockfish", workers=2) as evaluator:
                puzzles = _run(config, evaluator=evaluator).puzzles
        assert _keys(puzzles) == [(6, "avoidBlunder"), (6, "punishBlunder")]
        assert all(p.score == Score(mate=1) for p in puzzles)
        assert engine.analysis.call_count == 1

    def test_disabled_when_not_deeper(self, base_config):
        evaluator = FakeEvaluator()
        config = replace(base_config, confirm_movetime_ms=100)
        assert len(_run(config, evaluator=evaluator).puzzles) == 2
        assert evaluator.calls == []


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class TestBuckets:

    @pytest.mark.parametrize(
        "swing,before,kind",
        [
            (300, 0, PuzzleKind.BLUNDER),
            (300, 500, PuzzleKind.BLUNDER),
            (160, 250, PuzzleKind.MISSED_WIN),
            (190, 300, PuzzleKind.MISSED_WIN),
            (190, 100, PuzzleKind.MISSED_TACTIC),
            (160, 100, None),
            (100, 500, None),
            (160, None, None),
        ],
    )
    def test_classify_kind(self, swing, before, kind):
        assert classify_kind(swing, before, AnalysisConfig()) is kind

    def test_punish_kind_follows_the_solver(self):
        game = parse_pgn(GAME_PGN)
        config = AnalysisConfig(puzzle_mode=PuzzleMode.PUNISH_BLUNDER, opening_skip_plies=0)
        qh5 = ClassifiedPly(
            ply=4, move_uci="d1h5", move_san="Qh5", mover="white",
            fen_before=FENS[4], fen_after=FENS[5],
            before_cp=-100, after_cp=-260, swing=160, label=MoveLabel.MISTAKE,
        )
        # Black, the solver, is winning after the slip
        evals = build_evaluations(overrides={5: (line("g7g6", cp=260),)})
        [candidate] = find_candidates(game, [qh5], evals, config)
        assert candidate.kind is PuzzleKind.MISSED_WIN

        # White was winning before the slip but Black is not winning after it
        evals = build_evaluations(overrides={5: (line("g7g6", cp=-140),)})
        qh5 = replace(qh5, before_cp=300, after_cp=140)
        assert find_candidates(game, [qh5], evals, config) == []

    @pytest.mark.parametrize(
        "swing,severity",
        [(150, Severity.SMALL), (199, Severity.SMALL), (200, Severity.MEDIUM), (399, Severity.MEDIUM), (400, Severity.BIG)],
    )
    def test_severity(self, swing, severity):
        assert severity_for_swing(swing, AnalysisConfig()) is severity

    def test_game_phase(self):
        assert game_phase(chess.Board(), 0) is GamePhase.OPENING
        assert game_phase(chess.Board(), 30) is GamePhase.MIDDLEGAME
        assert game_phase(chess.Board("4k3/4r3/8/8/8/8/4R3/4K3 w - - 0 40"), 80) is GamePhase.ENDGAME


class TestAcceptedMoves:

    def test_equal_mates_accepted(self):
        evaluation = PlyEvaluation(fen=FENS[6], lines=(
            line("a1a2", mate=2), line("B1B2", mate=2), line("c1c2", mate=3),
        ))
        assert accepted_moves(evaluation) == ["a1a2", "b1b2"]

    def test_centipawn_best_has_single_answer(self):
        evaluation = PlyEvaluation(fen=FENS[6], lines=(line("a1a2", cp=500), line("b1b2", cp=500)))
        assert accepted_moves(evaluation) == ["a1a2"]

    def test_capped(self):
        lines_ = tuple(line(f"{chess.SQUARE_NAMES[i]}h8", mate=1) for i in range(20))
        assert len(accepted_moves(PlyEvaluation(fen=FENS[6], lines=lines_))) == 16


def _candidate(ply: int, puzzle_type: PuzzleType, fen: str = FENS[6]) -> Candidate:
    return Candidate(
        type=puzzle_type, source_ply=ply, fen=fen,
        evaluation=PlyEvaluation(fen=fen, lines=(line("h5f7", mate=1),)),
        swing=500, kind=PuzzleKind.BLUNDER, severity=Severity.BIG, reference_cp=0,
    )


class TestDedupAndRanking:

    def test_same_position_same_type_kept_once(self):
        kept = dedupe([_candidate(6, PuzzleType.AVOID_BLUNDER), _candidate(8, PuzzleType.AVOID_BLUNDER)])
        assert [c.source_ply for c in kept] == [6]

    def test_same_position_other_type_kept(self):
        kept = dedupe([_candidate(6, PuzzleType.PUNISH_BLUNDER), _candidate(6, PuzzleType.AVOID_BLUNDER)])
        assert [c.type for c in kept] == [PuzzleType.AVOID_BLUNDER, PuzzleType.PUNISH_BLUNDER]

    def test_cooldown_off_by_default(self):
        candidates = [_candidate(6, PuzzleType.AVOID_BLUNDER, FENS[5]), _candidate(7, PuzzleType.AVOID_BLUNDER)]
        assert apply_cooldown(candidates, 0) == candidates

    def test_rank_by_severity_then_ply(self):
        def puzzle(ply, severity, puzzle_type=PuzzleType.AVOID_BLUNDER):
            return ExtractedPuzzle(
                source_ply=ply, fen=FENS[0], best_move_uci="e2e4", best_line_uci=["e2e4"],
                type=puzzle_type, kind=PuzzleKind.BLUNDER, severity=severity,
            )

        ranked = select_puzzles([
            puzzle(30, Severity.SMALL),
            puzzle(20, Severity.BIG, PuzzleType.PUNISH_BLUNDER),
            puzzle(40, Severity.BIG),
            puzzle(20, Severity.BIG),
            puzzle(10, Severity.MEDIUM),
        ], cap=None)
        assert [(p.source_ply, int(p.severity), p.type.value) for p in ranked] == [
            (20, 3, "avoidBlunder"),
            (20, 3, "punishBlunder"),
            (40, 3, "avoidBlunder"),
            (10, 2, "avoidBlunder"),
            (30, 1, "avoidBlunder"),
        ]

    def test_build_tags_dedupes_and_marks_type(self):
        tags = build_tags([Motif.PIN, Motif.FORK, Motif.PIN], PuzzleType.PUNISH_BLUNDER)
        assert tags == ["fork", "pin", "kind:punishBlunder"]
