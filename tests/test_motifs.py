"""Tests for tactical motif detection and line-level signals.

Known positions with clear tactical themes. No Stockfish required.
"""

from __future__ import annotations

import chess
import pytest

from puzzle_miner.models import Motif, PlyEvaluation
from puzzle_miner.motifs import (
    detect_move_motifs,
    has_mate_threat,
    legal_line,
    line_contains_tactic,
    line_motifs,
    piece_value,
    total_material,
    wins_material,
)
from scripted_game import game_fens, line

SCHOLARS_MATE = "r1bqkbnr/pppp1ppp/2n5/4p2Q/2B1P3/8/PPPP1PPP/RNB1K1NR w KQkq - 4 3"


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------

def _motifs(fen: str, uci: str) -> list[Motif]:
    board = chess.Board(fen)
    move = chess.Move.from_uci(uci)
    assert move in board.legal_moves, f"{uci} not legal in {fen}"
    return detect_move_motifs(board, move)


# ---------------------------------------------------------------------------
# Material
# ---------------------------------------------------------------------------


class TestMaterial:

    @pytest.mark.parametrize(
        "piece_type,value",
        [(chess.PAWN, 1), (chess.KNIGHT, 3), (chess.BISHOP, 3), (chess.ROOK, 5), (chess.QUEEN, 9), (chess.KING, 0)],
    )
    def test_piece_values(self, piece_type, value):
        assert piece_value(piece_type) == value

    def test_full_set(self):
        assert total_material(chess.Board()) == 78


# ---------------------------------------------------------------------------
# Single-move motifs
# ---------------------------------------------------------------------------


class TestFork:

    def test_knight_fork_king_rook(self):
        assert Motif.FORK in _motifs("r3k3/8/8/3N4/8/8/8/4K3 w q - 0 1", "d5c7")

    def test_knight_fork_queen_rook(self):
        assert Motif.FORK in _motifs("4k3/8/3q1r2/8/8/2N5/8/4K3 w - - 0 1", "c3e4")

    def test_queen_fork(self):
        # Qa4+ hits the king on e8 and the rook on a8
        assert Motif.FORK in _motifs("r3k3/8/8/8/8/8/8/Q3K3 w q - 0 1", "a1a4")

    def test_no_fork_on_quiet_move(self):
        assert Motif.FORK not in _motifs(chess.STARTING_FEN, "e2e4")


class TestPin:

    def test_bishop_pins_knight_to_king(self):
        fen = "r1bqk2r/ppp2ppp/2n2n2/4p3/4P3/5N2/PPPP1PPP/RNBQKB1R w KQkq - 0 4"
        assert Motif.PIN in _motifs(fen, "f1b5")

    def test_rook_pins_bishop_to_king(self):
        assert Motif.PIN in _motifs("4k3/8/8/4b3/8/8/8/R5K1 w - - 0 1", "a1e1")


class TestSkewer:

    def test_rook_skewer_king_before_queen(self):
        assert Motif.SKEWER in _motifs("4q3/8/8/4k3/8/8/8/R6K w - - 0 1", "a1e1")

    def test_bishop_skewer_queen_before_rook(self):
        assert Motif.SKEWER in _motifs("6r1/5q2/8/8/8/1B6/8/K6k w - - 0 1", "b3e6")


class TestMates:

    def test_back_rank_mate(self):
        motifs = _motifs("6k1/5ppp/8/8/8/8/8/4R1K1 w - - 0 1", "e1e8")
        assert motifs[0] is Motif.BACK_RANK_MATE
        assert Motif.CHECKMATE not in motifs

    def test_back_rank_needs_pawn_wall(self):
        motifs = _motifs("6k1/1R6/8/8/8/8/8/R5K1 w - - 0 1", "a1a8")
        assert Motif.CHECKMATE in motifs
        assert Motif.BACK_RANK_MATE not in motifs

    def test_scholars_mate(self):
        assert _motifs(SCHOLARS_MATE, "h5f7")[0] is Motif.CHECKMATE

    def test_check_is_not_mate(self):
        assert Motif.CHECKMATE not in _motifs("4k3/8/8/8/8/8/8/R3K3 w - - 0 1", "a1a8")


class TestDiscoveredAndDoubleCheck:

    def test_knight_uncovers_bishop_on_queen(self):
        assert Motif.DISCOVERED_ATTACK in _motifs("4k3/6q1/8/8/3N4/8/1B6/4K3 w - - 0 1", "d4e6")

    def test_double_check(self):
        # Nd6+ uncovers the rook on the e-file
        motifs = _motifs("4k3/8/8/8/4N3/8/8/4R1K1 w - - 0 1", "e4d6")
        assert Motif.DOUBLE_CHECK in motifs
        assert Motif.DISCOVERED_ATTACK in motifs


class TestPromotion:

    @pytest.mark.parametrize("uci", ["a7a8q", "a7a8n"])
    def test_promotion(self, uci):
        assert Motif.PROMOTION in _motifs("4k3/P7/8/8/8/8/8/4K3 w - - 0 1", uci)


class TestQuietMoves:

    @pytest.mark.parametrize("uci", ["e2e4", "g1f3"])
    def test_no_motif(self, uci):
        assert _motifs(chess.STARTING_FEN, uci) == []


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------


class TestLines:

    def test_legal_line_stops_at_illegal_move(self):
        board = chess.Board()
        assert [m.uci() for m in legal_line(board, ["e2e4", "e2e4", "e7e5"])] == ["e2e4"]
        assert [m.uci() for m in legal_line(board, ["e2e4", "garbage"])] == ["e2e4"]
        # The board itself is untouched
        assert board.fen() == chess.STARTING_FEN

    def test_tactic_within_lookahead(self):
        board = chess.Board()
        pv = ["e2e4", "d7d5", "e4d5"]
        assert not line_contains_tactic(board, pv, 2)
        assert line_contains_tactic(board, pv, 3)

    def test_scripted_positions(self):
        fens = game_fens()
        assert line_contains_tactic(chess.Board(fens[6]), ["h5f7"], 4)
        assert not line_contains_tactic(chess.Board(fens[5]), ["g7g6", "h5f3", "g8f6"], 4)

    def test_mate_threat(self):
        fen = chess.STARTING_FEN
        assert has_mate_threat(PlyEvaluation(fen=fen, lines=(line("e2e4", mate=3),)))
        assert not has_mate_threat(PlyEvaluation(fen=fen, lines=(line("e2e4", mate=8),)))
        assert not has_mate_threat(PlyEvaluation(fen=fen, lines=(line("e2e4", mate=-2),)))
        assert not has_mate_threat(PlyEvaluation(fen=fen, lines=(line("e2e4", cp=900),)))
        assert not has_mate_threat(PlyEvaluation(fen=fen))

    def test_wins_material(self):
        board = chess.Board("4k3/8/8/3q4/8/8/8/3RK3 w - - 0 1")
        assert wins_material(board, ["d1d5", "e8e7"])
        assert not wins_material(chess.Board(), ["e2e4", "d7d5", "e4d5"])

    def test_line_motifs_mate_is_not_a_threat(self):
        evaluation = PlyEvaluation(fen=SCHOLARS_MATE, lines=(line("h5f7", mate=1),))
        motifs = line_motifs(chess.Board(SCHOLARS_MATE), evaluation)
        assert Motif.CHECKMATE in motifs
        assert Motif.MATE_THREAT not in motifs

    def test_line_motifs_quiet_move_with_mate_ahead(self):
        evaluation = PlyEvaluation(fen=chess.STARTING_FEN, lines=(line("e2e4", mate=3),))
        assert line_motifs(chess.Board(), evaluation) == [Motif.MATE_THREAT]

    def test_line_motifs_without_lines(self):
        assert line_motifs(chess.Board(), PlyEvaluation(fen=chess.STARTING_FEN)) == []
