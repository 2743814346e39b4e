"""A short real game with scripted engine evaluations.

1.e4 e5 2.Bc4 Nc6 3.Qh5 Nf6?? 4.Qf3?? (4.Qxf7# was mate) Be7

Shared by the extraction, sync and tool-server tests so they run without
Stockfish.
"""

from __future__ import annotations

import threading

import chess

from puzzle_miner.errors import EvaluationError
from puzzle_miner.models import EngineLine, PlyEvaluation, Score

GAME_PGN = """[Event "Casual game"]
[Site "?"]
[Date "2024.03.09"]
[White "alice"]
[Black "bob"]
[Result "*"]

1. e4 e5 2. Bc4 Nc6 3. Qh5 Nf6 4. Qf3 Be7 *
"""

GAME_UCIS = ["e2e4", "e7e5", "f1c4", "b8c6", "d1h5", "g8f6", "h5f3", "f8e7"]

# 4.Qxf7# played: the final position is checkmate
MATE_PGN = """[White "alice"]
[Black "bob"]
[Result "1-0"]

1. e4 e5 2. Bc4 Nc6 3. Qh5 Nf6 4. Qxf7# 1-0
"""


def line(move: str, cp: int | None = None, mate: int | None = None, pv: list[str] | None = None) -> EngineLine:
    """Build an EngineLine; the PV defaults to the move alone."""
    return EngineLine(move_uci=move, score=Score(cp=cp, mate=mate), pv_uci=tuple(pv or [move]))


def game_fens(ucis: list[str] = GAME_UCIS) -> list[str]:
    board = chess.Board()
    fens = [board.fen()]
    for uci in ucis:
        board.push_uci(uci)
        fens.append(board.fen())
    return fens


def build_evaluations(overrides: dict | None = None, drop: tuple[int, ...] = ()) -> dict[int, PlyEvaluation]:
    """Scripted evaluations of every position of GAME_PGN.

    Scores are relative to the side to move. Position 6 (White to move
    after 3...Nf6) has mate in one with Qxf7; 4.Qf3 throws it away.
    """
    fens = game_fens()
    lines = {
        0: (line("e2e4", cp=30),),
        1: (line("e7e5", cp=-30),),
        2: (line("f1c4", cp=30),),
        3: (line("b8c6", cp=-30),),
        4: (line("d1h5", cp=40),),
        5: (line("g7g6", cp=-20, pv=["g7g6", "h5f3", "g8f6"]),),
        6: (line("h5f7", mate=1), line("c4f7", cp=300, pv=["c4f7", "e8e7"])),
        7: (line("f8e7", cp=-50, pv=["f8e7", "b1c3", "e8g8"]),),
        8: (line("b1c3", cp=50),),
    }
    lines.update(overrides or {})
    return {
        ply: PlyEvaluation(fen=fens[ply], lines=lines[ply], depth=12, time_ms=200, ply=ply)
        for ply in lines
        if ply not in drop
    }


def _fen_key(fen: str) -> str:
    return " ".join(fen.split()[:4])


class FakeEvaluator:
    """Stands in for EngineEvaluator.analyse.

    Answers from a FEN -> PlyEvaluation table. ``deeper`` answers calls made
    with ``deeper_movetime_ms`` (the confirmation pass); a value that is an
    exception instance is raised instead.
    """

    def __init__(
        self,
        evaluations: dict[int, PlyEvaluation] | None = None,
        deeper: dict[str, PlyEvaluation | Exception] | None = None,
        deeper_movetime_ms: int | None = None,
    ) -> None:
        self._by_fen = {_fen_key(e.fen): e for e in (evaluations or {}).values()}
        self._deeper = {_fen_key(k): v for k, v in (deeper or {}).items()}
        self._deeper_movetime_ms = deeper_movetime_ms
        self._lock = threading.Lock()
        self.calls: list[tuple[str, int, int]] = []

    def analyse(self, fen: str, movetime_ms: int, multipv: int = 1) -> PlyEvaluation:
        with self._lock:
            self.calls.append((fen, movetime_ms, multipv))
        key = _fen_key(fen)
        if movetime_ms == self._deeper_movetime_ms and key in self._deeper:
            answer = self._deeper[key]
        else:
            answer = self._by_fen.get(key)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            raise EvaluationError(f"No scripted evaluation for {fen}")
        return answer


class GatedEvaluator(FakeEvaluator):
    """A FakeEvaluator whose first answer waits until ``gate`` is set.

    ``entered`` is set as soon as a call arrives, so a test can line up a
    second run behind a slow one.
    """

    def __init__(self, evaluations: dict[int, PlyEvaluation] | None = None) -> None:
        super().__init__(evaluations)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def analyse(self, fen: str, movetime_ms: int, multipv: int = 1) -> PlyEvaluation:
        self.entered.set()
        self.gate.wait(5)
        return super().analyse(fen, movetime_ms, multipv)


def puzzle_records() -> list[dict]:
    """Three well-formed puzzle records in the ingestion shape."""
    fens = game_fens()
    return [
        {
            "source_ply": 6,
            "fen": fens[6],
            "best_move_uci": "h5f7",
            "best_line_uci": ["h5f7"],
            "type": "avoidBlunder",
            "kind": "blunder",
            "severity": 3,
            "phase": "opening",
            "score": {"cp": None, "mate": 1},
            "tags": ["checkmate"],
            "opening": {"eco": "C20", "name": "King's Pawn Game"},
        },
        {
            "source_ply": 6,
            "fen": fens[6],
            "best_move_uci": "h5f7",
            "best_line_uci": ["h5f7"],
            "accepted_moves_uci": ["h5f7", "c4f7"],
            "type": "punishBlunder",
            "kind": "blunder",
            "severity": 3,
            "phase": "opening",
            "tags": ["checkmate", "multiSolution"],
            "opening": {"eco": "C20", "name": "King's Pawn Game"},
        },
        {
            "source_ply": 5,
            "fen": fens[5],
            "best_move_uci": "g7g6",
            "best_line_uci": ["g7g6", "h5f3"],
            "type": "avoidBlunder",
            "kind": "missedTactic",
            "severity": 1,
            "phase": "middlegame",
            "tags": ["hangingPiece"],
            "opening": {"eco": "B20", "name": "Sicilian Defense"},
        },
    ]
