"""Normalized game shape: PGN parsing and per-position bookkeeping.

Provider-specific importers are expected to hand over a plain PGN string.
Everything downstream works on ParsedGame, which replays the mainline once
and keeps the FEN, SAN and UCI of every ply.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field

import chess
import chess.pgn


@dataclass
class ParsedGame:
    """A replayed game. ``fens[i]`` is the position before move ``i``."""

    headers: dict[str, str]
    moves: list[chess.Move]
    sans: list[str]
    fens: list[str]
    terminal_positions: set[int] = field(default_factory=set)

    @property
    def ucis(self) -> list[str]:
        return [m.uci() for m in self.moves]

    @property
    def ply_count(self) -> int:
        return len(self.moves)

    def board_at(self, ply: int) -> chess.Board:
        """Board for the position before move ``ply`` (``ply_count`` = final)."""
        return chess.Board(self.fens[ply])


def color_name(color: chess.Color) -> str:
    return "white" if color == chess.WHITE else "black"


def non_king_piece_count(board: chess.Board) -> int:
    """Count every piece on the board except the two kings."""
    return len(board.piece_map()) - len(board.pieces(chess.KING, chess.WHITE)) - len(
        board.pieces(chess.KING, chess.BLACK)
    )


def parse_pgn(pgn: str) -> ParsedGame:
    """Parse a single-game PGN and replay its mainline.

    Args:
        pgn: PGN text. Only the first game is read.

    Returns:
        ParsedGame with headers, moves and the FEN of every position.

    Raises:
        ValueError: If the PGN is empty, unreadable or has no moves.
    """
    if not pgn or not pgn.strip():
        raise ValueError("PGN is empty")

    game = chess.pgn.read_game(io.StringIO(pgn))
    if game is None:
        raise ValueError("Could not parse PGN")
    if game.errors:
        raise ValueError(f"Invalid PGN: {game.errors[0]}")

    board = game.board()
    moves: list[chess.Move] = []
    sans: list[str] = []
    fens: list[str] = [board.fen()]
    terminal: set[int] = set()

    for move in game.mainline_moves():
        sans.append(board.san(move))
        moves.append(move)
        board.push(move)
        fens.append(board.fen())

    if not moves:
        raise ValueError("PGN contains no moves")

    if board.is_game_over():
        terminal.add(len(moves))

    return ParsedGame(
        headers=dict(game.headers),
        moves=moves,
        sans=sans,
        fens=fens,
        terminal_positions=terminal,
    )


def infer_user_color(headers: dict[str, str], username: str | None) -> str | None:
    """Match a username against the White/Black headers.

    Returns:
        "white", "black", or None when the user is not a player (or no
        username was given), in which case both sides are mined.
    """
    if not username:
        return None
    wanted = username.strip().lower()
    if headers.get("White", "").strip().lower() == wanted:
        return "white"
    if headers.get("Black", "").strip().lower() == wanted:
        return "black"
    return None
