"""Tactical signals for puzzle positions.

Detects motifs (fork, pin, skewer, mates, ...) for a solution move, checks
whether a principal line is forcing enough to be a tactic, and derives the
line-level signals (mate threat, hanging piece) used as puzzle tags.
"""

from __future__ import annotations

import chess

from puzzle_miner.models import Motif, PlyEvaluation

_PIECE_VALUES: dict[int, int] = {
    chess.PAWN: 1,
    chess.KNIGHT: 3,
    chess.BISHOP: 3,
    chess.ROOK: 5,
    chess.QUEEN: 9,
    chess.KING: 0,
}

_SLIDERS = (chess.BISHOP, chess.ROOK, chess.QUEEN)

_ROOK_DIRECTIONS = [(1, 0), (-1, 0), (0, 1), (0, -1)]
_BISHOP_DIRECTIONS = [(1, 1), (1, -1), (-1, 1), (-1, -1)]

# Mate announcements deeper than this are not tagged as a mate threat
_MATE_THREAT_MAX = 5
# Material (in pawns) that must change hands along the line
_HANGING_MIN_GAIN = 3
_HANGING_WINDOW_PLIES = 4


def piece_value(piece_type: int) -> int:
    return _PIECE_VALUES.get(piece_type, 0)


def material(board: chess.Board, color: chess.Color) -> int:
    return sum(
        piece_value(piece.piece_type)
        for piece in board.piece_map().values()
        if piece.color == color
    )


def total_material(board: chess.Board) -> int:
    return material(board, chess.WHITE) + material(board, chess.BLACK)


def legal_line(board: chess.Board, pv_uci: list[str] | tuple[str, ...]) -> list[chess.Move]:
    """Parse a UCI line, stopping at the first move that is not legal."""
    temp = board.copy(stack=False)
    moves: list[chess.Move] = []
    for uci in pv_uci:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in temp.legal_moves:
            break
        moves.append(move)
        temp.push(move)
    return moves


# ---------------------------------------------------------------------------
# Forcing-move checks
# ---------------------------------------------------------------------------


def is_forcing(board: chess.Board, move: chess.Move) -> bool:
    """A capture, a check or a promotion."""
    return (
        board.is_capture(move)
        or board.gives_check(move)
        or move.promotion is not None
    )


def line_contains_tactic(board: chess.Board, pv_uci: list[str] | tuple[str, ...], lookahead: int) -> bool:
    """Whether the first move, or a follow-up within ``lookahead`` plies, is forcing."""
    temp = board.copy(stack=False)
    for move in legal_line(board, pv_uci)[: max(1, lookahead)]:
        if is_forcing(temp, move):
            return True
        temp.push(move)
    return False


# ---------------------------------------------------------------------------
# Single-move motifs
# ---------------------------------------------------------------------------


def _detect_fork(after: chess.Board, move: chess.Move) -> bool:
    piece = after.piece_at(move.to_square)
    if piece is None:
        return False
    valuable = 0
    for sq in after.attacks(move.to_square):
        victim = after.piece_at(sq)
        if victim is None or victim.color == piece.color:
            continue
        if victim.piece_type == chess.KING or piece_value(victim.piece_type) >= 3:
            valuable += 1
    return valuable >= 2


def _detect_pin(after: chess.Board, move: chess.Move) -> bool:
    piece = after.piece_at(move.to_square)
    if piece is None or piece.piece_type not in _SLIDERS:
        return False
    enemy = not piece.color
    for sq, victim in after.piece_map().items():
        if victim.color != enemy or victim.piece_type in (chess.KING, chess.QUEEN):
            continue
        if after.is_pinned(enemy, sq) and after.pin(enemy, sq) & chess.BB_SQUARES[move.to_square]:
            return True
    return False


def _scan_ray(
    board: chess.Board, from_sq: int, d_rank: int, d_file: int, target: chess.Color
) -> list[int]:
    """Piece types of ``target`` colour along a ray, stopping at a friendly piece."""
    found: list[int] = []
    rank = chess.square_rank(from_sq) + d_rank
    file = chess.square_file(from_sq) + d_file
    while 0 <= rank <= 7 and 0 <= file <= 7:
        piece = board.piece_at(chess.square(file, rank))
        if piece is not None:
            if piece.color != target:
                break
            found.append(piece.piece_type)
        rank += d_rank
        file += d_file
    return found


def _detect_skewer(after: chess.Board, move: chess.Move) -> bool:
    piece = after.piece_at(move.to_square)
    if piece is None or piece.piece_type not in _SLIDERS:
        return False
    directions = []
    if piece.piece_type in (chess.ROOK, chess.QUEEN):
        directions.extend(_ROOK_DIRECTIONS)
    if piece.piece_type in (chess.BISHOP, chess.QUEEN):
        directions.extend(_BISHOP_DIRECTIONS)
    for d_rank, d_file in directions:
        pieces = _scan_ray(after, move.to_square, d_rank, d_file, not piece.color)
        if len(pieces) < 2:
            continue
        front, back = pieces[0], pieces[1]
        if front == chess.KING or piece_value(front) > piece_value(back):
            return True
    return False


def _detect_back_rank_mate(after: chess.Board) -> bool:
    mated = after.turn
    king_sq = after.king(mated)
    if king_sq is None:
        return False
    back_rank = 0 if mated == chess.WHITE else 7
    if chess.square_rank(king_sq) != back_rank:
        return False
    if not any(chess.square_rank(sq) == back_rank for sq in after.checkers()):
        return False
    escape_rank = 1 if mated == chess.WHITE else 6
    king_file = chess.square_file(king_sq)
    for f in range(max(0, king_file - 1), min(8, king_file + 2)):
        blocker = after.piece_at(chess.square(f, escape_rank))
        if blocker is not None and blocker.color == mated and blocker.piece_type == chess.PAWN:
            return True
    return False


def _detect_discovered_attack(board: chess.Board, after: chess.Board, move: chess.Move) -> bool:
    mover = board.piece_at(move.from_square)
    if mover is None:
        return False
    for sq, piece in after.piece_map().items():
        if piece.color != mover.color or sq == move.to_square or piece.piece_type not in _SLIDERS:
            continue
        new_attacks = after.attacks(sq) & ~board.attacks(sq)
        for target in new_attacks:
            victim = after.piece_at(target)
            if victim is None or victim.color == mover.color:
                continue
            if victim.piece_type == chess.KING or piece_value(victim.piece_type) >= 3:
                return True
    return False


def detect_move_motifs(board: chess.Board, move: chess.Move) -> list[Motif]:
    """Detect the tactical themes of a single move.

    Args:
        board: Position BEFORE the move.
        move: A legal move in that position.

    Returns:
        Motifs, most specific first. Empty for a quiet move.
    """
    after = board.copy(stack=False)
    after.push(move)
    motifs: list[Motif] = []

    if after.is_checkmate():
        motifs.append(Motif.BACK_RANK_MATE if _detect_back_rank_mate(after) else Motif.CHECKMATE)
    if after.is_check() and len(after.checkers()) >= 2:
        motifs.append(Motif.DOUBLE_CHECK)
    if _detect_discovered_attack(board, after, move):
        motifs.append(Motif.DISCOVERED_ATTACK)
    if _detect_fork(after, move):
        motifs.append(Motif.FORK)
    if _detect_pin(after, move):
        motifs.append(Motif.PIN)
    if _detect_skewer(after, move):
        motifs.append(Motif.SKEWER)
    if move.promotion is not None:
        motifs.append(Motif.PROMOTION)
    return motifs


# ---------------------------------------------------------------------------
# Line-level signals
# ---------------------------------------------------------------------------


def has_mate_threat(evaluation: PlyEvaluation) -> bool:
    """The side to move has a short forced mate in its best line."""
    best = evaluation.best
    if best is None or best.score.mate is None:
        return False
    return 0 < best.score.mate <= _MATE_THREAT_MAX


def wins_material(board: chess.Board, pv_uci: list[str] | tuple[str, ...]) -> bool:
    """The side to move nets at least a minor piece within the first plies of the line."""
    solver = board.turn
    start = material(board, solver) - material(board, not solver)
    temp = board.copy(stack=False)
    for move in legal_line(board, pv_uci)[:_HANGING_WINDOW_PLIES]:
        temp.push(move)
    balance = material(temp, solver) - material(temp, not solver)
    return balance - start >= _HANGING_MIN_GAIN


def line_motifs(board: chess.Board, evaluation: PlyEvaluation) -> list[Motif]:
    """All signals for a puzzle position: first-move motifs plus line signals."""
    best = evaluation.best
    if best is None:
        return []
    line = legal_line(board, best.pv_uci)
    motifs = detect_move_motifs(board, line[0]) if line else []
    if has_mate_threat(evaluation) and Motif.CHECKMATE not in motifs and Motif.BACK_RANK_MATE not in motifs:
        motifs.append(Motif.MATE_THREAT)
    if wins_material(board, best.pv_uci):
        motifs.append(Motif.HANGING_PIECE)
    return motifs
