"""Exception types raised by the puzzle miner library."""

from __future__ import annotations


class PuzzleMinerError(Exception):
    """Base class for all puzzle miner errors."""


class EngineUnavailableError(PuzzleMinerError, FileNotFoundError):
    """The engine binary is missing or the process cannot be (re)started."""


class EvaluationError(PuzzleMinerError):
    """A single position could not be evaluated (search error or no result)."""


class AnalysisError(PuzzleMinerError):
    """A whole game could not be analyzed; stored puzzles stay untouched."""


class ReplaceFailedError(PuzzleMinerError):
    """The delete+insert of a game's puzzle set was rolled back. Safe to retry."""


class InvalidAttemptError(PuzzleMinerError, ValueError):
    """A submitted attempt is malformed (e.g. empty move)."""


class PuzzleNotFoundError(PuzzleMinerError, LookupError):
    """No puzzle with this id belongs to the requesting user."""


class GameNotFoundError(PuzzleMinerError, LookupError):
    """No game with this id belongs to the requesting user."""
