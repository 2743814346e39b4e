"""Shared test fixtures with dual-mode support (scripted vs real Stockfish).

Usage:
    uv run pytest tests/                  # Fast, scripted evaluations (no Stockfish)
    uv run pytest tests/ --e2e            # Real Stockfish for integration tests

Fixtures:
    game_pgn           - A short real game with a missed mate in one.
    game_evaluations   - Scripted per-ply evaluations for that game.
    fake_evaluator     - FakeEvaluator answering from the scripted evaluations.
    base_config        - AnalysisConfig tuned so the short game yields puzzles.
    store              - PuzzleStore in tmp_path.
    seeded             - (store, game_id) with three stored puzzles.
    enable_validation  - Sets PUZZLE_MINER_VALIDATE=1 for schema validation.
"""

from __future__ import annotations

import os

import pytest

from puzzle_miner.config import AnalysisConfig
from puzzle_miner.models import PlyEvaluation
from puzzle_miner.store import PuzzleStore
from puzzle_miner.sync import ingest_puzzles
from scripted_game import GAME_PGN, FakeEvaluator, build_evaluations, puzzle_records


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no mocks).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip e2e tests unless --e2e is given."""
    if config.getoption("--e2e"):
        return
    skip = pytest.mark.skip(reason="needs --e2e and a real Stockfish")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def game_pgn() -> str:
    return GAME_PGN


@pytest.fixture()
def game_evaluations() -> dict[int, PlyEvaluation]:
    return build_evaluations()


@pytest.fixture()
def fake_evaluator(game_evaluations) -> FakeEvaluator:
    return FakeEvaluator(game_evaluations)


@pytest.fixture()
def base_config() -> AnalysisConfig:
    """Defaults, except the opening window and minimum line length.

    The scripted game is only eight plies long and its key puzzle is a
    mate in one.
    """
    return AnalysisConfig(opening_skip_plies=0, min_pv_moves=1)


@pytest.fixture()
def store(tmp_path) -> PuzzleStore:
    return PuzzleStore(tmp_path / "puzzles.db")


@pytest.fixture()
def seeded(store) -> tuple[PuzzleStore, str]:
    """Store holding one game of user-1 with the three puzzle_records()."""
    game_id = store.upsert_game("user-1", GAME_PGN, user_color="white")
    ingest_puzzles(store, "user-1", game_id, puzzle_records())
    return store, game_id


# ---------------------------------------------------------------------------
# Schema validation fixture
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def enable_validation():
    """Set PUZZLE_MINER_VALIDATE=1 for the test session.

    Restores the original env var value after the test.
    """
    original = os.environ.get("PUZZLE_MINER_VALIDATE")
    os.environ["PUZZLE_MINER_VALIDATE"] = "1"
    yield
    if original is None:
        os.environ.pop("PUZZLE_MINER_VALIDATE", None)
    else:
        os.environ["PUZZLE_MINER_VALIDATE"] = original
