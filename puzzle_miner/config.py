"""Analysis configuration and user preference handling.

AnalysisConfig is immutable for the duration of an extraction run and is
always passed explicitly by the caller. Preferences arrive as loosely-typed
string blobs (settings forms, JSON files); ``from_preferences`` turns them
into a config, treating blank values as "disabled" for bound fields and
"use the default" for threshold fields.

Preference blobs are versioned. Version 1 used camelCase keys; version 2
uses the config field names. ``migrate_preferences`` performs the one-time
upgrade and ``merge_preferences`` the explicit merge of a patch into a base.
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from puzzle_miner.models import PuzzleMode

logger = logging.getLogger(__name__)

PREFERENCES_VERSION = 2

# Fields where blank/absent means "no bound" rather than "default"
_BOUND_FIELDS = frozenset({
    "max_puzzles_per_game",
    "eval_band_min_cp",
    "eval_band_max_cp",
    "uniqueness_margin_cp",
    "confirm_movetime_ms",
})

# v1 (camelCase) preference keys -> config field names
_V1_KEYS: dict[str, str] = {
    "puzzleMode": "puzzle_mode",
    "movetimeMs": "movetime_ms",
    "maxPuzzlesPerGame": "max_puzzles_per_game",
    "blunderSwingCp": "blunder_swing_cp",
    "missedWinSwingCp": "missed_win_swing_cp",
    "missedTacticSwingCp": "missed_tactic_swing_cp",
    "winningThresholdCp": "winning_threshold_cp",
    "openingSkipPlies": "opening_skip_plies",
    "skipTrivialEndgames": "skip_trivial_endgames",
    "minNonKingPieces": "min_non_king_pieces",
    "minPvMoves": "min_pv_moves",
    "cooldownPliesAfterPuzzle": "cooldown_plies",
    "evalBandMinCp": "eval_band_min_cp",
    "evalBandMaxCp": "eval_band_max_cp",
    "requireTactical": "require_tactical",
    "tacticalLookaheadPlies": "tactical_lookahead_plies",
    "confirmMovetimeMs": "confirm_movetime_ms",
    "uniquenessMarginCp": "uniqueness_margin_cp",
}

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class AnalysisConfig:
    """Full threshold set for one extraction run. All swings are centipawns."""

    puzzle_mode: PuzzleMode = PuzzleMode.BOTH
    movetime_ms: int = 200
    max_puzzles_per_game: int | None = None
    blunder_swing_cp: int = 250
    missed_win_swing_cp: int = 150
    missed_tactic_swing_cp: int = 180
    winning_threshold_cp: int = 200
    opening_skip_plies: int = 8
    skip_trivial_endgames: bool = True
    min_non_king_pieces: int = 4
    min_pv_moves: int = 2
    require_tactical: bool = True
    tactical_lookahead_plies: int = 4
    eval_band_min_cp: int | None = None
    eval_band_max_cp: int | None = None
    uniqueness_margin_cp: int | None = None
    confirm_movetime_ms: int | None = None
    cooldown_plies: int = 0
    skip_punished_blunders: bool = True
    multipv: int = 2
    max_line_plies: int = 10
    confirm_workers: int = 4
    mate_score_cp: int = 10000
    best_swing_cp: int = 10
    inaccuracy_swing_cp: int = 50
    medium_swing_cp: int = 200
    big_swing_cp: int = 400

    def __post_init__(self) -> None:
        if not isinstance(self.puzzle_mode, PuzzleMode):
            object.__setattr__(self, "puzzle_mode", PuzzleMode(self.puzzle_mode))
        if self.movetime_ms <= 0:
            raise ValueError(f"movetime_ms must be positive, got {self.movetime_ms}")
        if self.multipv < 1:
            raise ValueError(f"multipv must be >= 1, got {self.multipv}")
        if self.confirm_workers < 1:
            raise ValueError(f"confirm_workers must be >= 1, got {self.confirm_workers}")
        if (
            self.eval_band_min_cp is not None
            and self.eval_band_max_cp is not None
            and self.eval_band_min_cp > self.eval_band_max_cp
        ):
            raise ValueError(
                f"eval band is empty: min {self.eval_band_min_cp} > max {self.eval_band_max_cp}"
            )

    @property
    def cap(self) -> int | None:
        """Per-game puzzle cap, None when unlimited (0 counts as unlimited)."""
        if not self.max_puzzles_per_game:
            return None
        return self.max_puzzles_per_game

    @property
    def confirmation_enabled(self) -> bool:
        return (
            self.confirm_movetime_ms is not None
            and self.confirm_movetime_ms > self.movetime_ms
        )

    @classmethod
    def from_preferences(cls, prefs: Mapping[str, Any] | None) -> AnalysisConfig:
        """Build a config from a (possibly v1) preference mapping.

        Unknown keys are ignored. Unparseable numbers count as blank.
        """
        prefs = migrate_preferences(prefs or {})
        defaults = cls()
        values: dict[str, Any] = {}

        for f in fields(cls):
            raw = prefs.get(f.name)
            default = getattr(defaults, f.name)
            if f.name == "puzzle_mode":
                values[f.name] = _parse_mode(raw, default)
            elif isinstance(default, bool):
                values[f.name] = _parse_bool(raw, default)
            elif f.name in _BOUND_FIELDS:
                values[f.name] = _parse_int(raw)
            else:
                parsed = _parse_int(raw)
                values[f.name] = default if parsed is None else parsed

        return cls(**values)

    def to_preferences(self) -> dict[str, Any]:
        """Serialize as a current-version preference blob (blank = None)."""
        prefs: dict[str, Any] = {"version": PREFERENCES_VERSION}
        for key, value in asdict(self).items():
            if isinstance(value, PuzzleMode):
                value = value.value
            prefs[key] = "" if value is None else value
        return prefs


# ---------------------------------------------------------------------------
# Preference parsing helpers
# ---------------------------------------------------------------------------


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _parse_int(raw: Any) -> int | None:
    if _is_blank(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        value = raw if isinstance(raw, float) else float(str(raw).strip())
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        logger.debug("Ignoring unparseable preference value %r", raw)
        return None
    return int(value)


def _parse_bool(raw: Any, default: bool) -> bool:
    if _is_blank(raw):
        return default
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return default


def _parse_mode(raw: Any, default: PuzzleMode) -> PuzzleMode:
    if _is_blank(raw):
        return default
    try:
        return PuzzleMode(str(raw).strip())
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Versioning, merge and persistence
# ---------------------------------------------------------------------------


def migrate_preferences(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Upgrade a preference blob to the current version.

    Blobs without a version key (or version 1) use camelCase keys. A key
    present under both spellings keeps the current-version value.
    """
    version = _parse_int(raw.get("version")) or 1
    if version >= PREFERENCES_VERSION:
        return dict(raw)

    migrated: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "version":
            continue
        new_key = _V1_KEYS.get(key, key)
        if new_key in migrated and key in _V1_KEYS:
            continue
        migrated[new_key] = value
    migrated["version"] = PREFERENCES_VERSION
    logger.info("Migrated preferences from v%d to v%d", version, PREFERENCES_VERSION)
    return migrated


def merge_preferences(
    base: Mapping[str, Any], patch: Mapping[str, Any]
) -> dict[str, Any]:
    """Merge ``patch`` over ``base``; only non-blank patch values win.

    Both sides are migrated first so v1 and v2 blobs can be mixed.
    """
    merged = migrate_preferences(base)
    for key, value in migrate_preferences(patch).items():
        if key == "version" or _is_blank(value):
            continue
        merged[key] = value
    merged["version"] = PREFERENCES_VERSION
    return merged


def load_config(path: str | Path | None = None) -> AnalysisConfig:
    """Load a config from a JSON preference file.

    Falls back to ``PUZZLE_MINER_CONFIG`` when no path is given, and to
    the defaults when the file is missing or unreadable.
    """
    path = path or os.environ.get("PUZZLE_MINER_CONFIG")
    if not path:
        return AnalysisConfig()
    path = Path(path)
    if not path.exists():
        return AnalysisConfig()
    try:
        with open(path, encoding="utf-8") as f:
            prefs = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read preferences %s: %s", path, exc)
        return AnalysisConfig()
    if not isinstance(prefs, dict):
        return AnalysisConfig()
    return AnalysisConfig.from_preferences(prefs)


def save_config(config: AnalysisConfig, path: str | Path) -> None:
    """Write the config as a preference blob atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(config.to_preferences(), f, indent=2, ensure_ascii=False)
    os.replace(str(tmp), str(path))
