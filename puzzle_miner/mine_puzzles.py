#!/usr/bin/env python3
"""Puzzle mining orchestrator.

Commands:
  analyze  - Mine puzzles from a PGN file (dry run, optional JSON output)
  import   - Store games from a PGN file for a user
  sync     - (Re-)extract and replace the puzzle sets of stored games
  stats    - Show a user's puzzle and attempt overview

Usage:
    uv run python -m puzzle_miner.mine_puzzles analyze games/my_game.pgn --username alice
    uv run python -m puzzle_miner.mine_puzzles analyze game.pgn --mode punishBlunder --output out.json
    uv run python -m puzzle_miner.mine_puzzles import games.pgn --user u1 --username alice
    uv run python -m puzzle_miner.mine_puzzles sync --user u1 --all --workers 4
    uv run python -m puzzle_miner.mine_puzzles stats --user u1
"""

from __future__ import annotations

import argparse
import io
import json
import logging
import os
import sys
import time
from dataclasses import replace
from pathlib import Path

import chess.pgn
from rich.console import Console
from rich.table import Table

from puzzle_miner.attempts import user_overview
from puzzle_miner.config import AnalysisConfig, load_config
from puzzle_miner.engine import EngineEvaluator
from puzzle_miner.errors import PuzzleMinerError
from puzzle_miner.extraction import GameAnalysis, analyze_game
from puzzle_miner.models import PuzzleMode
from puzzle_miner.store import PuzzleStore
from puzzle_miner.sync import import_game, sync_games


def _log(msg: str) -> None:
    """Print with flush for progress visibility."""
    print(msg, flush=True)


def _write_json(filepath: Path, payload) -> None:
    """Write JSON atomically."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp = filepath.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    os.replace(str(tmp), str(filepath))


def _split_pgns(text: str) -> list[str]:
    """Split a multi-game PGN file into one PGN string per game."""
    games: list[str] = []
    stream = io.StringIO(text)
    while True:
        game = chess.pgn.read_game(stream)
        if game is None:
            break
        exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False)
        games.append(game.accept(exporter))
    return games


def _config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    config = load_config(args.config)
    overrides = {}
    if getattr(args, "mode", None):
        overrides["puzzle_mode"] = PuzzleMode(args.mode)
    if getattr(args, "movetime", None):
        overrides["movetime_ms"] = args.movetime
    if getattr(args, "cap", None) is not None:
        overrides["max_puzzles_per_game"] = args.cap
    return replace(config, **overrides) if overrides else config


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_analysis(console: Console, analysis: GameAnalysis) -> None:
    opening = analysis.opening
    title = opening.name or "Unknown opening"
    if opening.eco:
        title = f"{opening.eco} {title}"
    if opening.variation:
        title = f"{title}: {opening.variation}"

    acc = ", ".join(
        f"{color} {value:.1f}%" for color, value in analysis.accuracy.items() if value is not None
    )
    console.print(f"[bold]{title}[/bold]  ({opening.source.value})")
    console.print(f"Plies: {analysis.game.ply_count}  User colour: {analysis.user_color or 'both'}  Accuracy: {acc or 'n/a'}")

    if not analysis.puzzles:
        console.print("[yellow]No puzzles found[/yellow]")
        return

    table = Table(title=f"{len(analysis.puzzles)} puzzle(s)")
    table.add_column("Ply", justify="right")
    table.add_column("Type")
    table.add_column("Kind")
    table.add_column("Sev", justify="right")
    table.add_column("Swing", justify="right")
    table.add_column("Best")
    table.add_column("Tags")
    for puzzle in analysis.puzzles:
        table.add_row(
            str(puzzle.source_ply),
            puzzle.type.value,
            puzzle.kind.value,
            str(int(puzzle.severity)) if puzzle.severity is not None else "-",
            str(puzzle.swing) if puzzle.swing is not None else "-",
            puzzle.best_move_uci,
            ", ".join(puzzle.tags),
        )
    console.print(table)


def render_overview(console: Console, overview: dict) -> None:
    totals = overview["totals"]
    rate = totals["success_rate"]
    console.print(
        f"[bold]Puzzles[/bold] {totals['puzzles']}  attempted {totals['attempted']}  "
        f"solved {totals['solved']}  failed {totals['failed']}  "
        f"success {'n/a' if rate is None else f'{rate * 100:.0f}%'}"
    )

    for heading, key in (("By type", "by_type"), ("By kind", "by_kind")):
        table = Table(title=heading)
        table.add_column("Bucket")
        table.add_column("Puzzles", justify="right")
        table.add_column("Attempted", justify="right")
        table.add_column("Solved", justify="right")
        for bucket, counts in sorted(overview[key].items()):
            table.add_row(bucket, str(counts["puzzles"]), str(counts["attempted"]), str(counts["solved"]))
        console.print(table)

    if overview["top_openings"]:
        table = Table(title="Top openings")
        table.add_column("ECO")
        table.add_column("Name")
        table.add_column("Puzzles", justify="right")
        for row in overview["top_openings"]:
            table.add_row(row["eco"], row["name"] or "", str(row["puzzles"]))
        console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_analyze(args: argparse.Namespace, console: Console) -> None:
    config = _config_from_args(args)
    pgns = _split_pgns(Path(args.pgn).read_text(encoding="utf-8"))
    if not pgns:
        raise ValueError(f"No games found in {args.pgn}")

    results = []
    with EngineEvaluator(workers=config.confirm_workers) as evaluator:
        for index, pgn in enumerate(pgns, 1):
            _log(f"Analyzing game {index}/{len(pgns)}...")
            start = time.time()
            analysis = analyze_game(
                pgn, config, evaluator=evaluator,
                username=args.username, user_color=args.user_color,
            )
            _log(f"  Done in {time.time() - start:.1f}s")
            render_analysis(console, analysis)
            results.append({
                "headers": analysis.game.headers,
                "opening": analysis.opening.to_dict(),
                "accuracy": analysis.accuracy,
                "puzzles": [p.to_dict() for p in analysis.puzzles],
            })

    if args.output:
        _write_json(Path(args.output), results)
        _log(f"Wrote {sum(len(r['puzzles']) for r in results)} puzzle(s) to {args.output}")


def cmd_import(args: argparse.Namespace, console: Console) -> None:
    store = PuzzleStore(args.db)
    pgns = _split_pgns(Path(args.pgn).read_text(encoding="utf-8"))
    imported = 0
    for pgn in pgns:
        try:
            game_id = import_game(store, args.user, pgn, username=args.username, provider=args.provider)
        except ValueError as exc:
            _log(f"  WARNING: skipped game: {exc}")
            continue
        imported += 1
        _log(f"  Imported {game_id}")
    _log(f"Imported {imported}/{len(pgns)} game(s)")


def cmd_sync(args: argparse.Namespace, console: Console) -> None:
    config = _config_from_args(args)
    store = PuzzleStore(args.db)
    if args.all:
        game_ids = [g["id"] for g in store.list_games(args.user)]
    else:
        game_ids = args.game or []
    if not game_ids:
        _log("No games to sync")
        return

    _log(f"Syncing {len(game_ids)} game(s) with {args.workers} worker(s)...")
    with EngineEvaluator(workers=max(args.workers, config.confirm_workers)) as evaluator:
        results = sync_games(store, args.user, game_ids, config, evaluator, workers=args.workers)

    table = Table(title="Sync results")
    table.add_column("Game")
    table.add_column("Puzzles", justify="right")
    table.add_column("Status")
    failures = 0
    for game_id, result in results.items():
        if "error" in result:
            failures += 1
            table.add_row(game_id, "-", f"[red]{result['error']}[/red]")
        else:
            table.add_row(game_id, str(result["puzzles"]), "[green]ok[/green]")
    console.print(table)
    if failures:
        sys.exit(1)


def cmd_stats(args: argparse.Namespace, console: Console) -> None:
    store = PuzzleStore(args.db)
    render_overview(console, user_overview(store, args.user))


def main() -> None:
    parser = argparse.ArgumentParser(description="Mine training puzzles from played games")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--db", default=None, help="SQLite store path (default: $PUZZLE_MINER_DB or data/puzzles.db)")
    parser.add_argument("--config", default=None, help="Preferences JSON (default: $PUZZLE_MINER_CONFIG)")
    sub = parser.add_subparsers(dest="command")

    def _analysis_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mode", choices=[m.value for m in PuzzleMode], help="Puzzle framing")
        p.add_argument("--movetime", type=int, help="Engine time per position in ms")
        p.add_argument("--cap", type=int, help="Max puzzles per game (0 = unlimited)")

    p_analyze = sub.add_parser("analyze", help="Mine puzzles from a PGN file without storing them")
    p_analyze.add_argument("pgn", help="PGN file (one or more games)")
    p_analyze.add_argument("--username", help="Your username, to pick your colour")
    p_analyze.add_argument("--user-color", choices=["white", "black"], help="Your colour, overrides --username")
    p_analyze.add_argument("--output", help="Write puzzles as JSON to this path")
    _analysis_options(p_analyze)

    p_import = sub.add_parser("import", help="Store games from a PGN file")
    p_import.add_argument("pgn", help="PGN file (one or more games)")
    p_import.add_argument("--user", required=True, help="Owner user id")
    p_import.add_argument("--username", help="Username in the PGN headers")
    p_import.add_argument("--provider", help="Game source, e.g. lichess")

    p_sync = sub.add_parser("sync", help="Re-extract puzzles for stored games")
    p_sync.add_argument("--user", required=True, help="Owner user id")
    p_sync.add_argument("--game", action="append", help="Game id (repeatable)")
    p_sync.add_argument("--all", action="store_true", help="Sync every game of the user")
    p_sync.add_argument("--workers", type=int, default=2, help="Games analyzed in parallel (default: 2)")
    _analysis_options(p_sync)

    p_stats = sub.add_parser("stats", help="Show puzzle and attempt overview")
    p_stats.add_argument("--user", required=True, help="User id")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "analyze": cmd_analyze,
        "import": cmd_import,
        "sync": cmd_sync,
        "stats": cmd_stats,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    console = Console()
    try:
        command(args, console)
    except (PuzzleMinerError, ValueError, OSError) as exc:
        _log(f"ERROR: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
