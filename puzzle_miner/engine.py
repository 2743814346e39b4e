"""Evaluation adapter: Stockfish over the python-chess UCI interface.

Provides:
- Streaming, cancellable searches (``EngineEvaluator.evaluate``) that
  publish immutable PlyEvaluation snapshots as the search deepens
- A blocking ``analyse`` with a hard deadline that falls back to the best
  snapshot seen so far, plus a fen::movetime result cache
- A small pool of engine processes so independent positions can be
  searched concurrently, with restart-once crash recovery
- CLI for quick position analysis
"""

from __future__ import annotations

import argparse
import logging
import os
import queue
import shutil
import sys
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Iterator

import chess
import chess.engine

from puzzle_miner.errors import EngineUnavailableError, EvaluationError
from puzzle_miner.models import EngineLine, PlyEvaluation, Score

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order (after $STOCKFISH_PATH)
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/bin/stockfish",
    "/usr/games/stockfish",
]

# Hard deadline = movetime * factor + slack, then the best snapshot so far wins
_DEADLINE_FACTOR = 1.5
_DEADLINE_SLACK_S = 1.0

_CHANNEL_SIZE = 8
_CACHE_SIZE = 4096

_DONE = object()


def _find_stockfish() -> str:
    """Auto-detect the Stockfish binary path.

    Checks $STOCKFISH_PATH, then known install paths, then PATH.

    Returns:
        Path to the Stockfish binary.

    Raises:
        EngineUnavailableError: If Stockfish is not found anywhere.
    """
    env_path = os.environ.get("STOCKFISH_PATH")
    if env_path and Path(env_path).is_file():
        return env_path

    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise EngineUnavailableError(
        "Stockfish not found. Install it or set STOCKFISH_PATH."
    )


def _line_from_info(info: chess.engine.InfoDict) -> EngineLine | None:
    """Convert one UCI info record into an EngineLine (None if incomplete)."""
    pov = info.get("score")
    pv = info.get("pv")
    if pov is None or not pv:
        return None
    score = pov.relative
    return EngineLine(
        move_uci=pv[0].uci(),
        score=Score(cp=score.score(), mate=score.mate()),
        pv_uci=tuple(m.uci() for m in pv),
    )


class Search:
    """A cancellable search over one position, streamed as snapshots.

    The producer runs on its own thread and pushes PlyEvaluation snapshots
    into a bounded channel (oldest snapshot dropped when full). Iterating
    the search yields snapshots until the search finishes; ``result`` waits
    with a deadline and returns the deepest snapshot seen.
    """

    def __init__(
        self,
        fen: str,
        multipv: int = 1,
        min_depth: int | None = None,
        max_depth: int | None = None,
        max_time_ms: int | None = None,
    ) -> None:
        self.fen = fen
        self.multipv = max(1, multipv)
        self.min_depth = min_depth
        self.max_depth = max_depth
        self.max_time_ms = max_time_ms
        self.superseded_by: Search | None = None

        self._channel: queue.Queue = queue.Queue(maxsize=_CHANNEL_SIZE)
        self._lock = threading.Lock()
        self._started = threading.Event()
        self._done = threading.Event()
        self._cancelled = threading.Event()
        self._latest: PlyEvaluation | None = None
        self._error: BaseException | None = None
        self._analysis: chess.engine.SimpleAnalysisResult | None = None

    # ── State ───────────────────────────────────────────────────────

    @property
    def latest(self) -> PlyEvaluation | None:
        with self._lock:
            return self._latest

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def error(self) -> BaseException | None:
        return self._error

    def cancel(self) -> None:
        """Stop the search. The engine is told to stop if it is running."""
        self._cancelled.set()
        with self._lock:
            analysis = self._analysis
        if analysis is not None:
            analysis.stop()

    # ── Producer side ───────────────────────────────────────────────

    def start(
        self,
        acquire: Callable[[], chess.engine.SimpleEngine],
        release: Callable[[chess.engine.SimpleEngine], None],
        on_finish: Callable[[Search], None] | None = None,
    ) -> Search:
        thread = threading.Thread(
            target=self._run, args=(acquire, release, on_finish), daemon=True,
        )
        thread.start()
        return self

    def _run(self, acquire, release, on_finish) -> None:
        engine = None
        try:
            engine = acquire()
            self._started.set()
            if not self._cancelled.is_set():
                self._search(engine)
        except (chess.engine.EngineError, EngineUnavailableError, ValueError) as exc:
            # A dead engine still goes back to the pool; _acquire restarts it
            self._error = exc
        finally:
            self._started.set()
            if engine is not None:
                release(engine)
            self._done.set()
            self._put(_DONE)
            if on_finish is not None:
                on_finish(self)

    def _search(self, engine: chess.engine.SimpleEngine) -> None:
        board = chess.Board(self.fen)
        n_lines = min(self.multipv, board.legal_moves.count())
        if n_lines == 0:
            self._publish(PlyEvaluation(fen=self.fen))
            return

        limit = chess.engine.Limit(
            time=self.max_time_ms / 1000 if self.max_time_ms else None,
            depth=self.max_depth,
        )
        start = time.monotonic()
        lines: dict[int, EngineLine] = {}
        depth = 0

        with engine.analysis(board, limit, multipv=n_lines) as analysis:
            with self._lock:
                self._analysis = analysis
            if self._cancelled.is_set():
                analysis.stop()
            for info in analysis:
                if self._cancelled.is_set():
                    analysis.stop()
                    break
                line = _line_from_info(info)
                if line is None:
                    continue
                rank = info.get("multipv", 1)
                lines[rank] = line
                depth = info.get("depth", depth)
                # A complete ranked set for this depth
                if rank == n_lines and len(lines) >= n_lines:
                    self._publish(self._snapshot(lines, depth, start, info))

        with self._lock:
            self._analysis = None
        if lines:
            final = self._snapshot(lines, depth, start, None)
            latest = self.latest
            if latest is None or latest.lines != final.lines or latest.depth != final.depth:
                self._publish(final)

    def _snapshot(self, lines, depth, start, info) -> PlyEvaluation:
        elapsed = info.get("time") if info is not None else None
        time_ms = int(elapsed * 1000) if elapsed is not None else int((time.monotonic() - start) * 1000)
        return PlyEvaluation(
            fen=self.fen,
            lines=tuple(lines[rank] for rank in sorted(lines)),
            depth=depth,
            time_ms=time_ms,
        )

    def _publish(self, snapshot: PlyEvaluation) -> None:
        with self._lock:
            self._latest = snapshot
        if self.min_depth is not None and snapshot.depth < self.min_depth:
            return
        self._put(snapshot)

    def _put(self, item) -> None:
        while True:
            try:
                self._channel.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._channel.get_nowait()
                except queue.Empty:
                    pass

    # ── Consumer side ───────────────────────────────────────────────

    def __iter__(self) -> Iterator[PlyEvaluation]:
        """Yield snapshots until the search is done.

        Raises:
            EvaluationError: If the search failed.
        """
        while True:
            item = self._channel.get()
            if item is _DONE:
                break
            yield item
        if self._error is not None:
            raise EvaluationError(f"Search failed for {self.fen}: {self._error}") from self._error

    def result(self, timeout: float | None = None) -> PlyEvaluation:
        """Wait for the search and return the deepest snapshot.

        The timeout counts from the moment an engine picked the search up.
        When it expires the search is cancelled and the best snapshot so
        far is returned. A superseded search defers to its successor.

        Raises:
            EvaluationError: If no snapshot was produced at all.
        """
        self._started.wait()
        if not self._done.wait(timeout):
            logger.debug("Deadline hit for %s, cancelling", self.fen)
            self.cancel()
            self._done.wait(_DEADLINE_SLACK_S)

        latest = self.latest
        if latest is None and self.superseded_by is not None:
            return self.superseded_by.result(timeout)
        if latest is None:
            if isinstance(self._error, EngineUnavailableError):
                raise self._error
            reason = self._error or "no result"
            raise EvaluationError(f"No evaluation for {self.fen}: {reason}")
        return latest


class EngineEvaluator:
    """Pool of Stockfish processes serving position evaluations."""

    def __init__(
        self,
        stockfish_path: str | None = None,
        workers: int = 1,
        cache_size: int = _CACHE_SIZE,
    ) -> None:
        """Start ``workers`` engine processes.

        Raises:
            EngineUnavailableError: If Stockfish is missing or won't start.
        """
        self._stockfish_path = stockfish_path or _find_stockfish()
        self._pool: queue.Queue = queue.Queue()
        self._cache: OrderedDict[str, PlyEvaluation] = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()
        self._active: dict[str, Search] = {}
        self._inflight: dict[str, Search] = {}
        self._active_lock = threading.Lock()
        self._engines_lock = threading.Lock()
        self._engines: list[chess.engine.SimpleEngine] = []

        for _ in range(max(1, workers)):
            self._pool.put(self._open_engine())

    def __enter__(self) -> EngineEvaluator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _open_engine(self) -> chess.engine.SimpleEngine:
        """Open a fresh Stockfish process."""
        try:
            engine = chess.engine.SimpleEngine.popen_uci(self._stockfish_path)
        except (OSError, chess.engine.EngineError) as exc:
            raise EngineUnavailableError(
                f"Could not start Stockfish at {self._stockfish_path}: {exc}"
            ) from exc
        with self._engines_lock:
            self._engines.append(engine)
        return engine

    def _acquire(self) -> chess.engine.SimpleEngine:
        """Take an engine from the pool, restarting it once if it died."""
        engine = self._pool.get()
        try:
            engine.ping()
        except chess.engine.EngineTerminatedError:
            logger.warning("Engine process terminated, restarting")
            with self._engines_lock:
                if engine in self._engines:
                    self._engines.remove(engine)
            try:
                engine = self._open_engine()
            except EngineUnavailableError:
                # Keep the pool size stable so other searches don't block forever
                self._pool.put(engine)
                raise
        return engine

    def _release(self, engine: chess.engine.SimpleEngine) -> None:
        self._pool.put(engine)

    def _forget(self, search: Search) -> None:
        with self._active_lock:
            if self._active.get(search.fen) is search:
                del self._active[search.fen]

    # ── Streaming interface ─────────────────────────────────────────

    def evaluate(
        self,
        fen: str,
        multipv: int = 1,
        min_depth: int | None = None,
        max_depth: int | None = None,
        max_time_ms: int | None = None,
    ) -> Search:
        """Start a streaming search. A newer search on the same FEN cancels the older one.

        Args:
            fen: Position to search.
            multipv: Number of ranked lines.
            min_depth: Snapshots shallower than this are not streamed (still
                kept as the fallback result).
            max_depth: Depth limit.
            max_time_ms: Time limit.

        Returns:
            The running Search.
        """
        chess.Board(fen)  # ValueError on a malformed FEN
        search = Search(fen, multipv, min_depth, max_depth, max_time_ms)
        with self._active_lock:
            previous = self._active.get(fen)
            self._active[fen] = search
        if previous is not None and not previous.done:
            logger.debug("Superseding running search on %s", fen)
            previous.superseded_by = search
            previous.cancel()
        return search.start(self._acquire, self._release, self._forget)

    # ── Blocking interface ──────────────────────────────────────────

    def analyse(self, fen: str, movetime_ms: int, multipv: int = 1) -> PlyEvaluation:
        """Evaluate a position with a time budget, using the cache.

        Concurrent calls with the same (fen, movetime, multipv) share one
        search. Blocking searches never supersede each other or streaming
        searches.

        Raises:
            ValueError: If the FEN is malformed.
            EvaluationError: If the search produced nothing.
            EngineUnavailableError: If no engine process can be started.
        """
        key = f"{fen}::{movetime_ms}::{multipv}"
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached

        chess.Board(fen)
        with self._active_lock:
            search = self._inflight.get(key)
            if search is None or search.cancelled:
                search = Search(fen, multipv, max_time_ms=movetime_ms)
                self._inflight[key] = search
                search.start(self._acquire, self._release)
            else:
                logger.debug("Joining running search on %s", fen)

        deadline = movetime_ms / 1000 * _DEADLINE_FACTOR + _DEADLINE_SLACK_S
        try:
            result = search.result(timeout=deadline)
        finally:
            with self._active_lock:
                if self._inflight.get(key) is search and search.done:
                    del self._inflight[key]

        if not search.cancelled:
            with self._cache_lock:
                self._cache[key] = result
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        return result

    def cancel_all(self) -> None:
        """Cancel every running search."""
        with self._active_lock:
            searches = list(self._active.values()) + list(self._inflight.values())
        for search in searches:
            search.cancel()

    def close(self) -> None:
        """Cancel searches and shut down every engine process."""
        self.cancel_all()
        with self._engines_lock:
            engines = list(self._engines)
            self._engines.clear()
        for engine in engines:
            try:
                engine.quit()
            except chess.engine.EngineTerminatedError:
                pass


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


def _cli_analyze(fen: str, movetime_ms: int, multipv: int) -> None:
    """Stream a search on a FEN and print each snapshot."""
    with EngineEvaluator() as evaluator:
        board = chess.Board(fen)
        print(f"Position: {fen}")
        print(f"Side to move: {'White' if board.turn else 'Black'}")
        print()
        for snapshot in evaluator.evaluate(fen, multipv=multipv, max_time_ms=movetime_ms):
            best = snapshot.best
            if best is None:
                continue
            score = best.score
            score_str = f"Mate in {score.mate}" if score.mate is not None else f"{(score.cp or 0) / 100.0:+.2f}"
            print(f"  depth {snapshot.depth:>2}  {score_str:>10}  {' '.join(best.pv_uci[:8])}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Stockfish evaluation adapter")
    sub = parser.add_subparsers(dest="command")

    p_analyze = sub.add_parser("analyze", help="Analyze a FEN position")
    p_analyze.add_argument("fen", help="FEN string")
    p_analyze.add_argument("--movetime", type=int, default=1000, help="Search time in ms (default: 1000)")
    p_analyze.add_argument("--multipv", type=int, default=3, help="Ranked lines (default: 3)")

    args = parser.parse_args()

    if args.command == "analyze":
        try:
            _cli_analyze(args.fen, args.movetime, args.multipv)
        except EngineUnavailableError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
