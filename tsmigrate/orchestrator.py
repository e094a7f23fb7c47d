"""
Orchestrator driving one table through the migration state machine.

Usage (example from CLI):
    from tsmigrate.orchestrator import MigrationOrchestrator

    orchestrator = MigrationOrchestrator(backend, "history_uint")
    state = orchestrator.run()
    print(state.phase)

Every phase boundary and every window is persisted through the backend's state
store, so ``run`` picks up where a crashed or interrupted run stopped. Window
copies run in the calling thread while compression of the windows behind them
runs on a single background worker.

Run reports are saved to `results/` on request:
- `results/latest.json` (last run)
- `results/run-<timestamp>.json` (timestamped archive)
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from tsmigrate.config import MigrationConfig
from tsmigrate.domain.models import (
    MigrationPhase,
    MigrationPlan,
    MigrationState,
    MigrationWindow,
    WindowState,
)
from tsmigrate.exceptions import (
    CompressionError,
    DrainError,
    MigrationError,
    MigrationStateError,
    SwapError,
)
from tsmigrate.phases.abstract import PhaseResult
from tsmigrate.phases.compactor import Compactor
from tsmigrate.phases.copier import BulkCopier
from tsmigrate.phases.cutover import CutoverCoordinator
from tsmigrate.phases.indexer import Indexer
from tsmigrate.phases.interceptor import WriteInterceptor
from tsmigrate.phases.planner import SegmentPlanner
from tsmigrate.storage.abstract import StorageBackend
from tsmigrate.utils.logging import get_logger
from tsmigrate.utils.profiler import profile_block

log = get_logger(__name__)

Handler = Callable[[MigrationState], MigrationState]


def _round_float(value: float, decimals: int = 2) -> float:
    return round(value, decimals)


def persist_report(payload: dict, results_dir: Path) -> Tuple[Path, Path]:
    """Write ``payload`` to ``latest.json`` and a timestamped archive."""
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"run-{timestamp}.json"

    for path in (latest_path, archive_path):
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True, default=str)

    log.info("Report persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})
    return latest_path, archive_path


class MigrationOrchestrator:
    """
    Runs, resumes and undoes the migration of one source table.

    Parameters
    ----------
    backend : StorageBackend
        Where the tables, the configuration store and the state marker live.
    source : str
        Name of the live table to migrate.
    config : MigrationConfig, optional
        Migration knobs. Defaults to the values derived from Settings.

    Raises
    ------
    PlanningError
        If the window configuration is invalid. Raised on construction,
        before anything is created.
    """

    def __init__(
        self,
        backend: StorageBackend,
        source: str,
        config: Optional[MigrationConfig] = None,
    ) -> None:
        self.backend = backend
        self.config = config or MigrationConfig.from_settings()
        self.names = self.config.table_names(source)
        self.planner = SegmentPlanner(self.config)
        self.interceptor = WriteInterceptor(backend)
        self.copier = BulkCopier(backend, self.config)
        self.compactor = Compactor(backend, self.config)
        self.indexer = Indexer(backend, self.config)
        self.cutover = CutoverCoordinator(backend, self.interceptor, self.config)
        self.results: List[PhaseResult] = []
        self._state_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def preview(self, start_time: datetime) -> MigrationPlan:
        """The plan a migration started at ``start_time`` would follow. No side effects."""
        return self.planner.plan(start_time)

    def status(self) -> Optional[MigrationState]:
        return self.backend.load_state()

    def run(
        self,
        retry_failed: bool = False,
        stop_before: Optional[MigrationPhase] = None,
    ) -> MigrationState:
        """
        Start a new migration or resume the persisted one.

        Parameters
        ----------
        retry_failed : bool
            Reopen a FAILED migration at the phase it failed in.
        stop_before : MigrationPhase, optional
            Return once this phase is reached, without executing it. Used to
            prepare the target now and cut over later.

        Returns
        -------
        MigrationState
            The state after the last executed step.
        """
        state = self._load(retry_failed)
        handlers: Dict[MigrationPhase, Handler] = {
            MigrationPhase.PLANNING: self._plan,
            MigrationPhase.COPYING: self._copy,
            MigrationPhase.COMPRESSING: self._compress,
            MigrationPhase.INDEXING: self._index,
            MigrationPhase.SWAPPING: self._swap,
            MigrationPhase.DRAINING: self._drain,
        }

        log.info(f"{'=' * 60}")
        log.info(
            f"[MIGRATION] {state.names.source.upper()} at {state.phase.value.upper()}",
            extra={"source": state.names.source, "phase": state.phase.value},
        )
        log.info(f"{'=' * 60}")

        while not state.phase.is_terminal:
            if stop_before is not None and state.phase is stop_before:
                log.info(
                    f"[MIGRATION PAUSED] before {state.phase.value.upper()}",
                    extra={"source": state.names.source, "phase": state.phase.value},
                )
                break
            try:
                state = handlers[state.phase](state)
            except (SwapError, DrainError) as exc:
                # nothing committed; the phase is rerun as is
                self._record_error(state, exc)
                raise
            except MigrationError as exc:
                self._fail(state, exc)
                raise

        if state.phase is MigrationPhase.COMPLETE:
            log.info(
                f"[MIGRATION COMPLETE] {state.names.source}; {state.names.old} retained",
                extra={
                    "source": state.names.source,
                    "old": state.names.old,
                    "rows_drained": state.rows_drained,
                    "uncompressed_segments": len(state.uncompressed_segments),
                },
            )
        return state

    def abort(self) -> MigrationState:
        """
        Abandon a migration that has not swapped yet.

        Removes the tee, the buffer and the partially built target, then
        clears the state. The live table is never touched.
        """
        state = self._require_state()
        phase = state.failed_phase if state.phase is MigrationPhase.FAILED else state.phase
        if phase is None or not phase.is_pre_swap:
            raise MigrationStateError(
                f"migration of {state.names.source} is past the swap; use rollback instead"
            )
        names = state.names
        if self.interceptor.is_active(names.source):
            self.interceptor.deactivate(names.source)
        for name in (names.buffer, names.target):
            self.backend.drop_table(name)
        self.backend.clear_state()
        log.info(
            f"[ABORT] migration of {names.source} abandoned in {phase.value.upper()}",
            extra={"source": names.source, "phase": phase.value},
        )
        return state

    def rollback(self) -> int:
        """Undo a completed cutover. Returns the number of rows carried back."""
        state = self._require_state()
        if state.phase is not MigrationPhase.COMPLETE:
            raise MigrationStateError(
                f"only a completed migration can be rolled back (phase {state.phase.value})"
            )
        return self.cutover.rollback(state)

    def finalize(self) -> str:
        """Drop the retained old table of a completed migration and clear the state."""
        state = self._require_state()
        if state.phase is not MigrationPhase.COMPLETE:
            raise MigrationStateError(
                f"only a completed migration can be finalized (phase {state.phase.value})"
            )
        self.backend.drop_table(state.names.old)
        self.backend.clear_state()
        log.info(f"[FINALIZE] dropped {state.names.old}", extra={"old": state.names.old})
        return state.names.old

    def report(self, state: MigrationState) -> dict:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": state.names.source,
            "backend": getattr(self.backend, "name", type(self.backend).__name__),
            "state": state.model_dump(mode="json"),
            "results": list(self.results),
        }

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _require_state(self) -> MigrationState:
        state = self.backend.load_state()
        if state is None:
            raise MigrationStateError("no migration in progress")
        if state.names.source != self.names.source:
            raise MigrationStateError(
                f"the migration in progress is for {state.names.source}, not {self.names.source}"
            )
        return state

    def _load(self, retry_failed: bool) -> MigrationState:
        state = self.backend.load_state()
        if state is None:
            return self._begin()
        if state.names.source != self.names.source:
            raise MigrationStateError(
                f"a migration of {state.names.source} is already in progress; "
                "only one migration can run at a time"
            )
        if state.phase is MigrationPhase.FAILED:
            if not retry_failed:
                raise MigrationStateError(
                    f"migration of {state.names.source} failed during "
                    f"{state.failed_phase.value if state.failed_phase else '?'}: {state.last_error}"
                )
            return self._reopen(state)
        log.info(
            f"[RESUME] {state.names.source} at {state.phase.value.upper()}",
            extra={"source": state.names.source, "phase": state.phase.value},
        )
        return state

    def _begin(self) -> MigrationState:
        names = self.names
        if not self.backend.table_exists(names.source):
            raise MigrationStateError(f"source table {names.source} does not exist")
        leftovers = [
            name for name in (names.buffer, names.target, names.old) if self.backend.table_exists(name)
        ]
        if leftovers:
            raise MigrationStateError(
                f"tables left over from an earlier migration: {', '.join(leftovers)}"
            )
        return self._transition(MigrationState(names=names), MigrationPhase.PLANNING)

    def _reopen(self, state: MigrationState) -> MigrationState:
        if state.failed_phase is None:
            raise MigrationStateError("failed migration does not record the phase it failed in")
        with self._state_lock:
            state.phase = state.failed_phase
            state.failed_phase = None
            self._save(state)
        log.info(
            f"[RETRY] {state.names.source} reopened at {state.phase.value.upper()}",
            extra={"source": state.names.source, "phase": state.phase.value},
        )
        return state

    def _save(self, state: MigrationState) -> None:
        with self._state_lock:
            self.backend.save_state(state)

    def _announce(self, previous: MigrationPhase, current: MigrationPhase, source: str) -> None:
        log.info(
            f"[PHASE] {previous.value.upper()} -> {current.value.upper()}",
            extra={"source": source, "from": previous.value, "to": current.value},
        )

    def _transition(self, state: MigrationState, target: MigrationPhase) -> MigrationState:
        with self._state_lock:
            previous = state.phase
            if not previous.can_transition_to(target):
                raise MigrationStateError(
                    f"invalid transition {previous.value} -> {target.value}"
                )
            state.phase = target
            state.last_error = None
            self._save(state)
        self._announce(previous, target, state.names.source)
        return state

    def _fail(self, state: MigrationState, exc: BaseException) -> None:
        with self._state_lock:
            if state.phase.is_terminal:
                return
            previous = state.phase
            state.failed_phase = previous
            state.phase = MigrationPhase.FAILED
            state.last_error = f"{type(exc).__name__}: {exc}"
            self._save(state)
        log.error(
            f"[PHASE] {previous.value.upper()} -> FAILED",
            extra={"source": state.names.source, "error": str(exc)},
        )

    def _record_error(self, state: MigrationState, exc: BaseException) -> None:
        with self._state_lock:
            state.last_error = f"{type(exc).__name__}: {exc}"
            self._save(state)
        log.error(
            f"[{state.phase.value.upper()}] failed, rerun to retry",
            extra={"source": state.names.source, "error": str(exc)},
        )

    def _mark_windows(
        self,
        state: MigrationState,
        current: Tuple[WindowState, ...],
        target: WindowState,
        cutoff: datetime,
    ) -> None:
        assert state.plan is not None
        plan = state.plan
        for window in plan.windows:
            window_cutoff = plan.compression_cutoff(window)
            if window.state in current and window_cutoff is not None and window_cutoff <= cutoff:
                plan = plan.replace_window(window.with_state(target))
        state.plan = plan

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _plan(self, state: MigrationState) -> MigrationState:
        names = state.names
        if state.plan is None:
            if self.backend.table_exists(names.buffer):
                # activation committed but the plan was never recorded
                log.warning(
                    f"[PLAN] discarding unrecorded activation on {names.source}",
                    extra={"source": names.source, "buffer": names.buffer},
                )
                self.interceptor.deactivate(names.source)
                self.backend.drop_table(names.buffer)
            start_time = self.interceptor.activate(names.source, names.buffer)
            with self._state_lock:
                state.plan = self.planner.plan(start_time)
                self._save(state)
        else:
            self.planner.verify(state.plan)

        plan = state.plan
        log.info(
            f"[PLAN] {len(plan.windows)} windows from {plan.windows[0].start.isoformat()} "
            f"to StartTime {plan.start_time.isoformat()}",
            extra={
                "source": names.source,
                "start_time": plan.start_time.isoformat(),
                "windows": [w.describe() for w in plan.windows],
            },
        )
        self.copier.prepare_target(names.source, names.target)
        return self._transition(state, MigrationPhase.COPYING)

    def _copy(self, state: MigrationState) -> MigrationState:
        assert state.plan is not None
        total = len(state.plan.windows)

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="tsmigrate-compactor") as pool:
            inflight: Optional[Future] = None
            for index in range(total):
                with self._state_lock:
                    window = state.plan.windows[index]
                if window.state.is_copied:
                    log.info(
                        f"[COPY {index + 1}/{total}] {window.describe()} already copied",
                        extra={"window": index, "state": window.state.value},
                    )
                    continue
                self._copy_window(state, window, total)

                cutoff = state.plan.compression_cutoff(window)
                if cutoff is None:
                    continue
                if inflight is not None:
                    inflight.result()
                inflight = pool.submit(self._compact, state, cutoff)
            if inflight is not None:
                inflight.result()

        return self._transition(state, MigrationPhase.COMPRESSING)

    def _copy_window(self, state: MigrationState, window: MigrationWindow, total: int) -> None:
        names = state.names
        label = f"[COPY {window.index + 1}/{total}]"
        with self._state_lock:
            state.plan = state.plan.replace_window(window.with_state(WindowState.COPYING))
            self._save(state)

        log.info(f"{label} {window.describe()}", extra={"window": window.index, "source": names.source})
        with profile_block(f"copy:{window.index}") as stats:
            rows = self.copier.copy_window(window, names.source, names.target)

        with self._state_lock:
            copied = state.plan.windows[window.index].with_state(WindowState.COPIED, rows_copied=rows)
            state.plan = state.plan.replace_window(copied)
            self._save(state)
            self.results.append(
                PhaseResult(
                    step=f"copy:{window.index}",
                    rows=rows,
                    duration_seconds=_round_float(stats.duration_seconds),
                    throughput_rows_per_sec=_round_float(stats.throughput(rows)),
                    cpu_percent=_round_float(stats.cpu_percent, 1) if stats.cpu_percent else None,
                    rss_bytes=stats.rss_bytes,
                )
            )
        log.info(
            f"{label} copied {rows} rows",
            extra={
                "window": window.index,
                "rows": rows,
                "duration": _round_float(stats.duration_seconds),
                "throughput_rps": _round_float(stats.throughput(rows)),
            },
        )

    def _compact(self, state: MigrationState, cutoff: datetime) -> Optional[CompressionError]:
        """
        Compress everything older than ``cutoff`` and record the outcome on the
        windows. Failures are recorded and returned, not raised, so copying
        carries on.
        """
        names = state.names
        with self._state_lock:
            self._mark_windows(
                state, (WindowState.COPIED, WindowState.COMPRESSING), WindowState.COMPRESSING, cutoff
            )
            self._save(state)

        log.info(
            f"[COMPRESS] {names.target} segments older than {cutoff.isoformat()}",
            extra={"target": names.target, "older_than": cutoff.isoformat()},
        )
        try:
            result = self.compactor.compress(names.target, cutoff)
        except CompressionError as exc:
            with self._state_lock:
                self._mark_windows(state, (WindowState.COMPRESSING,), WindowState.COPIED, cutoff)
                state.last_error = f"{type(exc).__name__}: {exc}"
                state.uncompressed_segments = sorted(set(exc.segment_ids))
                self._save(state)
            log.warning(
                f"[COMPRESS] {exc}",
                extra={"target": names.target, "segments": list(exc.segment_ids)},
            )
            return exc

        with self._state_lock:
            self._mark_windows(state, (WindowState.COMPRESSING,), WindowState.COMPRESSED, cutoff)
            if state.compressed_before is None or cutoff > state.compressed_before:
                state.compressed_before = cutoff
            state.uncompressed_segments = []
            self._save(state)
            self.results.append(result)
        log.info(
            f"[COMPRESS] {result.get('notes')}",
            extra={"target": names.target, "older_than": cutoff.isoformat()},
        )
        return None

    def _compress(self, state: MigrationState) -> MigrationState:
        assert state.plan is not None
        plan = state.plan
        if len(plan.windows) < 2:
            log.info("[COMPRESS] single window plan, nothing old enough to compress")
            return self._transition(state, MigrationPhase.INDEXING)

        # the newest non-final window's cutoff covers every earlier one
        cutoff = plan.compression_cutoff(plan.windows[-2])
        assert cutoff is not None
        error = self._compact(state, cutoff)
        if error is not None:
            if self.config.compression_failure_policy == "strict":
                raise error
            log.warning(
                f"[COMPRESS] continuing with {len(error.segment_ids)} uncompressed segments",
                extra={"segments": list(error.segment_ids), "policy": "tolerant"},
            )
        return self._transition(state, MigrationPhase.INDEXING)

    def _index(self, state: MigrationState) -> MigrationState:
        name = self.indexer.build_index(state.names.target)
        with self._state_lock:
            state.index_name = name
        return self._transition(state, MigrationPhase.SWAPPING)

    def _swap(self, state: MigrationState) -> MigrationState:
        committed = self.cutover.swap(state)
        self._announce(MigrationPhase.SWAPPING, committed.phase, committed.names.source)
        return committed

    def _drain(self, state: MigrationState) -> MigrationState:
        committed = self.cutover.drain(state)
        self._announce(MigrationPhase.DRAINING, committed.phase, committed.names.source)
        self.results.append(PhaseResult(step="drain", rows=committed.rows_drained or 0))
        return committed


__all__ = ["MigrationOrchestrator", "persist_report"]
