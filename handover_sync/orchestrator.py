"""Orchestration of manual and periodic patient syncs with the handover backend."""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from .cache import QueryCache
from .errors import SyncError
from .models import SyncRequest, SyncResult, SyncScope, SyncState, SyncStatus
from .scheduler import SystemClock, Ticker

logger = logging.getLogger(__name__)

DEFAULT_SYNC_ENDPOINT = "/api/sync/evolucoes"
DEFAULT_INTERVAL_MS = 900000  # 15 minutes
DEFAULT_STATUS_RESET_SECONDS = 5.0
PATIENTS_VIEW = "/api/patients"

Subscriber = Callable[[SyncState], None]


class SyncOrchestrator:
    """
    Coordinates syncs with the handover backend without overlapping runs.

    Only one sync runs at a time: a trigger that arrives while a run is in
    flight is dropped (not queued). The status goes
    idle -> running -> success|error -> idle, the last step after
    `status_reset_delay` seconds. Readers get copies of the state through
    `state` or by subscribing to changes.

    Args:
        client: HandoverApiClient (or any object with the same coroutine methods)
        endpoint: Backend sync endpoint path
        cache: Read cache invalidated after successful syncs
        invalidate_keys: Cache keys (prefixes) dropped after each successful sync
        clock: Provides now() and sleep(); SystemClock by default
        status_reset_delay: Seconds before success/error falls back to idle
        interval_ms: Default periodic interval
        run_on_start: Run one sync immediately when the schedule starts
        sweep_units: Sync "all" requests unit by unit through the import endpoint
    """

    def __init__(
        self,
        client,
        endpoint: str = DEFAULT_SYNC_ENDPOINT,
        cache: Optional[QueryCache] = None,
        invalidate_keys: Iterable[str] = (PATIENTS_VIEW,),
        clock: Optional[SystemClock] = None,
        status_reset_delay: float = DEFAULT_STATUS_RESET_SECONDS,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        run_on_start: bool = False,
        sweep_units: bool = False,
    ):
        self.client = client
        self.endpoint = endpoint
        self.cache = cache if cache is not None else QueryCache()
        self.invalidate_keys = list(invalidate_keys)
        self.status_reset_delay = status_reset_delay
        self.interval_ms = interval_ms
        self.run_on_start = run_on_start
        self.sweep_units = sweep_units
        self._clock = clock or SystemClock()

        self._state = SyncState()
        self._subscribers: List[Subscriber] = []
        self._ticker: Optional[Ticker] = None
        self._retired: List[Ticker] = []
        self._inflight: Optional[asyncio.Future] = None
        self._abort_requested = False
        self._reset_task: Optional[asyncio.Task] = None
        self._run_generation = 0
        self._paused = False

    # ========== State ==========

    @property
    def state(self) -> SyncState:
        return self._state.copy()

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def periodic_active(self) -> bool:
        return self._ticker is not None and self._ticker.running

    @property
    def paused(self) -> bool:
        return self._paused

    def now(self):
        return self._clock.now()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call `callback(state_copy)` on every state change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self._state.copy()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Sync state subscriber failed")

    # ========== Sync runs ==========

    async def trigger_sync(self, request: Optional[SyncRequest] = None) -> bool:
        """
        Run one sync unless one is already in flight.

        Returns:
            True if the sync ran (whatever its outcome), False if it was dropped
            because another run was active.
        """
        # Check and set happen before the first await.
        if self._state.is_running:
            logger.info("Sync already in progress, skipping")
            return False

        request = request or SyncRequest.all()
        self._begin_run()
        logger.info(f"Starting sync {request!r} via {self.endpoint}")

        call = asyncio.ensure_future(self._perform(request))
        self._inflight = call
        try:
            result = await call
        except asyncio.CancelledError:
            if not self._abort_requested:
                raise
            logger.info("Sync cancelled, result discarded")
            self._state.last_message = "Sync cancelled"
        except SyncError as exc:
            self._record_failure(exc)
        except Exception as exc:
            self._record_failure(exc)
            raise
        else:
            self._record_success(result)
        finally:
            self._inflight = None
            self._abort_requested = False
            if self._state.last_status == SyncStatus.RUNNING:
                self._state.last_status = SyncStatus.IDLE
            self._state.is_running = False
            self._notify()
        return True

    def cancel_inflight(self) -> bool:
        """Cancel the HTTP call of the current run, if any. Its result is never applied."""
        if self._inflight is None or self._inflight.done():
            return False
        self._abort_requested = True
        self._inflight.cancel()
        return True

    async def _perform(self, request: SyncRequest) -> SyncResult:
        if self.sweep_units and request.scope == SyncScope.ALL:
            return await self._sweep_nursing_units()
        return await self.client.post_sync(self.endpoint, request)

    async def _sweep_nursing_units(self) -> SyncResult:
        """Import every nursing unit in turn. A failing unit counts as one error."""
        units = await self.client.list_nursing_units()
        imported = 0
        errors = 0
        for unit in units:
            code = unit.get("codigo") if isinstance(unit, dict) else str(unit)
            try:
                result = await self.client.import_unit_evolutions(code)
            except SyncError as exc:
                logger.error(f"Error syncing nursing unit {code}: {exc}")
                errors += 1
                continue
            imported += result.imported_or_updated
            errors += result.errors
        logger.info(f"Nursing unit sweep: {imported} imported, {errors} errors from {len(units)} units")
        return SyncResult(True, imported, errors, f"{len(units)} nursing unit(s) synced")

    def _begin_run(self) -> None:
        self._run_generation += 1
        self._cancel_reset()
        self._state.is_running = True
        self._state.last_status = SyncStatus.RUNNING
        self._state.last_message = None
        self._notify()

    def _record_success(self, result: SyncResult) -> None:
        self._state.imported_count = result.imported_or_updated
        self._state.error_count = result.errors
        self._state.last_status = SyncStatus.SUCCESS
        self._state.last_run_at = self._clock.now()
        self._state.last_message = result.message or None
        self._invalidate_views()
        logger.info(f"Sync completed: {result.imported_or_updated} imported/updated, {result.errors} errors")
        self._schedule_reset()

    def _record_failure(self, exc: Exception) -> None:
        self._state.error_count += 1
        self._state.last_status = SyncStatus.ERROR
        self._state.last_message = str(exc) or type(exc).__name__
        kind = getattr(exc, "kind", type(exc).__name__)
        logger.error(f"Sync failed ({kind}): {exc}")
        self._schedule_reset()

    def _invalidate_views(self) -> None:
        for key in self.invalidate_keys:
            self.cache.invalidate(key)

    # ========== Status reset ==========

    def _schedule_reset(self) -> None:
        self._cancel_reset()
        self._reset_task = asyncio.ensure_future(self._reset_after_delay(self._run_generation))

    def _cancel_reset(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()
            self._reset_task = None

    async def _reset_after_delay(self, generation: int) -> None:
        await self._clock.sleep(self.status_reset_delay)
        # A newer run owns the status now.
        if generation != self._run_generation or self._state.is_running:
            return
        self._reset_task = None
        self._state.last_status = SyncStatus.IDLE
        self._notify()

    # ========== Periodic sync ==========

    def start_periodic(self, interval_ms: Optional[int] = None, run_immediately: Optional[bool] = None) -> Callable[[], None]:
        """
        Sync every `interval_ms` milliseconds. Replaces any running schedule.

        Returns:
            A cancel function that stops this schedule; safe to call repeatedly.
        """
        if interval_ms is None:
            interval_ms = self.interval_ms
        if run_immediately is None:
            run_immediately = self.run_on_start

        # Raises ValueError on a non-positive interval before touching the current schedule.
        ticker = Ticker(interval_ms / 1000.0, self._on_tick, clock=self._clock, name="sync-ticker")
        if self._ticker is not None:
            self._retire(self._ticker)
        self._ticker = ticker
        ticker.start(run_immediately)
        logger.info(f"Periodic sync every {interval_ms / 60000:g} minute(s)")

        def cancel():
            if self._ticker is ticker:
                self.stop_periodic()
            else:
                ticker.stop()

        return cancel

    def stop_periodic(self) -> None:
        """Stop the schedule and cancel its in-flight call. No-op when nothing is scheduled."""
        if self._ticker is None:
            return
        self._retire(self._ticker)
        self._ticker = None
        self.cancel_inflight()

    def _retire(self, ticker: Ticker) -> None:
        ticker.stop()
        self._retired = [t for t in self._retired if t.pending]
        if ticker.pending:
            self._retired.append(ticker)

    def pause(self) -> None:
        """Skip periodic ticks until resume(). Manual triggers still run."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def _on_tick(self) -> None:
        if self._paused:
            logger.debug("Periodic sync skipped while paused")
            return
        await self.trigger_sync()

    async def close(self) -> None:
        """Stop the schedule, cancel in-flight work and wait for every owned task to finish."""
        self.stop_periodic()
        self.cancel_inflight()
        tickers, self._retired = self._retired, []
        for ticker in tickers:
            await ticker.shutdown()

        inflight = self._inflight
        reset_task = self._reset_task
        self._cancel_reset()
        pending = [task for task in (inflight, reset_task) if task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ========== Patient mutations ==========

    async def sync_patient(self, leito: str) -> dict:
        """Sync one bed from the external clinical system. Not subject to the run guard."""
        patient = await self.client.sync_patient(leito)
        self._invalidate_views()
        logger.info(f"Patient in bed {leito} synced from external API")
        return patient

    async def sync_patients(self, leitos: List[str]) -> List[dict]:
        if not leitos:
            raise ValueError("leitos list is required")
        patients = await self.client.sync_patients(leitos)
        self._invalidate_views()
        logger.info(f"{len(patients)} patient(s) synced from external API")
        return patients

    async def get_patients(self) -> List[dict]:
        """Patient census, served from the cache until the next successful sync."""
        return await self.cache.get_or_fetch(PATIENTS_VIEW, self.client.get_patients)
