"""
Relational backend selector.

Chooses the embedded (SQLite) or networked (PostgreSQL) store at startup and
performs the one-way live upgrade from embedded to networked. Every consumer
reads the active store through a single ConnectionCell, so a swap is seen by
the orchestrator and the pipeline without a restart.

States:
- embedded-active: SQLite is the system of record
- upgrading: an upgrade attempt is in flight, SQLite still serves
- networked-active: PostgreSQL is the system of record; no downgrade

Usage:
    selector = BackendSelector(settings)
    cell = await selector.start()

    async with cell.use() as store:
        await store.write(memory)

    result = await selector.attempt_upgrade()
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from mnemo.config.settings import Settings
from mnemo.core.exceptions import BackendUpgradeFailedError, MnemoError
from mnemo.models.schemas import BackendHealth, BackendKind, SelectorState, UpgradeResult, utcnow
from mnemo.monitoring.metrics import record_backend_upgrade
from mnemo.storage.sql_store import SQLRelationalStore

logger = structlog.get_logger(__name__)

StoreFactory = Callable[[BackendKind], SQLRelationalStore]
Confirmer = Callable[[SQLRelationalStore], Awaitable[bool]]


# =============================================================================
# Connection Cell
# =============================================================================


class ConnectionCell:
    """
    Single owned reference to the active relational store.

    ``use()`` is a shared hold; ``exclusive()`` waits for every shared hold
    to drain and blocks new ones until it exits. The reference is only
    replaced inside ``exclusive()``, so no reader ever sees a half-swapped
    store.
    """

    def __init__(self, store: SQLRelationalStore) -> None:
        self._store = store
        self._readers = 0
        self._swapping = False
        self._condition = asyncio.Condition()

    @property
    def current(self) -> SQLRelationalStore:
        return self._store

    @property
    def kind(self) -> BackendKind:
        return self._store.kind

    @asynccontextmanager
    async def use(self) -> AsyncIterator[SQLRelationalStore]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._swapping)
            self._readers += 1
            store = self._store
        try:
            yield store
        finally:
            async with self._condition:
                self._readers -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._swapping)
            self._swapping = True
            try:
                await self._condition.wait_for(lambda: self._readers == 0)
            except BaseException:
                # Cancelled while draining; let readers back in
                self._swapping = False
                self._condition.notify_all()
                raise
        try:
            yield
        finally:
            async with self._condition:
                self._swapping = False
                self._condition.notify_all()

    def swap(self, store: SQLRelationalStore) -> SQLRelationalStore:
        """Replace the active store. Only valid inside ``exclusive()``."""
        if not self._swapping:
            raise RuntimeError("ConnectionCell.swap() called outside exclusive()")
        previous, self._store = self._store, store
        return previous


# =============================================================================
# Backend Selector
# =============================================================================


class BackendSelector:
    """Owns the relational connection cell and the upgrade state machine."""

    def __init__(self, settings: Settings, store_factory: Optional[StoreFactory] = None) -> None:
        self._settings = settings
        self._factory = store_factory or self._default_factory
        self._state = SelectorState.EMBEDDED_ACTIVE
        self._cell: Optional[ConnectionCell] = None
        self._upgrade_lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._confirmers: list[Confirmer] = []
        self._fault: Optional[str] = None
        self._last_upgrade: Optional[UpgradeResult] = None

    def _default_factory(self, kind: BackendKind) -> SQLRelationalStore:
        if kind == BackendKind.NETWORKED:
            return SQLRelationalStore(
                self._settings.postgres_url,
                BackendKind.NETWORKED,
                timeout=self._settings.store_timeout_seconds,
                pool_size=self._settings.postgres_pool_size,
                connect_timeout=self._settings.postgres_connect_timeout_seconds,
            )
        directory = os.path.dirname(os.path.abspath(self._settings.sqlite_path))
        os.makedirs(directory, exist_ok=True)
        return SQLRelationalStore(
            self._settings.sqlite_url,
            BackendKind.EMBEDDED,
            timeout=self._settings.store_timeout_seconds,
        )

    @property
    def cell(self) -> ConnectionCell:
        if self._cell is None:
            raise RuntimeError("BackendSelector not started. Call start() first.")
        return self._cell

    @property
    def state(self) -> SelectorState:
        return self._state

    @property
    def active_kind(self) -> BackendKind:
        return self.cell.kind

    @property
    def fault(self) -> Optional[str]:
        return self._fault

    @property
    def last_upgrade(self) -> Optional[UpgradeResult]:
        return self._last_upgrade

    def add_confirmer(self, confirmer: Confirmer) -> None:
        """Register a dependent that must accept a new store before the old one closes."""
        self._confirmers.append(confirmer)

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    async def start(self) -> ConnectionCell:
        """Pick the initial backend. Falls back to embedded if networked is unusable."""
        if self._cell is not None:
            return self._cell

        health = await self.probe()
        if health.reachable:
            networked = self._factory(BackendKind.NETWORKED)
            try:
                await networked.connect()
                await self._carry_over_embedded(networked)
            except MnemoError as e:
                logger.warning("networked_start_failed", error=str(e), fallback="embedded")
                await networked.close()
            else:
                self._cell = ConnectionCell(networked)
                self._state = SelectorState.NETWORKED_ACTIVE
                logger.info("backend_selected", kind=BackendKind.NETWORKED.value)
                return self._cell
        elif health.configured:
            logger.warning("networked_backend_unreachable", error=health.error, fallback="embedded")

        embedded = self._factory(BackendKind.EMBEDDED)
        await embedded.connect()
        self._cell = ConnectionCell(embedded)
        self._state = SelectorState.EMBEDDED_ACTIVE
        logger.info("backend_selected", kind=BackendKind.EMBEDDED.value)
        return self._cell

    async def _carry_over_embedded(self, networked: SQLRelationalStore) -> None:
        """Merge rows left in an existing embedded file into the networked store."""
        if not os.path.exists(self._settings.sqlite_path):
            return
        embedded = self._factory(BackendKind.EMBEDDED)
        try:
            await embedded.connect()
            memories, enrichments = await embedded.export_rows()
            if memories:
                await networked.import_rows(memories, enrichments)
                logger.info("embedded_rows_carried_over", memories=len(memories), enrichments=len(enrichments))
        finally:
            await embedded.close()

    # -------------------------------------------------------------------------
    # Probe and upgrade
    # -------------------------------------------------------------------------

    async def probe(self) -> BackendHealth:
        """Connectivity + auth check against the networked backend. Never raises."""
        if not self._settings.postgres_configured:
            return BackendHealth(
                name="postgres",
                kind=BackendKind.NETWORKED,
                reachable=False,
                configured=False,
                error="PostgreSQL settings incomplete",
            )
        try:
            store = self._factory(BackendKind.NETWORKED)
        except Exception as e:
            return BackendHealth(
                name="postgres",
                kind=BackendKind.NETWORKED,
                reachable=False,
                error=f"{type(e).__name__}: {e}",
            )
        try:
            return await store.health_check()
        finally:
            try:
                await store.close()
            except Exception as e:
                logger.debug("probe_close_failed", error=str(e))

    async def attempt_upgrade(self) -> UpgradeResult:
        """
        Upgrade embedded -> networked.

        At most one attempt runs at a time; concurrent callers await the same
        in-flight attempt. On failure the embedded store stays active.
        """
        async with self._upgrade_lock:
            if self._inflight is None or self._inflight.done():
                if self._state != SelectorState.EMBEDDED_ACTIVE:
                    record_backend_upgrade("skipped")
                    return UpgradeResult(
                        success=False,
                        state=self._state,
                        active_backend=self.active_kind,
                        error=f"upgrade is only possible from embedded-active (current: {self._state.value})",
                        finished_at=utcnow(),
                    )
                self._inflight = asyncio.create_task(self._run_upgrade())
            task = self._inflight
        return await asyncio.shield(task)

    async def _run_upgrade(self) -> UpgradeResult:
        started_at = utcnow()
        cell = self.cell
        embedded = cell.current
        networked: Optional[SQLRelationalStore] = None
        step = "probe"
        rows_copied = 0
        logger.info("backend_upgrade_started")

        try:
            # 1. Probe; an unreachable backend leaves the state untouched
            health = await self.probe()
            if not health.reachable:
                raise BackendUpgradeFailedError(step, health.error or "networked backend unreachable")
            self._state = SelectorState.UPGRADING

            # 2. Open, validate, bulk copy
            step = "connect"
            networked = self._factory(BackendKind.NETWORKED)
            await networked.connect()
            validation = await networked.health_check()
            if not validation.reachable:
                raise BackendUpgradeFailedError(step, validation.error or "validation failed")
            memories, enrichments = await embedded.export_rows()
            rows_copied = await networked.import_rows(memories, enrichments)

            # 3 + 4. Swap, catch up, confirm while no reader holds the cell
            step = "swap"
            async with cell.exclusive():
                memories, enrichments = await embedded.export_rows()
                rows_copied = await networked.import_rows(memories, enrichments)
                cell.swap(networked)
                step = "confirm"
                try:
                    await self._confirm(networked)
                except Exception:
                    cell.swap(embedded)
                    raise

        except Exception as e:
            if networked is not None:
                try:
                    await networked.close()
                except Exception as close_error:
                    logger.debug("networked_close_failed", error=str(close_error))
            self._state = SelectorState.EMBEDDED_ACTIVE
            message = e.message if isinstance(e, MnemoError) else f"{type(e).__name__}: {e}"
            result = UpgradeResult(
                success=False,
                state=self._state,
                active_backend=cell.kind,
                step=step,
                error=message,
                started_at=started_at,
                finished_at=utcnow(),
            )
            self._last_upgrade = result
            record_backend_upgrade("failed")
            logger.warning("backend_upgrade_failed", step=step, error=message)
            return result

        try:
            await embedded.close()
        except Exception as e:
            logger.debug("embedded_close_failed", error=str(e))

        # 5. Done
        self._state = SelectorState.NETWORKED_ACTIVE
        self._fault = None
        result = UpgradeResult(
            success=True,
            state=self._state,
            active_backend=BackendKind.NETWORKED,
            rows_copied=rows_copied,
            started_at=started_at,
            finished_at=utcnow(),
        )
        self._last_upgrade = result
        record_backend_upgrade("succeeded")
        logger.info("backend_upgrade_succeeded", rows_copied=rows_copied)
        return result

    async def _confirm(self, store: SQLRelationalStore) -> None:
        """Every registered dependent must accept the new store."""
        if not self._confirmers:
            health = await store.health_check()
            if not health.reachable:
                raise BackendUpgradeFailedError("confirm", health.error or "health check failed")
            return

        for confirmer in self._confirmers:
            if not await confirmer(store):
                raise BackendUpgradeFailedError("confirm", "dependent rejected the new store")

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    async def check_active(self) -> BackendHealth:
        """Health of the active store. Loss after an upgrade is recorded as a fault."""
        health = await self.cell.current.health_check()
        if self._state == SelectorState.NETWORKED_ACTIVE:
            if not health.reachable:
                if self._fault is None:
                    logger.error("networked_backend_lost", error=health.error)
                self._fault = f"networked backend unreachable: {health.error}"
            elif self._fault is not None:
                logger.info("networked_backend_recovered")
                self._fault = None
        return health

    async def close(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])
        if self._cell is not None:
            await self._cell.current.close()
