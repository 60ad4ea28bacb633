"""Write index provisioning and rollover.

Writers and readers only know the alias. This module is the single owner of
which physical index the alias writes to: it applies the index template,
bootstraps the first write index and, on a fixed cadence, either rolls the
write index over when the rollover policy is breached
(`IndexLifecycleManager`) or at UTC day boundaries (`DailyIndexScheduler`).
Each switch is one atomic alias update that promotes the new index and
demotes the old one, so the alias never has zero or two write targets.
"""

from __future__ import annotations
import asyncio
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from esadapter.errors import StoreError
from esadapter.models import FlushTrigger, IndexPhase, IndexState, IndexTemplate, RolloverPolicy, TriggerKind
from esadapter.stats import AdapterStats
from esadapter.store import StoreClient
from esadapter.triggers import DEFAULT_ORDER, first_breach

logger = logging.getLogger(__name__)

_SEQ_RE = re.compile(r"^(.*)-(\d{6})$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def initial_index_name(alias: str) -> str:
    return f"{alias}-000001"


def next_index_name(current: str) -> str:
    """prom-metrics-000007 -> prom-metrics-000008.

    Derived only from the current write index, so a retried rollover asks
    for the same name again.
    """
    m = _SEQ_RE.match(current)
    if not m:
        return f"{current}-000002"
    return f"{m.group(1)}-{int(m.group(2)) + 1:06d}"


def daily_index_name(alias: str, day: date) -> str:
    return f"{alias}-{day:%Y.%m.%d}"


def promote_actions(alias: str, new: str, old: Optional[str]) -> List[Dict[str, Any]]:
    actions = [{"add": {"index": new, "alias": alias, "is_write_index": True}}]
    if old and old != new:
        actions.append({"add": {"index": old, "alias": alias, "is_write_index": False}})
    return actions


async def ensure_template(store: StoreClient, template: IndexTemplate) -> bool:
    """Apply the index template unless an identical one is already there.

    Returns True when the store was changed.
    """
    body = template.body()
    existing = await store.get_template(template.name)
    if existing is not None and all(existing.get(k) == v for k, v in body.items()):
        logger.debug("index template %s is up to date", template.name)
        return False
    await store.put_template(template.name, body)
    logger.info("applied index template %s for %s", template.name, ",".join(template.index_patterns))
    return True


async def bootstrap_write_index(store: StoreClient, alias: str, daily: bool = False,
                                today: Optional[date] = None) -> str:
    """Make sure `alias` has a write index, creating the first one if needed."""
    current = await store.write_index(alias)
    if current:
        return current
    name = daily_index_name(alias, today or _utcnow().date()) if daily else initial_index_name(alias)
    created = await store.create_index(name, aliases={alias: {"is_write_index": True}})
    if not created:
        # left over from an earlier start that died before the alias was added
        await store.update_aliases(promote_actions(alias, name, None))
    logger.info("bootstrapped write index %s for alias %s", name, alias)
    return name


class _AliasScheduler:
    """Shared cadence loop and alias promotion for the two index modes."""

    def __init__(self, store: StoreClient, alias: str, interval: float = 60.0,
                 stats: Optional[AdapterStats] = None):
        self.store = store
        self.alias = alias
        self.interval = interval
        self.stats = stats
        self.phases: Dict[str, IndexPhase] = {}
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> Optional[str]:
        raise NotImplementedError

    async def _promote(self, old: Optional[str], new: str) -> bool:
        """Create `new` and make it the sole write target. False if either step failed."""
        if old:
            self.phases[old] = IndexPhase.ELIGIBLE
        try:
            await self.store.create_index(new)
        except StoreError as exc:
            return self._abort(old, new, "create index", exc)
        try:
            await self.store.update_aliases(promote_actions(self.alias, new, old))
        except StoreError as exc:
            return self._abort(old, new, "update alias", exc)
        if old:
            self.phases[old] = IndexPhase.RETIRED
        self.phases[new] = IndexPhase.ACTIVE
        if self.stats is not None:
            self.stats.rollovers.inc()
        logger.info("alias %s now writes to %s (was %s)", self.alias, new, old)
        return True

    def _abort(self, old: Optional[str], new: str, step: str, exc: StoreError) -> bool:
        if old:
            self.phases[old] = IndexPhase.ACTIVE
        if self.stats is not None:
            self.stats.rollover_failures.inc()
        logger.warning("rollover %s -> %s failed at %s, retrying next tick: %s", old, new, step, exc)
        return False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"lifecycle-{self.alias}")

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("index lifecycle tick failed")
                if self.stats is not None:
                    self.stats.rollover_failures.inc()
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class IndexLifecycleManager(_AliasScheduler):
    """Rolls the write index over when the rollover policy is breached."""

    def __init__(self, store: StoreClient, alias: str, policy: RolloverPolicy,
                 interval: float = 60.0, order: Sequence[TriggerKind] = DEFAULT_ORDER,
                 stats: Optional[AdapterStats] = None,
                 now: Callable[[], datetime] = _utcnow):
        super().__init__(store, alias, interval, stats)
        self.policy = policy
        self.order = tuple(order)
        self.state: Optional[IndexState] = None
        self._now = now

    async def refresh_state(self) -> IndexState:
        write_index = await self.store.write_index(self.alias)
        if not write_index:
            raise StoreError(f"alias {self.alias} has no write index")
        st = await self.store.index_stats(write_index)
        self.state = IndexState(
            alias=self.alias,
            write_index=write_index,
            docs_count=st["docs"],
            size_bytes=st["size_bytes"],
            created_at=datetime.fromtimestamp(st["created_ms"] / 1000, tz=timezone.utc),
        )
        self.phases.setdefault(write_index, IndexPhase.ACTIVE)
        if self.stats is not None:
            self.stats.index_docs.set(self.state.docs_count)
            self.stats.index_size_bytes.set(self.state.size_bytes)
        return self.state

    def evaluate(self, state: IndexState) -> Optional[FlushTrigger]:
        measured = {
            TriggerKind.SIZE: state.size_bytes,
            TriggerKind.COUNT: state.docs_count,
            TriggerKind.AGE: state.age_seconds(self._now()),
        }
        return first_breach(self.order, measured, self.policy.limits())

    async def tick(self, force: bool = False) -> Optional[str]:
        """One evaluation. Returns the new write index if a rollover happened."""
        try:
            state = await self.refresh_state()
        except StoreError as exc:
            logger.warning("cannot read state of alias %s: %s", self.alias, exc)
            return None
        trigger = self.evaluate(state)
        if trigger is None and not force:
            return None
        if trigger is not None:
            logger.info("index %s breached %s: %s >= %s", state.write_index,
                        trigger.kind.value, trigger.measured, trigger.threshold)
        new = next_index_name(state.write_index)
        if not await self._promote(state.write_index, new):
            return None
        self.state = IndexState(self.alias, new, 0, 0, self._now())
        return new


class DailyIndexScheduler(_AliasScheduler):
    """Moves the write alias to `<alias>-YYYY.MM.DD` when the UTC day changes."""

    def __init__(self, store: StoreClient, alias: str, interval: float = 60.0,
                 stats: Optional[AdapterStats] = None,
                 today: Callable[[], date] = lambda: _utcnow().date()):
        super().__init__(store, alias, interval, stats)
        self._today = today

    async def tick(self) -> Optional[str]:
        try:
            current = await self.store.write_index(self.alias)
        except StoreError as exc:
            logger.warning("cannot read state of alias %s: %s", self.alias, exc)
            return None
        target = daily_index_name(self.alias, self._today())
        if current == target:
            self.phases.setdefault(target, IndexPhase.ACTIVE)
            return None
        if not await self._promote(current, target):
            return None
        return target
