import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from nutriplan.core.errors import UpstreamError
from nutriplan.core.schemas import WellnessPlan
from nutriplan.services.gateway import AIGateway

logger = logging.getLogger("uvicorn.error")

ALL_KINDS = ("meal", "workout", "yoga")
MEALS_ONLY = ("meal",)
FULL_DELAY_SECONDS = 2.0
MEALS_ONLY_DELAY_SECONDS = 0.2

ENRICHMENT_MEALS_ONLY = os.getenv("ENRICHMENT_MEALS_ONLY", "").strip().lower() in {"1", "true", "yes"}
ENRICHMENT_DELAY_SECONDS = float(
    os.getenv(
        "ENRICHMENT_DELAY_SECONDS",
        str(MEALS_ONLY_DELAY_SECONDS if ENRICHMENT_MEALS_ONLY else FULL_DELAY_SECONDS),
    )
)


def entry_key(kind: str, index: int) -> str:
    return f"{kind}-{index}"


@dataclass(frozen=True)
class EnrichmentItem:
    kind: str
    index: int
    name: str
    context: str

    @property
    def key(self) -> str:
        return entry_key(self.kind, self.index)


def pending_items(plan: WellnessPlan, processed: set[str], kinds: Sequence[str] = ALL_KINDS) -> list[EnrichmentItem]:
    """Image-less entries not yet processed, meals first, each section in array order."""
    items: list[EnrichmentItem] = []
    if "meal" in kinds:
        for idx, meal in enumerate(plan.meal_plan):
            if not meal.image_url and entry_key("meal", idx) not in processed:
                items.append(EnrichmentItem("meal", idx, meal.meal, ", ".join(meal.suggestions[:3])))
    if "workout" in kinds:
        for idx, exercise in enumerate(plan.workout_plan):
            if not exercise.image_url and entry_key("workout", idx) not in processed:
                items.append(EnrichmentItem("workout", idx, exercise.name, ", ".join(exercise.instructions)))
    if "yoga" in kinds:
        for idx, pose in enumerate(plan.yoga_plan):
            if not pose.image_url and entry_key("yoga", idx) not in processed:
                items.append(EnrichmentItem("yoga", idx, pose.name, ", ".join(pose.instructions)))
    return items


def with_image(plan: WellnessPlan, kind: str, index: int, image_url: str) -> WellnessPlan:
    snapshot = plan.model_copy(deep=True)
    entries = {"meal": snapshot.meal_plan, "workout": snapshot.workout_plan, "yoga": snapshot.yoga_plan}[kind]
    entries[index] = entries[index].model_copy(update={"image_url": image_url})
    return snapshot


class EnrichmentPipeline:
    """Backfills missing plan images one entry at a time.

    A single worker task drains a queue of eligible entries, keeping at least
    ``delay_seconds`` between one call finishing and the next starting. Each
    entry key is attempted at most once per run; ``reset`` starts a new run.
    After ``cancel`` nothing is queued again until the next ``reset``.
    """

    def __init__(
        self,
        gateway: AIGateway,
        current_plan: Callable[[], Optional[WellnessPlan]],
        on_update: Callable[[WellnessPlan], None],
        delay_seconds: float = ENRICHMENT_DELAY_SECONDS,
        kinds: Sequence[str] = ALL_KINDS,
    ) -> None:
        self.gateway = gateway
        self.current_plan = current_plan
        self.on_update = on_update
        self.delay_seconds = delay_seconds
        self.kinds = tuple(kinds)
        self.processed: set[str] = set()
        self.failed: set[str] = set()
        self.in_flight: Optional[str] = None
        self.cancelled = False
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._last_completed: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self, plan: Optional[WellnessPlan] = None) -> bool:
        if self.cancelled or self.running:
            return False
        plan = plan or self.current_plan()
        if plan is None:
            return False
        items = pending_items(plan, self.processed, self.kinds)
        if not items:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop; the next trigger from async code picks these up.
            return False
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)
        self._queue = queue
        self._task = loop.create_task(self._run(queue))
        return True

    async def _pace(self) -> None:
        if self._last_completed is None:
            return
        remaining = self.delay_seconds - (asyncio.get_running_loop().time() - self._last_completed)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _run(self, queue: asyncio.Queue) -> None:
        try:
            while not queue.empty():
                item: EnrichmentItem = queue.get_nowait()
                if item.key in self.processed:
                    continue
                await self._pace()
                await self._process(item)
        finally:
            # A cancelled run may already have been replaced by a newer one.
            if self._task is asyncio.current_task():
                self._task = None
                self._queue = None
        # Entries that appeared while this run was busy.
        self.trigger()

    async def _process(self, item: EnrichmentItem) -> None:
        self.processed.add(item.key)
        self.in_flight = item.key
        try:
            image_url = await self.gateway.synthesize_image(item.kind, item.name, item.context)
        except UpstreamError as exc:
            self.failed.add(item.key)
            logger.warning("enrichment_image_failed key=%s detail=%s", item.key, str(exc)[:220])
        except Exception as exc:
            self.failed.add(item.key)
            logger.exception("enrichment_image_error key=%s detail=%s", item.key, str(exc)[:220])
        else:
            plan = self.current_plan()
            if plan is not None:
                self.on_update(with_image(plan, item.kind, item.index, image_url))
        finally:
            self.in_flight = None
            self._last_completed = asyncio.get_running_loop().time()

    async def settle(self) -> None:
        while self._task is not None:
            task = self._task
            await asyncio.wait({task})
            if self._task is task:
                break

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.cancelled = True
        self._task = None
        self._queue = None
        self.in_flight = None

    def reset(self) -> None:
        self.cancel()
        self.cancelled = False
        self.processed.clear()
        self.failed.clear()

    def status(self) -> dict[str, object]:
        return {
            "running": self.running,
            "cancelled": self.cancelled,
            "in_flight": self.in_flight,
            "processed": sorted(self.processed),
            "failed": sorted(self.failed),
            "pending": self._queue.qsize() if self._queue is not None else 0,
        }
