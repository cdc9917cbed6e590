import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from nutriplan.core.errors import UpstreamError
from nutriplan.core.identifiers import new_id
from nutriplan.core.schemas import DailyTaskSheet, LoggedFood, WellnessPlan
from nutriplan.db.repositories import TrackerRepository
from nutriplan.services.gateway import AIGateway

logger = logging.getLogger("uvicorn.error")

EXCLUDED_TASK_MARKER = "complete"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    return moment.date().isoformat()


def compute_progress(sheet: DailyTaskSheet, plan: Optional[WellnessPlan]) -> int:
    total = plan.entry_count() if plan is not None else 0
    if total == 0:
        return 0
    completed = sum(1 for key, done in sheet.tasks.items() if done and EXCLUDED_TASK_MARKER not in key)
    # Half rounds up, matching the dashboard's percentage display.
    return int(math.floor(completed / total * 100 + 0.5))


class DailyTracker:
    """Per-day task and food sheet, persisted after every mutation."""

    def __init__(self, repository: TrackerRepository, clock: Callable[[], datetime] = _utc_now) -> None:
        self.repository = repository
        self.clock = clock
        self.sheet: Optional[DailyTaskSheet] = None

    def today(self) -> str:
        return day_key(self.clock())

    def load_for_today(self) -> DailyTaskSheet:
        self.sheet = self.repository.load(self.today())
        return self.sheet

    def current_sheet(self) -> DailyTaskSheet:
        if self.sheet is None or self.sheet.date != self.today():
            return self.load_for_today()
        return self.sheet

    def _commit(self, sheet: DailyTaskSheet) -> DailyTaskSheet:
        self.sheet = sheet
        self.repository.save(sheet)
        return sheet

    def toggle_task(self, task_key: str) -> DailyTaskSheet:
        sheet = self.current_sheet()
        tasks = dict(sheet.tasks)
        tasks[task_key] = not tasks.get(task_key, False)
        return self._commit(sheet.model_copy(update={"tasks": tasks}))

    def log_food(self, name: str) -> Optional[LoggedFood]:
        cleaned = (name or "").strip()
        if not cleaned:
            return None
        sheet = self.current_sheet()
        food = LoggedFood(id=new_id(), name=cleaned, timestamp=self.clock().strftime("%H:%M"))
        self._commit(sheet.model_copy(update={"logged_foods": [*sheet.logged_foods, food]}))
        return food

    def remove_food(self, food_id: str) -> DailyTaskSheet:
        sheet = self.current_sheet()
        remaining = [food for food in sheet.logged_foods if food.id != food_id]
        if len(remaining) == len(sheet.logged_foods):
            return sheet
        return self._commit(sheet.model_copy(update={"logged_foods": remaining}))

    def compute_progress(self, plan: Optional[WellnessPlan]) -> int:
        return compute_progress(self.current_sheet(), plan)

    async def refresh_nutrition_estimate(self, gateway: AIGateway) -> DailyTaskSheet:
        sheet = self.current_sheet()
        if not sheet.logged_foods:
            return sheet
        try:
            summary = await gateway.estimate_nutrition([food.name for food in sheet.logged_foods])
        except UpstreamError as exc:
            logger.warning("nutrition_estimate_failed date=%s detail=%s", sheet.date, str(exc)[:220])
            return sheet
        if sheet.date != self.today():
            # Day rolled over mid-estimate; the result belongs to the earlier sheet.
            stale = self.repository.load(sheet.date).model_copy(update={"custom_nutrition": summary})
            self.repository.save(stale)
            return stale
        # Foods logged while the estimate was running stay on the sheet.
        latest = self.current_sheet()
        return self._commit(latest.model_copy(update={"custom_nutrition": summary}))
