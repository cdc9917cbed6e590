from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from nutriplan.core.enrichment import (
    ALL_KINDS,
    ENRICHMENT_DELAY_SECONDS,
    ENRICHMENT_MEALS_ONLY,
    MEALS_ONLY,
    EnrichmentPipeline,
)
from nutriplan.core.events import EventBus, Topic, get_event_bus
from nutriplan.core.registry import RegistrationResult, RegistryController
from nutriplan.core.schemas import MailboxMessage, SavedPlanRecord, Session, WellnessPlan
from nutriplan.core.tracker import DailyTracker
from nutriplan.db.repositories import (
    MailboxRepository,
    PlanArchiveRepository,
    SessionRepository,
    TrackerRepository,
    UserRepository,
    normalize_email,
)
from nutriplan.db.store import RecordStore, get_record_store
from nutriplan.services.gateway import AIGateway, get_ai_gateway


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Workspace:
    """In-memory working state of the client plus the components that mutate it.

    The active plan and mailbox here are working copies. Durable state lives in
    the record store and is written back explicitly by each operation.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: AIGateway,
        events: Optional[EventBus] = None,
        enrichment_delay_seconds: float = ENRICHMENT_DELAY_SECONDS,
        enrichment_kinds: Sequence[str] = MEALS_ONLY if ENRICHMENT_MEALS_ONLY else ALL_KINDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.events = events or EventBus()
        self.users = UserRepository(store)
        self.sessions = SessionRepository(store)
        self.mailboxes = MailboxRepository(store)
        self.archive = PlanArchiveRepository(store, self.events)
        self.auth = RegistryController(self.users, self.sessions, self.mailboxes, self.events)
        self.tracker = DailyTracker(TrackerRepository(store), clock=clock)
        self.pipeline = EnrichmentPipeline(
            gateway,
            current_plan=lambda: self.active_plan,
            on_update=self._apply_enrichment,
            delay_seconds=enrichment_delay_seconds,
            kinds=enrichment_kinds,
        )
        self.active_plan: Optional[WellnessPlan] = None
        self.mailbox: list[MailboxMessage] = []
        self.has_new_mail = False
        self.saved_plans: list[SavedPlanRecord] = self.archive.entries()
        self.events.subscribe(Topic.storage_updated, self._on_storage_updated)
        self.events.subscribe(Topic.new_mail, self._on_new_mail)

    def _on_storage_updated(self, _: Any) -> None:
        self.saved_plans = self.archive.entries()

    def _on_new_mail(self, payload: Any) -> None:
        session = self.sessions.load()
        if session is None or not isinstance(payload, dict):
            return
        if payload.get("email") == normalize_email(session.email):
            self.load_mailbox(session.email)
            self.has_new_mail = True

    # Session lifecycle

    def restore(self) -> Optional[Session]:
        session = self.auth.restore_session()
        if session is not None:
            self.load_mailbox(session.email)
        return session

    def register(self, name: str, email: str, password: str, confirm_password: str) -> RegistrationResult:
        result = self.auth.register(name, email, password, confirm_password)
        self.load_mailbox(result.session.email)
        return result

    async def deliver_welcome_mail(self, session: Session) -> MailboxMessage:
        return await self.auth.deliver_welcome_mail(
            self.gateway, session.name, session.email, session.clinical_id or ""
        )

    def login(self, email: str, password: str) -> Session:
        session = self.auth.login(email, password)
        self.load_mailbox(session.email)
        return session

    def logout(self) -> None:
        self.auth.logout()
        self.pipeline.reset()
        self.active_plan = None
        self.mailbox = []
        self.has_new_mail = False

    # Mailbox

    def load_mailbox(self, email: str) -> list[MailboxMessage]:
        self.mailbox = self.mailboxes.load(email)
        self.has_new_mail = self.unread_count() > 0
        return self.mailbox

    def unread_count(self) -> int:
        return sum(1 for message in self.mailbox if not message.is_read)

    def mark_read(self, email: str, message_id: str) -> list[MailboxMessage]:
        self.mailbox = self.mailboxes.mark_read(email, message_id)
        self.has_new_mail = self.unread_count() > 0
        return self.mailbox

    # Active plan

    def install_plan(self, plan: WellnessPlan) -> WellnessPlan:
        """Make a new or recalled plan active and start backfilling its images."""
        self.pipeline.reset()
        self.active_plan = plan
        self.pipeline.trigger(plan)
        return plan

    def _apply_enrichment(self, snapshot: WellnessPlan) -> None:
        self.active_plan = snapshot
        self.pipeline.trigger(snapshot)

    def edit_meal(
        self,
        index: int,
        meal: Optional[str] = None,
        suggestions: Optional[list[str]] = None,
        preparation_steps: Optional[list[str]] = None,
    ) -> WellnessPlan:
        if self.active_plan is None:
            raise LookupError("No active plan")
        if index < 0 or index >= len(self.active_plan.meal_plan):
            raise IndexError(f"Meal index {index} out of range")
        updates: dict[str, Any] = {}
        if meal is not None:
            updates["meal"] = meal
        if suggestions is not None:
            updates["suggestions"] = list(suggestions)
        if preparation_steps is not None:
            updates["preparation_steps"] = list(preparation_steps)
        snapshot = self.active_plan.model_copy(deep=True)
        snapshot.meal_plan[index] = snapshot.meal_plan[index].model_copy(update=updates)
        self.active_plan = snapshot
        self.pipeline.trigger(snapshot)
        return snapshot

    def save_active_plan(self, label: Optional[str] = None) -> SavedPlanRecord:
        if self.active_plan is None:
            raise LookupError("No active plan")
        return self.archive.save(self.active_plan, label=label)

    def recall(self, record_id: str) -> WellnessPlan:
        record = self.archive.get(record_id)
        if record is None:
            raise LookupError(f"Saved plan {record_id} not found")
        return self.install_plan(record.plan)

    def shutdown(self) -> None:
        self.pipeline.cancel()


_workspace: Optional[Workspace] = None


def get_workspace() -> Workspace:
    global _workspace
    if _workspace is None:
        _workspace = Workspace(store=get_record_store(), gateway=get_ai_gateway(), events=get_event_bus())
    return _workspace
