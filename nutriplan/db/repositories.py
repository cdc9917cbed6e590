from typing import Any, Optional

from nutriplan.core.events import EventBus, Topic
from nutriplan.core.identifiers import new_id, now_ms
from nutriplan.core.schemas import (
    DailyTaskSheet,
    MailboxMessage,
    RegistryEntry,
    SavedPlanRecord,
    Session,
    UserAccount,
    WellnessPlan,
)
from nutriplan.db.store import RecordStore, load_record, save_record

SESSION_KEY = "nutriplan_session"
REGISTRY_KEY = "nutriplan_clinical_registry"
ARCHIVE_KEY = "nutriplan_saved_protocols"
MAILBOX_KEY_PREFIX = "emails_"
TRACKER_KEY_PREFIX = "wellness_tracker_"

ARCHIVE_CAPACITY = 10


def normalize_email(email: str) -> str:
    return email.strip().lower()


def mailbox_key(email: str) -> str:
    return f"{MAILBOX_KEY_PREFIX}{normalize_email(email)}"


def tracker_key(day: str) -> str:
    return f"{TRACKER_KEY_PREFIX}{day}"


def _parse_list(model):
    def _parse(raw: Any):
        if not isinstance(raw, list):
            raise TypeError("expected a list")
        return [model.model_validate(item) for item in raw]

    return _parse


def _parse_registry(raw: Any) -> dict[str, RegistryEntry]:
    if not isinstance(raw, dict):
        raise TypeError("expected a mapping")
    return {str(email): RegistryEntry.model_validate(entry) for email, entry in raw.items()}


class SessionRepository:
    """Single-slot session record: saving replaces whatever was there."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def load(self) -> Optional[Session]:
        return load_record(self.store, SESSION_KEY, Session.model_validate, lambda: None)

    def save(self, session: Session) -> None:
        save_record(self.store, SESSION_KEY, session.to_record())

    def clear(self) -> None:
        self.store.remove(SESSION_KEY)


class UserRepository:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def load_registry(self) -> dict[str, RegistryEntry]:
        return load_record(self.store, REGISTRY_KEY, _parse_registry, dict)

    def save_registry(self, registry: dict[str, RegistryEntry]) -> None:
        save_record(self.store, REGISTRY_KEY, {email: entry.to_record() for email, entry in registry.items()})

    def get(self, email: str) -> Optional[UserAccount]:
        normalized = normalize_email(email)
        entry = self.load_registry().get(normalized)
        if entry is None:
            return None
        return UserAccount(email=normalized, **entry.model_dump())

    def exists(self, email: str) -> bool:
        return normalize_email(email) in self.load_registry()

    def put(self, account: UserAccount) -> None:
        # Whole-mapping read-modify-write; concurrent writers can overwrite each other.
        registry = self.load_registry()
        registry[normalize_email(account.email)] = RegistryEntry.model_validate(
            account.model_dump(exclude={"email"})
        )
        self.save_registry(registry)


class PlanArchiveRepository:
    """Global archive of saved plans, newest first, capped at ARCHIVE_CAPACITY."""

    def __init__(self, store: RecordStore, events: Optional[EventBus] = None) -> None:
        self.store = store
        self.events = events

    def entries(self) -> list[SavedPlanRecord]:
        return load_record(self.store, ARCHIVE_KEY, _parse_list(SavedPlanRecord), list)

    def get(self, record_id: str) -> Optional[SavedPlanRecord]:
        for record in self.entries():
            if record.id == record_id:
                return record
        return None

    def _write(self, records: list[SavedPlanRecord]) -> None:
        save_record(self.store, ARCHIVE_KEY, [record.to_record() for record in records])
        if self.events is not None:
            self.events.publish(Topic.storage_updated)

    def save(self, plan: WellnessPlan, label: Optional[str] = None) -> SavedPlanRecord:
        record = SavedPlanRecord(
            id=new_id(),
            timestamp=now_ms(),
            label=label or f"{plan.daily_calories:g} Kcal Protocol",
            plan=plan.model_copy(deep=True),
        )
        self._write([record, *self.entries()][:ARCHIVE_CAPACITY])
        return record

    def delete(self, record_id: str) -> bool:
        records = self.entries()
        remaining = [record for record in records if record.id != record_id]
        if len(remaining) == len(records):
            return False
        self._write(remaining)
        return True


class MailboxRepository:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def load(self, email: str) -> list[MailboxMessage]:
        return load_record(self.store, mailbox_key(email), _parse_list(MailboxMessage), list)

    def save(self, email: str, messages: list[MailboxMessage]) -> None:
        save_record(self.store, mailbox_key(email), [message.to_record() for message in messages])

    def prepend(self, email: str, message: MailboxMessage) -> list[MailboxMessage]:
        messages = [message, *self.load(email)]
        self.save(email, messages)
        return messages

    def mark_read(self, email: str, message_id: str) -> list[MailboxMessage]:
        messages = [
            message.model_copy(update={"is_read": True}) if message.id == message_id else message
            for message in self.load(email)
        ]
        self.save(email, messages)
        return messages


class TrackerRepository:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def load(self, day: str) -> DailyTaskSheet:
        return load_record(
            self.store,
            tracker_key(day),
            DailyTaskSheet.model_validate,
            lambda: DailyTaskSheet(date=day),
        )

    def save(self, sheet: DailyTaskSheet) -> None:
        save_record(self.store, tracker_key(sheet.date), sheet.to_record())

    def days(self) -> list[str]:
        return [key[len(TRACKER_KEY_PREFIX):] for key in self.store.keys(TRACKER_KEY_PREFIX)]
