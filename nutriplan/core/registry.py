from enum import Enum
from typing import Optional

from nutriplan.core.errors import (
    DuplicateEmail,
    EmailNotFound,
    InvalidCredentials,
    PasswordMismatch,
    PasswordTooShort,
    ResetNotIssued,
    ValidationError,
)
from nutriplan.core.events import EventBus, Topic
from nutriplan.core.identifiers import format_clinical_id, new_id, now_ms
from nutriplan.core.schemas import MailboxMessage, Session, UserAccount
from nutriplan.core.security import create_access_token, get_password_hash, is_password_hash, verify_password
from nutriplan.db.repositories import MailboxRepository, SessionRepository, UserRepository, normalize_email
from nutriplan.services.gateway import AIGateway, welcome_text_or_fallback

MIN_PASSWORD_LENGTH = 6
WELCOME_SENDER = "Automated Onboarding Node"
WELCOME_SUBJECT = "Welcome to your Clinical Wellness Ecosystem"
RESET_COMPLETE_NOTICE = "Passkey updated. Please log in with new credentials."


class AuthState(str, Enum):
    logged_out = "logged_out"
    logging_in = "logging_in"
    registering = "registering"
    registered = "registered"
    logged_in = "logged_in"
    requesting_reset = "requesting_reset"
    reset_issued = "reset_issued"
    setting_new_password = "setting_new_password"


class RegistrationResult:
    def __init__(self, session: Session, clinical_id: str) -> None:
        self.session = session
        self.clinical_id = clinical_id


class RegistryController:
    """Registration, login and password recovery against the user registry.

    On any validation failure the controller falls back to the state it was in
    before the attempt and leaves the registry untouched.
    """

    def __init__(
        self,
        users: UserRepository,
        sessions: SessionRepository,
        mailboxes: MailboxRepository,
        events: EventBus,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.mailboxes = mailboxes
        self.events = events
        self.state = AuthState.logged_out
        self.notice: Optional[str] = None
        self.reset_email: Optional[str] = None

    def _establish(self, account: UserAccount) -> Session:
        session = Session(
            email=account.email,
            name=account.name,
            clinical_id=account.clinical_id,
            access_token=create_access_token(subject=account.email),
        )
        self.sessions.save(session)
        return session

    def register(self, name: str, email: str, password: str, confirm_password: str) -> RegistrationResult:
        previous = self.state
        self.state = AuthState.registering
        try:
            normalized = normalize_email(email)
            if self.users.exists(normalized):
                raise DuplicateEmail()
            if password != confirm_password:
                raise PasswordMismatch()
            if len(password) < MIN_PASSWORD_LENGTH:
                raise PasswordTooShort()
        except ValidationError:
            self.state = previous
            raise

        account_id = new_id()
        account = UserAccount(
            email=normalized,
            name=name.strip() or normalized.split("@")[0],
            password=get_password_hash(password),
            clinical_id=format_clinical_id(account_id),
            account_id=account_id,
        )
        self.users.put(account)
        session = self._establish(account)
        self.notice = None
        self.state = AuthState.registered
        return RegistrationResult(session=session, clinical_id=account.clinical_id)

    async def deliver_welcome_mail(
        self, gateway: AIGateway, name: str, email: str, clinical_id: str
    ) -> MailboxMessage:
        content = await welcome_text_or_fallback(gateway, name, email, clinical_id)
        message = MailboxMessage(
            id=new_id(),
            sender=WELCOME_SENDER,
            subject=WELCOME_SUBJECT,
            content=content,
            timestamp=now_ms(),
            is_read=False,
        )
        self.mailboxes.prepend(email, message)
        self.events.publish(Topic.new_mail, {"email": normalize_email(email), "message": message})
        return message

    def login(self, email: str, password: str) -> Session:
        previous = self.state
        self.state = AuthState.logging_in
        account = self.users.get(email)
        if account is None or not verify_password(password, account.password):
            self.state = previous
            raise InvalidCredentials()
        if not is_password_hash(account.password):
            account = account.model_copy(update={"password": get_password_hash(password)})
            self.users.put(account)
        session = self._establish(account)
        self.notice = None
        self.state = AuthState.logged_in
        return session

    def request_password_reset(self, email: str) -> None:
        self.state = AuthState.requesting_reset
        if not self.users.exists(email):
            self.state = AuthState.logged_out
            raise EmailNotFound()
        # No mail leaves the system; the reset link is simulated.
        self.reset_email = normalize_email(email)
        self.state = AuthState.reset_issued

    def complete_password_reset(self, email: str, password: str, confirm_password: str) -> str:
        previous = self.state
        self.state = AuthState.setting_new_password
        try:
            if password != confirm_password:
                raise PasswordMismatch()
            if len(password) < MIN_PASSWORD_LENGTH:
                raise PasswordTooShort()
            account = self.users.get(email)
            if account is None:
                raise EmailNotFound()
            if previous != AuthState.reset_issued or account.email != self.reset_email:
                raise ResetNotIssued()
        except ValidationError:
            self.state = previous
            raise
        self.users.put(account.model_copy(update={"password": get_password_hash(password)}))
        self.reset_email = None
        self.notice = RESET_COMPLETE_NOTICE
        self.state = AuthState.logged_out
        return RESET_COMPLETE_NOTICE

    def current_session(self) -> Optional[Session]:
        return self.sessions.load()

    def restore_session(self) -> Optional[Session]:
        session = self.sessions.load()
        self.state = AuthState.logged_in if session else AuthState.logged_out
        return session

    def logout(self) -> None:
        self.sessions.clear()
        self.reset_email = None
        self.state = AuthState.logged_out
