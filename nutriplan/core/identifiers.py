import time
from uuid import UUID, uuid4

CLINICAL_ID_PREFIX = "NP-"
CLINICAL_ID_LENGTH = 5
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def new_id() -> str:
    return str(uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def _base36(value: int) -> str:
    if value == 0:
        return _BASE36[0]
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def format_clinical_id(account_id: str) -> str:
    """Render the user-facing NP-XXXXX identifier for an account uuid.

    The five characters come from the random bits of the uuid, so the display
    id is stable for an account while the account key itself stays neutral.
    """
    encoded = _base36(UUID(account_id).int).rjust(CLINICAL_ID_LENGTH, "0")
    return f"{CLINICAL_ID_PREFIX}{encoded[-CLINICAL_ID_LENGTH:]}"
