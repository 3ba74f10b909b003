"""
Confirmation / Timeout Manager

Guards destructive commands behind an expiring yes/no gate. Expiry is
evaluated lazily: whenever the session is touched (new input, status
query, scheduled sweep) the caller asks `resolve(pending, None)`.
"""
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from guardchat.conversation.models import ParsedCommand, PendingConfirmation, utcnow
from guardchat.core.exceptions import ConfirmationAlreadyPendingError
from guardchat.core.logging import get_logger

logger = get_logger(__name__)

AFFIRMATIVE_REPLIES = frozenset({"yes", "y", "proceed", "continue", "execute", "run", "confirm"})
NEGATIVE_REPLIES = frozenset({"no", "n", "cancel", "abort", "stop"})


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXPIRED = "expired"
    UNCLEAR = "unclear"
    # בדיקת timeout בלבד, השער עדיין פתוח
    PENDING = "pending"


def normalize_reply(response: str) -> str:
    return response.strip().lower().rstrip(".!")


class ConfirmationManager:
    """Creates and resolves PendingConfirmation records"""

    def __init__(
        self,
        default_timeout_ms: int = 30000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.default_timeout_ms = default_timeout_ms
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def create(
        self,
        command: ParsedCommand,
        existing: Optional[PendingConfirmation] = None,
        timeout_ms: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> PendingConfirmation:
        """
        Open a confirmation gate for a command.

        Raises:
            ConfirmationAlreadyPendingError: if `existing` is still open
        """
        if existing is not None:
            raise ConfirmationAlreadyPendingError(session_id)

        pending = PendingConfirmation(
            prompt=self.build_prompt(command),
            command=command,
            timeout_ms=timeout_ms or self.default_timeout_ms,
            created_at=self._clock(),
        )
        logger.info(
            "Confirmation requested",
            extra_data={
                "session_id": session_id,
                "command": command.command,
                "timeout_ms": pending.timeout_ms,
            }
        )
        return pending

    @staticmethod
    def build_prompt(command: ParsedCommand) -> str:
        lines = [f"This will run a destructive command: {command.command}"]
        if command.description:
            lines.append(command.description)
        if command.preview:
            lines.append(f"Preview: {command.preview}")
        lines.append("Proceed? (yes/no)")
        return "\n".join(lines)

    def remaining_ms(self, pending: PendingConfirmation) -> int:
        return pending.remaining_ms(self._clock())

    def is_expired(self, pending: PendingConfirmation) -> bool:
        return self.remaining_ms(pending) <= 0

    def resolve(
        self,
        pending: PendingConfirmation,
        response: Optional[str] = None,
    ) -> ConfirmationOutcome:
        """
        Decide what a reply (or the passage of time) means for a pending gate.

        Expiry wins over any reply: a "yes" that arrives with no time left is
        reported as EXPIRED. With `response=None` this is a pure timeout
        check returning EXPIRED or PENDING.
        """
        if self.is_expired(pending):
            return ConfirmationOutcome.EXPIRED

        if response is None:
            return ConfirmationOutcome.PENDING

        reply = normalize_reply(response)
        if reply in AFFIRMATIVE_REPLIES:
            return ConfirmationOutcome.CONFIRMED
        if reply in NEGATIVE_REPLIES:
            return ConfirmationOutcome.DENIED
        return ConfirmationOutcome.UNCLEAR
