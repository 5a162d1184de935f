from enum import Enum

TERMINAL_STATUSES = {
    "completed", "busy", "failed", "no-answer", "canceled",
}
PENDING_TRANSFER_STATES = {"initiated", "awaiting_join"}


class CallStatus(Enum):
    INITIATED = "initiated"
    QUEUED = "queued"
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATUSES

    @classmethod
    def parse(cls, raw: str | None) -> "CallStatus | None":
        """Map a provider status string to a CallStatus, or None if unknown."""
        if not raw:
            return None
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None


class Role(Enum):
    LEAD = "lead"
    SALES = "sales"


class TransferState(Enum):
    NOT_STARTED = "not_started"
    INITIATED = "initiated"
    AWAITING_JOIN = "awaiting_join"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self.value in PENDING_TRANSFER_STATES


TRANSFER_TRANSITIONS = {
    TransferState.NOT_STARTED: {TransferState.INITIATED},
    TransferState.INITIATED: {TransferState.AWAITING_JOIN, TransferState.FAILED},
    TransferState.AWAITING_JOIN: {TransferState.COMPLETE, TransferState.FAILED},
    TransferState.COMPLETE: set(),
    TransferState.FAILED: set(),
}


class RelayState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Speaker(Enum):
    LEAD = "lead"
    AI = "ai"
