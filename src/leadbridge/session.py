import time
from dataclasses import dataclass, field

from leadbridge.states import CallStatus, Role, Speaker, TransferState, TRANSFER_TRANSITIONS

# Instruction flags, each claimed at most once per session
FLAG_UNAVAILABLE_NOTICE = "unavailable_notice_sent"
FLAG_TIME_PROMPT = "time_prompt_sent"
FLAG_VOICEMAIL_INSTRUCTION = "voicemail_instruction_sent"
FLAG_SALES_HOLD_NOTICE = "sales_hold_notice_sent"
FLAG_WEBHOOK_SCHEDULED = "webhook_scheduled"
FLAG_RETRY_ATTEMPTED = "retry_attempted"
# Per-intent guidance, suffixed with the intent name
FLAG_INTENT_INSTRUCTIONS = "intent_instructions_sent:"


@dataclass
class LeadInfo:
    lead_id: str = ""
    phone_number: str = ""
    lead_name: str = ""
    care_reason: str = ""
    care_needed_for: str = ""

    @property
    def is_known(self) -> bool:
        return bool(self.lead_name or self.care_reason or self.care_needed_for)

    def to_dict(self) -> dict:
        return {
            "leadId": self.lead_id,
            "phoneNumber": self.phone_number,
            "leadName": self.lead_name,
            "careReason": self.care_reason,
            "careNeededFor": self.care_needed_for,
        }

    @classmethod
    def from_params(cls, params: dict) -> "LeadInfo":
        """Build from a stream's customParameters or a request body."""
        return cls(
            lead_id=params.get("leadId", "") or "",
            phone_number=params.get("phoneNumber", "") or params.get("number", "") or "",
            lead_name=params.get("leadName", "") or "",
            care_reason=params.get("careReason", "") or "",
            care_needed_for=params.get("careNeededFor", "") or "",
        )


@dataclass
class IntentMatch:
    name: str
    confidence: float


@dataclass
class IntentState:
    detected_intents: set = field(default_factory=set)
    primary_intent: IntentMatch | None = None


@dataclass
class Conference:
    room_name: str
    created_at: float
    lead_joined: bool = False
    sales_joined: bool = False
    conference_sid: str = ""

    @property
    def both_joined(self) -> bool:
        return self.lead_joined and self.sales_joined


@dataclass
class TranscriptEntry:
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CallSession:
    call_id: str
    role: Role
    status: CallStatus = CallStatus.INITIATED
    paired_call_id: str = ""
    created_at: float = field(default_factory=time.time)

    # From answering machine detection / transcript heuristic
    is_voicemail: bool | None = None
    answered_by: str = ""

    # Handoff
    transfer_state: TransferState = TransferState.NOT_STARTED
    conference: Conference | None = None
    sales_team_unavailable: bool = False
    needs_follow_up: bool = False

    # From the AI leg
    conversation_id: str = ""
    transcripts: list = field(default_factory=list)
    intent_state: IntentState = field(default_factory=IntentState)

    # Callbacks
    callback_preferences: list = field(default_factory=list)
    callback_scheduled: bool = False

    # Lead asked for a moment and has not come back yet
    interruption_active: bool = False

    # Metadata
    lead_info: LeadInfo = field(default_factory=LeadInfo)
    instruction_flags: set = field(default_factory=set)
    webhook_dispatched: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def lead_key(self) -> str:
        """Key used for retry bookkeeping across redials of the same lead."""
        return self.lead_info.lead_id or self.call_id

    @property
    def is_in_progress(self) -> bool:
        return self.status == CallStatus.IN_PROGRESS

    def apply_status(self, status: CallStatus) -> bool:
        """Record a provider status. Rejected once a terminal status is stored."""
        if self.status.is_terminal:
            return False
        self.status = status
        return True

    def mark_voicemail(self) -> bool:
        """Flag the leg as voicemail. Returns True only on the first flip to True."""
        if self.is_voicemail is True:
            return False
        self.is_voicemail = True
        return True

    def mark_human(self) -> bool:
        """Record a human answer, only while voicemail status is still unknown."""
        if self.is_voicemail is not None:
            return False
        self.is_voicemail = False
        return True

    def claim_flag(self, name: str) -> bool:
        """Set an instruction flag. True the first time only."""
        if name in self.instruction_flags:
            return False
        self.instruction_flags.add(name)
        return True

    def advance_transfer(self, target: TransferState) -> bool:
        if target not in TRANSFER_TRANSITIONS[self.transfer_state]:
            return False
        self.transfer_state = target
        return True

    def add_transcript(self, speaker: Speaker, text: str, timestamp: float | None = None) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=speaker, text=text)
        if timestamp is not None:
            entry.timestamp = timestamp
        self.transcripts.append(entry)
        return entry

    def merge_intent(self, match: IntentMatch) -> bool:
        """Record a detected intent. Returns True when the primary intent changed."""
        self.intent_state.detected_intents.add(match.name)
        primary = self.intent_state.primary_intent
        if primary is None or match.confidence > primary.confidence:
            self.intent_state.primary_intent = IntentMatch(match.name, match.confidence)
            return True
        return False
