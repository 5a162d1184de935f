import re
from dataclasses import dataclass, field

from leadbridge.session import IntentMatch

OTHER_INTENT = "other"

POSITIVE_TRANSFER_INTENTS = {"needs_more_info", "needs_immediate_care"}

VOICEMAIL_PHRASES = (
    "leave a message",
    "not available",
    "after the tone",
    "after the beep",
)

INTERRUPTION_PHRASES = (
    "hold on",
    "just a minute",
    "just a moment",
    "one moment",
    "one second",
    "hold please",
    "excuse me",
    "wait a moment",
    "wait a second",
    "give me a second",
    "someone's at the door",
    "someone's calling",
    "need to answer",
    "doorbell",
    "phone's ringing",
)

POSITIVE_KEYWORDS = (
    "interested",
    "want to know more",
    "tell me more",
    "speak to someone",
    "speak to a person",
    "talk to a representative",
    "sounds good",
    "that would be helpful",
    "need help",
    "right away",
    "looking for assistance",
    "need care",
)


@dataclass(frozen=True)
class IntentCategory:
    name: str
    priority: int
    patterns: tuple
    instructions: str


def _compile(*patterns: str) -> tuple:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CANT_TALK_NOW = IntentCategory(
    name="cant_talk_now",
    priority=2,
    patterns=_compile(
        r"busy right now",
        r"can'?t talk( right)? now",
        r"driving( right)? now",
        r"in a meeting",
        r"at work",
        r"call (me )?(back )?(later|another time)",
        r"not a good time",
        r"middle of something",
    ),
    instructions=(
        "User cannot talk now. Apologize for the inconvenience, ask when would be "
        "a better time to call back, and prepare to end the call."
    ),
)

NO_INTEREST = IntentCategory(
    name="no_interest",
    priority=4,
    patterns=_compile(
        r"not interested",
        r"don'?t want",
        r"no thank(s| you)",
        r"no,? (i'?m )?not",
        r"stop calling",
        r"leave me alone",
        r"do not call",
        r"take me off",
        r"remove (me|my number)",
        r"remove from (call|contact) list",
    ),
    instructions=(
        "User has expressed no interest. Acknowledge their preference politely, "
        "thank them for their time, and end the call."
    ),
)

ALREADY_HAVE_CARE = IntentCategory(
    name="already_have_care",
    priority=3,
    patterns=_compile(
        r"already have",
        r"already (using|with)",
        r"already (got|getting)",
        r"current(ly)? (have|using|with)",
        r"have my own",
        r"working with",
        r"am (with|using)",
    ),
    instructions=(
        "User already has care or service. Acknowledge this, briefly mention how "
        "our service might be complementary if appropriate, and respect their "
        "current arrangement."
    ),
)

WRONG_PERSON = IntentCategory(
    name="wrong_person",
    priority=5,
    patterns=_compile(
        r"wrong (person|number|name)",
        r"don'?t know what",
        r"not (sure )?who",
        r"who (is this|are you)",
        r"i'?m not\b",
        r"you'?ve got the wrong",
        r"no one (here|by that name)",
        r"there'?s no",
        r"doesn'?t live here",
    ),
    instructions=(
        "Wrong person or number. Apologize for the confusion, confirm if you have "
        "the wrong contact, and prepare to end the call."
    ),
)

CONFUSED = IntentCategory(
    name="confused",
    priority=1,
    patterns=_compile(
        r"confused",
        r"don'?t understand",
        r"what (is this|are you) (about|regarding)",
        r"what (is this|are you) (calling|referring) (to|about)",
        r"why (are you|did you) call",
        r"what'?s (this|that) (about|for)",
        r"what (company|organization|service)",
        r"who (is this|are you)",
        r"where are you from",
        r"what (exactly )?(is|are|do) you",
    ),
    instructions=(
        "User is confused about the call. Clearly reintroduce yourself, explain the "
        "purpose of the call, and ask if they would like more information."
    ),
)

NEEDS_MORE_INFO = IntentCategory(
    name="needs_more_info",
    priority=1,
    patterns=_compile(
        r"tell me more",
        r"(would|could) you (please )?(explain|tell me)",
        r"more (information|details|specifics)",
        r"how (much|does it|do you)",
        r"what (is|are) the",
        r"send me (information|details)",
        r"interested",
        r"how (does it|do you) work",
        r"what (exactly|specifically)",
    ),
    instructions=(
        "User needs more information. Provide details about our services, costs, "
        "benefits and process clearly and concisely."
    ),
)

SCHEDULE_CALLBACK = IntentCategory(
    name="schedule_callback",
    priority=2,
    patterns=_compile(
        r"call (me )?back",
        r"call (me )?(on|at|tomorrow|later)",
        r"(could|can) you call( me)?( back)?",
        r"call another time",
        r"reschedule",
        r"schedule (a )?call",
        r"contact me",
        r"reach (me|out)",
        r"(later|another) (time|day)",
    ),
    instructions=(
        "User wants to schedule a callback. Ask about and confirm a specific date "
        "and time that works for them, and assure them we will call back then."
    ),
)

NEEDS_IMMEDIATE_CARE = IntentCategory(
    name="needs_immediate_care",
    priority=5,
    patterns=_compile(
        r"need (help|care|assistance|service) (now|right now|immediately|asap|today)",
        r"(right now|immediately|asap|today)",
        r"urgent",
        r"emergency",
        r"as soon as",
        r"need (it|someone|this) (now|today|asap)",
        r"can'?t wait",
        r"(how|when) (fast|quickly|soon) can",
    ),
    instructions=(
        "User needs immediate care. Gather the necessary details about their "
        "situation, express understanding of the urgency, and explain the quickest "
        "next steps."
    ),
)

# Declaration order breaks ties after priority and confidence
INTENT_CATEGORIES = (
    CANT_TALK_NOW,
    NO_INTEREST,
    ALREADY_HAVE_CARE,
    WRONG_PERSON,
    CONFUSED,
    NEEDS_MORE_INFO,
    SCHEDULE_CALLBACK,
    NEEDS_IMMEDIATE_CARE,
)

INTENT_BY_NAME = {c.name: c for c in INTENT_CATEGORIES}


def detect_intent(text: str) -> IntentMatch:
    """Classify one utterance into an intent category.

    Each category scores ``matches / min(3, len(patterns))`` capped at 1.0.
    Among matching categories the highest priority wins, then the highest
    confidence, then declaration order.  No match yields ``other`` at 0.0.
    """
    if not text or not isinstance(text, str):
        return IntentMatch(OTHER_INTENT, 0.0)

    best = None
    best_key = None
    for index, category in enumerate(INTENT_CATEGORIES):
        matches = sum(1 for p in category.patterns if p.search(text))
        if not matches:
            continue
        confidence = min(1.0, matches / min(3, len(category.patterns)))
        key = (category.priority, confidence, -index)
        if best_key is None or key > best_key:
            best_key = key
            best = IntentMatch(category.name, round(confidence, 2))

    return best or IntentMatch(OTHER_INTENT, 0.0)


_DAY_RE = re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b")
_TIME_RE = re.compile(r"\b(([1-9]|1[0-2])(?::([0-5][0-9]))?\s*([ap]\.?m\.?)?)\b")
_RELATIVE_RE = re.compile(r"\b(tomorrow|later today|this afternoon|this evening|next week)\b")
_PERIOD_RE = re.compile(r"\b(morning|afternoon|evening|night)\b")


@dataclass
class TimeReference:
    raw_text: str
    detected_days: list = field(default_factory=list)
    detected_times: list = field(default_factory=list)
    detected_relative: list = field(default_factory=list)
    detected_periods: list = field(default_factory=list)
    has_time_reference: bool = True

    def to_dict(self) -> dict:
        return {
            "has_time_reference": self.has_time_reference,
            "raw_text": self.raw_text,
            "detected_days": list(self.detected_days),
            "detected_times": list(self.detected_times),
            "detected_relative": list(self.detected_relative),
            "detected_periods": list(self.detected_periods),
        }


def detect_callback_time(text: str) -> TimeReference | None:
    """Extract day, clock-time, relative-day and period tokens from text.

    Returns None when nothing matched, otherwise every category list (some
    possibly empty) with ``has_time_reference`` set.
    """
    if not text or not isinstance(text, str):
        return None

    lower = text.lower()
    days = _DAY_RE.findall(lower)
    times = [m.group(1).strip() for m in _TIME_RE.finditer(lower)]
    relative = _RELATIVE_RE.findall(lower)
    periods = _PERIOD_RE.findall(lower)

    if not (days or times or relative or periods):
        return None

    return TimeReference(
        raw_text=text,
        detected_days=days,
        detected_times=times,
        detected_relative=relative,
        detected_periods=periods,
    )


def describe_time_reference(ref: TimeReference | dict) -> str:
    """Short phrase for the time the caller asked for."""
    if isinstance(ref, TimeReference):
        ref = ref.to_dict()
    for key in ("detected_times", "detected_relative", "detected_days", "detected_periods"):
        values = ref.get(key) or []
        if values:
            return values[0]
    return "a specific time"


def detect_voicemail_phrase(text: str) -> str | None:
    """First voicemail greeting phrase found in text, if any."""
    if not text:
        return None
    lower = text.lower()
    for phrase in VOICEMAIL_PHRASES:
        if phrase in lower:
            return phrase
    return None


def detect_interruption_phrase(text: str) -> str | None:
    """First "give me a moment" style phrase found in text, if any."""
    if not text:
        return None
    lower = text.lower().replace("’", "'")
    for phrase in INTERRUPTION_PHRASES:
        if phrase in lower:
            return phrase
    return None


def find_positive_keyword(texts) -> str | None:
    """First positive keyword found in any of the given texts."""
    for text in texts:
        if not text:
            continue
        lower = text.lower()
        for keyword in POSITIVE_KEYWORDS:
            if keyword in lower:
                return keyword
    return None
