import inspect
from unittest.mock import AsyncMock

import pytest

from leadbridge.config import CallbackUrls
from leadbridge.registry import SessionRegistry
from leadbridge.session import CallSession, LeadInfo
from leadbridge.states import CallStatus, Role
from leadbridge.telephony import TwilioTelephony
from leadbridge.transfer import TransferCoordinator

LEAD_SID = "CA_lead_1"
SALES_SID = "CA_sales_1"
BASE_URL = "https://bridge.example.com"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ManualTimer:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Scheduler double driven by a FakeClock; nothing fires until advance()."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers: list[ManualTimer] = []

    def schedule(self, delay, callback):
        timer = ManualTimer(self.clock.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    async def fire(self, timer: ManualTimer):
        """Run a timer's callback even if it was cancelled, like a late wakeup."""
        result = timer.callback()
        if inspect.isawaitable(result):
            await result

    async def advance(self, seconds: float):
        target = self.clock.now + seconds
        while True:
            due = sorted(
                (t for t in self.pending if t.due <= target),
                key=lambda t: t.due,
            )
            if not due:
                break
            timer = due[0]
            self.timers.remove(timer)
            self.clock.now = timer.due
            await self.fire(timer)
        self.clock.now = target


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def urls():
    return CallbackUrls(BASE_URL)


@pytest.fixture
def telephony():
    fake = AsyncMock(spec=TwilioTelephony)
    fake.update_call.return_value = True
    return fake


@pytest.fixture
def lead_info():
    return LeadInfo(
        lead_id="lead_42",
        phone_number="+15125551234",
        lead_name="Maria",
        care_reason="mobility support",
        care_needed_for="her father",
    )


@pytest.fixture
def session(lead_info):
    return CallSession(call_id=LEAD_SID, role=Role.LEAD, lead_info=lead_info)


def add_pair(
    registry: SessionRegistry,
    lead_info: LeadInfo | None = None,
    lead_status: CallStatus = CallStatus.IN_PROGRESS,
    sales_status: CallStatus = CallStatus.IN_PROGRESS,
) -> tuple[str, str]:
    registry.add(CallSession(
        call_id=LEAD_SID, role=Role.LEAD, status=lead_status,
        paired_call_id=SALES_SID, lead_info=lead_info or LeadInfo(),
    ))
    registry.add(CallSession(
        call_id=SALES_SID, role=Role.SALES, status=sales_status,
        paired_call_id=LEAD_SID, lead_info=lead_info or LeadInfo(),
    ))
    return LEAD_SID, SALES_SID


@pytest.fixture
def pair(registry, lead_info):
    return add_pair(registry, lead_info)


@pytest.fixture
def coordinator(registry, telephony, urls, scheduler, clock):
    return TransferCoordinator(
        registry=registry,
        telephony=telephony,
        urls=urls,
        scheduler=scheduler,
        clock=clock,
    )
