"""Conference handoff from the AI leg to a live sales representative.

Once both legs are in progress, neither is a voicemail, and the lead has
shown interest, both legs are redirected into a conference named after the
sales call.  A single cancellable timer per lead checks the join window:
first after 15s, then every 10s until 30s have passed since the conference
was created.  If both parties have not joined by then the transfer fails and
whichever party did show up is taken care of:

- lead never joined: the sales rep hears an apology and is hung up, and the
  lead is flagged for manual follow-up;
- sales never joined: the lead goes back to a fresh AI conversation that
  knows the transfer failed, and the lead is flagged as sales-unavailable.
"""

import logging
import time
from typing import Callable

from leadbridge import prompts, twiml
from leadbridge.config import CallbackUrls
from leadbridge.patterns import POSITIVE_TRANSFER_INTENTS, find_positive_keyword
from leadbridge.registry import SessionRegistry
from leadbridge.session import CallSession, Conference, FLAG_SALES_HOLD_NOTICE
from leadbridge.states import Role, TransferState
from leadbridge.telephony import TwilioTelephony
from leadbridge.timers import Scheduler, TimerHandle
from leadbridge.transcript import last_human_texts

logger = logging.getLogger(__name__)

FIRST_CHECK_SECONDS = 15.0
RECHECK_SECONDS = 10.0
JOIN_WINDOW_SECONDS = 30.0
READINESS_WINDOW = 3


def evaluate_transfer_readiness(session: CallSession) -> bool:
    """Whether the lead has shown enough interest to bring in a human."""
    primary = session.intent_state.primary_intent
    if primary is not None and primary.name in POSITIVE_TRANSFER_INTENTS:
        return True
    return find_positive_keyword(last_human_texts(session.transcripts, READINESS_WINDOW)) is not None


def conference_room_name(sales_call_id: str) -> str:
    return f"ConferenceRoom_{sales_call_id}"


class TransferCoordinator:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        telephony: TwilioTelephony,
        urls: CallbackUrls,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        first_check_seconds: float = FIRST_CHECK_SECONDS,
        recheck_seconds: float = RECHECK_SECONDS,
        join_window_seconds: float = JOIN_WINDOW_SECONDS,
    ):
        self.registry = registry
        self.telephony = telephony
        self.urls = urls
        self.scheduler = scheduler or Scheduler()
        self.clock = clock
        self.first_check_seconds = first_check_seconds
        self.recheck_seconds = recheck_seconds
        self.join_window_seconds = join_window_seconds
        self._timers: dict[str, TimerHandle] = {}

    def _legs(self, call_id: str) -> tuple[CallSession | None, CallSession | None]:
        """(lead, sales) snapshots for either leg's id."""
        session = self.registry.get(call_id)
        if session is None:
            return None, None
        paired = self.registry.pair_of(call_id)
        if session.role == Role.LEAD:
            return session, paired
        return paired, session

    async def evaluate(self, call_id: str) -> bool:
        """Start a transfer for the pair if everything lines up. True if started."""
        lead, sales = self._legs(call_id)
        if lead is None or sales is None:
            return False

        if lead.is_voicemail is True:
            if sales.is_in_progress:
                await self.notify_sales_voicemail(lead.call_id)
            return False

        if not (lead.is_in_progress and sales.is_in_progress) or sales.is_voicemail is True:
            return False
        if lead.transfer_state != TransferState.NOT_STARTED:
            return False
        if not evaluate_transfer_readiness(lead):
            return False

        def claim(s: CallSession) -> bool:
            if not s.is_in_progress or s.is_voicemail is True:
                return False
            return s.advance_transfer(TransferState.INITIATED)

        if not self.registry.upsert(lead.call_id, claim):
            return False
        self.registry.upsert(sales.call_id, lambda s: s.advance_transfer(TransferState.INITIATED))

        await self._open_conference(lead, sales)
        return True

    async def _open_conference(self, lead: CallSession, sales: CallSession) -> None:
        room = conference_room_name(sales.call_id)
        created_at = self.clock()

        def attach(s: CallSession) -> None:
            s.conference = Conference(room_name=room, created_at=created_at)

        self.registry.upsert(lead.call_id, attach)
        logger.info("[%s] Transferring to sales %s in %s", lead.call_id, sales.call_id, room)

        dial = twiml.conference(room, self.urls.conference_status, announce=prompts.CONFERENCE_JOIN_MESSAGE)
        lead_ok = await self.telephony.update_call(lead.call_id, dial)
        sales_ok = await self.telephony.update_call(sales.call_id, twiml.conference(room, self.urls.conference_status))

        if not (lead_ok and sales_ok):
            logger.error("[%s] Could not move both legs into %s", lead.call_id, room)
            await self._fail(lead.call_id, lead_joined=lead_ok, sales_joined=sales_ok)
            return

        self.registry.upsert(lead.call_id, lambda s: s.advance_transfer(TransferState.AWAITING_JOIN))
        self.registry.upsert(sales.call_id, lambda s: s.advance_transfer(TransferState.AWAITING_JOIN))

        # join events may already have arrived while the legs were updated
        if not self._complete_if_joined(lead.call_id):
            self._arm(lead.call_id, self.first_check_seconds)

    def _arm(self, lead_id: str, delay: float) -> None:
        self.cancel(lead_id)
        self._timers[lead_id] = self.scheduler.schedule(delay, lambda: self._check(lead_id))

    def cancel(self, call_id: str) -> None:
        """Cancel the pending join check for the call's pair, if any."""
        lead, _ = self._legs(call_id)
        lead_id = lead.call_id if lead is not None else call_id
        handle = self._timers.pop(lead_id, None)
        if handle is not None:
            handle.cancel()

    async def _check(self, lead_id: str) -> None:
        self._timers.pop(lead_id, None)
        lead = self.registry.get(lead_id)
        if lead is None or lead.transfer_state != TransferState.AWAITING_JOIN or lead.conference is None:
            return
        if self._complete_if_joined(lead_id):
            return

        elapsed = self.clock() - lead.conference.created_at
        if elapsed > self.join_window_seconds:
            logger.warning(
                "[%s] Join window expired after %.0fs (lead joined=%s, sales joined=%s)",
                lead_id, elapsed, lead.conference.lead_joined, lead.conference.sales_joined,
            )
            await self._fail(lead_id)
            return

        self._arm(lead_id, self.recheck_seconds)

    def on_participant_joined(self, call_id: str, room_name: str = "", conference_sid: str = "") -> bool:
        """Record a conference join. True once the handoff is complete."""
        lead, sales = self._legs(call_id)
        if lead is None:
            lead = self._lead_for_room(room_name)
            if lead is None:
                logger.debug("Join event for untracked call %s ignored", call_id)
                return False
            sales = self.registry.get(lead.paired_call_id)

        is_lead = call_id == lead.call_id
        is_sales = sales is not None and call_id == sales.call_id
        if not (is_lead or is_sales):
            logger.debug("Join event for %s does not belong to %s", call_id, lead.call_id)
            return False

        def mark(s: CallSession) -> None:
            if s.conference is None:
                return
            if is_lead:
                s.conference.lead_joined = True
            else:
                s.conference.sales_joined = True
            if conference_sid:
                s.conference.conference_sid = conference_sid

        self.registry.upsert(lead.call_id, mark)
        logger.info("[%s] %s leg joined the conference", lead.call_id, "Lead" if is_lead else "Sales")
        return self._complete_if_joined(lead.call_id)

    def _lead_for_room(self, room_name: str) -> CallSession | None:
        if not room_name:
            return None
        found = self.registry.find(lambda s: s.conference is not None and s.conference.room_name == room_name)
        return found[0] if found else None

    def _complete_if_joined(self, lead_id: str) -> bool:
        def complete(s: CallSession) -> bool:
            if s.conference is None or not s.conference.both_joined:
                return False
            s.advance_transfer(TransferState.COMPLETE)
            return s.transfer_state == TransferState.COMPLETE

        if not self.registry.upsert(lead_id, complete):
            return False

        lead = self.registry.get(lead_id)
        self.registry.upsert(lead.paired_call_id, lambda s: s.advance_transfer(TransferState.COMPLETE))
        self.cancel(lead_id)
        logger.info("[%s] Transfer complete", lead_id)
        return True

    async def on_leg_terminal(self, call_id: str) -> None:
        """A leg hung up. A pending handoff fails right away."""
        lead, sales = self._legs(call_id)
        if lead is None or not lead.transfer_state.is_pending:
            self.cancel(call_id)
            return
        if call_id == lead.call_id:
            await self._fail(lead.call_id, lead_joined=False)
        else:
            await self._fail(lead.call_id, sales_joined=False)

    async def _fail(self, lead_id: str, lead_joined: bool | None = None, sales_joined: bool | None = None) -> None:
        def mark_failed(s: CallSession):
            if not s.advance_transfer(TransferState.FAILED):
                return None
            conf = s.conference
            joined = (conf.lead_joined, conf.sales_joined) if conf is not None else (False, False)
            return joined

        joined = self.registry.upsert(lead_id, mark_failed)
        if joined is None:
            return
        self.cancel(lead_id)

        lead = self.registry.get(lead_id)
        sales = self.registry.get(lead.paired_call_id)
        if sales is not None:
            self.registry.upsert(sales.call_id, lambda s: s.advance_transfer(TransferState.FAILED))

        lead_joined = joined[0] if lead_joined is None else lead_joined
        sales_joined = joined[1] if sales_joined is None else sales_joined
        logger.warning("[%s] Transfer failed (lead joined=%s, sales joined=%s)", lead_id, lead_joined, sales_joined)

        if not lead_joined:
            self.registry.upsert(lead_id, _flag_follow_up)
            if sales is not None and not sales.is_terminal:
                await self.telephony.update_call(sales.call_id, twiml.say_and_hangup(prompts.SALES_APOLOGY_MESSAGE))

        if not sales_joined:
            self.registry.upsert(lead_id, _flag_sales_unavailable)
            if not lead.is_terminal:
                await self.reconnect_lead(lead)

    async def reconnect_lead(self, lead: CallSession) -> bool:
        """Send the lead back to a fresh AI conversation flagged as a failed transfer."""
        params = {**lead.lead_info.to_dict(), "transferFailed": "true"}
        ok = await self.telephony.update_call(lead.call_id, twiml.stream(self.urls.media_stream, params))
        if ok:
            logger.info("[%s] Lead reconnected to AI after failed transfer", lead.call_id)
        return ok

    async def notify_sales_voicemail(self, call_id: str) -> bool:
        """Tell a connected sales rep the lead reached voicemail. At most once per lead."""
        lead, sales = self._legs(call_id)
        if lead is None or sales is None or not sales.is_in_progress:
            return False
        if not self.registry.upsert(lead.call_id, lambda s: s.claim_flag(FLAG_SALES_HOLD_NOTICE)):
            return False
        logger.info("[%s] Lead is voicemail, putting sales %s on hold", lead.call_id, sales.call_id)
        return await self.telephony.update_call(
            sales.call_id, twiml.say_and_hold(prompts.SALES_VOICEMAIL_HOLD_MESSAGE)
        )


def _flag_follow_up(s: CallSession) -> None:
    s.needs_follow_up = True


def _flag_sales_unavailable(s: CallSession) -> None:
    s.sales_team_unavailable = True
