"""Wires the call components together and adapts provider callbacks.

Every Twilio webhook and media stream ends up here as a method call; the
methods translate them into session mutations through the registry and
hand off to the relay, transfer coordinator, and webhook dispatcher.
"""

import asyncio
import logging
import time
from typing import Callable

from leadbridge import prompts
from leadbridge.config import Settings
from leadbridge.elevenlabs import ElevenLabsClient
from leadbridge.intent_pipeline import IntentPipeline
from leadbridge.registry import SessionRegistry
from leadbridge.relay import ConversationRelay
from leadbridge.retry_tracker import MACHINE_ANSWERS, RetryRecord, RetryTracker
from leadbridge.session import CallSession, FLAG_VOICEMAIL_INSTRUCTION, LeadInfo
from leadbridge.states import CallStatus, Role, TransferState
from leadbridge.telephony import TwilioTelephony
from leadbridge.timers import Scheduler
from leadbridge.transfer import TransferCoordinator
from leadbridge.webhook import WebhookDispatcher

logger = logging.getLogger(__name__)


class CallOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        telephony: TwilioTelephony,
        elevenlabs: ElevenLabsClient,
        registry: SessionRegistry | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.urls = settings.urls
        self.telephony = telephony
        self.elevenlabs = elevenlabs
        self.registry = registry or SessionRegistry()
        self.scheduler = scheduler or Scheduler()

        self.retry_tracker = RetryTracker(
            webhook_url=settings.webhook.callback_url,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            redial=self._redial,
            scheduler=self.scheduler,
        )
        self.coordinator = TransferCoordinator(
            registry=self.registry,
            telephony=telephony,
            urls=self.urls,
            scheduler=self.scheduler,
            clock=clock,
        )
        self.pipeline = IntentPipeline(
            registry=self.registry,
            retry_tracker=self.retry_tracker,
            coordinator=self.coordinator,
        )
        self.dispatcher = WebhookDispatcher(
            registry=self.registry,
            config=settings.webhook,
            elevenlabs=elevenlabs,
            retry_tracker=self.retry_tracker,
        )
        self._relays: set[ConversationRelay] = set()
        self._tasks: set[asyncio.Task] = set()

    # --- outbound calls ---

    async def start_outbound_call(self, number: str, lead_info: LeadInfo, sales_number: str = "") -> dict:
        """Dial the lead and the sales team and register both legs as a pair."""
        if not number:
            return {"success": False, "error": "Phone number is required"}
        lead_info.phone_number = lead_info.phone_number or number
        params = _twiml_params(lead_info)

        lead_sid = await self.telephony.create_call(
            number,
            self.urls.lead_twiml(params),
            self.urls.lead_status,
            amd_callback_url=self.urls.amd,
        )
        if not lead_sid:
            return {"success": False, "error": "Failed to create lead call"}

        self.registry.add(CallSession(call_id=lead_sid, role=Role.LEAD, lead_info=lead_info))
        self.retry_tracker.track_call(lead_info.lead_id or lead_sid, lead_sid, {
            **lead_info.to_dict(), "phoneNumber": number,
        })

        sales_number = sales_number or self.settings.sales_team_phone_number
        sales_sid = None
        if sales_number:
            sales_sid = await self.telephony.create_call(
                sales_number, self.urls.sales_twiml(params), self.urls.sales_status,
            )

        if sales_sid:
            self.registry.add(CallSession(
                call_id=sales_sid, role=Role.SALES, paired_call_id=lead_sid, lead_info=lead_info,
            ))
            self.registry.upsert(lead_sid, lambda s: setattr(s, "paired_call_id", sales_sid))
        else:
            logger.warning("[%s] No sales leg, the AI handles the call alone", lead_sid)
            self.registry.upsert(lead_sid, _flag_sales_unavailable)

        return {"success": True, "leadCallSid": lead_sid, "salesCallSid": sales_sid}

    async def _redial(self, record: RetryRecord) -> str | None:
        lead_info = LeadInfo.from_params(record.context)
        lead_info.lead_id = lead_info.lead_id or record.lead_id
        result = await self.start_outbound_call(record.phone_number, lead_info)
        return result.get("leadCallSid")

    # --- status callbacks ---

    def _apply_status(self, call_id: str, raw_status: str) -> CallStatus | None:
        status = CallStatus.parse(raw_status)
        if status is None:
            logger.warning("[%s] Ignoring unknown call status %r", call_id, raw_status)
            return None
        applied = self.registry.upsert(call_id, lambda s: s.apply_status(status))
        if applied is None:
            logger.debug("[%s] Status %s for untracked call", call_id, status.value)
            return None
        if not applied:
            logger.debug("[%s] Status %s after terminal status ignored", call_id, status.value)
            return None
        logger.info("[%s] Status %s", call_id, status.value)
        return status

    async def handle_lead_status(self, call_id: str, raw_status: str, answered_by: str = "") -> None:
        status = self._apply_status(call_id, raw_status)
        if status is None:
            return
        session = self.registry.get(call_id)
        self.retry_tracker.update_call_status(session.lead_key, call_id, status.value, answered_by)

        if status == CallStatus.IN_PROGRESS:
            await self.coordinator.evaluate(call_id)
        elif status.is_terminal:
            await self.coordinator.on_leg_terminal(call_id)
            session = self.registry.get(call_id)
            if session is not None and not session.transfer_state.is_pending:
                self.schedule_dispatch(call_id)
            self.evict_if_finished(call_id)

    async def handle_sales_status(self, call_id: str, raw_status: str) -> None:
        status = self._apply_status(call_id, raw_status)
        if status is None:
            return
        session = self.registry.get(call_id)

        if status == CallStatus.IN_PROGRESS:
            await self.coordinator.evaluate(call_id)
        elif status.is_terminal:
            await self.coordinator.on_leg_terminal(call_id)
            if session.transfer_state != TransferState.COMPLETE:
                logger.info("[%s] Sales leg ended (%s) without a transfer", session.paired_call_id, status.value)
                self.registry.upsert(session.paired_call_id, _flag_sales_unavailable_while_live)
            self.evict_if_finished(session.paired_call_id or call_id)

    async def handle_amd(self, call_id: str, answered_by: str) -> None:
        """Answering machine detection result for the lead leg."""
        if not answered_by:
            return

        def record(s: CallSession) -> bool:
            s.answered_by = answered_by
            if answered_by in MACHINE_ANSWERS:
                return s.mark_voicemail()
            if answered_by == "human":
                s.mark_human()
            return False

        newly_voicemail = self.registry.upsert(call_id, record)
        if newly_voicemail is None:
            logger.debug("[%s] AMD result for untracked call", call_id)
            return
        session = self.registry.get(call_id)
        logger.info("[%s] Answered by %s", call_id, answered_by)
        self.retry_tracker.update_call_status(session.lead_key, call_id, session.status.value, answered_by)

        if newly_voicemail:
            relay = self._relay_for(call_id)
            if relay is not None and relay.is_open:
                if self.registry.upsert(call_id, lambda s: s.claim_flag(FLAG_VOICEMAIL_INSTRUCTION)):
                    await relay.send_instruction(prompts.get_voicemail_instruction(session.lead_info))
            await self.coordinator.notify_sales_voicemail(call_id)
        else:
            await self.coordinator.evaluate(call_id)

    async def handle_conference_event(
        self,
        event: str,
        call_id: str,
        room_name: str = "",
        conference_sid: str = "",
    ) -> None:
        if event == "participant-join":
            self.coordinator.on_participant_joined(call_id, room_name, conference_sid)
        elif event == "participant-leave":
            logger.info("[%s] Left conference %s", call_id, room_name)
        else:
            logger.debug("Conference %s event %s", room_name, event)

    # --- media streams ---

    async def run_media_stream(self, websocket) -> None:
        relay = ConversationRelay(
            websocket,
            registry=self.registry,
            elevenlabs=self.elevenlabs,
            pipeline=self.pipeline,
            coordinator=self.coordinator,
            on_closed=self._on_relay_closed,
        )
        self._relays.add(relay)
        try:
            await relay.run()
        finally:
            self._relays.discard(relay)

    def _relay_for(self, call_id: str) -> ConversationRelay | None:
        for relay in self._relays:
            if relay.call_id == call_id:
                return relay
        return None

    async def _on_relay_closed(self, call_id: str) -> None:
        self.schedule_dispatch(call_id)

    # --- post-call ---

    def schedule_dispatch(self, call_id: str) -> None:
        task = asyncio.create_task(self._dispatch_and_evict(call_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_and_evict(self, call_id: str) -> None:
        try:
            result = await self.dispatcher.dispatch(call_id)
            logger.info("[%s] Post-call report: %s", call_id, result)
        except Exception as e:
            logger.error("[%s] Post-call report failed: %s", call_id, e)
        self.evict_if_finished(call_id)

    def evict_if_finished(self, call_id: str) -> bool:
        """Drop a finished pair once it has been reported and both legs ended."""
        lead = self.registry.get(call_id)
        if lead is None:
            return False
        if lead.role == Role.SALES:
            lead = self.registry.get(lead.paired_call_id)
            if lead is None:
                return False
        sales = self.registry.get(lead.paired_call_id)
        if not lead.webhook_dispatched or not lead.is_terminal:
            return False
        if sales is not None and not sales.is_terminal:
            return False
        self.coordinator.cancel(lead.call_id)
        self.registry.remove(lead.call_id)
        if sales is not None:
            self.registry.remove(sales.call_id)

        info = self.retry_tracker.get_retry_info(lead.lead_key)
        if info is not None and not info["retryNeeded"] and not info["retryScheduled"]:
            self.retry_tracker.clear(lead.lead_key)
        logger.info("[%s] Session evicted", lead.call_id)
        return True

    async def close(self) -> None:
        await self.elevenlabs.close()


def _twiml_params(lead_info: LeadInfo) -> dict:
    return {k: v for k, v in lead_info.to_dict().items() if v}


def _flag_sales_unavailable(s: CallSession) -> None:
    s.sales_team_unavailable = True


def _flag_sales_unavailable_while_live(s: CallSession) -> bool:
    # a lead that already hung up keeps the report it was dispatched with
    if s.is_terminal:
        return False
    s.sales_team_unavailable = True
    return True
