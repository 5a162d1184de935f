"""Per-utterance processing of what the lead says.

For every lead transcript: merge the detected intent into the session,
apply the voicemail phrase heuristic, guide the agent when the primary
intent changes or the lead steps away, handle callback-time requests
(record, hand to the retry tracker, confirm or ask for a time), and give
the transfer coordinator a chance to act on the new intent.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from leadbridge import prompts
from leadbridge.patterns import (
    INTENT_BY_NAME,
    OTHER_INTENT,
    SCHEDULE_CALLBACK,
    describe_time_reference,
    detect_callback_time,
    detect_intent,
    detect_interruption_phrase,
    detect_voicemail_phrase,
)
from leadbridge.registry import SessionRegistry
from leadbridge.retry_tracker import RetryTracker
from leadbridge.session import (
    CallSession,
    FLAG_INTENT_INSTRUCTIONS,
    FLAG_TIME_PROMPT,
    FLAG_VOICEMAIL_INSTRUCTION,
)
from leadbridge.states import Speaker
from leadbridge.transfer import TransferCoordinator

logger = logging.getLogger(__name__)

SendInstruction = Callable[[str], Awaitable[bool]]

# shorter replies while paused are still "one sec" chatter
RESUME_MIN_LENGTH = 20


class IntentPipeline:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        retry_tracker: RetryTracker | None = None,
        coordinator: TransferCoordinator | None = None,
    ):
        self.registry = registry
        self.retry_tracker = retry_tracker
        self.coordinator = coordinator

    async def handle_transcript(
        self,
        call_id: str,
        speaker: Speaker,
        text: str,
        send_instruction: SendInstruction,
    ) -> None:
        """Process one transcript. Errors are logged, never raised."""
        if speaker != Speaker.LEAD:
            return
        if not isinstance(text, str) or not text.strip():
            logger.warning("[%s] Dropping malformed transcript: %r", call_id, text)
            return
        try:
            await self._process(call_id, text.strip(), send_instruction)
        except Exception as e:
            logger.error("[%s] Intent pipeline failed: %s", call_id, e)

    async def _process(self, call_id: str, text: str, send_instruction: SendInstruction) -> None:
        match = detect_intent(text)
        primary_changed = False
        if match.name != OTHER_INTENT:
            changed = self.registry.upsert(call_id, lambda s: s.merge_intent(match))
            if changed is None:
                logger.debug("[%s] Transcript for untracked call ignored", call_id)
                return
            primary_changed = changed
            logger.info("[%s] Intent %s (%.2f)%s", call_id, match.name, match.confidence,
                        ", now primary" if changed else "")

        session = self.registry.get(call_id)
        if session is None:
            return

        await self._handle_voicemail_phrase(session, text, send_instruction)

        # a voicemail greeting gets the voicemail instruction only
        if self.registry.upsert(call_id, lambda s: s.is_voicemail is not True):
            if primary_changed:
                await self._send_intent_instructions(call_id, match.name, send_instruction)
            await self._handle_interruption(call_id, text, match.name, send_instruction)

        if match.name == SCHEDULE_CALLBACK.name or session.sales_team_unavailable:
            await self._handle_callback_request(session, text, match.name, send_instruction)

        if self.coordinator is not None:
            await self.coordinator.evaluate(call_id)

    async def _send_intent_instructions(
        self,
        call_id: str,
        intent_name: str,
        send_instruction: SendInstruction,
    ) -> None:
        category = INTENT_BY_NAME.get(intent_name)
        if category is None:
            return
        flag = FLAG_INTENT_INSTRUCTIONS + intent_name
        if not self.registry.upsert(call_id, lambda s: s.claim_flag(flag)):
            return
        logger.info("[%s] Guiding agent for intent %s", call_id, intent_name)
        await send_instruction(category.instructions)

    async def _handle_interruption(
        self,
        call_id: str,
        text: str,
        intent_name: str,
        send_instruction: SendInstruction,
    ) -> None:
        """Tell the agent to wait when the lead steps away, and to resume when they are back."""
        phrase = detect_interruption_phrase(text)

        def update(s: CallSession) -> str | None:
            if phrase is not None:
                if s.interruption_active:
                    return None
                s.interruption_active = True
                return prompts.INTERRUPTION_INSTRUCTION
            if s.interruption_active and len(text) > RESUME_MIN_LENGTH and intent_name != SCHEDULE_CALLBACK.name:
                s.interruption_active = False
                return prompts.INTERRUPTION_RESOLVED_INSTRUCTION
            return None

        instruction = self.registry.upsert(call_id, update)
        if instruction:
            logger.info("[%s] %s", call_id,
                        "Lead stepped away" if phrase is not None else "Lead is back")
            await send_instruction(instruction)

    async def _handle_callback_request(
        self,
        session: CallSession,
        text: str,
        intent_name: str,
        send_instruction: SendInstruction,
    ) -> None:
        call_id = session.call_id
        sales_unavailable = session.sales_team_unavailable
        ref = detect_callback_time(text)

        if ref is None:
            def claim_time_prompt(s: CallSession) -> bool:
                return not s.callback_scheduled and s.claim_flag(FLAG_TIME_PROMPT)

            if self.registry.upsert(call_id, claim_time_prompt):
                logger.info("[%s] Callback wanted without a time, asking for one", call_id)
                await send_instruction(prompts.TIME_PROMPT_INSTRUCTION)
            return

        preference = {
            **ref.to_dict(),
            "from_intent": intent_name == SCHEDULE_CALLBACK.name,
            "sales_unavailable": sales_unavailable,
            "detected_at": datetime.now(timezone.utc).isoformat(),
        }

        def record(s: CallSession) -> bool:
            s.callback_preferences.append(preference)
            newly_scheduled = not s.callback_scheduled
            s.callback_scheduled = True
            return newly_scheduled

        newly_scheduled = self.registry.upsert(call_id, record)
        logger.info("[%s] Callback time requested: %s", call_id, describe_time_reference(ref))

        if newly_scheduled and self.retry_tracker is not None:
            context = {
                **session.lead_info.to_dict(),
                "phoneNumber": session.lead_info.phone_number,
                "callbackTimeInfo": preference,
            }
            self.retry_tracker.track_call(session.lead_key, call_id, context)

        if not sales_unavailable:
            await send_instruction(prompts.callback_confirmation(describe_time_reference(ref)))

    async def _handle_voicemail_phrase(
        self,
        session: CallSession,
        text: str,
        send_instruction: SendInstruction,
    ) -> None:
        phrase = detect_voicemail_phrase(text)
        if phrase is None:
            return

        def flag_voicemail(s: CallSession) -> bool:
            return s.mark_voicemail() and s.claim_flag(FLAG_VOICEMAIL_INSTRUCTION)

        if not self.registry.upsert(session.call_id, flag_voicemail):
            return

        logger.info("[%s] Voicemail detected from transcript (%r)", session.call_id, phrase)
        await send_instruction(prompts.get_voicemail_instruction(session.lead_info))
        if self.coordinator is not None:
            await self.coordinator.notify_sales_voicemail(session.call_id)
