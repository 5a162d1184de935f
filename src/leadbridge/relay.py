import asyncio
import base64
import binascii
import json
import logging
from typing import Awaitable, Callable

import websockets

from leadbridge import prompts
from leadbridge.elevenlabs import ElevenLabsClient
from leadbridge.intent_pipeline import IntentPipeline
from leadbridge.registry import SessionRegistry
from leadbridge.session import (
    CallSession,
    FLAG_UNAVAILABLE_NOTICE,
    FLAG_VOICEMAIL_INSTRUCTION,
    LeadInfo,
)
from leadbridge.states import RelayState, Role, Speaker, TransferState
from leadbridge.transfer import TransferCoordinator

logger = logging.getLogger(__name__)


class ConversationRelay:
    """Bridges one Twilio media stream to one ElevenLabs conversation.

    ``telephony_ws`` needs ``iter_text``/``send_text``/``close`` (a FastAPI
    WebSocket).  The AI socket comes from ``elevenlabs.connect`` and needs
    ``send``/``close`` and async iteration (a websockets connection).

    Either side closing closes the other and hands the call to
    ``on_closed`` exactly once.
    """

    def __init__(
        self,
        telephony_ws,
        *,
        registry: SessionRegistry,
        elevenlabs: ElevenLabsClient,
        pipeline: IntentPipeline,
        coordinator: TransferCoordinator | None = None,
        on_closed: Callable[[str], Awaitable] | None = None,
    ):
        self.telephony_ws = telephony_ws
        self.registry = registry
        self.elevenlabs = elevenlabs
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.on_closed = on_closed

        self.state = RelayState.IDLE
        self.stream_sid = ""
        self.call_id = ""
        self.custom_parameters: dict = {}
        self.transfer_failed = False
        self.ai_ws = None
        self._relaying = True
        self._start_task: asyncio.Task | None = None
        self._ai_task: asyncio.Task | None = None
        self._closed_notified = False

    @property
    def is_open(self) -> bool:
        return self.state == RelayState.OPEN and self.ai_ws is not None

    async def run(self) -> None:
        """Consume telephony events until the stream ends."""
        try:
            async for raw in self.telephony_ws.iter_text():
                await self._handle_telephony(raw)
                if self.state in (RelayState.CLOSING, RelayState.CLOSED):
                    break
        except Exception as e:
            logger.info("[%s] Telephony socket ended: %s", self.call_id or "?", e)
        finally:
            await self.close("telephony stream ended")

    # --- telephony side ---

    async def _handle_telephony(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[%s] Dropping unparseable telephony frame", self.call_id or "?")
            return
        if not isinstance(msg, dict):
            return

        event = msg.get("event")
        try:
            if event == "start":
                self._start_task = asyncio.create_task(self._on_start(msg.get("start") or {}))
            elif event == "media":
                await self._on_media(msg.get("media") or {})
            elif event == "stop":
                logger.info("[%s] Stream stopped", self.call_id)
                await self.close("stop")
            elif event in ("connected", "mark", "dtmf"):
                pass
            else:
                logger.debug("[%s] Unhandled telephony event %r", self.call_id, event)
        except Exception as e:
            logger.error("[%s] Error handling telephony %s event: %s", self.call_id, event, e)

    async def _on_start(self, start: dict) -> None:
        if self.state != RelayState.IDLE:
            return
        self.state = RelayState.CONNECTING
        self.stream_sid = start.get("streamSid", "")
        self.call_id = start.get("callSid", "")
        self.custom_parameters = start.get("customParameters") or {}
        self.transfer_failed = str(self.custom_parameters.get("transferFailed", "")).lower() == "true"
        lead_info = LeadInfo.from_params(self.custom_parameters)
        logger.info("[%s] Stream %s started", self.call_id, self.stream_sid)

        def attach(s: CallSession) -> None:
            if not s.lead_info.is_known and lead_info.is_known:
                lead_id = s.lead_info.lead_id or lead_info.lead_id
                phone = s.lead_info.phone_number or lead_info.phone_number
                s.lead_info = LeadInfo(lead_id, phone, lead_info.lead_name,
                                       lead_info.care_reason, lead_info.care_needed_for)

        self.registry.upsert(
            self.call_id, attach,
            create=lambda: CallSession(call_id=self.call_id, role=Role.LEAD, lead_info=lead_info),
        )

        signed_url = await self.elevenlabs.get_signed_url()
        if not signed_url:
            logger.error("[%s] No signed URL, closing stream", self.call_id)
            await self.close("signed url unavailable")
            return

        try:
            ai_ws = await self.elevenlabs.connect(signed_url)
        except Exception as e:
            logger.error("[%s] Could not connect to ElevenLabs: %s", self.call_id, e)
            await self.close("ai connect failed")
            return

        if self.state != RelayState.CONNECTING:
            # stream ended while we were connecting
            await _close_quietly(ai_ws)
            return

        self.ai_ws = ai_ws
        self.state = RelayState.OPEN

        # read after OPEN so an AMD result from the connect window lands in the prompt
        def check_voicemail(s: CallSession) -> bool:
            if s.is_voicemail is not True:
                return False
            s.claim_flag(FLAG_VOICEMAIL_INSTRUCTION)
            return True

        is_voicemail = self.registry.upsert(self.call_id, check_voicemail)
        session = self.registry.get(self.call_id)
        init = prompts.build_init_message(
            session.lead_info if session else lead_info,
            is_voicemail=bool(is_voicemail),
            transfer_failed=self.transfer_failed,
        )
        await self._send_ai(init)
        self._ai_task = asyncio.create_task(self._ai_loop())
        logger.info("[%s] Connected to ElevenLabs", self.call_id)

    async def _on_media(self, media: dict) -> None:
        session = self.registry.get(self.call_id)

        if session is not None and session.transfer_state == TransferState.COMPLETE:
            if self._relaying:
                logger.info("[%s] Transfer complete, AI leg stops listening", self.call_id)
                self._relaying = False
                await self._close_ai()
            return

        if session is not None and session.sales_team_unavailable and self.is_open:
            if self.registry.upsert(self.call_id, lambda s: s.claim_flag(FLAG_UNAVAILABLE_NOTICE)):
                await self.send_instruction(prompts.SALES_UNAVAILABLE_INSTRUCTION)

        if not (self._relaying and self.is_open):
            return
        payload = media.get("payload")
        if not payload:
            return
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("[%s] Dropping media frame with bad payload", self.call_id)
            return
        await self._send_ai({"user_audio_chunk": payload})

    async def _send_telephony(self, message: dict) -> None:
        try:
            await self.telephony_ws.send_text(json.dumps(message))
        except Exception as e:
            logger.warning("[%s] Telephony send failed: %s", self.call_id, e)

    # --- AI side ---

    async def _send_ai(self, message: dict) -> bool:
        if self.ai_ws is None:
            return False
        try:
            await self.ai_ws.send(json.dumps(message))
            return True
        except Exception as e:
            logger.warning("[%s] ElevenLabs send failed: %s", self.call_id, e)
            return False

    async def send_instruction(self, text: str) -> bool:
        """Push mid-conversation guidance to the agent."""
        if not self.is_open:
            logger.debug("[%s] Relay not open, instruction dropped", self.call_id)
            return False
        logger.info("[%s] Sending instruction: %s", self.call_id, text[:80])
        return await self._send_ai({"type": "contextual_update", "text": text})

    async def _ai_loop(self) -> None:
        try:
            async for raw in self.ai_ws:
                try:
                    await self._handle_ai(raw)
                except Exception as e:
                    logger.error("[%s] Error handling ElevenLabs message: %s", self.call_id, e)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("[%s] ElevenLabs socket closed: %s", self.call_id, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[%s] ElevenLabs receive loop error: %s", self.call_id, e)
        # after a completed handoff the AI side is closed on purpose
        if self._relaying:
            await self.close("ai stream ended")

    async def _handle_ai(self, raw) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[%s] Dropping unparseable ElevenLabs message", self.call_id)
            return
        if not isinstance(data, dict):
            return

        msg_type = data.get("type", "")
        if msg_type == "audio":
            chunk = (data.get("audio") or {}).get("chunk") or (data.get("audio_event") or {}).get("audio_base_64")
            if chunk and self.stream_sid:
                await self._send_telephony({
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {"payload": chunk},
                })
        elif msg_type == "interruption":
            if self.stream_sid:
                await self._send_telephony({"event": "clear", "streamSid": self.stream_sid})
        elif msg_type == "ping":
            event_id = (data.get("ping_event") or {}).get("event_id")
            await self._send_ai({"type": "pong", "event_id": event_id})
        elif msg_type == "conversation_initiation_metadata":
            meta = data.get("conversation_initiation_metadata_event") or {}
            self._capture_conversation_id(meta.get("conversation_id"))
        elif msg_type == "user_transcript":
            event = data.get("user_transcription_event") or {}
            await self._on_transcript(Speaker.LEAD, event.get("user_transcript"))
        elif msg_type == "agent_response":
            event = data.get("agent_response_event") or {}
            await self._on_transcript(Speaker.AI, event.get("agent_response"))
        elif msg_type == "transcript":
            event = data.get("transcript_event") or {}
            speaker = Speaker.LEAD if event.get("speaker") == "user" else Speaker.AI
            await self._on_transcript(speaker, event.get("text"))
        else:
            logger.debug("[%s] ElevenLabs %s", self.call_id, msg_type or "message")

    def _capture_conversation_id(self, conversation_id: str | None) -> None:
        if not conversation_id:
            return

        def capture(s: CallSession) -> bool:
            if s.conversation_id:
                return False
            s.conversation_id = conversation_id
            return True

        if self.registry.upsert(self.call_id, capture):
            logger.info("[%s] Conversation %s", self.call_id, conversation_id)

    async def _on_transcript(self, speaker: Speaker, text) -> None:
        if not isinstance(text, str) or not text.strip():
            logger.warning("[%s] Dropping malformed %s transcript", self.call_id, speaker.value)
            return
        text = text.strip()
        self.registry.upsert(self.call_id, lambda s: s.add_transcript(speaker, text))
        if speaker == Speaker.LEAD:
            await self.pipeline.handle_transcript(self.call_id, speaker, text, self.send_instruction)

    # --- shutdown ---

    async def _close_ai(self) -> None:
        ai_ws, self.ai_ws = self.ai_ws, None
        if ai_ws is not None:
            await _close_quietly(ai_ws)

    async def close(self, reason: str = "") -> None:
        if self.state in (RelayState.CLOSING, RelayState.CLOSED):
            return
        self.state = RelayState.CLOSING
        logger.info("[%s] Closing relay: %s", self.call_id or "?", reason)

        current = asyncio.current_task()
        for task in (self._start_task, self._ai_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        await self._close_ai()
        await _close_quietly(self.telephony_ws)
        self.state = RelayState.CLOSED
        await self._notify_closed()

    async def _notify_closed(self) -> None:
        if self._closed_notified or not self.call_id:
            return
        self._closed_notified = True

        session = self.registry.get(self.call_id)
        if session is not None and session.transfer_state.is_pending:
            # the handoff redirects the call, which ends this stream
            logger.info("[%s] Stream ended for handoff, reporting deferred", self.call_id)
            return
        if self.coordinator is not None:
            self.coordinator.cancel(self.call_id)
        if self.on_closed is not None:
            try:
                await self.on_closed(self.call_id)
            except Exception as e:
                logger.error("[%s] Post-call handling failed: %s", self.call_id, e)


async def _close_quietly(ws) -> None:
    try:
        await ws.close()
    except Exception as e:
        logger.debug("Socket close raised: %s", e)
