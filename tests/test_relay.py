import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from leadbridge import prompts
from leadbridge.elevenlabs import ElevenLabsClient
from leadbridge.intent_pipeline import IntentPipeline
from leadbridge.relay import ConversationRelay
from leadbridge.session import CallSession, FLAG_VOICEMAIL_INSTRUCTION
from leadbridge.states import RelayState, Role, Speaker, TransferState
from leadbridge.transfer import TransferCoordinator

from conftest import LEAD_SID

STREAM_SID = "MZ_stream_1"
AUDIO = "AAAAAA=="


class FakeTelephonyWS:
    """Twilio side: frames pushed by the test, frames sent by the relay collected."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    def push(self, event: dict | str):
        self.incoming.put_nowait(event if isinstance(event, str) else json.dumps(event))

    async def iter_text(self):
        while True:
            raw = await self.incoming.get()
            if raw is None:
                return
            yield raw

    async def send_text(self, text: str):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeAISocket:
    """ElevenLabs side, iterable like a websockets connection."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    def push(self, message: dict):
        self.incoming.put_nowait(json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def send(self, text: str):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


def start_event(params: dict | None = None) -> dict:
    return {
        "event": "start",
        "start": {
            "streamSid": STREAM_SID,
            "callSid": LEAD_SID,
            "customParameters": params if params is not None else {
                "leadId": "lead_42", "leadName": "Maria",
                "careReason": "mobility support", "careNeededFor": "her father",
            },
        },
    }


@pytest.fixture
def telephony_ws():
    return FakeTelephonyWS()


@pytest.fixture
def ai_ws():
    return FakeAISocket()


@pytest.fixture
def elevenlabs(ai_ws):
    client = AsyncMock(spec=ElevenLabsClient)
    client.get_signed_url.return_value = "wss://api.elevenlabs.io/signed"
    client.connect.return_value = ai_ws
    return client


@pytest.fixture
def pipeline():
    return AsyncMock(spec=IntentPipeline)


@pytest.fixture
def fake_coordinator():
    return MagicMock(spec=TransferCoordinator)


@pytest.fixture
def on_closed():
    return AsyncMock()


@pytest.fixture
def relay(telephony_ws, registry, elevenlabs, pipeline, fake_coordinator, on_closed):
    return ConversationRelay(
        telephony_ws,
        registry=registry,
        elevenlabs=elevenlabs,
        pipeline=pipeline,
        coordinator=fake_coordinator,
        on_closed=on_closed,
    )


@pytest_asyncio.fixture
async def running(relay, telephony_ws):
    task = asyncio.create_task(relay.run())
    yield task
    if not task.done():
        await telephony_ws.close()
    await asyncio.wait_for(task, timeout=1)


async def _open(relay, telephony_ws, params=None):
    telephony_ws.push({"event": "connected"})
    telephony_ws.push(start_event(params))
    await settle()
    assert relay.state == RelayState.OPEN


class TestStart:
    @pytest.mark.asyncio
    async def test_opens_and_sends_init(self, relay, running, telephony_ws, ai_ws, registry):
        await _open(relay, telephony_ws)

        init = ai_ws.sent[0]
        assert init["type"] == "conversation_initiation_client_data"
        assert "Is this Maria?" in init["conversation_config_override"]["agent"]["first_message"]

        session = registry.get(LEAD_SID)
        assert session.role == Role.LEAD
        assert session.lead_info.lead_name == "Maria"
        assert relay.stream_sid == STREAM_SID

    @pytest.mark.asyncio
    async def test_keeps_existing_lead_info(self, relay, running, telephony_ws, registry, lead_info):
        registry.add(CallSession(call_id=LEAD_SID, role=Role.LEAD, lead_info=lead_info))
        await _open(relay, telephony_ws, params={"leadName": "Someone Else"})
        assert registry.get(LEAD_SID).lead_info.lead_name == "Maria"

    @pytest.mark.asyncio
    async def test_transfer_failed_stream(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws, params={"leadName": "Maria", "transferFailed": "true"})
        agent = ai_ws.sent[0]["conversation_config_override"]["agent"]
        assert agent["first_message"] == prompts.TRANSFER_FAILED_FIRST_MESSAGE
        assert prompts.TRANSFER_FAILED_PROMPT in agent["prompt"]["prompt"]

    @pytest.mark.asyncio
    async def test_known_voicemail_goes_into_prompt(self, relay, running, telephony_ws, ai_ws, registry, lead_info):
        registry.add(CallSession(call_id=LEAD_SID, role=Role.LEAD, lead_info=lead_info, is_voicemail=True))
        await _open(relay, telephony_ws)
        prompt = ai_ws.sent[0]["conversation_config_override"]["agent"]["prompt"]["prompt"]
        assert "reached a voicemail" in prompt
        assert FLAG_VOICEMAIL_INSTRUCTION in registry.get(LEAD_SID).instruction_flags

    @pytest.mark.asyncio
    async def test_voicemail_detected_while_connecting(
        self, relay, running, telephony_ws, ai_ws, elevenlabs, registry, lead_info,
    ):
        registry.add(CallSession(call_id=LEAD_SID, role=Role.LEAD, lead_info=lead_info))

        async def amd_result_during_fetch():
            registry.upsert(LEAD_SID, lambda s: s.mark_voicemail())
            return "wss://api.elevenlabs.io/signed"

        elevenlabs.get_signed_url.side_effect = amd_result_during_fetch
        await _open(relay, telephony_ws)

        prompt = ai_ws.sent[0]["conversation_config_override"]["agent"]["prompt"]["prompt"]
        assert "reached a voicemail" in prompt
        assert FLAG_VOICEMAIL_INSTRUCTION in registry.get(LEAD_SID).instruction_flags

    @pytest.mark.asyncio
    async def test_unknown_voicemail_left_out_of_prompt(self, relay, running, telephony_ws, ai_ws, registry):
        await _open(relay, telephony_ws)
        prompt = ai_ws.sent[0]["conversation_config_override"]["agent"]["prompt"]["prompt"]
        assert "reached a voicemail" not in prompt
        assert FLAG_VOICEMAIL_INSTRUCTION not in registry.get(LEAD_SID).instruction_flags

    @pytest.mark.asyncio
    async def test_no_signed_url_closes(self, relay, running, telephony_ws, elevenlabs, on_closed):
        elevenlabs.get_signed_url.return_value = None
        telephony_ws.push(start_event())
        await asyncio.wait_for(running, timeout=1)
        assert relay.state == RelayState.CLOSED
        assert telephony_ws.closed is True
        elevenlabs.connect.assert_not_awaited()
        on_closed.assert_awaited_once_with(LEAD_SID)

    @pytest.mark.asyncio
    async def test_connect_failure_closes(self, relay, running, telephony_ws, elevenlabs):
        elevenlabs.connect.side_effect = OSError("refused")
        telephony_ws.push(start_event())
        await asyncio.wait_for(running, timeout=1)
        assert telephony_ws.closed is True


class TestMedia:
    @pytest.mark.asyncio
    async def test_audio_forwarded(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        telephony_ws.push({"event": "media", "media": {"payload": AUDIO}})
        await settle()
        assert {"user_audio_chunk": AUDIO} in ai_ws.sent

    @pytest.mark.asyncio
    async def test_bad_frames_dropped(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        telephony_ws.push({"event": "media", "media": {"payload": "not base64!"}})
        telephony_ws.push({"event": "media", "media": {}})
        telephony_ws.push("{not json")
        await settle()
        assert ai_ws.sent[1:] == []
        assert relay.state == RelayState.OPEN

    @pytest.mark.asyncio
    async def test_media_before_open_dropped(self, relay, running, telephony_ws, ai_ws):
        telephony_ws.push({"event": "media", "media": {"payload": AUDIO}})
        await settle()
        assert ai_ws.sent == []

    @pytest.mark.asyncio
    async def test_stops_after_transfer_complete(self, relay, running, telephony_ws, ai_ws, registry, on_closed):
        await _open(relay, telephony_ws)
        registry.upsert(LEAD_SID, lambda s: setattr(s, "transfer_state", TransferState.COMPLETE))

        telephony_ws.push({"event": "media", "media": {"payload": AUDIO}})
        telephony_ws.push({"event": "media", "media": {"payload": AUDIO}})
        await settle()

        assert ai_ws.closed is True
        assert {"user_audio_chunk": AUDIO} not in ai_ws.sent
        assert telephony_ws.closed is False
        on_closed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unavailable_notice_sent_once(self, relay, running, telephony_ws, ai_ws, registry):
        await _open(relay, telephony_ws)
        registry.upsert(LEAD_SID, lambda s: setattr(s, "sales_team_unavailable", True))

        for _ in range(3):
            telephony_ws.push({"event": "media", "media": {"payload": AUDIO}})
        await settle()

        notices = ai_ws.of_type("contextual_update")
        assert [n["text"] for n in notices] == [prompts.SALES_UNAVAILABLE_INSTRUCTION]
        assert ai_ws.sent.count({"user_audio_chunk": AUDIO}) == 3


class TestAgentMessages:
    @pytest.mark.asyncio
    async def test_audio_to_telephony(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "audio", "audio_event": {"audio_base_64": AUDIO}})
        ai_ws.push({"type": "audio", "audio": {"chunk": "BBBB"}})
        await settle()
        assert telephony_ws.sent == [
            {"event": "media", "streamSid": STREAM_SID, "media": {"payload": AUDIO}},
            {"event": "media", "streamSid": STREAM_SID, "media": {"payload": "BBBB"}},
        ]

    @pytest.mark.asyncio
    async def test_interruption_clears(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "interruption", "interruption_event": {"event_id": 3}})
        await settle()
        assert telephony_ws.sent == [{"event": "clear", "streamSid": STREAM_SID}]

    @pytest.mark.asyncio
    async def test_ping_pong(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "ping", "ping_event": {"event_id": 7, "ping_ms": 50}})
        await settle()
        assert ai_ws.of_type("pong") == [{"type": "pong", "event_id": 7}]

    @pytest.mark.asyncio
    async def test_conversation_id_captured_once(self, relay, running, telephony_ws, ai_ws, registry):
        await _open(relay, telephony_ws)
        for conv in ("conv_1", "conv_2"):
            ai_ws.push({
                "type": "conversation_initiation_metadata",
                "conversation_initiation_metadata_event": {"conversation_id": conv},
            })
        await settle()
        assert registry.get(LEAD_SID).conversation_id == "conv_1"

    @pytest.mark.asyncio
    async def test_user_transcript_goes_to_pipeline(self, relay, running, telephony_ws, ai_ws, registry, pipeline):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "user_transcript", "user_transcription_event": {"user_transcript": " Tell me more "}})
        await settle()

        entry = registry.get(LEAD_SID).transcripts[0]
        assert (entry.speaker, entry.text) == (Speaker.LEAD, "Tell me more")
        pipeline.handle_transcript.assert_awaited_once_with(
            LEAD_SID, Speaker.LEAD, "Tell me more", relay.send_instruction,
        )

    @pytest.mark.asyncio
    async def test_agent_response_recorded_only(self, relay, running, telephony_ws, ai_ws, registry, pipeline):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "agent_response", "agent_response_event": {"agent_response": "Hello there"}})
        ai_ws.push({"type": "transcript", "transcript_event": {"speaker": "agent", "text": "How are you?"}})
        await settle()

        texts = [(t.speaker, t.text) for t in registry.get(LEAD_SID).transcripts]
        assert texts == [(Speaker.AI, "Hello there"), (Speaker.AI, "How are you?")]
        pipeline.handle_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_transcript_dropped(self, relay, running, telephony_ws, ai_ws, registry, pipeline):
        await _open(relay, telephony_ws)
        ai_ws.push({"type": "user_transcript", "user_transcription_event": {"user_transcript": None}})
        ai_ws.push({"type": "user_transcript"})
        await settle()
        assert registry.get(LEAD_SID).transcripts == []
        pipeline.handle_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_instruction(self, relay, running, telephony_ws, ai_ws):
        await _open(relay, telephony_ws)
        assert await relay.send_instruction("Ask about timing") is True
        assert ai_ws.of_type("contextual_update") == [{"type": "contextual_update", "text": "Ask about timing"}]

    @pytest.mark.asyncio
    async def test_send_instruction_when_closed(self, relay):
        assert await relay.send_instruction("Ask about timing") is False


class TestClose:
    @pytest.mark.asyncio
    async def test_stop_closes_both_sides(self, relay, running, telephony_ws, ai_ws, on_closed, fake_coordinator):
        await _open(relay, telephony_ws)
        telephony_ws.push({"event": "stop", "stop": {"callSid": LEAD_SID}})
        await asyncio.wait_for(running, timeout=1)

        assert relay.state == RelayState.CLOSED
        assert ai_ws.closed is True
        assert telephony_ws.closed is True
        fake_coordinator.cancel.assert_called_once_with(LEAD_SID)
        on_closed.assert_awaited_once_with(LEAD_SID)

    @pytest.mark.asyncio
    async def test_ai_side_closing_closes_telephony(self, relay, running, telephony_ws, ai_ws, on_closed):
        await _open(relay, telephony_ws)
        await ai_ws.close()
        await asyncio.wait_for(running, timeout=1)

        assert telephony_ws.closed is True
        on_closed.assert_awaited_once_with(LEAD_SID)

    @pytest.mark.asyncio
    async def test_close_twice_notifies_once(self, relay, running, telephony_ws, on_closed):
        await _open(relay, telephony_ws)
        await relay.close("first")
        await relay.close("second")
        await asyncio.wait_for(running, timeout=1)
        on_closed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pending_handoff_defers_reporting(self, relay, running, telephony_ws, registry, on_closed, fake_coordinator):
        await _open(relay, telephony_ws)
        registry.upsert(LEAD_SID, lambda s: setattr(s, "transfer_state", TransferState.AWAITING_JOIN))

        telephony_ws.push({"event": "stop"})
        await asyncio.wait_for(running, timeout=1)

        on_closed.assert_not_awaited()
        fake_coordinator.cancel.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_before_start(self, relay, running, telephony_ws, on_closed):
        telephony_ws.push({"event": "stop"})
        await asyncio.wait_for(running, timeout=1)
        assert relay.state == RelayState.CLOSED
        on_closed.assert_not_awaited()
