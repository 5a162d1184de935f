import asyncio
import logging

import httpx
import websockets

from leadbridge.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.elevenlabs.io"


class ElevenLabsClient:
    """REST and websocket access to an ElevenLabs conversational agent.

    Signed-URL retrieval is needed to start every call, so it is never
    skipped.  Post-call transcript and summary fetches are wrapped with a
    circuit breaker: after 3 consecutive failures they are skipped for 60s
    and return None, so webhook dispatch is not held up by an outage.
    """

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.agent_id = agent_id
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="ElevenLabs API",
        )
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=API_BASE_URL,
                headers={"xi-api-key": api_key},
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def get_signed_url(self) -> str | None:
        try:
            resp = await self._client.get(
                "/v1/convai/conversation/get_signed_url",
                params={"agent_id": self.agent_id},
            )
            resp.raise_for_status()
            signed_url = resp.json().get("signed_url")
            if not signed_url:
                logger.error("Signed URL response had no signed_url field")
                return None
            return signed_url
        except Exception as e:
            logger.error("get_signed_url failed: %s", e)
            return None

    async def connect(self, signed_url: str, open_timeout: float = 10.0):
        """Open the conversation websocket. Raises on failure."""
        return await asyncio.wait_for(
            websockets.connect(
                signed_url,
                max_size=16 * 1024 * 1024,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=5,
            ),
            timeout=open_timeout,
        )

    async def _get_json(self, path: str, label: str):
        if not self._circuit.should_try():
            logger.warning("ElevenLabs circuit breaker open, skipping %s", label)
            return None
        try:
            resp = await self._client.get(path)
            resp.raise_for_status()
            self._circuit.record_success()
            return resp.json()
        except Exception as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            return None

    async def get_transcript(self, conversation_id: str):
        if not conversation_id:
            return None
        return await self._get_json(
            f"/v1/convai/conversation/{conversation_id}/transcript",
            f"Transcript fetch for {conversation_id}",
        )

    async def get_summary(self, conversation_id: str):
        if not conversation_id:
            return None
        return await self._get_json(
            f"/v1/convai/conversation/{conversation_id}/summary",
            f"Summary fetch for {conversation_id}",
        )
