import asyncio
import logging
from datetime import datetime, timezone

import httpx

from leadbridge.config import WebhookConfig
from leadbridge.elevenlabs import ElevenLabsClient
from leadbridge.registry import SessionRegistry
from leadbridge.retry_tracker import RetryTracker
from leadbridge.session import CallSession, FLAG_RETRY_ATTEMPTED, FLAG_WEBHOOK_SCHEDULED
from leadbridge.states import Role, TransferState
from leadbridge.transcript import from_remote, to_json_array, to_plain_text

logger = logging.getLogger(__name__)

SOURCE_MODULE = "leadbridge"


def is_eligible(session: CallSession) -> bool:
    """Only voicemail calls and calls the sales team could not take get reported."""
    return session.is_voicemail is True or session.sales_team_unavailable


def build_payload(
    session: CallSession,
    remote_transcript: list[dict] | None = None,
    summary: dict | None = None,
    retry_result: dict | None = None,
) -> dict:
    """Assemble the automation webhook body for a finished lead call."""
    if session.transcripts:
        transcript = {
            "conversation_id": session.conversation_id,
            "source": "local",
            "text": to_plain_text(session.transcripts),
            "transcripts": to_json_array(session.transcripts),
        }
    elif remote_transcript:
        transcript = {
            "conversation_id": session.conversation_id,
            "source": "remote",
            "transcripts": remote_transcript,
        }
    else:
        transcript = None

    payload = {
        "call_sid": session.call_id,
        "conversation_id": session.conversation_id or None,
        "is_voicemail": session.is_voicemail is True,
        "sales_team_unavailable": session.sales_team_unavailable,
        "lead_info": session.lead_info.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source_module": SOURCE_MODULE,
        "call_metadata": {
            "transferInitiated": session.transfer_state != TransferState.NOT_STARTED,
            "transferComplete": session.transfer_state == TransferState.COMPLETE,
            "transferState": session.transfer_state.value,
            "callbackScheduled": session.callback_scheduled,
            "needsFollowUp": session.needs_follow_up,
            "answeredBy": session.answered_by or "unknown",
            "status": session.status.value,
        },
        "transcript": transcript,
        "summary": summary,
        "callbackPreferences": [dict(p) for p in session.callback_preferences],
    }

    if isinstance(summary, dict):
        if summary.get("success_criteria"):
            payload["success_criteria"] = summary["success_criteria"]
        if summary.get("data_collection"):
            payload["data_collection"] = summary["data_collection"]

    if retry_result is not None:
        payload["retry"] = retry_result

    return payload


class WebhookDispatcher:
    """Reports finished lead calls to the automation webhook.

    Each lead call is dispatched at most once.  Remote transcript and
    summary fetches are best-effort, and delivery failures are logged and
    returned, never raised.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        config: WebhookConfig,
        elevenlabs: ElevenLabsClient | None = None,
        retry_tracker: RetryTracker | None = None,
    ):
        self.registry = registry
        self.config = config
        self.elevenlabs = elevenlabs
        self.retry_tracker = retry_tracker

    def _lead_id_for(self, call_id: str) -> str:
        session = self.registry.get(call_id)
        if session is not None and session.role == Role.SALES and session.paired_call_id:
            return session.paired_call_id
        return call_id

    async def dispatch(self, call_id: str) -> dict:
        lead_id = self._lead_id_for(call_id)
        claimed = self.registry.upsert(lead_id, lambda s: s.claim_flag(FLAG_WEBHOOK_SCHEDULED))
        if claimed is None:
            logger.debug("Webhook dispatch for untracked call %s ignored", lead_id)
            return {"success": False, "reason": "unknown_call"}
        if not claimed:
            return {"success": False, "reason": "already_dispatched"}

        try:
            return await self._dispatch(lead_id)
        finally:
            self.registry.upsert(lead_id, _mark_dispatched)

    async def _dispatch(self, call_id: str) -> dict:
        session = self.registry.get(call_id)
        if session is None:
            return {"success": False, "reason": "unknown_call"}

        if not self.config.enabled:
            logger.info("Webhooks disabled, not reporting call %s", call_id)
            return {"success": False, "reason": "webhooks_disabled"}

        if not is_eligible(session):
            logger.info("Call %s not reported: neither voicemail nor sales unavailable", call_id)
            return {"success": False, "reason": "criteria_not_met"}

        url = self.config.url_for(session.is_voicemail is True, session.callback_scheduled)
        if not url:
            logger.warning("Automation webhook not configured, skipping report for %s", call_id)
            return {"success": False, "reason": "not_configured"}

        remote_transcript = None
        summary = None
        if self.elevenlabs is not None and session.conversation_id:
            if not session.transcripts:
                remote_transcript = from_remote(_transcript_entries(
                    await self.elevenlabs.get_transcript(session.conversation_id)
                ))
            summary = await self.elevenlabs.get_summary(session.conversation_id)

        retry_result = await self._attempt_retry(session)

        # Re-read so preferences recorded while fetching are included
        session = self.registry.get(call_id) or session
        payload = build_payload(session, remote_transcript, summary, retry_result)
        return await self._post_with_retry(url, payload, f"Webhook for {call_id}")

    async def _attempt_retry(self, session: CallSession) -> dict | None:
        if self.retry_tracker is None or not session.callback_preferences:
            return None
        if not self.registry.upsert(session.call_id, lambda s: s.claim_flag(FLAG_RETRY_ATTEMPTED)):
            return None
        try:
            return await self.retry_tracker.schedule_retry(session.lead_key)
        except Exception as e:
            logger.error("Retry scheduling for %s failed: %s", session.call_id, e)
            return {"success": False, "error": str(e)}

    async def _post_with_retry(self, url: str, payload: dict, label: str) -> dict:
        """POST with linear backoff between attempts."""
        attempts = max(1, self.config.retry_attempts)
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    resp = await client.post(url, json=payload)
                    resp.raise_for_status()
                logger.info("%s delivered (attempt %d), status %d", label, attempt, resp.status_code)
                return {"success": True, "status": resp.status_code, "attempts": attempt}
            except Exception as e:
                last_error = str(e)
                if attempt < attempts:
                    delay = self.config.retry_delay_seconds * attempt
                    logger.warning("%s failed (attempt %d), retrying in %.1fs: %s", label, attempt, delay, e)
                    await asyncio.sleep(delay)
                else:
                    logger.error("%s failed after %d attempts: %s", label, attempts, e)
        return {"success": False, "error": last_error, "attempts": attempts}


def _mark_dispatched(session: CallSession) -> None:
    session.webhook_dispatched = True


def _transcript_entries(data) -> list | None:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("transcript") or data.get("transcripts")
    return None
