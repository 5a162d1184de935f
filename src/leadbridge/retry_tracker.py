"""Redial bookkeeping for leads that need another call.

A lead needs a retry when its call failed, was not answered, reached a
voicemail, or when the lead asked to be called back at a specific time.
Scheduling hands the retry to the automation webhook; if that is not
configured or fails, the tracker redials directly after the retry delay.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from leadbridge.timers import Scheduler

logger = logging.getLogger(__name__)

RETRY_STATUSES = {"failed", "busy", "no-answer", "canceled"}
MACHINE_ANSWERS = {
    "machine_start", "machine_end_beep",
    "machine_end_silence", "machine_end_other",
}


def retry_needed(status: str, answered_by: str = "") -> bool:
    return status in RETRY_STATUSES or answered_by in MACHINE_ANSWERS


def retry_reason(status: str, answered_by: str = "") -> str:
    if answered_by in MACHINE_ANSWERS:
        return "voicemail"
    if status in RETRY_STATUSES:
        return status
    return "other"


@dataclass
class RetryRecord:
    lead_id: str
    current_call_sid: str
    phone_number: str = ""
    context: dict = field(default_factory=dict)
    retry_count: int = 0
    retry_needed: bool = False
    retry_reason: str = ""
    retry_scheduled: bool = False
    last_call_time: float = field(default_factory=time.time)
    call_history: list = field(default_factory=list)


class RetryTracker:
    def __init__(
        self,
        *,
        webhook_url: str = "",
        max_retries: int = 2,
        retry_delay_seconds: float = 60.0,
        redial: Callable[[RetryRecord], Awaitable[str | None]] | None = None,
        scheduler: Scheduler | None = None,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.timeout = timeout
        self._redial = redial
        self._scheduler = scheduler or Scheduler()
        self._records: dict[str, RetryRecord] = {}
        if not webhook_url:
            logger.warning("No retry webhook URL configured, retries will redial directly")

    def track_call(self, lead_id: str, call_sid: str, context: dict | None = None) -> RetryRecord | None:
        if not lead_id or not call_sid:
            logger.error("Cannot track call: lead_id and call_sid are required")
            return None
        context = dict(context or {})
        previous = self._records.get(lead_id)
        record = RetryRecord(
            lead_id=lead_id,
            current_call_sid=call_sid,
            phone_number=context.get("phoneNumber", ""),
            context=context,
            retry_count=previous.retry_count if previous else 0,
        )
        if context.get("callbackTimeInfo"):
            record.retry_needed = True
            record.retry_reason = "callback_requested"
        self._records[lead_id] = record
        logger.info("Tracking call %s for lead %s", call_sid, lead_id)
        return record

    def update_call_status(self, lead_id: str, call_sid: str, status: str, answered_by: str = "") -> RetryRecord | None:
        record = self._records.get(lead_id)
        if record is None:
            logger.debug("No retry state for lead %s", lead_id)
            return None
        if record.current_call_sid != call_sid:
            logger.warning("Call %s is not the current call for lead %s", call_sid, lead_id)
            return record

        record.call_history.append({
            "callSid": call_sid,
            "status": status,
            "answeredBy": answered_by,
            "timestamp": time.time(),
        })
        record.last_call_time = time.time()

        if status == "completed" and record.retry_reason != "callback_requested":
            record.retry_needed = False
        elif retry_needed(status, answered_by):
            record.retry_needed = True
            record.retry_reason = retry_reason(status, answered_by)
        return record

    def get_retry_info(self, lead_id: str) -> dict | None:
        record = self._records.get(lead_id)
        if record is None:
            return None
        return {
            "leadId": record.lead_id,
            "retryCount": record.retry_count,
            "maxRetries": self.max_retries,
            "retryNeeded": record.retry_needed,
            "retryReason": record.retry_reason,
            "retryScheduled": record.retry_scheduled,
            "lastCallTime": record.last_call_time,
            "callHistory": list(record.call_history),
        }

    def clear(self, lead_id: str) -> None:
        self._records.pop(lead_id, None)

    async def schedule_retry(self, lead_id: str) -> dict:
        """Hand the lead's next call to the webhook, or redial directly."""
        record = self._records.get(lead_id)
        if record is None:
            return {"success": False, "error": "No state for lead"}
        if record.retry_scheduled:
            return {"success": False, "error": "Retry already scheduled"}
        if not record.retry_needed:
            return {"success": False, "error": "No retry needed"}
        if record.retry_count >= self.max_retries:
            logger.info("Maximum retries (%d) reached for lead %s", self.max_retries, lead_id)
            return {"success": False, "error": "Maximum retries reached"}

        record.retry_count += 1
        record.retry_scheduled = True
        logger.info("Scheduling retry for lead %s (attempt %d)", lead_id, record.retry_count)

        if self.webhook_url:
            payload = {
                "type": "retry_call",
                "leadId": lead_id,
                "phoneNumber": record.phone_number,
                "retryCount": record.retry_count,
                "retryReason": record.retry_reason,
                "retryDelayMs": int(self.retry_delay_seconds * 1000),
                "callbackTimeInfo": record.context.get("callbackTimeInfo"),
                "leadInfo": record.context,
            }
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.webhook_url, json=payload)
                    resp.raise_for_status()
                return {
                    "success": True,
                    "method": "webhook",
                    "retryCount": record.retry_count,
                    "retryAt": time.time() + self.retry_delay_seconds,
                }
            except Exception as e:
                logger.warning("Retry webhook for lead %s failed, redialing directly: %s", lead_id, e)

        return self._schedule_redial(record)

    def _schedule_redial(self, record: RetryRecord) -> dict:
        if self._redial is None:
            logger.error("No redial available for lead %s", record.lead_id)
            return {"success": False, "error": "No redial available"}
        if not record.phone_number:
            logger.error("No phone number for lead %s", record.lead_id)
            return {"success": False, "error": "No phone number"}

        async def _redial():
            call_sid = await self._redial(record)
            if call_sid:
                record.current_call_sid = call_sid
                record.retry_scheduled = False
                record.retry_needed = False
                logger.info("Redialed lead %s as %s", record.lead_id, call_sid)

        self._scheduler.schedule(self.retry_delay_seconds, _redial)
        return {
            "success": True,
            "method": "direct",
            "retryCount": record.retry_count,
            "retryAt": time.time() + self.retry_delay_seconds,
        }
