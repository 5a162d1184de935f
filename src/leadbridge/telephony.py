import logging

from twilio.http.async_http_client import AsyncTwilioHttpClient
from twilio.rest import Client

logger = logging.getLogger(__name__)

CALL_STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioTelephony:
    """Call creation and live-call updates against the Twilio REST API.

    Errors are logged and reported through the return value; nothing here
    raises into call handling.
    """

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Client | None = None):
        self.from_number = from_number
        if client is not None:
            self._client = client
        else:
            self._client = Client(account_sid, auth_token, http_client=AsyncTwilioHttpClient())

    async def create_call(
        self,
        to: str,
        twiml_url: str,
        status_callback_url: str,
        amd_callback_url: str = "",
    ) -> str | None:
        """Place an outbound call and return its SID, or None on failure.

        When ``amd_callback_url`` is given, asynchronous answering machine
        detection is requested and its result is POSTed there.
        """
        kwargs = {
            "to": to,
            "from_": self.from_number,
            "url": twiml_url,
            "method": "POST",
            "status_callback": status_callback_url,
            "status_callback_event": CALL_STATUS_EVENTS,
            "status_callback_method": "POST",
        }
        if amd_callback_url:
            kwargs.update(
                machine_detection="DetectMessageEnd",
                async_amd="true",
                async_amd_status_callback=amd_callback_url,
                async_amd_status_callback_method="POST",
            )
        try:
            call = await self._client.calls.create_async(**kwargs)
            logger.info("Created call %s to %s", call.sid, to)
            return call.sid
        except Exception as e:
            logger.error("create_call to %s failed: %s", to, e)
            return None

    async def update_call(self, call_sid: str, twiml: str) -> bool:
        """Replace the TwiML a live call is executing."""
        try:
            await self._client.calls(call_sid).update_async(twiml=twiml)
            return True
        except Exception as e:
            logger.error("update_call %s failed: %s", call_sid, e)
            return False
