"""Startup configuration validation and settings.

Checks that all required environment variables are set before the server
accepts connections.  Called from server.py at import time so that a missing
credential causes a clear startup failure rather than a silent mid-call crash.
"""

import os
import sys
import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_AGENT_ID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
]

OPTIONAL_VARS = [
    "SALES_TEAM_PHONE_NUMBER",
    "PUBLIC_BASE_URL",
    "MAKE_WEBHOOK_URL",
    "MAKE_CALLBACK_WEBHOOK_URL",
    "MAKE_VOICEMAIL_WEBHOOK_URL",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class WebhookConfig:
    url: str = ""
    callback_url: str = ""
    voicemail_url: str = ""
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 10.0
    enabled: bool = True

    def url_for(self, is_voicemail: bool, callback_scheduled: bool) -> str:
        """Voicemail and scheduled-callback calls go to their own scenario if configured."""
        if is_voicemail and self.voicemail_url:
            return self.voicemail_url
        if callback_scheduled and self.callback_url:
            return self.callback_url
        return self.url

    @classmethod
    def from_env(cls) -> "WebhookConfig":
        url = os.getenv("MAKE_WEBHOOK_URL", "")
        return cls(
            url=url,
            callback_url=os.getenv("MAKE_CALLBACK_WEBHOOK_URL", "") or url,
            voicemail_url=os.getenv("MAKE_VOICEMAIL_WEBHOOK_URL", "") or url,
            retry_attempts=_env_int("WEBHOOK_RETRY_ATTEMPTS", 3),
            retry_delay_seconds=_env_float("WEBHOOK_RETRY_DELAY_S", 1.0),
            timeout_seconds=_env_float("WEBHOOK_TIMEOUT_S", 10.0),
            enabled=os.getenv("WEBHOOK_ENABLED", "true").lower() != "false",
        )


@dataclass
class Settings:
    elevenlabs_api_key: str = ""
    elevenlabs_agent_id: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    sales_team_phone_number: str = ""
    public_base_url: str = ""
    max_retries: int = 2
    retry_delay_seconds: float = 60.0
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    @property
    def urls(self) -> "CallbackUrls":
        return CallbackUrls(self.public_base_url)


def load_settings() -> Settings:
    return Settings(
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_agent_id=os.getenv("ELEVENLABS_AGENT_ID", ""),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        sales_team_phone_number=os.getenv("SALES_TEAM_PHONE_NUMBER", ""),
        public_base_url=os.getenv("PUBLIC_BASE_URL", ""),
        max_retries=_env_int("RETRY_MAX_ATTEMPTS", 2),
        retry_delay_seconds=_env_float("RETRY_DELAY_S", 60.0),
        webhook=WebhookConfig.from_env(),
    )


@dataclass
class CallbackUrls:
    """Public URLs Twilio is pointed at for TwiML, callbacks and the media stream."""

    base_url: str

    def _http(self, path: str, params: dict | None = None) -> str:
        url = f"{self.base_url.rstrip('/')}{path}"
        query = {k: v for k, v in (params or {}).items() if v}
        return f"{url}?{urlencode(query)}" if query else url

    def lead_twiml(self, params: dict | None = None) -> str:
        return self._http("/lead-twiml", params)

    def sales_twiml(self, params: dict | None = None) -> str:
        return self._http("/sales-twiml", params)

    @property
    def lead_status(self) -> str:
        return self._http("/lead-status")

    @property
    def sales_status(self) -> str:
        return self._http("/sales-status")

    @property
    def amd(self) -> str:
        return self._http("/amd-callback")

    @property
    def conference_status(self) -> str:
        return self._http("/conference-status")

    @property
    def media_stream(self) -> str:
        base = self.base_url.rstrip("/")
        for scheme, ws_scheme in (("https://", "wss://"), ("http://", "ws://")):
            if base.startswith(scheme):
                return ws_scheme + base[len(scheme):] + "/media-stream"
        return f"wss://{base}/media-stream"
