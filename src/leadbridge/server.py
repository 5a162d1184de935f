import logging
import os

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from leadbridge import prompts, twiml
from leadbridge.config import load_settings, validate_config
from leadbridge.elevenlabs import ElevenLabsClient
from leadbridge.orchestrator import CallOrchestrator
from leadbridge.session import LeadInfo
from leadbridge.telephony import TwilioTelephony

load_dotenv()
validate_config()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Lead Bridge")

_orchestrator: CallOrchestrator | None = None


def get_orchestrator() -> CallOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        settings = load_settings()
        _orchestrator = CallOrchestrator(
            settings=settings,
            telephony=TwilioTelephony(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_phone_number,
            ),
            elevenlabs=ElevenLabsClient(settings.elevenlabs_api_key, settings.elevenlabs_agent_id),
        )
    return _orchestrator


@app.on_event("shutdown")
async def shutdown():
    if _orchestrator is not None:
        await _orchestrator.close()


async def _form(request: Request) -> dict:
    try:
        return dict(await request.form())
    except Exception as e:
        logger.warning("Unreadable callback body: %s", e)
        return {}


def _xml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


@app.get("/health")
async def health():
    return PlainTextResponse("ok")


@app.post("/outbound-call")
async def outbound_call(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict) or not body.get("number"):
        return JSONResponse({"success": False, "error": "Phone number is required"}, status_code=400)

    lead_info = LeadInfo.from_params(body)
    result = await orchestrator.start_outbound_call(body["number"], lead_info, body.get("salesNumber", ""))
    return JSONResponse(result, status_code=200 if result.get("success") else 502)


@app.api_route("/lead-twiml", methods=["GET", "POST"])
async def lead_twiml(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    """Connect the lead's audio to the media stream, passing lead details along."""
    params = dict(request.query_params)
    return _xml(twiml.stream(orchestrator.urls.media_stream, params))


@app.api_route("/sales-twiml", methods=["GET", "POST"])
async def sales_twiml(request: Request):
    """Brief the sales rep and keep them on hold until the lead is handed over."""
    lead_info = LeadInfo.from_params(dict(request.query_params))
    message = f"{prompts.sales_notification(lead_info)} {prompts.SALES_HOLD_MESSAGE}"
    return _xml(twiml.say_and_hold(message, pause_seconds=120))


@app.post("/lead-status")
async def lead_status(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    form = await _form(request)
    call_sid = form.get("CallSid", "")
    if call_sid:
        await orchestrator.handle_lead_status(call_sid, form.get("CallStatus", ""), form.get("AnsweredBy", ""))
    return PlainTextResponse("ok")


@app.post("/sales-status")
async def sales_status(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    form = await _form(request)
    call_sid = form.get("CallSid", "")
    if call_sid:
        await orchestrator.handle_sales_status(call_sid, form.get("CallStatus", ""))
    return PlainTextResponse("ok")


@app.post("/amd-callback")
async def amd_callback(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    form = await _form(request)
    call_sid = form.get("CallSid", "")
    if call_sid:
        await orchestrator.handle_amd(call_sid, form.get("AnsweredBy", ""))
    return PlainTextResponse("ok")


@app.post("/conference-status")
async def conference_status(request: Request, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    form = await _form(request)
    await orchestrator.handle_conference_event(
        form.get("StatusCallbackEvent", ""),
        form.get("CallSid", ""),
        room_name=form.get("FriendlyName", ""),
        conference_sid=form.get("ConferenceSid", ""),
    )
    return PlainTextResponse("ok")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket, orchestrator: CallOrchestrator = Depends(get_orchestrator)):
    await websocket.accept()
    await orchestrator.run_media_stream(websocket)


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("leadbridge.server:app", host="0.0.0.0", port=port)
