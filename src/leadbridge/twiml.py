"""TwiML documents sent to Twilio when creating or redirecting a call leg."""

from xml.sax.saxutils import escape as _xml_escape

_ATTR_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape(text: str | None) -> str:
    if not text:
        return ""
    return _xml_escape(str(text), _ATTR_ENTITIES)


def stream(ws_url: str, parameters: dict | None = None) -> str:
    """Connect the leg's audio to our media-stream websocket."""
    params = "".join(
        f'<Parameter name="{escape(name)}" value="{escape(value)}" />'
        for name, value in (parameters or {}).items()
        if value not in (None, "")
    )
    return (
        '<Response>'
        '<Connect>'
        f'<Stream url="{escape(ws_url)}">{params}</Stream>'
        '</Connect>'
        '</Response>'
    )


def say_and_hold(message: str, pause_seconds: int = 60) -> str:
    return (
        '<Response>'
        f'<Say>{escape(message)}</Say>'
        f'<Pause length="{int(pause_seconds)}"/>'
        '</Response>'
    )


def say_and_hangup(message: str) -> str:
    return (
        '<Response>'
        f'<Say>{escape(message)}</Say>'
        '<Hangup/>'
        '</Response>'
    )


def conference(room_name: str, status_callback_url: str, announce: str = "") -> str:
    """Dial the leg into a named conference with join/leave callbacks."""
    say = f'<Say>{escape(announce)}</Say>' if announce else ""
    return (
        '<Response>'
        f'{say}'
        '<Dial>'
        '<Conference'
        ' startConferenceOnEnter="true"'
        ' endConferenceOnExit="true"'
        ' beep="false"'
        f' statusCallback="{escape(status_callback_url)}"'
        ' statusCallbackEvent="start end join leave"'
        ' statusCallbackMethod="POST">'
        f'{escape(room_name)}'
        '</Conference>'
        '</Dial>'
        '</Response>'
    )
