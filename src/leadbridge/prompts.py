import re

from leadbridge.session import LeadInfo

PERSONA = """You are Heather, a friendly and warm care coordinator for First Light Home Care, a home healthcare company. You're calling to follow up on care service inquiries with a calm and reassuring voice, using natural pauses to make the conversation feel human. Your main goals are:
1. Verify the details submitted in the care request with the point of contact for the person who needs care.
2. Show empathy for the care situation.
3. Confirm interest in receiving care services.
4. Set expectations for next steps, which are to discuss with a care specialist.

Use casual, friendly language and avoid jargon. Listen carefully and address concerns with empathy, focusing on building rapport. If asked about pricing, explain that a care specialist will discuss detailed pricing options soon. If the person is not interested, thank them for their time and end the call politely.

If our care team is not available to join the call, kindly explain that our care specialists are currently unavailable but will contact them soon. Verify their contact information and ask if there's a preferred time for follow-up. Confirm all their information is correct before ending the call.

IMPORTANT: When the call connects, wait for the person to say hello before you start speaking. If they don't say anything within 2-3 seconds, begin with a warm greeting."""

VOICEMAIL_TEMPLATE = """IMPORTANT: This call has reached a voicemail. Wait for the beep, then leave a personalized message like: "Hello {lead_name}{lead_name_comma} I'm calling from First Light Home Care regarding the care services inquiry {for_care_needed_for} {who_care_reason}. Please call us back at your earliest convenience to discuss how we can help. Thank you."

Make the message sound natural and conversational, not like a template. Be concise, voicemails often have time limits."""

GENERIC_VOICEMAIL = """IMPORTANT: This call has reached a voicemail. Wait for the beep, then leave a message: "Hello, I'm calling from First Light Home Care regarding the care services inquiry. Please call us back at your earliest convenience to discuss how we can help. Thank you."

Keep the message concise but warm and professional."""

FIRST_MESSAGE_TEMPLATE = (
    "Hello, this is Heather from First Light Home Care. I'm calling about the "
    "care services inquiry for {care_needed_for}. Is this {lead_name}?"
)

GENERIC_FIRST_MESSAGE = (
    "Hello, this is Heather from First Light Home Care. I'm calling about the "
    "care services inquiry. Am I speaking with the right person?"
)

TRANSFER_FAILED_FIRST_MESSAGE = (
    "I'm so sorry about the wait. It looks like our care specialist couldn't "
    "join the line just now. I'm still here to help, and I'll make sure someone "
    "from our team follows up with you."
)

TRANSFER_FAILED_PROMPT = (
    "IMPORTANT: We just tried to connect this person with a care specialist but "
    "the specialist could not join. Apologize briefly for the delay, continue "
    "helping them yourself, and ask when would be a good time for a specialist "
    "to call them back."
)

SALES_UNAVAILABLE_INSTRUCTION = (
    "Our care specialists are not available to join this call right now. "
    "Let the person know a specialist will contact them soon, verify their "
    "contact information, and ask when would be a good time for a callback."
)

TIME_PROMPT_INSTRUCTION = (
    "The person wants a callback. Please ask them politely when would be a "
    "good time for our team to call them back."
)

INTERRUPTION_INSTRUCTION = (
    "The person needs a moment. Tell them to take their time and that you "
    "will wait, then stay quiet until they speak again."
)

INTERRUPTION_RESOLVED_INSTRUCTION = (
    "The person is back. Thank them for coming back and ask whether to "
    "continue where you left off."
)

CALLBACK_CONFIRMATION_TEMPLATE = (
    "The customer has requested a callback at {when}. Acknowledge this and "
    "confirm the callback time."
)

SALES_NOTIFICATION_TEMPLATE = (
    "You're being connected to an AI-assisted call with {lead_name}. The AI will "
    "speak with the lead about {care_reason} {care_needed_for}. Please wait while "
    "we connect you. If the call goes to voicemail, you will be notified."
)

SALES_HOLD_MESSAGE = "Please hold while the AI assistant speaks with the lead."

SALES_VOICEMAIL_HOLD_MESSAGE = (
    "The AI is now leaving a voicemail. Please wait until transfer is complete."
)

SALES_APOLOGY_MESSAGE = (
    "We apologize, but the customer appears to have disconnected. The AI will "
    "follow up with them later."
)

CONFERENCE_JOIN_MESSAGE = "Connecting you with a care specialist now. One moment please."


def get_system_prompt(
    lead_info: LeadInfo | None = None,
    is_voicemail: bool = False,
    transfer_failed: bool = False,
) -> str:
    lead_info = lead_info or LeadInfo()
    prompt = PERSONA

    if lead_info.is_known:
        details = []
        if lead_info.lead_name:
            details.append(f"The point of contact is {lead_info.lead_name}.")
        if lead_info.care_needed_for:
            details.append(f"Care is needed for {lead_info.care_needed_for}.")
        if lead_info.care_reason:
            details.append(f"The reason for care is: {lead_info.care_reason}.")
        prompt += "\n\nFor this specific call: " + " ".join(details)

    if is_voicemail:
        prompt += "\n\n" + get_voicemail_instruction(lead_info)

    if transfer_failed:
        prompt += "\n\n" + TRANSFER_FAILED_PROMPT

    return prompt


def get_voicemail_instruction(lead_info: LeadInfo | None = None) -> str:
    """Voicemail script, personalized when anything about the lead is known."""
    if lead_info is None or not lead_info.is_known:
        return GENERIC_VOICEMAIL
    text = VOICEMAIL_TEMPLATE.format(
        lead_name=lead_info.lead_name,
        lead_name_comma="," if lead_info.lead_name else "",
        for_care_needed_for=f"for {lead_info.care_needed_for}" if lead_info.care_needed_for else "",
        who_care_reason=f"who needs {lead_info.care_reason}" if lead_info.care_reason else "",
    )
    # Collapse gaps left by empty placeholders
    return re.sub(r" {2,}", " ", text).replace(" .", ".")


def get_first_message(lead_info: LeadInfo | None = None, transfer_failed: bool = False) -> str:
    if transfer_failed:
        return TRANSFER_FAILED_FIRST_MESSAGE
    if lead_info is None or not (lead_info.lead_name or lead_info.care_needed_for):
        return GENERIC_FIRST_MESSAGE
    return FIRST_MESSAGE_TEMPLATE.format(
        lead_name=lead_info.lead_name or "there",
        care_needed_for=lead_info.care_needed_for or "your loved one",
    )


def build_init_message(
    lead_info: LeadInfo | None = None,
    is_voicemail: bool = False,
    transfer_failed: bool = False,
    silence_timeout_ms: int = 3000,
) -> dict:
    """The conversation_initiation_client_data message sent on socket open."""
    return {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {
            "agent": {
                "prompt": {
                    "prompt": get_system_prompt(lead_info, is_voicemail, transfer_failed),
                },
                "first_message": get_first_message(lead_info, transfer_failed),
                "wait_for_user_speech": True,
            },
            "conversation": {
                "initial_audio_silence_timeout_ms": silence_timeout_ms,
            },
        },
    }


def callback_confirmation(when: str) -> str:
    return CALLBACK_CONFIRMATION_TEMPLATE.format(when=when or "a specific time")


def sales_notification(lead_info: LeadInfo | None = None) -> str:
    lead_info = lead_info or LeadInfo()
    text = SALES_NOTIFICATION_TEMPLATE.format(
        lead_name=lead_info.lead_name or "a potential client",
        care_reason=lead_info.care_reason or "home care services",
        care_needed_for=f"for {lead_info.care_needed_for}" if lead_info.care_needed_for else "",
    )
    return " ".join(text.split()).replace(" .", ".")
