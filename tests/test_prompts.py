from leadbridge import prompts
from leadbridge.session import LeadInfo


class TestSystemPrompt:
    def test_generic(self):
        prompt = prompts.get_system_prompt()
        assert prompt.startswith("You are Heather")
        assert "For this specific call" not in prompt
        assert "voicemail" not in prompt.split("IMPORTANT: When the call connects")[1]

    def test_lead_details(self, lead_info):
        prompt = prompts.get_system_prompt(lead_info)
        assert "The point of contact is Maria." in prompt
        assert "Care is needed for her father." in prompt
        assert "The reason for care is: mobility support." in prompt

    def test_voicemail_appended(self, lead_info):
        prompt = prompts.get_system_prompt(lead_info, is_voicemail=True)
        assert "This call has reached a voicemail" in prompt
        assert "Hello Maria," in prompt

    def test_transfer_failed_appended(self):
        prompt = prompts.get_system_prompt(transfer_failed=True)
        assert prompts.TRANSFER_FAILED_PROMPT in prompt


class TestVoicemailInstruction:
    def test_personalized(self, lead_info):
        text = prompts.get_voicemail_instruction(lead_info)
        assert "Hello Maria," in text
        assert "for her father" in text
        assert "who needs mobility support" in text

    def test_partial_info_has_no_gaps(self):
        text = prompts.get_voicemail_instruction(LeadInfo(care_needed_for="mom"))
        assert "  " not in text
        assert "for mom" in text
        assert "who needs" not in text

    def test_generic_without_info(self):
        assert prompts.get_voicemail_instruction(LeadInfo()) == prompts.GENERIC_VOICEMAIL
        assert prompts.get_voicemail_instruction(None) == prompts.GENERIC_VOICEMAIL


class TestFirstMessage:
    def test_personalized(self, lead_info):
        msg = prompts.get_first_message(lead_info)
        assert "inquiry for her father" in msg
        assert msg.endswith("Is this Maria?")

    def test_name_only(self):
        msg = prompts.get_first_message(LeadInfo(lead_name="Sam"))
        assert "your loved one" in msg
        assert "Is this Sam?" in msg

    def test_generic(self):
        assert prompts.get_first_message(LeadInfo()) == prompts.GENERIC_FIRST_MESSAGE

    def test_transfer_failed(self, lead_info):
        assert prompts.get_first_message(lead_info, transfer_failed=True) == prompts.TRANSFER_FAILED_FIRST_MESSAGE


class TestInitMessage:
    def test_shape(self, lead_info):
        msg = prompts.build_init_message(lead_info)
        assert msg["type"] == "conversation_initiation_client_data"
        agent = msg["conversation_config_override"]["agent"]
        assert agent["wait_for_user_speech"] is True
        assert "Maria" in agent["first_message"]
        assert agent["prompt"]["prompt"].startswith("You are Heather")
        conversation = msg["conversation_config_override"]["conversation"]
        assert conversation["initial_audio_silence_timeout_ms"] == 3000

    def test_voicemail_known_at_start(self, lead_info):
        msg = prompts.build_init_message(lead_info, is_voicemail=True)
        assert "reached a voicemail" in msg["conversation_config_override"]["agent"]["prompt"]["prompt"]


class TestInstructions:
    def test_callback_confirmation(self):
        text = prompts.callback_confirmation("3 pm")
        assert text.startswith("The customer has requested a callback at 3 pm.")

    def test_callback_confirmation_without_time(self):
        assert "a specific time" in prompts.callback_confirmation("")

    def test_sales_notification(self, lead_info):
        text = prompts.sales_notification(lead_info)
        assert "call with Maria" in text
        assert "about mobility support for her father." in text

    def test_sales_notification_defaults(self):
        text = prompts.sales_notification()
        assert "a potential client" in text
        assert "home care services." in text
