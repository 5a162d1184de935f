from leadbridge.session import TranscriptEntry
from leadbridge.states import Speaker
from leadbridge.transcript import from_remote, last_human_texts, to_json_array, to_plain_text


def _log():
    return [
        TranscriptEntry(Speaker.AI, "Hello, this is Heather.", 1.0),
        TranscriptEntry(Speaker.LEAD, "Hi.", 2.0),
        TranscriptEntry(Speaker.AI, "Is this Maria?", 3.0),
        TranscriptEntry(Speaker.LEAD, "Yes it is.", 4.0),
        TranscriptEntry(Speaker.LEAD, "Tell me more.", 5.0),
        TranscriptEntry(Speaker.LEAD, "Sounds good.", 6.0),
    ]


class TestPlainText:
    def test_labels(self):
        text = to_plain_text(_log()[:2])
        assert text == "Agent: Hello, this is Heather.\nLead: Hi."

    def test_empty(self):
        assert to_plain_text([]) == ""


class TestJsonArray:
    def test_roles(self):
        result = to_json_array(_log()[:2])
        assert result == [
            {"role": "agent", "message": "Hello, this is Heather.", "timestamp": 1.0},
            {"role": "user", "message": "Hi.", "timestamp": 2.0},
        ]

    def test_empty(self):
        assert to_json_array([]) == []


class TestFromRemote:
    def test_normalizes_and_skips_empty(self):
        entries = [
            {"role": "agent", "message": "Hello", "time_in_call_secs": 0},
            {"role": "user", "message": None},
            {"role": "user", "message": "Hi", "time_in_call_secs": 2},
            "garbage",
        ]
        assert from_remote(entries) == [
            {"role": "agent", "message": "Hello", "timestamp": 0},
            {"role": "user", "message": "Hi", "timestamp": 2},
        ]

    def test_none(self):
        assert from_remote(None) == []


class TestLastHumanTexts:
    def test_last_three_lead_lines(self):
        assert last_human_texts(_log(), 3) == ["Yes it is.", "Tell me more.", "Sounds good."]

    def test_fewer_than_n(self):
        assert last_human_texts(_log()[:2], 3) == ["Hi."]

    def test_zero(self):
        assert last_human_texts(_log(), 0) == []
