"""
Tests for patient notifications and settings validation.

Covers:
  - template rendering and phone normalisation
  - the log backend and notify()'s never-raise contract
  - Twilio delivery with retry on transient errors, no retry on client errors
  - startup guards in medrefill.config.get_settings
"""

from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from medrefill.config import clear_settings_cache, get_settings
from medrefill.services import notification_service
from medrefill.services.notification_service import NotificationKind, normalize_phone, notify, render


FILLED_PAYLOAD = {
    "patient_name": "Asha Patil",
    "prescription_id": "rx-1",
    "fill_date": "2024-03-01",
    "medicine_list": "- Paracetamol 500mg (x10)",
    "refill_date": "2024-03-08",
}


@pytest.fixture()
def settings_env(monkeypatch):
    """Set environment overrides and rebuild Settings; restored afterwards."""
    def apply(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        clear_settings_cache()

    yield apply
    clear_settings_cache()


class TestRender:

    def test_filled_template(self):
        body = render(NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD)
        assert "Asha Patil" in body
        assert "- Paracetamol 500mg (x10)" in body
        assert "Next refill: 2024-03-08" in body

    def test_missing_field_raises(self):
        with pytest.raises(KeyError):
            render(NotificationKind.REJECTION, {"patient_name": "Asha"})

    def test_every_kind_has_a_template(self):
        assert set(notification_service.TEMPLATES) == set(NotificationKind)


class TestNormalizePhone:

    @pytest.mark.parametrize("raw, expected", [
        ("9876543210", "+919876543210"),
        ("98765 43210", "+919876543210"),
        ("(987) 654-3210", "+919876543210"),
        ("+14155550100", "+14155550100"),
    ])
    def test_valid(self, raw, expected):
        assert normalize_phone(raw, "+91") == expected

    @pytest.mark.parametrize("raw", [None, "", "12345", "+0123456789", "phone"])
    def test_invalid(self, raw):
        assert normalize_phone(raw, "+91") is None


class TestNotify:

    async def test_log_backend_delivers(self, caplog):
        with caplog.at_level("INFO", logger="medrefill.services.notification_service"):
            assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is True
        assert "+919876543210" in caplog.text

    async def test_kind_given_as_string(self):
        assert await notify("9876543210", "medicine-filled", FILLED_PAYLOAD) is True

    async def test_unknown_kind_is_false(self):
        assert await notify("9876543210", "carrier-pigeon", FILLED_PAYLOAD) is False

    async def test_missing_payload_field_is_false(self):
        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, {"patient_name": "Asha"}) is False

    async def test_no_phone_is_false(self):
        assert await notify(None, NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is False


class TestTwilioBackend:

    @pytest.fixture()
    def twilio_env(self, settings_env):
        settings_env(
            NOTIFY_BACKEND="twilio",
            TWILIO_ACCOUNT_SID="ACtest",
            TWILIO_AUTH_TOKEN="token",
            TWILIO_FROM_NUMBER="+15005550006",
        )

    @pytest.fixture()
    def client(self, twilio_env):
        fake = MagicMock()
        with patch.object(notification_service, "_get_twilio_client", return_value=fake), \
                patch.object(notification_service.asyncio, "sleep", new=_no_sleep):
            yield fake

    async def test_sends_sms(self, client):
        client.messages.create.return_value = MagicMock(sid="SM123")

        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is True
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["to"] == "+919876543210"
        assert kwargs["from_"] == "+15005550006"

    async def test_retries_transient_errors(self, client):
        client.messages.create.side_effect = [
            TwilioRestException(503, "https://api.twilio.com", "unavailable"),
            ConnectionError("reset"),
            MagicMock(sid="SM456"),
        ]
        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is True
        assert client.messages.create.call_count == 3

    async def test_client_error_not_retried(self, client):
        client.messages.create.side_effect = TwilioRestException(400, "https://api.twilio.com", "bad number")
        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is False
        assert client.messages.create.call_count == 1

    async def test_gives_up_after_max_retries(self, client):
        client.messages.create.side_effect = TwilioRestException(429, "https://api.twilio.com", "slow down")
        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is False
        assert client.messages.create.call_count == 3

    async def test_missing_credentials(self, settings_env):
        settings_env(NOTIFY_BACKEND="twilio", TWILIO_ACCOUNT_SID="", TWILIO_AUTH_TOKEN="", TWILIO_FROM_NUMBER="")
        assert await notify("9876543210", NotificationKind.MEDICINE_FILLED, FILLED_PAYLOAD) is False


async def _no_sleep(_seconds):
    return None


class TestSettingsGuards:

    def test_production_rejects_default_jwt_secret(self, settings_env):
        settings_env(APP_ENV="production", JWT_SECRET="change-me-in-production")
        with pytest.raises(RuntimeError, match="JWT_SECRET"):
            get_settings()

    def test_production_rejects_wildcard_cors(self, settings_env):
        settings_env(APP_ENV="production", JWT_SECRET="s3cret", CORS_ORIGINS="*")
        with pytest.raises(RuntimeError, match="CORS_ORIGINS"):
            get_settings()

    def test_unknown_notify_backend(self, settings_env):
        settings_env(NOTIFY_BACKEND="pager")
        with pytest.raises(RuntimeError, match="NOTIFY_BACKEND"):
            get_settings()

    def test_lead_days_must_be_below_min_days(self, settings_env):
        settings_env(REMINDER_LEAD_DAYS="7", REMINDER_MIN_DAYS="7")
        with pytest.raises(RuntimeError, match="REMINDER_LEAD_DAYS"):
            get_settings()

    def test_test_environment_loads(self):
        settings = get_settings()
        assert settings.APP_ENV == "test"
        assert settings.NOTIFY_BACKEND == "log"
