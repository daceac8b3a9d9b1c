"""
Tests for the telephony webhook endpoints.

Covers:
- signature enforcement
- status callbacks (including the /calls/webhook alias)
- recording callbacks
- inbound and outbound voice TwiML
"""

from urllib.parse import urlencode

import pytest
from httpx import AsyncClient

from calldesk.main import app
from calldesk.telephony.config import TelephonyConfig
from calldesk.telephony.factory import get_telephony_provider
from calldesk.telephony.mock_adapter import MockTelephonyAdapter
from calldesk.telephony.twilio_adapter import TwilioAdapter, compute_signature

STATUS_PATH = "/webhooks/telephony/status"
RECORDING_PATH = "/webhooks/telephony/recording"
FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


async def _initiate(client: AsyncClient, token: str) -> dict:
    response = await client.post(
        "/calls/initiate",
        json={"toNumber": "+15557654321"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 201
    return response.json()


async def _get_call(client: AsyncClient, token: str, call_id: str) -> dict:
    response = await client.get(
        f"/calls/{call_id}",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 200
    return response.json()


class TestSignatureVerification:
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(
        self,
        async_client: AsyncClient,
        telephony_config: TelephonyConfig,
    ) -> None:
        telephony_config.validate_signatures = True

        response = await async_client.post(STATUS_PATH, data={"CallSid": "CA1", "CallStatus": "completed"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "MISSING_SIGNATURE"

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(
        self,
        async_client: AsyncClient,
        telephony_config: TelephonyConfig,
        mock_adapter: MockTelephonyAdapter,
    ) -> None:
        telephony_config.validate_signatures = True
        mock_adapter.configure_signature(False)

        response = await async_client.post(
            STATUS_PATH,
            data={"CallSid": "CA1", "CallStatus": "completed"},
            headers={"X-Twilio-Signature": "bogus"},
        )

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_hmac_signature_over_public_url(
        self,
        async_client: AsyncClient,
        telephony_config: TelephonyConfig,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)

        telephony_config.validate_signatures = True
        telephony_config.twilio_auth_token = "test_auth_token"
        app.dependency_overrides[get_telephony_provider] = lambda: TwilioAdapter(telephony_config)

        body = urlencode({"CallSid": created["providerCallId"], "CallStatus": "ringing"})
        query = urlencode({"call_id": created["callId"]})
        signed = f"https://hooks.example.com{STATUS_PATH}?{query}"
        signature = compute_signature("test_auth_token", signed, body.encode("utf-8"))

        response = await async_client.post(
            f"{STATUS_PATH}?{query}",
            content=body,
            headers={**FORM_HEADERS, "X-Twilio-Signature": signature},
        )
        assert response.status_code == 200
        assert response.json()["callStatus"] == "RINGING"

        tampered = await async_client.post(
            f"{STATUS_PATH}?{query}",
            content=body.replace("ringing", "completed"),
            headers={**FORM_HEADERS, "X-Twilio-Signature": signature},
        )
        assert tampered.status_code == 401

    @pytest.mark.asyncio
    async def test_validation_can_be_disabled(self, async_client: AsyncClient) -> None:
        response = await async_client.post(STATUS_PATH, data={"CallSid": "CA_UNKNOWN", "CallStatus": "completed"})

        assert response.status_code == 200


class TestStatusCallback:
    @pytest.mark.asyncio
    async def test_completed_sets_end_time_and_duration(
        self,
        async_client: AsyncClient,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)
        assert created["status"] == "QUEUED"

        response = await async_client.post(
            f"{STATUS_PATH}?call_id={created['callId']}",
            data={
                "CallSid": created["providerCallId"],
                "CallStatus": "completed",
                "CallDuration": "17",
            },
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "callId": created["callId"],
            "callStatus": "COMPLETED",
        }

        call = await _get_call(async_client, agent_token, created["callId"])
        assert call["status"] == "COMPLETED"
        assert call["endTime"] is not None
        assert call["duration"] >= 0
        assert call["metadata"]["provider_duration"] == 17

    @pytest.mark.asyncio
    async def test_late_ringing_does_not_reopen_call(
        self,
        async_client: AsyncClient,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)
        sid = created["providerCallId"]

        await async_client.post(STATUS_PATH, data={"CallSid": sid, "CallStatus": "completed"})
        response = await async_client.post(STATUS_PATH, data={"CallSid": sid, "CallStatus": "ringing"})

        assert response.status_code == 200
        assert response.json()["callStatus"] == "COMPLETED"

        logs = await async_client.get(
            f"/calls/{created['callId']}/logs",
            headers={"Authorization": f"Bearer {agent_token}"},
        )
        assert logs.json()[-1]["action"] == "TRANSITION_REJECTED"

    @pytest.mark.asyncio
    async def test_unknown_call_is_acknowledged(self, async_client: AsyncClient) -> None:
        response = await async_client.post(STATUS_PATH, data={"CallSid": "CA_UNKNOWN", "CallStatus": "completed"})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "reason": "Call not found"}

    @pytest.mark.asyncio
    async def test_malformed_payload_is_acknowledged(self, async_client: AsyncClient) -> None:
        response = await async_client.post(STATUS_PATH, data={"CallStatus": "completed"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_calls_webhook_alias(
        self,
        async_client: AsyncClient,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)

        response = await async_client.post(
            "/calls/webhook",
            data={"CallSid": created["providerCallId"], "CallStatus": "busy"},
        )

        assert response.status_code == 200
        assert response.json()["callStatus"] == "BUSY"


class TestRecordingCallback:
    @pytest.mark.asyncio
    async def test_recording_attached_after_completion(
        self,
        async_client: AsyncClient,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)
        sid = created["providerCallId"]
        await async_client.post(STATUS_PATH, data={"CallSid": sid, "CallStatus": "completed"})

        response = await async_client.post(
            RECORDING_PATH,
            data={
                "CallSid": sid,
                "RecordingSid": "RE123",
                "RecordingUrl": "https://api.twilio.com/Recordings/RE123",
                "RecordingStatus": "completed",
                "RecordingDuration": "15",
            },
        )

        assert response.status_code == 200
        assert response.json()["recordingUrl"] == "https://api.twilio.com/Recordings/RE123"

        call = await _get_call(async_client, agent_token, created["callId"])
        assert call["status"] == "COMPLETED"
        assert call["recordingUrl"] == "https://api.twilio.com/Recordings/RE123"
        assert call["recordingDuration"] == 15

    @pytest.mark.asyncio
    async def test_incomplete_recording_is_ignored(
        self,
        async_client: AsyncClient,
        agent_token: str,
    ) -> None:
        created = await _initiate(async_client, agent_token)

        response = await async_client.post(
            RECORDING_PATH,
            data={"CallSid": created["providerCallId"], "RecordingStatus": "in-progress"},
        )

        assert response.json() == {"status": "ignored", "reason": "recording_not_completed"}


class TestVoiceWebhooks:
    @pytest.mark.asyncio
    async def test_incoming_call_connects_agent(
        self,
        async_client: AsyncClient,
        admin_token: str,
    ) -> None:
        payload = {
            "CallSid": "CA_INBOUND_1",
            "From": "+15551112222",
            "To": "+15550000001",
            "CallStatus": "ringing",
        }

        first = await async_client.post("/webhooks/telephony/incoming", data=payload)
        second = await async_client.post("/webhooks/telephony/incoming", data=payload)

        assert first.status_code == 200
        assert first.headers["content-type"].startswith("application/xml")
        assert "+15550009999</Dial>" in first.text
        assert 'record="record-from-answer"' in first.text
        assert second.status_code == 200

        listing = await async_client.get("/calls", headers={"Authorization": f"Bearer {admin_token}"})
        inbound = [c for c in listing.json()["items"] if c["providerCallId"] == "CA_INBOUND_1"]
        assert len(inbound) == 1
        assert inbound[0]["direction"] == "inbound"
        assert inbound[0]["userId"] == "system"
        assert inbound[0]["status"] == "RINGING"

    @pytest.mark.asyncio
    async def test_incoming_call_with_bad_payload_hangs_up(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/webhooks/telephony/incoming", data={"CallSid": "CA_X"})

        assert response.status_code == 200
        assert "<Hangup />" in response.text
        assert "<Dial" not in response.text

    @pytest.mark.asyncio
    async def test_outbound_voice_twiml(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/webhooks/telephony/voice")

        assert response.status_code == 200
        assert "<Say>Hello, please hold while we connect your call.</Say>" in response.text
        assert "+15550009999</Dial>" in response.text
