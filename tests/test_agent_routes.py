"""Route tests for the agent endpoints and the inbound SMS webhook.

Each test builds a fresh FastAPI app with only the routers under test, with
``get_db`` and the service factories overridden.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from mca_platform.app.config import get_settings
from mca_platform.app.routes.agent import get_followup_runner, get_orchestrator
from mca_platform.app.routes.agent import router as agent_router
from mca_platform.app.routes.sms_webhook import STOP_KEYWORDS, get_dispatch_worker, is_business_hours
from mca_platform.app.routes.sms_webhook import router as sms_webhook_router
from mca_platform.domain.models import Conversation, Message, StateTransition, utcnow
from mca_platform.infra.database import get_db
from mca_platform.services.dispatch_orchestrator import DispatchOrchestrator


@pytest.fixture
def dispatch_worker():
    worker = MagicMock()
    worker.submit = MagicMock()
    return worker


@pytest.fixture
def followup_runner():
    runner = MagicMock()
    runner.run = AsyncMock(return_value={"sent": 2, "skipped": 1, "noSend": 3})
    return runner


@pytest.fixture
def client(db_session, reasoning_client, delivery, dispatch_worker, followup_runner):
    """HTTPX AsyncClient wired to a test app with the agent + webhook routers."""
    test_app = FastAPI()
    test_app.include_router(agent_router)
    test_app.include_router(sms_webhook_router)

    async def _override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = _override_get_db
    test_app.dependency_overrides[get_orchestrator] = lambda: DispatchOrchestrator(
        db_session, client=reasoning_client, delivery=delivery,
    )
    test_app.dependency_overrides[get_followup_runner] = lambda: followup_runner
    test_app.dependency_overrides[get_dispatch_worker] = lambda: dispatch_worker

    return AsyncClient(transport=ASGITransport(app=test_app), base_url="http://testserver")


async def _state(db_session, conversation_id):
    result = await db_session.execute(
        select(Conversation.state).where(Conversation.id == conversation_id)
    )
    return result.scalar_one()


# ===========================================================================
# POST /api/agent/trigger
# ===========================================================================


class TestTrigger:

    async def test_sends_reply(self, client, make_conversation, sms_gateway):
        conv = await make_conversation(state="ACTIVE")

        async with client:
            resp = await client.post("/api/agent/trigger", json={
                "conversation_id": conv.id,
                "system_instruction": "follow up on the application",
            })

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["action"] == "sent_message"
        assert data["reply"] == "Got it, sending the application now."
        assert len(sms_gateway.sent) == 1

    async def test_busy_is_reported_as_skip(self, client, make_conversation):
        conv = await make_conversation(state="ACTIVE", processing_lock=True, last_activity=utcnow())

        async with client:
            resp = await client.post("/api/agent/trigger", json={"conversation_id": conv.id})

        assert resp.status_code == 200
        assert resp.json()["success"] is False
        assert resp.json()["skipped"] is True

    async def test_direct_message_with_next_state(self, client, db_session, make_conversation, reasoning_client):
        conv = await make_conversation(state="DRIP")

        async with client:
            resp = await client.post("/api/agent/trigger", json={
                "conversation_id": conv.id,
                "direct_message": "Quick question about your business",
                "next_state": "SENT_HOOK",
                "is_nudge": True,
            })

        assert resp.status_code == 200
        assert resp.json()["transition"]["applied"] is True
        assert await _state(db_session, conv.id) == "SENT_HOOK"
        reasoning_client.converse.assert_not_called()

    async def test_unknown_conversation_is_404(self, client):
        async with client:
            resp = await client.post("/api/agent/trigger", json={"conversation_id": "missing"})

        assert resp.status_code == 404

    async def test_unmapped_state_is_500(self, client, make_conversation):
        conv = await make_conversation(state="CLOSING")

        async with client:
            resp = await client.post("/api/agent/trigger", json={"conversation_id": conv.id})

        assert resp.status_code == 500

    async def test_reasoning_failure_is_502(self, client, make_conversation, reasoning_client):
        from mca_platform.domain.errors import ReasoningFailure

        conv = await make_conversation(state="ACTIVE")
        reasoning_client.converse.side_effect = ReasoningFailure("qualifier", "timed out")

        async with client:
            resp = await client.post("/api/agent/trigger", json={"conversation_id": conv.id})

        assert resp.status_code == 502

    async def test_missing_conversation_id_is_422(self, client):
        async with client:
            resp = await client.post("/api/agent/trigger", json={"system_instruction": "hi"})

        assert resp.status_code == 422


# ===========================================================================
# POST /api/agent/morning-followup
# ===========================================================================


class TestMorningFollowUpEndpoint:

    async def test_requires_secret(self, client, followup_runner):
        async with client:
            resp = await client.post("/api/agent/morning-followup")

        assert resp.status_code == 422
        followup_runner.run.assert_not_called()

    async def test_rejects_wrong_secret(self, client, followup_runner):
        async with client:
            resp = await client.post("/api/agent/morning-followup", headers={"X-Internal-Secret": "nope"})

        assert resp.status_code == 401
        followup_runner.run.assert_not_called()

    async def test_runs_with_secret(self, client, followup_runner):
        secret = get_settings().internal_api_secret

        async with client:
            resp = await client.post("/api/agent/morning-followup", headers={"X-Internal-Secret": secret})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "sent": 2, "skipped": 1, "noSend": 3}


# ===========================================================================
# POST /api/messages/webhook/receive
# ===========================================================================


def _twilio_form(from_number="+15551234567", body="yes I'm interested", sid="SM100", **extra):
    form = {"From": from_number, "Body": body, "MessageSid": sid, "NumMedia": "0"}
    form.update(extra)
    return form


class TestStopKeywords:

    @pytest.mark.parametrize("word", ["stop", "STOP", "  Stop  ", "unsubscribe", "cancel", "quit", "end", "stopall"])
    def test_matches_stop_words(self, word):
        assert STOP_KEYWORDS.match(word) is not None

    @pytest.mark.parametrize("word", ["stop texting so fast", "don't stop", "ending soon", "cancellation fee?"])
    def test_rejects_non_exact_stop(self, word):
        assert STOP_KEYWORDS.match(word) is None


class TestBusinessHours:

    @pytest.mark.parametrize("hour,expected", [(7, False), (8, True), (13, True), (21, True), (22, False), (2, False)])
    def test_window(self, hour, expected):
        from datetime import datetime

        assert is_business_hours(datetime(2026, 3, 2, hour, 30)) is expected


class TestInboundWebhook:

    async def test_records_inbound_and_reactivates_drip(self, client, db_session, make_conversation, dispatch_worker):
        conv = await make_conversation(state="DRIP", lead_phone="(555) 123-4567", nudge_count=3)

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock) as mock_publish,
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=True),
        ):
            async with client:
                resp = await client.post("/api/messages/webhook/receive", data=_twilio_form())

        assert resp.status_code == 200
        assert resp.text == "<Response></Response>"
        assert resp.headers["content-type"].startswith("text/xml")

        msg = (await db_session.execute(select(Message).where(Message.conversation_id == conv.id))).scalar_one()
        assert (msg.direction, msg.status, msg.provider_ref, msg.sent_by) == ("inbound", "delivered", "SM100", "lead")

        row = (await db_session.execute(
            select(Conversation.state, Conversation.nudge_count).where(Conversation.id == conv.id)
        )).one()
        assert row.state == "ACTIVE"
        assert row.nudge_count == 0

        mock_publish.assert_awaited_once()
        assert mock_publish.call_args.args[0] == "new_message"
        # Business hours: the dispatcher picks it up
        dispatch_worker.submit.assert_not_called()

    async def test_after_hours_hands_off_to_worker(self, client, make_conversation, dispatch_worker):
        conv = await make_conversation(state="QUALIFIED")

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock),
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=False),
        ):
            async with client:
                resp = await client.post("/api/messages/webhook/receive", data=_twilio_form())

        assert resp.status_code == 200
        dispatch_worker.submit.assert_called_once_with(conv.id)

    async def test_stop_keyword_marks_dead_without_dispatch(self, client, db_session, make_conversation, dispatch_worker):
        conv = await make_conversation(state="QUALIFIED")

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock),
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=False),
        ):
            async with client:
                resp = await client.post("/api/messages/webhook/receive", data=_twilio_form(body="STOP"))

        assert resp.status_code == 200
        assert await _state(db_session, conv.id) == "DEAD"
        history = (await db_session.execute(
            select(StateTransition).where(StateTransition.conversation_id == conv.id)
        )).scalars().all()
        assert [(h.new_state, h.changed_by) for h in history] == [("DEAD", "webhook")]
        dispatch_worker.submit.assert_not_called()

    async def test_duplicate_sid_is_ignored(self, client, db_session, make_conversation, dispatch_worker):
        conv = await make_conversation(state="ACTIVE")

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock),
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=False),
        ):
            async with client:
                await client.post("/api/messages/webhook/receive", data=_twilio_form(sid="SM777"))
                resp = await client.post("/api/messages/webhook/receive", data=_twilio_form(sid="SM777"))

        assert resp.status_code == 200
        rows = (await db_session.execute(select(Message).where(Message.conversation_id == conv.id))).scalars().all()
        assert len(rows) == 1
        assert dispatch_worker.submit.call_count == 1

    async def test_unknown_sender(self, client, db_session, dispatch_worker):
        with patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock) as mock_publish:
            async with client:
                resp = await client.post(
                    "/api/messages/webhook/receive", data=_twilio_form(from_number="+15550001111"),
                )

        assert resp.status_code == 200
        assert (await db_session.execute(select(Message))).scalars().all() == []
        mock_publish.assert_not_called()
        dispatch_worker.submit.assert_not_called()

    async def test_media_is_recorded(self, client, db_session, make_conversation):
        conv = await make_conversation(state="VETTING")

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock),
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=True),
        ):
            async with client:
                await client.post(
                    "/api/messages/webhook/receive",
                    data=_twilio_form(body="", NumMedia="1", MediaUrl0="https://api.twilio.com/media/ME1"),
                )

        msg = (await db_session.execute(select(Message).where(Message.conversation_id == conv.id))).scalar_one()
        assert msg.message_type == "mms"
        assert msg.media_url == "https://api.twilio.com/media/ME1"

    async def test_dead_lead_stays_dead(self, client, db_session, make_conversation, dispatch_worker):
        conv = await make_conversation(state="DEAD")

        with (
            patch("mca_platform.app.routes.sms_webhook.publish", new_callable=AsyncMock),
            patch("mca_platform.app.routes.sms_webhook.is_business_hours", return_value=True),
        ):
            async with client:
                await client.post("/api/messages/webhook/receive", data=_twilio_form(body="actually yes"))

        assert await _state(db_session, conv.id) == "DEAD"
