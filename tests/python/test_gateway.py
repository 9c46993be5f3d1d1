"""Tests for the persistence gateway against in-memory SQLite."""

import os
import sys
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))

from callbridge.core.outcome import CallStatus
from callbridge.db import Company, PersistenceGateway, PhoneNumberCompany, User, UserPhone
from callbridge.errors import PersistenceError

T0 = datetime(2024, 5, 1, 9, 30, 0)


@pytest_asyncio.fixture
async def gateway():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    gateway = PersistenceGateway(engine=engine)
    await gateway.create_schema()

    async with gateway._sessionmaker() as session:
        session.add_all([
            User(id=17, first_name="Aida", last_name="Sadykova", username="aida"),
            User(id=18, first_name="Timur", last_name=None, username="timur"),
            UserPhone(user_id=18, phone_number="777", is_primary=False),
            UserPhone(user_id=17, phone_number="777", is_primary=True),
            UserPhone(user_id=18, phone_number="778", is_primary=True),
            Company(id=3, name="Acme"),
            PhoneNumberCompany(company_id=3, phone_number="5551234"),
        ])
        await session.commit()

    yield gateway
    await gateway.close()


class TestLookups:
    """Reference data lookups."""

    @pytest.mark.asyncio
    async def test_primary_phone_wins(self, gateway):
        user = await gateway.find_user_by_phone("777")

        assert user.id == 17
        assert user.full_name == "Aida Sadykova"

    @pytest.mark.asyncio
    async def test_unknown_phone(self, gateway):
        assert await gateway.find_user_by_phone("000") is None
        assert await gateway.find_user_by_phone(None) is None

    @pytest.mark.asyncio
    async def test_exact_match_only(self, gateway):
        """Numbers are compared verbatim, without normalization."""
        assert await gateway.find_user_by_phone(" 777") is None

    @pytest.mark.asyncio
    async def test_company_lookup(self, gateway):
        company = await gateway.find_company_by_phone("5551234")

        assert company.id == 3
        assert company.name == "Acme"
        assert await gateway.find_company_by_phone("999") is None

    @pytest.mark.asyncio
    async def test_find_user(self, gateway):
        user = await gateway.find_user(18)

        assert user.full_name == "Timur"
        assert await gateway.find_user(99) is None

    @pytest.mark.asyncio
    async def test_ping(self, gateway):
        assert await gateway.ping() is True


class TestCalls:
    """Call row writes and reads."""

    @pytest.mark.asyncio
    async def test_insert_and_update(self, gateway):
        call_id = await gateway.insert_call(
            caller_number="5551234",
            receiver_number="777",
            status=CallStatus.INCOMING,
            assigned_user_id=17,
            caller_company_id=3,
            accepted_at=T0,
            channel_id="SIP/trunk-01",
        )

        assert await gateway.update_call(call_id, status=CallStatus.ANSWERED, answered_at=T0)

        row = await gateway.find_call_status(call_id)
        assert row.status == "answered"
        assert row.answered_at == T0

        call = await gateway.get_call(call_id)
        assert call["caller_number"] == "5551234"
        assert call["recording_status"] == "absent"
        assert call["answered_at"] == T0.isoformat()

    @pytest.mark.asyncio
    async def test_update_missing_row(self, gateway):
        assert await gateway.update_call(404, status="missed") is False
        assert await gateway.find_call_status(404) is None

    @pytest.mark.asyncio
    async def test_active_calls(self, gateway):
        live = await gateway.insert_call(caller_number="1", receiver_number="777", status="incoming", assigned_user_id=17)
        await gateway.insert_call(caller_number="2", receiver_number="777", status="missed", assigned_user_id=17)
        answered = await gateway.insert_call(caller_number="3", receiver_number="778", status="accepted")
        await gateway.update_call(answered, answered_by_user_id=17)

        calls = await gateway.list_active_calls(17)

        assert [c["call_id"] for c in calls] == [answered, live]

    @pytest.mark.asyncio
    async def test_bad_write_raises_persistence_error(self, gateway):
        with pytest.raises(PersistenceError):
            await gateway.insert_call(caller_number="1")


class TestCrmAnswer:
    """CRM accept and reject decisions."""

    @pytest.mark.asyncio
    async def test_accept(self, gateway):
        call_id = await gateway.insert_call(caller_number="1", receiver_number="777", status="incoming")

        applied = await gateway.record_crm_answer(call_id, accepted=True, user_id=17, answered_at=T0, notes="VIP")

        call = await gateway.get_call(call_id)
        assert applied is True
        assert call["status"] == "accepted"
        assert call["answered_by_user_id"] == 17
        assert call["answered_at"] == T0.isoformat()
        assert call["notes"] == "VIP"

    @pytest.mark.asyncio
    async def test_accept_keeps_pbx_answer_time(self, gateway):
        earlier = datetime(2024, 5, 1, 9, 0, 0)
        call_id = await gateway.insert_call(caller_number="1", status="answered", answered_at=earlier)

        await gateway.record_crm_answer(call_id, accepted=True, user_id=17, answered_at=T0)

        assert (await gateway.find_call_status(call_id)).answered_at == earlier

    @pytest.mark.asyncio
    async def test_reject(self, gateway):
        call_id = await gateway.insert_call(caller_number="1", status="incoming")

        await gateway.record_crm_answer(call_id, accepted=False, user_id=17, answered_at=T0)

        call = await gateway.get_call(call_id)
        assert call["status"] == "rejected"
        assert call["answered_at"] is None

    @pytest.mark.asyncio
    async def test_terminal_call_ignored(self, gateway):
        call_id = await gateway.insert_call(caller_number="1", status="missed")

        assert await gateway.record_crm_answer(call_id, accepted=True, user_id=17, answered_at=T0) is False
        assert (await gateway.find_call_status(call_id)).status == "missed"

    @pytest.mark.asyncio
    async def test_unknown_call(self, gateway):
        assert await gateway.record_crm_answer(404, accepted=True, user_id=17, answered_at=T0) is False


class TestGatewayInit:
    """Constructor validation."""

    def test_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            PersistenceGateway()


class TestPbxAnswer:
    """PBX Answer events against rows the CRM may already have touched."""

    @pytest.mark.asyncio
    async def test_stamps_unanswered_call(self, gateway):
        call_id = await gateway.insert_call(caller_number="1", receiver_number="777", status="incoming")

        assert await gateway.record_pbx_answer(call_id, T0) is True

        row = await gateway.find_call_status(call_id)
        assert row.status == "answered"
        assert row.answered_at == T0

    @pytest.mark.asyncio
    async def test_keeps_crm_accept_time(self, gateway):
        call_id = await gateway.insert_call(caller_number="1", receiver_number="777", status="incoming")
        accepted_at = T0 + timedelta(seconds=2)
        await gateway.record_crm_answer(call_id, accepted=True, user_id=17, answered_at=accepted_at)

        await gateway.record_pbx_answer(call_id, T0 + timedelta(seconds=9))

        row = await gateway.find_call_status(call_id)
        assert row.status == "answered"
        assert row.answered_at == accepted_at

    @pytest.mark.asyncio
    async def test_missing_row(self, gateway):
        assert await gateway.record_pbx_answer(404, T0) is False
