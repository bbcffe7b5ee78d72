"""
Tests for Trial API routes.

Exercises the HTTP mapping of consume results, caller authentication and
conversion through the ASGI app with the SQLite-backed trial service.
"""

import pytest
from sqlalchemy import select

from app.api.dependencies import get_trial_service
from app.db.models import LoginAnalytics
from app.services.trial_quota import TrialQuotaService
from app.services.trial_store import InMemoryTrialStore

FP = "fp-route-1"


async def _consume(api_client, auth_headers, action="video_analysis", fingerprint=FP):
    return await api_client.post(
        "/v1/trials/consume",
        json={"action": action, "fingerprint": fingerprint},
        headers=auth_headers,
    )


class TestConsumeRoute:
    """Tests for POST /v1/trials/consume."""

    @pytest.mark.asyncio
    async def test_success(self, api_client, auth_headers):
        response = await _consume(api_client, auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["remaining"] == 4
        assert data["message"] == "4 trials left."
        assert data["denial_reason"] is None

    @pytest.mark.asyncio
    async def test_exhausted_then_blocked(self, api_client, auth_headers):
        """The first denial is 429 exhausted, later ones 403 while blocked."""
        first = await _consume(api_client, auth_headers, "batch_analysis")
        assert first.status_code == 200
        assert first.json()["remaining"] == 2

        exhausted = await _consume(api_client, auth_headers, "batch_analysis")
        assert exhausted.status_code == 429
        assert exhausted.json()["denial_reason"] == "exhausted"
        assert exhausted.json()["blocked"] is True

        blocked = await _consume(api_client, auth_headers)
        assert blocked.status_code == 403
        assert blocked.json()["denial_reason"] == "blocked"
        assert blocked.json()["next_reset_at"] is not None

    @pytest.mark.asyncio
    async def test_rate_limited(self, app, api_client, auth_headers, settings_factory, clock):
        service = TrialQuotaService(
            InMemoryTrialStore(),
            settings_factory(trial_max_actions_per_hour=1),
            clock=clock,
        )
        app.dependency_overrides[get_trial_service] = lambda: service

        assert (await _consume(api_client, auth_headers)).status_code == 200
        response = await _consume(api_client, auth_headers)

        assert response.status_code == 429
        data = response.json()
        assert data["rate_limited"] is True
        assert data["denial_reason"] == "rate_limited"
        assert data["remaining"] == 0
        assert (await service.get_trial_status(FP)).remaining == 4

    @pytest.mark.asyncio
    async def test_denial_records_analytics(self, api_client, auth_headers, db_session):
        for _ in range(3):
            await _consume(api_client, auth_headers, "batch_analysis")

        result = await db_session.execute(
            select(LoginAnalytics).where(LoginAnalytics.event_type == "trial_exhausted")
        )
        events = list(result.scalars().all())
        assert len(events) >= 1
        assert events[0].fingerprint == FP
        assert events[0].trigger_type == "batch_analysis"

    @pytest.mark.asyncio
    async def test_requires_service_key(self, api_client):
        response = await api_client.post(
            "/v1/trials/consume", json={"action": "video_analysis", "fingerprint": FP}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, api_client, auth_headers):
        response = await _consume(api_client, auth_headers, action="mine_bitcoin")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_blank_fingerprint_rejected(self, api_client, auth_headers):
        response = await _consume(api_client, auth_headers, fingerprint="   ")

        assert response.status_code == 422


class TestStatusRoute:
    """Tests for GET /v1/trials/{fingerprint}."""

    @pytest.mark.asyncio
    async def test_fresh_fingerprint(self, api_client, auth_headers):
        response = await api_client.get(f"/v1/trials/{FP}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["remaining"] == 5
        assert data["total"] == 5
        assert data["is_blocked"] is False
        assert data["actions"] == []
        assert data["stats"]["total_actions"] == 0

    @pytest.mark.asyncio
    async def test_reflects_consumption(self, api_client, auth_headers):
        await _consume(api_client, auth_headers, "channel_analysis")

        data = (await api_client.get(f"/v1/trials/{FP}", headers=auth_headers)).json()

        assert data["remaining"] == 3
        assert [a["type"] for a in data["actions"]] == ["channel_analysis"]
        assert data["stats"]["actions_this_hour"] == 1

    @pytest.mark.asyncio
    async def test_oversized_fingerprint(self, api_client, auth_headers):
        response = await api_client.get(f"/v1/trials/{'x' * 300}", headers=auth_headers)

        assert response.status_code == 400


class TestConvertRoute:
    """Tests for POST /v1/trials/{fingerprint}/convert."""

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self, api_client, auth_headers):
        response = await api_client.post(
            "/v1/trials/fp-never-seen/convert",
            json={"user_id": "user-123"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_converts_existing_record(self, api_client, auth_headers, trial_service):
        await _consume(api_client, auth_headers)

        response = await api_client.post(
            f"/v1/trials/{FP}/convert",
            json={"user_id": "user-123", "provider": "google"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        record = await trial_service.get_or_create_record(FP)
        assert record.converted_user_id == "user-123"
