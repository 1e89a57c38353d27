"""
Tests for trigger authorization
===============================

Every trigger needs a user token or the automation secret.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient


class TestTriggerAuth:
    """Tests for credential checks"""

    @pytest.mark.api
    def test_missing_credentials(self, client: TestClient, test_user):
        response = client.get("/api/v1/doses", params={"user_id": test_user.id})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        data = response.json()
        assert data["error"] is True
        assert data["status_code"] == 401

    @pytest.mark.api
    def test_wrong_cron_secret(self, client: TestClient, test_user):
        response = client.get(
            "/api/v1/doses",
            params={"user_id": test_user.id},
            headers={"X-Cron-Secret": "guess"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.api
    def test_unknown_bearer_token(self, client: TestClient, test_user):
        response = client.get("/api/v1/doses", headers={"Authorization": "Bearer nope"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.api
    def test_inactive_user_rejected(self, client: TestClient, db_session, test_user, user_headers):
        test_user.is_active = False
        db_session.commit()

        response = client.get("/api/v1/doses", headers=user_headers)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.api
    def test_user_token_scoped_to_self(self, client: TestClient, test_user, other_user, user_headers):
        response = client.get("/api/v1/doses", params={"user_id": other_user.id}, headers=user_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.api
    def test_automation_must_name_user(self, client: TestClient, test_user, cron_headers):
        response = client.get("/api/v1/doses", headers=cron_headers)
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.api
    def test_automation_for_user(self, client: TestClient, test_user, cron_headers):
        response = client.get("/api/v1/doses", params={"user_id": test_user.id}, headers=cron_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"doses": [], "total": 0}

    @pytest.mark.api
    def test_health_is_open(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
