"""
Unit tests for API v1 routes.

Tests endpoint responses against services wired over the in-memory store,
and error mapping with mocked dependencies.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from trustplane.adapters.repository.memory import InMemoryTrustStore
from trustplane.api.dependencies import (
    get_contact_policies,
    get_eligibility_service,
    get_quota_engine,
    get_upload_policy,
)
from trustplane.api.main import wire_services
from trustplane.api.v1.routes import router
from trustplane.config.settings import Settings, get_settings
from trustplane.domain.eligibility import EligibilityService
from trustplane.domain.exceptions import DependencyError, DependencyTimeout
from trustplane.domain.ports import Category, SubscriptionStatus, SubscriptionTier
from trustplane.domain.quota import QuotaEngine
from trustplane.domain.rate_limit import RateLimitPolicy

CRON_KEY = "cron-secret"

ADDRESS = {"street": "1 Main St", "city": "Lyon", "postal_code": "69001", "country": "FR"}


@pytest.fixture
def store() -> InMemoryTrustStore:
    return InMemoryTrustStore()


@pytest.fixture
def app(store: InMemoryTrustStore) -> FastAPI:
    """Create test FastAPI application over an in-memory store."""
    settings = Settings(storage_backend="memory", cron_api_key=CRON_KEY)
    test_app = FastAPI()
    test_app.include_router(router, prefix="/v1")
    wire_services(test_app, store, settings)

    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_upload_policy] = lambda: RateLimitPolicy(
        name="document_upload", max_attempts=3, window=timedelta(minutes=15)
    )
    return test_app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create test client for the application."""
    return TestClient(app)


def _upload(client: TestClient, user_id: str, **overrides):
    body = {"document_type": "facial_photo", "file_reference": "s3://docs/face"} | overrides
    return client.post(f"/v1/users/{user_id}/documents", json=body)


class TestVerificationEndpoints:
    """Tests for verification progress and document status."""

    def test_progress(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1", email=True, phone=True)

        response = client.get("/v1/users/u1/verification")

        assert response.status_code == 200
        data = response.json()
        assert data["completed_count"] == 2
        assert data["total_count"] == 5
        assert data["progress_percentage"] == 40
        assert data["is_fully_verified"] is False
        assert data["all_complete"] is False
        assert [v["type"] for v in data["verifications"]] == [
            "email",
            "phone",
            "id",
            "facial",
            "address",
        ]

    def test_progress_unknown_user(self, client: TestClient) -> None:
        response = client.get("/v1/users/ghost/verification")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not found"}

    def test_document_status_without_document(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")

        response = client.get("/v1/users/u1/documents/address")

        assert response.status_code == 200
        assert response.json()["has_document"] is False

    def test_document_status_invalid_category(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        assert client.get("/v1/users/u1/documents/selfie").status_code == 422


class TestSubmitDocument:
    """Tests for POST /v1/users/{user_id}/documents."""

    def test_upload_returns_201(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")

        response = _upload(client, "u1")

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING"
        status = client.get("/v1/users/u1/documents/facial").json()
        assert status["has_document"] is True
        assert status["status"] == "PENDING"
        assert status["document_type"] == "facial_photo"

    def test_address_upload_with_metadata(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")

        response = _upload(
            client,
            "u1",
            document_type="utility_bill",
            file_reference="s3://docs/bill",
            metadata=ADDRESS,
        )

        assert response.status_code == 201

    def test_missing_back_image_returns_400(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")

        response = _upload(client, "u1", document_type="national_id")

        assert response.status_code == 400
        assert "Back document image" in response.json()["detail"]

    def test_unknown_document_type_returns_422(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        assert _upload(client, "u1", document_type="email").status_code == 422

    def test_verified_category_returns_409(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1", facial=True)
        assert _upload(client, "u1").status_code == 409

    def test_unknown_user_returns_404(self, client: TestClient) -> None:
        assert _upload(client, "ghost").status_code == 404

    def test_fourth_upload_is_rate_limited(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        for _ in range(3):
            assert _upload(client, "u1").status_code == 201

        response = _upload(client, "u1")

        assert response.status_code == 429
        assert response.json()["detail"] == (
            "Too many upload attempts. Please wait 15 minutes before trying again."
        )


    def test_each_category_has_its_own_upload_budget(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        """A failed ID upload does not eat into the address budget."""
        store.add_user("u1")

        codes = [
            _upload(client, "u1", document_type="national_id").status_code,
            _upload(
                client,
                "u1",
                document_type="national_id",
                file_reference="s3://docs/id-front",
                back_file_reference="s3://docs/id-back",
            ).status_code,
            _upload(client, "u1").status_code,
            _upload(
                client,
                "u1",
                document_type="utility_bill",
                file_reference="s3://docs/bill",
                metadata=ADDRESS,
            ).status_code,
        ]

        assert codes == [400, 201, 201, 201]

    def test_id_budget_is_spent_across_id_document_types(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        for _ in range(3):
            _upload(client, "u1", document_type="passport", file_reference="s3://docs/passport")

        response = _upload(
            client,
            "u1",
            document_type="drivers_license",
            file_reference="s3://docs/licence",
            back_file_reference="s3://docs/licence-back",
        )

        assert response.status_code == 429
        assert _upload(client, "u1").status_code == 201

class TestReviewEndpoints:
    """Tests for approve/reject."""

    def test_approve_completes_verification(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1", email=True, phone=True, id=True, address=True)
        document_id = _upload(client, "u1").json()["document_id"]

        response = client.post(f"/v1/documents/{document_id}/approve")

        assert response.status_code == 200
        assert response.json() == {
            "user_id": "u1",
            "category": "facial",
            "category_verified": True,
            "is_fully_verified": True,
        }
        assert client.get("/v1/users/u1/verification").json()["is_fully_verified"] is True

    def test_reject_records_reason(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")
        document_id = _upload(client, "u1").json()["document_id"]

        response = client.post(f"/v1/documents/{document_id}/reject", json={"reason": "Blurry"})

        assert response.status_code == 200
        assert response.json()["category_verified"] is False
        status = client.get("/v1/users/u1/documents/facial").json()
        assert status["status"] == "REJECTED"
        assert status["rejection_reason"] == "Blurry"

    def test_reject_without_reason_returns_422(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        document_id = _upload(client, "u1").json()["document_id"]

        assert client.post(f"/v1/documents/{document_id}/reject", json={"reason": ""}).status_code == 422

    def test_reject_with_blank_reason_returns_400(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")
        document_id = _upload(client, "u1").json()["document_id"]

        response = client.post(f"/v1/documents/{document_id}/reject", json={"reason": "   "})

        assert response.status_code == 400

    def test_unknown_document_returns_404(self, client: TestClient) -> None:
        response = client.post("/v1/documents/missing/approve")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not found"}



class TestContactEndpoints:
    """Tests for email/phone verification and revocation."""

    def test_contact_verification_sets_flag(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")

        response = client.post("/v1/users/u1/contact/phone")

        assert response.status_code == 200
        assert response.json() == {
            "user_id": "u1",
            "category": "phone",
            "category_verified": True,
            "is_fully_verified": False,
        }
        verifications = client.get("/v1/users/u1/verification").json()["verifications"]
        assert {"type": "phone", "completed": True} in verifications

    def test_document_category_returns_400(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")

        response = client.post("/v1/users/u1/contact/id")

        assert response.status_code == 400
        assert response.json()["detail"] == "id is verified by document review"

    def test_unknown_user_returns_404(self, client: TestClient) -> None:
        assert client.post("/v1/users/ghost/contact/email").status_code == 404

    def test_attempts_are_rate_limited_per_channel(
        self, app: FastAPI, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        app.dependency_overrides[get_contact_policies] = lambda: {
            category: RateLimitPolicy(
                name=f"{category.value}_code", max_attempts=2, window=timedelta(minutes=15)
            )
            for category in (Category.EMAIL, Category.PHONE)
        }
        store.add_user("u1")
        for _ in range(2):
            assert client.post("/v1/users/u1/contact/phone").status_code == 200

        response = client.post("/v1/users/u1/contact/phone")

        assert response.status_code == 429
        assert response.json()["detail"] == (
            "Too many verification attempts. Please wait 15 minutes before trying again."
        )
        assert client.post("/v1/users/u1/contact/email").status_code == 200

    def test_revoke_drops_aggregate(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user(
            "u1", email=True, phone=True, id=True, facial=True, address=True, is_verified=True
        )

        response = client.delete("/v1/users/u1/verification/address")

        assert response.status_code == 200
        assert response.json()["category_verified"] is False
        assert response.json()["is_fully_verified"] is False
        assert client.get("/v1/users/u1/trust/request_payout").json()["allowed"] is False

    def test_revoke_unknown_user_returns_404(self, client: TestClient) -> None:
        assert client.delete("/v1/users/ghost/verification/email").status_code == 404

    def test_full_verification_over_http(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        """A new user reaches payout trust through the API alone."""
        store.add_user("u1")
        assert client.post("/v1/users/u1/contact/email").status_code == 200
        assert client.post("/v1/users/u1/contact/phone").status_code == 200
        uploads = [
            {"document_type": "passport", "file_reference": "s3://docs/passport"},
            {"document_type": "facial_photo", "file_reference": "s3://docs/face"},
            {
                "document_type": "address_document",
                "file_reference": "s3://docs/address",
                "metadata": ADDRESS,
            },
        ]
        document_ids = [_upload(client, "u1", **body).json()["document_id"] for body in uploads]

        reviews = [client.post(f"/v1/documents/{d}/approve").json() for d in document_ids]

        assert [r["is_fully_verified"] for r in reviews] == [False, False, True]
        progress = client.get("/v1/users/u1/verification").json()
        assert progress["progress_percentage"] == 100
        assert progress["is_fully_verified"] is True
        assert client.get("/v1/users/u1/trust/request_payout").json() == {
            "action": "request_payout",
            "required_trust": "full",
            "allowed": True,
            "missing_categories": [],
        }

class TestSubscriptionEndpoints:
    """Tests for quota status, payments and posting eligibility."""

    def test_payment_activates_subscription(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1")

        response = client.post("/v1/users/u1/payments", json={"tier": "STANDARD"})

        assert response.status_code == 200
        data = response.json()
        assert data["current_tier"] == "STANDARD"
        assert data["is_subscription_active"] is True
        assert data["remaining_posts"] == 10
        assert data["needs_resubscribe"] is False

    def test_free_payment_returns_400(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")
        assert client.post("/v1/users/u1/payments", json={"tier": "FREE"}).status_code == 400

    def test_naive_paid_at_returns_422(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")

        response = client.post(
            "/v1/users/u1/payments", json={"tier": "STANDARD", "paid_at": "2025-06-01T00:00:00"}
        )

        assert response.status_code == 422
        assert client.get("/v1/users/u1/subscription").json()["current_tier"] == "FREE"

    def test_expired_subscription_status(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user(
            "u1",
            tier=SubscriptionTier.PREMIUM,
            status=SubscriptionStatus.ACTIVE,
            last_payment_at=datetime.now(timezone.utc) - timedelta(days=40),
        )

        data = client.get("/v1/users/u1/subscription").json()

        assert data["current_tier"] == "FREE"
        assert data["needs_resubscribe"] is True
        assert data["remaining_posts"] == 0

    def test_post_allowed(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")

        response = client.post("/v1/users/u1/post-eligibility")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "remaining_posts": 3,
            "current_tier": "FREE",
            "message": None,
            "needs_subscription": False,
        }

    def test_post_denied_returns_403(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")
        for _ in range(3):
            store.add_listing("u1", datetime.now(timezone.utc) - timedelta(hours=1))

        response = client.post("/v1/users/u1/post-eligibility")

        assert response.status_code == 403
        data = response.json()
        assert data["success"] is False
        assert data["needs_subscription"] is True
        assert data["remaining_posts"] == 0

    def test_timeout_maps_to_504(self, app: FastAPI, client: TestClient) -> None:
        quota = MagicMock(spec=QuotaEngine)
        quota.get_status.side_effect = DependencyTimeout("statement timeout")
        app.dependency_overrides[get_quota_engine] = lambda: quota

        assert client.get("/v1/users/u1/subscription").status_code == 504

    def test_store_failure_maps_to_503(self, app: FastAPI, client: TestClient) -> None:
        quota = MagicMock(spec=QuotaEngine)
        quota.get_status.side_effect = DependencyError("connection refused")
        app.dependency_overrides[get_quota_engine] = lambda: quota

        response = client.get("/v1/users/u1/subscription")

        assert response.status_code == 503
        assert "connection refused" not in response.text


class TestTrustEndpoint:
    """Tests for GET /v1/users/{user_id}/trust/{action}."""

    def test_payout_lists_missing_categories(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1", email=True, phone=True, id=True)

        response = client.get("/v1/users/u1/trust/request_payout")

        assert response.status_code == 200
        assert response.json() == {
            "action": "request_payout",
            "required_trust": "full",
            "allowed": False,
            "missing_categories": ["facial", "address"],
        }

    def test_message_allowed_with_contact_trust(
        self, client: TestClient, store: InMemoryTrustStore
    ) -> None:
        store.add_user("u1", email=True, phone=True)

        data = client.get("/v1/users/u1/trust/send_message").json()

        assert data["allowed"] is True
        assert data["missing_categories"] == []

    def test_unknown_action_returns_422(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user("u1")
        assert client.get("/v1/users/u1/trust/delete_account").status_code == 422

    def test_decision_reads_progress_once(self, app: FastAPI, client: TestClient) -> None:
        ledger = MagicMock()
        ledger.get_progress.return_value.per_category = {
            category: category is Category.EMAIL for category in Category
        }
        service = EligibilityService(ledger=ledger, quota=MagicMock())
        app.dependency_overrides[get_eligibility_service] = lambda: service

        data = client.get("/v1/users/u1/trust/send_message").json()

        assert data["allowed"] is False
        assert data["missing_categories"] == ["phone"]
        ledger.get_progress.assert_called_once_with("u1")


class TestSweepEndpoint:
    """Tests for POST /v1/subscriptions/sweep."""

    def test_missing_key_returns_401(self, client: TestClient) -> None:
        assert client.post("/v1/subscriptions/sweep").status_code == 401

    def test_wrong_key_returns_401(self, client: TestClient) -> None:
        response = client.post("/v1/subscriptions/sweep", headers={"X-API-Key": "guess"})
        assert response.status_code == 401

    def test_sweep_downgrades(self, client: TestClient, store: InMemoryTrustStore) -> None:
        store.add_user(
            "u1",
            tier=SubscriptionTier.STANDARD,
            status=SubscriptionStatus.ACTIVE,
            last_payment_at=datetime.now(timezone.utc) - timedelta(days=45),
        )

        response = client.post("/v1/subscriptions/sweep", headers={"X-API-Key": CRON_KEY})

        assert response.status_code == 200
        assert response.json() == {"message": "Updated 1 expired subscriptions", "downgraded": 1}

    def test_sweep_disabled_without_configured_key(self, app: FastAPI, client: TestClient) -> None:
        app.dependency_overrides[get_settings] = lambda: Settings(
            storage_backend="memory", cron_api_key=""
        )
        response = client.post("/v1/subscriptions/sweep", headers={"X-API-Key": ""})
        assert response.status_code == 401
