"""Integration tests for /api/shopier-webhook endpoint (app/routers/webhooks.py)"""
import asyncio
import pytest
from unittest.mock import patch

from app.models.enrollment import Enrollment
from app.models.order import Order
from app.services import orders


VALID_TOKEN = "test-webhook-token"

LINK_SALE_PAYLOAD = {
    "order_id": "SHP-9001",
    "buyer_email": "buyer@test.com",
    "buyer_name": "Ayşe Yılmaz",
    "product_id": "43968703",
    "amount": "200.00",
    "status": "success",
}


class TestWebhookPing:
    def test_get_reports_active(self, client):
        response = client.get("/api/shopier-webhook")

        assert response.status_code == 200
        assert response.json()["ok"] is True


class TestWebhookAuth:
    def test_valid_token_returns_200(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        with patch("app.routers.webhooks.settings") as mock_settings:
            mock_settings.shopier_webhook_token = VALID_TOKEN
            response = client.post(
                "/api/shopier-webhook",
                json=LINK_SALE_PAYLOAD,
                headers={"X-Shopier-Token": VALID_TOKEN},
            )

        assert response.status_code == 200

    def test_invalid_token_returns_401(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        with patch("app.routers.webhooks.settings") as mock_settings:
            mock_settings.shopier_webhook_token = VALID_TOKEN
            response = client.post(
                "/api/shopier-webhook",
                json=LINK_SALE_PAYLOAD,
                headers={"X-Shopier-Token": "wrong-token"},
            )

        assert response.status_code == 401
        assert db.query(Order).count() == 0

    def test_missing_token_returns_401(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        with patch("app.routers.webhooks.settings") as mock_settings:
            mock_settings.shopier_webhook_token = VALID_TOKEN
            response = client.post("/api/shopier-webhook", json=LINK_SALE_PAYLOAD)

        assert response.status_code == 401


class TestWebhookProcessing:
    def test_json_payload_for_registered_buyer(self, unauthenticated_client, course, registered_user):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-webhook", json=LINK_SALE_PAYLOAD)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["orderId"] == "SHP-9001"
        assert data["courseId"] == "C1"
        assert data["enrolled"] is True
        assert db.query(Enrollment).one().user_id == registered_user.id

    def test_form_payload_with_turkish_fields(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-webhook", data={
            "siparis_no": "SHP-42",
            "alici_email": "guest@test.com",
            "tutar": "200.00",
            "durum": "success",
            "link": "https://www.shopier.com/MyUNI/43968703",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["orderId"] == "SHP-42"
        assert data["enrolled"] is False
        assert db.query(Order).filter(Order.order_id == "SHP-42").one().user_email == "guest@test.com"

    def test_duplicate_delivery_is_acknowledged(self, unauthenticated_client, course, registered_user):
        client, db, gateway = unauthenticated_client

        client.post("/api/shopier-webhook", json=LINK_SALE_PAYLOAD)
        response = client.post("/api/shopier-webhook", json=LINK_SALE_PAYLOAD)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert db.query(Order).count() == 1
        assert db.query(Enrollment).count() == 1

    def test_missing_email_returns_400(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        payload = {k: v for k, v in LINK_SALE_PAYLOAD.items() if k != "buyer_email"}

        response = client.post("/api/shopier-webhook", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unmapped_product_returns_404(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-webhook", json={**LINK_SALE_PAYLOAD, "product_id": "1"})

        assert response.status_code == 404
        assert db.query(Order).count() == 0

    def test_non_object_json_returns_400(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-webhook", json=["not", "an", "object"])

        assert response.status_code == 400

    @pytest.mark.parametrize("amount", ["-200.00", "NaN"])
    def test_invalid_amount_returns_400(self, unauthenticated_client, course, amount):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-webhook", json={**LINK_SALE_PAYLOAD, "amount": amount})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert db.query(Order).count() == 0

    def test_processing_runs_off_the_event_loop(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client
        seen = {}

        def reconcile(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            return orders.WebhookOutcome(order_id="SHP-9001", course_id="C1")

        with patch("app.services.orders.reconcile_webhook", side_effect=reconcile):
            response = client.post("/api/shopier-webhook", json=LINK_SALE_PAYLOAD)

        assert response.status_code == 200
        assert seen["on_loop"] is False
