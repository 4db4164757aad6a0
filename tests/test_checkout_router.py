"""Integration tests for checkout endpoints (app/routers/checkout.py)"""
import asyncio
import pytest
from decimal import Decimal
from unittest.mock import patch

from app.config import settings
from app.integrations.shopier import compute_return_signature
from app.models.discount_code import DiscountCode
from app.models.enrollment import Enrollment
from app.models.order import Order, OrderStatus


CHECKOUT_BODY = {
    "courseId": "C1",
    "email": "buyer@test.com",
    "name": "Ayşe Yılmaz",
    "phone": "5550000000",
    "locale": "tr",
}


class TestCreatePayment:
    def test_paid_order_returns_gateway_url(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json=CHECKOUT_BODY, headers={"X-Forwarded-For": "9.9.9.9, 10.0.0.1"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["redirectUrl"] == gateway.build_authorization_url.return_value
        assert data["redirectToDirect"] is False
        assert data["userIdUsed"] == "buyer@test.com"
        order = db.query(Order).filter(Order.order_id == data["orderId"]).one()
        assert order.ip_address == "9.9.9.9"

    def test_authenticated_user_is_used(self, client_with_user, course, mock_gateway):
        client, db, user = client_with_user

        response = client.post("/api/shopier-payment", json=CHECKOUT_BODY)

        assert response.status_code == 200
        assert response.json()["userIdUsed"] == user.id

    def test_free_order_redirects_directly(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        db.add(DiscountCode(code="FREE100", discount_amount=Decimal("100"), discount_type="percentage", max_usage=10))
        db.commit()

        response = client.post("/api/shopier-payment", json={
            **CHECKOUT_BODY, "amount": 0, "discountCodes": "FREE100", "totalDiscount": 200,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["redirectToDirect"] is True
        assert data["enrollmentSuccess"] is True
        assert "free=true" in data["redirectUrl"]
        gateway.build_authorization_url.assert_not_called()
        assert db.query(Enrollment).count() == 1

    def test_missing_fields_returns_400(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={"courseId": "C1"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "invalid_request"

    def test_unknown_course_returns_404(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={**CHECKOUT_BODY, "courseId": "NOPE"})

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_negative_amount_rejected(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={**CHECKOUT_BODY, "amount": -5})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert db.query(Order).count() == 0

    def test_negative_discount_rejected(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={**CHECKOUT_BODY, "totalDiscount": -50})

        assert response.status_code == 400
        assert db.query(Order).count() == 0

    def test_whitespace_name_returns_400(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={**CHECKOUT_BODY, "name": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert db.query(Order).count() == 0

    def test_zero_amount_without_discount_returns_400(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={**CHECKOUT_BODY, "amount": 0})

        assert response.status_code == 400
        assert db.query(Order).count() == 0
        assert db.query(Enrollment).count() == 0

    def test_unbacked_discount_claim_returns_400(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client

        response = client.post("/api/shopier-payment", json={
            **CHECKOUT_BODY, "amount": 50, "discountCodes": "MADEUP", "totalDiscount": 150,
        })

        assert response.status_code == 400
        assert db.query(Order).count() == 0


class TestShopierCallback:
    def _checkout(self, client, gateway):
        response = client.post("/api/shopier-payment", json=CHECKOUT_BODY)
        return response.json()["orderId"], gateway.build_authorization_url.call_args[0][0].state

    def test_get_callback_redirects_to_success(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id, state = self._checkout(client, gateway)

        response = client.get(
            "/api/shopier-callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://myunilab.net/tr/payment-success?")
        assert f"orderId={order_id}" in location
        assert "enrolled=true" in location
        db.expire_all()
        assert db.query(Order).filter(Order.order_id == order_id).one().status == OrderStatus.COMPLETED.value

    def test_post_callback_reads_form(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id, state = self._checkout(client, gateway)

        response = client.post(
            "/api/shopier-callback",
            data={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert "payment-success" in response.headers["location"]

    def test_invalid_state_redirects_to_failure(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client

        response = client.get(
            "/api/shopier-callback",
            params={"code": "auth-code", "state": "tampered"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://myunilab.net/tr/payment-failed?error=invalid_state"

    def test_cancelled_payment_redirects_to_failure(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id, state = self._checkout(client, gateway)

        response = client.get(
            "/api/shopier-callback",
            params={"error": "access_denied", "state": state},
            follow_redirects=False,
        )

        assert "error=payment_cancelled" in response.headers["location"]
        db.expire_all()
        assert db.query(Order).filter(Order.order_id == order_id).one().status == OrderStatus.FAILED.value

    def test_callback_work_runs_off_the_event_loop(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client
        seen = {}

        def reconcile(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            return "https://myunilab.net/tr/payment-success?orderId=MYU-1-1"

        with patch("app.services.orders.reconcile_callback", side_effect=reconcile):
            response = client.get(
                "/api/shopier-callback",
                params={"code": "auth-code", "state": "s"},
                follow_redirects=False,
            )

        assert response.status_code == 302
        assert seen["on_loop"] is False


RETURN_SECRET = "shopier-api-secret"


class TestShopierReturn:
    @pytest.fixture(autouse=True)
    def api_secret(self):
        with patch.object(settings, "shopier_api_secret", RETURN_SECRET):
            yield

    def _signed(self, order_id, **overrides):
        params = {
            "status": "success",
            "platform_order_id": order_id,
            "payment_id": "PAY-77",
            "random_nr": "4711",
            "total_order_value": "200.00",
            "currency": "TRY",
            **overrides,
        }
        params["signature"] = compute_return_signature(params, RETURN_SECRET)
        return params

    def test_signed_get_completes_order(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id = client.post("/api/shopier-payment", json=CHECKOUT_BODY).json()["orderId"]

        response = client.get("/api/shopier-return", params=self._signed(order_id), follow_redirects=False)

        assert response.status_code == 303
        location = response.headers["location"]
        assert location.startswith("https://myunilab.net/tr/payment-success?")
        assert "paymentId=PAY-77" in location
        assert "enrolled=true" in location
        db.expire_all()
        order = db.query(Order).filter(Order.order_id == order_id).one()
        assert order.status == OrderStatus.COMPLETED.value
        assert order.payment_id == "PAY-77"
        assert db.query(Enrollment).count() == 1

    def test_signed_form_post(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id = client.post("/api/shopier-payment", json=CHECKOUT_BODY).json()["orderId"]

        response = client.post("/api/shopier-return", data=self._signed(order_id), follow_redirects=False)

        assert response.status_code == 303
        assert "payment-success" in response.headers["location"]

    def test_tampered_return_is_rejected(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id = client.post("/api/shopier-payment", json=CHECKOUT_BODY).json()["orderId"]
        params = {**self._signed(order_id), "total_order_value": "0.01"}

        response = client.post("/api/shopier-return", data=params, follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "https://myunilab.net/tr/payment-failed?error=invalid_signature"
        db.expire_all()
        assert db.query(Order).filter(Order.order_id == order_id).one().status == OrderStatus.PENDING.value
        assert db.query(Enrollment).count() == 0

    def test_forged_success_for_unknown_order_is_rejected(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client

        response = client.get("/api/shopier-return", params={
            "status": "success", "platform_order_id": "MYU-1-1", "signature": "forged",
        }, follow_redirects=False)

        assert response.status_code == 303
        assert "error=invalid_signature" in response.headers["location"]

    def test_failed_payment_redirects_to_failure(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id = client.post("/api/shopier-payment", json=CHECKOUT_BODY).json()["orderId"]

        response = client.get(
            "/api/shopier-return", params=self._signed(order_id, status="failed"), follow_redirects=False,
        )

        assert "error=payment_failed" in response.headers["location"]
        db.expire_all()
        assert db.query(Order).filter(Order.order_id == order_id).one().status == OrderStatus.FAILED.value


class TestOrderById:
    def test_returns_summary(self, unauthenticated_client, course):
        client, db, gateway = unauthenticated_client
        order_id = client.post("/api/shopier-payment", json=CHECKOUT_BODY).json()["orderId"]

        response = client.get("/api/order-by-id", params={"order_id": order_id})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "courseId": "C1",
            "courseName": "Python 101",
            "status": "pending",
        }

    def test_missing_id_returns_400(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client
        assert client.get("/api/order-by-id").status_code == 400

    def test_unknown_id_returns_404(self, unauthenticated_client):
        client, db, gateway = unauthenticated_client
        assert client.get("/api/order-by-id", params={"order_id": "MYU-0-0"}).status_code == 404


class TestSyncPendingOrders:
    def test_requires_auth(self, client):
        response = client.post("/api/sync-pending-shopier-orders")
        assert response.status_code in (401, 403)

    def test_syncs_guest_link_purchases(self, client_with_user, course):
        client, db, user = client_with_user
        from app.services import orders
        with patch("app.services.orders.lookup_identity_by_email", side_effect=lambda _db, email: orders.resolve_identity(email)):
            orders.reconcile_webhook(db, {
                "order_id": "SHP-1",
                "buyer_email": user.email,
                "product_id": "43968703",
                "amount": "200",
                "status": "success",
            })

        response = client.post("/api/sync-pending-shopier-orders")

        assert response.status_code == 200
        assert response.json() == {"success": True, "synced": 1}
        assert db.query(Enrollment).one().user_id == user.id
