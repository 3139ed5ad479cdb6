"""
HTTP API Tests
==============

End-to-end tests through the ASGI app:
- API key auth and the 501 fallback for unimplemented /v1 routes
- Receipt submission and its error envelopes
- Subscriber reads, attributes and identify
- Webhook acknowledgement
- Admin routes behind HTTP Basic
"""

import base64
from unittest.mock import patch

import pytest

from openrevenue.config import settings

from factories import app_store_transaction


USER = "user-1"


def _receipt(receipt_data="receipt-ok", **fields):
    body = {"app_user_id": USER, "product_id": "pro_monthly", "receipt_data": receipt_data}
    body.update(fields)
    return body


class TestApiKeyAuth:
    @pytest.mark.asyncio
    async def test_missing_key(self, client):
        response = await client.get(f"/v1/subscribers/{USER}")

        assert response.status_code == 401
        assert response.json()["error"] == "missing_api_key"

    @pytest.mark.asyncio
    async def test_unknown_key(self, client, tenant_app):
        response = await client.get(
            f"/v1/subscribers/{USER}", headers={"Authorization": "Bearer or_unknown"}
        )

        assert response.status_code == 403
        assert response.json()["error"] == "invalid_api_key"

    @pytest.mark.asyncio
    async def test_x_api_key_header(self, client, tenant_app):
        response = await client.get(
            f"/v1/subscribers/{USER}", headers={"X-API-Key": tenant_app.api_key}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unimplemented_route(self, client, api_headers):
        response = await client.get("/v1/offerings", headers=api_headers)

        assert response.status_code == 501
        assert response.json() == {
            "error": "not_implemented",
            "message": "Endpoint not implemented.",
            "resolution": "fix_request",
        }

    @pytest.mark.asyncio
    async def test_unimplemented_route_still_needs_key(self, client):
        response = await client.post("/v1/products/anything")

        assert response.status_code == 401


class TestReceipts:
    @pytest.mark.asyncio
    async def test_valid_receipt(self, client, api_headers, app_store):
        app_store.add("receipt-ok", [app_store_transaction()])

        response = await client.post("/v1/receipts", json=_receipt(), headers=api_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["request_date_ms"] > 0
        subscriber = data["subscriber"]
        assert subscriber["original_app_user_id"] == USER
        assert subscriber["subscriptions"]["pro_monthly"]["is_active"] is True
        assert subscriber["entitlements"]["pro_monthly"]["is_active"] is True

    @pytest.mark.asyncio
    async def test_sandbox_receipt_is_retried(self, client, api_headers, app_store):
        app_store.add("receipt-sb", [app_store_transaction()], environment="Sandbox")

        response = await client.post(
            "/v1/receipts", json=_receipt("receipt-sb"), headers=api_headers
        )

        assert response.status_code == 200
        assert len(app_store.calls) == 2
        assert response.json()["subscriber"]["subscriptions"]["pro_monthly"]["is_sandbox"] is True

    @pytest.mark.asyncio
    async def test_rejected_receipt(self, client, api_headers):
        response = await client.post(
            "/v1/receipts", json=_receipt("not-a-receipt"), headers=api_headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "receipt_validation_failed"
        assert body["resolution"] == "fix_request"
        assert body["details"]["reason"] == "store_rejected"

    @pytest.mark.asyncio
    async def test_missing_receipt_data(self, client, api_headers):
        response = await client.post(
            "/v1/receipts", json=_receipt(receipt_data=None), headers=api_headers
        )

        assert response.status_code == 400
        assert response.json()["details"]["reason"] == "missing_receipt_data"

    @pytest.mark.asyncio
    async def test_store_timeout(self, client, api_headers):
        response = await client.post(
            "/v1/receipts", json=_receipt("timeout"), headers=api_headers
        )

        assert response.status_code == 503
        assert response.json()["error"] == "store_unavailable"
        assert response.json()["resolution"] == "retry_later"

    @pytest.mark.asyncio
    async def test_store_not_configured(self, client, admin_headers):
        created = await client.post("/admin/apps", json={"name": "Bare"}, headers=admin_headers)
        headers = {"Authorization": f"Bearer {created.json()['api_key']}"}

        response = await client.post("/v1/receipts", json=_receipt(), headers=headers)

        assert response.status_code == 500
        assert response.json()["error"] == "store_not_configured"
        assert response.json()["details"]["reason"] == "missing_shared_secret"

    @pytest.mark.asyncio
    async def test_invalid_body(self, client, api_headers):
        response = await client.post(
            "/v1/receipts", json={"product_id": "pro_monthly"}, headers=api_headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_payload"
        assert "app_user_id" in body["message"]

    @pytest.mark.asyncio
    async def test_oversized_fields_are_invalid(self, client, api_headers):
        for field, value in (
            ("store", "s" * 40),
            ("transaction_id", "t" * 300),
            ("package_name", "p" * 300),
        ):
            response = await client.post(
                "/v1/receipts", json=_receipt(**{field: value}), headers=api_headers
            )

            assert response.status_code == 400
            assert response.json()["error"] == "invalid_payload"


class TestSubscribers:
    @pytest.mark.asyncio
    async def test_unknown_subscriber_is_created(self, client, api_headers):
        response = await client.get(f"/v1/subscribers/{USER}", headers=api_headers)

        assert response.status_code == 200
        subscriber = response.json()["subscriber"]
        assert subscriber["original_app_user_id"] == USER
        assert subscriber["entitlements"] == {}
        assert subscriber["subscriptions"] == {}

    @pytest.mark.asyncio
    async def test_cache_hit_needs_no_database(self, client, api_headers):
        first = await client.get(f"/v1/subscribers/{USER}", headers=api_headers)

        with patch(
            "openrevenue.db.session.get_session_factory",
            side_effect=RuntimeError("database unavailable"),
        ):
            second = await client.get(f"/v1/subscribers/{USER}", headers=api_headers)

        assert second.status_code == 200
        assert second.json()["subscriber"] == first.json()["subscriber"]

    @pytest.mark.asyncio
    async def test_purchase_is_visible_on_read(self, client, api_headers, app_store):
        app_store.add("receipt-ok", [app_store_transaction()])
        await client.get(f"/v1/subscribers/{USER}", headers=api_headers)

        await client.post("/v1/receipts", json=_receipt(), headers=api_headers)
        response = await client.get(f"/v1/subscribers/{USER}", headers=api_headers)

        assert response.json()["subscriber"]["subscriptions"]["pro_monthly"]["is_active"] is True

    @pytest.mark.asyncio
    async def test_update_attributes(self, client, api_headers):
        response = await client.post(
            f"/v1/subscribers/{USER}/attributes",
            json={"attributes": {"campaign": "spring"}},
            headers=api_headers,
        )

        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_oversized_user_id_is_invalid(self, client, api_headers):
        response = await client.get(f"/v1/subscribers/{'u' * 300}", headers=api_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_identify_created_then_existing(self, client, api_headers, app_store):
        app_store.add("receipt-ok", [app_store_transaction()])
        await client.post(
            "/v1/receipts", json=_receipt(app_user_id="$anon:1"), headers=api_headers
        )

        first = await client.post(
            "/v1/subscribers/identify",
            json={"app_user_id": "$anon:1", "new_app_user_id": USER},
            headers=api_headers,
        )
        second = await client.post(
            "/v1/subscribers/identify",
            json={"app_user_id": "$anon:2", "new_app_user_id": USER},
            headers=api_headers,
        )

        assert first.status_code == 201
        assert first.json()["subscriber"]["subscriptions"]["pro_monthly"]["is_active"] is True
        assert second.status_code == 200

        old = await client.get("/v1/subscribers/$anon:1", headers=api_headers)
        assert old.json()["subscriber"]["subscriptions"] == {}


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_acknowledged(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks",
            json={"event": {"type": "INITIAL_PURCHASE", "app_user_id": USER, "product_id": "pro_monthly"}},
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        info = await client.get(f"/v1/subscribers/{USER}", headers=api_headers)
        assert info.json()["subscriber"]["entitlements"]["pro_monthly"]["is_active"] is True

    @pytest.mark.asyncio
    async def test_duplicate(self, client, api_headers):
        payload = {"id": "evt-9", "type": "RENEWAL", "app_user_id": USER, "product_id": "pro_monthly"}

        await client.post("/v1/webhooks", json=payload, headers=api_headers)
        response = await client.post("/v1/webhooks", json=payload, headers=api_headers)

        assert response.json() == {"status": "ok", "duplicate": True}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks",
            content=b"{not json",
            headers={**api_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_non_object_body(self, client, api_headers):
        response = await client.post("/v1/webhooks", json=[1, 2], headers=api_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_missing_user(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks",
            json={"type": "CANCELLATION"},
            headers=api_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "missing_app_user_id"

    @pytest.mark.asyncio
    async def test_unreadable_dates_and_store_are_tolerated(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks",
            json={
                "type": "INITIAL_PURCHASE",
                "app_user_id": USER,
                "product_id": "pro_monthly",
                "expires_date_ms": 10**20,
                "store": 5,
            },
            headers=api_headers,
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_oversized_user(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks",
            json={"type": "CANCELLATION", "app_user_id": "u" * 300},
            headers=api_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_unknown_type_is_acknowledged(self, client, api_headers):
        response = await client.post(
            "/v1/webhooks", json={"type": "TRANSFER"}, headers=api_headers
        )

        assert response.status_code == 200


class TestAdmin:
    @pytest.mark.asyncio
    async def test_requires_basic_auth(self, client):
        response = await client.get("/admin/health")

        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Basic")
        assert response.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client):
        token = base64.b64encode(b"admin:wrong").decode()

        response = await client.get("/admin/health", headers={"Authorization": f"Basic {token}"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_not_configured(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_PASSWORD", "")

        response = await client.get("/admin/health", headers=admin_headers)

        assert response.status_code == 500
        assert response.json()["error"] == "basic_auth_not_configured"

    @pytest.mark.asyncio
    async def test_create_app_and_use_key(self, client, admin_headers):
        response = await client.post(
            "/admin/apps",
            json={"name": "New App", "app_store_shared_secret": "s3cret"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        app = response.json()
        assert app["app_store_configured"] is True
        assert app["play_store_configured"] is False
        assert "app_store_shared_secret" not in app

        fetched = await client.get(f"/admin/apps/{app['app_id']}", headers=admin_headers)
        assert fetched.json()["name"] == "New App"

        info = await client.get(
            f"/v1/subscribers/{USER}", headers={"Authorization": f"Bearer {app['api_key']}"}
        )
        assert info.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_app(self, client, admin_headers):
        response = await client.get(
            "/admin/apps/00000000-0000-0000-0000-000000000000", headers=admin_headers
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_configure_stores(self, client, admin_headers):
        created = (
            await client.post("/admin/apps", json={"name": "Bare"}, headers=admin_headers)
        ).json()

        response = await client.patch(
            f"/admin/apps/{created['app_id']}/stores",
            json={"play_store_service_account_json": "{}", "play_store_package_name": "com.x"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["play_store_configured"] is True
        assert response.json()["app_store_configured"] is False

    @pytest.mark.asyncio
    async def test_issue_and_revoke_key(self, client, admin_headers, tenant_app):
        base = f"/admin/apps/{tenant_app.app_id}/keys"

        issued = await client.post(base, json={"label": "server"}, headers=admin_headers)
        assert issued.status_code == 201
        key = issued.json()
        headers = {"Authorization": f"Bearer {key['key']}"}

        assert (await client.get(f"/v1/subscribers/{USER}", headers=headers)).status_code == 200

        revoked = await client.delete(f"{base}/{key['key_id']}", headers=admin_headers)
        assert revoked.status_code == 200
        assert revoked.json()["revoked_at"] is not None

        assert (await client.get(f"/v1/subscribers/{USER}", headers=headers)).status_code == 403

        again = await client.delete(f"{base}/{key['key_id']}", headers=admin_headers)
        assert again.status_code == 409
        assert again.json()["error"] == "conflict"
