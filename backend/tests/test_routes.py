# Overview: Pytest coverage for the HTTP API; auth, status codes and JSON bodies.

"""
API route tests

Verifies:
- 401 without a token, 403 without the permission
- sales: 201 on create, 200 on replay, 400 with the stock message
- void answers with the invoice number; a second void is 400
- receipts and transfers through their endpoints
- health, login and logout
"""

import re

from posledger.services import transfer_service

from conftest import auth_headers, get_auth_token, unit_id


INVOICE_PATTERN = re.compile(r"^INV-\d{6}-\d{4}$")


def _sale_body(branch, cable_variation, quantity=5, **extra):
    body = {
        "location_id": branch.id,
        "items": [{"variation_id": cable_variation.id, "quantity": quantity, "unit_price": 70.00}],
        "payments": [{"method": "cash", "amount": 70.00 * quantity}],
    }
    body.update(extra)
    return body


# =============================================================================
# AUTHENTICATION
# =============================================================================


class TestAuthentication:

    def test_missing_token_is_rejected(self, client, db_session):
        response = client.get("/api/sales")
        assert response.status_code == 401
        assert response.json["error"] == "Authentication required"

    def test_unknown_token_is_rejected(self, client, db_session):
        response = client.get("/api/sales", headers=auth_headers("not-a-token"))
        assert response.status_code == 401

    def test_login_with_wrong_password(self, client, cashier_user):
        response = client.post("/api/auth/login", json={"username": "carl", "password": "Wrong123!"})
        assert response.status_code == 401
        assert response.json["error"] == "Invalid credentials"

    def test_login_requires_both_fields(self, client, db_session):
        response = client.post("/api/auth/login", json={"username": "carl"})
        assert response.status_code == 400

    def test_login_returns_permissions(self, client, cashier_user):
        response = client.post("/api/auth/login", json={"username": "carl", "password": "Password123!"})
        assert response.status_code == 200
        assert response.json["token"]
        assert "CREATE_SALE" in response.json["permissions"]
        assert "VOID_SALE" not in response.json["permissions"]

    def test_me_then_logout(self, client, cashier_user):
        token = get_auth_token(client, "carl")

        me = client.get("/api/auth/me", headers=auth_headers(token))
        assert me.status_code == 200
        assert me.json["user"]["username"] == "carl"
        assert me.json["roles"] == ["cashier"]

        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 200
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401


class TestHealth:

    def test_health(self, client, db_session):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json["status"] == "ok"
        assert response.json["database"]["status"] == "healthy"


# =============================================================================
# SALES
# =============================================================================


class TestSalesApi:

    def test_create_sale(self, client, stock, cashier_headers, branch, cable_variation):
        response = client.post("/api/sales", json=_sale_body(branch, cable_variation), headers=cashier_headers)

        assert response.status_code == 201
        assert INVOICE_PATTERN.match(response.json["invoice_number"])
        assert response.json["total"] == "350.00"
        assert response.json["items"][0]["quantity"] == "5"

    def test_camel_case_fields(self, client, stock, cashier_headers, branch, phone_variation):
        response = client.post("/api/sales", json={
            "locationId": branch.id,
            "items": [{
                "productVariationId": phone_variation.id,
                "quantity": 1,
                "unitPrice": "499.00",
                "serialNumberIds": [unit_id("BR-0001")],
            }],
            "payments": [{"paymentMethod": "card", "amount": "499.00", "referenceNumber": "AUTH-1"}],
            "clientReference": "till-1-0001",
        }, headers=cashier_headers)

        assert response.status_code == 201
        assert response.json["client_reference"] == "till-1-0001"

    def test_replay_returns_200(self, client, stock, cashier_headers, branch, cable_variation):
        body = _sale_body(branch, cable_variation, client_reference="till-1-0002")
        first = client.post("/api/sales", json=body, headers=cashier_headers)
        second = client.post("/api/sales", json=body, headers=cashier_headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json["id"] == first.json["id"]

    def test_insufficient_stock(self, client, stock, cashier_headers, branch, cable_variation, cable):
        response = client.post(
            "/api/sales",
            json=_sale_body(branch, cable_variation, quantity=101),
            headers=cashier_headers,
        )

        assert response.status_code == 400
        assert response.json["error"] == f"Insufficient stock for item {cable.id}. Available: 100, Required: 101"
        assert response.json["available"] == "100"

    def test_bad_input_is_400(self, client, stock, cashier_headers, branch):
        response = client.post("/api/sales", json={"location_id": branch.id, "items": []}, headers=cashier_headers)
        assert response.status_code == 400
        assert "items" in response.json["error"]

    def test_cashier_cannot_void(self, client, stock, cashier_headers, branch, cable_variation):
        sale = client.post("/api/sales", json=_sale_body(branch, cable_variation), headers=cashier_headers).json

        response = client.delete(f"/api/sales/{sale['id']}", headers=cashier_headers)
        assert response.status_code == 403
        assert response.json["required_permission"] == "VOID_SALE"

    def test_void_then_void_again(self, client, stock, cashier_headers, manager_headers, branch, cable_variation):
        sale = client.post("/api/sales", json=_sale_body(branch, cable_variation), headers=cashier_headers).json

        response = client.delete(
            f"/api/sales/{sale['id']}",
            json={"reason": "Wrong item"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json["message"] == f"Sale {sale['invoice_number']} voided and stock restored"
        assert response.json["invoiceNumber"] == sale["invoice_number"]
        assert response.json["sale"]["status"] == "voided"

        again = client.delete(f"/api/sales/{sale['id']}", headers=manager_headers)
        assert again.status_code == 400

    def test_unknown_sale_is_404(self, client, stock, manager_headers):
        assert client.get("/api/sales/99999", headers=manager_headers).status_code == 404

    def test_list_sales(self, client, stock, cashier_headers, branch, cable_variation):
        client.post("/api/sales", json=_sale_body(branch, cable_variation), headers=cashier_headers)

        response = client.get(f"/api/sales?location_id={branch.id}", headers=cashier_headers)
        assert response.status_code == 200
        assert len(response.json["sales"]) == 1
        assert "items" not in response.json["sales"][0]


# =============================================================================
# INVENTORY
# =============================================================================


class TestInventoryApi:

    def test_receive_then_replay(self, client, admin_headers, branch, cable_variation):
        body = {
            "location_id": branch.id,
            "variation_id": cable_variation.id,
            "quantity": 12,
            "unit_cost": 3.5,
            "client_reference": "po-2001",
        }
        first = client.post("/api/inventory/receive", json=body, headers=admin_headers)
        second = client.post("/api/inventory/receive", json=body, headers=admin_headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json["receipt"]["id"] == first.json["receipt"]["id"]

        stock = client.get(
            f"/api/inventory/stock?variation_id={cable_variation.id}&location_id={branch.id}",
            headers=admin_headers,
        )
        assert stock.json["stock"][0]["quantity_available"] == "12"

    def test_receive_serialized_with_strings(self, client, admin_headers, branch, phone_variation):
        response = client.post("/api/inventory/receive", json={
            "location_id": branch.id,
            "variation_id": phone_variation.id,
            "quantity": 2,
            "serials": ["API-0001", "API-0002"],
        }, headers=admin_headers)
        assert response.status_code == 201

        units = client.get(f"/api/serials?location_id={branch.id}", headers=admin_headers)
        assert units.status_code == 200
        assert {u["serial_number"] for u in units.json["serial_numbers"]} == {"API-0001", "API-0002"}

    def test_movements_and_reconciliation(self, client, stock, admin_headers, branch, cable_variation):
        movements = client.get(
            f"/api/inventory/movements?variation_id={cable_variation.id}&location_id={branch.id}",
            headers=admin_headers,
        )
        assert movements.status_code == 200
        assert [m["quantity_delta"] for m in movements.json["movements"]] == ["100"]

        report = client.get("/api/inventory/reconciliation", headers=admin_headers)
        assert report.status_code == 200
        assert report.json["balanced"] is True


# =============================================================================
# TRANSFERS
# =============================================================================


class TestTransfersApi:

    def _create(self, client, headers, warehouse, branch, cable_variation):
        return client.post("/api/transfers", json={
            "from_location_id": warehouse.id,
            "to_location_id": branch.id,
            "items": [{"variation_id": cable_variation.id, "quantity": 10}],
        }, headers=headers)

    def test_create_lists_available_actions(self, client, stock, admin_headers, warehouse, branch, cable_variation):
        response = self._create(client, admin_headers, warehouse, branch, cable_variation)

        assert response.status_code == 201
        assert response.json["status"] == "draft"
        assert response.json["available_actions"] == ["submit", "cancel"]

        fetched = client.get(f"/api/transfers/{response.json['id']}", headers=admin_headers)
        assert fetched.json["available_actions"] == ["submit", "cancel"]

    def test_creator_cannot_approve(self, client, stock, admin_headers, warehouse, branch, cable_variation):
        transfer = self._create(client, admin_headers, warehouse, branch, cable_variation).json
        client.post(f"/api/transfers/{transfer['id']}/submit-for-check", headers=admin_headers)

        response = client.post(f"/api/transfers/{transfer['id']}/check-approve", headers=admin_headers)
        assert response.status_code == 403
        assert response.json["code"] == "SAME_USER_VIOLATION"

    def test_full_workflow(self, client, stock, admin_headers, manager_headers, warehouse, branch, cable_variation):
        transfer = self._create(client, admin_headers, warehouse, branch, cable_variation).json
        tid = transfer["id"]

        assert client.post(f"/api/transfers/{tid}/submit-for-check", headers=admin_headers).status_code == 200
        approved = client.post(f"/api/transfers/{tid}/check-approve", json={"notes": "ok"}, headers=manager_headers)
        assert approved.json["status"] == "approved"

        sent = client.post(f"/api/transfers/{tid}/send", headers=admin_headers)
        assert sent.json["status"] == "in_transit"

        client.post(f"/api/transfers/{tid}/mark-arrived", headers=manager_headers)
        verifying = client.post(f"/api/transfers/{tid}/start-verification", headers=manager_headers).json
        item_id = verifying["items"][0]["id"]

        verified = client.post(
            f"/api/transfers/{tid}/verify-item",
            json={"item_id": item_id, "received_quantity": 10},
            headers=manager_headers,
        )
        assert verified.json["status"] == "verified"

        completed = client.post(f"/api/transfers/{tid}/complete", headers=manager_headers)
        assert completed.status_code == 200
        assert completed.json["status"] == "completed"
        assert completed.json["available_actions"] == []

    def test_cancel_after_send_is_400(self, client, stock, admin_user, manager_user, admin_headers,
                                      warehouse, branch, cable_variation):
        transfer = self._create(client, admin_headers, warehouse, branch, cable_variation).json
        transfer_service.submit_for_check(transfer["id"], user_id=admin_user.id)
        transfer_service.approve(transfer["id"], user_id=manager_user.id)
        transfer_service.send(transfer["id"], user_id=admin_user.id)

        response = client.delete(f"/api/transfers/{transfer['id']}", headers=admin_headers)
        assert response.status_code == 400
        assert "already been sent" in response.json["error"]

    def test_cashier_cannot_create(self, client, stock, cashier_headers, warehouse, branch, cable_variation):
        response = self._create(client, cashier_headers, warehouse, branch, cable_variation)
        assert response.status_code == 403


# =============================================================================
# AUDIT LOG
# =============================================================================


class TestAuditApi:

    def test_manager_reads_audit_log(self, client, stock, cashier_headers, manager_headers, branch, cable_variation):
        sale = client.post("/api/sales", json=_sale_body(branch, cable_variation), headers=cashier_headers).json

        response = client.get(f"/api/audit-logs?entity_type=sale&entity_id={sale['id']}", headers=manager_headers)
        assert response.status_code == 200
        assert [e["action"] for e in response.json["entries"]] == ["sale_create"]

    def test_cashier_cannot_read_audit_log(self, client, stock, cashier_headers):
        assert client.get("/api/audit-logs", headers=cashier_headers).status_code == 403

    def test_bad_since_is_400(self, client, stock, manager_headers):
        response = client.get("/api/audit-logs?since=yesterday", headers=manager_headers)
        assert response.status_code == 400
