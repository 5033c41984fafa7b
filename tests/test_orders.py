"""Tests for the order ledger."""

import pytest

from errors import OrderNotFoundError, OrderStateError
from orders import OrderLedger
from schemas import OrderItem, OrderStatus


@pytest.fixture
def ledger(db):
    return OrderLedger(db)


def guide_items(catalog, price=799):
    return [OrderItem(product_id=catalog["guide_id"], price=price)]


class TestCreate:
    """Tests for recording orders."""

    def test_create_is_idempotent_per_session(self, ledger, db, catalog):
        """A second create for the same session returns the first order."""
        first_id, created = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        second_id, created_again = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))

        assert created is True
        assert created_again is False
        assert first_id == second_id
        assert db["order"].count_documents({}) == 1

    def test_new_order_is_pending_with_line_ids(self, ledger, catalog):
        """Orders start pending and each line gets its own id."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))

        order = ledger.get_by_id(order_id)

        assert order["status"] == "pending"
        assert order["stripe_session_id"] == "cs_1"
        assert order["items"][0]["id"]
        assert order["items"][0]["product"]["slug"] == "welcome-guide"
        assert order["items"][0]["bundle"] is None

    def test_line_needs_exactly_one_reference(self):
        """An order line references a product or a bundle, never both."""
        with pytest.raises(ValueError):
            OrderItem(product_id="p1", bundle_id="b1", price=1)
        with pytest.raises(ValueError):
            OrderItem(price=1)


class TestComplete:
    """Tests for order completion and token issuance."""

    def test_complete_issues_one_token_per_product(self, ledger, db, catalog):
        """Completion flips the status and issues tokens."""
        ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))

        order, issued = ledger.complete_order("cs_1")

        assert order["status"] == "completed"
        assert order["completed_at"] is not None
        assert len(issued) == 1
        assert issued[0]["product_id"] == catalog["guide_id"]

    def test_repeated_completion_changes_nothing(self, ledger, db, catalog):
        """Completing twice keeps one order and the original tokens."""
        ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        _, issued = ledger.complete_order("cs_1")
        order, issued_again = ledger.complete_order("cs_1")

        assert issued_again == []
        assert order["status"] == "completed"
        tokens = list(db["downloadtoken"].find())
        assert [t["token"] for t in tokens] == [issued[0]["token"]]

    def test_bundle_lines_expand_to_members(self, ledger, db, catalog):
        """Bundles issue a token per member; overlapping products are issued once."""
        items = [
            OrderItem(bundle_id=catalog["bundle_id"], price=1500),
            OrderItem(product_id=catalog["guide_id"], price=799),
        ]
        ledger.create("a@example.com", 2299, "cs_1", items)

        _, issued = ledger.complete_order("cs_1")

        assert sorted(t["product_id"] for t in issued) == sorted([catalog["guide_id"], catalog["canva_id"]])

    def test_unknown_session(self, ledger):
        """Completing a session with no order is an error."""
        with pytest.raises(OrderNotFoundError):
            ledger.complete_order("cs_missing")

    def test_failed_order_cannot_complete(self, ledger, catalog):
        """Only pending orders can be completed."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        ledger.update_status(order_id, OrderStatus.FAILED)

        with pytest.raises(OrderStateError):
            ledger.complete_order("cs_1")

    def test_free_order(self, ledger, catalog):
        """Free orders are recorded and completed in one step."""
        order_id, issued = ledger.create_free_order("a@example.com", guide_items(catalog, price=0))

        order = ledger.get_by_id(order_id)
        assert order["status"] == "completed"
        assert order["stripe_session_id"].startswith("free_")
        assert len(issued) == 1


class TestReceiptClaim:
    """Tests for recording that an order's receipt went out."""

    def test_receipt_is_claimed_once(self, ledger, catalog):
        """Only the first claim succeeds until the claim is released."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        assert ledger.get_by_id(order_id)["receipt_sent_at"] is None

        assert ledger.claim_receipt(order_id) is True
        assert ledger.claim_receipt(order_id) is False
        assert ledger.get_by_id(order_id)["receipt_sent_at"] is not None

        ledger.release_receipt(order_id)

        assert ledger.claim_receipt(order_id) is True

    def test_orders_without_the_field_can_be_claimed(self, ledger, db, catalog):
        """Orders recorded before the field existed still get one receipt."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        db["order"].update_one({"stripe_session_id": "cs_1"}, {"$unset": {"receipt_sent_at": ""}})

        assert ledger.claim_receipt(order_id) is True
        assert ledger.claim_receipt(order_id) is False


class TestQueries:
    """Tests for reading orders back."""

    def test_by_email_only_lists_completed(self, ledger, catalog):
        """Order history shows completed orders, newest first."""
        ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        ledger.create("a@example.com", 799, "cs_2", guide_items(catalog))
        ledger.create("other@example.com", 799, "cs_3", guide_items(catalog))
        ledger.complete_order("cs_1")
        ledger.complete_order("cs_3")

        orders = ledger.get_by_email("a@example.com")

        assert [o["stripe_session_id"] for o in orders] == ["cs_1"]

    def test_invalid_id_is_not_found(self, ledger):
        """Malformed ids behave like missing orders."""
        assert ledger.get_by_id("not-an-id") is None


class TestUpdateStatus:
    """Tests for the admin status override."""

    def test_completed_order_cannot_go_back(self, ledger, catalog):
        """A completed order never leaves completed."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        ledger.complete_order("cs_1")

        with pytest.raises(OrderStateError):
            ledger.update_status(order_id, OrderStatus.PENDING)
        assert ledger.update_status(order_id, OrderStatus.COMPLETED)["status"] == "completed"

    def test_manual_completion_issues_tokens(self, ledger, db, catalog):
        """Completing by hand goes through token issuance."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))

        order = ledger.update_status(order_id, OrderStatus.COMPLETED)

        assert order["status"] == "completed"
        assert db["downloadtoken"].count_documents({"order_id": order_id}) == 1

    def test_unknown_order(self, ledger):
        """Updating a missing order is an error."""
        with pytest.raises(OrderNotFoundError):
            ledger.update_status("64b7f0000000000000000000", OrderStatus.FAILED)

    def test_admin_route(self, client, ledger, catalog):
        """The admin route reports state conflicts as 409."""
        order_id, _ = ledger.create("a@example.com", 799, "cs_1", guide_items(catalog))
        ledger.complete_order("cs_1")

        response = client.patch(f"/api/admin/orders/{order_id}", json={"status": "failed"})

        assert response.status_code == 409
        assert response.json() == {"error": "Completed orders cannot change status"}
