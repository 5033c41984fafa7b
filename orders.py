import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogService
from database import serialize, to_object_id, utcnow
from downloads import TokenIssuer
from errors import OrderNotFoundError, OrderStateError
from schemas import Order, OrderItem, OrderStatus

logger = logging.getLogger(__name__)


class OrderLedger:
    """Authoritative record of orders.

    An order is keyed by its Stripe checkout session id. It is recorded
    ``pending`` and moves to ``completed`` exactly once; completion issues
    the download tokens. Both steps can be repeated for the same session
    without creating a second order or a second token per product.
    """

    def __init__(self, db: Database):
        self.db = db
        self.catalog = CatalogService(db)
        self.issuer = TokenIssuer(db)

    def create(
        self,
        email: str,
        total: int,
        stripe_session_id: str,
        items: List[Union[OrderItem, Dict[str, Any]]],
    ) -> Tuple[str, bool]:
        """Record a pending order unless one exists for the session.

        Returns the order id and whether this call created it.
        """
        lines = [i if isinstance(i, OrderItem) else OrderItem(**i) for i in items]
        order = Order(email=email, total=total, stripe_session_id=stripe_session_id, items=lines)
        now = utcnow()
        doc = order.model_dump(mode="json", exclude={"stripe_session_id", "created_at"})
        doc["created_at"] = now
        doc["updated_at"] = now
        try:
            result = self.db["order"].update_one(
                {"stripe_session_id": stripe_session_id}, {"$setOnInsert": doc}, upsert=True
            )
        except DuplicateKeyError:
            # lost an insert race on the unique session index
            result = None

        if result is not None and result.upserted_id is not None:
            logger.info("Order %s recorded for session %s", result.upserted_id, stripe_session_id)
            return str(result.upserted_id), True

        existing = self.db["order"].find_one({"stripe_session_id": stripe_session_id}, {"_id": 1})
        logger.info("Order for session %s already recorded", stripe_session_id)
        return str(existing["_id"]), False

    def complete_order(self, stripe_session_id: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Mark the session's order completed and make sure its tokens exist.

        Returns the order and the tokens issued by this call (empty when a
        previous call already issued them).
        """
        now = utcnow()
        order = self.db["order"].find_one_and_update(
            {"stripe_session_id": stripe_session_id, "status": OrderStatus.PENDING.value},
            {"$set": {"status": OrderStatus.COMPLETED.value, "completed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if order is None:
            order = self.db["order"].find_one({"stripe_session_id": stripe_session_id})
            if order is None:
                raise OrderNotFoundError(f"Order not found for session {stripe_session_id}")
            if order["status"] != OrderStatus.COMPLETED.value:
                raise OrderStateError(f"Order {order['_id']} is {order['status']} and cannot be completed")
            logger.info("Order %s already completed", order["_id"])
        else:
            logger.info("Order %s completed", order["_id"])

        order = serialize(order)
        issued = self.issuer.issue_for_order(order)
        return order, issued

    def create_free_order(self, email: str, items: List[Union[OrderItem, Dict[str, Any]]]) -> Tuple[str, List[Dict[str, Any]]]:
        """Record and complete a zero-total order without a payment session"""
        session_id = f"free_{uuid.uuid4().hex}"
        order_id, _ = self.create(email, 0, session_id, items)
        _, issued = self.complete_order(session_id)
        return order_id, issued

    def claim_receipt(self, order_id: str) -> bool:
        """Mark the receipt as sent; False when another call already did"""
        result = self.db["order"].update_one(
            {"_id": to_object_id(order_id), "receipt_sent_at": None},
            {"$set": {"receipt_sent_at": utcnow()}},
        )
        return result.modified_count == 1

    def release_receipt(self, order_id: str) -> None:
        self.db["order"].update_one({"_id": to_object_id(order_id)}, {"$set": {"receipt_sent_at": None}})

    # -------------------------------
    # Queries
    # -------------------------------

    def get_by_stripe_session(self, stripe_session_id: str) -> Optional[Dict[str, Any]]:
        return serialize(self.db["order"].find_one({"stripe_session_id": stripe_session_id}))

    def get_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Order with each line's product or bundle resolved"""
        _id = to_object_id(order_id)
        order = serialize(self.db["order"].find_one({"_id": _id})) if _id else None
        if not order:
            return None
        for item in order.get("items", []):
            item["product"] = self.catalog.get_product(item["product_id"]) if item.get("product_id") else None
            item["bundle"] = self.catalog.get_bundle(item["bundle_id"]) if item.get("bundle_id") else None
        return order

    def get_by_email(self, email: str) -> List[Dict[str, Any]]:
        cursor = self.db["order"].find(
            {"email": email, "status": OrderStatus.COMPLETED.value}
        ).sort("created_at", DESCENDING)
        return [serialize(doc) for doc in cursor]

    def list_all(self) -> List[Dict[str, Any]]:
        return [serialize(doc) for doc in self.db["order"].find().sort("created_at", DESCENDING)]

    def update_status(self, order_id: str, status: OrderStatus) -> Dict[str, Any]:
        """Admin override; a completed order never changes status again"""
        _id = to_object_id(order_id)
        order = self.db["order"].find_one({"_id": _id}) if _id else None
        if order is None:
            raise OrderNotFoundError("Order not found")
        if order["status"] == OrderStatus.COMPLETED.value:
            if status == OrderStatus.COMPLETED:
                return serialize(order)
            raise OrderStateError("Completed orders cannot change status")
        if status == OrderStatus.COMPLETED:
            # completion has to go through the token-issuing path
            completed, _ = self.complete_order(order["stripe_session_id"])
            return completed

        updated = self.db["order"].find_one_and_update(
            {"_id": _id, "status": {"$ne": OrderStatus.COMPLETED.value}},
            {"$set": {"status": status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise OrderStateError("Completed orders cannot change status")
        logger.info("Order %s status set to %s", order_id, status.value)
        return serialize(updated)
