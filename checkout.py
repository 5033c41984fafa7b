import json
import logging
from typing import Any, Dict, List, Mapping

import stripe
from pymongo.database import Database

from catalog import CatalogService
from config import Config
from downloads import TokenIssuer
from emails import send_receipt
from errors import CheckoutError, EmailError, ValidationError
from orders import OrderLedger
from schemas import CartLine, CheckoutRequest, ItemType, OrderItem

logger = logging.getLogger(__name__)

# Stripe caps metadata values at 500 characters and a session at 50 keys
METADATA_CHUNK_SIZE = 500
METADATA_MAX_KEYS = 50


def encode_cart_metadata(lines: List[CartLine]) -> Dict[str, str]:
    payload = json.dumps(
        [{"id": l.id, "type": l.type.value, "price": l.price, "quantity": l.quantity} for l in lines],
        separators=(",", ":"),
    )
    chunks = [payload[i:i + METADATA_CHUNK_SIZE] for i in range(0, len(payload), METADATA_CHUNK_SIZE)]
    if len(chunks) > METADATA_MAX_KEYS:
        raise ValidationError("Too many items in cart")
    metadata = {"items": chunks[0]}
    for n, chunk in enumerate(chunks[1:], start=1):
        metadata[f"items_{n}"] = chunk
    return metadata


def decode_cart_metadata(metadata: Mapping[str, Any]) -> List[CartLine]:
    parts = [metadata.get("items") or "[]"]
    n = 1
    while f"items_{n}" in metadata:
        parts.append(metadata[f"items_{n}"])
        n += 1
    return [CartLine(**entry) for entry in json.loads("".join(parts))]


def order_items_from_cart(lines: List[CartLine]) -> List[OrderItem]:
    items = []
    for line in lines:
        ref = {"bundle_id": line.id} if line.type == ItemType.BUNDLE else {"product_id": line.id}
        items.append(OrderItem(price=line.price * line.quantity, **ref))
    return items


def send_receipt_safely(email: str, order_id: str, tokens: List[Dict[str, Any]]) -> bool:
    """Send the receipt, logging instead of raising when delivery fails"""
    try:
        return send_receipt(email, order_id, tokens)
    except EmailError:
        logger.error("Failed to send receipt for order %s", order_id, exc_info=True)
        return False


def send_order_receipt(ledger: OrderLedger, issuer: TokenIssuer, order_id: str, email: str) -> bool:
    """Send the order's receipt unless it already went out.

    The order is marked before sending so concurrent callers send it once;
    the mark is cleared again when sending fails.
    """
    tokens = issuer.get_by_order(order_id)
    if not tokens or not ledger.claim_receipt(order_id):
        return False
    if send_receipt_safely(email, order_id, tokens):
        return True
    ledger.release_receipt(order_id)
    return False


class CheckoutService:
    """Turns a cart into a Stripe checkout session or a free order"""

    def __init__(self, db: Database):
        self.db = db
        self.catalog = CatalogService(db)
        self.ledger = OrderLedger(db)
        self.issuer = TokenIssuer(db)

    def price_cart(self, lines: List[CartLine]) -> List[CartLine]:
        """Re-price every line from the catalog; client prices are display-only"""
        priced = []
        for line in lines:
            if line.type == ItemType.BUNDLE:
                record = self.catalog.get_bundle(line.id)
                label = "Bundle"
            else:
                record = self.catalog.get_product(line.id)
                label = "Product"
            if not record or not record.get("is_active", True):
                raise ValidationError(f"{label} {line.id} not found")
            priced.append(line.model_copy(update={"name": record["name"], "price": record["price"]}))
        return priced

    def create_session(self, request: CheckoutRequest) -> Dict[str, Any]:
        if not request.items:
            raise ValidationError("No items in cart")
        if not request.email:
            raise ValidationError("Email is required")

        lines = self.price_cart(request.items)
        total = sum(l.price * l.quantity for l in lines)
        if total == 0:
            return self._free_checkout(request.email, lines)
        return self._stripe_checkout(request.email, lines)

    def _free_checkout(self, email: str, lines: List[CartLine]) -> Dict[str, Any]:
        order_id, _ = self.ledger.create_free_order(email, order_items_from_cart(lines))
        send_order_receipt(self.ledger, self.issuer, order_id, email)
        return {
            "sessionId": None,
            "url": f"{Config.APP_URL}/checkout/success?order_id={order_id}",
        }

    def _stripe_checkout(self, email: str, lines: List[CartLine]) -> Dict[str, Any]:
        if not Config.STRIPE_API_KEY:
            logger.error("Checkout attempted without STRIPE_API_KEY")
            raise CheckoutError("Failed to create checkout session")
        stripe.api_key = Config.STRIPE_API_KEY

        line_items = [
            {
                "price_data": {
                    "currency": Config.CURRENCY,
                    "product_data": {
                        "name": line.name,
                        "description": f"{'Bundle' if line.type == ItemType.BUNDLE else 'Template'} - Digital Download",
                    },
                    "unit_amount": line.price,
                },
                "quantity": line.quantity,
            }
            for line in lines
        ]

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=line_items,
                success_url=f"{Config.APP_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{Config.APP_URL}/checkout",
                customer_email=email,
                metadata=encode_cart_metadata(lines),
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout session failed: %s", e)
            raise CheckoutError("Failed to create checkout session")

        logger.info("Checkout session %s created for %s", session.id, email)
        return {"sessionId": session.id, "url": session.url}
