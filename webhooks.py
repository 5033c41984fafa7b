import json
import logging
from typing import Any, Dict, Optional

import stripe
from pymongo.database import Database

from checkout import decode_cart_metadata, order_items_from_cart, send_order_receipt
from config import Config
from downloads import TokenIssuer
from errors import WebhookSignatureError
from orders import OrderLedger

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def verify_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe signature and return the decoded event"""
    if not signature:
        raise WebhookSignatureError("No signature")
    if not Config.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook received without STRIPE_WEBHOOK_SECRET configured")
        raise WebhookSignatureError("Webhook signature verification failed")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body, signature, Config.STRIPE_WEBHOOK_SECRET, stripe.Webhook.DEFAULT_TOLERANCE
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise WebhookSignatureError("Webhook signature verification failed")
    try:
        return json.loads(body)
    except ValueError:
        raise WebhookSignatureError("Invalid payload")


class CompletionHandler:
    """Reconciles Stripe payment confirmations with the order ledger"""

    def __init__(self, db: Database):
        self.ledger = OrderLedger(db)
        self.issuer = TokenIssuer(db)

    def handle_event(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        event_type = event.get("type")
        if event_type != CHECKOUT_COMPLETED:
            logger.info("Ignoring webhook event %s", event_type)
            return None
        return self.complete_session(event["data"]["object"])

    def complete_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Record and complete the order for a paid session.

        Safe to call again for the same session: the order and its tokens are
        keyed by the session id, and the order records when its receipt went out
        so a retry sends it if an earlier attempt never did.
        """
        lines = decode_cart_metadata(session.get("metadata") or {})
        email = session.get("customer_email") or (session.get("customer_details") or {}).get("email") or ""

        self.ledger.create(email, session.get("amount_total") or 0, session["id"], order_items_from_cart(lines))
        order, _ = self.ledger.complete_order(session["id"])
        send_order_receipt(self.ledger, self.issuer, order["id"], order["email"])
        return order
