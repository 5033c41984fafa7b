"""Download tokens and delivery.

Completing an order issues one token per distinct product it contains. A
token is valid until it expires or has been used ``max_downloads`` times;
both end states are final. Checking a token (``lookup``) never changes it,
spending an attempt (``consume``) re-checks everything and then increments
the counter in a single conditional update so two racing requests cannot
both take the last slot.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogService
from config import Config
from database import as_utc, serialize, to_object_id, utcnow
from errors import NotFoundError, OrderNotFoundError
from pricing import expand_bundle_product_ids
from schemas import DownloadToken

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = Config.TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def is_deliverable(product: Optional[Dict[str, Any]]) -> bool:
    return bool(product and (product.get("file_id") or product.get("delivery_url")))


class DownloadStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    PRODUCT_MISSING = "product_missing"
    UNAVAILABLE = "unavailable"


STATUS_MESSAGES = {
    DownloadStatus.INVALID: "Invalid download token",
    DownloadStatus.EXPIRED: "Download token has expired",
    DownloadStatus.LIMIT_REACHED: "Download limit reached",
    DownloadStatus.PRODUCT_MISSING: "Product not found",
    DownloadStatus.UNAVAILABLE: "File not found",
}


@dataclass
class DownloadLookup:
    status: DownloadStatus
    token: Optional[Dict[str, Any]] = None
    product: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == DownloadStatus.ACTIVE

    @property
    def error(self) -> Optional[str]:
        return STATUS_MESSAGES.get(self.status)

    @property
    def remaining(self) -> Optional[int]:
        if self.token is None:
            return None
        return max(self.token["max_downloads"] - self.token["download_count"], 0)

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"status": self.status.value, "error": self.error}
        return {
            "status": self.status.value,
            "product": self.product,
            "remaining": self.remaining,
            "expires_at": self.token["expires_at"],
            "download_count": self.token["download_count"],
            "max_downloads": self.token["max_downloads"],
        }


class TokenIssuer:
    """Creates and regenerates download tokens"""

    def __init__(self, db: Database):
        self.db = db
        self.catalog = CatalogService(db)

    def _new_token_fields(self, now: datetime) -> Dict[str, Any]:
        return {
            "token": generate_token(),
            "expires_at": now + timedelta(hours=Config.TOKEN_TTL_HOURS),
            "download_count": 0,
        }

    def product_ids_for_order(self, order: Dict[str, Any]) -> List[str]:
        """Distinct product ids bought, with bundle lines expanded to their members"""
        product_ids: List[str] = []
        for item in order.get("items", []):
            if item.get("product_id"):
                product_ids.append(item["product_id"])
            elif item.get("bundle_id"):
                bundle = self.catalog.get_bundle(item["bundle_id"])
                if bundle is None:
                    logger.warning("Order %s references missing bundle %s", order.get("id"), item["bundle_id"])
                    continue
                members = self.catalog.get_products(bundle.get("product_ids", []))
                product_ids.extend(expand_bundle_product_ids(bundle, (p["id"] for p in members)))
        return list(dict.fromkeys(product_ids))

    def issue_for_order(self, order: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Make sure every product of the order has a token.

        Existing tokens are left alone so repeated completion never changes a
        link that may already have been emailed. Returns only the new tokens.
        """
        order_id = order["id"]
        issued = []
        for product_id in self.product_ids_for_order(order):
            token = self._insert_if_absent(order_id, product_id)
            if token is not None:
                issued.append(token)
        if issued:
            logger.info("Issued %d download tokens for order %s", len(issued), order_id)
        return issued

    def _insert_if_absent(self, order_id: str, product_id: str, attempts: int = 3) -> Optional[Dict[str, Any]]:
        key = {"order_id": order_id, "product_id": product_id}
        for _ in range(attempts):
            now = utcnow()
            record = DownloadToken(**key, **self._new_token_fields(now), max_downloads=Config.MAX_DOWNLOADS)
            fields = {**record.model_dump(exclude=set(key)), "created_at": now}
            try:
                result = self.db["downloadtoken"].update_one(key, {"$setOnInsert": fields}, upsert=True)
            except DuplicateKeyError:
                # a concurrent completion inserted the row, or the token value collided
                if self.db["downloadtoken"].find_one(key, {"_id": 1}):
                    return None
                continue
            if result.upserted_id is None:
                return None
            return serialize({"_id": result.upserted_id, **key, **fields})
        raise RuntimeError(f"Could not issue a unique token for order {order_id}")

    def regenerate(self, order_id: str, product_id: str) -> Dict[str, Any]:
        """Replace the token for an order/product pair, resetting expiry and count"""
        if not self.db["order"].find_one({"_id": to_object_id(order_id)}, {"_id": 1}):
            raise OrderNotFoundError("Order not found")
        if self.catalog.get_product(product_id) is None:
            raise NotFoundError("Product not found")

        doc = self.db["downloadtoken"].find_one_and_update(
            {"order_id": order_id, "product_id": product_id},
            {
                "$set": self._new_token_fields(utcnow()),
                "$setOnInsert": {"max_downloads": Config.MAX_DOWNLOADS, "created_at": utcnow()},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Regenerated download token for order %s product %s", order_id, product_id)
        return serialize(doc)

    def get_by_order(self, order_id: str) -> List[Dict[str, Any]]:
        tokens = [serialize(doc) for doc in self.db["downloadtoken"].find({"order_id": order_id})]
        products = {p["id"]: p for p in self.catalog.get_products([t["product_id"] for t in tokens])}
        for t in tokens:
            t["product"] = products.get(t["product_id"])
        return tokens


class DeliveryGateway:
    """Validates and spends download tokens"""

    def __init__(self, db: Database):
        self.db = db
        self.catalog = CatalogService(db)

    def _check(self, doc: Optional[Dict[str, Any]], now: datetime) -> DownloadLookup:
        if doc is None:
            return DownloadLookup(DownloadStatus.INVALID)
        token = serialize(doc)
        if now > as_utc(token["expires_at"]):
            return DownloadLookup(DownloadStatus.EXPIRED, token)
        if token["download_count"] >= token["max_downloads"]:
            return DownloadLookup(DownloadStatus.LIMIT_REACHED, token)
        product = self.catalog.get_product(token["product_id"])
        if product is None:
            return DownloadLookup(DownloadStatus.PRODUCT_MISSING, token)
        return DownloadLookup(DownloadStatus.ACTIVE, token, product)

    def lookup(self, token: str, now: Optional[datetime] = None) -> DownloadLookup:
        """Report the token's state without spending an attempt"""
        return self._check(self.db["downloadtoken"].find_one({"token": token}), now or utcnow())

    def consume(self, token: str, now: Optional[datetime] = None) -> DownloadLookup:
        """Spend one download attempt.

        The outcome of an earlier ``lookup`` is not trusted: every check runs
        again here and the increment only applies while the token is still
        unexpired and below the limit.
        """
        result = self.lookup(token, now)
        if not result.ok:
            return result
        if not is_deliverable(result.product):
            return DownloadLookup(DownloadStatus.UNAVAILABLE, result.token, result.product)

        doc = self.db["downloadtoken"].find_one_and_update(
            {
                "token": token,
                "download_count": {"$lt": result.token["max_downloads"]},
                "expires_at": {"$gt": now or utcnow()},
            },
            {"$inc": {"download_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            # lost the race for the last slot, or the token expired or was regenerated meanwhile
            current = self.lookup(token, now)
            if not current.ok:
                return current
            return DownloadLookup(DownloadStatus.LIMIT_REACHED, current.token)

        logger.info("Download token for product %s used (%s/%s)",
                    result.product["id"], doc["download_count"], doc["max_downloads"])
        return DownloadLookup(DownloadStatus.ACTIVE, serialize(doc), result.product)


def download_filename(product: Dict[str, Any]) -> str:
    if product.get("file_name"):
        return product["file_name"]
    base = "".join(c if c.isascii() and c.isalnum() else "_" for c in product.get("name", "download")).lower()
    extension = "pdf" if product.get("type") == "template" else "zip"
    return f"{base}.{extension}"


def content_disposition(filename: str) -> str:
    """Attachment header that stays latin-1 encodable for any filename.

    Non-ASCII names get an ASCII ``filename`` fallback plus the RFC 5987
    ``filename*`` form carrying the real name.
    """
    fallback = "".join(c if c.isascii() and c.isprintable() and c not in '"\\' else "_" for c in filename)
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
