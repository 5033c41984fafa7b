"""
Database Schemas

MongoDB collection schemas for the storefront, defined as Pydantic models.
Model name is converted to lowercase for the collection name:
- Category -> "category" collection
- Product -> "product" collection
- DownloadToken -> "downloadtoken" collection

Prices are integers in minor currency units (cents).
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Category(BaseModel):
    """
    Catalog category, optionally nested under a parent
    Collection name: "category"
    """
    name: str
    slug: str
    description: str = ""
    parent_id: Optional[str] = Field(None, description="Parent category id")


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None


class Product(BaseModel):
    """
    Digital product
    Collection name: "product"
    """
    name: str
    slug: str
    description: str = ""
    category_id: str
    type: str = Field(..., description="Free-text classification, e.g. template")
    price: int = Field(..., ge=0, description="Price in cents")
    preview_url: Optional[str] = None
    preview_image_id: Optional[str] = None
    file_id: Optional[str] = Field(None, description="Stored asset id")
    file_name: Optional[str] = Field(None, description="Download filename for the stored asset")
    delivery_url: Optional[str] = Field(None, description="External delivery link, e.g. a Canva template")
    is_active: bool = True
    is_featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    type: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    preview_url: Optional[str] = None
    preview_image_id: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    delivery_url: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


def _unique_ids(ids: Optional[List[str]]) -> Optional[List[str]]:
    if ids is None:
        return None
    return list(dict.fromkeys(ids))


class Bundle(BaseModel):
    """
    Discounted set of products; original price and savings are derived on read
    Collection name: "bundle"
    """
    name: str
    slug: str
    description: str = ""
    product_ids: List[str] = Field(default_factory=list)
    price: int = Field(..., ge=0, description="Discounted bundle price in cents")
    discount_percent: int = Field(0, ge=0, le=100)
    is_active: bool = True

    @field_validator("product_ids")
    @classmethod
    def _dedupe_product_ids(cls, value):
        return _unique_ids(value)


class BundleUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    product_ids: Optional[List[str]] = None
    price: Optional[int] = Field(None, ge=0)
    discount_percent: Optional[int] = Field(None, ge=0, le=100)
    is_active: Optional[bool] = None

    @field_validator("product_ids")
    @classmethod
    def _dedupe_product_ids(cls, value):
        return _unique_ids(value)


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderItem(BaseModel):
    """Order line; price is the line total actually charged"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    product_id: Optional[str] = None
    bundle_id: Optional[str] = None
    price: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _one_reference(self):
        if (self.product_id is None) == (self.bundle_id is None):
            raise ValueError("Order line must reference exactly one product or bundle")
        return self


class Order(BaseModel):
    """
    Purchase record, keyed by the Stripe checkout session id
    Collection name: "order"
    """
    email: str
    status: OrderStatus = OrderStatus.PENDING
    total: int = Field(..., ge=0)
    stripe_session_id: str
    items: List[OrderItem] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    receipt_sent_at: Optional[datetime] = None


class DownloadToken(BaseModel):
    """
    Expiring, usage-limited download credential for one product of an order
    Collection name: "downloadtoken"
    """
    order_id: str
    product_id: str
    token: str
    expires_at: datetime
    download_count: int = Field(0, ge=0)
    max_downloads: int = Field(5, ge=1)


class ItemType(str, Enum):
    PRODUCT = "product"
    BUNDLE = "bundle"


class ItemRef(NamedTuple):
    """Tagged catalog reference; products and bundles never share an identity"""
    type: ItemType
    id: str


class CartLine(BaseModel):
    """Cart entry as posted to checkout"""
    id: str
    type: ItemType = ItemType.PRODUCT
    name: str = ""
    price: int = Field(0, ge=0)
    quantity: int = Field(1, ge=1)

    @property
    def ref(self) -> ItemRef:
        return ItemRef(self.type, self.id)


class CheckoutRequest(BaseModel):
    items: List[CartLine] = Field(default_factory=list)
    email: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus


class RegenerateRequest(BaseModel):
    order_id: str
    product_id: str


class SeedRequest(BaseModel):
    with_demo: bool = True


class NewsletterRequest(BaseModel):
    email: str
