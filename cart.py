"""Client-side shopping cart.

The cart is an explicit state container: callers create one, hydrate it from
a ``CartStorage`` and subscribe to changes. It mirrors what the buyer sees and
is never the system of record; orders are.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from schemas import CartLine, CheckoutRequest, ItemRef, ItemType

logger = logging.getLogger(__name__)


class CartItem(BaseModel):
    id: str
    type: ItemType = ItemType.PRODUCT
    name: str
    price: int = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    original_price: Optional[int] = Field(None, description="Undiscounted price, for savings display")

    @property
    def ref(self) -> ItemRef:
        return ItemRef(self.type, self.id)


_items_adapter = TypeAdapter(List[CartItem])

Listener = Callable[["Cart"], None]


class CartStorage:
    """Persists cart items as JSON, the way browser local storage would"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[CartItem]:
        if not self.path.exists():
            return []
        try:
            return _items_adapter.validate_json(self.path.read_bytes())
        except ValueError:
            logger.warning("Discarding unreadable cart state at %s", self.path)
            return []

    def save(self, items: List[CartItem]) -> None:
        self.path.write_bytes(_items_adapter.dump_json(items))


class Cart:
    def __init__(self, storage: Optional[CartStorage] = None):
        self.items: List[CartItem] = []
        self.is_open = False
        self._storage = storage
        self._listeners: List[Listener] = []

    @classmethod
    def hydrate(cls, storage: CartStorage) -> "Cart":
        cart = cls(storage)
        cart.items = storage.load()
        return cart

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, persist: bool = True) -> None:
        if persist and self._storage is not None:
            self._storage.save(self.items)
        for listener in list(self._listeners):
            listener(self)

    def _find(self, ref: ItemRef) -> Optional[CartItem]:
        return next((i for i in self.items if i.ref == ref), None)

    # Item operations

    def add_item(self, item: CartItem) -> None:
        existing = self._find(item.ref)
        if existing:
            existing.quantity += 1
        else:
            self.items.append(item.model_copy(update={"quantity": 1}))
        self.is_open = True
        self._commit()

    def remove_item(self, ref: ItemRef) -> None:
        self.items = [i for i in self.items if i.ref != ref]
        self._commit()

    def update_quantity(self, ref: ItemRef, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(ref)
            return
        item = self._find(ref)
        if item:
            item.quantity = quantity
            self._commit()

    def clear_cart(self) -> None:
        self.items = []
        self._commit()

    # Drawer visibility, not persisted

    def open_cart(self) -> None:
        self.is_open = True
        self._commit(persist=False)

    def close_cart(self) -> None:
        self.is_open = False
        self._commit(persist=False)

    def toggle_cart(self) -> None:
        self.is_open = not self.is_open
        self._commit(persist=False)

    # Projections

    def get_total(self) -> int:
        return sum(i.price * i.quantity for i in self.items)

    def get_item_count(self) -> int:
        return sum(i.quantity for i in self.items)

    def get_savings(self) -> int:
        return sum(
            (i.original_price - i.price) * i.quantity
            for i in self.items
            if i.original_price is not None and i.original_price > i.price
        )

    def to_checkout_request(self, email: str) -> CheckoutRequest:
        return CheckoutRequest(
            email=email,
            items=[
                CartLine(id=i.id, type=i.type, name=i.name, price=i.price, quantity=i.quantity)
                for i in self.items
            ],
        )

    def __len__(self) -> int:
        return len(self.items)
