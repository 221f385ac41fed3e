from typing import Any, Callable, Dict, List

from errors import NotFound, ValidationError
from mongo import DocumentStore, Subscription, cart_items_path

CART_FIELDS = ("name", "price", "image")


def cart_total(items: List[dict]) -> float:
    return round(sum(float(i.get("price") or 0) * int(i.get("quantity") or 0) for i in items), 2)


class CartService:
    """
    Per-user shopping cart stored under carts/<userId>/items, one record per
    product keyed by the product id.

    Quantities never drop below 1 through this service: a decrement that
    would reach zero is ignored and the item must be removed explicitly.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def list_items(self, user_id: str) -> List[dict]:
        return self.store.query(cart_items_path(user_id))

    def add_item(self, user_id: str, item: Dict[str, Any]) -> dict:
        item_id = str(item.get("id") or "").strip()
        if not item_id:
            raise ValidationError("Cart item needs a product id")
        path = cart_items_path(user_id)

        # read-then-write: two sessions adding at once can lose one increment
        existing = self.store.get(path, item_id)
        if existing:
            quantity = (existing.get("quantity") or 1) + 1
            self.store.update(path, item_id, {"quantity": quantity})
            return {**existing, "quantity": quantity}

        record = {field: item.get(field) for field in CART_FIELDS}
        record["quantity"] = 1
        self.store.set(path, item_id, record)
        return {"id": item_id, **record}

    def change_quantity(self, user_id: str, item_id: str, delta: int) -> dict:
        path = cart_items_path(user_id)
        current = self.store.get(path, item_id)
        if not current:
            raise NotFound(f"Item '{item_id}' is not in the cart")
        new_quantity = (current.get("quantity") or 1) + delta
        if new_quantity <= 0 or delta == 0:
            return current
        self.store.update(path, item_id, {"quantity": new_quantity})
        return {**current, "quantity": new_quantity}

    def remove_item(self, user_id: str, item_id: str) -> None:
        self.store.delete(cart_items_path(user_id), item_id)

    def subscribe(self, user_id: str, on_change: Callable[[List[dict]], None]) -> Subscription:
        return self.store.subscribe(cart_items_path(user_id), [], on_change)
