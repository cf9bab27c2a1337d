from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from flask import current_app


class CartError(Exception):
    message = "Cart operation failed"


class UserNotFound(CartError):
    message = "User not found"


class CartItemNotFound(CartError):
    message = "Product not found"


class CartConflict(CartError):
    message = "The cart was modified by another request. Please try again."


def serialize_cart_item(item: Dict) -> Dict:
    image = item.get("product_image") or {}
    return {
        "id": item.get("id", ""),
        "productImage": {
            "public_id": image.get("public_id", ""),
            "url": image.get("url", ""),
        },
        "name": item.get("name", ""),
        "category": item.get("category", ""),
        "price": item.get("price", 0),
        "count": item.get("count", 1),
    }


def find_line_index(cart: List[Dict], key: Dict) -> int:
    """Position of the first line matching ``key``, or -1.

    ``{"id": ...}`` matches the line id assigned at insert time.
    ``{"url": ...}`` matches the product image URL; with duplicate lines only
    the earliest is reachable that way.
    """
    for index, item in enumerate(cart):
        if "id" in key:
            if item.get("id") == key["id"]:
                return index
        elif (item.get("product_image") or {}).get("url") == key.get("url"):
            return index
    return -1


class CartEngine:
    """Read-modify-write operations on the cart embedded in a user document.

    Every write is conditional on the ``version`` observed at read time and
    bumps it, so two requests racing on the same cart cannot silently drop
    each other's changes; the loser re-reads and tries again.
    """

    def __init__(self, users, max_retries: int = 3):
        self.users = users
        self.max_retries = max(1, int(max_retries))

    def _load(self, user_id) -> Dict:
        user_document = self.users.find_one(
            {"_id": user_id}, {"cart": 1, "version": 1}
        )
        if not user_document:
            raise UserNotFound()
        return user_document

    def _mutate(self, user_id, change: Callable[[List[Dict]], Tuple[List[Dict], object]]):
        for attempt in range(1, self.max_retries + 1):
            user_document = self._load(user_id)
            cart = list(user_document.get("cart") or [])
            new_cart, result = change(cart)

            version = user_document.get("version")
            write = self.users.update_one(
                {"_id": user_id, "version": version},
                {
                    "$set": {"cart": new_cart, "updated_at": datetime.utcnow()},
                    "$inc": {"version": 1},
                },
            )
            if write.matched_count:
                return result

            current_app.logger.warning(
                "Cart write conflict for user %s (attempt %s/%s)",
                user_id,
                attempt,
                self.max_retries,
            )
        raise CartConflict()

    def list_items(self, user_id) -> List[Dict]:
        return list(self._load(user_id).get("cart") or [])

    def add(self, user_id, item: Dict) -> List[Dict]:
        line = {
            "id": uuid4().hex,
            "product_image": dict(item.get("product_image") or {}),
            "name": item.get("name"),
            "category": item.get("category"),
            "price": item.get("price"),
            "count": item.get("count", 1),
        }

        def append(cart):
            cart.append(line)
            return cart, cart

        return self._mutate(user_id, append)

    def update_count(self, user_id, key: Dict, count: int) -> Dict:
        def set_count(cart):
            index = find_line_index(cart, key)
            if index == -1:
                raise CartItemNotFound()
            cart[index] = {**cart[index], "count": count}
            return cart, cart[index]

        return self._mutate(user_id, set_count)

    def remove(self, user_id, key: Dict) -> Optional[Dict]:
        def splice(cart):
            index = find_line_index(cart, key)
            if index == -1:
                raise CartItemNotFound()
            removed = cart.pop(index)
            return cart, removed

        return self._mutate(user_id, splice)
