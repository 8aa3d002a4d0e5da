"""Cart mutations. Totals are always recomputed from the items on save."""
from typing import Optional

import structlog

from errors import InsufficientStock
from inventory import locate
from schemas import Cart, CartItem
from stores import CartStore, CatalogStore

logger = structlog.get_logger(__name__)


def find_item(cart: Cart, product_id: str, size: str, color: str) -> Optional[CartItem]:
    for item in cart.items:
        if item.product_id == product_id and item.size == size and item.color == color:
            return item
    return None


class CartService:
    def __init__(self, carts: CartStore, catalog: CatalogStore):
        self.carts = carts
        self.catalog = catalog

    def get(self, user_id: str) -> Cart:
        return self.carts.get_or_create(user_id).recalculate()

    def add_item(self, user_id: str, product_id: str, size: str, color: str, quantity: int = 1) -> Cart:
        product, variant = locate(self.catalog, product_id, size, color)
        cart = self.carts.get_or_create(user_id)
        existing = find_item(cart, product_id, size, color)
        wanted = quantity + (existing.quantity if existing else 0)
        if variant.stock < wanted:
            raise InsufficientStock(
                f"Only {variant.stock} items available for {product.name} - {color} (Size {size})",
                available=variant.stock, product_id=product_id, size=size, color=color,
            )
        if existing:
            existing.quantity = wanted
            existing.price = variant.price
        else:
            cart.items.append(CartItem(product_id=product_id, size=size, color=color, sku=variant.sku,
                                       price=variant.price, quantity=quantity))
        logger.info("cart_item_added", user_id=user_id, sku=variant.sku, quantity=quantity)
        return self.carts.save(cart)

    def update_quantity(self, user_id: str, product_id: str, size: str, color: str, quantity: int) -> Cart:
        """Set a line's quantity; zero or less removes the line."""
        if quantity <= 0:
            return self.remove_item(user_id, product_id, size, color)
        cart = self.carts.get_or_create(user_id)
        item = find_item(cart, product_id, size, color)
        if item is None:
            return cart.recalculate()
        product, variant = locate(self.catalog, product_id, size, color)
        if variant.stock < quantity:
            raise InsufficientStock(
                f"Only {variant.stock} items available for {product.name} - {color} (Size {size})",
                available=variant.stock, product_id=product_id, size=size, color=color,
            )
        item.quantity = quantity
        item.price = variant.price
        return self.carts.save(cart)

    def remove_item(self, user_id: str, product_id: str, size: str, color: str) -> Cart:
        cart = self.carts.get_or_create(user_id)
        cart.items = [
            i for i in cart.items
            if not (i.product_id == product_id and i.size == size and i.color == color)
        ]
        return self.carts.save(cart)

    def clear(self, user_id: str) -> Cart:
        cart = self.carts.get_or_create(user_id)
        cart.items = []
        return self.carts.save(cart)
