from storefront.schemas.order import CartUpdate, ContactUpdate, OrderCreate

__all__ = [
    "OrderCreate",
    "ContactUpdate",
    "CartUpdate",
]
