"""
Error taxonomy

Store and workflow code raises these; ``main.py`` is the only place that turns
them into HTTP responses, using ``status_code`` and ``message``.
"""
from typing import Dict, List, Optional


class StoreError(Exception):
    status_code = 500
    message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {"message": self.message}


# Validation

class ValidationFailed(StoreError):
    status_code = 400
    message = "Validation error"

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message)

    def to_dict(self) -> Dict:
        return {"message": self.message, "errors": self.errors}


# Business rules

class BusinessRuleError(StoreError):
    status_code = 400


class EmptyCart(BusinessRuleError):
    message = "Cart is empty"


class OutOfStock(BusinessRuleError):
    message = "Product is out of stock"


class InsufficientStock(BusinessRuleError):
    def __init__(self, product_name: str, available: int, message: Optional[str] = None):
        self.product_name = product_name
        self.available = available
        super().__init__(message or f"Only {available} items available for {product_name}")


class InvalidAddress(BusinessRuleError):
    message = "Invalid shipping address"


class DuplicateSlug(BusinessRuleError):
    message = "An item with this name already exists"


class AddressInUse(BusinessRuleError):
    message = "Cannot delete address that is used in orders"


class CategoryInUse(BusinessRuleError):
    def __init__(self, product_count: int):
        self.product_count = product_count
        super().__init__(f"Cannot delete category with {product_count} products. Reassign products first.")


class OrderAlreadyPaid(BusinessRuleError):
    message = "Order already paid"


class InvalidStatus(BusinessRuleError):
    message = "Invalid status"


class PaymentFailed(BusinessRuleError):
    message = "Payment failed"


class ProfileExists(BusinessRuleError):
    message = "Profile already exists"


# Lookup / access

class NotFound(StoreError):
    status_code = 404

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"{resource} not found")


class AuthenticationFailed(StoreError):
    status_code = 401
    message = "Authentication failed"


class Forbidden(StoreError):
    status_code = 403
    message = "Admin access required"


# Infrastructure

class OrderConflict(StoreError):
    status_code = 409
    message = "Stock changed while placing your order, please try again"


class StorageError(StoreError):
    status_code = 502
    message = "Error uploading image"
