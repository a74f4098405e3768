"""
Domain errors raised by the cart, order, review and reservation workflows.

Each error carries the HTTP status the API layer answers with, so the
handlers in main.py never need to know about individual error kinds.
"""


class CafeError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(CafeError):
    """Input that is well-formed but not acceptable (bad status value, past date...)."""


class EmptyCartError(CafeError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class ProductUnavailableError(CafeError):
    def __init__(self, product_name: str):
        super().__init__(f"{product_name} is no longer available")
        self.product_name = product_name


class InsufficientStockError(CafeError):
    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class InvalidStateError(CafeError):
    def __init__(self, current: str, target: str = None):
        if target:
            message = f"Cannot change status from {current} to {target}"
        else:
            message = f"Cannot perform this action in current status ({current})"
        super().__init__(message)
        self.current = current
        self.target = target


class NotFoundError(CafeError):
    status_code = 404

    def __init__(self, entity: str):
        super().__init__(f"{entity} not found")
        self.entity = entity


class ConflictError(CafeError):
    status_code = 409
