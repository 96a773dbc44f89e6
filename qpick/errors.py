"""Exception types shared by the core services.

Routes translate these into HTTP status codes: client errors become 4xx,
storage errors become 500.
"""


class InvalidInputError(ValueError):
    """Caller supplied missing or malformed input."""
    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class StorageError(Exception):
    """The database rejected or failed a read/write."""
    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Storage failure during {operation}"
            f"{f': {cause}' if cause else ''}"
        )


class DuplicateReportError(Exception):
    """The same session already reported this store/product recently."""
    def __init__(self, store_id: str, product_id: int, status: str | None = None):
        self.store_id = store_id
        self.product_id = product_id
        self.status = status
        super().__init__(f"Already reported {store_id}:{product_id}")


class ProductNotFoundError(LookupError):
    """Product id does not exist."""
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")
