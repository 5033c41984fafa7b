class StoreError(Exception):
    """Base class for storefront errors that map onto an HTTP status"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class NotFoundError(StoreError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    pass


class DuplicateSlugError(StoreError):
    status_code = 409


class CategoryInUseError(StoreError):
    """Raised when a category still has subcategories or products"""

    status_code = 409


class OrderStateError(StoreError):
    status_code = 409


class CheckoutError(StoreError):
    status_code = 500


class AssetFetchError(StoreError):
    status_code = 502


class EmailError(StoreError):
    status_code = 502


class ConfigurationError(StoreError):
    """Raised when a feature needs a setting that is missing"""

    status_code = 503


class WebhookSignatureError(StoreError):
    status_code = 400
