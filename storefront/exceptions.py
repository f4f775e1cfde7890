from typing import Any, Optional


class ShopError(Exception):
    """Base class for errors surfaced to callers of the storefront core"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ShopError):
    status_code = 404


class Forbidden(ShopError):
    status_code = 403


class InvalidRequest(ShopError):
    status_code = 400


class Unavailable(ShopError):
    """Product exists but is switched off"""
    status_code = 409


class OutOfStock(ShopError):
    status_code = 409


class SignatureInvalid(ShopError):
    """Webhook payload could not be authenticated"""
    status_code = 400


class MisconfiguredProduct(ShopError):
    """Operator error in the catalog; needs a manual fix"""
    status_code = 422


class DeliveryFailed(ShopError):
    """Delivery did not happen; safe to retry with deliver(order_id)"""
    status_code = 502


class PartialDeliveryFailure(DeliveryFailed):
    """The resource was handed out but the buyer could not be notified.

    Retrying only re-sends the notification; the consumed item is kept on the
    order so it is never assigned twice.
    """

    def __init__(self, message: str, order_id: str, item: Optional[Any] = None):
        super().__init__(message)
        self.order_id = order_id
        self.item = item


class GatewayError(ShopError):
    """The payment processor rejected the request or did not answer in time"""
    status_code = 502
