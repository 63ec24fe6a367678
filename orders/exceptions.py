"""Order lifecycle exceptions."""


class OrderError(Exception):
    """Base class for order-related errors."""
    pass


class InvalidPriceError(OrderError):
    """Raised when a listing price is not a positive smallest-unit amount."""
    pass


class NotOwnerError(OrderError):
    """Raised when the seller is not the current on-chain owner of the token."""
    def __init__(self, token_id: int, seller_address: str, owner_address: str = None):
        self.token_id = token_id
        self.seller_address = seller_address
        self.owner_address = owner_address
        if owner_address:
            message = f"{seller_address} does not own token {token_id} (owner is {owner_address})"
        else:
            message = f"Token {token_id} does not exist"
        super().__init__(message)


class MissingPayloadError(OrderError):
    """Raised when an order record carries no signed order."""
    pass


class ApprovalError(OrderError):
    """Raised when the marketplace could not be approved as operator."""
    pass


class SigningError(OrderError):
    """Raised when the order protocol did not produce a usable signed order."""
    pass


class PersistenceError(OrderError):
    """Raised when a signed listing could not be recorded."""
    pass


class SettlementError(OrderError):
    """Raised when on-chain fulfillment failed; the order stays active."""
    pass
