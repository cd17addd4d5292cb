"""
Custom exception classes for payment rail transport failures.
"""


class SolanaRPCError(Exception):
    """Raised when the Solana RPC node errors or returns a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class PaystackAPIError(Exception):
    """Raised when the Paystack API cannot be reached or answers with a server error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
