"""
Error taxonomy for the storefront services.

Services raise these; ``main.py`` turns them into JSON responses with the
matching status code. The body shape is the same as FastAPI's HTTPException
(``{"detail": ...}``) so the frontend handles both alike.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class InvalidInput(AppError):
    status_code = 400


class InvalidState(AppError):
    status_code = 400


class PaymentIncomplete(InvalidState):
    def __init__(self, message: str = "Payment not completed"):
        super().__init__(message)


class GiftCardExpired(InvalidState):
    def __init__(self, message: str = "Gift card expired"):
        super().__init__(message)


class SignatureError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class AlreadyRedeemed(Conflict):
    def __init__(self, message: str = "Gift card already redeemed"):
        super().__init__(message)


class InsufficientBalance(Conflict):
    pass


class UpstreamFailure(AppError):
    status_code = 502

    def __init__(self, message: str = "Payment provider unavailable"):
        super().__init__(message)
