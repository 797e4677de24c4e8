"""Domain errors raised by the service layer and translated by the API routers."""


class ServiceError(ValueError):
    code = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class PairingError(ServiceError):
    """Registration, link or exchange failed. `code` tells the client which."""

    code = "pairing_failed"


class TokenError(ServiceError):
    code = "token_invalid"


class UserNotFoundError(ServiceError):
    code = "user_not_found"


class AccountError(ServiceError):
    code = "account_error"
