"""Error taxonomy shared by the trust core.

Every failure carries a single human-readable message and the HTTP status it
maps to; ``main`` renders them as ``{"error": message}``.
"""


class TrustError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(TrustError):
    status_code = 400


class Unauthorized(TrustError):
    status_code = 401


class Forbidden(TrustError):
    status_code = 403


class NotFound(TrustError):
    status_code = 404


class Conflict(TrustError):
    status_code = 409


class Gone(TrustError):
    status_code = 410


class VerificationFailed(TrustError):
    status_code = 400


class InternalFailure(TrustError):
    status_code = 500


class VaultError(InternalFailure):
    """Ciphertext could not be authenticated or decoded."""


class VaultUnavailable(InternalFailure):
    """No vault secret is configured."""
