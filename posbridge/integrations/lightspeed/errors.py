"""
Exception taxonomy for the Lightspeed integration.
Transient API errors subclass TransientError so retry helpers treat them uniformly.
"""

from posbridge.utils.retry import PermanentError, TransientError


class LightspeedError(Exception):
    """Base class for Lightspeed integration errors."""

    pass


class ConfigurationError(LightspeedError):
    """Raised at startup when secrets are missing or malformed."""

    pass


class Unauthenticated(LightspeedError):
    """Raised when no valid access token is available; the user must reconnect."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            "No valid access token available. Please reconnect your Lightspeed account."
        )


class TokenDecryptionError(LightspeedError):
    """Stored token could not be decrypted. Treated as data corruption."""

    pass


class InvalidFormat(TokenDecryptionError):
    """Ciphertext envelope is not nonce:authTag:ciphertext hex."""

    pass


class AuthenticationFailed(TokenDecryptionError):
    """AEAD tag did not verify (tampered ciphertext or wrong key)."""

    pass


class LightspeedAPIError(LightspeedError):
    """Raised when the Lightspeed API returns an error or cannot be reached."""

    def __init__(self, status_code: int, message: str, body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(f"Lightspeed API error {status_code}: {message}")


class RateLimited(LightspeedAPIError, TransientError):
    """HTTP 429. retry_after is the provider's Retry-After in seconds, if any."""

    def __init__(self, message: str, body: str | None = None, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(429, message, body=body)


class ServerError(LightspeedAPIError, TransientError):
    """HTTP 5xx."""

    pass


class NetworkError(LightspeedAPIError, TransientError):
    """No response received (connect/read failure, timeout)."""

    def __init__(self, message: str):
        super().__init__(0, message)


class RequestFailed(LightspeedAPIError, PermanentError):
    """Non-retryable non-2xx response; body carries the provider's detail."""

    pass
