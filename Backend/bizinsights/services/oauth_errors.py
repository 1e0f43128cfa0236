"""Failure reasons of the OAuth connect flow.

Each error carries a stable ``code`` that ends up in the dashboard redirect
(``?oauth_result=error&error=<code>``) and a human readable message that is
safe to show to the end user.
"""


class OAuthError(Exception):
    code = "oauth_error"
    default_message = "The connection could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ProviderDenied(OAuthError):
    code = "provider_denied"
    default_message = "Authorization was denied by the provider."


class MissingParameters(OAuthError):
    code = "missing_parameters"
    default_message = "The authorization response is missing required parameters."


class InvalidSignature(OAuthError):
    code = "invalid_signature"
    default_message = "The authorization response signature is invalid."


class InvalidState(OAuthError):
    code = "invalid_state"
    default_message = "This authorization request is unknown or was already used."


class ShopMismatch(OAuthError):
    code = "shop_mismatch"
    default_message = "The store in the response does not match the store that was requested."


class Expired(OAuthError):
    code = "expired"
    default_message = "The authorization request expired. Please try again."


class TokenExchangeFailed(OAuthError):
    code = "token_exchange_failed"
    default_message = "The provider did not issue an access token. Please try again."


class EncryptionFailed(OAuthError):
    code = "encryption_failed"
    default_message = "The access token could not be stored securely."


class InvalidAccount(OAuthError):
    code = "invalid_account"
    default_message = "The store or account identifier is invalid."


class UnsupportedFlow(OAuthError):
    code = "unsupported_flow"
    default_message = "This platform does not connect through OAuth."


class ProviderNotConfigured(OAuthError):
    code = "provider_not_configured"
    default_message = "This platform is not configured on the server."
