"""
Exception taxonomy for the publishing pipeline.

Connector and refresher errors surface to the user who started an OAuth flow.
Dispatcher errors are recorded on job and post rows instead of being raised.
"""


class SocialPubError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(SocialPubError):
    """Required configuration is missing or malformed."""


class NotFoundError(SocialPubError):
    pass


class UnauthorizedError(SocialPubError):
    """The user does not belong to the organization they are acting on."""


class InvalidStateError(SocialPubError):
    """OAuth state was tampered with, expired, or replayed."""


class OAuthExchangeError(SocialPubError):
    """The provider rejected the authorization code."""


class ProfileFetchError(SocialPubError):
    """The token was issued but the identity lookup failed."""


class DecryptionError(SocialPubError):
    """A stored credential could not be decrypted with the configured key."""


class TokenRefreshError(SocialPubError):
    """Refreshing an access token failed. Terminal: the account must be reconnected."""


class NoRefreshTokenError(TokenRefreshError):
    pass


class PublishError(SocialPubError):
    """A platform rejected or did not answer a publish call. Retryable."""

    def __init__(self, platform, provider_message, response=None):
        super().__init__(f'{platform}: {provider_message}')
        self.platform = platform
        self.provider_message = provider_message
        self.response = response


class ValidationError(SocialPubError):
    """Content or request cannot succeed as given. Not retryable."""
