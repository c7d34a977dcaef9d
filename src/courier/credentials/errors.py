"""Credential error taxonomy."""

from __future__ import annotations


class CredentialError(RuntimeError):
    """Base credential error."""


class IntegrationNotConnectedError(CredentialError):
    """No active credential exists for (account, provider).

    Not retryable: the user must re-authorize the integration.
    """

    def __init__(self, account_id: str, provider: str) -> None:
        self.account_id = account_id
        self.provider = provider
        super().__init__(
            f"{provider} is not connected for account {account_id}; please reconnect"
        )


class ProviderNotConfiguredError(CredentialError):
    """Raised when no OAuth client settings exist for a provider."""


class TokenRefreshError(CredentialError):
    """Raised when a refresh-token exchange fails."""


class TokenExchangeError(CredentialError):
    """Raised when an authorization-code exchange fails."""


class OAuthStateError(CredentialError):
    """Raised when an OAuth state parameter is malformed, forged or expired."""
