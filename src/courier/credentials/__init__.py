"""OAuth credential storage, refresh and authorization handshake."""

from courier.credentials.errors import CredentialError, IntegrationNotConnectedError

__all__ = ["CredentialError", "IntegrationNotConnectedError"]
