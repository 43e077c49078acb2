"""
Credential decoding.

Encryption at rest belongs to an external key-management service. The core
only needs to turn the stored blob back into a credentials dict, which it does
through the narrow ``CredentialsVault`` protocol.
"""

import json
from typing import Any, Protocol

from sigcore.integrations.models import Integration
from sigcore.shared.exceptions import ValidationError


class CredentialsVault(Protocol):
    """Protocol for the external credential store."""

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a serialized credentials payload."""
        ...

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a serialized credentials payload."""
        ...


class PlaintextVault:
    """Pass-through vault for deployments where the store handles encryption."""

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


def encode_credentials(credentials: dict[str, Any], vault: CredentialsVault) -> str:
    """Serialize and encrypt a credentials dict for storage."""
    return vault.encrypt(json.dumps(credentials))


def decode_credentials(integration: Integration, vault: CredentialsVault) -> dict[str, Any]:
    """Decrypt and parse an integration's stored credentials.

    Raises:
        ValidationError: If the stored blob is not a JSON object.
    """
    raw = vault.decrypt(integration.credentials_encrypted)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(
            message="Stored credentials are unreadable",
            details={"integration_id": str(integration.id)},
        ) from e
    if not isinstance(data, dict):
        raise ValidationError(
            message="Stored credentials are unreadable",
            details={"integration_id": str(integration.id)},
        )
    return data
