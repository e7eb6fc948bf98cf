"""
Token Encryption Module

Provides encryption and decryption for OAuth tokens using Fernet symmetric encryption.
The key is derived from the configured secret key.
"""

from cryptography.fernet import Fernet, InvalidToken
from typing import Optional
import base64

from syncengine.config import get_settings


class TokenEncryption:
    """
    Encrypt and decrypt OAuth tokens for secure storage in database.

    Uses Fernet (symmetric encryption) keyed from settings.secret_key.
    All tokens are encrypted before storage and decrypted when needed.
    """

    def __init__(self, secret_key: Optional[str] = None):
        """
        Initialize encryption cipher.

        The secret key is padded/truncated to 32 bytes and base64-encoded
        to create a valid Fernet key.

        Args:
            secret_key: Overrides settings.secret_key (used by tests)
        """
        secret_key = secret_key or get_settings().secret_key

        # Fernet requires 32-byte key, base64-encoded
        key_bytes = secret_key.encode()[:32].ljust(32, b'0')
        key_base64 = base64.urlsafe_b64encode(key_bytes)

        self.cipher = Fernet(key_base64)

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for database storage.

        Args:
            token: Plain text token to encrypt

        Returns:
            Encrypted token suitable for a TEXT column, or None for empty input

        Example:
            >>> enc = TokenEncryption()
            >>> encrypted = enc.encrypt("sk-abc123")
            >>> # Store encrypted in database
        """
        if not token:
            return None

        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt a token from database.

        Args:
            encrypted_token: Encrypted token from database

        Returns:
            Plain text token, or None for empty input

        Raises:
            cryptography.fernet.InvalidToken: If the value was encrypted with another key
        """
        if not encrypted_token:
            return None

        return self.cipher.decrypt(encrypted_token.encode()).decode()

    def is_encrypted(self, value: Optional[str]) -> bool:
        """
        Check if a value was encrypted with this cipher.

        Args:
            value: String to check

        Returns:
            True if value decrypts with the current key
        """
        if not value:
            return False

        try:
            self.cipher.decrypt(value.encode())
            return True
        except InvalidToken:
            return False
