from abc import ABC, abstractmethod


class KeySource(ABC):
    """Abstract master key interface for SOPS-style envelope encryption.

    A master key wraps the document data key; the wrapped form is stored in
    the document metadata next to the key's identity.
    """

    @abstractmethod
    def encrypt(self, data_key: bytes, timeout: float | None = None) -> None:
        """Wrap `data_key` and store the result on the key."""

    @abstractmethod
    def encrypt_if_needed(self, data_key: bytes, timeout: float | None = None) -> None:
        """Wrap `data_key` only if nothing has been stored yet."""

    @abstractmethod
    def encrypted_data_key(self) -> str:
        """Return the stored wrapped data key."""

    @abstractmethod
    def set_encrypted_data_key(self, value: str) -> None:
        """Replace the stored wrapped data key."""

    @abstractmethod
    def decrypt(self, timeout: float | None = None) -> bytes:
        """Return the plaintext data key."""

    @abstractmethod
    def needs_rotation(self) -> bool:
        """Whether the wrapped key is old enough to be re-wrapped."""

    @abstractmethod
    def to_map(self) -> dict:
        """Serialize key metadata for the document."""

    @abstractmethod
    def type_to_identifier(self) -> str:
        """Identifier used for this key type in the document."""
