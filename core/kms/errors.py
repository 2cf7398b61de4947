from typing import Optional


class KMSError(Exception):
    """Base error for AWS KMS master key operations."""

    def __init__(self, message: str, arn: Optional[str] = None):
        super().__init__(message)
        self.arn = arn


class ConfigResolutionError(KMSError):
    """ARN, region or credentials could not be resolved before any KMS call."""


class RemoteCallError(KMSError):
    """The KMS service (or the transport to it) returned a failure."""


class DeadlineExceededError(RemoteCallError):
    """The caller supplied deadline expired before KMS answered."""


class IntegrityMismatchError(RemoteCallError):
    """KMS rejected the ciphertext, e.g. the encryption context does not match."""


class DecodeError(KMSError):
    """The stored encrypted key is not valid base64."""
