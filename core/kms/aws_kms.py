import base64
import binascii
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .client import KMSClient
from .config import EndpointResolver, KMSConfig, region_from_arn, role_session_name
from .credentials import AssumeRoleCredentialsProvider, CredentialsProvider, DefaultCredentialsProvider
from .errors import (
    ConfigResolutionError,
    DeadlineExceededError,
    DecodeError,
    IntegrityMismatchError,
    KMSError,
    RemoteCallError,
)
from .provider import KeySource

logger = logging.getLogger(__name__)

KEY_TYPE_IDENTIFIER = 'kms'

# Age after which a wrapped data key should be re-wrapped (advisory only)
KMS_TTL = timedelta(days=30 * 6)

# Zero value of created_at
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_ROLE_SEPARATOR = '+arn:aws:iam::'


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """RFC 3339 with second precision and a Z suffix."""
    return _as_utc(value).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value) -> datetime:
    """Accept an RFC 3339 string or a datetime (YAML loaders produce the latter)."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if not isinstance(value, str):
        raise TypeError(f"expected a timestamp string, got {type(value).__name__}")
    return _as_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


def _remote_error(action: str, arn: str, e: Exception) -> RemoteCallError:
    message = f"failed to {action} data key with AWS KMS key '{arn}': {e}"
    if isinstance(e, (ConnectTimeoutError, ReadTimeoutError)):
        return DeadlineExceededError(message, arn=arn)
    if isinstance(e, ClientError) and e.response.get('Error', {}).get('Code') == 'InvalidCiphertextException':
        return IntegrityMismatchError(message, arn=arn)
    return RemoteCallError(message, arn=arn)


class MasterKey(KeySource):
    """An AWS KMS key used to wrap a SOPS-style data key.

    `credentials_provider` and `endpoint_resolver` are optional; when unset,
    ambient credential discovery and the public regional endpoint are used.
    Instances are not safe for concurrent mutation.
    """

    def __init__(
        self,
        arn: str = "",
        role: str = "",
        encryption_context: Optional[Dict[str, str]] = None,
        encrypted_key: str = "",
        creation_date: Optional[datetime] = None,
        aws_profile: str = "",
        credentials_provider: Optional[CredentialsProvider] = None,
        endpoint_resolver: Optional[EndpointResolver] = None,
    ):
        self.arn = arn
        self.role = role
        self.encryption_context = encryption_context
        self.encrypted_key = encrypted_key
        self.creation_date = creation_date if creation_date is not None else ZERO_TIME
        self.aws_profile = aws_profile
        self.credentials_provider = credentials_provider
        self.endpoint_resolver = endpoint_resolver

    def __str__(self):
        return self.arn

    def __repr__(self):
        return f"MasterKey(arn={self.arn!r}, role={self.role!r})"

    def type_to_identifier(self) -> str:
        return KEY_TYPE_IDENTIFIER

    def encrypted_data_key(self) -> str:
        return self.encrypted_key

    def set_encrypted_data_key(self, value: str) -> None:
        self.encrypted_key = value

    def _create_kms_config(self) -> KMSConfig:
        region = region_from_arn(self.arn)

        if self.credentials_provider is not None:
            creds = self.credentials_provider
        else:
            creds = DefaultCredentialsProvider(profile=self.aws_profile)

        endpoint_url = None
        if self.endpoint_resolver is not None:
            endpoint_url = self.endpoint_resolver('kms', region)

        if self.role:
            sts_endpoint = None
            if self.endpoint_resolver is not None:
                sts_endpoint = self.endpoint_resolver('sts', region)
            creds = AssumeRoleCredentialsProvider(
                creds, self.role, role_session_name(), region, endpoint_url=sts_endpoint,
            )

        logger.debug("resolved KMS config for %s (region=%s, endpoint=%s)", self.arn, region, endpoint_url)
        return KMSConfig(region=region, credentials=creds, endpoint_url=endpoint_url)

    def _client(self, timeout: Optional[float]) -> KMSClient:
        try:
            return KMSClient(self._create_kms_config(), timeout=timeout)
        except KMSError as e:
            if e.arn is None:
                e.arn = self.arn
            raise

    def encrypt(self, data_key: bytes, timeout: Optional[float] = None) -> None:
        """Wrap `data_key` with KMS and store it base64 encoded."""
        client = self._client(timeout)
        try:
            blob = client.encrypt(self.arn, data_key, self.encryption_context)
        except (BotoCoreError, ClientError) as e:
            raise _remote_error('encrypt', self.arn, e) from e
        self.encrypted_key = base64.b64encode(blob).decode('ascii')
        logger.debug("encrypted data key with %s", self.arn)

    def encrypt_if_needed(self, data_key: bytes, timeout: Optional[float] = None) -> None:
        if self.encrypted_key == "":
            self.encrypt(data_key, timeout=timeout)

    def decrypt(self, timeout: Optional[float] = None) -> bytes:
        """Unwrap the stored data key. The encryption context must match the one used to encrypt."""
        try:
            blob = base64.b64decode(self.encrypted_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"error base64-decoding encrypted data key: {e}", arn=self.arn) from e

        client = self._client(timeout)
        try:
            plaintext = client.decrypt(blob, self.encryption_context)
        except (BotoCoreError, ClientError) as e:
            raise _remote_error('decrypt', self.arn, e) from e
        logger.debug("decrypted data key with %s", self.arn)
        return plaintext

    def needs_rotation(self) -> bool:
        return datetime.now(timezone.utc) - _as_utc(self.creation_date) > KMS_TTL

    def to_map(self) -> dict:
        out = {
            'arn': self.arn,
            'role': self.role,
            'created_at': format_timestamp(self.creation_date),
            'enc': self.encrypted_key,
        }
        if self.encryption_context:
            out['context'] = dict(self.encryption_context)
        return out

    @classmethod
    def from_map(cls, data: dict) -> 'MasterKey':
        """Rebuild a key from the output of to_map()."""
        created_at = data.get('created_at')
        try:
            creation_date = parse_timestamp(created_at) if created_at else None
        except (TypeError, ValueError) as e:
            raise ConfigResolutionError(f"invalid created_at '{created_at}': {e}", arn=data.get('arn')) from e
        return cls(
            arn=data.get('arn', ''),
            role=data.get('role', '') or '',
            encryption_context=parse_kms_context(data.get('context')),
            encrypted_key=data.get('enc', '') or '',
            creation_date=creation_date,
        )


def new_master_key(arn: str, role: str = "", context: Optional[Dict[str, str]] = None) -> MasterKey:
    return MasterKey(
        arn=arn,
        role=role,
        encryption_context=context,
        creation_date=datetime.now(timezone.utc),
    )


def new_master_key_from_arn(arn: str, context: Optional[Dict[str, str]] = None, aws_profile: str = "") -> MasterKey:
    """Build a key from an ARN, optionally in the `<key-arn>+<role-arn>` form."""
    arn = arn.replace(' ', '')
    role = ''
    idx = arn.find(_ROLE_SEPARATOR)
    if idx > 0:
        arn, role = arn[:idx], arn[idx + 1:]
    key = new_master_key(arn, role, context)
    key.aws_profile = aws_profile
    return key


def master_keys_from_arn_string(arns: str, context: Optional[Dict[str, str]] = None, aws_profile: str = "") -> List[MasterKey]:
    """Build keys from a comma separated list of ARNs."""
    if not arns:
        return []
    return [new_master_key_from_arn(a, context, aws_profile) for a in arns.split(',') if a.strip()]


def parse_kms_context(value) -> Optional[Dict[str, str]]:
    """Parse an encryption context from a mapping or a `k1:v1,k2:v2` string.

    Returns None for empty or malformed input.
    """
    if not value:
        return None

    out: Dict[str, str] = {}
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                logger.warning("encryption context key %r is not a string", k)
                return None
            if not isinstance(v, str):
                logger.warning("encryption context value for %r is not a string", k)
                return None
            out[k] = v
    elif isinstance(value, str):
        for pair in value.split(','):
            parts = pair.split(':')
            if len(parts) != 2:
                logger.warning("invalid encryption context pair %r", pair)
                return None
            out[parts[0]] = parts[1]
    else:
        logger.warning("cannot parse encryption context of type %s", type(value).__name__)
        return None
    return out
