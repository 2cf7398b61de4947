import os
import re
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from .errors import ConfigResolutionError

if TYPE_CHECKING:
    from .credentials import CredentialsProvider

# Defaults, tunable via env.
ROLE_SESSION_DURATION = int(os.getenv('KMS_ROLE_SESSION_DURATION', 3600))  # seconds
CONNECT_TIMEOUT = float(os.getenv('KMS_CONNECT_TIMEOUT', 10))
READ_TIMEOUT = float(os.getenv('KMS_READ_TIMEOUT', 30))
MAX_ATTEMPTS = int(os.getenv('KMS_MAX_ATTEMPTS', 3))

# STS rejects longer session names
ROLE_SESSION_NAME_LIMIT = 64

_ARN_RE = re.compile(r'^arn:aws[\w-]*:kms:(.+):[0-9]+:(key|alias)/.+$')
_SESSION_NAME_RE = re.compile(r'[^a-zA-Z0-9=,.@-]+')

# (service, region) -> endpoint URL
EndpointResolver = Callable[[str, str], str]


@dataclass
class KMSConfig:
    """Fully resolved settings for talking to KMS."""
    region: str
    credentials: 'CredentialsProvider'
    endpoint_url: Optional[str] = None
    connect_timeout: float = CONNECT_TIMEOUT
    read_timeout: float = READ_TIMEOUT
    max_attempts: int = MAX_ATTEMPTS


def region_from_arn(arn: str) -> str:
    """Extract the region segment of a KMS key or alias ARN."""
    match = _ARN_RE.match(arn or '')
    if match is None:
        raise ConfigResolutionError(f"no valid ARN found in '{arn}'", arn=arn)
    return match.group(1)


def role_session_name(hostname: str | None = None) -> str:
    """Session name used when assuming a role: sops@<sanitized hostname>."""
    if hostname is None:
        hostname = socket.gethostname()
    name = 'sops@' + _SESSION_NAME_RE.sub('', hostname)
    return name[:ROLE_SESSION_NAME_LIMIT]
