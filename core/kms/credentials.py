import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
import botocore.session
import yaml
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .config import CONNECT_TIMEOUT, MAX_ATTEMPTS, READ_TIMEOUT, ROLE_SESSION_DURATION
from .errors import ConfigResolutionError, DeadlineExceededError

logger = logging.getLogger(__name__)

# Refresh assumed role credentials this long before they expire
_EXPIRY_WINDOW = timedelta(seconds=60)


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: str = ""
    expires: Optional[datetime] = None


class CredentialsProvider(ABC):
    """Something that yields AWS credentials on demand."""

    @abstractmethod
    def retrieve(self, timeout: Optional[float] = None) -> Credentials:
        """Return credentials, fetching or refreshing them if necessary.

        `timeout` is the caller deadline in seconds for any network call made.
        """


class StaticCredentialsProvider(CredentialsProvider):
    def __init__(self, access_key_id: str, secret_access_key: str, session_token: str = ""):
        self._creds = Credentials(access_key_id, secret_access_key, session_token or "")

    def retrieve(self, timeout: Optional[float] = None) -> Credentials:
        return self._creds


class DefaultCredentialsProvider(CredentialsProvider):
    """Ambient credential discovery through the botocore provider chain.

    Environment variables, shared config/credentials files (optionally a
    named profile), container and instance metadata, in botocore's order.
    """

    def __init__(self, profile: Optional[str] = None):
        self.profile = profile or None

    def retrieve(self, timeout: Optional[float] = None) -> Credentials:
        try:
            session = botocore.session.Session(profile=self.profile)
            creds = session.get_credentials()
            if creds is None:
                raise ConfigResolutionError("no AWS credentials found in the environment")
            frozen = creds.get_frozen_credentials()
        except BotoCoreError as e:
            raise ConfigResolutionError(f"failed to load AWS credentials: {e}") from e
        return Credentials(frozen.access_key, frozen.secret_key, frozen.token or "")


class AssumeRoleCredentialsProvider(CredentialsProvider):
    """Exchanges base credentials for temporary credentials of `role_arn`."""

    def __init__(self, base: CredentialsProvider, role_arn: str, session_name: str, region: str,
                 endpoint_url: Optional[str] = None, duration_seconds: int = ROLE_SESSION_DURATION):
        self.base = base
        self.role_arn = role_arn
        self.session_name = session_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.duration_seconds = duration_seconds
        self._cached: Optional[Credentials] = None

    def _is_fresh(self) -> bool:
        if self._cached is None:
            return False
        if self._cached.expires is None:
            return True
        return datetime.now(timezone.utc) < self._cached.expires - _EXPIRY_WINDOW

    def retrieve(self, timeout: Optional[float] = None) -> Credentials:
        if self._is_fresh():
            return self._cached

        if timeout is not None and timeout <= 0:
            raise DeadlineExceededError(f"deadline exceeded before assuming role '{self.role_arn}'")

        connect_timeout, read_timeout, max_attempts = CONNECT_TIMEOUT, READ_TIMEOUT, MAX_ATTEMPTS
        if timeout is not None:
            connect_timeout = min(connect_timeout, timeout)
            read_timeout = min(read_timeout, timeout)
            max_attempts = 1

        base = self.base.retrieve(timeout=timeout)
        try:
            sts = boto3.client(
                'sts',
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                aws_access_key_id=base.access_key_id,
                aws_secret_access_key=base.secret_access_key,
                aws_session_token=base.session_token or None,
                config=BotoConfig(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={'max_attempts': max_attempts, 'mode': 'standard'},
                ),
            )
        except (ValueError, BotoCoreError) as e:
            raise ConfigResolutionError(f"failed to create STS client for role '{self.role_arn}': {e}") from e

        try:
            resp = sts.assume_role(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name,
                DurationSeconds=self.duration_seconds,
            )
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise DeadlineExceededError(f"deadline exceeded assuming role '{self.role_arn}': {e}") from e
        except (BotoCoreError, ClientError) as e:
            raise ConfigResolutionError(f"failed to assume role '{self.role_arn}': {e}") from e

        creds = resp['Credentials']
        expires = creds.get('Expiration')
        if expires is not None and expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        self._cached = Credentials(
            creds['AccessKeyId'],
            creds['SecretAccessKey'],
            creds.get('SessionToken', ''),
            expires,
        )
        logger.debug("assumed role %s as %s", self.role_arn, self.session_name)
        return self._cached


class CredsProvider:
    """Pre-resolved credentials that can be bound onto a master key."""

    def __init__(self, provider: CredentialsProvider):
        self.provider = provider

    def apply_to_master_key(self, key) -> None:
        key.credentials_provider = self.provider


def load_creds_provider_from_yaml(data: bytes | str) -> CredsProvider:
    """Build a static CredsProvider from a small YAML document.

    Recognized keys: aws_access_key_id, aws_secret_access_key,
    aws_session_token.
    """
    try:
        doc = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ConfigResolutionError(f"failed to unmarshal AWS credentials file: {e}") from e
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigResolutionError("AWS credentials file must be a mapping")

    return CredsProvider(StaticCredentialsProvider(
        str(doc.get('aws_access_key_id') or ''),
        str(doc.get('aws_secret_access_key') or ''),
        str(doc.get('aws_session_token') or ''),
    ))
