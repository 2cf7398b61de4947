import logging
from typing import Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from .config import KMSConfig
from .errors import ConfigResolutionError, DeadlineExceededError

logger = logging.getLogger(__name__)


class KMSClient:
    """Thin call-through to the KMS API using a resolved KMSConfig.

    Credentials are retrieved when the client is built. `timeout` is a
    caller deadline in seconds; it caps the connect and read timeouts and
    disables retries so a single attempt has to fit inside it.
    """

    def __init__(self, config: KMSConfig, timeout: Optional[float] = None):
        if timeout is not None and timeout <= 0:
            raise DeadlineExceededError("deadline exceeded before calling KMS")

        creds = config.credentials.retrieve(timeout=timeout)
        session = boto3.session.Session(
            aws_access_key_id=creds.access_key_id,
            aws_secret_access_key=creds.secret_access_key,
            aws_session_token=creds.session_token or None,
            region_name=config.region,
        )

        connect_timeout, read_timeout = config.connect_timeout, config.read_timeout
        max_attempts = config.max_attempts
        if timeout is not None:
            connect_timeout = min(connect_timeout, timeout)
            read_timeout = min(read_timeout, timeout)
            max_attempts = 1

        try:
            self.client = session.client(
                'kms',
                region_name=config.region,
                endpoint_url=config.endpoint_url,
                config=BotoConfig(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={'max_attempts': max_attempts, 'mode': 'standard'},
                ),
            )
        except (ValueError, BotoCoreError) as e:
            raise ConfigResolutionError(f"failed to create KMS client: {e}") from e

    def encrypt(self, key_id: str, plaintext: bytes, context: Optional[Dict[str, str]] = None) -> bytes:
        params = {'KeyId': key_id, 'Plaintext': plaintext}
        if context:
            params['EncryptionContext'] = context
        resp = self.client.encrypt(**params)
        return resp['CiphertextBlob']

    def decrypt(self, ciphertext: bytes, context: Optional[Dict[str, str]] = None) -> bytes:
        params = {'CiphertextBlob': ciphertext}
        if context:
            params['EncryptionContext'] = context
        resp = self.client.decrypt(**params)
        return resp['Plaintext']

    def create_key(self, description: str = "") -> str:
        """Create a symmetric key and return its ARN. Setup only."""
        resp = self.client.create_key(Description=description)
        arn = resp['KeyMetadata']['Arn']
        logger.debug("created KMS key %s", arn)
        return arn
