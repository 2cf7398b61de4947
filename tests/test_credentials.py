from datetime import datetime, timedelta, timezone
from unittest.mock import patch, MagicMock

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from core.kms.aws_kms import MasterKey
from core.kms.credentials import (
    AssumeRoleCredentialsProvider,
    CredsProvider,
    StaticCredentialsProvider,
    load_creds_provider_from_yaml,
)
from core.kms.errors import ConfigResolutionError, DeadlineExceededError

ROLE_ARN = "arn:aws:iam::107501996527:role/sops"


def test_apply_to_master_key():
    creds = CredsProvider(StaticCredentialsProvider("", "", ""))
    key = MasterKey()
    creds.apply_to_master_key(key)
    assert key.credentials_provider is creds.provider

    other = CredsProvider(StaticCredentialsProvider("id", "secret"))
    other.apply_to_master_key(key)
    assert key.credentials_provider is other.provider


def test_load_creds_from_yaml():
    creds_yaml = b"""
aws_access_key_id: test-id
aws_secret_access_key: test-secret
aws_session_token: test-token
"""
    provider = load_creds_provider_from_yaml(creds_yaml)
    creds = provider.provider.retrieve()

    assert creds.access_key_id == "test-id"
    assert creds.secret_access_key == "test-secret"
    assert creds.session_token == "test-token"


def test_load_creds_from_yaml_without_token():
    provider = load_creds_provider_from_yaml("aws_access_key_id: id\naws_secret_access_key: secret\n")
    creds = provider.provider.retrieve()
    assert creds.session_token == ""


@pytest.mark.parametrize("doc", ["- a\n- b\n", "aws_access_key_id: [unclosed"])
def test_load_creds_from_yaml_rejects(doc):
    with pytest.raises(ConfigResolutionError):
        load_creds_provider_from_yaml(doc)


def _sts_response(expires):
    return {
        'Credentials': {
            'AccessKeyId': 'ASIAASSUMED',
            'SecretAccessKey': 'assumed-secret',
            'SessionToken': 'assumed-token',
            'Expiration': expires,
        }
    }


def test_assume_role_uses_base_credentials():
    sts = MagicMock()
    sts.assume_role.return_value = _sts_response(datetime.now(timezone.utc) + timedelta(hours=1))
    base = StaticCredentialsProvider("id", "secret", "token")

    with patch('boto3.client', return_value=sts) as client:
        provider = AssumeRoleCredentialsProvider(base, ROLE_ARN, "sops@test", "us-west-2")
        creds = provider.retrieve()
        again = provider.retrieve()

    assert creds.access_key_id == 'ASIAASSUMED'
    assert creds.session_token == 'assumed-token'
    assert again is creds
    sts.assume_role.assert_called_once_with(
        RoleArn=ROLE_ARN, RoleSessionName="sops@test", DurationSeconds=provider.duration_seconds,
    )
    _, kwargs = client.call_args
    assert kwargs['aws_access_key_id'] == "id"
    assert kwargs['aws_secret_access_key'] == "secret"
    assert kwargs['aws_session_token'] == "token"
    assert kwargs['region_name'] == "us-west-2"


def test_assume_role_refreshes_expiring_credentials():
    sts = MagicMock()
    sts.assume_role.return_value = _sts_response(datetime.now(timezone.utc) + timedelta(seconds=30))

    with patch('boto3.client', return_value=sts):
        provider = AssumeRoleCredentialsProvider(
            StaticCredentialsProvider("id", "secret"), ROLE_ARN, "sops@test", "us-west-2"
        )
        provider.retrieve()
        provider.retrieve()

    assert sts.assume_role.call_count == 2


def test_assume_role_failure():
    sts = MagicMock()
    sts.assume_role.side_effect = ClientError(
        {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'AssumeRole'
    )

    with patch('boto3.client', return_value=sts):
        provider = AssumeRoleCredentialsProvider(
            StaticCredentialsProvider("id", "secret"), ROLE_ARN, "sops@test", "us-west-2"
        )
        with pytest.raises(ConfigResolutionError) as exc:
            provider.retrieve()

    assert ROLE_ARN in str(exc.value)


def test_assume_role_applies_caller_deadline():
    sts = MagicMock()
    sts.assume_role.return_value = _sts_response(datetime.now(timezone.utc) + timedelta(hours=1))

    with patch('boto3.client', return_value=sts) as client:
        provider = AssumeRoleCredentialsProvider(
            StaticCredentialsProvider("id", "secret"), ROLE_ARN, "sops@test", "us-west-2"
        )
        provider.retrieve(timeout=0.5)

    _, kwargs = client.call_args
    boto_config = kwargs['config']
    assert boto_config.connect_timeout == 0.5
    assert boto_config.read_timeout == 0.5
    assert boto_config.retries['max_attempts'] == 1


def test_assume_role_timeout_is_deadline_exceeded():
    sts = MagicMock()
    sts.assume_role.side_effect = ReadTimeoutError(endpoint_url="https://sts.us-west-2.amazonaws.com")

    with patch('boto3.client', return_value=sts):
        provider = AssumeRoleCredentialsProvider(
            StaticCredentialsProvider("id", "secret"), ROLE_ARN, "sops@test", "us-west-2"
        )
        with pytest.raises(DeadlineExceededError):
            provider.retrieve(timeout=1)


def test_assume_role_expired_deadline_skips_sts():
    with patch('boto3.client') as client:
        provider = AssumeRoleCredentialsProvider(
            StaticCredentialsProvider("id", "secret"), ROLE_ARN, "sops@test", "us-west-2"
        )
        with pytest.raises(DeadlineExceededError):
            provider.retrieve(timeout=0)
    client.assert_not_called()
