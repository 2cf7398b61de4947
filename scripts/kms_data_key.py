#!/usr/bin/env python3
"""Wrap or unwrap a data key with an AWS KMS master key."""
import argparse
import base64
import json
import logging
import os
import sys

from dotenv import load_dotenv

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.kms.aws_kms import MasterKey, new_master_key_from_arn, parse_kms_context
from core.kms.credentials import load_creds_provider_from_yaml
from core.kms.errors import KMSError
from core.logging.json_logger import configure_json_logging

logger = logging.getLogger('kms_data_key')

DATA_KEY_LEN = 32


def _configure_key(key: MasterKey, args):
    if args.creds:
        with open(args.creds, 'rb') as f:
            load_creds_provider_from_yaml(f.read()).apply_to_master_key(key)
    if args.endpoint:
        endpoint = args.endpoint
        key.endpoint_resolver = lambda service, region: endpoint


def _load_key(path) -> MasterKey:
    with open(path, 'r') as f:
        return MasterKey.from_map(json.load(f))


def cmd_encrypt(args) -> int:
    key = new_master_key_from_arn(args.arn, parse_kms_context(args.context), args.profile or "")
    if args.role:
        key.role = args.role
    _configure_key(key, args)

    if args.data_key_file:
        with open(args.data_key_file, 'rb') as f:
            data_key = f.read()
    else:
        data_key = os.urandom(DATA_KEY_LEN)

    key.encrypt(data_key, timeout=args.timeout)
    logger.info("data key encrypted", extra={'arn': key.arn, 'command': 'encrypt'})
    print(json.dumps(key.to_map(), indent=2))
    return 0


def cmd_decrypt(args) -> int:
    key = _load_key(args.key_file)
    _configure_key(key, args)
    data_key = key.decrypt(timeout=args.timeout)
    logger.info("data key decrypted", extra={'arn': key.arn, 'command': 'decrypt'})
    print(base64.b64encode(data_key).decode('ascii'))
    return 0


def cmd_check_rotation(args) -> int:
    key = _load_key(args.key_file)
    due = key.needs_rotation()
    print('true' if due else 'false')
    return 1 if due else 0


def build_parser():
    p = argparse.ArgumentParser(description=__doc__)
    sub = p.add_subparsers(dest='command', required=True)

    def add_common(sp):
        sp.add_argument('--creds', help='YAML file with aws_access_key_id/aws_secret_access_key/aws_session_token')
        sp.add_argument('--endpoint', help='Override the KMS endpoint URL')
        sp.add_argument('--timeout', type=float, help='Deadline for the KMS call in seconds')

    enc = sub.add_parser('encrypt', help='Encrypt a data key and print the key metadata')
    enc.add_argument('--arn', required=True, help='KMS key ARN, optionally <key-arn>+<role-arn>')
    enc.add_argument('--role', help='Role ARN to assume before calling KMS')
    enc.add_argument('--context', help='Encryption context as k1:v1,k2:v2')
    enc.add_argument('--profile', help='AWS profile for ambient credentials')
    enc.add_argument('--data-key-file', help='Raw data key; a random key is generated when omitted')
    add_common(enc)
    enc.set_defaults(func=cmd_encrypt)

    dec = sub.add_parser('decrypt', help='Decrypt a data key from key metadata')
    dec.add_argument('--key-file', required=True, help='JSON key metadata written by encrypt')
    add_common(dec)
    dec.set_defaults(func=cmd_decrypt)

    rot = sub.add_parser('check-rotation', help='Exit 1 if the key should be rotated')
    rot.add_argument('--key-file', required=True)
    rot.set_defaults(func=cmd_check_rotation)
    return p


def main(argv=None) -> int:
    load_dotenv()
    configure_json_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except KMSError as e:
        logger.error(str(e), extra={'arn': e.arn, 'command': args.command})
        return 2


if __name__ == '__main__':
    sys.exit(main())
