"""Encrypt and decrypt configuration values with KMS.

Encrypted values are printed with the kms:// prefix so they can be pasted
straight into a configuration file read by config-values.
"""

import argparse
import sys
from typing import List, Optional

from botocore.exceptions import BotoCoreError

from awstools import __version__
from awstools.common.aws_client import (
    AWSClientManager,
    CredentialsConfigError,
    SessionFlags,
    add_session_arguments,
)
from awstools.common.config_values import DEFAULT_VALUE_PREFIXES, SourceType
from awstools.common.kms import KMSError, decrypt_with_kms, encrypt_with_kms
from awstools.common.utils import configure_logging

KMS_VALUE_PREFIX = DEFAULT_VALUE_PREFIXES[SourceType.KMS]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="kms-values",
        description="Encrypt and decrypt configuration values with KMS",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version", action="version", version=f"awstools kms-values v{__version__}"
    )
    add_session_arguments(parser)

    subparsers = parser.add_subparsers(dest="action", required=True)

    encrypt = subparsers.add_parser("encrypt", help="Encrypt a value")
    encrypt.add_argument(
        "--key-id", required=True, help="KMS key ID, ARN or alias"
    )
    encrypt.add_argument(
        "value", nargs="?", help="Value to encrypt (default: read stdin)"
    )

    decrypt = subparsers.add_parser("decrypt", help="Decrypt a value")
    decrypt.add_argument(
        "value", help="kms:// value or base64 ciphertext to decrypt"
    )

    return parser.parse_args(argv)


def strip_kms_prefix(value: str) -> str:
    if value.startswith(KMS_VALUE_PREFIX):
        return value[len(KMS_VALUE_PREFIX):]
    return value


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        args = parse_arguments(argv)
        configure_logging(args.verbose)

        try:
            client = AWSClientManager(SessionFlags.from_args(args)).get_client(
                "kms"
            )
        except (CredentialsConfigError, BotoCoreError) as e:
            print(f"❌ AWS session initialization failed: {e}", file=sys.stderr)
            return 1

        try:
            if args.action == "encrypt":
                value = args.value
                if value is None:
                    value = sys.stdin.read().rstrip("\n")
                ciphertext = encrypt_with_kms(
                    client, args.key_id, value.encode("utf-8")
                )
                print(f"{KMS_VALUE_PREFIX}{ciphertext}")
            else:
                plaintext = decrypt_with_kms(client, strip_kms_prefix(args.value))
                sys.stdout.write(plaintext.decode("utf-8"))
        except (KMSError, BotoCoreError, UnicodeDecodeError) as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1

        return 0

    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
