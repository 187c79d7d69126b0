"""KMS encryption helpers for configuration values."""

import base64
import binascii
import logging

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class KMSError(Exception):
    """Raised when a KMS encrypt or decrypt call fails."""

    pass


def encrypt_with_kms(client, key_id: str, plaintext: bytes) -> str:
    """Encrypt plaintext with a KMS key.

    Args:
        client: boto3 KMS client
        key_id: Key ID, ARN or alias of the KMS key
        plaintext: Data to encrypt

    Returns:
        Base64 encoded ciphertext blob

    Raises:
        KMSError: When the KMS call fails
    """
    try:
        response = client.encrypt(KeyId=key_id, Plaintext=plaintext)
    except ClientError as e:
        raise KMSError(f"Failed to encrypt with {key_id}: {e}") from e
    return base64.b64encode(response["CiphertextBlob"]).decode("ascii")


def decrypt_with_kms(client, ciphertext: str) -> bytes:
    """Decrypt a base64 encoded KMS ciphertext blob.

    Args:
        client: boto3 KMS client
        ciphertext: Base64 encoded ciphertext

    Returns:
        Decrypted plaintext

    Raises:
        KMSError: When the ciphertext is not valid base64 or KMS fails
    """
    try:
        blob = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KMSError(f"KMS ciphertext is not valid base64: {e}") from e

    try:
        response = client.decrypt(CiphertextBlob=blob)
    except ClientError as e:
        raise KMSError(f"Failed to decrypt KMS value: {e}") from e

    logger.debug(f"Decrypted value with key {response.get('KeyId')}")
    return response["Plaintext"]
