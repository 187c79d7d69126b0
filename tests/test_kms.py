"""Tests for KMS encryption helpers."""

import base64

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from awstools.common.kms import KMSError, decrypt_with_kms, encrypt_with_kms


@pytest.fixture
def mock_kms_client():
    client = Mock()
    client.encrypt.return_value = {"CiphertextBlob": b"\x01\x02blob", "KeyId": "key-1"}
    client.decrypt.return_value = {"Plaintext": b"secret", "KeyId": "key-1"}
    return client


class TestKMSHelpers:
    """Test cases for encrypt_with_kms and decrypt_with_kms."""

    def test_encrypt(self, mock_kms_client):
        """Test encryption returns base64 ciphertext."""
        ciphertext = encrypt_with_kms(mock_kms_client, "alias/config", b"secret")

        assert ciphertext == base64.b64encode(b"\x01\x02blob").decode("ascii")
        mock_kms_client.encrypt.assert_called_once_with(
            KeyId="alias/config", Plaintext=b"secret"
        )

    def test_encrypt_failure(self, mock_kms_client):
        """Test encryption errors raise KMSError."""
        mock_kms_client.encrypt.side_effect = ClientError(
            {"Error": {"Code": "NotFoundException", "Message": "Alias not found"}},
            "Encrypt",
        )

        with pytest.raises(KMSError, match="Failed to encrypt with alias/missing"):
            encrypt_with_kms(mock_kms_client, "alias/missing", b"secret")

    def test_decrypt(self, mock_kms_client):
        """Test decryption of base64 ciphertext."""
        ciphertext = base64.b64encode(b"blob").decode("ascii")

        assert decrypt_with_kms(mock_kms_client, ciphertext) == b"secret"
        mock_kms_client.decrypt.assert_called_once_with(CiphertextBlob=b"blob")

    def test_decrypt_invalid_base64(self, mock_kms_client):
        """Test ciphertext that is not base64 is rejected."""
        with pytest.raises(KMSError, match="not valid base64"):
            decrypt_with_kms(mock_kms_client, "not base64!")

        mock_kms_client.decrypt.assert_not_called()

    def test_decrypt_failure(self, mock_kms_client):
        """Test decryption errors raise KMSError."""
        mock_kms_client.decrypt.side_effect = ClientError(
            {"Error": {"Code": "InvalidCiphertextException", "Message": "Bad blob"}},
            "Decrypt",
        )

        with pytest.raises(KMSError, match="Failed to decrypt KMS value"):
            decrypt_with_kms(mock_kms_client, base64.b64encode(b"blob").decode("ascii"))
