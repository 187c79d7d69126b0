"""Centralized AWS session handling with role assumption and MFA.

This module builds the boto3 session shared by every tool. Credentials come
from the default provider chain, an assumed role, or an MFA session token,
depending on the flags given on the command line.
"""

import argparse
import getpass
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "eu-west-1"
DEFAULT_SESSION_DURATION = 3600
CREDENTIAL_ENVIRONMENT_KEYS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")


class CredentialsConfigError(Exception):
    """Raised when AWS credentials cannot be set up."""

    pass


@dataclass
class SessionFlags:
    """Session options shared by all command line tools."""

    role_arn: Optional[str] = None
    role_external_id: Optional[str] = None
    role_session_name: Optional[str] = None
    region: Optional[str] = None
    mfa_serial_number: Optional[str] = None
    mfa_token_code: Optional[str] = None
    duration: int = DEFAULT_SESSION_DURATION
    profile_name: Optional[str] = None

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "SessionFlags":
        """Build session flags from parsed command line arguments.

        Args:
            args: Namespace produced by a parser set up with
                  add_session_arguments

        Returns:
            SessionFlags instance
        """
        return cls(
            role_arn=args.assume_role_arn,
            role_external_id=args.assume_role_external_id,
            role_session_name=args.assume_role_session_name,
            region=args.region,
            mfa_serial_number=args.mfa_serial_number,
            mfa_token_code=args.mfa_token_code,
            duration=args.session_duration,
            profile_name=args.profile,
        )


def add_session_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the shared session flags on a parser."""
    group = parser.add_argument_group("AWS session")
    group.add_argument("--assume-role-arn", help="Role to assume")
    group.add_argument(
        "--assume-role-external-id",
        help="External ID of the role to assume",
    )
    group.add_argument(
        "--assume-role-session-name", help="Role session name"
    )
    group.add_argument("--region", help="AWS Region")
    group.add_argument("--mfa-serial-number", help="MFA Serial Number")
    group.add_argument("--mfa-token-code", help="MFA Token Code")
    group.add_argument(
        "--session-duration",
        type=int,
        default=DEFAULT_SESSION_DURATION,
        help="Session duration in seconds (default: %(default)s)",
    )
    group.add_argument(
        "--profile", help="AWS profile name to use for credentials"
    )


def resolve_region(region: Optional[str] = None) -> str:
    """Resolve the AWS region to use.

    Args:
        region: Explicit region, takes precedence when set

    Returns:
        The explicit region, else AWS_REGION, else the default region
    """
    if not region:
        region = os.environ.get("AWS_REGION")
    if not region:
        region = DEFAULT_REGION
    return region


def check_credentials_environment() -> None:
    """Reject credential environment variables with stray whitespace.

    Raises:
        CredentialsConfigError: When a credential variable has leading
                                or trailing spaces
    """
    for key in CREDENTIAL_ENVIRONMENT_KEYS:
        value = os.environ.get(key, "")
        if value and value.strip() != value:
            raise CredentialsConfigError(
                f"{key} has trailing spaces, please check your config"
            )


def stdin_token_provider() -> str:
    """Prompt for an MFA token code on the terminal."""
    return getpass.getpass("Assume Role MFA token code: ").strip()


class AWSClientManager:
    """AWS session and client management.

    The session is built on first use. Clients are cached per service and
    region so that repeated lookups reuse the same connection pool.
    """

    def __init__(
        self,
        flags: Optional[SessionFlags] = None,
        token_provider: Callable[[], str] = stdin_token_provider,
    ) -> None:
        """Initialize AWS client manager.

        Args:
            flags: Session options, defaults to the plain credential chain
            token_provider: Callable returning an MFA token code when one
                            is needed but was not given

        Raises:
            CredentialsConfigError: When credential environment variables
                                    are malformed
        """
        self.flags = flags or SessionFlags()
        self._token_provider = token_provider
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, object] = {}
        check_credentials_environment()

    @property
    def region(self) -> str:
        """Region every client defaults to."""
        return resolve_region(self.flags.region)

    @property
    def session(self) -> boto3.Session:
        """Get or create the boto3 session."""
        if self._session is None:
            self._session = self._build_session()
        return self._session

    def _base_session(self) -> boto3.Session:
        if self.flags.profile_name:
            return boto3.Session(
                profile_name=self.flags.profile_name, region_name=self.region
            )
        return boto3.Session(region_name=self.region)

    def _build_session(self) -> boto3.Session:
        """Build the session, exchanging credentials through STS if needed.

        Returns:
            Configured boto3 session

        Raises:
            CredentialsConfigError: When STS does not return credentials
        """
        base = self._base_session()

        if self.flags.role_arn:
            credentials = self._assume_role(base)
        elif self.flags.mfa_serial_number:
            credentials = self._get_session_token(base)
        else:
            return base

        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )

    def _token_code(self) -> str:
        if self.flags.mfa_token_code:
            return self.flags.mfa_token_code
        return self._token_provider()

    def _assume_role(self, base: boto3.Session) -> Dict[str, str]:
        session_name = (
            self.flags.role_session_name or f"awstools-{int(time.time())}"
        )
        params = {
            "RoleArn": self.flags.role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": self.flags.duration,
        }
        if self.flags.role_external_id:
            params["ExternalId"] = self.flags.role_external_id
        if self.flags.mfa_serial_number:
            params["SerialNumber"] = self.flags.mfa_serial_number
            params["TokenCode"] = self._token_code()

        logger.debug(f"Assuming role {self.flags.role_arn} as {session_name}")
        try:
            response = base.client("sts").assume_role(**params)
        except ClientError as e:
            raise CredentialsConfigError(
                f"Failed to assume role {self.flags.role_arn}: {e}"
            ) from e
        return self._extract_credentials(response)

    def _get_session_token(self, base: boto3.Session) -> Dict[str, str]:
        logger.debug(
            f"Requesting session token for {self.flags.mfa_serial_number}"
        )
        try:
            response = base.client("sts").get_session_token(
                SerialNumber=self.flags.mfa_serial_number,
                TokenCode=self._token_code(),
            )
        except ClientError as e:
            raise CredentialsConfigError(
                f"Failed to get session token: {e}"
            ) from e
        return self._extract_credentials(response)

    @staticmethod
    def _extract_credentials(response: Dict) -> Dict[str, str]:
        credentials = response.get("Credentials")
        if not credentials:
            raise CredentialsConfigError("Could not get credentials")
        return credentials

    def get_client(self, service_name: str, region_name: Optional[str] = None):
        """Get AWS service client for specified region.

        Args:
            service_name: AWS service name (e.g., 'ssm', 'kms')
            region_name: AWS region name, defaults to the session region

        Returns:
            Configured boto3 client for the service and region
        """
        region_name = region_name or self.region
        client_key = f"{service_name}_{region_name}"

        if client_key not in self._clients:
            self._clients[client_key] = self.session.client(
                service_name, region_name=region_name
            )

        return self._clients[client_key]

    def get_current_region(self) -> str:
        """Region the session resolves values in."""
        return self.session.region_name or self.region

    def get_account_id(self) -> str:
        """Account the session credentials belong to.

        Raises:
            ClientError: When STS rejects the credentials
        """
        return self.get_client("sts").get_caller_identity()["Account"]
