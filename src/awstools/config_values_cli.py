"""Resolve a configuration file and print it or inject it into a command.

Placeholders in the configuration are resolved against KMS, SSM Parameter
Store, Secrets Manager and local files before the result is written out as
JSON, as environment assignments, or passed as the environment of a child
process.
"""

import argparse
import json
import logging
import os
import shlex
import sys
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from awstools import __version__
from awstools.common.aws_client import (
    AWSClientManager,
    CredentialsConfigError,
    SessionFlags,
    add_session_arguments,
)
from awstools.common.config_values import (
    ConfigValues,
    ConfigValuesError,
    DEFAULT_MAX_RETRIES,
    to_environment,
)
from awstools.common.utils import ConfigurationError, configure_logging

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "env", "export")
ENV_SPECIAL_CHARS = ("\\", '"', "\n", "\r")


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="config-values",
        usage="%(prog)s [options] config_file [-- command [args ...]]",
        description="Resolve configuration values from KMS, SSM, Secrets Manager and files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s config.json                       # Print the resolved configuration
  %(prog)s config.yaml --format export       # Shell export statements
  %(prog)s config.json -- ./run-server.sh    # Run a command with the values in its environment
        """,
    )

    parser.add_argument(
        "config_file", help="JSON or YAML file with the configuration"
    )
    parser.add_argument(
        "--format",
        choices=OUTPUT_FORMATS,
        default="json",
        help="Output format (default: %(default)s)",
    )
    parser.add_argument(
        "-o", "--output", help="Write the result to this file instead of stdout"
    )
    parser.add_argument(
        "--max-retries",
        type=positive_int,
        default=DEFAULT_MAX_RETRIES,
        help="Refresh attempts before giving up (default: %(default)s)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"awstools config-values v{__version__}",
    )
    add_session_arguments(parser)

    if argv is None:
        argv = sys.argv[1:]
    command: List[str] = []
    if "--" in argv:
        separator = argv.index("--")
        argv, command = argv[:separator], argv[separator + 1:]

    args = parser.parse_args(argv)
    args.command = command
    return args


def render(resolved: Dict, output_format: str) -> str:
    """Render a resolved configuration in the requested format."""
    if output_format == "json":
        return json.dumps(resolved, indent=2, sort_keys=True, default=str) + "\n"

    env = to_environment(resolved)
    if output_format == "env":
        lines = [env_line(key, value) for key, value in sorted(env.items())]
    else:
        lines = [
            f"export {key}={shlex.quote(value)}"
            for key, value in sorted(env.items())
        ]
    return "".join(f"{line}\n" for line in lines)


def env_line(key: str, value: str) -> str:
    """Format a KEY=value line, double quoting values that would span lines.

    Backslashes, double quotes and line breaks are escaped inside the quotes.
    """
    if not any(char in value for char in ENV_SPECIAL_CHARS):
        return f"{key}={value}"
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'{key}="{escaped}"'


def log_caller_identity(aws_client: AWSClientManager) -> None:
    """Log the account and region the placeholders are resolved in."""
    try:
        account_id = aws_client.get_account_id()
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Unable to determine the AWS account: {e}")
        return
    logger.debug(
        f"Resolving values in account {account_id} ({aws_client.get_current_region()})"
    )


def run_command(command: List[str], resolved: Dict) -> None:
    """Replace the current process with command, adding resolved values
    to its environment."""
    env = dict(os.environ)
    env.update(to_environment(resolved))
    logger.debug(f"Executing {command[0]}")
    os.execvpe(command[0], command, env)


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        args = parse_arguments(argv)
        configure_logging(args.verbose)

        config = ConfigValues(max_retries=args.max_retries)
        try:
            config.set_from_file(args.config_file)
        except (ConfigurationError, ConfigValuesError) as e:
            print(f"❌ Configuration error: {e}", file=sys.stderr)
            return 1

        try:
            aws_client = AWSClientManager(SessionFlags.from_args(args))
            session = aws_client.session if config.is_refreshable() else None
            if args.verbose and session is not None:
                log_caller_identity(aws_client)
        except (CredentialsConfigError, BotoCoreError) as e:
            print(f"❌ AWS session initialization failed: {e}", file=sys.stderr)
            return 1

        try:
            resolved = config.refresh_with_retries(session)
        except ConfigValuesError as e:
            cause = f" ({e.__cause__})" if e.__cause__ else ""
            print(f"❌ {e}{cause}", file=sys.stderr)
            return 1

        if args.command:
            run_command(args.command, resolved)
            return 0

        output = render(resolved, args.format).encode("utf-8", "surrogateescape")
        if args.output:
            with open(args.output, "wb") as f:
                f.write(output)
        else:
            sys.stdout.buffer.write(output)
            sys.stdout.flush()

        return 0

    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.", file=sys.stderr)
        return 130

    except OSError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
