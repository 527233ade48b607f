"""
Command line entry point for the Friendship session client.

Provides login, logout, status, forced refresh and authenticated requests
against the backend, using the persisted session of previous runs.
"""

import sys
import json
import asyncio
import getpass
import argparse
import logging
from typing import Optional, List

from friendship_client.auth.claims import decode_claims
from friendship_client.auth.session_manager import SessionController, create_session_controller
from friendship_client.config import ClientConfiguration
from friendship_shared.exceptions import (
    FriendshipClientError, AuthenticationError, RefreshFailure, SessionExpiredError,
    ConfigurationError, ErrorCode, create_error_response, handle_exception
)
from friendship_shared.logging_config import LogLevel, LogFormat, setup_logging, log_structured_error

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_AUTH_FAILED = 2
EXIT_CONFIG_ERROR = 3
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Friendship Client",
        epilog="""
Examples:
  %(prog)s --login alice@example.com       # Log in (prompts for password)
  %(prog)s --status --json                 # Show session status as JSON
  %(prog)s --request GET /events           # Authenticated request
  %(prog)s --request POST /events --data '{"title": "Picnic"}'
  %(prog)s --refresh                       # Refresh credentials now
  %(prog)s --logout                        # Forget stored credentials
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group()
    operation_group.add_argument("--login", type=str, metavar="EMAIL",
                                 help="Log in with the given email address")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Log out and remove stored credentials")
    operation_group.add_argument("--status", action="store_true",
                                 help="Show current session status")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Refresh credentials now")
    operation_group.add_argument("--request", nargs=2, metavar=("METHOD", "PATH"),
                                 help="Send a request to the backend")

    request_group = parser.add_argument_group('Request')
    request_group.add_argument("--password", type=str,
                               help="Password for --login (prompted if omitted)")
    request_group.add_argument("--data", type=str, metavar="JSON",
                               help="JSON body for --request")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results in JSON format")
    output_group.add_argument("--verbose", "-v", action="store_true",
                              help="Enable verbose output")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Log to file")

    args = parser.parse_args(argv)

    if not (args.login or args.logout or args.status or args.refresh or args.request):
        parser.error("No operation specified")

    if args.data is not None:
        if not args.request:
            parser.error("--data can only be used with --request")
        try:
            args.data = json.loads(args.data)
        except ValueError as e:
            parser.error(f"--data is not valid JSON: {e}")

    if args.password and not args.login:
        parser.error("--password can only be used with --login")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging based on command line arguments and configuration."""
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.verbose:
        log_level = LogLevel.INFO
    elif args.json:
        log_level = LogLevel.ERROR
    else:
        try:
            log_level = LogLevel(config.get_log_level())
        except ValueError:
            raise ConfigurationError(
                f"Invalid log level: {config.get_log_level()}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='logging.level'
            )

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    audit_file = config.get_audit_file()
    setup_logging(
        log_level=log_level,
        log_format=LogFormat.DETAILED if args.debug else log_format,
        log_file=args.log_file or config.get_log_file(),
        enable_audit=bool(audit_file),
        audit_file=audit_file
    )


def _output(args, payload, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


async def _session_status(controller: SessionController) -> dict:
    pair = await controller.credential_store.load()
    claims = decode_claims(pair.access_token) if pair else None

    return {
        'authenticated': controller.is_authenticated(),
        'subject': controller.subject,
        'expires_at': claims.expires_at.isoformat() if claims and claims.expires_at else None,
        'next_refresh_in': controller.scheduler.next_delay
    }


async def run_command(args, config: ClientConfiguration) -> int:
    """
    Run a single command against the backend.

    Returns:
        Exit code
    """
    controller = create_session_controller(config)

    try:
        await controller.bootstrap()

        if args.login:
            password = args.password or getpass.getpass("Password: ")
            await controller.authenticate(args.login, password)
            _output(args, {'authenticated': True, 'subject': controller.subject},
                    f"Logged in as {controller.subject or args.login}")
            return EXIT_SUCCESS

        if args.logout:
            await controller.logout()
            _output(args, {'authenticated': False}, "Logged out")
            return EXIT_SUCCESS

        if args.status:
            status = await _session_status(controller)
            if status['authenticated']:
                text = f"Logged in as {status['subject'] or 'unknown user'}"
                if status['expires_at']:
                    text += f" (access token expires {status['expires_at']})"
            else:
                text = "Not logged in"
            _output(args, status, text)
            return EXIT_SUCCESS if status['authenticated'] else EXIT_AUTH_FAILED

        if args.refresh:
            await controller.force_refresh()
            _output(args, await _session_status(controller), "Credentials refreshed")
            return EXIT_SUCCESS

        method, path = args.request
        result = await controller.api_client.request(method, path, data=args.data)
        print(json.dumps(result, indent=2, default=str) if not isinstance(result, str) else result)
        return EXIT_SUCCESS

    except FriendshipClientError as e:
        log_structured_error(logger, e, level=logging.DEBUG)
        controller.audit_logger.log_error(e)
        if args.json:
            print(json.dumps(create_error_response(e), indent=2, default=str))
        else:
            print(f"Error: {e.user_message}", file=sys.stderr)

        if isinstance(e, (AuthenticationError, RefreshFailure, SessionExpiredError)):
            return EXIT_AUTH_FAILED
        return EXIT_FAILURE

    finally:
        await controller.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server_url', args.server_url)

        configure_logging(args, config)

        return asyncio.run(run_command(args, config))

    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        error = handle_exception(e)
        print(f"Fatal error: {error.message}", file=sys.stderr)
        logger.exception("Fatal error in main")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
