"""Command-line interface for portal-gun."""

import argparse
import sys
from typing import List, Optional

from .logging_config import setup_logging, get_logger

logger = get_logger(__name__)

DESCRIPTION = """Open a portal from your local machine to staging.

Starts an AWS SSM port forwarding session to an EC2 instance hosting a task.
You provide the Hopper app and service name, and portal-gun tracks down all of
its associated tasks and where they are running."""


def build_parser() -> argparse.ArgumentParser:
    from . import __version__

    parser = argparse.ArgumentParser(
        prog="portal-gun",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--hopper-app", help="Hopper app name (default: consumer-search-service)")
    parser.add_argument("--hopper-service", help="Hopper service name (default: web)")
    parser.add_argument("--web-port", type=int, help="Port to serve the portal dashboard on (required)")
    parser.add_argument("--forward-port", type=int, help="Local port to forward to the task (required)")
    parser.add_argument("--cluster", help="ECS cluster (default: staging)")
    parser.add_argument("--region", help="AWS region (default: from the AWS environment)")
    parser.add_argument("--document-name", help="SSM port forwarding document")
    parser.add_argument("--settle-seconds", type=float,
                        help="Seconds to wait for the tunnel before serving (default: 10)")
    parser.add_argument("--config", "-c", help="Configuration file path")
    parser.add_argument("--list", action="store_true", dest="list_only",
                        help="Print the endpoints of the service and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"portal-gun {__version__}")
    return parser


def list_command(portal) -> None:
    """Print the endpoint catalog of the configured service."""
    endpoints = portal.build_catalog()
    if not endpoints:
        print("No endpoints found.")
        return

    print(f"\nFound {len(endpoints)} endpoints for {portal.config.service_identifier}:\n")
    print(f"{'Task':<90} {'EC2 Instance':<21} {'Host':<6} {'Container':<9}")
    print("-" * 129)
    for endpoint in endpoints:
        print(f"{endpoint.task_arn:<90} {endpoint.ec2_instance_id:<21} "
              f"{endpoint.host_port:<6} {endpoint.container_port:<9}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    from pydantic import ValidationError

    from .config import build_config, find_config_file
    from .errors import PortalGunError
    from .portal import Portal

    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config_path = find_config_file(args.config)
        config = build_config(
            config_path,
            hopper_app=args.hopper_app,
            hopper_service=args.hopper_service,
            web_port=args.web_port,
            forward_port=args.forward_port,
            cluster=args.cluster,
            region=args.region,
            document_name=args.document_name,
            settle_seconds=args.settle_seconds,
        )
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if not args.list_only:
        missing = [flag for flag, value in (("--web-port", config.web_port),
                                            ("--forward-port", config.forward_port)) if value is None]
        if missing:
            print(f"missing required argument(s): {', '.join(missing)}", file=sys.stderr)
            sys.exit(1)

    portal = Portal(config)
    try:
        if args.list_only:
            list_command(portal)
        else:
            portal.run()
    except PortalGunError as e:
        logger.error("Portal failed", error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
