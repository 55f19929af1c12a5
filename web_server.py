#!/usr/bin/env python3
"""
CLI tool to start the ServiceBell FastAPI web server.

This script provides a convenient command-line interface to start the
notification backend using uvicorn. It checks the Web Push and token
settings before starting and warns about anything that will leave
devices without push delivery.

Usage:
    python3 web_server.py                    # Start with defaults
    python3 web_server.py --host 0.0.0.0     # Listen on all interfaces
    python3 web_server.py --port 8080        # Use custom port
    python3 web_server.py --reload           # Enable auto-reload for development

Environment Variables:
    SERVICEBELL_DB_URL: Database URL (default: sqlite:///./servicebell.db)
    SERVICEBELL_ENV: Environment (production/development, default: development)
    SERVICEBELL_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
    JWT_SECRET_KEY: Secret for verifying access tokens
    VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY: Web Push key pair
"""

import argparse
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv


def load_env_file() -> None:
    """
    Load environment variables from backend/.env file.

    Variables already set in the environment take precedence over .env values.
    """
    env_path = Path(__file__).parent / "backend" / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)


def check_settings() -> list:
    """
    Collect configuration problems that do not prevent startup.

    Returns:
        Human readable warnings, empty when push delivery is fully configured
    """
    warnings = []
    if not os.environ.get("JWT_SECRET_KEY"):
        warnings.append(
            "JWT_SECRET_KEY is not set: every authenticated endpoint will answer 503."
        )
    if not (os.environ.get("VAPID_PUBLIC_KEY") and os.environ.get("VAPID_PRIVATE_KEY")):
        warnings.append(
            "VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY are not set: push dispatch is disabled "
            "and devices only receive notifications through sync."
        )
    if not os.environ.get("SERVICEBELL_CRON_SECRET"):
        warnings.append(
            "SERVICEBELL_CRON_SECRET is not set: the cron endpoints will answer 503."
        )
    return warnings


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace with host, port, and reload flags
    """
    parser = argparse.ArgumentParser(
        description="Start the ServiceBell FastAPI web server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start development server with auto-reload
  python3 web_server.py --reload

  # Start server on all interfaces (accessible from network)
  python3 web_server.py --host 0.0.0.0

  # Production configuration
  python3 web_server.py --host 0.0.0.0 --port 8000

Environment Variables:
  SERVICEBELL_DB_URL       Database URL
  SERVICEBELL_ENV          Environment (production/development)
  SERVICEBELL_LOG_LEVEL    Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
  JWT_SECRET_KEY           Access token secret
  VAPID_PUBLIC_KEY         Web Push public key
  VAPID_PRIVATE_KEY        Web Push private key
        """
    )

    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the server to (default: 127.0.0.1). "
             "Use 0.0.0.0 to listen on all interfaces."
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind the server to (default: 8000)"
    )

    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development. Not recommended for production."
    )

    return parser.parse_args()


def main() -> None:
    """
    Main entry point for the web server CLI tool.

    Exit Codes:
        0: Server stopped normally
    """
    args = parse_arguments()

    load_env_file()

    for warning in check_settings():
        print(f"WARNING: {warning}", file=sys.stderr)

    print("\nStarting ServiceBell web server...")
    print(f"Host: {args.host}")
    print(f"Port: {args.port}")
    print(f"Auto-reload: {'enabled' if args.reload else 'disabled'}")
    print(f"\nAPI documentation: http://{args.host}:{args.port}/docs")
    print(f"Health check: http://{args.host}:{args.port}/health")
    print("\nPress CTRL+C to stop the server\n")

    try:
        uvicorn.run(
            "backend.src.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\n\nServer stopped by user (CTRL+C)")
        sys.exit(0)


if __name__ == "__main__":
    main()
