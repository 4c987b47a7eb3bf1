# -*- coding: utf-8 -*-
"""
Headless entry point

Signs in (password, device trust, one-time code), selects a tenant and
keeps the local cache in sync.

Usage:
    python -m psloader.main --email user@example.com --tenant HOTEL01
    python -m psloader.main --email user@example.com --once
    python -m psloader.main --email user@example.com --once --force
"""

import argparse
import getpass
import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .api_client import (
    DeviceIdentityUnavailableError,
    DevicePendingApprovalError,
    InvalidCredentialsError,
    NetworkOrApiError,
)
from .app import PSLoaderApp
from .config import AppConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: AppConfig, verbose: bool = False):
    """stderr plus a rotating log file in the data directory."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    try:
        config.ensure_data_dir()
        file_handler = RotatingFileHandler(
            config.log_path, maxBytes=2 * 1024 * 1024, backupCount=3, encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Log file disabled: {e}")

    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PSLoader headless sync client")
    parser.add_argument("--email", required=True, help="Account e-mail")
    parser.add_argument("--tenant", help="Hotel OU to sync (default: last selected)")
    parser.add_argument("--api-url", help="API base URL")
    parser.add_argument("--data-dir", help="Directory for the local database and logs")
    parser.add_argument("--once", action="store_true", help="Run a single sync pass and exit")
    parser.add_argument("--force", action="store_true",
                        help="With --once, refresh every cached entity regardless of age")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def sign_in(app: PSLoaderApp, email: str) -> bool:
    """Walk the session up to the elevated level. False on a soft failure."""
    password = getpass.getpass("Password: ")
    try:
        app.session.login(email, password)
    except InvalidCredentialsError as e:
        print(f"Login failed: {e}")
        return False

    try:
        app.session.verify_or_register_device()
    except DevicePendingApprovalError:
        print("This device is waiting for administrator approval. Try again later.")
        return False
    except DeviceIdentityUnavailableError as e:
        print(f"Device identity unavailable, check the data directory: {e}")
        return False

    app.session.generate_totp()
    code = input("One-time code: ").strip()
    app.session.verify_totp(code)
    return app.session.is_authenticated()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    config = AppConfig.from_env()
    if args.api_url:
        config.api_base_url = args.api_url
    if args.data_dir:
        config.data_dir = args.data_dir

    setup_logging(config, args.verbose)
    app = PSLoaderApp(config)

    try:
        if not sign_in(app, args.email):
            return 2

        tenant = args.tenant or app.selected_tenant
        if not tenant:
            hotels = app.hotels.get_hotels()
            if not hotels:
                print("No hotels available for this account")
                return 1
            tenant = hotels[0]['ou']

        if args.once:
            app.select_tenant(tenant).join()
            result = app.sync_now(force=True) if args.force else app.scheduler.last_result
            if result is None:
                return 1
            for failure in result.failures:
                print(f"{failure.key}: {failure.error}")
            return 0 if result.success else 1

        app.select_tenant(tenant)
        app.start_background_sync()
        print(f"Syncing {tenant} every {config.sync_interval_seconds}s. Ctrl+C to stop.")
        threading.Event().wait()
    except KeyboardInterrupt:
        print("Stopping")
    except NetworkOrApiError as e:
        logger.error(f"API error: {e}")
        return 1
    finally:
        app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
