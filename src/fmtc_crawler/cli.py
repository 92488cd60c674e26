"""Command-line interface for the FMTC crawler."""

import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from fmtc_crawler.config import (
    CrawlerConfig,
    credentials_from_env,
    load_job_file,
)
from fmtc_crawler.database import get_db_client
from fmtc_crawler.errors import ConfigurationError, CrawlerError
from fmtc_crawler.logging_config import setup_logging
from fmtc_crawler.models import (
    Credentials,
    DisplayFilter,
    JobDescriptor,
    MerchantTarget,
    SearchParams,
)
from fmtc_crawler.orchestrator import CrawlOrchestrator
from fmtc_crawler.single_merchant import MerchantRefresher, RefreshRequest, to_contract
from fmtc_crawler.utils.captcha_solver import CaptchaResolutionService
from fmtc_crawler.utils.session_store import SessionStore


def _load_job(args) -> Dict[str, Any]:
    if getattr(args, "config", None):
        return load_job_file(Path(args.config))
    return {}


def build_config(args, job: Dict[str, Any]) -> CrawlerConfig:
    """Environment first, then the job file, then command-line flags."""
    overrides: Dict[str, Any] = dict(job.get("config") or {})
    if getattr(args, "max_pages", None) is not None:
        overrides["max_pages"] = args.max_pages
    if getattr(args, "headed", False):
        overrides["headless"] = False
    if getattr(args, "captcha_mode", None):
        overrides["captcha"] = {**overrides.get("captcha", {}), "mode": args.captcha_mode}
    if getattr(args, "download_images", False):
        overrides["download_images"] = True
    return CrawlerConfig.from_env(overrides)


def build_credentials() -> Credentials:
    username, password = credentials_from_env()
    return Credentials(username=username or "", password=password or "")


def build_search_params(args, job: Dict[str, Any]) -> SearchParams:
    data = dict(job.get("search") or {})
    for attr in ("free_text", "network_id", "provider_id", "category", "country", "ship_to_country"):
        value = getattr(args, attr, None)
        if value:
            data[attr] = value
    if getattr(args, "display", None):
        data["display_filter"] = args.display
    return SearchParams.from_dict(data)


def build_targets(entries: List[Dict[str, Any]]) -> List[MerchantTarget]:
    targets = []
    for entry in entries:
        target = MerchantTarget(
            merchant_url=entry.get("url"),
            merchant_id=str(entry["id"]) if entry.get("id") else None,
            merchant_name=entry.get("name"),
        )
        if target.merchant_url or target.merchant_id:
            targets.append(target)
    return targets


def write_output(payload: Dict[str, Any], output_file: Optional[str]) -> None:
    """Print JSON to stdout or write it to a file."""
    output = json.dumps(payload, indent=2, default=str)
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        print(f"Results written to {output_file}", file=sys.stderr)
    else:
        print(output)


def crawl_command(args) -> int:
    """Run a search sweep, or a batch refresh when the job file lists merchants."""
    job_data = _load_job(args)
    config = build_config(args, job_data)

    job = JobDescriptor(
        credentials=build_credentials(),
        execution_id=args.execution_id or f"crawl-{uuid.uuid4().hex[:12]}",
        search_params=build_search_params(args, job_data),
        targets=build_targets(job_data.get("merchants") or []),
        download_images=bool(job_data.get("download_images", False)),
    )

    result = asyncio.run(CrawlOrchestrator(config).run(job))
    write_output(result.to_dict(), args.output_file)
    return 0 if result.success else 1


def refresh_command(args) -> int:
    """Refresh one merchant by id or URL."""
    job_data = _load_job(args)
    config = build_config(args, job_data)

    request = RefreshRequest(
        credentials=build_credentials(),
        execution_id=args.execution_id or f"refresh-{uuid.uuid4().hex[:12]}",
        targets=[MerchantTarget(
            merchant_url=args.merchant_url,
            merchant_id=args.merchant_id,
            merchant_name=args.merchant_name,
        )],
        download_images=args.download_images,
    )

    result = asyncio.run(MerchantRefresher(config).refresh(request))
    write_output(to_contract(result), args.output_file)
    return 0 if result.success else 1


def balance_command(args) -> int:
    """Print the 2Captcha account balance."""
    config = build_config(args, {})
    service = CaptchaResolutionService(config.captcha)
    try:
        balance = asyncio.run(service.get_balance())
    except CrawlerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"2Captcha balance: ${balance:.2f}")
    return 0


def sessions_command(args) -> int:
    """Inspect or clean up saved sessions."""
    config = build_config(args, {})
    database = get_db_client(config.session.database_path)
    store = SessionStore(config.session, database)
    try:
        if args.action == "list":
            write_output({"sessions": store.list_sessions()}, None)
        elif args.action == "clear-expired":
            print(f"Cleared {store.clear_expired()} expired sessions")
        elif args.action == "delete":
            if not args.identity:
                print("Error: an identity is required for delete", file=sys.stderr)
                return 1
            if not store.delete(args.identity):
                print(f"No session found for {args.identity}")
                return 1
            print(f"Session deleted for {args.identity}")
    finally:
        if database is not None:
            database.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="FMTC crawler - harvest merchant records from the FMTC program directory"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file in addition to console",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_job_options(sub):
        sub.add_argument("--config", "-c", help="YAML job file")
        sub.add_argument("--execution-id", help="Correlation id for logs and results")
        sub.add_argument("--output-file", "-f", help="Write JSON results to file")
        sub.add_argument("--headed", action="store_true", help="Show the browser window")
        sub.add_argument(
            "--captcha-mode",
            choices=["manual", "auto", "skip"],
            help="How to handle reCAPTCHA (default: FMTC_RECAPTCHA_MODE or manual)",
        )
        sub.add_argument(
            "--download-images",
            action="store_true",
            help="Download logo and screenshot images",
        )

    # Crawl command parser
    crawl_parser = subparsers.add_parser("crawl", help="Search the directory and extract merchants.")
    add_job_options(crawl_parser)
    crawl_parser.add_argument("--search", dest="free_text", help="Free-text search")
    crawl_parser.add_argument("--network", dest="network_id", help="Network id")
    crawl_parser.add_argument("--provider", dest="provider_id", help="Provider id")
    crawl_parser.add_argument("--category", help="Category label or numeric code")
    crawl_parser.add_argument("--country", help="Country code")
    crawl_parser.add_argument("--ships-to", dest="ship_to_country", help="Ship-to country code")
    crawl_parser.add_argument(
        "--display",
        choices=[f.value for f in DisplayFilter],
        help="Display filter (default: all)",
    )
    crawl_parser.add_argument(
        "--max-pages",
        type=int,
        help="Maximum result pages to read (default: FMTC_MAX_PAGES or 10)",
    )
    crawl_parser.set_defaults(func=crawl_command)

    # Refresh command parser
    refresh_parser = subparsers.add_parser("refresh", help="Refresh one merchant.")
    add_job_options(refresh_parser)
    target = refresh_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--merchant-id", help="FMTC merchant id")
    target.add_argument("--merchant-url", help="Merchant detail page URL")
    refresh_parser.add_argument("--merchant-name", help="Merchant name for logs and image folders")
    refresh_parser.set_defaults(func=refresh_command)

    # Balance command parser
    balance_parser = subparsers.add_parser("balance", help="Show the 2Captcha balance.")
    balance_parser.set_defaults(func=balance_command)

    # Sessions command parser
    sessions_parser = subparsers.add_parser("sessions", help="Manage saved login sessions.")
    sessions_parser.add_argument("action", choices=["list", "clear-expired", "delete"])
    sessions_parser.add_argument("identity", nargs="?", help="Account username (for delete)")
    sessions_parser.set_defaults(func=sessions_command)

    args = parser.parse_args(argv)

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, "log_file", None),
    )

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except (ConfigurationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
