import argparse
import datetime as dt
import json
import logging
import os
import time
from dataclasses import asdict, dataclass

from bookiobot.api_client import AuthenticatedClient
from bookiobot.config import Settings, load_settings
from bookiobot.domain import BookioError
from bookiobot.scheduler import RefreshScheduler
from bookiobot.selenium_provider import SeleniumLoginDriver
from bookiobot.session import SessionManager
from bookiobot.slot_finder import SlotFinder
from bookiobot.token_store import TokenStore
from bookiobot.widget_api import WidgetClient

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


@dataclass
class Services:
    settings: Settings
    store: TokenStore
    manager: SessionManager
    scheduler: RefreshScheduler
    slot_finder: SlotFinder
    client: AuthenticatedClient


def build_services(settings: Settings) -> Services:
    store = TokenStore(settings.token_dir)
    driver = SeleniumLoginDriver(
        cookie_name=settings.cookie_name,
        headless=settings.headless,
        wait_seconds=settings.login_wait_seconds,
    )
    manager = SessionManager(settings, store, driver)
    return Services(
        settings=settings,
        store=store,
        manager=manager,
        scheduler=RefreshScheduler(manager, settings),
        slot_finder=SlotFinder(WidgetClient(settings), settings),
        client=AuthenticatedClient(manager, settings),
    )


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="bookiobot: Bookio session keeper and slot finder")
    sub = parser.add_subparsers(dest="command", required=True)

    soonest = sub.add_parser("soonest", help="Find the soonest bookable slot")
    soonest.add_argument("service_id", type=int)
    soonest.add_argument("--worker-id", default="auto", help="Worker id or 'auto' (default)")
    soonest.add_argument("--months", type=int, default=None, help="Months to scan")
    soonest.add_argument("--retries", type=int, default=None, help="Retries per remote call")

    check = sub.add_parser("check", help="Check whether an exact slot is offered")
    check.add_argument("service_id", type=int)
    check.add_argument("worker_id", type=int)
    check.add_argument("date", type=dt.date.fromisoformat, help="YYYY-MM-DD")
    check.add_argument("time", help="HH:MM")

    slots = sub.add_parser("slots", help="List every offered time of one day")
    slots.add_argument("service_id", type=int)
    slots.add_argument("date", type=dt.date.fromisoformat, help="YYYY-MM-DD")
    slots.add_argument("--worker-id", default="auto", help="Worker id or 'auto' (default)")

    sub.add_parser("refresh", help="Force a fresh login")
    sub.add_parser("status", help="Show session status")
    sub.add_parser("auth-check", help="Check admin endpoints with the current session")
    sub.add_parser("serve", help="Keep the session fresh until interrupted")

    tokens = sub.add_parser("tokens", help="Token store tooling")
    tokens.add_argument("action", choices=["list", "stats", "cleanup"])
    tokens.add_argument("--grace-hours", type=float, default=0.0)

    return parser


def _serve(services: Services) -> None:
    scheduler = services.scheduler
    scheduler.start()
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.stop()
        _print_json(scheduler.get_statistics())


def run(args: argparse.Namespace, services: Services) -> None:
    if args.command == "soonest":
        result = services.slot_finder.find_soonest_slot(
            args.service_id, args.worker_id, max_months=args.months, max_retries=args.retries
        )
        _print_json(result.to_dict())
    elif args.command == "check":
        _print_json(asdict(services.slot_finder.check_slot(args.service_id, args.worker_id, args.date, args.time)))
    elif args.command == "slots":
        day = services.slot_finder.get_day_slots(args.service_id, args.worker_id, args.date)
        _print_json(asdict(day) | {"total_slots": day.total_slots})
    elif args.command == "refresh":
        services.manager.force_refresh()
        # Adopts the cookie just stored, no second login.
        services.manager.initialize()
        _print_json(services.manager.get_status())
    elif args.command == "status":
        services.manager.restore()
        _print_json(services.manager.get_status())
    elif args.command == "auth-check":
        _print_json(services.client.check_authentication() | {"statistics": services.client.statistics})
    elif args.command == "serve":
        _serve(services)
    elif args.command == "tokens":
        if args.action == "list":
            _print_json(services.store.list_tokens())
        elif args.action == "stats":
            _print_json(services.store.statistics())
        else:
            _print_json({"cleaned": services.store.cleanup_expired(grace_seconds=args.grace_hours * 3600)})


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    _setup_logging()

    try:
        settings = load_settings()
        services = build_services(settings)
        try:
            run(args, services)
        finally:
            services.slot_finder.close()
            services.client.close()
        return 0
    except BookioError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
