import sys
import argparse
import logging

from rich.console import Console

from gatekeeper.bootstrap import build_engine, build_identity_provider
from gatekeeper.core.config import load_settings
from gatekeeper.core.errors import (
    AuthorizationError,
    CollaboratorFailure,
    ConfigurationError,
    InvalidTransitionError,
    PolicyLookupError,
    RequestNotFoundError,
    ValidationError,
)
from gatekeeper.core.lifecycle import AccessRequestDraft
from gatekeeper.models.live_access import EventType
from gatekeeper.models.request import RequestUser, TargetResource
from gatekeeper.ui.printer import print_active_requests, print_request_event, print_requests

logger = logging.getLogger("gatekeeper")

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_REJECTED = 2
EXIT_FAULT = 3


def parse_resource(value: str) -> TargetResource:
    """<instance-id>:<platform>[:<name>[:<ip>[:<application>]]]"""
    parts = value.split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise argparse.ArgumentTypeError(f"Expected <instance-id>:<platform>[:name[:ip[:application]]], got: {value}")
    parts += [""] * (5 - len(parts))
    resource_id, platform, name, ip, application = parts[:5]
    return TargetResource(resource_id=resource_id, platform=platform, name=name, ip=ip, application=application)


def parse_user(value: str) -> RequestUser:
    """<user-id>:<name>:<email>"""
    parts = value.split(":")
    if len(parts) != 3 or not all(parts):
        raise argparse.ArgumentTypeError(f"Expected <user-id>:<name>:<email>, got: {value}")
    return RequestUser(user_id=parts[0], name=parts[1], email=parts[2])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gatekeeper: Time-bounded Access Requests")
    parser.add_argument("--config", help="Path to the gatekeeper settings file")
    parser.add_argument("--as-user", required=True, help="Email of the caller, resolved in AWS Identity Center")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit a new access request")
    submit.add_argument("--account", required=True, help="Target account alias")
    submit.add_argument("--region", required=True, help="Target region")
    submit.add_argument("--hours", type=int, required=True, help="Requested duration in hours")
    submit.add_argument("--platform", required=True, help="Platform of every instance (Linux or Windows)")
    submit.add_argument("--instance", dest="resources", type=parse_resource, action="append", required=True,
                        help="<instance-id>:<platform>[:name[:ip[:application]]], repeatable")
    submit.add_argument("--user", dest="users", type=parse_user, action="append", required=True,
                        help="<user-id>:<name>:<email>, repeatable")
    submit.add_argument("--reason", default="", help="Justification")
    submit.add_argument("--ticket", help="Jira/ServiceNow Ticket ID")

    sub.add_parser("list-active", help="Show requests waiting for approval")
    sub.add_parser("list-completed", help="Show actioned requests")

    show = sub.add_parser("show", help="Show one request")
    show.add_argument("request_id", type=int)

    approve = sub.add_parser("approve", help="Approve a pending request")
    approve.add_argument("request_id", type=int)
    approve.add_argument("--comments", default="")
    approve.add_argument("--hours", type=int, help="Final duration; defaults to the requested hours")

    reject = sub.add_parser("reject", help="Reject a pending request")
    reject.add_argument("request_id", type=int)
    reject.add_argument("--comments", default="")

    cancel = sub.add_parser("cancel", help="Cancel a pending request")
    cancel.add_argument("request_id", type=int)

    live = sub.add_parser("live", help="Show live access for the users of a request")
    live.add_argument("request_id", type=int)
    live.add_argument("--event", choices=[e.value for e in EventType], default=EventType.APPROVAL.value)

    return parser


def run(args, engine, caller, console: Console) -> None:
    if args.command == "submit":
        draft = AccessRequestDraft(
            account=args.account,
            region=args.region,
            hours=args.hours,
            platform=args.platform,
            resources=args.resources,
            users=args.users,
            request_reason=args.reason,
            ticket_id=args.ticket,
        )
        request = engine.submit(caller, draft)
        print_requests([request], title=f"Submitted request {request.id}", console=console)
    elif args.command == "list-active":
        print_active_requests(engine.list_active(caller), console=console)
    elif args.command == "list-completed":
        print_requests(engine.list_completed(caller), title="Completed requests", console=console)
    elif args.command == "show":
        print_requests(engine.get_request(args.request_id, caller), title=f"Request {args.request_id}",
                       console=console)
    elif args.command == "approve":
        request = engine.approve(args.request_id, caller, args.comments, args.hours)
        print_requests([request], title="Approved", console=console)
    elif args.command == "reject":
        request = engine.reject(args.request_id, caller, args.comments)
        print_requests([request], title="Rejected", console=console)
    elif args.command == "cancel":
        request = engine.cancel(args.request_id, caller)
        print_requests([request], title="Canceled", console=console)
    elif args.command == "live":
        event = engine.live_requests_for_event(EventType(args.event), args.request_id)
        print_request_event(event, console=console)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    console = Console(highlight=False)

    try:
        logger.info("Loading settings...")
        settings = load_settings(args.config)
        engine = build_engine(settings)
        caller = build_identity_provider(settings).current_caller(args.as_user)
        logger.info(f"Running '{args.command}' as role {caller.role.value}")

        run(args, engine, caller, console)
        return EXIT_OK

    except (ValidationError, RequestNotFoundError, InvalidTransitionError, AuthorizationError) as e:
        console.print(f"[bold red]Rejected:[/bold red] {e}")
        return EXIT_REJECTED
    except (PolicyLookupError, ConfigurationError, CollaboratorFailure) as e:
        logger.error(f"Configuration or infrastructure fault: {e}")
        return EXIT_FAULT
    except Exception:
        logger.exception("Unexpected System Failure")
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    sys.exit(main())
