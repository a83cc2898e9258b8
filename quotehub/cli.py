"""
quotehub CLI

Command line interface to the quote engine. Every command prints JSON.

Usage:
    python -m quotehub.cli search --coverage-type life --amount 250000 --age 35 --zip 33073
    python -m quotehub.cli search --criteria '{"coverageType": "dental", "coverageAmount": 1500, "applicantAge": 40, "zipCode": "10001"}'
    python -m quotehub.cli providers --active-only
    python -m quotehub.cli test-provider --id life_secure
    python -m quotehub.cli health
    python -m quotehub.cli stats
    python -m quotehub.cli requests --page 1 --limit 20 --status error
    python -m quotehub.cli stuck --older-than 60
    python -m quotehub.cli reconcile
    python -m quotehub.cli serve --port 8000
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from quotehub.core.error_handler import QuoteHubError


def _json_out(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _orchestrator(args: argparse.Namespace):
    from quotehub.core.config import get_config
    from quotehub.modules.quote.orchestrator import build_orchestrator

    return build_orchestrator(get_config(getattr(args, "config", None)))


def _criteria_from_args(args: argparse.Namespace) -> dict[str, Any]:
    criteria: dict[str, Any] = {}
    if args.criteria:
        loaded = json.loads(args.criteria)
        if not isinstance(loaded, dict):
            raise ValueError("--criteria must be a JSON object")
        criteria.update(loaded)

    flags = {
        "coverage_type": args.coverage_type,
        "coverage_amount": args.amount,
        "applicant_age": args.age,
        "date_of_birth": args.dob,
        "zip_code": args.zip,
        "state": args.state,
        "county": args.county,
        "gender": args.gender,
        "term_length": args.term,
        "payment_mode": args.payment_mode,
        "effective_date": args.effective_date,
        "spouse_age": args.spouse_age,
    }
    criteria.update({k: v for k, v in flags.items() if v is not None})
    if args.tobacco:
        criteria["tobacco"] = True
    if args.children:
        criteria["children_ages"] = args.children
    return criteria


async def cmd_search(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        if args.provider:
            result = await engine.quote_from_provider(args.provider, _criteria_from_args(args))
            _json_out(
                {
                    "provider_id": result.provider_id,
                    "ok": result.ok,
                    "quote": result.quote.to_dict() if result.quote else None,
                    "error": result.error.to_dict() if result.error else None,
                    "attempts": result.attempts,
                    "elapsed_ms": result.elapsed_ms,
                }
            )
            return
        result = await engine.execute(_criteria_from_args(args), user_id=args.user_id)
        _json_out(result.to_dict())
    finally:
        await engine.aclose()


async def cmd_providers(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        providers = engine.registry.active() if args.active_only else engine.registry.all()
        if args.coverage_type:
            providers = [p for p in providers if p.supports(args.coverage_type)]
        _json_out({"total": len(providers), "providers": [p.public_dict() for p in providers]})
    finally:
        await engine.aclose()


async def cmd_test_provider(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        _json_out(await engine.test_provider(args.id))
    finally:
        await engine.aclose()


async def cmd_health(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        checks = await engine.check_providers()
        _json_out({"total": len(checks), "healthy": sum(1 for c in checks if c["success"]), "providers": checks})
    finally:
        await engine.aclose()


async def cmd_stats(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        if args.id:
            _json_out((await engine.audit.get_provider_stats(args.id)).to_dict())
            return
        _json_out({"providers": [s.to_dict() for s in await engine.audit.get_stats()]})
    finally:
        await engine.aclose()


async def cmd_requests(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        if args.id:
            record = await engine.audit.get_request(args.id)
            _json_out(record.to_dict() if record else {"error": f"Request not found: {args.id}"})
            return
        listing = await engine.audit.list_requests(page=args.page, limit=args.limit, status=args.status)
        _json_out(
            {
                "requests": [r.to_dict() for r in listing["requests"]],
                "pagination": listing["pagination"],
            }
        )
    finally:
        await engine.aclose()


async def cmd_stuck(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        threshold = args.older_than or engine.engine.stuck_threshold_seconds
        stuck = await engine.audit.list_stuck_requests(threshold)
        _json_out({"older_than_seconds": threshold, "total": len(stuck), "requests": [r.to_dict() for r in stuck]})
    finally:
        await engine.aclose()


async def cmd_reconcile(args: argparse.Namespace) -> None:
    engine = _orchestrator(args)
    try:
        threshold = args.older_than or engine.engine.stuck_threshold_seconds
        reconciled = await engine.audit.reconcile_stuck_requests(threshold)
        _json_out({"older_than_seconds": threshold, "reconciled": reconciled})
    finally:
        await engine.aclose()


async def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from quotehub.api import create_app

    server = uvicorn.Server(uvicorn.Config(create_app(_orchestrator(args)), host=args.host, port=args.port))
    await server.serve()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quotehub",
        description="quotehub CLI - multi-provider insurance quote engine",
    )
    parser.add_argument("--config", default=None, help="config file path")
    sub = parser.add_subparsers(dest="command", help="available commands")

    # search
    p = sub.add_parser("search", help="fan a quote request out to eligible providers")
    p.add_argument("--criteria", default=None, help="criteria as a JSON object")
    p.add_argument("--coverage-type", default=None, help="coverage type, e.g. life, dental")
    p.add_argument("--amount", type=float, default=None, help="coverage amount")
    p.add_argument("--age", type=int, default=None, help="applicant age")
    p.add_argument("--dob", default=None, help="applicant date of birth (YYYY-MM-DD)")
    p.add_argument("--zip", default=None, help="5 digit zip code")
    p.add_argument("--state", default=None, help="2 letter state code")
    p.add_argument("--county", default=None, help="county")
    p.add_argument("--gender", default=None, choices=["M", "F"], help="applicant gender")
    p.add_argument("--tobacco", action="store_true", help="tobacco user")
    p.add_argument("--term", type=int, default=None, help="term length (years)")
    p.add_argument("--payment-mode", default=None, help="monthly, quarterly, semi-annually, annually")
    p.add_argument("--effective-date", default=None, help="YYYY-MM-DD")
    p.add_argument("--spouse-age", type=int, default=None, help="spouse age")
    p.add_argument("--children", type=int, nargs="*", default=None, help="children ages")
    p.add_argument("--user-id", default=None, help="caller id recorded in the audit trail")
    p.add_argument("--provider", default=None, help="quote a single provider without auditing")

    # providers
    p = sub.add_parser("providers", help="list provider configs")
    p.add_argument("--active-only", action="store_true", help="only active providers")
    p.add_argument("--coverage-type", default=None, help="only providers supporting this type")

    # test-provider
    p = sub.add_parser("test-provider", help="connectivity check for one provider")
    p.add_argument("--id", required=True, help="provider id")

    # health
    sub.add_parser("health", help="health check every active provider")

    # stats
    p = sub.add_parser("stats", help="provider success counters")
    p.add_argument("--id", default=None, help="single provider id")

    # requests
    p = sub.add_parser("requests", help="audit trail listing")
    p.add_argument("--id", default=None, help="single request id")
    p.add_argument("--page", type=int, default=1, help="page number")
    p.add_argument("--limit", type=int, default=20, help="page size")
    p.add_argument("--status", default=None, choices=["pending", "success", "error"], help="status filter")

    # stuck
    p = sub.add_parser("stuck", help="pending requests that never got a terminal write")
    p.add_argument("--older-than", type=float, default=None, help="age threshold (s)")

    # reconcile
    p = sub.add_parser("reconcile", help="mark stuck pending requests as error")
    p.add_argument("--older-than", type=float, default=None, help="age threshold (s)")

    # serve
    p = sub.add_parser("serve", help="run the HTTP API")
    p.add_argument("--host", default="127.0.0.1", help="bind address")
    p.add_argument("--port", type=int, default=8000, help="bind port")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    dispatch = {
        "search": cmd_search,
        "providers": cmd_providers,
        "test-provider": cmd_test_provider,
        "health": cmd_health,
        "stats": cmd_stats,
        "requests": cmd_requests,
        "stuck": cmd_stuck,
        "reconcile": cmd_reconcile,
        "serve": cmd_serve,
    }

    handler = dispatch.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(handler(args))
    except KeyboardInterrupt:
        pass
    except QuoteHubError as e:
        _json_out({"error": e.to_dict()})
        sys.exit(1)
    except Exception as e:
        _json_out({"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
