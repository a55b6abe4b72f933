from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from .checks.caa import (
    DEFAULT_CA_IDENTIFIERS,
    CAAEvaluator,
    CAAStatus,
    DNSResolverCAAQuerier,
    check_caa,
)
from .core.cache import TTLCache
from .core.resolver import DNSResolver
from .core.utils import csv_list

logger = logging.getLogger(__name__)

DEFAULT_RESOLVERS = ["1.1.1.1", "8.8.8.8", "9.9.9.9"]

EXIT_CODES = {
    CAAStatus.ALLOWED.value: 0,
    CAAStatus.DISALLOWED.value: 1,
    CAAStatus.ERROR.value: 2,
}


def _parse_resolvers(s: Optional[str]) -> List[str]:
    return csv_list(s) or DEFAULT_RESOLVERS


def _emit_json(out: Any, dest: str) -> None:
    if dest == "-":
        print(json.dumps(out, indent=2))
    else:
        with open(dest, "w", encoding="utf-8") as f:
            json.dump(out, f, indent=2)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _cas(args: argparse.Namespace) -> List[str]:
    return csv_list(args.ca) or list(DEFAULT_CA_IDENTIFIERS)


def cmd_compare(args: argparse.Namespace) -> int:
    """Ask each resolver for the domain's own CAA set and show where they disagree."""
    resolver = DNSResolver(timeout=args.timeout, tries=args.tries, cache=TTLCache())
    cas = _cas(args)
    rows: List[Dict[str, Any]] = []

    for server in _parse_resolvers(args.resolvers):
        ev = CAAEvaluator(args.domain, DNSResolverCAAQuerier(resolver, server), ca_identifiers=cas)
        rows.append(
            {
                "server": server,
                "records": [r.to_text() for r in ev.records()],
                "lets_encrypt_allowed": ev.lets_encrypt_allowed(),
                "error": str(ev.error()) if ev.errored() else None,
            }
        )

    answers = {tuple(sorted(row["records"])) for row in rows if row["error"] is None}
    consistent = len(answers) <= 1

    if args.json:
        _emit_json({"domain": args.domain, "consistent": consistent, "resolvers": rows}, args.json)
    else:
        for row in rows:
            if row["error"]:
                print(f"{args.domain} CAA via {row['server']}: ERROR {row['error']}", file=sys.stderr)
                continue
            verdict = "allowed" if row["lets_encrypt_allowed"] else "disallowed"
            print(f"{args.domain} CAA via {row['server']}: {len(row['records'])} record(s), {verdict}")
            for rec in row["records"]:
                print("  ", rec)
        if not consistent:
            print("resolvers returned different CAA sets")
    return 0 if consistent else 1


def cmd_caa(args: argparse.Namespace) -> int:
    resolver = DNSResolver(timeout=args.timeout, tries=args.tries, cache=TTLCache())
    cas = _cas(args)
    res = check_caa(args.domain, resolver, server=args.server, ca_identifiers=cas)

    if args.json:
        _emit_json(asdict(res), args.json)
    else:
        print(f"{res.domain}: {res.status.upper()}")
        for rec in res.records:
            print("  ", rec)
        if res.parent_domain:
            verdict = "allows" if res.parent_domain_allows_lets_encrypt else "does not allow"
            print(f"  parent {res.parent_domain} {verdict} {', '.join(cas)}")
        for n in res.notes:
            print(f"  - {n}")
    return EXIT_CODES[res.status]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="caaguard", description="caaguard: CAA policy checker")
    p.add_argument("--version", action="version", version="caaguard 0.1.0")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    # compare
    m = sub.add_parser("compare", help="Compare the domain's own CAA set across resolvers")
    m.add_argument("domain")
    m.add_argument("--resolvers", help="Comma-separated resolvers (default: 1.1.1.1,8.8.8.8,9.9.9.9)")
    m.add_argument("--ca", help="Comma-separated CA identifiers to accept")
    m.add_argument("--timeout", type=float, default=2.0)
    m.add_argument("--tries", type=int, default=2)
    m.add_argument("--json", help="Write JSON output to file (or '-' for stdout)")
    m.set_defaults(func=cmd_compare)

    # caa
    c = sub.add_parser("caa", help="Check whether the CAA policy authorizes a CA (exit 0 allowed, 1 disallowed, 2 error)")
    c.add_argument("domain")
    c.add_argument("--server", default=DEFAULT_RESOLVERS[0], help="Resolver to use")
    c.add_argument(
        "--ca",
        help="Comma-separated CA identifiers to accept (default: %s)" % ",".join(DEFAULT_CA_IDENTIFIERS),
    )
    c.add_argument("--timeout", type=float, default=2.0)
    c.add_argument("--tries", type=int, default=2)
    c.add_argument("--json", help="Write JSON output to file (or '-' for stdout)")
    c.set_defaults(func=cmd_caa)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
