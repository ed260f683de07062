"""
Maintenance commands against a running gateway.

Usage:
    python -m wagateway.admin --url http://localhost:3002 --api-key KEY state reseller_7
    python -m wagateway.admin logout reseller_7
    python -m wagateway.admin clear reseller_7
    python -m wagateway.admin purge reseller_default
    python -m wagateway.admin cleanup
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx


DEFAULT_URL = "http://localhost:3002"


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _report(step: str, response: httpx.Response) -> bool:
    print(
        json.dumps(
            {"step": step, "status": response.status_code, "body": _body(response)},
            ensure_ascii=False,
        )
    )
    return response.status_code < 400


def cmd_state(client: httpx.Client, args: argparse.Namespace) -> int:
    ok = _report("state", client.get(f"/instance/connectionState/{args.name}"))
    return 0 if ok else 1


def cmd_logout(client: httpx.Client, args: argparse.Namespace) -> int:
    ok = _report("logout", client.delete(f"/instance/logout/{args.name}"))
    return 0 if ok else 1


def cmd_clear(client: httpx.Client, args: argparse.Namespace) -> int:
    ok = _report("clear", client.post(f"/instance/clear/{args.name}"))
    return 0 if ok else 1


def cmd_cleanup(client: httpx.Client, args: argparse.Namespace) -> int:
    ok = _report("cleanup", client.post("/instance/cleanup"))
    return 0 if ok else 1


def cmd_purge(client: httpx.Client, args: argparse.Namespace) -> int:
    """Drop one instance completely, then consolidate duplicates and list what is left."""

    steps: List[tuple[str, Callable[[], httpx.Response]]] = [
        ("state", lambda: client.get(f"/instance/connectionState/{args.name}")),
        ("logout", lambda: client.delete(f"/instance/logout/{args.name}")),
        ("clear", lambda: client.post(f"/instance/clear/{args.name}")),
        ("cleanup", lambda: client.post("/instance/cleanup")),
        ("fetchInstances", lambda: client.get("/instance/fetchInstances")),
    ]
    exit_code = 0
    for step, call in steps:
        if not _report(step, call()):
            exit_code = 1
    return exit_code


COMMANDS: Dict[str, Callable[[httpx.Client, argparse.Namespace], int]] = {
    "state": cmd_state,
    "logout": cmd_logout,
    "clear": cmd_clear,
    "purge": cmd_purge,
    "cleanup": cmd_cleanup,
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage gateway instances over HTTP")
    parser.add_argument("--url", default=os.getenv("WA_GATEWAY_URL", DEFAULT_URL))
    parser.add_argument("--api-key", default=os.getenv("WA_API_KEY", ""))
    parser.add_argument("--timeout", type=float, default=10.0)
    subparsers = parser.add_subparsers(dest="command", required=True)

    for command in ("state", "logout", "clear", "purge"):
        sub = subparsers.add_parser(command, help=f"{command} one instance")
        sub.add_argument("name", help="Instance name")
    subparsers.add_parser("cleanup", help="Consolidate duplicate tenant instances")
    return parser.parse_args(argv)


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> int:
    args = parse_args(argv)
    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"[wagateway] unsupported command: {args.command}", file=sys.stderr)
        return 1
    headers = {"Content-Type": "application/json"}
    if args.api_key:
        headers["apikey"] = args.api_key
    try:
        with httpx.Client(
            base_url=args.url.rstrip("/"),
            headers=headers,
            timeout=args.timeout,
            transport=transport,
        ) as client:
            return handler(client, args)
    except httpx.HTTPError as exc:
        print(f"[wagateway] request failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
