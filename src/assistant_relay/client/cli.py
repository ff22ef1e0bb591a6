"""CLI для relay: login / chat / transcribe."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from assistant_relay.common.config import get_settings

from .relay_client import RelayClient, RelayClientError


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    s = get_settings()
    p = argparse.ArgumentParser(description="Assistant relay client")
    p.add_argument("--base-url", default=s.relay_base_url)
    p.add_argument("--token", default=s.relay_token, help="Bearer token (RELAY_TOKEN)")
    sub = p.add_subparsers(dest="command", required=True)

    for name in ("login", "register"):
        auth = sub.add_parser(name, help=f"{name} and print a bearer token")
        auth.add_argument("--email", required=True)
        auth.add_argument("--password", required=True)

    chat = sub.add_parser("chat", help="stream a single-turn chat reply")
    chat.add_argument("prompt")
    chat.add_argument("--model", default=None)
    chat.add_argument("--system", default=None)

    tr = sub.add_parser("transcribe", help="transcribe an audio file")
    tr.add_argument("path", type=Path)
    tr.add_argument("--mime", default="audio/webm")

    return p.parse_args(argv)


def _run(args: argparse.Namespace) -> int:
    client = RelayClient(args.base_url, token=args.token)

    if args.command in {"login", "register"}:
        auth = client.login if args.command == "login" else client.register
        user = auth(args.email, args.password)
        print(client.token)
        print(f"user id={user['id']} email={user['email']}", file=sys.stderr)
        return 0

    if args.command == "chat":
        messages = []
        if args.system:
            messages.append({"role": "system", "content": args.system})
        messages.append({"role": "user", "content": args.prompt})

        def _print_delta(delta: str) -> None:
            sys.stdout.write(delta)
            sys.stdout.flush()

        reply = client.chat(messages, model=args.model, on_delta=_print_delta)
        sys.stdout.write("\n")
        if not reply.complete:
            print("[stream ended without completion marker]", file=sys.stderr)
            return 2
        return 0

    if args.command == "transcribe":
        print(client.transcribe(args.path, mime=args.mime))
        return 0

    return 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return _run(args)
    except RelayClientError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
