#!/usr/bin/env python3
"""Manage the JSON credential store read by ``FileSecretResolver``.

Usage::

    python scripts/credential_store.py genkey               # prints a store key
    python scripts/credential_store.py genkey -o .env       # appends POLICY_AGENT_CREDSTORE_KEY=<key> to .env
    python scripts/credential_store.py set cred.json sslKeyStore      # prompts for the password
    python scripts/credential_store.py list cred.json

Entries are AES-GCM encrypted when ``POLICY_AGENT_CREDSTORE_KEY`` is set and
stored as marked plain values otherwise.  Losing the key means re-entering
every store password, so keep it safe.
"""

from __future__ import annotations

import argparse
import base64
import getpass
import json
import os
import sys
from pathlib import Path

from policy_agent.utils.cache_store import atomic_write_bytes
from policy_agent.utils.credentials import CREDSTORE_KEY_ENV, encrypt_secret


def _generate_key() -> str:
    """Return a base-64url-encoded 32-byte random key (no padding)."""
    return base64.urlsafe_b64encode(os.urandom(32)).decode().rstrip("=")


def _load(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fp:
        return json.load(fp)


def _cmd_genkey(args: argparse.Namespace) -> None:
    key = _generate_key()
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        with args.output.open("a", encoding="utf-8") as fp:
            fp.write(f"{CREDSTORE_KEY_ENV}={key}\n")
        print(f"Key appended to {args.output}")
    else:
        print(key)


def _cmd_set(args: argparse.Namespace) -> None:
    value = args.value if args.value is not None else getpass.getpass(f"Secret for {args.alias}: ")
    if not value:
        print("Refusing to store an empty secret", file=sys.stderr)
        sys.exit(1)

    entries = _load(args.store)
    entries[args.alias] = encrypt_secret(value)
    atomic_write_bytes(args.store, (json.dumps(entries, indent=2, sort_keys=True) + "\n").encode())
    os.chmod(args.store, 0o600)
    mode = "plain" if isinstance(entries[args.alias], dict) else "encrypted"
    print(f"Stored {args.alias} ({mode}) in {args.store}")


def _cmd_list(args: argparse.Namespace) -> None:
    for alias, entry in sorted(_load(args.store).items()):
        print(f"{alias}\t{'plain' if isinstance(entry, dict) else 'encrypted'}")


def main() -> None:  # noqa: D401
    parser = argparse.ArgumentParser(description="Manage the policy agent credential store")
    sub = parser.add_subparsers(dest="command", required=True)

    genkey = sub.add_parser("genkey", help="Generate an AES-GCM store key")
    genkey.add_argument("-o", "--output", type=Path, help="Append key to given file in .env format")
    genkey.set_defaults(func=_cmd_genkey)

    set_cmd = sub.add_parser("set", help="Add or replace a secret")
    set_cmd.add_argument("store", type=Path)
    set_cmd.add_argument("alias")
    set_cmd.add_argument("--value", help="Secret value (prompted for when omitted)")
    set_cmd.set_defaults(func=_cmd_set)

    list_cmd = sub.add_parser("list", help="List aliases in a store")
    list_cmd.add_argument("store", type=Path)
    list_cmd.set_defaults(func=_cmd_list)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
