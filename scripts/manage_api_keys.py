#!/usr/bin/env python3
"""Issue and retire API keys; every key maps to the owner id its jobs belong to."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from typing import Sequence

from rich import box
from rich.console import Console
from rich.table import Table
from sqlalchemy import func
from sqlmodel import Session, col, select

from pagesnap.auth import APIKey, create_api_key, owner_for, revoke_api_key
from pagesnap.store import CaptureJobRecord, Store, UsageRecord, build_store

console = Console()


def _stamp(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "never"


def _owner_activity(session: Session, owner: str) -> tuple[int, int]:
    """(jobs on record, completed captures) for ``owner``."""
    jobs = session.exec(
        select(func.count()).select_from(CaptureJobRecord).where(col(CaptureJobRecord.owner_id) == owner)
    ).one()
    captures = session.exec(
        select(func.count()).select_from(UsageRecord).where(col(UsageRecord.owner_id) == owner)
    ).one()
    return jobs, captures


def _keys_for(session: Session, owner: str | None) -> list[APIKey]:
    keys = session.exec(select(APIKey).order_by(col(APIKey.created_at).desc())).all()
    if owner is None:
        return list(keys)
    return [key for key in keys if owner_for(key) == owner]


def cmd_create(store: Store, name: str, owner: str | None) -> int:
    with store.session() as session:
        plain_key, api_key = create_api_key(session, name, owner)
        console.print(
            f"\n[green]Created key {api_key.id}[/green] ({api_key.name}) for owner [blue]{owner_for(api_key)}[/blue]"
        )
    console.print("[bold red]Copy it now; only its hash is stored:[/bold red]")
    console.print(f"\n  [bold]{plain_key}[/bold]\n\nSend it as [cyan]X-API-Key[/cyan].\n")
    return 0


def cmd_list(store: Store, owner: str | None) -> int:
    with store.session() as session:
        keys = _keys_for(session, owner)
        if not keys:
            console.print("[yellow]No API keys.[/yellow]")
            return 0
        table = Table(box=box.SIMPLE_HEAD)
        for column in ("ID", "Owner", "Name", "Prefix", "State", "Last used"):
            table.add_column(column)
        for key in keys:
            table.add_row(
                str(key.id),
                owner_for(key),
                key.name,
                key.key_prefix,
                "active" if key.is_active else "[red]revoked[/red]",
                _stamp(key.last_used_at),
            )
    console.print(table)
    return 0


def cmd_show(store: Store, key_id: int) -> int:
    with store.session() as session:
        key = session.get(APIKey, key_id)
        if key is None:
            console.print(f"[red]No API key with id {key_id}.[/red]")
            return 1
        owner = owner_for(key)
        jobs, captures = _owner_activity(session, owner)
        siblings = len([other for other in _keys_for(session, owner) if other.is_active])
        console.print(
            f"Key {key.id} [bold]{key.name}[/bold] ({key.key_prefix}…), "
            f"{'active' if key.is_active else 'revoked'}, created {_stamp(key.created_at)}, "
            f"last used {_stamp(key.last_used_at)}"
        )
        console.print(f"Owner [blue]{owner}[/blue]: {siblings} active key(s), {jobs} job(s), {captures} capture(s)")
    return 0


def cmd_revoke(store: Store, key_id: int | None, owner: str | None) -> int:
    with store.session() as session:
        if owner is not None:
            targets = [key.id for key in _keys_for(session, owner) if key.is_active and key.id is not None]
        else:
            targets = [key_id] if key_id is not None else []
        revoked = [target for target in targets if revoke_api_key(session, target)]
    if not revoked:
        console.print("[red]Nothing to revoke.[/red]")
        return 1
    console.print(f"[green]Revoked key(s): {', '.join(str(key) for key in revoked)}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage pagesnap API keys")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="issue a key")
    create.add_argument("name")
    create.add_argument("--owner", help="owner id for the key's jobs (default: key-<id>)")

    listing = commands.add_parser("list", help="list keys")
    listing.add_argument("--owner")

    show = commands.add_parser("show", help="show a key and its owner's activity")
    show.add_argument("key_id", type=int)

    revoke = commands.add_parser("revoke", help="revoke one key, or every key of an owner")
    target = revoke.add_mutually_exclusive_group(required=True)
    target.add_argument("key_id", type=int, nargs="?")
    target.add_argument("--owner")
    return parser


def main(argv: Sequence[str] | None = None, *, store: Store | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = store or build_store()
    if args.command == "create":
        return cmd_create(store, args.name, args.owner)
    if args.command == "list":
        return cmd_list(store, args.owner)
    if args.command == "show":
        return cmd_show(store, args.key_id)
    return cmd_revoke(store, args.key_id, args.owner)


if __name__ == "__main__":
    sys.exit(main())
