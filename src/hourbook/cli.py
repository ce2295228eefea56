"""Command-line interface for hourbook.

Every command prints a JSON object with a ``status`` of ``ok`` or ``error``;
an error exits with code 1.
"""

import argparse
import json
import logging
import sys
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .config import Config, load_config
from .db import get_db, init_db
from .importer import (
    SUB_CLIENT_PASTE_SPLIT,
    ImportFileError,
    import_clients,
    import_sub_clients,
    import_work_entries,
    parse_date_value,
    parse_paste_text,
    read_csv_rows,
)
from .logging_setup import setup_logging
from .models import ClientDraft, SubClientDraft, WorkEntryDraft
from .reports import (
    format_currency,
    format_date,
    format_datetime,
    invoice_details,
    sub_client_summaries,
    weekly_stats,
)
from .store import Ledger, LedgerError

logger = logging.getLogger("hourbook.cli")


def _load_config(args) -> Config:
    config_path = getattr(args, "config", None)
    return load_config(Path(config_path) if config_path else None)


@contextmanager
def _open_ledger(args) -> Iterator[Ledger]:
    config = _load_config(args)
    init_db(config.db_path)
    with get_db(config.db_path) as conn:
        yield Ledger.load(conn)


def _find_client(ledger: Ledger, ref: str):
    """Resolve a client by id, then by case-insensitive name."""
    client = ledger.get_client(ref)
    if client is not None:
        return client
    matches = [c for c in ledger.clients if c.name.lower() == ref.strip().lower()]
    if not matches:
        raise LedgerError(f"Client not found: {ref}")
    return matches[0]


def _find_sub_client(ledger: Ledger, ref: str, client_ref: str | None = None):
    sub = ledger.get_sub_client(ref)
    if sub is not None:
        return sub
    candidates = ledger.sub_clients
    if client_ref:
        client = _find_client(ledger, client_ref)
        candidates = [sc for sc in candidates if sc.client_id == client.id]
    matches = [sc for sc in candidates if sc.name.lower() == ref.strip().lower()]
    if not matches:
        raise LedgerError(f"Sub-client not found: {ref}")
    if len(matches) > 1:
        raise LedgerError(f"Sub-client name {ref!r} is ambiguous, pass --client")
    return matches[0]


def _parse_cli_date(value: str | None) -> datetime:
    if not value:
        return datetime.now()
    parsed = parse_date_value(value)
    if parsed.fallback:
        raise LedgerError(f"Invalid date: {value}")
    return parsed.value


def _client_dict(client) -> dict:
    return {"id": client.id, "name": client.name, "rate": client.rate}


def _sub_client_dict(sub, ledger: Ledger) -> dict:
    client = ledger.get_client(sub.client_id)
    return {
        "id": sub.id,
        "name": sub.name,
        "client_id": sub.client_id,
        "client": client.name if client else None,
    }


def _entry_dict(entry, ledger: Ledger) -> dict:
    client = ledger.get_client(entry.client_id)
    sub = ledger.get_sub_client(entry.sub_client_id)
    return {
        "id": entry.id,
        "date": format_datetime(entry.date),
        "client": client.name if client else None,
        "sub_client": sub.name if sub else None,
        "project": entry.project,
        "description": entry.task_description,
        "attachments": list(entry.file_attachments),
        "hours": entry.hours,
        "rate": entry.rate,
        "bill": entry.bill,
        "invoiced": entry.invoiced,
        "paid": entry.paid,
    }


# =============================================================================
# Commands
# =============================================================================


def cmd_init(args) -> dict:
    config = _load_config(args)
    init_db(config.db_path)
    return {"status": "ok", "db_path": str(config.db_path)}


def cmd_client_add(args) -> dict:
    with _open_ledger(args) as ledger:
        client = ledger.add_client(ClientDraft(name=args.name, rate=args.rate))
        return {"status": "ok", "client": _client_dict(client)}


def cmd_client_list(args) -> dict:
    with _open_ledger(args) as ledger:
        clients = [_client_dict(c) for c in ledger.clients]
    return {"status": "ok", "count": len(clients), "clients": clients}


def cmd_client_update(args) -> dict:
    with _open_ledger(args) as ledger:
        client = _find_client(ledger, args.client)
        changes = {}
        if args.name is not None:
            changes["name"] = args.name
        if args.rate is not None:
            changes["rate"] = args.rate
        updated = ledger.update_client(replace(client, **changes))
        return {"status": "ok", "client": _client_dict(updated)}


def cmd_client_delete(args) -> dict:
    with _open_ledger(args) as ledger:
        client = ledger.delete_client(_find_client(ledger, args.client).id)
        return {"status": "ok", "deleted": _client_dict(client)}


def cmd_subclient_add(args) -> dict:
    with _open_ledger(args) as ledger:
        client = _find_client(ledger, args.client)
        sub = ledger.add_sub_client(SubClientDraft(name=args.name, client_id=client.id))
        return {"status": "ok", "sub_client": _sub_client_dict(sub, ledger)}


def cmd_subclient_list(args) -> dict:
    with _open_ledger(args) as ledger:
        subs = ledger.sub_clients
        if args.client:
            client = _find_client(ledger, args.client)
            subs = [sc for sc in subs if sc.client_id == client.id]
        items = [_sub_client_dict(sc, ledger) for sc in subs]
    return {"status": "ok", "count": len(items), "sub_clients": items}


def cmd_subclient_update(args) -> dict:
    with _open_ledger(args) as ledger:
        sub = _find_sub_client(ledger, args.sub_client, args.client)
        changes = {}
        if args.name is not None:
            changes["name"] = args.name
        if args.move_to is not None:
            changes["client_id"] = _find_client(ledger, args.move_to).id
        updated = ledger.update_sub_client(replace(sub, **changes))
        return {"status": "ok", "sub_client": _sub_client_dict(updated, ledger)}


def cmd_subclient_delete(args) -> dict:
    with _open_ledger(args) as ledger:
        sub = _find_sub_client(ledger, args.sub_client, args.client)
        deleted = ledger.delete_sub_client(sub.id)
        return {"status": "ok", "deleted": {"id": deleted.id, "name": deleted.name}}


def cmd_entry_add(args) -> dict:
    with _open_ledger(args) as ledger:
        client = _find_client(ledger, args.client)
        sub = _find_sub_client(ledger, args.sub_client, client.id)
        rate = args.rate if args.rate is not None else client.rate
        entry = ledger.add_work_entry(WorkEntryDraft(
            date=_parse_cli_date(args.date),
            client_id=client.id,
            sub_client_id=sub.id,
            hours=args.hours,
            rate=rate,
            project=args.project or "",
            task_description=args.description or "",
            file_attachments=list(args.attachment or []),
            paid=args.paid,
        ))
        return {"status": "ok", "entry": _entry_dict(entry, ledger)}


def cmd_entry_list(args) -> dict:
    with _open_ledger(args) as ledger:
        entries = ledger.work_entries
        if args.client:
            client = _find_client(ledger, args.client)
            entries = [e for e in entries if e.client_id == client.id]
        if args.uninvoiced:
            entries = [e for e in entries if not e.invoiced]
        entries.sort(key=lambda e: e.date, reverse=True)
        items = [_entry_dict(e, ledger) for e in entries]
    return {"status": "ok", "count": len(items), "entries": items}


def cmd_entry_update(args) -> dict:
    with _open_ledger(args) as ledger:
        entry = ledger.get_work_entry(args.entry_id)
        if entry is None:
            return {"status": "error", "error": f"Work entry not found: {args.entry_id}"}

        changes = {}
        if args.client is not None:
            changes["client_id"] = _find_client(ledger, args.client).id
        if args.sub_client is not None:
            client_id = changes.get("client_id", entry.client_id)
            changes["sub_client_id"] = _find_sub_client(ledger, args.sub_client, client_id).id
        if args.date is not None:
            changes["date"] = _parse_cli_date(args.date)
        if args.hours is not None:
            changes["hours"] = args.hours
        if args.rate is not None:
            changes["rate"] = args.rate
        if args.project is not None:
            changes["project"] = args.project
        if args.description is not None:
            changes["task_description"] = args.description
        if args.attachment is not None:
            changes["file_attachments"] = list(args.attachment)
        if args.paid is not None:
            changes["paid"] = args.paid

        updated = ledger.update_work_entry(replace(entry, **changes))
        return {"status": "ok", "entry": _entry_dict(updated, ledger)}


def cmd_entry_delete(args) -> dict:
    with _open_ledger(args) as ledger:
        entry = ledger.delete_work_entry(args.entry_id)
        return {"status": "ok", "deleted": entry.id}


def _apply_import(ledger: Ledger, kind: str, table, dry_run: bool) -> dict:
    if kind == "clients":
        result = import_clients(table, ledger.clients)
        persist = ledger.import_clients
    elif kind == "subclients":
        result = import_sub_clients(table, ledger.clients, ledger.sub_clients)
        persist = ledger.import_sub_clients
    else:
        result = import_work_entries(table, ledger.clients, ledger.sub_clients)
        persist = ledger.import_work_entries

    created = []
    if result.accepted and not dry_run:
        created = persist(result.accepted)

    output = {"status": "error" if result.status == "failed" else "ok"}
    if result.status == "failed":
        output["error"] = f"No valid {result.kind} found"
    output.update(result.to_dict())
    output["created"] = len(created)
    output["dry_run"] = dry_run
    return output


def cmd_import(args) -> dict:
    config = _load_config(args)
    mode = args.mode or config.imports.default_mode
    if args.no_header and mode != "positional":
        return {"status": "error", "error": "--no-header requires --mode positional"}

    try:
        table = read_csv_rows(
            Path(args.file),
            mode=mode,
            has_header=not args.no_header,
            encoding=config.imports.encoding,
            delimiter=config.imports.delimiter,
        )
    except ImportFileError as e:
        logger.error("Import of %s failed: %s", args.file, e)
        return {"status": "error", "error": str(e)}

    with _open_ledger(args) as ledger:
        return _apply_import(ledger, args.kind, table, args.dry_run)


def cmd_paste(args) -> dict:
    text = args.text if args.text is not None else sys.stdin.read()
    split_pattern = SUB_CLIENT_PASTE_SPLIT if args.kind == "subclients" else "\t"
    table = parse_paste_text(text, split_pattern=split_pattern)
    if not table.rows:
        return {"status": "error", "error": "No data found in pasted text"}
    with _open_ledger(args) as ledger:
        return _apply_import(ledger, args.kind, table, args.dry_run)


def cmd_invoice_generate(args) -> dict:
    with _open_ledger(args) as ledger:
        invoice = ledger.generate_weekly_invoice()
        return {
            "status": "ok",
            "invoice_number": invoice.invoice_number,
            "period": f"{format_date(invoice.start_date)} - {format_date(invoice.end_date)}",
            "entry_count": len(invoice.entries),
            "total_amount": invoice.total_amount,
            "total": format_currency(invoice.total_amount),
        }


def cmd_invoice_list(args) -> dict:
    with _open_ledger(args) as ledger:
        invoices = sorted(ledger.invoices, key=lambda inv: inv.created_at, reverse=True)
    items = [
        {
            "id": inv.id,
            "invoice_number": inv.invoice_number,
            "created_at": format_datetime(inv.created_at),
            "period": f"{format_date(inv.start_date)} - {format_date(inv.end_date)}",
            "entry_count": len(inv.entries),
            "total": format_currency(inv.total_amount),
        }
        for inv in invoices
    ]
    return {"status": "ok", "count": len(items), "invoices": items}


def cmd_invoice_show(args) -> dict:
    with _open_ledger(args) as ledger:
        invoice = ledger.get_invoice(args.invoice)
        if invoice is None:
            return {"status": "error", "error": f"Invoice not found: {args.invoice}"}
        details = invoice_details(invoice, ledger.clients, ledger.sub_clients)
    return {"status": "ok", "invoice": details}


def cmd_summary(args) -> dict:
    with _open_ledger(args) as ledger:
        entries = ledger.work_entries
        stats = weekly_stats(entries)
        summaries = sub_client_summaries(entries, ledger.clients, ledger.sub_clients)
        counts = {
            "clients": len(ledger.clients),
            "sub_clients": len(ledger.sub_clients),
            "work_entries": len(entries),
            "invoices": len(ledger.invoices),
        }
    return {
        "status": "ok",
        "counts": counts,
        "last_week": stats.to_dict(),
        "sub_clients": [s.to_dict() for s in summaries],
    }


# =============================================================================
# Parser
# =============================================================================


def build_parser():
    parser = argparse.ArgumentParser(
        prog="hourbook",
        description="Freelance time tracking and weekly invoicing",
    )
    parser.add_argument("--config", "-c", help="Path to config TOML file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the database")

    # client
    p_client = sub.add_parser("client", help="Manage clients")
    client_sub = p_client.add_subparsers(dest="client_command", required=True)
    p = client_sub.add_parser("add", help="Add a client")
    p.add_argument("name", help="Client name")
    p.add_argument("--rate", "-r", type=float, default=0.0, help="Default hourly rate")
    client_sub.add_parser("list", help="List clients")
    p = client_sub.add_parser("update", help="Rename a client or change its rate")
    p.add_argument("client", help="Client id or name")
    p.add_argument("--name", help="New name")
    p.add_argument("--rate", "-r", type=float, help="New rate (re-prices uninvoiced entries)")
    p = client_sub.add_parser("delete", help="Delete a client without dependents")
    p.add_argument("client", help="Client id or name")

    # subclient
    p_sub = sub.add_parser("subclient", help="Manage sub-clients")
    sub_sub = p_sub.add_subparsers(dest="subclient_command", required=True)
    p = sub_sub.add_parser("add", help="Add a sub-client")
    p.add_argument("name", help="Sub-client name")
    p.add_argument("--client", required=True, help="Parent client id or name")
    p = sub_sub.add_parser("list", help="List sub-clients")
    p.add_argument("--client", help="Only sub-clients of this client")
    p = sub_sub.add_parser("update", help="Rename or move a sub-client")
    p.add_argument("sub_client", help="Sub-client id or name")
    p.add_argument("--client", help="Current parent client, to disambiguate names")
    p.add_argument("--name", help="New name")
    p.add_argument("--move-to", help="New parent client id or name")
    p = sub_sub.add_parser("delete", help="Delete a sub-client without entries")
    p.add_argument("sub_client", help="Sub-client id or name")
    p.add_argument("--client", help="Parent client, to disambiguate names")

    # entry
    p_entry = sub.add_parser("entry", help="Manage work entries")
    entry_sub = p_entry.add_subparsers(dest="entry_command", required=True)
    p = entry_sub.add_parser("add", help="Record a work entry")
    p.add_argument("--client", required=True, help="Client id or name")
    p.add_argument("--sub-client", required=True, help="Sub-client id or name")
    p.add_argument("--hours", type=float, required=True, help="Hours worked")
    p.add_argument("--rate", type=float, help="Hourly rate (default: client rate)")
    p.add_argument("--date", "-d", help="Date, e.g. 2024-03-15 or 3/15/2024 (default: now)")
    p.add_argument("--project", "-p", help="Project name")
    p.add_argument("--description", help="Task description")
    p.add_argument("--attachment", action="append", help="Attachment name (repeatable)")
    p.add_argument("--paid", action="store_true", help="Mark as paid")
    p = entry_sub.add_parser("list", help="List work entries, newest first")
    p.add_argument("--client", help="Only entries of this client")
    p.add_argument("--uninvoiced", action="store_true", help="Only uninvoiced entries")
    p = entry_sub.add_parser("update", help="Edit a work entry")
    p.add_argument("entry_id", help="Work entry id")
    p.add_argument("--client", help="Client id or name")
    p.add_argument("--sub-client", help="Sub-client id or name")
    p.add_argument("--hours", type=float)
    p.add_argument("--rate", type=float)
    p.add_argument("--date", "-d")
    p.add_argument("--project", "-p")
    p.add_argument("--description")
    p.add_argument("--attachment", action="append", help="Replace attachments (repeatable)")
    paid = p.add_mutually_exclusive_group()
    paid.add_argument("--paid", dest="paid", action="store_true", default=None)
    paid.add_argument("--unpaid", dest="paid", action="store_false")
    p = entry_sub.add_parser("delete", help="Delete an uninvoiced work entry")
    p.add_argument("entry_id", help="Work entry id")

    # import
    p_import = sub.add_parser("import", help="Import from a CSV file")
    p_import.add_argument("kind", choices=["clients", "subclients", "entries"])
    p_import.add_argument("file", help="Path to CSV file")
    p_import.add_argument("--mode", "-m", choices=["header", "positional"],
                          help="Column mode (default: from config)")
    p_import.add_argument("--no-header", action="store_true",
                          help="Positional file has no header row")
    p_import.add_argument("--dry-run", action="store_true", help="Resolve rows without saving")

    # paste
    p_paste = sub.add_parser("paste", help="Import tab-separated text (stdin by default)")
    p_paste.add_argument("kind", choices=["subclients", "entries"])
    p_paste.add_argument("--text", "-t", help="Pasted text instead of stdin")
    p_paste.add_argument("--dry-run", action="store_true", help="Resolve rows without saving")

    # invoice
    p_inv = sub.add_parser("invoice", help="Weekly invoices")
    inv_sub = p_inv.add_subparsers(dest="invoice_command", required=True)
    inv_sub.add_parser("generate", help="Invoice last week's uninvoiced entries")
    inv_sub.add_parser("list", help="List invoices")
    p = inv_sub.add_parser("show", help="Show invoice detail")
    p.add_argument("invoice", help="Invoice id or number")

    sub.add_parser("summary", help="Last-week stats and per-sub-client totals")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(_load_config(args), verbose=args.verbose)

    grouped = {
        "client": ("client_command", {
            "add": cmd_client_add,
            "list": cmd_client_list,
            "update": cmd_client_update,
            "delete": cmd_client_delete,
        }),
        "subclient": ("subclient_command", {
            "add": cmd_subclient_add,
            "list": cmd_subclient_list,
            "update": cmd_subclient_update,
            "delete": cmd_subclient_delete,
        }),
        "entry": ("entry_command", {
            "add": cmd_entry_add,
            "list": cmd_entry_list,
            "update": cmd_entry_update,
            "delete": cmd_entry_delete,
        }),
        "invoice": ("invoice_command", {
            "generate": cmd_invoice_generate,
            "list": cmd_invoice_list,
            "show": cmd_invoice_show,
        }),
    }

    commands = {
        "init": cmd_init,
        "import": cmd_import,
        "paste": cmd_paste,
        "summary": cmd_summary,
    }

    try:
        if args.command in grouped:
            dest, handlers = grouped[args.command]
            handler = handlers[getattr(args, dest)]
        else:
            handler = commands[args.command]
        try:
            result = handler(args)
        except LedgerError as e:
            result = {"status": "error", "error": str(e)}
        print(json.dumps(result, indent=2, ensure_ascii=False))
        if result.get("status") == "error":
            sys.exit(1)
    except Exception as e:
        logger.exception("Command %s failed", args.command)
        print(json.dumps({"status": "error", "error": str(e)}))
        sys.exit(1)


if __name__ == "__main__":
    main()
