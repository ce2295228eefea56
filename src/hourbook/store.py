"""Entity store: the single owner of clients, sub-clients, work entries and invoices.

The Ledger keeps the four collections in memory and rewrites all of them to
the key/value table after every successful mutation. Callers never modify the
lists directly; every change goes through a Ledger method, which either
applies completely or raises LedgerError with the collections untouched.
"""

import json
import logging
import math
import sqlite3
from dataclasses import replace
from datetime import datetime

from . import db
from .billing import (
    calculate_bill,
    entries_in_range,
    generate_invoice_number,
    last_week_range,
)
from .models import (
    Client,
    ClientDraft,
    Invoice,
    SubClient,
    SubClientDraft,
    WorkEntry,
    WorkEntryDraft,
    new_id,
)

logger = logging.getLogger("hourbook.store")

NAMESPACE = "hourbook"

STORAGE_KEYS = {
    "clients": "clients",
    "sub_clients": "sub_clients",
    "work_entries": "work_entries",
    "invoices": "invoices",
}

# Fields that may no longer change once an entry has been invoiced
LOCKED_WHEN_INVOICED = ("hours", "rate", "client_id", "sub_client_id")


class LedgerError(ValueError):
    """An operation was rejected; the ledger state is unchanged."""


def _is_valid_amount(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _copy_entry(entry: WorkEntry) -> WorkEntry:
    return replace(entry, file_attachments=list(entry.file_attachments))


def _copy_invoice(invoice: Invoice) -> Invoice:
    return replace(invoice, entries=[_copy_entry(e) for e in invoice.entries])


class Ledger:
    """Application state for one user, persisted to a KV connection."""

    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        clients: list[Client] | None = None,
        sub_clients: list[SubClient] | None = None,
        work_entries: list[WorkEntry] | None = None,
        invoices: list[Invoice] | None = None,
    ) -> None:
        self.conn = conn
        self._clients = list(clients or [])
        self._sub_clients = list(sub_clients or [])
        self._work_entries = list(work_entries or [])
        self._invoices = list(invoices or [])

    # --- Persistence ---

    @classmethod
    def load(cls, conn: sqlite3.Connection) -> "Ledger":
        """Rehydrate a ledger from the KV store. Missing keys load as empty."""
        def _load(key: str) -> list[dict]:
            row = db.kv_get(conn, NAMESPACE, STORAGE_KEYS[key])
            if row is None:
                return []
            return json.loads(row["value"])

        ledger = cls(
            conn=conn,
            clients=[Client.from_dict(d) for d in _load("clients")],
            sub_clients=[SubClient.from_dict(d) for d in _load("sub_clients")],
            work_entries=[WorkEntry.from_dict(d) for d in _load("work_entries")],
            invoices=[Invoice.from_dict(d) for d in _load("invoices")],
        )
        logger.debug(
            "Loaded %d clients, %d sub-clients, %d entries, %d invoices",
            len(ledger._clients), len(ledger._sub_clients),
            len(ledger._work_entries), len(ledger._invoices),
        )
        return ledger

    def save(self) -> None:
        """Overwrite all four collections in the KV store."""
        if self.conn is None:
            return
        collections = {
            "clients": self._clients,
            "sub_clients": self._sub_clients,
            "work_entries": self._work_entries,
            "invoices": self._invoices,
        }
        for key, items in collections.items():
            payload = json.dumps([item.to_dict() for item in items])
            db.kv_set(self.conn, NAMESPACE, STORAGE_KEYS[key], payload)
        self.conn.commit()

    # --- Read access (copies, so callers cannot bypass the controller) ---

    @property
    def clients(self) -> list[Client]:
        return [replace(c) for c in self._clients]

    @property
    def sub_clients(self) -> list[SubClient]:
        return [replace(sc) for sc in self._sub_clients]

    @property
    def work_entries(self) -> list[WorkEntry]:
        return [_copy_entry(e) for e in self._work_entries]

    @property
    def invoices(self) -> list[Invoice]:
        return [_copy_invoice(inv) for inv in self._invoices]

    def get_client(self, client_id: str) -> Client | None:
        for client in self._clients:
            if client.id == client_id:
                return replace(client)
        return None

    def get_sub_client(self, sub_client_id: str) -> SubClient | None:
        for sub in self._sub_clients:
            if sub.id == sub_client_id:
                return replace(sub)
        return None

    def get_work_entry(self, entry_id: str) -> WorkEntry | None:
        for entry in self._work_entries:
            if entry.id == entry_id:
                return _copy_entry(entry)
        return None

    def get_invoice(self, id_or_number: str) -> Invoice | None:
        """Find an invoice by id or by invoice number."""
        for invoice in self._invoices:
            if invoice.id == id_or_number or invoice.invoice_number == id_or_number:
                return _copy_invoice(invoice)
        return None

    def _index_of(self, items: list, item_id: str) -> int:
        for idx, item in enumerate(items):
            if item.id == item_id:
                return idx
        return -1

    # --- Clients ---

    def _validate_client(self, name: str, rate: float) -> str:
        name = (name or "").strip()
        if not name:
            raise LedgerError("Client name is required")
        if not _is_valid_amount(rate) or rate < 0:
            raise LedgerError("Rate cannot be negative")
        return name

    def add_client(self, draft: ClientDraft) -> Client:
        name = self._validate_client(draft.name, draft.rate)
        client = Client(id=new_id(), name=name, rate=float(draft.rate))
        self._clients.append(client)
        self.save()
        logger.info("Client %r added", client.name)
        return replace(client)

    def update_client(self, client: Client) -> Client:
        """Replace a client; a rate change re-prices its non-invoiced entries."""
        idx = self._index_of(self._clients, client.id)
        if idx < 0:
            raise LedgerError(f"Client not found: {client.id}")
        name = self._validate_client(client.name, client.rate)
        updated = Client(id=client.id, name=name, rate=float(client.rate))
        old = self._clients[idx]
        self._clients[idx] = updated

        if old.rate != updated.rate:
            repriced = 0
            for i, entry in enumerate(self._work_entries):
                if entry.client_id == updated.id and not entry.invoiced:
                    self._work_entries[i] = replace(
                        entry,
                        rate=updated.rate,
                        bill=calculate_bill(entry.hours, updated.rate),
                    )
                    repriced += 1
            logger.info(
                "Client %r rate %s -> %s, re-priced %d uninvoiced entries",
                updated.name, old.rate, updated.rate, repriced,
            )

        self.save()
        logger.info("Client %r updated", updated.name)
        return replace(updated)

    def delete_client(self, client_id: str) -> Client:
        idx = self._index_of(self._clients, client_id)
        if idx < 0:
            raise LedgerError(f"Client not found: {client_id}")
        has_sub_clients = any(sc.client_id == client_id for sc in self._sub_clients)
        has_entries = any(e.client_id == client_id for e in self._work_entries)
        if has_sub_clients or has_entries:
            logger.warning("Refusing to delete client %s with dependents", client_id)
            raise LedgerError("Cannot delete client with associated sub-clients or work entries")
        client = self._clients.pop(idx)
        self.save()
        logger.info("Client %r deleted", client.name)
        return client

    # --- Sub-clients ---

    def _validate_sub_client(self, name: str, client_id: str) -> str:
        name = (name or "").strip()
        if not name:
            raise LedgerError("Sub-client name is required")
        if self._index_of(self._clients, client_id) < 0:
            raise LedgerError(f"Client not found: {client_id}")
        return name

    def add_sub_client(self, draft: SubClientDraft) -> SubClient:
        name = self._validate_sub_client(draft.name, draft.client_id)
        sub = SubClient(id=new_id(), name=name, client_id=draft.client_id)
        self._sub_clients.append(sub)
        self.save()
        logger.info("Sub-client %r added", sub.name)
        return replace(sub)

    def update_sub_client(self, sub_client: SubClient) -> SubClient:
        idx = self._index_of(self._sub_clients, sub_client.id)
        if idx < 0:
            raise LedgerError(f"Sub-client not found: {sub_client.id}")
        name = self._validate_sub_client(sub_client.name, sub_client.client_id)
        current = self._sub_clients[idx]
        if sub_client.client_id != current.client_id and any(
            e.sub_client_id == sub_client.id for e in self._work_entries
        ):
            logger.warning("Refusing to move sub-client %s with work entries", sub_client.id)
            raise LedgerError("Cannot move sub-client with associated work entries")
        updated = SubClient(id=sub_client.id, name=name, client_id=sub_client.client_id)
        self._sub_clients[idx] = updated
        self.save()
        logger.info("Sub-client %r updated", updated.name)
        return replace(updated)

    def delete_sub_client(self, sub_client_id: str) -> SubClient:
        idx = self._index_of(self._sub_clients, sub_client_id)
        if idx < 0:
            raise LedgerError(f"Sub-client not found: {sub_client_id}")
        if any(e.sub_client_id == sub_client_id for e in self._work_entries):
            logger.warning("Refusing to delete sub-client %s with work entries", sub_client_id)
            raise LedgerError("Cannot delete sub-client with associated work entries")
        sub = self._sub_clients.pop(idx)
        self.save()
        logger.info("Sub-client %r deleted", sub.name)
        return sub

    # --- Work entries ---

    def _validate_entry_refs(self, client_id: str, sub_client_id: str, hours: float, rate: float) -> None:
        if self._index_of(self._clients, client_id) < 0:
            raise LedgerError("Invalid client selected")
        sub_idx = self._index_of(self._sub_clients, sub_client_id)
        if sub_idx < 0:
            raise LedgerError("Invalid sub-client selected")
        if self._sub_clients[sub_idx].client_id != client_id:
            raise LedgerError("Sub-client does not belong to the selected client")
        if not _is_valid_amount(hours) or hours <= 0:
            raise LedgerError("Hours must be greater than 0")
        if not _is_valid_amount(rate) or rate < 0:
            raise LedgerError("Rate cannot be negative")

    def _entry_from_draft(self, draft: WorkEntryDraft) -> WorkEntry:
        self._validate_entry_refs(draft.client_id, draft.sub_client_id, draft.hours, draft.rate)
        bill = draft.bill if draft.bill is not None else calculate_bill(draft.hours, draft.rate)
        return WorkEntry(
            id=new_id(),
            date=draft.date,
            client_id=draft.client_id,
            sub_client_id=draft.sub_client_id,
            project=draft.project,
            task_description=draft.task_description,
            file_attachments=list(draft.file_attachments),
            hours=float(draft.hours),
            rate=float(draft.rate),
            bill=float(bill),
            invoiced=draft.invoiced,
            paid=draft.paid,
        )

    def add_work_entry(self, draft: WorkEntryDraft) -> WorkEntry:
        entry = self._entry_from_draft(replace(draft, bill=None))
        self._work_entries.append(entry)
        self.save()
        logger.info("Work entry %s added (%.2fh, bill %.2f)", entry.id, entry.hours, entry.bill)
        return replace(entry)

    def update_work_entry(self, entry: WorkEntry) -> WorkEntry:
        """Replace an entry, recomputing its bill from hours and rate unless invoiced."""
        idx = self._index_of(self._work_entries, entry.id)
        if idx < 0:
            raise LedgerError(f"Work entry not found: {entry.id}")
        current = self._work_entries[idx]
        if current.invoiced:
            changed = [f for f in LOCKED_WHEN_INVOICED if getattr(current, f) != getattr(entry, f)]
            if changed:
                logger.warning("Refusing to change %s on invoiced entry %s", changed, entry.id)
                raise LedgerError(
                    "Cannot change hours, rate, client or sub-client of an invoiced work entry"
                )
        self._validate_entry_refs(entry.client_id, entry.sub_client_id, entry.hours, entry.rate)
        # An invoiced bill is historical and stays as billed
        bill = current.bill if current.invoiced else calculate_bill(entry.hours, entry.rate)
        updated = replace(
            entry,
            file_attachments=list(entry.file_attachments),
            bill=bill,
        )
        self._work_entries[idx] = updated
        self.save()
        logger.info("Work entry %s updated", entry.id)
        return replace(updated)

    def delete_work_entry(self, entry_id: str) -> WorkEntry:
        idx = self._index_of(self._work_entries, entry_id)
        if idx < 0:
            raise LedgerError(f"Work entry not found: {entry_id}")
        if self._work_entries[idx].invoiced:
            logger.warning("Refusing to delete invoiced entry %s", entry_id)
            raise LedgerError("Cannot delete an invoiced work entry")
        entry = self._work_entries.pop(idx)
        self.save()
        logger.info("Work entry %s deleted", entry_id)
        return entry

    # --- Bulk imports ---

    def import_clients(self, drafts: list[ClientDraft]) -> list[Client]:
        created = []
        for draft in drafts:
            name = self._validate_client(draft.name, draft.rate)
            created.append(Client(id=new_id(), name=name, rate=float(draft.rate)))
        self._clients.extend(created)
        self.save()
        logger.info("Imported %d clients", len(created))
        return [replace(c) for c in created]

    def import_sub_clients(self, drafts: list[SubClientDraft]) -> list[SubClient]:
        created = []
        for draft in drafts:
            name = self._validate_sub_client(draft.name, draft.client_id)
            created.append(SubClient(id=new_id(), name=name, client_id=draft.client_id))
        self._sub_clients.extend(created)
        self.save()
        logger.info("Imported %d sub-clients", len(created))
        return [replace(sc) for sc in created]

    def import_work_entries(self, drafts: list[WorkEntryDraft]) -> list[WorkEntry]:
        """Append imported entries, keeping any bill the import supplied."""
        created = [self._entry_from_draft(draft) for draft in drafts]
        self._work_entries.extend(created)
        self.save()
        logger.info("Imported %d work entries", len(created))
        return [replace(e) for e in created]

    # --- Invoicing ---

    def generate_weekly_invoice(self, now: datetime | None = None) -> Invoice:
        """Invoice last week's uninvoiced entries and flag them as invoiced."""
        now = now or datetime.now()
        start, end = last_week_range(now)
        week_entries = entries_in_range(
            (e for e in self._work_entries if not e.invoiced), start, end,
        )
        if not week_entries:
            logger.warning("No uninvoiced entries between %s and %s", start, end)
            raise LedgerError("No uninvoiced entries found for last week")

        invoice = Invoice(
            id=new_id(),
            invoice_number=generate_invoice_number(now),
            start_date=start,
            end_date=end,
            entries=[_copy_entry(e) for e in week_entries],
            total_amount=sum(e.bill for e in week_entries),
            created_at=now,
        )

        selected = {e.id for e in week_entries}
        self._work_entries = [
            replace(e, invoiced=True) if e.id in selected else e
            for e in self._work_entries
        ]
        self._invoices.append(invoice)
        self.save()
        logger.info(
            "Invoice %s generated for %d entries (total %.2f)",
            invoice.invoice_number, len(week_entries), invoice.total_amount,
        )
        return _copy_invoice(invoice)
