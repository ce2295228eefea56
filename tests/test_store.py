"""Tests for the Ledger controller: CRUD rules, rate propagation, weekly invoicing."""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from hourbook.models import ClientDraft, SubClientDraft, WorkEntryDraft
from hourbook.store import Ledger, LedgerError


# Wednesday; last week runs Monday 2024-03-11 .. Sunday 2024-03-17
NOW = datetime(2024, 3, 20, 12, 0)
LAST_MONDAY = datetime(2024, 3, 11, 9, 0)
LAST_WEDNESDAY = datetime(2024, 3, 13, 14, 0)


def _draft(client, sub, **overrides):
    defaults = {
        "date": LAST_MONDAY,
        "client_id": client.id,
        "sub_client_id": sub.id,
        "hours": 2.0,
        "rate": 50.0,
        "project": "Design",
        "task_description": "Wireframes",
    }
    defaults.update(overrides)
    return WorkEntryDraft(**defaults)


# ============================================================================
# Clients
# ============================================================================


class TestClients:
    def test_add_client(self, ledger):
        client = ledger.add_client(ClientDraft(name="  Acme  ", rate=100))
        assert client.name == "Acme"
        assert client.rate == 100.0
        assert ledger.clients == [client]

    def test_add_requires_name(self, ledger):
        with pytest.raises(LedgerError, match="name is required"):
            ledger.add_client(ClientDraft(name="   ", rate=10))
        assert ledger.clients == []

    def test_add_rejects_negative_rate(self, ledger):
        with pytest.raises(LedgerError, match="negative"):
            ledger.add_client(ClientDraft(name="Acme", rate=-1))

    def test_add_rejects_nan_rate(self, ledger):
        with pytest.raises(LedgerError):
            ledger.add_client(ClientDraft(name="Acme", rate=float("nan")))

    def test_mutation_persists(self, ledger, db_conn):
        ledger.add_client(ClientDraft(name="Acme", rate=100))
        assert [c.name for c in Ledger.load(db_conn).clients] == ["Acme"]

    def test_returned_lists_are_copies(self, ledger):
        ledger.add_client(ClientDraft(name="Acme", rate=100))
        ledger.clients.clear()
        ledger.clients[0].name = "Changed"
        assert ledger.clients[0].name == "Acme"

    def test_update_unknown_client(self, ledger, make_client):
        with pytest.raises(LedgerError, match="not found"):
            ledger.update_client(make_client(id="missing"))

    def test_rename(self, acme, ledger):
        client, _ = acme
        ledger.update_client(replace(client, name="Acme Corp"))
        assert ledger.get_client(client.id).name == "Acme Corp"


class TestRatePropagation:
    def test_rate_change_reprices_only_uninvoiced(self, acme, ledger):
        client, sub = acme
        open_entry = ledger.add_work_entry(_draft(client, sub, hours=3, rate=120))
        billed = ledger.add_work_entry(_draft(client, sub, hours=2, rate=120))
        ledger.update_work_entry(replace(ledger.get_work_entry(billed.id), invoiced=True))

        ledger.update_client(replace(client, rate=150))

        repriced = ledger.get_work_entry(open_entry.id)
        assert repriced.rate == 150
        assert repriced.bill == 3 * 150
        untouched = ledger.get_work_entry(billed.id)
        assert untouched.rate == 120
        assert untouched.bill == 240

    def test_other_clients_unaffected(self, acme, ledger):
        client, sub = acme
        other = ledger.add_client(ClientDraft(name="Globex", rate=80))
        other_sub = ledger.add_sub_client(SubClientDraft(name="HQ", client_id=other.id))
        entry = ledger.add_work_entry(_draft(other, other_sub, hours=1, rate=80))

        ledger.update_client(replace(client, rate=200))
        assert ledger.get_work_entry(entry.id).bill == 80

    def test_same_rate_leaves_entries_alone(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub, hours=1, rate=99))
        ledger.update_client(replace(client, name="Renamed"))
        assert ledger.get_work_entry(entry.id).rate == 99


class TestDeleteClient:
    def test_with_sub_client_fails(self, acme, ledger):
        client, _ = acme
        before = ledger.clients
        with pytest.raises(LedgerError, match="associated"):
            ledger.delete_client(client.id)
        assert ledger.clients == before

    def test_with_entry_fails(self, ledger, make_client, make_entry):
        # Entry references the client but no sub-client does
        ledger = Ledger(clients=[make_client()], work_entries=[make_entry()])
        with pytest.raises(LedgerError):
            ledger.delete_client("c1")
        assert len(ledger.clients) == 1

    def test_without_dependents(self, ledger):
        client = ledger.add_client(ClientDraft(name="Solo", rate=10))
        ledger.delete_client(client.id)
        assert ledger.clients == []

    def test_unknown_id(self, ledger):
        with pytest.raises(LedgerError, match="not found"):
            ledger.delete_client("nope")


# ============================================================================
# Sub-clients
# ============================================================================


class TestSubClients:
    def test_add_requires_existing_client(self, ledger):
        with pytest.raises(LedgerError, match="Client not found"):
            ledger.add_sub_client(SubClientDraft(name="West", client_id="missing"))

    def test_add_requires_name(self, acme, ledger):
        client, _ = acme
        with pytest.raises(LedgerError, match="name is required"):
            ledger.add_sub_client(SubClientDraft(name="", client_id=client.id))

    def test_update_moves_to_other_client(self, acme, ledger):
        _, sub = acme
        other = ledger.add_client(ClientDraft(name="Globex", rate=80))
        moved = ledger.update_sub_client(replace(sub, client_id=other.id))
        assert moved.client_id == other.id

    def test_move_with_entries_fails(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        ledger.generate_weekly_invoice(NOW)
        other = ledger.add_client(ClientDraft(name="Globex", rate=80))
        with pytest.raises(LedgerError, match="associated work entries"):
            ledger.update_sub_client(replace(sub, client_id=other.id))
        assert ledger.get_sub_client(sub.id).client_id == client.id
        paid = ledger.update_work_entry(replace(ledger.get_work_entry(entry.id), paid=True))
        assert paid.paid is True

    def test_rename_with_entries_allowed(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        renamed = ledger.update_sub_client(replace(sub, name="North"))
        assert renamed.name == "North"

    def test_delete_with_entries_fails(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        with pytest.raises(LedgerError, match="associated work entries"):
            ledger.delete_sub_client(sub.id)
        assert len(ledger.sub_clients) == 1

    def test_delete(self, acme, ledger):
        _, sub = acme
        ledger.delete_sub_client(sub.id)
        assert ledger.sub_clients == []


# ============================================================================
# Work entries
# ============================================================================


class TestWorkEntries:
    def test_add_computes_bill(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub, hours=2.5, rate=40, bill=1.0))
        assert entry.bill == 100.0
        assert entry.invoiced is False

    def test_add_validates_client(self, acme, ledger):
        client, sub = acme
        with pytest.raises(LedgerError, match="Invalid client"):
            ledger.add_work_entry(_draft(client, sub, client_id="nope"))

    def test_add_validates_sub_client_ownership(self, acme, ledger):
        client, _ = acme
        other = ledger.add_client(ClientDraft(name="Globex", rate=80))
        other_sub = ledger.add_sub_client(SubClientDraft(name="HQ", client_id=other.id))
        with pytest.raises(LedgerError, match="does not belong"):
            ledger.add_work_entry(_draft(client, other_sub))

    @pytest.mark.parametrize("hours", [0, -1, float("inf")])
    def test_add_rejects_bad_hours(self, acme, ledger, hours):
        client, sub = acme
        with pytest.raises(LedgerError, match="Hours"):
            ledger.add_work_entry(_draft(client, sub, hours=hours))
        assert ledger.work_entries == []

    def test_update_recomputes_bill(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub, hours=2, rate=50))
        updated = ledger.update_work_entry(replace(entry, hours=4))
        assert updated.bill == 200

    def test_invoiced_entry_locks_billing_fields(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        invoiced = ledger.update_work_entry(replace(entry, invoiced=True))
        with pytest.raises(LedgerError, match="invoiced"):
            ledger.update_work_entry(replace(invoiced, hours=10))
        assert ledger.get_work_entry(entry.id).hours == 2

    def test_invoiced_entry_allows_description_and_paid(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        invoiced = ledger.update_work_entry(replace(entry, invoiced=True))
        updated = ledger.update_work_entry(
            replace(invoiced, task_description="Revised", paid=True)
        )
        assert updated.paid is True
        assert updated.task_description == "Revised"

    def test_invoiced_imported_bill_survives_edit(self, acme, ledger):
        client, sub = acme
        entry = ledger.import_work_entries(
            [_draft(client, sub, hours=5, rate=120, bill=550.0, invoiced=True)]
        )[0]
        updated = ledger.update_work_entry(replace(entry, task_description="Note"))
        assert updated.bill == 550.0

    def test_delete_invoiced_fails(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        ledger.update_work_entry(replace(entry, invoiced=True))
        before = ledger.work_entries
        with pytest.raises(LedgerError, match="invoiced"):
            ledger.delete_work_entry(entry.id)
        assert ledger.work_entries == before

    def test_delete(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        ledger.delete_work_entry(entry.id)
        assert ledger.work_entries == []


class TestBulkImport:
    def test_import_keeps_supplied_bill(self, acme, ledger):
        client, sub = acme
        created = ledger.import_work_entries([_draft(client, sub, hours=5, rate=120, bill=550.0)])
        assert created[0].bill == 550.0

    def test_import_computes_missing_bill(self, acme, ledger):
        client, sub = acme
        created = ledger.import_work_entries([_draft(client, sub, hours=5, rate=120)])
        assert created[0].bill == 600

    def test_invalid_draft_aborts_whole_batch(self, acme, ledger):
        client, sub = acme
        with pytest.raises(LedgerError):
            ledger.import_work_entries([
                _draft(client, sub),
                _draft(client, sub, sub_client_id="nope"),
            ])
        assert ledger.work_entries == []

    def test_import_clients_and_sub_clients(self, ledger, db_conn):
        clients = ledger.import_clients([ClientDraft("A", 1), ClientDraft("B", 2)])
        ledger.import_sub_clients([SubClientDraft("X", clients[0].id)])
        reloaded = Ledger.load(db_conn)
        assert [c.name for c in reloaded.clients] == ["A", "B"]
        assert [sc.name for sc in reloaded.sub_clients] == ["X"]


# ============================================================================
# Weekly invoice
# ============================================================================


class TestGenerateWeeklyInvoice:
    def test_two_entries_total_150(self, acme, ledger):
        client, sub = acme
        e1 = ledger.add_work_entry(_draft(client, sub, date=LAST_MONDAY, hours=2, rate=50))
        e2 = ledger.add_work_entry(_draft(client, sub, date=LAST_WEDNESDAY, hours=1, rate=50))

        invoice = ledger.generate_weekly_invoice(NOW)

        assert invoice.total_amount == 150
        assert {e.id for e in invoice.entries} == {e1.id, e2.id}
        assert ledger.get_work_entry(e1.id).invoiced is True
        assert ledger.get_work_entry(e2.id).invoiced is True
        assert ledger.invoices == [invoice]

    def test_window_and_number(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        invoice = ledger.generate_weekly_invoice(NOW)
        assert invoice.start_date == datetime(2024, 3, 11)
        assert invoice.end_date.date() == datetime(2024, 3, 17).date()
        assert invoice.invoice_number.startswith("INV-20240320-")
        assert invoice.created_at == NOW

    def test_only_invoiced_flag_changes(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub))
        ledger.generate_weekly_invoice(NOW)
        assert ledger.get_work_entry(entry.id) == replace(entry, invoiced=True)

    def test_snapshot_is_independent_of_later_edits(self, acme, ledger):
        client, sub = acme
        entry = ledger.add_work_entry(_draft(client, sub, task_description="Original"))
        invoice = ledger.generate_weekly_invoice(NOW)
        ledger.update_work_entry(
            replace(ledger.get_work_entry(entry.id), task_description="Edited")
        )
        stored = ledger.get_invoice(invoice.invoice_number)
        assert stored.entries[0].task_description == "Original"

    def test_returned_invoices_do_not_alias_snapshot(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub, hours=2, rate=50))
        invoice = ledger.generate_weekly_invoice(NOW)
        invoice.entries[0].bill = 99999.0
        ledger.invoices[0].entries[0].hours = 77.0
        ledger.get_invoice(invoice.id).entries[0].file_attachments.append("x.pdf")

        stored = ledger.get_invoice(invoice.invoice_number)
        assert stored.entries[0].bill == 100.0
        assert stored.entries[0].hours == 2.0
        assert stored.entries[0].file_attachments == []

    def test_excludes_out_of_window_and_invoiced(self, acme, ledger):
        client, sub = acme
        inside = ledger.add_work_entry(_draft(client, sub, date=LAST_WEDNESDAY))
        this_week = ledger.add_work_entry(_draft(client, sub, date=NOW - timedelta(hours=1)))
        older = ledger.add_work_entry(_draft(client, sub, date=datetime(2024, 3, 10, 23, 0)))
        already = ledger.add_work_entry(_draft(client, sub, date=LAST_MONDAY))
        ledger.update_work_entry(replace(already, invoiced=True))

        invoice = ledger.generate_weekly_invoice(NOW)
        assert [e.id for e in invoice.entries] == [inside.id]
        assert ledger.get_work_entry(this_week.id).invoiced is False
        assert ledger.get_work_entry(older.id).invoiced is False

    def test_no_entries_fails_without_state_change(self, acme, ledger, db_conn):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub, date=NOW))
        before_entries = ledger.work_entries
        with pytest.raises(LedgerError, match="No uninvoiced entries found for last week"):
            ledger.generate_weekly_invoice(NOW)
        assert ledger.invoices == []
        assert ledger.work_entries == before_entries
        assert Ledger.load(db_conn).invoices == []

    def test_second_run_same_week_fails(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        ledger.generate_weekly_invoice(NOW)
        with pytest.raises(LedgerError):
            ledger.generate_weekly_invoice(NOW)
        assert len(ledger.invoices) == 1

    def test_invoice_persisted(self, acme, ledger, db_conn):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        invoice = ledger.generate_weekly_invoice(NOW)
        reloaded = Ledger.load(db_conn)
        assert reloaded.invoices == [invoice]
        assert all(e.invoiced for e in reloaded.work_entries)

    def test_get_invoice_by_id_or_number(self, acme, ledger):
        client, sub = acme
        ledger.add_work_entry(_draft(client, sub))
        invoice = ledger.generate_weekly_invoice(NOW)
        assert ledger.get_invoice(invoice.id).id == invoice.id
        assert ledger.get_invoice(invoice.invoice_number).id == invoice.id
        assert ledger.get_invoice("INV-missing") is None
