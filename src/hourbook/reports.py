"""Read-only views over ledger data: weekly stats, sub-client totals, invoice detail."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .billing import entries_in_range, last_week_range
from .models import Client, Invoice, SubClient, WorkEntry


def format_currency(amount: float) -> str:
    """US dollar formatting: 1234.5 -> "$1,234.50", -5 -> "-$5.00"."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def format_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


@dataclass
class WeeklyStats:
    start_date: datetime
    end_date: datetime
    entry_count: int
    total_hours: float
    total_earned: float
    invoiced_amount: float
    uninvoiced_amount: float

    def to_dict(self) -> dict:
        return {
            "start_date": format_date(self.start_date),
            "end_date": format_date(self.end_date),
            "entries": self.entry_count,
            "total_hours": self.total_hours,
            "total_earned": format_currency(self.total_earned),
            "invoiced": format_currency(self.invoiced_amount),
            "uninvoiced": format_currency(self.uninvoiced_amount),
        }


def weekly_stats(entries: Iterable[WorkEntry], now: datetime | None = None) -> WeeklyStats:
    """Totals for last week's entries, invoiced or not."""
    start, end = last_week_range(now)
    week = entries_in_range(entries, start, end)
    total_earned = sum(e.bill for e in week)
    invoiced_amount = sum(e.bill for e in week if e.invoiced)
    return WeeklyStats(
        start_date=start,
        end_date=end,
        entry_count=len(week),
        total_hours=sum(e.hours for e in week),
        total_earned=total_earned,
        invoiced_amount=invoiced_amount,
        uninvoiced_amount=total_earned - invoiced_amount,
    )


@dataclass
class SubClientSummary:
    sub_client_id: str
    sub_client_name: str
    client_name: str
    total_hours: float = 0.0
    total_bill: float = 0.0

    def to_dict(self) -> dict:
        return {
            "sub_client_id": self.sub_client_id,
            "sub_client": self.sub_client_name,
            "client": self.client_name,
            "total_hours": self.total_hours,
            "total_bill": format_currency(self.total_bill),
        }


def sub_client_summaries(
    entries: Iterable[WorkEntry],
    clients: Iterable[Client],
    sub_clients: Iterable[SubClient],
) -> list[SubClientSummary]:
    """Hours and bill per sub-client, in order of first appearance.

    Entries whose client or sub-client no longer exists are left out.
    """
    clients_by_id = {c.id: c for c in clients}
    subs_by_id = {sc.id: sc for sc in sub_clients}
    summaries: dict[str, SubClientSummary] = {}

    for entry in entries:
        sub = subs_by_id.get(entry.sub_client_id)
        client = clients_by_id.get(entry.client_id)
        if sub is None or client is None:
            continue
        summary = summaries.get(entry.sub_client_id)
        if summary is None:
            summary = SubClientSummary(
                sub_client_id=sub.id,
                sub_client_name=sub.name,
                client_name=client.name,
            )
            summaries[entry.sub_client_id] = summary
        summary.total_hours += entry.hours
        summary.total_bill += entry.bill

    return list(summaries.values())


@dataclass
class InvoiceGroup:
    sub_client_name: str
    client_name: str
    entries: list[WorkEntry] = field(default_factory=list)

    @property
    def total_hours(self) -> float:
        return sum(e.hours for e in self.entries)

    @property
    def total_amount(self) -> float:
        return sum(e.bill for e in self.entries)

    def to_dict(self) -> dict:
        return {
            "sub_client": self.sub_client_name,
            "client": self.client_name,
            "total_hours": self.total_hours,
            "total_amount": format_currency(self.total_amount),
            "entries": [
                {
                    "date": format_date(e.date),
                    "project": e.project,
                    "description": e.task_description,
                    "hours": e.hours,
                    "rate": format_currency(e.rate),
                    "bill": format_currency(e.bill),
                }
                for e in self.entries
            ],
        }


def invoice_details(
    invoice: Invoice,
    clients: Iterable[Client],
    sub_clients: Iterable[SubClient],
) -> dict:
    """Invoice header plus its snapshot entries grouped by sub-client."""
    clients_by_id = {c.id: c for c in clients}
    subs_by_id = {sc.id: sc for sc in sub_clients}
    groups: dict[str, InvoiceGroup] = {}

    for entry in invoice.entries:
        group = groups.get(entry.sub_client_id)
        if group is None:
            sub = subs_by_id.get(entry.sub_client_id)
            client = clients_by_id.get(entry.client_id)
            group = InvoiceGroup(
                sub_client_name=sub.name if sub else "Unknown",
                client_name=client.name if client else "Unknown",
            )
            groups[entry.sub_client_id] = group
        group.entries.append(entry)

    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "created_at": format_datetime(invoice.created_at),
        "period": f"{format_date(invoice.start_date)} - {format_date(invoice.end_date)}",
        "total_amount": format_currency(invoice.total_amount),
        "groups": [group.to_dict() for group in groups.values()],
    }
