"""Entity records and their JSON blob representation.

Each collection is stored as a JSON array of objects. Keys use the camelCase
names of the stored format (``clientId``, ``taskDescription``, ...) and
datetimes are written with ``isoformat()`` and rebuilt on load, including the
entries snapshotted inside an invoice.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime


def new_id() -> str:
    return uuid.uuid4().hex


def to_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _parse_stored_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return to_local_naive(value)
    text = str(value)
    # Blobs written by UTC serializers end in "Z"
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_local_naive(datetime.fromisoformat(text))


@dataclass
class Client:
    id: str
    name: str
    rate: float = 0.0

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "rate": self.rate}

    @classmethod
    def from_dict(cls, data: dict) -> "Client":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            rate=float(data.get("rate", 0) or 0),
        )


@dataclass
class SubClient:
    id: str
    name: str
    client_id: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "clientId": self.client_id}

    @classmethod
    def from_dict(cls, data: dict) -> "SubClient":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            client_id=str(data.get("clientId", "")),
        )


@dataclass
class WorkEntry:
    id: str
    date: datetime
    client_id: str
    sub_client_id: str
    hours: float
    rate: float
    bill: float
    project: str = ""
    task_description: str = ""
    file_attachments: list[str] = field(default_factory=list)
    invoiced: bool = False
    paid: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "clientId": self.client_id,
            "subClientId": self.sub_client_id,
            "project": self.project,
            "taskDescription": self.task_description,
            "fileAttachments": list(self.file_attachments),
            "hours": self.hours,
            "rate": self.rate,
            "bill": self.bill,
            "invoiced": self.invoiced,
            "paid": self.paid,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkEntry":
        return cls(
            id=str(data["id"]),
            date=_parse_stored_datetime(data["date"]),
            client_id=str(data.get("clientId", "")),
            sub_client_id=str(data.get("subClientId", "")),
            project=str(data.get("project") or ""),
            task_description=str(data.get("taskDescription") or ""),
            file_attachments=[str(name) for name in data.get("fileAttachments") or []],
            hours=float(data.get("hours", 0)),
            rate=float(data.get("rate", 0)),
            bill=float(data.get("bill", 0)),
            invoiced=bool(data.get("invoiced", False)),
            paid=bool(data.get("paid", False)),
        )


@dataclass
class Invoice:
    id: str
    invoice_number: str
    start_date: datetime
    end_date: datetime
    entries: list[WorkEntry]
    total_amount: float
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoiceNumber": self.invoice_number,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "entries": [entry.to_dict() for entry in self.entries],
            "totalAmount": self.total_amount,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Invoice":
        return cls(
            id=str(data["id"]),
            invoice_number=str(data.get("invoiceNumber", "")),
            start_date=_parse_stored_datetime(data["startDate"]),
            end_date=_parse_stored_datetime(data["endDate"]),
            entries=[WorkEntry.from_dict(e) for e in data.get("entries") or []],
            total_amount=float(data.get("totalAmount", 0)),
            created_at=_parse_stored_datetime(data["createdAt"]),
        )


# Creation requests: an entity minus its id, handed to the Ledger.


@dataclass
class ClientDraft:
    name: str
    rate: float = 0.0


@dataclass
class SubClientDraft:
    name: str
    client_id: str


@dataclass
class WorkEntryDraft:
    date: datetime
    client_id: str
    sub_client_id: str
    hours: float
    rate: float
    project: str = ""
    task_description: str = ""
    file_attachments: list[str] = field(default_factory=list)
    invoiced: bool = False
    paid: bool = False
    bill: float | None = None  # None = derive from hours * rate
