"""
Per-kind sync adapters.

Each entity kind (contacts, invoices, payments) is a subclass of
EntityAdapter exposing the same capabilities: fetch_local, fetch_remote,
map_to_external_id and apply_remote_update, plus payload conversion and
natural keys. Callers pick the adapter with get_adapter(kind) instead of
branching on the kind.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from accounting_sync.api.accounting_api import AccountingAPI, ValidationError
from accounting_sync.storage.db import SyncDatabase
from accounting_sync.sync.records import EntityKind, LocalRecord, RemoteRecord
from accounting_sync.utils.dates import latest, parse_date, parse_timestamp, utc_now
from accounting_sync.utils.normalization import normalize_email, normalize_string

logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _amount(value: Any) -> float:
    try:
        return round(float(value or 0), 2)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e


class EntityAdapter(ABC):
    """
    Uniform capability interface over one entity kind.

    Attributes:
        kind: The entity kind handled
        table: Local table name
        resource: Provider collection name
        id_key: Provider id field in payloads
    """

    kind: EntityKind
    table: str
    resource: str
    id_key: str

    # =========================================================================
    # Local side
    # =========================================================================

    def fetch_local(
        self, db: SyncDatabase, limit: int, offset: int = 0
    ) -> list[LocalRecord]:
        """Read one page of local records, ordered by id."""
        with db.connection() as conn:
            rows = db.list_entities(self.table, limit=limit, offset=offset, conn=conn)
            return [self._to_local(db, row, conn) for row in rows]

    def load_local(
        self,
        db: SyncDatabase,
        entity_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[LocalRecord]:
        if conn is None:
            with db.connection() as own:
                return self.load_local(db, entity_id, own)
        row = db.get_entity(self.table, entity_id, conn=conn)
        return self._to_local(db, row, conn) if row else None

    def _to_local(
        self, db: SyncDatabase, row: dict[str, Any], conn: sqlite3.Connection
    ) -> LocalRecord:
        return LocalRecord(
            id=row["id"],
            kind=self.kind,
            fields=self.local_fields(db, row, conn),
            external_id=row.get("external_id"),
            last_synced_at=row.get("last_synced_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def map_to_external_id(
        self,
        db: SyncDatabase,
        entity_id: int,
        external_id: str,
        synced_at: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Store (or refresh) the mapping of a local row to its external id."""
        db.set_mapping(self.table, entity_id, external_id, synced_at, conn=conn)

    def apply_remote_update(
        self,
        db: SyncDatabase,
        remote: RemoteRecord,
        entity_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Write remote content to the local row and record the mapping.

        Creates the row when entity_id is None. The sync marker is set to the
        later of the local write time and the remote modification time, so
        neither side looks changed on the next pass.

        Returns:
            The local entity id

        Raises:
            ValidationError: If a referenced record has no local counterpart
        """
        if conn is None:
            with db.transaction(immediate=True) as own:
                return self.apply_remote_update(db, remote, entity_id, own, now)

        written_at = now or utc_now()
        values = self.local_values(db, remote.fields, conn)
        synced_at = latest(written_at, remote.updated_at)

        if entity_id is None:
            return db.insert_entity(
                self.table,
                values,
                external_id=remote.external_id,
                last_synced_at=synced_at,
                created_at=written_at,
                conn=conn,
            )

        db.update_entity(self.table, entity_id, values, updated_at=written_at, conn=conn)
        self.map_to_external_id(db, entity_id, remote.external_id, synced_at, conn)
        return entity_id

    def _external_ref(
        self,
        db: SyncDatabase,
        table: str,
        local_id: Optional[int],
        conn: sqlite3.Connection,
    ) -> Optional[str]:
        if local_id is None:
            return None
        row = db.get_entity(table, local_id, conn=conn)
        return row.get("external_id") if row else None

    def _local_ref(
        self,
        db: SyncDatabase,
        table: str,
        external_id: Optional[str],
        conn: sqlite3.Connection,
    ) -> Optional[int]:
        if external_id is None:
            return None
        row = db.get_entity_by_external_id(table, external_id, conn=conn)
        if row is None:
            raise ValidationError(
                f"Referenced {table[:-1]} {external_id} has not been synced locally"
            )
        return row["id"]

    # =========================================================================
    # Remote side
    # =========================================================================

    def fetch_remote(
        self, api: AccountingAPI, access_token: str, tenant_id: str, page: int
    ) -> tuple[list[RemoteRecord], bool]:
        """
        Read one page of remote records.

        Returns:
            Tuple of (records, True if another page may follow)
        """
        items = api.list_records(self.resource, access_token, tenant_id, page=page)
        records: list[RemoteRecord] = []
        for item in items:
            try:
                records.append(self.from_payload(item))
            except ValidationError as e:
                logger.warning(f"Ignoring unreadable {self.resource} record: {e}")
        return records, len(items) >= api.page_size

    def fetch_remote_one(
        self, api: AccountingAPI, access_token: str, tenant_id: str, external_id: str
    ) -> RemoteRecord:
        item = api.get_record(self.resource, external_id, access_token, tenant_id)
        return self.from_payload(item)

    def push(
        self,
        api: AccountingAPI,
        access_token: str,
        tenant_id: str,
        local: LocalRecord,
        external_id: Optional[str] = None,
    ) -> RemoteRecord:
        """
        Write local content to the provider.

        Updates external_id (or the record's own mapping) when given,
        otherwise creates a new remote record.

        Returns:
            The remote record as stored by the provider
        """
        payload = self.to_payload(local.fields)
        target = external_id or local.external_id
        if target:
            payload[self.id_key] = target
            item = api.update_record(
                self.resource, target, payload, access_token, tenant_id
            )
        else:
            item = api.create_record(self.resource, payload, access_token, tenant_id)
        return self.from_payload(item)

    def from_payload(self, item: dict[str, Any]) -> RemoteRecord:
        external_id = item.get(self.id_key)
        if not external_id:
            raise ValidationError(f"{self.resource} payload has no {self.id_key}")
        try:
            updated_at = parse_timestamp(item.get("UpdatedDateUTC"))
        except ValueError as e:
            raise ValidationError(
                f"Invalid UpdatedDateUTC on {self.resource} {external_id}"
            ) from e
        try:
            fields = self.remote_fields(item)
        except ValueError as e:
            raise ValidationError(
                f"Invalid {self.resource} record {external_id}: {e}"
            ) from e
        return RemoteRecord(
            external_id=str(external_id),
            kind=self.kind,
            fields=fields,
            updated_at=updated_at,
            raw=item,
        )

    # =========================================================================
    # Per-kind hooks
    # =========================================================================

    @abstractmethod
    def local_fields(
        self, db: SyncDatabase, row: dict[str, Any], conn: sqlite3.Connection
    ) -> dict[str, Any]:
        """Shared-vocabulary fields of a local row."""

    @abstractmethod
    def local_values(
        self, db: SyncDatabase, fields: dict[str, Any], conn: sqlite3.Connection
    ) -> dict[str, Any]:
        """Local column values for shared-vocabulary fields."""

    @abstractmethod
    def remote_fields(self, item: dict[str, Any]) -> dict[str, Any]:
        """Shared-vocabulary fields of a provider payload."""

    @abstractmethod
    def to_payload(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Provider payload for shared-vocabulary fields."""

    @abstractmethod
    def natural_keys(self, fields: dict[str, Any]) -> list[tuple[str, str]]:
        """Business identifiers in matching priority order."""

    @abstractmethod
    def display_name(self, fields: dict[str, Any]) -> str:
        """Short label for logs and the sync ledger."""


class ContactAdapter(EntityAdapter):
    kind = EntityKind.CONTACTS
    table = "contacts"
    resource = "Contacts"
    id_key = "ContactID"

    def local_fields(self, db, row, conn):
        return {
            "name": _text(row.get("name")),
            "email": _text(row.get("email")),
            "phone": _text(row.get("phone")),
            "registration_number": _text(row.get("registration_number")),
        }

    def local_values(self, db, fields, conn):
        if not fields.get("name"):
            raise ValidationError("Contact has no name")
        return {
            "name": fields["name"],
            "email": fields.get("email"),
            "phone": fields.get("phone"),
            "registration_number": fields.get("registration_number"),
        }

    def remote_fields(self, item):
        phone = None
        phones = item.get("Phones") or []
        # Prefer the default phone, then the first one with a number
        for entry in sorted(phones, key=lambda p: p.get("PhoneType") != "DEFAULT"):
            if _text(entry.get("PhoneNumber")):
                phone = _text(entry["PhoneNumber"])
                break
        return {
            "name": _text(item.get("Name")),
            "email": _text(item.get("EmailAddress")),
            "phone": phone,
            "registration_number": _text(
                item.get("CompanyNumber") or item.get("TaxNumber")
            ),
        }

    def to_payload(self, fields):
        if not fields.get("name"):
            raise ValidationError("Contact has no name")
        payload: dict[str, Any] = {"Name": fields["name"]}
        if fields.get("email"):
            payload["EmailAddress"] = fields["email"]
        if fields.get("phone"):
            payload["Phones"] = [{"PhoneType": "DEFAULT", "PhoneNumber": fields["phone"]}]
        if fields.get("registration_number"):
            payload["CompanyNumber"] = fields["registration_number"]
        return payload

    def natural_keys(self, fields):
        keys: list[tuple[str, str]] = []
        email = normalize_email(fields.get("email") or "")
        if email:
            keys.append(("email", email))
        registration = (fields.get("registration_number") or "").replace(" ", "").upper()
        if registration:
            keys.append(("registration_number", registration))
        name = normalize_string(fields.get("name") or "")
        if name:
            keys.append(("name", name))
        return keys

    def display_name(self, fields):
        return fields.get("name") or fields.get("email") or "(unnamed contact)"


class InvoiceAdapter(EntityAdapter):
    kind = EntityKind.INVOICES
    table = "invoices"
    resource = "Invoices"
    id_key = "InvoiceID"

    def local_fields(self, db, row, conn):
        return {
            "invoice_number": _text(row.get("invoice_number")),
            "contact_ref": self._external_ref(db, "contacts", row.get("contact_id"), conn),
            "status": _text(row.get("status")),
            "total": round(float(row.get("total") or 0), 2),
            "currency": _text(row.get("currency")),
            "due_date": parse_date(row.get("due_date")),
        }

    def local_values(self, db, fields, conn):
        return {
            "invoice_number": fields.get("invoice_number"),
            "contact_id": self._local_ref(db, "contacts", fields.get("contact_ref"), conn),
            "status": fields.get("status") or "DRAFT",
            "total": _amount(fields.get("total")),
            "currency": fields.get("currency"),
            "due_date": fields.get("due_date"),
        }

    def remote_fields(self, item):
        contact = item.get("Contact") or {}
        return {
            "invoice_number": _text(item.get("InvoiceNumber")),
            "contact_ref": _text(contact.get("ContactID")),
            "status": _text(item.get("Status")),
            "total": _amount(item.get("Total")),
            "currency": _text(item.get("CurrencyCode")),
            "due_date": parse_date(item.get("DueDate")),
        }

    def to_payload(self, fields):
        if not fields.get("contact_ref"):
            raise ValidationError(
                "Invoice contact has not been synced to the accounting provider yet"
            )
        payload: dict[str, Any] = {
            "Type": "ACCREC",
            "Contact": {"ContactID": fields["contact_ref"]},
            "Status": fields.get("status") or "DRAFT",
            "LineItems": [
                {
                    "Description": fields.get("invoice_number") or "Invoice",
                    "Quantity": 1,
                    "UnitAmount": _amount(fields.get("total")),
                }
            ],
        }
        if fields.get("invoice_number"):
            payload["InvoiceNumber"] = fields["invoice_number"]
        if fields.get("currency"):
            payload["CurrencyCode"] = fields["currency"]
        if fields.get("due_date"):
            payload["DueDate"] = fields["due_date"]
        return payload

    def natural_keys(self, fields):
        number = (fields.get("invoice_number") or "").strip().upper()
        return [("invoice_number", number)] if number else []

    def display_name(self, fields):
        return fields.get("invoice_number") or "(draft invoice)"


class PaymentAdapter(EntityAdapter):
    kind = EntityKind.PAYMENTS
    table = "payments"
    resource = "Payments"
    id_key = "PaymentID"

    def local_fields(self, db, row, conn):
        return {
            "reference": _text(row.get("reference")),
            "invoice_ref": self._external_ref(db, "invoices", row.get("invoice_id"), conn),
            "amount": round(float(row.get("amount") or 0), 2),
            "paid_on": parse_date(row.get("paid_on")),
        }

    def local_values(self, db, fields, conn):
        return {
            "reference": fields.get("reference"),
            "invoice_id": self._local_ref(db, "invoices", fields.get("invoice_ref"), conn),
            "amount": _amount(fields.get("amount")),
            "paid_on": fields.get("paid_on"),
        }

    def remote_fields(self, item):
        invoice = item.get("Invoice") or {}
        return {
            "reference": _text(item.get("Reference")),
            "invoice_ref": _text(invoice.get("InvoiceID")),
            "amount": _amount(item.get("Amount")),
            "paid_on": parse_date(item.get("Date")),
        }

    def to_payload(self, fields):
        if not fields.get("invoice_ref"):
            raise ValidationError(
                "Payment invoice has not been synced to the accounting provider yet"
            )
        payload: dict[str, Any] = {
            "Invoice": {"InvoiceID": fields["invoice_ref"]},
            "Amount": _amount(fields.get("amount")),
        }
        if fields.get("reference"):
            payload["Reference"] = fields["reference"]
        if fields.get("paid_on"):
            payload["Date"] = fields["paid_on"]
        return payload

    def natural_keys(self, fields):
        reference = (fields.get("reference") or "").strip().upper()
        return [("reference", reference)] if reference else []

    def display_name(self, fields):
        return fields.get("reference") or f"payment of {fields.get('amount')}"


ADAPTERS: dict[EntityKind, EntityAdapter] = {
    EntityKind.CONTACTS: ContactAdapter(),
    EntityKind.INVOICES: InvoiceAdapter(),
    EntityKind.PAYMENTS: PaymentAdapter(),
}


def get_adapter(kind: EntityKind | str) -> EntityAdapter:
    """
    Return the adapter for an entity kind.

    Raises:
        ValueError: If the kind is unknown
    """
    if isinstance(kind, str):
        kind = EntityKind(kind)
    return ADAPTERS[kind]
