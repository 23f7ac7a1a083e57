"""Local store of customers and templates; the only writer of those collections."""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from crmsync.listeners import ListenerRegistry
from crmsync.records import (
    ValidationError,
    clean_customer_fields,
    clean_excel_mapping,
    clean_form_field,
    clean_template_fields,
    new_id,
    normalise_id,
    same_id,
    utc_now_iso,
)
from crmsync.resolver import CustomerFolder
from crmsync.write_queue import (
    ENTITY_CUSTOMER,
    ENTITY_EXCEL,
    ENTITY_FORM,
    OPERATION_DELETE,
    OPERATION_UPSERT,
    WriteQueue,
)

logger = logging.getLogger(__name__)

CUSTOMERS_KEY = "customers"
FORM_TEMPLATES_KEY = "form_templates"
EXCEL_TEMPLATES_KEY = "excel_templates"

OPERATION_REPLACE = "replace"

MutationListener = Callable[[str, str, str], None]


class RecordNotFoundError(LookupError):
    """Raised when a record id is unknown to the repository."""


@dataclass(frozen=True)
class _TemplateKind:
    label: str
    storage_key: str
    entity_type: str
    items_field: str
    clean_item: Callable[[Any], Dict[str, Any]]


FORM_KIND = _TemplateKind("Form template", FORM_TEMPLATES_KEY, ENTITY_FORM, "fields", clean_form_field)
EXCEL_KIND = _TemplateKind("Excel template", EXCEL_TEMPLATES_KEY, ENTITY_EXCEL, "mappings", clean_excel_mapping)


class RecordRepository:
    """Persist CRM records locally and queue every change for Drive.

    Customers are kept as a JSON array under ``customers``; form and excel
    templates as JSON objects keyed by id. Reads and writes of customers are
    scoped to ``consultant_id``; records without a ``consultantId`` predate
    scoping and are treated as the current consultant's.
    """

    def __init__(self, storage, queue: WriteQueue, consultant_id: Optional[str] = None) -> None:
        self._storage = storage
        self._queue = queue
        self._consultant_id = consultant_id
        self._lock = threading.RLock()
        self._listeners = ListenerRegistry("[Queue] Repository")

    @property
    def consultant_id(self) -> Optional[str]:
        return self._consultant_id

    def add_listener(self, callback: MutationListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def _changed(self, entity_type: str, entity_id: str, operation: str, payload: Any = None) -> None:
        if operation != OPERATION_REPLACE:
            self._queue.enqueue(entity_type, entity_id, operation, payload)
        self._listeners.notify(entity_type, entity_id, operation)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------
    def owns(self, record: Mapping[str, Any]) -> bool:
        """Whether a customer record is in the current consultant's scope."""

        if self._consultant_id is None:
            return True
        owner = record.get("consultantId")
        return owner in (None, "") or str(owner) == str(self._consultant_id)

    def _load_customers(self) -> List[Dict[str, Any]]:
        data = self._storage.get_json(CUSTOMERS_KEY, [])
        if not isinstance(data, list):
            logger.warning("Stored customers are not a list; starting empty")
            return []
        return [item for item in data if isinstance(item, dict)]

    def _find_index(self, customers: List[Dict[str, Any]], customer_id: Any) -> int:
        for index, record in enumerate(customers):
            if same_id(record.get("id"), customer_id) and self.owns(record):
                return index
        raise RecordNotFoundError(f"Customer {customer_id!r} not found")

    def list_customers(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._load_customers() if self.owns(record)]

    def get_customer(self, customer_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            customers = self._load_customers()
            try:
                return copy.deepcopy(customers[self._find_index(customers, customer_id)])
            except RecordNotFoundError:
                return None

    def create_customer(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        cleaned = clean_customer_fields(fields, creating=True)
        now = utc_now_iso()
        record = dict(cleaned)
        record.update(
            {
                "id": new_id(),
                "consultantId": self._consultant_id,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        with self._lock:
            customers = self._load_customers()
            customers.append(record)
            self._storage.set_json(CUSTOMERS_KEY, customers)
            self._changed(ENTITY_CUSTOMER, record["id"], OPERATION_UPSERT, record)
        return copy.deepcopy(record)

    def update_customer(self, customer_id: Any, changes: Mapping[str, Any]) -> Dict[str, Any]:
        cleaned = clean_customer_fields(changes, creating=False)
        with self._lock:
            customers = self._load_customers()
            index = self._find_index(customers, customer_id)
            existing = customers[index]
            record = dict(existing)
            record.update(cleaned)
            record["id"] = existing.get("id")
            record["consultantId"] = existing.get("consultantId", self._consultant_id)
            record["createdAt"] = existing.get("createdAt")
            record["updatedAt"] = utc_now_iso()
            customers[index] = record
            self._storage.set_json(CUSTOMERS_KEY, customers)
            self._changed(ENTITY_CUSTOMER, normalise_id(record["id"]), OPERATION_UPSERT, record)
        return copy.deepcopy(record)

    def delete_customer(self, customer_id: Any) -> None:
        with self._lock:
            customers = self._load_customers()
            index = self._find_index(customers, customer_id)
            removed = customers.pop(index)
            self._storage.set_json(CUSTOMERS_KEY, customers)
            self._changed(ENTITY_CUSTOMER, normalise_id(removed.get("id")), OPERATION_DELETE)

    def attach_customer_folder(self, customer_id: Any, folder: CustomerFolder) -> Dict[str, Any]:
        return self.update_customer(
            customer_id,
            {
                "driveFolderId": folder.folder_id,
                "driveFolderLink": folder.folder_link,
                "subfolders": dict(folder.subfolders),
            },
        )

    def replace_customers(self, records: Any) -> None:
        """Store a synced collection. Never enqueues.

        Only records in this consultant's scope are kept from ``records``;
        other consultants' rows stay on Drive.
        """

        if not isinstance(records, list) or not all(isinstance(item, dict) for item in records):
            raise ValidationError("Customer collection must be a list of objects")
        with self._lock:
            others = [record for record in self._load_customers() if not self.owns(record)]
            mine = [dict(record) for record in records if self.owns(record)]
            self._storage.set_json(CUSTOMERS_KEY, others + mine)
            self._changed(ENTITY_CUSTOMER, "*", OPERATION_REPLACE)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def _load_templates(self, kind: _TemplateKind) -> Dict[str, Dict[str, Any]]:
        data = self._storage.get_json(kind.storage_key, {})
        if not isinstance(data, dict):
            logger.warning("Stored %s collection is not a map; starting empty", kind.label)
            return {}
        return {key: value for key, value in data.items() if isinstance(value, dict)}

    def _template_key(self, templates: Mapping[str, Any], template_id: Any) -> str:
        target = normalise_id(template_id)
        for key in templates:
            if normalise_id(key) == target:
                return key
        raise RecordNotFoundError(f"Template {template_id!r} not found")

    def _clean_items(self, kind: _TemplateKind, items: Any) -> Dict[str, Dict[str, Any]]:
        if items is None:
            return {}
        if isinstance(items, Mapping):
            pairs = [(normalise_id(key) or None, value) for key, value in items.items()]
        elif isinstance(items, list):
            pairs = [(normalise_id(item.get("id")) if isinstance(item, Mapping) else None, item) for item in items]
        else:
            raise ValidationError(f"{kind.label} '{kind.items_field}' must be a list or mapping")
        cleaned: Dict[str, Dict[str, Any]] = {}
        for item_id, item in pairs:
            data = kind.clean_item(item)
            data["id"] = item_id or new_id()
            cleaned[data["id"]] = data
        return cleaned

    def _list_templates(self, kind: _TemplateKind) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(value) for value in self._load_templates(kind).values()]

    def _get_template(self, kind: _TemplateKind, template_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            templates = self._load_templates(kind)
            try:
                return copy.deepcopy(templates[self._template_key(templates, template_id)])
            except RecordNotFoundError:
                return None

    def _save_template(self, kind: _TemplateKind, template: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(template, Mapping):
            raise ValidationError(f"{kind.label} must be a mapping")
        now = utc_now_iso()
        with self._lock:
            templates = self._load_templates(kind)
            existing_key: Optional[str] = None
            if template.get("id") not in (None, ""):
                try:
                    existing_key = self._template_key(templates, template["id"])
                except RecordNotFoundError:
                    existing_key = None
            cleaned = clean_template_fields(template, creating=existing_key is None, what=kind.label)
            if kind.items_field in cleaned:
                cleaned[kind.items_field] = self._clean_items(kind, cleaned[kind.items_field])
            if existing_key is None:
                record = dict(cleaned)
                record.setdefault(kind.items_field, {})
                record["id"] = normalise_id(template.get("id")) or new_id()
                record["createdAt"] = now
                record["updatedAt"] = now
                key = record["id"]
            else:
                record = dict(templates[existing_key])
                record.update(cleaned)
                record["updatedAt"] = now
                key = existing_key
            templates[key] = record
            self._storage.set_json(kind.storage_key, templates)
            self._changed(kind.entity_type, normalise_id(key), OPERATION_UPSERT, record)
        return copy.deepcopy(record)

    def _delete_template(self, kind: _TemplateKind, template_id: Any) -> None:
        with self._lock:
            templates = self._load_templates(kind)
            key = self._template_key(templates, template_id)
            del templates[key]
            self._storage.set_json(kind.storage_key, templates)
            self._changed(kind.entity_type, normalise_id(key), OPERATION_DELETE)

    def _add_item(self, kind: _TemplateKind, template_id: Any, item: Any) -> Dict[str, Any]:
        data = kind.clean_item(item)
        data["id"] = new_id()
        with self._lock:
            templates = self._load_templates(kind)
            key = self._template_key(templates, template_id)
            record = dict(templates[key])
            items = dict(record.get(kind.items_field) or {})
            items[data["id"]] = data
            record[kind.items_field] = items
            record["updatedAt"] = utc_now_iso()
            templates[key] = record
            self._storage.set_json(kind.storage_key, templates)
            self._changed(kind.entity_type, normalise_id(key), OPERATION_UPSERT, record)
        return copy.deepcopy(data)

    def _remove_item(self, kind: _TemplateKind, template_id: Any, item_id: Any) -> None:
        with self._lock:
            templates = self._load_templates(kind)
            key = self._template_key(templates, template_id)
            record = dict(templates[key])
            items = dict(record.get(kind.items_field) or {})
            target = normalise_id(item_id)
            remaining = {item_key: value for item_key, value in items.items() if normalise_id(item_key) != target}
            if len(remaining) == len(items):
                raise RecordNotFoundError(f"{kind.label} item {item_id!r} not found")
            record[kind.items_field] = remaining
            record["updatedAt"] = utc_now_iso()
            templates[key] = record
            self._storage.set_json(kind.storage_key, templates)
            self._changed(kind.entity_type, normalise_id(key), OPERATION_UPSERT, record)

    def _replace_templates(self, kind: _TemplateKind, templates: Any) -> None:
        if not isinstance(templates, dict) or not all(isinstance(value, dict) for value in templates.values()):
            raise ValidationError(f"{kind.label} collection must be a mapping of objects")
        with self._lock:
            self._storage.set_json(kind.storage_key, dict(templates))
            self._changed(kind.entity_type, "*", OPERATION_REPLACE)

    def form_templates_map(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._load_templates(FORM_KIND))

    def excel_templates_map(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._load_templates(EXCEL_KIND))

    def list_form_templates(self) -> List[Dict[str, Any]]:
        return self._list_templates(FORM_KIND)

    def get_form_template(self, template_id: Any) -> Optional[Dict[str, Any]]:
        return self._get_template(FORM_KIND, template_id)

    def save_form_template(self, template: Mapping[str, Any]) -> Dict[str, Any]:
        return self._save_template(FORM_KIND, template)

    def delete_form_template(self, template_id: Any) -> None:
        self._delete_template(FORM_KIND, template_id)

    def add_form_field(self, template_id: Any, field: Mapping[str, Any]) -> Dict[str, Any]:
        return self._add_item(FORM_KIND, template_id, field)

    def remove_form_field(self, template_id: Any, field_id: Any) -> None:
        self._remove_item(FORM_KIND, template_id, field_id)

    def replace_form_templates(self, templates: Mapping[str, Any]) -> None:
        self._replace_templates(FORM_KIND, templates)

    def list_excel_templates(self) -> List[Dict[str, Any]]:
        return self._list_templates(EXCEL_KIND)

    def get_excel_template(self, template_id: Any) -> Optional[Dict[str, Any]]:
        return self._get_template(EXCEL_KIND, template_id)

    def save_excel_template(self, template: Mapping[str, Any]) -> Dict[str, Any]:
        return self._save_template(EXCEL_KIND, template)

    def delete_excel_template(self, template_id: Any) -> None:
        self._delete_template(EXCEL_KIND, template_id)

    def add_excel_mapping(self, template_id: Any, mapping: Mapping[str, Any]) -> Dict[str, Any]:
        return self._add_item(EXCEL_KIND, template_id, mapping)

    def remove_excel_mapping(self, template_id: Any, mapping_id: Any) -> None:
        self._remove_item(EXCEL_KIND, template_id, mapping_id)

    def replace_excel_templates(self, templates: Mapping[str, Any]) -> None:
        self._replace_templates(EXCEL_KIND, templates)


__all__ = [
    "CUSTOMERS_KEY",
    "EXCEL_TEMPLATES_KEY",
    "FORM_TEMPLATES_KEY",
    "MutationListener",
    "OPERATION_REPLACE",
    "RecordNotFoundError",
    "RecordRepository",
]
