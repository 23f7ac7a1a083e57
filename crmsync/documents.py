"""Shapes of the remote JSON documents the sync engines read and write."""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Tuple

from crmsync.records import normalise_id


class DocumentKind:
    """Encode, decode and combine one remote collection shape."""

    name = "document"

    def empty(self) -> Any:
        raise NotImplementedError

    def validate(self, data: Any) -> Any:
        raise NotImplementedError

    def ids(self, collection: Any) -> List[str]:
        raise NotImplementedError

    def merge(self, remote: Any, local: Any) -> Tuple[Any, int]:
        """Return ``remote`` extended with local-only records and the count appended."""

        raise NotImplementedError

    def overlay(self, remote: Any, local: Any, keep: Callable[[Mapping[str, Any]], bool]) -> Any:
        """Return ``local`` plus the remote records selected by ``keep``.

        Local records win when both sides carry the same id.
        """

        raise NotImplementedError

    def upsert(self, collection: Any, entity_id: Any, record: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def remove(self, collection: Any, entity_id: Any) -> Any:
        raise NotImplementedError

    def is_empty(self, collection: Any) -> bool:
        return not collection

    def encode(self, collection: Any) -> bytes:
        return json.dumps(collection, ensure_ascii=False, indent=2).encode("utf-8")

    def decode(self, content: bytes) -> Any:
        text = content.decode("utf-8-sig").strip() if content else ""
        if not text:
            return self.empty()
        return self.validate(json.loads(text))


class ListDocument(DocumentKind):
    """A JSON array of records, each carrying an ``id``."""

    def __init__(self, name: str) -> None:
        self.name = name

    def empty(self) -> List[Dict[str, Any]]:
        return []

    def validate(self, data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, list):
            raise ValueError(f"{self.name} document must be a JSON array")
        if not all(isinstance(item, dict) for item in data):
            raise ValueError(f"{self.name} document must only contain objects")
        return data

    def ids(self, collection: List[Mapping[str, Any]]) -> List[str]:
        return [normalise_id(item.get("id")) for item in collection]

    def merge(self, remote, local) -> Tuple[List[Dict[str, Any]], int]:
        known = set(self.ids(remote))
        merged = list(remote)
        appended = 0
        for record in local:
            record_id = normalise_id(record.get("id"))
            if record_id in known:
                continue
            known.add(record_id)
            merged.append(record)
            appended += 1
        return merged, appended

    def overlay(self, remote, local, keep) -> List[Dict[str, Any]]:
        local_ids = set(self.ids(local))
        kept = [
            record for record in remote if keep(record) and normalise_id(record.get("id")) not in local_ids
        ]
        return kept + list(local)

    def upsert(self, collection, entity_id, record) -> List[Dict[str, Any]]:
        target = normalise_id(entity_id)
        result = list(collection)
        for index, item in enumerate(result):
            if normalise_id(item.get("id")) == target:
                result[index] = dict(record)
                return result
        result.append(dict(record))
        return result

    def remove(self, collection, entity_id) -> List[Dict[str, Any]]:
        target = normalise_id(entity_id)
        return [item for item in collection if normalise_id(item.get("id")) != target]


class MapDocument(DocumentKind):
    """A JSON object keyed by record id."""

    def __init__(self, name: str) -> None:
        self.name = name

    def empty(self) -> Dict[str, Dict[str, Any]]:
        return {}

    def validate(self, data: Any) -> Dict[str, Dict[str, Any]]:
        if not isinstance(data, dict):
            raise ValueError(f"{self.name} document must be a JSON object")
        if not all(isinstance(item, dict) for item in data.values()):
            raise ValueError(f"{self.name} document values must be objects")
        return data

    def ids(self, collection: Mapping[str, Any]) -> List[str]:
        return [normalise_id(key) for key in collection]

    def merge(self, remote, local) -> Tuple[Dict[str, Dict[str, Any]], int]:
        known = set(self.ids(remote))
        merged = dict(remote)
        appended = 0
        for key, record in local.items():
            record_id = normalise_id(key)
            if record_id in known:
                continue
            known.add(record_id)
            merged[key] = record
            appended += 1
        return merged, appended

    def overlay(self, remote, local, keep) -> Dict[str, Dict[str, Any]]:
        local_ids = set(self.ids(local))
        result = {
            key: record for key, record in remote.items() if keep(record) and normalise_id(key) not in local_ids
        }
        result.update(local)
        return result

    def upsert(self, collection, entity_id, record) -> Dict[str, Dict[str, Any]]:
        target = normalise_id(entity_id)
        result = {key: value for key, value in collection.items() if normalise_id(key) != target}
        result[target] = dict(record)
        return result

    def remove(self, collection, entity_id) -> Dict[str, Dict[str, Any]]:
        target = normalise_id(entity_id)
        return {key: value for key, value in collection.items() if normalise_id(key) != target}


CUSTOMERS = ListDocument("customers")
FORM_TEMPLATES = MapDocument("form_templates")
EXCEL_TEMPLATES = MapDocument("excel_templates")


__all__ = [
    "CUSTOMERS",
    "DocumentKind",
    "EXCEL_TEMPLATES",
    "FORM_TEMPLATES",
    "ListDocument",
    "MapDocument",
]
