from __future__ import annotations

from typing import List, Tuple

import pytest

from crmsync.records import ValidationError
from crmsync.repository import (
    CUSTOMERS_KEY,
    OPERATION_REPLACE,
    RecordNotFoundError,
    RecordRepository,
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


@pytest.fixture
def queue(clock):
    return WriteQueue("c1", clock=clock)


@pytest.fixture
def repo(kv, queue):
    return RecordRepository(kv, queue, "c1")


def _queued(queue) -> List[Tuple[str, str, str]]:
    return [(entry.entity_type, entry.entity_id, entry.operation) for entry in queue.entries()]


def test_create_customer_stamps_and_queues(repo, queue):
    customer = repo.create_customer({"name": "  Wong Mei Ling ", "phone": "012-345", "id": "forged"})

    assert customer["name"] == "Wong Mei Ling"
    assert customer["id"] != "forged"
    assert customer["consultantId"] == "c1"
    assert customer["createdAt"] == customer["updatedAt"]
    assert repo.get_customer(customer["id"]) == customer
    assert _queued(queue) == [(ENTITY_CUSTOMER, customer["id"], OPERATION_UPSERT)]
    assert queue.entries()[0].payload == customer


@pytest.mark.parametrize(
    "fields",
    [{}, {"name": "   "}, {"name": "Lee", "checklist": ["a"]}, "not a mapping"],
)
def test_invalid_customer_is_rejected_without_side_effects(repo, queue, kv, fields):
    with pytest.raises(ValidationError):
        repo.create_customer(fields)

    assert kv.get(CUSTOMERS_KEY) is None
    assert queue.entries() == []


def test_update_keeps_managed_fields(repo, queue):
    customer = repo.create_customer({"name": "Ahmad"})

    updated = repo.update_customer(
        customer["id"], {"status": "test drive", "createdAt": "1999-01-01", "consultantId": "c9"}
    )

    assert updated["status"] == "test drive"
    assert updated["id"] == customer["id"]
    assert updated["consultantId"] == "c1"
    assert updated["createdAt"] == customer["createdAt"]
    assert [op for _type, _id, op in _queued(queue)] == [OPERATION_UPSERT, OPERATION_UPSERT]


def test_delete_customer_queues_delete(repo, queue):
    customer = repo.create_customer({"name": "Ahmad"})

    repo.delete_customer(customer["id"])

    assert repo.list_customers() == []
    assert _queued(queue)[-1] == (ENTITY_CUSTOMER, customer["id"], OPERATION_DELETE)
    with pytest.raises(RecordNotFoundError):
        repo.delete_customer(customer["id"])


def test_update_unknown_customer(repo):
    with pytest.raises(RecordNotFoundError):
        repo.update_customer("missing", {"name": "Ghost"})


def test_numeric_ids_are_matched_after_normalisation(repo, kv):
    kv.set_json(CUSTOMERS_KEY, [{"id": 12, "name": "Legacy"}])

    assert repo.get_customer("12")["name"] == "Legacy"
    assert repo.update_customer(12.0, {"phone": "1"})["id"] == 12


def test_customers_are_scoped_to_consultant(kv, queue):
    kv.set_json(
        CUSTOMERS_KEY,
        [
            {"id": "1", "name": "Mine", "consultantId": "c1"},
            {"id": "2", "name": "Theirs", "consultantId": "c2"},
            {"id": "3", "name": "Legacy"},
        ],
    )
    repo = RecordRepository(kv, queue, "c1")

    assert [record["name"] for record in repo.list_customers()] == ["Mine", "Legacy"]
    assert repo.get_customer("2") is None
    with pytest.raises(RecordNotFoundError):
        repo.delete_customer("2")


def test_replace_customers_does_not_queue_and_keeps_other_consultants(repo, queue, kv):
    kv.set_json(CUSTOMERS_KEY, [{"id": "2", "name": "Theirs", "consultantId": "c2"}])
    events = []
    repo.add_listener(lambda *args: events.append(args))

    repo.replace_customers([{"id": "9", "name": "Synced", "consultantId": "c1"}])

    assert queue.entries() == []
    assert [record["name"] for record in kv.get_json(CUSTOMERS_KEY)] == ["Theirs", "Synced"]
    assert events == [(ENTITY_CUSTOMER, "*", OPERATION_REPLACE)]

    with pytest.raises(ValidationError):
        repo.replace_customers({"id": "9"})


def test_replace_customers_ignores_other_consultants_rows(repo, kv):
    synced = [
        {"id": "1", "name": "Mine", "consultantId": "c1"},
        {"id": "2", "name": "Theirs", "consultantId": "c2"},
    ]

    for _ in range(3):
        repo.replace_customers(synced)

    assert [record["id"] for record in kv.get_json(CUSTOMERS_KEY)] == ["1"]
    assert [record["name"] for record in repo.list_customers()] == ["Mine"]


def test_attach_customer_folder(repo):
    customer = repo.create_customer({"name": "Siti"})
    folder = CustomerFolder("folder-1", "https://drive.google.com/drive/folders/folder-1", {"Documents": "sub-1"})

    updated = repo.attach_customer_folder(customer["id"], folder)

    assert updated["driveFolderId"] == "folder-1"
    assert updated["driveFolderLink"].endswith("folder-1")
    assert updated["subfolders"] == {"Documents": "sub-1"}


def test_form_template_fields_are_added_and_removed_by_id(repo, queue):
    template = repo.save_form_template({"name": "VSA", "fields": [{"label": "Name", "x": 10, "y": 20}]})
    assert len(template["fields"]) == 1

    field = repo.add_form_field(template["id"], {"label": "IC number", "fontSize": 9, "align": "right"})
    stored = repo.get_form_template(template["id"])
    assert set(stored["fields"]) == set(template["fields"]) | {field["id"]}

    repo.remove_form_field(template["id"], field["id"])

    assert set(repo.get_form_template(template["id"])["fields"]) == set(template["fields"])
    assert {entry.entity_type for entry in queue.entries()} == {ENTITY_FORM}
    assert len(queue.entries()) == 3
    with pytest.raises(RecordNotFoundError):
        repo.remove_form_field(template["id"], field["id"])


@pytest.mark.parametrize(
    "field",
    [{"x": 1}, {"label": "Name", "x": "left"}, {"label": "Name", "fontSize": 0}, {"label": "Name", "align": "justify"}],
)
def test_invalid_form_fields_are_rejected(repo, field):
    template = repo.save_form_template({"name": "VSA"})

    with pytest.raises(ValidationError):
        repo.add_form_field(template["id"], field)


def test_excel_mapping_cells_are_validated(repo, queue):
    template = repo.save_excel_template({"name": "Booking"})

    mapping = repo.add_excel_mapping(template["id"], {"customerField": "name", "cell": "b12"})

    assert mapping["cell"] == "B12"
    with pytest.raises(ValidationError):
        repo.add_excel_mapping(template["id"], {"customerField": "name", "cell": "12B"})
    assert queue.entries()[-1].entity_type == ENTITY_EXCEL


def test_save_template_updates_existing_entry(repo):
    template = repo.save_form_template({"name": "VSA"})

    renamed = repo.save_form_template({"id": template["id"], "name": "VSA v2"})

    assert renamed["id"] == template["id"]
    assert renamed["createdAt"] == template["createdAt"]
    assert [item["name"] for item in repo.list_form_templates()] == ["VSA v2"]


def test_delete_template_and_replace_collection(repo, queue):
    template = repo.save_excel_template({"name": "Booking"})
    repo.delete_excel_template(template["id"])
    assert repo.list_excel_templates() == []
    assert queue.entries()[-1].operation == OPERATION_DELETE

    before = len(queue.entries())
    repo.replace_excel_templates({"t9": {"id": "t9", "name": "Remote"}})

    assert repo.excel_templates_map() == {"t9": {"id": "t9", "name": "Remote"}}
    assert len(queue.entries()) == before
