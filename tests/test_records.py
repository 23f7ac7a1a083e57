import pytest

from crmsync.documents import CUSTOMERS, FORM_TEMPLATES
from crmsync.records import ValidationError, clean_excel_mapping, normalise_id, same_id, utc_now_iso


@pytest.mark.parametrize(
    "value, expected",
    [
        (5, "5"),
        ("5", "5"),
        ("5.0", "5"),
        (5.0, "5"),
        (" 17 ", "17"),
        ("abc-123", "abc-123"),
        ("2.5", "2.5"),
        (None, ""),
        (True, ""),
    ],
)
def test_normalise_id(value, expected):
    assert normalise_id(value) == expected


def test_same_id_crosses_types():
    assert same_id(5, "5.0")
    assert not same_id("5", "6")


def test_utc_now_iso_uses_z_suffix():
    value = utc_now_iso()

    assert value.endswith("Z")
    assert "T" in value


def test_list_document_upsert_and_remove():
    collection = [{"id": 1, "name": "A"}, {"id": "2", "name": "B"}]

    replaced = CUSTOMERS.upsert(collection, "1", {"id": 1, "name": "A2"})
    appended = CUSTOMERS.upsert(replaced, "3", {"id": "3", "name": "C"})

    assert [item["name"] for item in appended] == ["A2", "B", "C"]
    assert CUSTOMERS.remove(appended, 2) == [{"id": 1, "name": "A2"}, {"id": "3", "name": "C"}]
    assert collection[0]["name"] == "A"


def test_map_document_rekeys_to_normalised_id():
    collection = {"7.0": {"id": "7.0", "name": "Old"}}

    result = FORM_TEMPLATES.upsert(collection, 7, {"id": "7", "name": "New"})

    assert result == {"7": {"id": "7", "name": "New"}}
    assert FORM_TEMPLATES.remove(result, "7") == {}


@pytest.mark.parametrize("content", [b"", b"   ", b"\xef\xbb\xbf[]"])
def test_empty_remote_content_decodes_to_empty_collection(content):
    assert CUSTOMERS.decode(content) == []


def test_decode_rejects_wrong_shape():
    with pytest.raises(ValueError):
        CUSTOMERS.decode(b'{"id": 1}')
    with pytest.raises(ValueError):
        FORM_TEMPLATES.decode(b"[]")


def test_encode_keeps_non_ascii_names():
    encoded = CUSTOMERS.encode([{"id": "1", "name": "Zoë"}])

    assert "Zoë".encode("utf-8") in encoded


def test_excel_mapping_requires_customer_field():
    with pytest.raises(ValidationError):
        clean_excel_mapping({"cell": "A1"})
