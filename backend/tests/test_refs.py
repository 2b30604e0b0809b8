from backend.app.costing.refs import (
    Embedded,
    RawId,
    identifier_forms,
    normalize_lot,
    normalize_ref,
    parse_ref,
    same_ref,
)

OID = "60f1a2b3c4d5e6f7a8b9c0d1"


def test_raw_and_embedded_references_share_a_key():
    raw = parse_ref(OID)
    emb = parse_ref({"_id": OID, "name": "X"})
    assert isinstance(raw, RawId)
    assert isinstance(emb, Embedded)
    assert raw.key == emb.key == OID
    assert same_ref(OID, {"_id": OID, "name": "X"})


def test_typed_and_nested_ids_unwrap():
    assert normalize_ref({"$oid": OID}) == OID
    assert normalize_ref({"_id": {"$oid": OID}, "name": "Kratom"}) == OID
    assert normalize_ref({"id": 42}) == "42"
    assert normalize_ref(f"  {OID} ") == OID


def test_malformed_references_are_absent():
    for bad in (None, "", "   ", True, False, {}, {"name": "no id"}, [OID], 1.5):
        assert normalize_ref(bad) is None, bad
    assert not same_ref(None, None)


def test_lot_numbers_are_trimmed_not_case_folded():
    assert normalize_lot(" L-001 ") == "L-001"
    assert normalize_lot("abc") == "abc"
    assert normalize_lot("abc") != normalize_lot("ABC")
    assert normalize_lot("") is None
    assert normalize_lot(None) is None
    assert normalize_lot({"lot": "x"}) is None
    assert normalize_lot(1001) == "1001"


def test_identifier_forms_add_typed_form_for_object_ids_only():
    forms = identifier_forms([OID, "SKU-1", {"_id": "SKU-1"}, None, ""])
    assert forms == [OID, {"$oid": OID}, "SKU-1"]
