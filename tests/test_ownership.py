import pytest

from finance_tracker.errors import DuplicateTransactionError, EntityNotFound, PermissionDenied, error_payload
from finance_tracker.ownership import can_mutate, coerce_id, require_owner


def test_can_mutate_only_for_owner():
    entity = {"id": 7, "user_id": 1}

    assert can_mutate(entity, 1) is True
    assert can_mutate(entity, 2) is False
    assert can_mutate(None, 1) is False


def test_require_owner_distinguishes_missing_and_foreign():
    entity = {"id": 7, "user_id": 1}

    assert require_owner(entity, 1) is entity
    with pytest.raises(EntityNotFound) as missing:
        require_owner(None, 1, not_found="Transaction not found")
    assert missing.value.code == 404
    assert missing.value.description == "Transaction not found"

    with pytest.raises(PermissionDenied) as foreign:
        require_owner(entity, 2)
    assert foreign.value.code == 403


def test_coerce_id():
    assert coerce_id("12") == 12
    assert coerce_id(" 3 ") == 3
    assert coerce_id(4) == 4
    assert coerce_id("") is None
    assert coerce_id("abc") is None
    assert coerce_id(True) is None
    assert coerce_id(None) is None


def test_error_payload_includes_duplicate_id():
    assert error_payload(DuplicateTransactionError(duplicate_id=5))["duplicate_id"] == 5
    assert error_payload(EntityNotFound()) == {"error": "Not found"}
