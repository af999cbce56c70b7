"""Audit snapshot and hash helpers (change_kernel/utils/hashing.py)."""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from change_kernel.domain.change_request import ChangeRequestStatus
from change_kernel.utils.hashing import (
    GENESIS,
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    snapshot,
)


class TestSnapshot:
    def test_none(self):
        assert snapshot(None) is None

    def test_enum_uses_value(self):
        assert snapshot(ChangeRequestStatus.PENDING_REVIEW) == "pending_review"

    def test_decimal_is_scale_independent(self):
        assert snapshot(Decimal("115000.00")) == "115000"
        assert snapshot(Decimal("115000")) == "115000"

    def test_decimal_keeps_cents(self):
        assert snapshot(Decimal("2500.50")) == "2500.5"

    def test_bool(self):
        assert snapshot(True) == "true"
        assert snapshot(False) == "false"

    def test_dates_and_uuids(self):
        uid = UUID("12345678-1234-5678-1234-567812345678")
        assert snapshot(date(2024, 6, 15)) == "2024-06-15"
        assert snapshot(datetime(2024, 1, 1, 12, tzinfo=timezone.utc)) == "2024-01-01T12:00:00+00:00"
        assert snapshot(uid) == str(uid)

    def test_list_is_canonical_json(self):
        uid = UUID("12345678-1234-5678-1234-567812345678")
        assert snapshot([uid]) == f'["{uid}"]'

    def test_int(self):
        assert snapshot(14) == "14"


class TestHashes:
    def test_canonical_json_sorted_and_compact(self):
        assert canonicalize_json({"b": 1, "a": Decimal("2.50")}) == '{"a":"2.5","b":1}'

    def test_payload_hash_is_key_order_independent(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_genesis_link(self):
        assert hash_audit_entry("r", "created", "p", None) == hash_audit_entry("r", "created", "p", GENESIS)

    def test_chain_depends_on_previous(self):
        first = hash_audit_entry("r", "created", "p", None)
        assert hash_audit_entry("r", "updated", "q", first) != hash_audit_entry("r", "updated", "q", None)
