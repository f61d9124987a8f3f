"""Unit tests for the hash-chained compliance ledger."""

from __future__ import annotations

import json
from dataclasses import replace

from ecoguard import (
    GENESIS_HASH,
    ChannelValues,
    ComplianceLedger,
    LedgerEntryKind,
    RiskTier,
    compute_integrity_hash,
)


def _snap(temperature: float = 20.0) -> ChannelValues:
    return ChannelValues(temperature=temperature, pressure=15.0, inhibitor_level=300.0)


def _filled_ledger(cap: int = 100) -> ComplianceLedger:
    ledger = ComplianceLedger(cap=cap)
    ledger.record_transition(None, RiskTier.NORMAL, _snap(), 1_000)
    ledger.record_transition(RiskTier.NORMAL, RiskTier.WARNING, _snap(27.0), 2_000)
    ledger.record_transition(RiskTier.WARNING, RiskTier.CRITICAL, _snap(36.0), 3_000)
    ledger.record_authorization("Emergency Cooling Activation", RiskTier.CRITICAL, _snap(36.5), 4_000)
    ledger.record_transition(RiskTier.CRITICAL, RiskTier.NORMAL, _snap(25.0), 5_000)
    return ledger


def test_first_entry_chains_from_genesis() -> None:
    ledger = _filled_ledger()
    entries = ledger.entries()

    assert entries[0].previous_hash == GENESIS_HASH
    assert entries[0].previous_tier is None
    for prev, cur in zip(entries, entries[1:]):
        assert cur.previous_hash == prev.integrity_hash
    assert len({e.id for e in entries}) == len(entries)


def test_authorization_entry_carries_active_tier() -> None:
    entry = _filled_ledger().entries()[3]

    assert entry.kind == LedgerEntryKind.AUTHORIZATION
    assert entry.previous_tier == RiskTier.CRITICAL
    assert entry.new_tier == RiskTier.CRITICAL
    assert entry.authorized_action == "Emergency Cooling Activation"
    assert entry.id.startswith("auth-")


def test_untouched_chain_verifies() -> None:
    ledger = _filled_ledger()
    result = ledger.verify()

    assert result.ok
    assert result.checked == 5
    assert result.first_bad_index is None
    assert ledger.recompute_hashes() == [e.integrity_hash for e in ledger.entries()]


def test_tampered_snapshot_is_detected_at_that_entry() -> None:
    ledger = _filled_ledger()
    entry = ledger._entries[2]
    ledger._entries[2] = replace(entry, sensor_snapshot={**entry.sensor_snapshot, "temperature": 24.0})

    result = ledger.verify()
    assert not result.ok
    assert result.first_bad_index == 2
    assert result.first_bad_id == entry.id
    assert "failed at entry 2" in result.message


def test_forged_identity_fields_fail_verification() -> None:
    ledger = _filled_ledger()
    ledger._entries[0] = replace(ledger._entries[0], id="forged", seq=42, timestamp_ms=999_999_999)

    result = ledger.verify()
    assert not result.ok
    assert result.first_bad_index == 0


def test_mutating_one_field_changes_every_later_recomputed_hash() -> None:
    ledger = _filled_ledger()
    original = ledger.recompute_hashes()

    ledger._entries[1] = replace(ledger._entries[1], new_tier=RiskTier.CRITICAL)
    tampered = ledger.recompute_hashes()

    assert tampered[0] == original[0]
    for idx in range(1, len(original)):
        assert tampered[idx] != original[idx]


def test_each_hashed_field_matters() -> None:
    entry = _filled_ledger().entries()[3]
    base = compute_integrity_hash(entry, entry.previous_hash)

    variants = [
        replace(entry, id="auth-999999"),
        replace(entry, seq=42),
        replace(entry, timestamp_ms=999_999_999),
        replace(entry, timestamp="2000-01-01T00:00:00.000Z"),
        replace(entry, kind=LedgerEntryKind.STATE_CHANGE),
        replace(entry, previous_tier=RiskTier.WARNING),
        replace(entry, new_tier=RiskTier.NORMAL),
        replace(entry, sensor_snapshot={**entry.sensor_snapshot, "pressure": 16.0}),
        replace(entry, authorized_action="Something else"),
    ]
    for variant in variants:
        assert compute_integrity_hash(variant, entry.previous_hash) != base
    assert compute_integrity_hash(entry, GENESIS_HASH) != base


def test_eviction_checkpoints_the_anchor_and_stays_verifiable() -> None:
    ledger = ComplianceLedger(cap=5)
    written = []
    tiers = [RiskTier.NORMAL, RiskTier.WARNING, RiskTier.CRITICAL]
    for i in range(12):
        written.append(ledger.record_transition(tiers[i % 3], tiers[(i + 1) % 3], _snap(20.0 + i), 1_000 * (i + 1)))

    assert len(ledger) == 5
    assert ledger.evicted_count == 7
    assert ledger.anchor_hash == written[6].integrity_hash
    assert ledger.entries()[0].previous_hash == ledger.anchor_hash
    assert ledger.entries()[0].seq == 8
    assert ledger.verify().ok


def test_snapshot_is_newest_first() -> None:
    ledger = _filled_ledger()

    assert [e.seq for e in ledger.snapshot()] == [5, 4, 3, 2, 1]
    assert [e.seq for e in ledger.tail(2)] == [4, 5]


def test_export_and_import_preserve_the_chain() -> None:
    ledger = ComplianceLedger(cap=3)
    for i in range(5):
        ledger.record_transition(RiskTier.NORMAL, RiskTier.WARNING, _snap(20.0 + i), 1_000 * i)
    raw = ledger.to_json()

    restored = ComplianceLedger(cap=3)
    restored.load_from_json(raw)

    assert restored.entries() == ledger.entries()
    assert restored.anchor_hash == ledger.anchor_hash
    assert restored.evicted_count == 2
    assert restored.verify().ok

    nxt = restored.record_transition(RiskTier.WARNING, RiskTier.NORMAL, _snap(), 9_000)
    assert nxt.seq == 6
    assert restored.verify().ok


def test_tampered_export_fails_verification_after_import() -> None:
    ledger = _filled_ledger()
    data = json.loads(ledger.to_json())
    data["entries"][1]["sensor_snapshot"]["pressure"] = 59.0

    restored = ComplianceLedger()
    restored.load_from_json(json.dumps(data))
    result = restored.verify()

    assert not result.ok
    assert result.first_bad_index == 1


def test_to_frame_lists_newest_first() -> None:
    frame = _filled_ledger().to_frame()

    assert len(frame) == 5
    assert frame["previous_tier"].tolist()[-1] == "INIT"
    assert frame["kind"].tolist()[1] == "authorization"
