import json

import pytest

from provisioning.ledger import (
    AlreadyConfirmed,
    AlreadyPending,
    Ledger,
    LedgerEntry,
    LedgerStatus,
)

ADDRESS = "0x0000000000000000000000000000000000000001"
OTHER_ADDRESS = "0x0000000000000000000000000000000000000002"


def test_missing_entry(ledger):
    assert ledger.get("Token") is None
    assert ledger.entries() == []
    assert ledger.identities() == {}


def test_begin_attempt_is_durable(ledger, ledger_filepath):
    entry = ledger.begin_attempt("Token")
    assert entry.status is LedgerStatus.PENDING
    assert entry.attempt == 1
    assert entry.identity is None
    assert entry.owner == ledger.owner

    # a fresh instance (e.g. after a crash) observes the pending attempt
    restarted = Ledger(ledger_filepath, owner="restarted")
    assert restarted.get("Token") == entry


def test_attempts_accumulate_for_the_same_owner(ledger):
    ledger.begin_attempt("Token")
    ledger.begin_attempt("Token")
    assert ledger.begin_attempt("Token").attempt == 3


def test_pending_entry_of_another_owner_is_guarded(ledger, ledger_filepath):
    ledger.begin_attempt("Token")
    other = Ledger(ledger_filepath, owner="other-run")

    with pytest.raises(AlreadyPending):
        other.begin_attempt("Token")
    with pytest.raises(AlreadyPending):
        other.confirm("Token", ADDRESS)
    with pytest.raises(AlreadyPending):
        other.fail("Token", "boom")

    assert ledger.get("Token").attempt == 1


def test_confirm(ledger):
    ledger.begin_attempt("Token")
    entry = ledger.confirm("Token", ADDRESS)

    assert entry.status is LedgerStatus.CONFIRMED
    assert entry.is_confirmed
    assert entry.identity == ADDRESS
    assert entry.attempt == 1
    assert ledger.identities() == {"Token": ADDRESS}


def test_confirm_is_write_once(ledger):
    ledger.begin_attempt("Token")
    ledger.confirm("Token", ADDRESS)

    # same identity is a no-op
    assert ledger.confirm("Token", ADDRESS).identity == ADDRESS

    with pytest.raises(AlreadyConfirmed):
        ledger.confirm("Token", OTHER_ADDRESS)
    with pytest.raises(AlreadyConfirmed):
        ledger.begin_attempt("Token")
    with pytest.raises(AlreadyConfirmed):
        ledger.fail("Token", "late failure")

    assert ledger.get("Token").identity == ADDRESS


def test_fail_keeps_attempt_count(ledger):
    ledger.begin_attempt("Token")
    ledger.begin_attempt("Token")
    entry = ledger.fail("Token", "execution reverted")

    assert entry.status is LedgerStatus.FAILED
    assert entry.attempt == 2
    assert entry.reason == "execution reverted"
    assert entry.identity is None


def test_failed_unit_can_be_attempted_again(ledger, ledger_filepath):
    ledger.begin_attempt("Token")
    ledger.fail("Token", "timeout")

    later_run = Ledger(ledger_filepath, owner="later-run")
    entry = later_run.begin_attempt("Token")
    assert entry.status is LedgerStatus.PENDING
    assert entry.attempt == 2
    assert entry.reason is None
    assert entry.owner == "later-run"


def test_reclaim_pending_entry(ledger, ledger_filepath):
    crashed = Ledger(ledger_filepath, owner="crashed-run")
    crashed.begin_attempt("Token")

    entry = ledger.reclaim("Token")
    assert entry.owner == ledger.owner
    assert entry.attempt == 1
    assert ledger.begin_attempt("Token").attempt == 2


def test_reclaim_leaves_terminal_entries_alone(ledger):
    assert ledger.reclaim("Token") is None

    ledger.begin_attempt("Token")
    ledger.confirm("Token", ADDRESS)
    assert ledger.reclaim("Token") == ledger.get("Token")


def test_reset(ledger):
    ledger.begin_attempt("Token")
    ledger.confirm("Token", ADDRESS)

    removed = ledger.reset("Token")
    assert removed.identity == ADDRESS
    assert ledger.get("Token") is None
    assert ledger.reset("Token") is None

    # a reset unit starts from scratch
    assert ledger.begin_attempt("Token").attempt == 1


def test_file_format(ledger, ledger_filepath):
    ledger.begin_attempt("Token")
    ledger.confirm("Token", ADDRESS)
    ledger.begin_attempt("Collectible")

    with open(ledger_filepath) as file:
        data = json.load(file)

    assert list(data) == ["Collectible", "Token"]
    assert data["Token"]["status"] == "confirmed"
    assert data["Token"]["identity"] == ADDRESS
    assert data["Collectible"]["status"] == "pending"
    assert data["Collectible"]["attempt"] == 1

    # no temp files are left behind by the atomic writes
    leftovers = [p.name for p in ledger_filepath.parent.iterdir() if "temp" in p.name]
    assert leftovers == []


def test_entry_round_trip():
    entry = LedgerEntry(
        name="Token",
        status=LedgerStatus.FAILED,
        attempt=3,
        reason="gave up",
        owner="abc",
        updated_at="2024-01-01T00:00:00+00:00",
    )
    assert LedgerEntry.from_dict("Token", entry.to_dict()) == entry


def test_owner_defaults_to_unique_token(ledger_filepath):
    assert Ledger(ledger_filepath).owner != Ledger(ledger_filepath).owner


def test_run_lock_is_exclusive(ledger, ledger_filepath):
    other = Ledger(ledger_filepath, owner="other-run")
    with ledger.run_lock() as sole_runner:
        assert sole_runner
        with other.run_lock() as other_is_sole_runner:
            assert not other_is_sole_runner

    with other.run_lock() as sole_runner:
        assert sole_runner


def test_failed_write_keeps_the_previous_state(ledger, ledger_filepath, monkeypatch):
    ledger.begin_attempt("Token")

    def interrupted_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("provisioning.utils.os.replace", interrupted_replace)
    with pytest.raises(OSError, match="disk full"):
        ledger.confirm("Token", ADDRESS)
    monkeypatch.undo()

    restarted = Ledger(ledger_filepath, owner="restarted")
    entry = restarted.get("Token")
    assert entry.status is LedgerStatus.PENDING
    assert entry.attempt == 1
    assert entry.identity is None

    leftovers = [p.name for p in ledger_filepath.parent.iterdir() if "temp" in p.name]
    assert leftovers == []


def test_failed_serialization_keeps_the_previous_state(ledger, ledger_filepath, monkeypatch):
    ledger.begin_attempt("Token")
    before = ledger_filepath.read_text()

    def truncated_dump(data, file, **kwargs):
        file.write('{"Token": ')
        raise ValueError("cannot serialize")

    monkeypatch.setattr("provisioning.utils.json.dump", truncated_dump)
    with pytest.raises(ValueError, match="cannot serialize"):
        ledger.confirm("Token", ADDRESS)
    monkeypatch.undo()

    assert ledger_filepath.read_text() == before
    assert Ledger(ledger_filepath).get("Token").status is LedgerStatus.PENDING
