import signal
import threading

import pytest

from provisioning.backends import PermanentBackendError
from provisioning.ledger import Ledger
from provisioning.orchestrator import OrchestrationSettings
from provisioning.params import DeploymentPlan
from provisioning.registry import read_registry
from provisioning.runner import cancel_on_interrupt, print_report, run_plan


@pytest.fixture()
def plan(tmp_path):
    config = {
        "deployment": {"name": "nft-staking", "chain_id": 1337},
        "artifacts": {"dir": str(tmp_path / "artifacts"), "filename": "nft-staking.json"},
        "orchestration": {"max_retries": 2, "backend_timeout": None},
        "constants": {"NAME": "Test"},
        "contracts": [
            {"Collectible": {"template": "NFT", "initializer": {"_name": "$NAME"}}},
            {"FungibleToken": {"template": "SampleToken"}},
            {
                "Staking": {
                    "template": "NFTStake",
                    "initializer": {"_token": "$FungibleToken", "_nft": "$Collectible"},
                }
            },
        ],
    }
    return DeploymentPlan.from_config(config)


def test_run_plan_publishes_registry(plan, backend):
    report = run_plan(plan=plan, backend=backend)

    assert report.success
    assert backend.templates == ["NFT", "SampleToken", "NFTStake"]
    assert backend.calls[0] == ("NFT", ["Test"])

    ledger = Ledger(plan.ledger_filepath)
    assert plan.ledger_filepath.parent == plan.registry_filepath.parent
    assert ledger.identities() == report.identities

    entries = {entry.name: entry for entry in read_registry(plan.registry_filepath)}
    assert set(entries) == {"Collectible", "FungibleToken", "Staking"}
    assert entries["Staking"].template == "NFTStake"
    assert entries["Staking"].chain_id == 1337
    assert entries["Staking"].address == report.identities["Staking"]


def test_rerun_plan_changes_nothing(plan, backend):
    run_plan(plan=plan, backend=backend)
    with open(plan.registry_filepath) as file:
        registry = file.read()

    report = run_plan(plan=plan, backend=backend)

    assert report.confirmed == []
    assert len(backend.calls) == 3
    with open(plan.registry_filepath) as file:
        assert file.read() == registry


def test_failed_plan_has_no_registry(plan, backend):
    backend.script("SampleToken", PermanentBackendError("rejected"))

    report = run_plan(plan=plan, backend=backend)

    assert report.failed_unit == "FungibleToken"
    assert not plan.registry_filepath.exists()


def test_settings_override(plan, backend, tmp_path):
    ledger = Ledger(tmp_path / "elsewhere.ledger.json")
    report = run_plan(
        plan=plan,
        backend=backend,
        ledger=ledger,
        settings=OrchestrationSettings(max_retries=1, backend_timeout=None),
        publish_registry=False,
    )
    assert report.success
    assert ledger.filepath != plan.ledger_filepath
    assert not plan.registry_filepath.exists()


def test_interactive_run_confirms_each_unit(plan, backend, monkeypatch):
    answers = iter(["y", "y", "y", "y"])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))

    report = run_plan(plan=plan, backend=backend, autosign=False)
    assert report.success


def test_confirmation_shows_parameter_names(plan, backend, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "y")

    report = run_plan(plan=plan, backend=backend, autosign=False)

    output = capsys.readouterr().out
    assert "Arguments for Collectible (NFT)\n\t_name=Test" in output
    assert "(i) No arguments for FungibleToken (SampleToken)" in output
    token, collectible = report.identities["FungibleToken"], report.identities["Collectible"]
    assert f"\t_token={token}\n\t_nft={collectible}" in output


def test_interactive_run_can_be_aborted(plan, backend, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    with pytest.raises(SystemExit):
        run_plan(plan=plan, backend=backend, autosign=False)
    assert backend.calls == []


def test_print_report(plan, backend, capsys):
    backend.script("SampleToken", PermanentBackendError("rejected"))
    report = run_plan(plan=plan, backend=backend)
    capsys.readouterr()

    print_report(report)
    output = capsys.readouterr().out
    assert "Deployed this run: Collectible" in output
    assert "failed at FungibleToken" in output


def test_cancel_on_interrupt():
    cancel_event = threading.Event()
    previous_handler = signal.getsignal(signal.SIGINT)

    with cancel_on_interrupt(cancel_event):
        handler = signal.getsignal(signal.SIGINT)
        handler(signal.SIGINT, None)
        assert cancel_event.is_set()

    assert signal.getsignal(signal.SIGINT) == previous_handler
