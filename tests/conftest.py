from collections import defaultdict

import pytest
from eth_utils import to_checksum_address

from provisioning.backends import DeploymentBackend
from provisioning.ledger import Ledger
from provisioning.orchestrator import OrchestrationSettings, Orchestrator
from provisioning.units import UnitDescriptor, UnitSet

# Common constants
OWNER = "test-run"
TOKEN = "Token"
COLLECTIBLE = "Collectible"
STAKING = "Staking"


class ScriptedBackend(DeploymentBackend):
    """
    Deploys to sequential fake addresses. Failures can be queued per template
    (or per "template.method" for calls); each call pops the next queued outcome,
    and an empty queue means success.
    """

    def __init__(self):
        self.calls = list()
        self.transactions = list()
        self.timeouts = list()
        self.outcomes = defaultdict(list)
        self._deployed = 0

    def script(self, template, *outcomes):
        self.outcomes[template].extend(outcomes)

    @property
    def templates(self):
        return [template for template, _ in self.calls]

    def _next_outcome(self, key):
        if self.outcomes[key]:
            outcome = self.outcomes[key].pop(0)
            if isinstance(outcome, Exception):
                raise outcome

    def deploy(self, template, init_args, timeout=None):
        self.calls.append((template, list(init_args)))
        self.timeouts.append(timeout)
        self._next_outcome(template)
        self._deployed += 1
        return to_checksum_address(f"0x{self._deployed:040x}")

    def transact(self, template, address, method, args, timeout=None):
        self.transactions.append((template, address, method, list(args)))
        self.timeouts.append(timeout)
        self._next_outcome(f"{template}.{method}")
        return f"0x{len(self.transactions):064x}"


def _dependency_addresses(identities):
    return list(identities.values())


@pytest.fixture()
def backend():
    return ScriptedBackend()


@pytest.fixture()
def ledger_filepath(tmp_path):
    return tmp_path / "artifacts" / "nft-staking.ledger.json"


@pytest.fixture()
def ledger(ledger_filepath):
    return Ledger(ledger_filepath, owner=OWNER)


@pytest.fixture()
def sleeps():
    return list()


@pytest.fixture()
def make_orchestrator(backend, ledger, sleeps):
    def _make(
        ledger=ledger,
        backend=backend,
        cancel_event=None,
        before_deploy=None,
        sleep=sleeps.append,
        **settings,
    ):
        settings.setdefault("backend_timeout", None)
        return Orchestrator(
            backend=backend,
            ledger=ledger,
            settings=OrchestrationSettings(**settings),
            cancel_event=cancel_event,
            before_deploy=before_deploy,
            sleep=sleep,
        )

    return _make


@pytest.fixture()
def staking_units():
    return UnitSet(
        [
            UnitDescriptor(name=TOKEN, template="fungible-token"),
            UnitDescriptor(name=COLLECTIBLE, template="collectible"),
            UnitDescriptor(
                name=STAKING,
                template="staking",
                depends_on=(TOKEN, COLLECTIBLE),
                args_builder=_dependency_addresses,
            ),
        ]
    )
