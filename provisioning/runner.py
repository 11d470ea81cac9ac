import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from provisioning.backends import DeploymentBackend
from provisioning.confirm import _confirm_resolution, _continue
from provisioning.ledger import Ledger
from provisioning.orchestrator import DeploymentReport, OrchestrationSettings, Orchestrator
from provisioning.params import DeploymentPlan
from provisioning.registry import registry_from_identities


@contextmanager
def cancel_on_interrupt(cancel_event: threading.Event) -> Iterator[threading.Event]:
    """Turns Ctrl-C into a request to stop once the in-flight unit settles."""

    def _handler(signum, frame):
        print("\n! Interrupt received; stopping after the current unit.")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous_handler)


def print_report(report: DeploymentReport) -> None:
    if report.confirmed:
        print(f"\n(i) Deployed this run: {', '.join(report.confirmed)}")
    else:
        print("\n(i) Nothing deployed this run.")
    for name, identity in sorted(report.identities.items()):
        print(f"\t{name}: {identity}")

    if report.cancelled:
        print("! Deployment cancelled; re-run to resume.")
    elif report.failed_unit:
        print(f"! Deployment failed at {report.failed_unit}: {report.reason}")
        print("  Re-run to resume from the first unit that is not yet deployed.")
    else:
        print("(i) Deployment complete.")


def run_plan(
    plan: DeploymentPlan,
    backend: DeploymentBackend,
    ledger: Optional[Ledger] = None,
    settings: Optional[OrchestrationSettings] = None,
    cancel_event: Optional[threading.Event] = None,
    autosign: bool = True,
    publish_registry: bool = True,
) -> DeploymentReport:
    """Runs a deployment plan to completion or to its first unrecoverable failure."""
    ledger = ledger or Ledger(plan.ledger_filepath)
    settings = settings or plan.settings
    print(
        f"Plan: {plan.name}",
        f"Chain ID: {plan.chain_id}",
        f"Units: {len(plan.units)}",
        f"Calls: {len(plan.calls)}",
        f"Ledger: {ledger.filepath}",
        f"Registry: {plan.registry_filepath}",
        f"Max retries: {settings.max_retries}",
        f"Backend timeout: {settings.backend_timeout}",
        sep="\n",
    )
    if not autosign:
        # Confirms the start of the deployment.
        _continue()

    orchestrator = Orchestrator(
        backend=backend,
        ledger=ledger,
        settings=settings,
        cancel_event=cancel_event,
        before_deploy=None if autosign else _confirm_resolution,
    )
    report = orchestrator.run(plan.units)
    print_report(report)

    if report.success and publish_registry:
        registry_from_identities(
            identities=report.identities,
            units=plan.units,
            chain_id=plan.chain_id,
            output_filepath=plan.registry_filepath,
        )
    return report
