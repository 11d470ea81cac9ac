#!/usr/bin/python3
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from ape.api import AccountAPI
from ape.cli import ConnectedProviderCommand, account_option, network_option

from provisioning.backends import ApeBackend
from provisioning.ledger import Ledger
from provisioning.networks import check_chain_id
from provisioning.options import (
    autosign_option,
    backend_timeout_option,
    ledger_option,
    max_retries_option,
    plan_option,
    verify_option,
)
from provisioning.orchestrator import DeploymentReport
from provisioning.params import DeploymentPlan
from provisioning.runner import cancel_on_interrupt, run_plan


def deploy(
    account: AccountAPI,
    plan_filepath: Path,
    ledger_filepath: Optional[Path] = None,
    max_retries: Optional[int] = None,
    backend_timeout: Optional[float] = None,
    verify: bool = False,
    autosign: bool = False,
) -> DeploymentReport:
    plan = DeploymentPlan.from_yaml(plan_filepath, deployer_address=account.address)
    check_chain_id(plan.chain_id)

    settings = plan.settings
    if max_retries is not None:
        settings = settings._replace(max_retries=max_retries)
    if backend_timeout is not None:
        settings = settings._replace(backend_timeout=backend_timeout)

    if autosign:
        print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        if hasattr(account, "set_autosign"):
            account.set_autosign(True)

    print(f"Account: {account.address}", f"Verify: {verify}", sep="\n")
    backend = ApeBackend(account=account, publish=verify, proxy_kinds=plan.proxy_kinds)
    ledger = Ledger(ledger_filepath or plan.ledger_filepath)

    with cancel_on_interrupt(threading.Event()) as cancel_event:
        return run_plan(
            plan=plan,
            backend=backend,
            ledger=ledger,
            settings=settings,
            cancel_event=cancel_event,
            autosign=autosign,
        )


@click.command(cls=ConnectedProviderCommand, name="deploy-plan")
@account_option()
@network_option(required=True)
@plan_option
@ledger_option
@max_retries_option
@backend_timeout_option
@verify_option
@autosign_option
def cli(
    account,
    network,
    plan_filepath,
    ledger_filepath,
    max_retries,
    backend_timeout,
    verify,
    autosign,
):
    """
    Deploy the units of a plan in dependency order, skipping units already in the ledger.

    ape run deploy_plan --plan provisioning/plans/nft-staking.yml --network ethereum:local:test
    """
    print(f"Network: {network}")
    report = deploy(
        account=account,
        plan_filepath=plan_filepath,
        ledger_filepath=ledger_filepath,
        max_retries=max_retries,
        backend_timeout=backend_timeout,
        verify=verify,
        autosign=autosign,
    )
    sys.exit(report.exit_code)
