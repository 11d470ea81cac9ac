#!/usr/bin/python3
from pathlib import Path

import click

from provisioning.confirm import _continue
from provisioning.ledger import Ledger, LedgerStatus
from provisioning.options import autosign_option, unit_option


@click.command()
@click.option(
    "--ledger-filepath",
    "-l",
    help="Filepath to ledger file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
@unit_option
@autosign_option
def cli(ledger_filepath, unit_names, autosign):
    """Forget units in a ledger so that the next run deploys them again."""
    ledger = Ledger(ledger_filepath)
    for unit_name in unit_names:
        entry = ledger.get(unit_name)
        if entry is None:
            print(f"(i) {unit_name} is not in the ledger.")
            continue

        if entry.is_confirmed:
            print(f"WARNING: {unit_name} is deployed at {entry.identity}; it will be redeployed.")
        elif entry.status is LedgerStatus.PENDING:
            print(f"WARNING: {unit_name} has an attempt in progress by run {entry.owner}.")
        if not autosign:
            _continue()

        ledger.reset(unit_name)
        print(f"(i) {unit_name} removed from {ledger_filepath}.")
