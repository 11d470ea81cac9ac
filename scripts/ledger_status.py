#!/usr/bin/python3
from pathlib import Path

import click

from provisioning.ledger import Ledger


@click.command()
@click.option(
    "--ledger-filepath",
    "-l",
    help="Filepath to ledger file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)
def cli(ledger_filepath):
    """Show the deployment status of every unit in a ledger."""
    ledger = Ledger(ledger_filepath)
    entries = ledger.entries()
    if not entries:
        print(f"(i) Ledger at {ledger_filepath} is empty.")
        return

    for entry in entries:
        line = f"{entry.name}: {entry.status.value} (attempts: {entry.attempt})"
        if entry.identity:
            line += f" at {entry.identity}"
        if entry.reason:
            line += f"\n\treason: {entry.reason}"
        print(line)
