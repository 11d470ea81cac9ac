from pathlib import Path

import click

from provisioning.types import MinInt, PositiveSeconds

plan_option = click.option(
    "--plan",
    "-p",
    "plan_filepath",
    help="Filepath of the deployment plan YAML",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

ledger_option = click.option(
    "--ledger-filepath",
    "-l",
    help="Ledger filepath; defaults to the one next to the plan's registry",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)

max_retries_option = click.option(
    "--max-retries",
    "-r",
    help="Attempts per unit before a transient failure is recorded as failed",
    type=MinInt(1),
    required=False,
)

backend_timeout_option = click.option(
    "--backend-timeout",
    "-t",
    help="Seconds to wait for a single deployment before treating it as a transient failure",
    type=PositiveSeconds(),
    required=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign transactions and skip confirmations automatically.",
    is_flag=True,
)

verify_option = click.option(
    "--verify",
    help="Publish deployed contracts to the network's block explorer.",
    is_flag=True,
)

unit_option = click.option(
    "--unit",
    "-u",
    "unit_names",
    help="Name of a unit in the ledger",
    type=click.STRING,
    required=True,
    multiple=True,
)
