import sys
from typing import Any, List

from ape.utils import ZERO_ADDRESS

from provisioning.units import UnitDescriptor


def _abort() -> None:
    print("Aborting deployment!")
    sys.exit(-1)


def _confirm_deployment(unit_name: str) -> None:
    """Asks the user to confirm the deployment of a single unit."""
    answer = input(f"Deploy {unit_name} Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _confirm_zero_address() -> None:
    answer = input("Zero Address detected for deployment parameter; Continue? Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _confirm_resolution(unit: UnitDescriptor, init_args: List[Any]) -> None:
    """Asks the user to confirm the resolved arguments for a single unit."""
    description = f"{unit.template}.{unit.method}" if unit.is_call else unit.template
    if len(init_args) == 0:
        print(f"\n(i) No arguments for {unit.name} ({description})")
        _confirm_deployment(unit.name)
        return

    print(f"\nArguments for {unit.name} ({description})")
    contains_zero_address = False
    for name, resolved_value in unit.named_args(init_args).items():
        print(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = resolved_value == ZERO_ADDRESS
    _confirm_deployment(unit.name)
    if contains_zero_address:
        _confirm_zero_address()
