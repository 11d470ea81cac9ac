import json
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, NamedTuple

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from provisioning.units import Identity, UnitName, UnitSet
from provisioning.utils import STANDARD_JSON_FORMAT, _load_json

ChainId = int


class RegistryEntry(NamedTuple):
    """Represents a single deployed unit in a registry."""

    chain_id: ChainId
    name: UnitName
    address: ChecksumAddress
    template: str


def read_registry(filepath: Path) -> List[RegistryEntry]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, entries in data.items():
        for unit_name, artifacts in entries.items():
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=unit_name,
                address=artifacts["address"],
                template=artifacts["template"],
            )
            registry_entries.append(registry_entry)
    return registry_entries


def _conflicts(existing_data: dict, data: dict) -> List[str]:
    conflicts = list()
    for chain_id, entries in data.items():
        existing_entries = existing_data.get(chain_id, {})
        for name, artifacts in entries.items():
            existing = existing_entries.get(name)
            if existing and existing["address"] != artifacts["address"]:
                conflicts.append(f"{name} on chain {chain_id}")
    return conflicts


def write_registry(entries: List[RegistryEntry], filepath: Path, silent: bool = False) -> Path:
    """Writes a registry of deployed units to a file, merging with an existing one."""

    if not entries:
        print("No entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries.sort(key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "template": entry.template,
        }

    # Create the parent directory if it does not exist
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists():
        if not silent:
            print(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        conflicts = _conflicts(existing_data, data)
        if conflicts:
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                print(
                    f"Cannot merge registries with conflicting addresses for "
                    f"{', '.join(conflicts)}.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            for chain_id, chain_entries in data.items():
                existing_data.setdefault(chain_id, {}).update(chain_entries)
            data = {
                chain_id: dict(sorted(existing_data[chain_id].items()))
                for chain_id in sorted(existing_data)
            }
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_JSON_FORMAT)

    return filepath


def registry_from_identities(
    identities: Dict[UnitName, Identity],
    units: UnitSet,
    chain_id: ChainId,
    output_filepath: Path,
) -> Path:
    """Publishes the identities of confirmed contract units to a registry."""
    entries = list()
    for name, identity in identities.items():
        unit = units.get(name)
        if unit is None or unit.is_call:
            continue
        entries.append(
            RegistryEntry(
                chain_id=chain_id,
                name=name,
                address=to_checksum_address(identity),
                template=unit.template,
            )
        )
    output_filepath = write_registry(entries=entries, filepath=output_filepath)
    print(f"(i) Registry written to {output_filepath}!")
    return output_filepath
