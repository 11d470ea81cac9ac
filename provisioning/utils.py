import json
import os
from pathlib import Path
from typing import Any, Dict

import yaml
from ape import project
from ape.contracts import ContractContainer

from provisioning.constants import ARTIFACTS_DIR, LEDGER_SUFFIX

STANDARD_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class DeploymentConfigError(ValueError):
    pass


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def _dump_json_atomically(data: Any, filepath: Path) -> Path:
    """
    Writes JSON to a sibling temp file, syncs it to disk and swaps it in,
    so readers only ever see the old or the new contents.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    temp_filepath = filepath.with_suffix(".temp.json")
    try:
        with open(temp_filepath, "w") as file:
            json.dump(data, file, **STANDARD_JSON_FORMAT)
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_filepath, filepath)
    except Exception:
        # the original file is untouched
        temp_filepath.unlink(missing_ok=True)
        raise

    directory_fd = os.open(filepath.parent, os.O_RDONLY)
    try:
        os.fsync(directory_fd)
    finally:
        os.close(directory_fd)
    return filepath


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the registry artifact file."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise DeploymentConfigError("artifact filename is not set in plan file.")
    return artifact_dir / filename


def get_ledger_filepath(registry_filepath: Path) -> Path:
    """The ledger lives next to the registry it feeds."""
    return registry_filepath.with_name(registry_filepath.stem + LEDGER_SUFFIX)


def validate_config(config: Dict) -> Path:
    """
    Checks that the plan file has the sections needed for a deployment
    and returns the registry filepath.
    """
    print("Validating plan YAML...")
    if not isinstance(config, dict):
        raise DeploymentConfigError("Plan file must be a YAML mapping.")

    deployment = config.get("deployment")
    if not deployment:
        raise DeploymentConfigError("deployment is not set in plan file.")

    if not deployment.get("chain_id"):
        raise DeploymentConfigError("chain_id is not set in plan file.")

    contracts = config.get("contracts")
    if not contracts:
        raise DeploymentConfigError("Plan file missing 'contracts' field.")

    return get_artifact_filepath(config=config)


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ValueError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container
