from ape import networks
from ape.api.networks import LOCAL_NETWORK_NAME

from provisioning.utils import DeploymentConfigError


def is_local_network() -> bool:
    network_name = networks.provider.network.name
    return network_name == LOCAL_NETWORK_NAME or network_name.endswith("-fork")


def check_chain_id(config_chain_id: int) -> None:
    """Refuses to run a plan written for another chain against a live network."""
    connected_chain_id = networks.provider.network.chain_id
    if int(config_chain_id) != connected_chain_id and not is_local_network():
        raise DeploymentConfigError(
            f"chain_id in plan file ({config_chain_id}) does not match "
            f"chain_id of current network ({connected_chain_id})."
        )
