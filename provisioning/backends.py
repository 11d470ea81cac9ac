import time
import typing
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional

from ape.api import AccountAPI
from ape.contracts.base import ContractContainer, ContractInstance
from ape.exceptions import NetworkError, ProviderError, VirtualMachineError
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from requests.exceptions import RequestException
from web3.auto import w3
from web3.exceptions import TimeExhausted

from provisioning.constants import (
    DEFAULT_INITIALIZER,
    NONCE_CONTENTION_MARKERS,
    PROXY_CONTRACT_NAME,
    UUPS_PROXY_CONTRACT_NAME,
)
from provisioning.units import Identity
from provisioning.utils import get_contract_container


class BackendError(Exception):
    """Raised by a deployment backend when a unit could not be deployed."""

    transient = False


class TransientBackendError(BackendError):
    """The deployment may succeed if retried (timeouts, connectivity, nonce contention)."""

    transient = True


class PermanentBackendError(BackendError):
    """Retrying will not help (invalid arguments, rejected execution)."""


class DeploymentBackend(ABC):
    """
    Capability to deploy a named template, or to call a method of a deployed one.

    ``timeout`` is the caller's bound, in seconds, on a single invocation. Once it
    has elapsed a backend must not submit anything further for that invocation
    and raises a TransientBackendError instead.
    """

    @abstractmethod
    def deploy(
        self, template: str, init_args: List[Any], timeout: Optional[float] = None
    ) -> Identity:
        raise NotImplementedError

    @abstractmethod
    def transact(
        self,
        template: str,
        address: Identity,
        method: str,
        args: List[Any],
        timeout: Optional[float] = None,
    ) -> Identity:
        """Calls ``method`` on the contract at ``address``; returns the transaction hash."""
        raise NotImplementedError


class ProxyKind(Enum):
    TRANSPARENT = "transparent"
    UUPS = "uups"
    NONE = "none"


_TRANSIENT_ERRORS = (
    ProviderError,
    NetworkError,
    TimeExhausted,
    RequestException,
    ConnectionError,
    TimeoutError,
)


def _is_nonce_contention(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in NONCE_CONTENTION_MARKERS)


def classify_error(template: str, error: Exception) -> BackendError:
    """Wraps an error raised while deploying a template into a transient or permanent one."""
    if isinstance(error, BackendError):
        return error
    message = f"{template}: {type(error).__name__}: {error}"
    if _is_nonce_contention(error):
        return TransientBackendError(message)
    if isinstance(error, VirtualMachineError):
        # reverts and out-of-gas are deterministic for the same arguments
        return PermanentBackendError(message)
    if isinstance(error, _TRANSIENT_ERRORS):
        return TransientBackendError(message)
    return PermanentBackendError(message)


def _validate_method_args(
    method_abis: List[MethodABI], args: typing.Sequence[Any]
) -> typing.Dict[str, Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise ValueError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        named_args = {}
        for arg, abi_input in zip(args, abi.inputs):
            if not w3.is_encodable(abi_input.type, arg):
                break
            named_args[abi_input.name] = arg
        else:
            return named_args
    raise ValueError(
        f"Could not find ABI for '{method_abis[0].name}' with {len(args)} arg(s) and given type(s)"
    )


def _validate_constructor_args(
    contract_name: str, abi_inputs: List[Any], args: typing.Sequence[Any]
) -> None:
    """Validates positional constructor arguments against the constructor ABI."""
    if len(args) != len(abi_inputs):
        raise ValueError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(args)}."
        )
    for position, (abi_input, value) in enumerate(zip(abi_inputs, args)):
        if not w3.is_encodable(abi_input.type, value):
            raise ValueError(
                f"Constructor param '{abi_input.name}' at position {position} has a value "
                f"'{value}' whose type does not match expected ABI type '{abi_input.type}'"
            )


class ApeBackend(DeploymentBackend):
    """
    Deploys templates from the ape project with the given account.

    By default a template is deployed behind an upgradeable proxy: the
    implementation is deployed first, then a proxy pointing at it is deployed
    with the encoded initializer call, and the proxy address becomes the unit's
    identity. ``proxy_kinds`` selects the proxy per template:

    - ``ProxyKind.TRANSPARENT``: TransparentUpgradeableProxy(_logic, initialOwner, _data)
    - ``ProxyKind.UUPS``: ERC1967Proxy(_logic, _data); upgrades go through the implementation
    - ``ProxyKind.NONE``: the template itself, using the arguments as constructor arguments

    A timeout is checked before every transaction is submitted, so an
    invocation never starts a new submission after its deadline. Each receipt
    wait is bounded by ape's network ``transaction_acceptance_timeout``.
    """

    def __init__(
        self,
        account: AccountAPI,
        publish: bool = False,
        proxy_kinds: Optional[typing.Dict[str, ProxyKind]] = None,
        initializer: str = DEFAULT_INITIALIZER,
        get_container: Callable[[str], ContractContainer] = get_contract_container,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.account = account
        self.publish = publish
        self.proxy_kinds = dict(proxy_kinds or {})
        self.initializer = initializer
        self._get_container = get_container
        self._clock = clock

    def _get_kwargs(self) -> typing.Dict[str, Any]:
        """Returns the deployment kwargs."""
        return {"publish": self.publish}

    def proxy_kind(self, template: str) -> ProxyKind:
        return self.proxy_kinds.get(template, ProxyKind.TRANSPARENT)

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        return None if timeout is None else self._clock() + timeout

    def _check_deadline(self, template: str, deadline: Optional[float], step: str) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise TransientBackendError(f"{template}: timed out before {step}")

    def deploy(
        self, template: str, init_args: List[Any], timeout: Optional[float] = None
    ) -> Identity:
        deadline = self._deadline(timeout)
        try:
            container = self._get_container(template)
            proxy_kind = self.proxy_kind(template)
            if proxy_kind is ProxyKind.NONE:
                instance = self._deploy_direct(template, container, init_args, deadline)
            else:
                instance = self._deploy_proxied(
                    template, container, init_args, proxy_kind, deadline
                )
        except BackendError:
            raise
        except Exception as error:
            raise classify_error(template, error) from error

        return to_checksum_address(instance.address)

    def transact(
        self,
        template: str,
        address: Identity,
        method: str,
        args: List[Any],
        timeout: Optional[float] = None,
    ) -> Identity:
        deadline = self._deadline(timeout)
        label = f"{template}.{method}"
        try:
            contract = self._get_container(template).at(address)
            method_handler = getattr(contract, method)
            named_args = _validate_method_args(method_abis=method_handler.abis, args=args)
            base_message = f"\nTransacting {template}[{address[:10]}].{method}"
            if named_args:
                pretty_args = "\n\t".join(f"{k}={v}" for k, v in named_args.items())
                print(f"{base_message} with arguments:\n\t{pretty_args}")
            else:
                print(f"{base_message} with no arguments")
            self._check_deadline(label, deadline, "submitting the call")
            receipt = method_handler(*args, sender=self.account)
        except BackendError:
            raise
        except Exception as error:
            raise classify_error(label, error) from error

        return receipt.txn_hash

    def _deploy_direct(
        self,
        template: str,
        container: ContractContainer,
        init_args: List[Any],
        deadline: Optional[float],
    ) -> ContractInstance:
        _validate_constructor_args(template, container.constructor.abi.inputs, init_args)
        self._check_deadline(template, deadline, "deployment")
        print(f"\nDeploying {template} with constructor arguments {init_args}.")
        return self.account.deploy(container, *init_args, **self._get_kwargs())

    def _initializer_abis(self, container: ContractContainer) -> List[MethodABI]:
        return [abi for abi in container.contract_type.methods if abi.name == self.initializer]

    def _deploy_proxied(
        self,
        template: str,
        container: ContractContainer,
        init_args: List[Any],
        proxy_kind: ProxyKind,
        deadline: Optional[float],
    ) -> ContractInstance:
        initializer_abis = self._initializer_abis(container)
        if initializer_abis:
            _validate_method_args(method_abis=initializer_abis, args=init_args)
        elif init_args:
            raise PermanentBackendError(
                f"{template} has no '{self.initializer}' method to receive {init_args}."
            )

        self._check_deadline(template, deadline, "deploying the implementation")
        print(f"\nDeploying {template} implementation.")
        implementation = self.account.deploy(container, **self._get_kwargs())

        data = b""
        if initializer_abis:
            method_handler = getattr(implementation, self.initializer)
            data = method_handler.encode_input(*init_args)

        if proxy_kind is ProxyKind.UUPS:
            proxy_name = UUPS_PROXY_CONTRACT_NAME
            proxy_args = (implementation.address, data)
        else:
            proxy_name = PROXY_CONTRACT_NAME
            proxy_args = (implementation.address, self.account.address, data)

        proxy_container = self._get_container(proxy_name)
        self._check_deadline(template, deadline, f"deploying {proxy_name}")
        print(f"Deploying {proxy_name} to proxy {template} at {implementation.address}.")
        return self.account.deploy(proxy_container, *proxy_args, **self._get_kwargs())
