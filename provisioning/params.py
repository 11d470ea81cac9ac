import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional

from ape.utils import ZERO_ADDRESS

from provisioning.backends import ProxyKind
from provisioning.constants import DEPLOYER_INDICATOR, VARIABLE_PREFIX
from provisioning.orchestrator import OrchestrationSettings
from provisioning.units import Identity, UnitDescriptor, UnitName, UnitSet
from provisioning.utils import (
    DeploymentConfigError,
    _load_yaml,
    get_ledger_filepath,
    validate_config,
)

UNIT_TEMPLATE_KEY = "template"
UNIT_DEPENDS_ON_KEY = "depends_on"
UNIT_INITIALIZER_KEY = "initializer"
UNIT_PROXY_KEY = "proxy"
UNIT_KEYS = {UNIT_TEMPLATE_KEY, UNIT_DEPENDS_ON_KEY, UNIT_INITIALIZER_KEY, UNIT_PROXY_KEY}

CALLS_KEY = "calls"
CALL_TARGET_KEY = "target"
CALL_METHOD_KEY = "method"
CALL_ARGS_KEY = "args"
CALL_KEYS = {CALL_TARGET_KEY, CALL_METHOD_KEY, CALL_ARGS_KEY, UNIT_DEPENDS_ON_KEY}

ORCHESTRATION_KEY = "orchestration"


class VariableContext:
    def __init__(
        self,
        unit_names: List[UnitName],
        unit_name: UnitName,
        constants: typing.Dict[str, Any] = None,
        deployer_address: Optional[str] = None,
    ):
        self.unit_names = unit_names or list()
        self.unit_name = unit_name
        self.constants = constants or dict()
        self.deployer_address = deployer_address


# Variables


class Variable(ABC):
    @abstractmethod
    def resolve(self, identities: Dict[UnitName, Identity]) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(VARIABLE_PREFIX)


class DeployerAccount(Variable):
    def __init__(self, context: VariableContext):
        self.address = context.deployer_address

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == DEPLOYER_INDICATOR

    def resolve(self, identities: Dict[UnitName, Identity]) -> Any:
        if self.address is None:
            return ZERO_ADDRESS
        return self.address


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise DeploymentConfigError(
                f"Constant '{constant_name}' used by {context.unit_name} not found in plan file."
            )

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a plan constant."""
        return value.isupper()

    def resolve(self, identities: Dict[UnitName, Identity]) -> Any:
        return self.constant_value


class UnitIdentity(Variable):
    def __init__(self, unit_name: UnitName):
        self.unit_name = unit_name

    def resolve(self, identities: Dict[UnitName, Identity]) -> Any:
        """Resolves to the address the dependency was deployed at."""
        return identities[self.unit_name]


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount(context)
    elif variable in context.unit_names:
        return UnitIdentity(variable)
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        # undeclared units are reported by UnitSet.validate
        return UnitIdentity(variable)


def _process_raw_value(value: Any, context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, context)

    return value


def _resolve_param(value: Any, identities: Dict[UnitName, Identity]) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, identities) for v in value]

    if isinstance(value, Variable):
        return value.resolve(identities)

    return value  # literally a value


def _referenced_units(value: Any) -> List[UnitName]:
    if isinstance(value, list):
        return [name for v in value for name in _referenced_units(v)]
    if isinstance(value, UnitIdentity):
        return [value.unit_name]
    return []


class UnitArgs:
    """Builds a unit's ordered arguments from its dependencies' identities."""

    def __init__(self, unit_name: UnitName, parameters: OrderedDict):
        self.unit_name = unit_name
        self.parameters = parameters

    def __call__(self, identities: Dict[UnitName, Identity]) -> List[Any]:
        return [_resolve_param(value, identities) for value in self.parameters.values()]

    @property
    def names(self) -> typing.Tuple[str, ...]:
        return tuple(self.parameters)

    @property
    def dependencies(self) -> List[UnitName]:
        """Units referenced by the parameters, in order of first appearance."""
        dependencies = list()
        for value in self.parameters.values():
            for name in _referenced_units(value):
                if name not in dependencies:
                    dependencies.append(name)
        return dependencies


def _get_unit_names(entries: List[Any], section: str) -> List[UnitName]:
    unit_names = list()
    for unit_info in entries:
        if isinstance(unit_info, str):
            unit_names.append(unit_info)
        elif isinstance(unit_info, dict) and len(unit_info) == 1:
            unit_names.extend(list(unit_info.keys()))
        else:
            raise DeploymentConfigError(f"Malformed {section} section in plan YAML.")

    return unit_names


def _get_unit_data(unit_info: Dict, allowed_keys: typing.Set[str]) -> typing.Tuple[str, Dict]:
    unit_name = list(unit_info.keys())[0]  # only one entry
    unit_data = unit_info[unit_name] or dict()
    if not isinstance(unit_data, dict):
        raise DeploymentConfigError(f"Malformed plan entry for {unit_name}.")
    unknown_keys = set(unit_data) - allowed_keys
    if unknown_keys:
        raise DeploymentConfigError(
            f"Unexpected key(s) {sorted(unknown_keys)} for {unit_name}; "
            f"expected any of {sorted(allowed_keys)}."
        )
    return unit_name, unit_data


def _parse_args(
    unit_name: UnitName, unit_data: Dict, key: str, context: VariableContext
) -> UnitArgs:
    raw_parameters = unit_data.get(key) or OrderedDict()
    if not isinstance(raw_parameters, dict):
        raise DeploymentConfigError(f"'{key}' of {unit_name} must be a mapping.")
    parameters = OrderedDict(
        (name, _process_raw_value(value, context)) for name, value in raw_parameters.items()
    )
    return UnitArgs(unit_name, parameters)


def _get_depends_on(unit_data: Dict, *implied: List[UnitName]) -> typing.Tuple[UnitName, ...]:
    """Explicit dependencies first, then implied ones in order of first appearance."""
    depends_on = unit_data.get(UNIT_DEPENDS_ON_KEY) or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    depends_on = list(depends_on)
    for names in implied:
        for dependency in names:
            if dependency not in depends_on:
                depends_on.append(dependency)
    return tuple(depends_on)


def _parse_proxy_kind(unit_name: UnitName, value: Any) -> ProxyKind:
    if value is None or value is True:
        return ProxyKind.TRANSPARENT
    if value is False:
        return ProxyKind.NONE
    try:
        return ProxyKind(str(value).lower())
    except ValueError:
        raise DeploymentConfigError(
            f"Unknown proxy kind '{value}' for {unit_name}; "
            f"expected one of {[kind.value for kind in ProxyKind]} or false."
        )


def _parse_unit(
    unit_info: Any,
    unit_names: List[UnitName],
    constants: Dict[str, Any],
    deployer_address: Optional[str],
) -> typing.Tuple[UnitDescriptor, ProxyKind]:
    """Returns the unit descriptor and the kind of proxy it is deployed behind."""
    if isinstance(unit_info, str):
        return UnitDescriptor(name=unit_info, template=unit_info), ProxyKind.TRANSPARENT

    unit_name, unit_data = _get_unit_data(unit_info, UNIT_KEYS)
    context = VariableContext(
        unit_names=unit_names,
        unit_name=unit_name,
        constants=constants,
        deployer_address=deployer_address,
    )
    args_builder = _parse_args(unit_name, unit_data, UNIT_INITIALIZER_KEY, context)

    unit = UnitDescriptor(
        name=unit_name,
        template=unit_data.get(UNIT_TEMPLATE_KEY, unit_name),
        depends_on=_get_depends_on(unit_data, args_builder.dependencies),
        args_builder=args_builder,
        arg_names=args_builder.names,
    )
    return unit, _parse_proxy_kind(unit_name, unit_data.get(UNIT_PROXY_KEY))


def _parse_call(
    call_info: Any,
    contracts: Dict[UnitName, UnitDescriptor],
    constants: Dict[str, Any],
    deployer_address: Optional[str],
    after: List[UnitName],
) -> UnitDescriptor:
    """Parses a post-deployment call, which runs after every unit named in ``after``."""
    if not isinstance(call_info, dict):
        raise DeploymentConfigError(f"Call '{call_info}' must declare a target and a method.")

    call_name, call_data = _get_unit_data(call_info, CALL_KEYS)
    target, method = call_data.get(CALL_TARGET_KEY), call_data.get(CALL_METHOD_KEY)
    if not method:
        raise DeploymentConfigError(f"Call {call_name} does not name a method.")
    if target not in contracts:
        raise DeploymentConfigError(
            f"Call {call_name} targets '{target}', which is not a contract in the plan."
        )

    context = VariableContext(
        unit_names=list(contracts),
        unit_name=call_name,
        constants=constants,
        deployer_address=deployer_address,
    )
    args_builder = _parse_args(call_name, call_data, CALL_ARGS_KEY, context)
    return UnitDescriptor(
        name=call_name,
        template=contracts[target].template,
        depends_on=_get_depends_on(call_data, [target], args_builder.dependencies, after),
        args_builder=args_builder,
        arg_names=args_builder.names,
        target=target,
        method=method,
    )


def _check_number(name: str, value: Any, integral: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DeploymentConfigError(f"{name} must be a number, got {value!r}.")
    if integral and not float(value).is_integer():
        raise DeploymentConfigError(f"{name} must be a whole number, got {value!r}.")


def settings_from_config(config: typing.Dict) -> OrchestrationSettings:
    orchestration = config.get(ORCHESTRATION_KEY) or dict()
    unknown_keys = set(orchestration) - set(OrchestrationSettings._fields)
    if unknown_keys:
        raise DeploymentConfigError(
            f"Unexpected orchestration setting(s) {sorted(unknown_keys)}; "
            f"expected any of {list(OrchestrationSettings._fields)}."
        )

    settings = OrchestrationSettings()._replace(**orchestration)
    _check_number("max_retries", settings.max_retries, integral=True)
    if settings.backend_timeout is not None:
        _check_number("backend_timeout", settings.backend_timeout)
    _check_number("backoff_base", settings.backoff_base)
    _check_number("backoff_factor", settings.backoff_factor)

    settings = settings._replace(
        max_retries=int(settings.max_retries),
        backend_timeout=(
            None if settings.backend_timeout is None else float(settings.backend_timeout)
        ),
        backoff_base=float(settings.backoff_base),
        backoff_factor=float(settings.backoff_factor),
    )
    return settings.validate()


class DeploymentPlan:
    """A set of units to deploy together with the settings and artifacts of the deployment."""

    def __init__(
        self,
        name: str,
        chain_id: int,
        units: UnitSet,
        settings: OrchestrationSettings,
        registry_filepath: Path,
        constants: typing.Dict[str, Any] = None,
        proxy_kinds: typing.Dict[str, ProxyKind] = None,
        path: Optional[Path] = None,
    ):
        self.name = name
        self.chain_id = chain_id
        self.units = units
        self.settings = settings
        self.registry_filepath = registry_filepath
        self.constants = constants or dict()
        self.proxy_kinds = proxy_kinds or dict()
        self.path = path

    @property
    def ledger_filepath(self) -> Path:
        return get_ledger_filepath(self.registry_filepath)

    @property
    def calls(self) -> List[UnitDescriptor]:
        return [unit for unit in self.units if unit.is_call]

    @classmethod
    def from_config(
        cls,
        config: typing.Dict,
        deployer_address: Optional[str] = None,
        path: Optional[Path] = None,
    ) -> "DeploymentPlan":
        registry_filepath = validate_config(config)
        print("Processing plan units...")

        deployment = config["deployment"]
        constants = config.get("constants") or dict()
        unit_names = _get_unit_names(config["contracts"], section="contracts")

        units, proxy_kinds = list(), dict()
        for unit_info in config["contracts"]:
            unit, proxy_kind = _parse_unit(unit_info, unit_names, constants, deployer_address)
            if proxy_kinds.setdefault(unit.template, proxy_kind) is not proxy_kind:
                raise DeploymentConfigError(
                    f"Template {unit.template} is deployed with conflicting proxy kinds."
                )
            units.append(unit)
        contracts = OrderedDict((unit.name, unit) for unit in units)

        call_entries = config.get(CALLS_KEY) or list()
        if not isinstance(call_entries, list):
            raise DeploymentConfigError(f"'{CALLS_KEY}' must be a list of calls.")
        _get_unit_names(call_entries, section=CALLS_KEY)
        # calls run in the listed order, after every contract is deployed
        after = list(unit_names)
        for call_info in call_entries:
            call = _parse_call(call_info, contracts, constants, deployer_address, after)
            units.append(call)
            after = [call.name]

        unit_set = UnitSet(units)
        unit_set.validate()

        return cls(
            name=deployment.get("name") or (path.stem if path else "deployment"),
            chain_id=int(deployment["chain_id"]),
            units=unit_set,
            settings=settings_from_config(config),
            registry_filepath=registry_filepath,
            constants=constants,
            proxy_kinds=proxy_kinds,
            path=path,
        )

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "DeploymentPlan":
        config = _load_yaml(filepath)
        return cls.from_config(config, path=Path(filepath), *args, **kwargs)
