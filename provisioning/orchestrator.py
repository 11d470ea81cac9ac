import functools
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from provisioning.backends import (
    BackendError,
    DeploymentBackend,
    TransientBackendError,
    classify_error,
)
from provisioning.constants import (
    DEFAULT_BACKEND_TIMEOUT,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_MAX_RETRIES,
)
from provisioning.ledger import Ledger, LedgerStatus
from provisioning.units import Identity, UnitDescriptor, UnitName, UnitSet
from provisioning.utils import DeploymentConfigError


class DependencyNotResolved(RuntimeError):
    """A unit was reached before one of its dependencies was confirmed."""


class OrchestrationSettings(NamedTuple):
    max_retries: int = DEFAULT_MAX_RETRIES
    backend_timeout: Optional[float] = DEFAULT_BACKEND_TIMEOUT
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR

    def validate(self) -> "OrchestrationSettings":
        if self.max_retries < 1:
            raise DeploymentConfigError(f"max_retries must be at least 1, got {self.max_retries}.")
        if self.backend_timeout is not None and self.backend_timeout <= 0:
            raise DeploymentConfigError(
                f"backend_timeout must be positive, got {self.backend_timeout}."
            )
        if self.backoff_base < 0:
            raise DeploymentConfigError(
                f"backoff_base must not be negative, got {self.backoff_base}."
            )
        if self.backoff_factor < 1:
            raise DeploymentConfigError(
                f"backoff_factor must be at least 1, got {self.backoff_factor}."
            )
        return self

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.backoff_base * (self.backoff_factor ** (attempt - 1))


class DeploymentReport(NamedTuple):
    confirmed: List[UnitName]
    identities: Dict[UnitName, Identity]
    failed_unit: Optional[UnitName] = None
    reason: Optional[str] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.failed_unit is None and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


BeforeDeployHook = Callable[[UnitDescriptor, List[Any]], None]


class _BackendCall:
    """
    A single backend invocation. With a timeout it runs on a daemon thread, so a
    call that outlives its timeout can be waited on again and never holds up
    interpreter exit.
    """

    def __init__(self, unit: UnitDescriptor, invoke: Callable[[], Identity], threaded: bool):
        self.unit = unit
        self.identity = None
        self.error = None
        self._done = threading.Event()
        if threaded:
            thread = threading.Thread(
                target=self._run, args=(invoke,), name=f"provision-{unit.name}", daemon=True
            )
            thread.start()
        else:
            self._run(invoke)

    def _run(self, invoke: Callable[[], Identity]) -> None:
        try:
            self.identity = invoke()
        except Exception as error:
            self.error = error
        finally:
            self._done.set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Returns True once the call has finished."""
        return self._done.wait(timeout)

    def result(self) -> Identity:
        if isinstance(self.error, BackendError):
            raise self.error
        if self.error is not None:
            raise classify_error(self.unit.template, self.error) from self.error
        return self.identity


class Orchestrator:
    """
    Deploys a set of units one at a time in dependency order,
    recording every attempt in the ledger so that runs can be resumed.

    At most one backend call is in flight at any time: a call that exceeds the
    backend timeout is waited on again by the following attempts instead of
    being submitted a second time.
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        ledger: Ledger,
        settings: Optional[OrchestrationSettings] = None,
        cancel_event: Optional[threading.Event] = None,
        before_deploy: Optional[BeforeDeployHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.ledger = ledger
        self.settings = (settings or OrchestrationSettings()).validate()
        self.cancel_event = cancel_event or threading.Event()
        self.before_deploy = before_deploy
        self._sleep = sleep
        self._outstanding = None

    def run(self, units: UnitSet) -> DeploymentReport:
        order = units.topological_order()
        print(f"(i) Deployment order: {', '.join(unit.name for unit in order)}")

        confirmed = list()
        with self.ledger.run_lock() as sole_runner:
            blocked = self._settle_outstanding()
            if blocked is not None:
                reason = f"an earlier attempt for {blocked.name} is still running"
                return self._report(units, confirmed, failed_unit=blocked.name, reason=reason)

            if sole_runner:
                self._reclaim_interrupted(order)
            else:
                print(
                    "WARNING: Another run holds this ledger; "
                    "pending units will not be reclaimed."
                )

            for unit in order:
                if self.cancel_event.is_set():
                    print(f"! Run cancelled before {unit.name}.")
                    return self._report(units, confirmed, cancelled=True)

                entry = self.ledger.get(unit.name)
                if entry is not None and entry.is_confirmed:
                    print(f"(i) Skipping {unit.name}; already deployed at {entry.identity}")
                    continue

                identity, reason = self._deploy_unit(unit)
                if identity is None:
                    return self._report(units, confirmed, failed_unit=unit.name, reason=reason)
                confirmed.append(unit.name)

        return self._report(units, confirmed)

    def _settle_outstanding(self) -> Optional[UnitDescriptor]:
        """
        Resolves a call left running when an earlier run gave up on it. Returns the
        unit when the call still has not finished, in which case nothing new may be
        submitted.
        """
        call, self._outstanding = self._outstanding, None
        if call is None:
            return None
        if not call.wait(self.settings.backend_timeout):
            print(f"! The last attempt for {call.unit.name} is still running.")
            self._outstanding = call
            return call.unit
        try:
            identity = call.result()
        except BackendError as error:
            print(f"(i) The last attempt for {call.unit.name} finished with {error}")
            return None
        self.ledger.confirm(call.unit.name, identity)
        print(f"(i) {call.unit.name} was confirmed late at {identity}")
        return None

    def _reclaim_interrupted(self, order: List[UnitDescriptor]) -> None:
        for unit in order:
            entry = self.ledger.get(unit.name)
            if entry is None or entry.status is not LedgerStatus.PENDING:
                continue
            if entry.owner != self.ledger.owner:
                print(
                    f"(i) {unit.name} was left pending by an interrupted run "
                    f"after {entry.attempt} attempt(s); it will be retried."
                )
                self.ledger.reclaim(unit.name)

    def _resolve_identities(self, unit: UnitDescriptor) -> "OrderedDict[UnitName, Identity]":
        identities = OrderedDict()
        for dependency in unit.depends_on:
            entry = self.ledger.get(dependency)
            if entry is None or not entry.is_confirmed:
                raise DependencyNotResolved(
                    f"{unit.name} requires {dependency}, which has not been confirmed."
                )
            identities[dependency] = entry.identity
        return identities

    def _start_call(
        self, unit: UnitDescriptor, identities: Dict[UnitName, Identity], init_args: List[Any]
    ) -> _BackendCall:
        timeout = self.settings.backend_timeout
        if unit.is_call:
            invoke = functools.partial(
                self.backend.transact,
                unit.template,
                identities[unit.target],
                unit.method,
                init_args,
                timeout,
            )
        else:
            invoke = functools.partial(self.backend.deploy, unit.template, init_args, timeout)
        return _BackendCall(unit, invoke, threaded=timeout is not None)

    def _await_call(self, call: _BackendCall) -> Identity:
        timeout = self.settings.backend_timeout
        if not call.wait(timeout):
            raise TransientBackendError(f"{call.unit.template}: no confirmation within {timeout}s")
        return call.result()

    def _deploy_unit(self, unit: UnitDescriptor):
        """Returns (identity, None) on success or (None, reason) once the unit has failed."""
        identities = self._resolve_identities(unit)
        init_args = unit.build_args(identities)
        if self.before_deploy is not None:
            self.before_deploy(unit, init_args)

        max_retries = self.settings.max_retries
        call = None
        for attempt in range(1, max_retries + 1):
            if call is None:
                entry = self.ledger.begin_attempt(unit.name)
                print(f"\n(i) Deploying {unit.name} ({unit.template}), attempt {entry.attempt}")
                call = self._start_call(unit, identities, init_args)
            else:
                print(f"(i) Still waiting for the last attempt for {unit.name}")

            try:
                identity = self._await_call(call)
            except BackendError as error:
                reason = str(error)
                if call.finished:
                    call = None
                if not error.transient:
                    print(f"! {unit.name} failed permanently: {reason}")
                    self.ledger.fail(unit.name, reason)
                    return None, reason
                if attempt == max_retries:
                    if call is not None:
                        # settled before this orchestrator submits anything else
                        self._outstanding = call
                        reason = f"{reason}; the call is still running"
                    reason = f"gave up after {max_retries} attempt(s): {reason}"
                    print(f"! {unit.name} {reason}")
                    self.ledger.fail(unit.name, reason)
                    return None, reason
                delay = self.settings.delay(attempt)
                print(
                    f"WARNING: {unit.name} failed transiently ({error}); "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                continue

            self.ledger.confirm(unit.name, identity)
            print(f"(i) {unit.name} deployed at {identity}")
            return identity, None

    def _report(
        self,
        units: UnitSet,
        confirmed: List[UnitName],
        failed_unit: Optional[UnitName] = None,
        reason: Optional[str] = None,
        cancelled: bool = False,
    ) -> DeploymentReport:
        return DeploymentReport(
            confirmed=confirmed,
            identities={
                name: identity
                for name, identity in self.ledger.identities().items()
                if name in units
            },
            failed_unit=failed_unit,
            reason=reason,
            cancelled=cancelled,
        )
