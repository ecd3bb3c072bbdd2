"""Credential strategies and the service that applies them to virtual machines."""

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .certificates import CertificateManager
from .config import Config
from .controlplane import ControlPlaneClient
from .db import Database
from .errors import NotFoundError, ValidationError
from .logging import AuditSink, log_credential_failed, log_credential_issued
from .models import SSHPublicKey, VirtualMachine
from .root_credentials import RootCredentialManager


class CredentialStrategy(enum.Enum):
    """How access to a virtual machine is established."""

    CERTIFICATE = "certificate"
    ROOT_PASSWORD = "root_password"


@dataclass(frozen=True)
class StrategyOperations:
    """Capability set of one strategy.

    Every callable receives the CredentialService first, then the virtual
    machine (and, for ``upload`` and ``persist``, the generated credentials).
    """

    generate: Callable[..., Any]
    upload: Callable[..., None]
    retrieve: Callable[..., Any]
    persist: Callable[..., None]


def _certificate_generate(service, vm):
    return service.certificates.generate_certificate(vm)


def _certificate_upload(service, vm, credentials):
    service.certificates.upload_certificate(vm, credentials)


def _certificate_retrieve(service, vm):
    ssh_key = service.database.get_ssh_public_key(vm.id)
    return service.certificates.get_public_certificate(vm, ssh_key.filename if ssh_key else None)


def _certificate_persist(service, vm, credentials):
    service.database.save_ssh_public_key(SSHPublicKey(
        key=credentials.content,
        filename=credentials.filename,
        virtual_machine_id=vm.id
    ))


def _root_password_generate(service, vm):
    return service.root.generate_root_credentials(vm)


def _root_password_upload(service, vm, credentials):
    # Injected by guest provisioning, nothing to send to the host
    return None


def _root_password_retrieve(service, vm):
    return service.root.get_stored_credentials(vm.id)


def _root_password_persist(service, vm, credentials):
    service.database.store_root_password_hash(vm.id, credentials.password_hash)


STRATEGIES: Dict[str, StrategyOperations] = {
    CredentialStrategy.CERTIFICATE.value: StrategyOperations(
        generate=_certificate_generate,
        upload=_certificate_upload,
        retrieve=_certificate_retrieve,
        persist=_certificate_persist,
    ),
    CredentialStrategy.ROOT_PASSWORD.value: StrategyOperations(
        generate=_root_password_generate,
        upload=_root_password_upload,
        retrieve=_root_password_retrieve,
        persist=_root_password_persist,
    ),
}


def register_strategy(name: str, operations: StrategyOperations):
    """Register an additional strategy under ``name``."""
    if name in STRATEGIES:
        raise ValueError(f"Strategy already registered: {name}")
    STRATEGIES[name] = operations


def strategy_name(strategy: Union[CredentialStrategy, str]) -> str:
    name = strategy.value if isinstance(strategy, CredentialStrategy) else strategy
    if name not in STRATEGIES:
        raise ValidationError(f"Unknown credential strategy: {name}")
    return name


@dataclass
class BatchResult:
    """Outcome of provisioning several virtual machines."""

    succeeded: Dict[int, Any] = field(default_factory=dict)
    failed: Dict[int, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class CredentialService:
    """
    Applies a credential strategy to stored virtual machines.

    A machine uses a single strategy for its whole life. Generated material
    is installed through the strategy and then persisted: the certificate
    blob in the machine's key row, the root secret as a hash.
    """

    def __init__(self, client: ControlPlaneClient, database: Database,
                 audit: Optional[AuditSink] = None, config: Optional[Config] = None):
        self.client = client
        self.database = database
        self.config = config or Config()
        self.audit = audit or AuditSink(logging.getLogger(__name__), database)
        self.certificates = CertificateManager(client, self.audit, self.config)
        self.root = RootCredentialManager(client, database, self.audit, self.config)

    def _load(self, vm_id: int) -> VirtualMachine:
        vm = self.database.get_virtual_machine(vm_id)
        if vm is None:
            raise NotFoundError(f"Virtual machine {vm_id} not found")
        return vm

    def provision(self, vm_id: int, strategy: Union[CredentialStrategy, str]):
        """
        Generate, install and persist credentials for one virtual machine.

        Returns the generated credentials (CertificateCredentials or
        RootCredentials for the built-in strategies).
        """
        name = strategy_name(strategy)
        operations = STRATEGIES[name]
        vm = self._load(vm_id)

        self.database.set_credential_strategy(vm.id, name)

        try:
            credentials = operations.generate(self, vm)
            operations.upload(self, vm, credentials)
            operations.persist(self, vm, credentials)
        except Exception:
            # A first issue that fails leaves the machine unclaimed
            if vm.credential_strategy is None:
                self.database.release_credential_strategy(vm.id, name)
            raise

        log_credential_issued(self.audit, vm.name, name, getattr(credentials, "filename", ""))
        return credentials

    def retrieve(self, vm_id: int):
        """Read back the credentials of a machine through its recorded strategy."""
        vm = self._load(vm_id)
        if not vm.credential_strategy:
            raise NotFoundError(f"No credentials issued for virtual machine {vm.name}")
        return STRATEGIES[strategy_name(vm.credential_strategy)].retrieve(self, vm)

    def provision_many(self, vm_ids: Iterable[int], strategy: Union[CredentialStrategy, str],
                       max_workers: int = 4) -> BatchResult:
        """
        Provision several machines in parallel.

        A failure on one machine is recorded in the result and never stops
        the others.
        """
        name = strategy_name(strategy)
        result = BatchResult()

        def provision_one(vm_id):
            try:
                result.succeeded[vm_id] = self.provision(vm_id, name)
            except Exception as e:
                log_credential_failed(self.audit, str(vm_id), f"provision {name}", e)
                result.failed[vm_id] = e

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            list(executor.map(provision_one, list(vm_ids)))

        self.audit.info(
            "Batch provisioning finished",
            strategy=name, succeeded=len(result.succeeded), failed=len(result.failed)
        )
        return result
