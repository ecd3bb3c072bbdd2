"""Root password credentials for virtual machines."""

import logging
from typing import Optional

from .config import Config
from .controlplane import CallContext, ControlPlaneClient, ControlPlaneError, run_bounded
from .db import Database
from .errors import DeadlineExceeded, MetadataRetrievalError, MetadataRetrievalTimeout, NotFoundError
from .hashing import generate_secret, hash_secret
from .keys import try_key_fingerprint
from .logging import AuditSink, log_credential_failed
from .models import RootCredentials, StoredCredentialReference, VirtualMachine

METADATA_FIELDS = ["name", "guest"]


class RootCredentialManager:
    """
    Issues root login secrets for virtual machines.

    Nothing is uploaded: the guest provisioning layer injects the secret.
    The plaintext is returned once to the caller; only its hash is kept.
    """

    def __init__(self, client: ControlPlaneClient, database: Database,
                 audit: Optional[AuditSink] = None, config: Optional[Config] = None):
        self.client = client
        self.database = database
        self.audit = audit or AuditSink(logging.getLogger(__name__))
        self.config = config or Config()

    def generate_root_credentials(self, vm: VirtualMachine) -> RootCredentials:
        """
        Generate a root secret for ``vm`` and fetch its guest metadata.

        Raises:
            MetadataRetrievalError: the attribute fetch failed
            MetadataRetrievalTimeout: the attribute fetch ran past its deadline
        """
        password = generate_secret(self.config.ROOT_SECRET_ROUNDS)

        ctx = CallContext(self.config.METADATA_TIMEOUT, f"retrieve attributes of {vm.name}")
        try:
            metadata = run_bounded(ctx, self.client.retrieve_attributes, vm.item_path, METADATA_FIELDS)

        except DeadlineExceeded as e:
            log_credential_failed(self.audit, vm.name, "retrieve metadata", e)
            raise MetadataRetrievalTimeout(e.operation, e.timeout) from e

        except (ControlPlaneError, OSError) as e:
            log_credential_failed(self.audit, vm.name, "retrieve metadata", e)
            raise MetadataRetrievalError(
                f"Failed to get virtual machine instance {vm.name}",
                details={"virtual_machine": vm.name, "fields": METADATA_FIELDS}
            ) from e

        self.audit.debug("Root credentials generated", virtual_machine=vm.name)
        return RootCredentials(
            username=self.config.ROOT_USERNAME,
            password=password,
            password_hash=hash_secret(password, self.config.ROOT_SECRET_ROUNDS),
            metadata=dict(metadata or {}),
        )

    def get_stored_credentials(self, vm_id: int) -> StoredCredentialReference:
        """Read the persisted credential reference of a virtual machine."""
        vm = self.database.get_virtual_machine(vm_id)
        if vm is None:
            raise NotFoundError(f"Virtual machine {vm_id} not found")

        reference = StoredCredentialReference(
            virtual_machine_id=vm.id,
            strategy=vm.credential_strategy,
            has_root_password=bool(vm.root_password_hash),
        )

        ssh_key = self.database.get_ssh_public_key(vm.id)
        if ssh_key is not None:
            reference.filename = ssh_key.filename
            reference.key = ssh_key.key
            reference.fingerprint = try_key_fingerprint(ssh_key.key)
        return reference
