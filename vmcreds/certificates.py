"""Certificate lifecycle management against a virtual machine's host system."""

import logging
import re
from typing import Optional

from .config import Config
from .controlplane import (
    CallContext,
    CertificateAlreadyInstalled,
    ControlPlaneClient,
    ControlPlaneError,
    ControlPlaneUnreachable,
    HostRef,
    run_bounded,
)
from .errors import (
    DeadlineExceeded,
    HostResolutionError,
    HostUnreachableError,
    InstallationError,
    NotFoundError,
    SigningError,
    ValidationError,
)
from .logging import AuditSink, log_credential_failed
from .models import CertificateCredentials, CertificateInfo, VirtualMachine

PEM_PATTERN = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----\s+[A-Za-z0-9+/=\s]+-----END \1-----"
)


def distinguished_name(vm: VirtualMachine) -> str:
    """Certificate subject of a virtual machine: ``VirtualMachine-<name>``."""
    return f"VirtualMachine-{vm.name}"


class CertificateManager:
    """
    Generates, installs and reads back host certificates for virtual machines.

    Each operation makes one host-resolution call and one certificate
    management call, each under its own deadline. Nothing is retried.
    """

    def __init__(self, client: ControlPlaneClient, audit: Optional[AuditSink] = None,
                 config: Optional[Config] = None):
        self.client = client
        self.audit = audit or AuditSink(logging.getLogger(__name__))
        self.config = config or Config()

    def _resolve_host(self, vm: VirtualMachine, timeout: float, operation: str) -> HostRef:
        """Resolve the host system of ``vm``, mapping failures to typed errors."""
        ctx = CallContext(timeout, f"resolve host of {vm.name}")
        try:
            host = run_bounded(ctx, self.client.resolve_host_system, vm.item_path)

        except DeadlineExceeded as e:
            log_credential_failed(self.audit, vm.name, operation, e)
            raise

        except (ControlPlaneUnreachable, OSError) as e:
            log_credential_failed(self.audit, vm.name, operation, e)
            raise HostUnreachableError(
                f"Host system of {vm.name} is unreachable",
                details={"virtual_machine": vm.name}
            ) from e

        except ControlPlaneError as e:
            log_credential_failed(self.audit, vm.name, operation, e)
            raise HostResolutionError(
                f"Failed to determine host system of {vm.name}",
                details={"virtual_machine": vm.name}
            ) from e

        if host is None:
            error = HostResolutionError(
                f"Virtual machine {vm.name} has no host system",
                details={"virtual_machine": vm.name}
            )
            log_credential_failed(self.audit, vm.name, operation, error)
            raise error

        return host

    def generate_certificate(self, vm: VirtualMachine) -> CertificateCredentials:
        """
        Generate a certificate signing request for ``vm`` on its host.

        Raises:
            HostResolutionError: host system cannot be resolved
            HostUnreachableError: host cannot be reached
            DeadlineExceeded: a call ran past the write deadline
            SigningError: the host certificate authority rejected the request
        """
        timeout = self.config.CERTIFICATE_WRITE_TIMEOUT
        host = self._resolve_host(vm, timeout, "generate")
        manager = self.client.certificate_manager(host)
        dn = distinguished_name(vm)

        ctx = CallContext(timeout, f"generate certificate for {vm.name}")
        try:
            pem = run_bounded(ctx, manager.generate_certificate_signing_request, dn)

        except DeadlineExceeded as e:
            log_credential_failed(self.audit, vm.name, "generate", e)
            raise

        except (ControlPlaneUnreachable, OSError) as e:
            log_credential_failed(self.audit, vm.name, "generate", e)
            raise HostUnreachableError(
                f"Host {host.value} became unreachable while signing",
                details={"virtual_machine": vm.name, "host": host.value}
            ) from e

        except ControlPlaneError as e:
            log_credential_failed(self.audit, vm.name, "generate", e)
            raise SigningError(
                f"Certificate authority rejected request for {dn}",
                details={"virtual_machine": vm.name, "distinguished_name": dn}
            ) from e

        if not pem:
            error = SigningError(
                f"Certificate authority returned no content for {dn}",
                details={"virtual_machine": vm.name, "distinguished_name": dn}
            )
            log_credential_failed(self.audit, vm.name, "generate", error)
            raise error

        self.audit.debug("Certificate generated", virtual_machine=vm.name, distinguished_name=dn)
        return CertificateCredentials(
            content=pem.encode("utf-8"),
            filename=self.config.CERTIFICATE_FILENAME,
            distinguished_name=dn,
        )

    def upload_certificate(self, vm: VirtualMachine, credentials: CertificateCredentials):
        """
        Install ``credentials`` as the server certificate of the VM's host.

        Installing a certificate the host already serves is a success.

        Raises:
            ValidationError: the content is not a PEM document
            HostResolutionError, HostUnreachableError, DeadlineExceeded
            InstallationError: the host refused the certificate
        """
        if not credentials.content or not PEM_PATTERN.search(credentials.text):
            error = ValidationError(
                f"Certificate {credentials.filename} is not a PEM document",
                details={"virtual_machine": vm.name, "filename": credentials.filename}
            )
            log_credential_failed(self.audit, vm.name, "upload", error)
            raise error

        timeout = self.config.CERTIFICATE_WRITE_TIMEOUT
        host = self._resolve_host(vm, timeout, "upload")
        manager = self.client.certificate_manager(host)

        ctx = CallContext(timeout, f"install certificate on {vm.name}")
        try:
            run_bounded(ctx, manager.install_server_certificate, credentials.text)

        except CertificateAlreadyInstalled:
            self.audit.debug("Certificate already installed", virtual_machine=vm.name, host=host.value)

        except DeadlineExceeded as e:
            log_credential_failed(self.audit, vm.name, "upload", e)
            raise

        except (ControlPlaneUnreachable, OSError) as e:
            log_credential_failed(self.audit, vm.name, "upload", e)
            raise HostUnreachableError(
                f"Host {host.value} became unreachable during installation",
                details={"virtual_machine": vm.name, "host": host.value}
            ) from e

        except ControlPlaneError as e:
            log_credential_failed(self.audit, vm.name, "upload", e)
            raise InstallationError(
                f"Failed to install certificate on host of {vm.name}",
                details={"virtual_machine": vm.name, "host": host.value}
            ) from e

    def get_public_certificate(self, vm: VirtualMachine, filename: Optional[str] = None) -> CertificateInfo:
        """
        Read the certificate currently installed on the VM's host.

        Raises:
            NotFoundError: host system or certificate cannot be located
            HostUnreachableError, DeadlineExceeded
        """
        timeout = self.config.CERTIFICATE_READ_TIMEOUT
        host = self._resolve_host(vm, timeout, "retrieve")
        manager = self.client.certificate_manager(host)

        ctx = CallContext(timeout, f"read certificate of {vm.name}")
        try:
            info = run_bounded(ctx, manager.certificate_info)

        except DeadlineExceeded as e:
            log_credential_failed(self.audit, vm.name, "retrieve", e)
            raise

        except (ControlPlaneUnreachable, OSError) as e:
            log_credential_failed(self.audit, vm.name, "retrieve", e)
            raise HostUnreachableError(
                f"Host {host.value} became unreachable while reading certificate",
                details={"virtual_machine": vm.name, "host": host.value}
            ) from e

        except ControlPlaneError as e:
            log_credential_failed(self.audit, vm.name, "retrieve", e)
            raise NotFoundError(
                f"Failed to read certificate of {vm.name}",
                details={"virtual_machine": vm.name, "host": host.value}
            ) from e

        if info is None:
            error = NotFoundError(
                f"No certificate installed on host of {vm.name}",
                details={"virtual_machine": vm.name, "host": host.value}
            )
            log_credential_failed(self.audit, vm.name, "retrieve", error)
            raise error

        if info.filename is None:
            info.filename = filename or self.config.CERTIFICATE_FILENAME
        return info
