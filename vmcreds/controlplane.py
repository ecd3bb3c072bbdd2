"""
Host control-plane contract and deadline-bounded call helpers.

The control plane (the hypervisor management API) is an external
collaborator. Implementations subclass ControlPlaneClient and
HostCertificateManager, accept a CallContext on every call, and raise the
ControlPlane* exceptions below. They should watch ``ctx.cancelled`` and
release their network resources once it is set.
"""

import abc
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import DeadlineExceeded
from .models import CertificateInfo

logger = logging.getLogger(__name__)


class ControlPlaneError(Exception):
    """Generic failure reported by the control plane."""


class ControlPlaneNotFound(ControlPlaneError):
    """The referenced managed object (VM, host, certificate) does not exist."""


class ControlPlaneUnreachable(ControlPlaneError):
    """The control plane or the host could not be reached."""


class CertificateAlreadyInstalled(ControlPlaneError):
    """The host already serves the certificate being installed."""


@dataclass(frozen=True)
class HostRef:
    """Reference to the host system running a virtual machine."""

    value: str
    name: str = ""


class CallContext:
    """
    Deadline and cancellation token for one control-plane call.

    The deadline is taken from the monotonic clock when the context is
    created. ``cancelled`` is set once the caller stops waiting.
    """

    def __init__(self, timeout: float, operation: str = "control-plane call"):
        self.timeout = timeout
        self.operation = operation
        self.deadline = time.monotonic() + timeout
        self.cancelled = threading.Event()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.cancelled.is_set() or time.monotonic() >= self.deadline

    def cancel(self):
        self.cancelled.set()


def run_bounded(ctx: CallContext, func: Callable[..., Any], *args: Any) -> Any:
    """
    Run ``func(ctx, *args)`` and wait for it no longer than the deadline.

    The call runs on a daemon worker thread. When the deadline passes the
    context is cancelled and DeadlineExceeded is raised without waiting
    for the worker. Exceptions raised by ``func`` are re-raised here.
    """
    outcome: Dict[str, Any] = {}

    def worker():
        try:
            outcome['result'] = func(ctx, *args)
        except Exception as e:  # re-raised in the caller's thread
            outcome['error'] = e

    thread = threading.Thread(target=worker, name=f"controlplane-{ctx.operation}", daemon=True)
    thread.start()
    thread.join(ctx.remaining())

    if thread.is_alive():
        ctx.cancel()
        logger.debug(f"{ctx.operation} cancelled after {ctx.timeout:g}s")
        raise DeadlineExceeded(ctx.operation, ctx.timeout)

    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('result')


class HostCertificateManager(abc.ABC):
    """Certificate management endpoint of one host system."""

    @abc.abstractmethod
    def generate_certificate_signing_request(self, ctx: CallContext, distinguished_name: str) -> str:
        """Ask the host's certificate authority for a PEM signing request."""

    @abc.abstractmethod
    def install_server_certificate(self, ctx: CallContext, certificate: str) -> None:
        """Install a PEM certificate as the host's server certificate."""

    @abc.abstractmethod
    def certificate_info(self, ctx: CallContext) -> CertificateInfo:
        """Read back the currently installed certificate."""


class ControlPlaneClient(abc.ABC):
    """Shared, read-only handle to the host control plane."""

    @abc.abstractmethod
    def resolve_host_system(self, ctx: CallContext, vm_ref: str) -> Optional[HostRef]:
        """Return the host system running the VM at ``vm_ref``."""

    @abc.abstractmethod
    def certificate_manager(self, host: HostRef) -> HostCertificateManager:
        """Return the certificate manager of a host. Makes no remote call."""

    @abc.abstractmethod
    def retrieve_attributes(self, ctx: CallContext, vm_ref: str, fields: List[str]) -> Dict[str, Any]:
        """Fetch the named attributes of a VM in one batched property read."""
