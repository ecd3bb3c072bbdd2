"""
Shared fixtures for the credential manager tests.

Provides a temporary SQLite database, a config with fast bcrypt rounds and
short deadlines, and an in-memory control plane that can be told to fail
or stall individual calls.
"""

import base64
import logging
import threading

import pytest

from vmcreds.config import Config
from vmcreds.controlplane import (
    CertificateAlreadyInstalled,
    ControlPlaneClient,
    ControlPlaneNotFound,
    ControlPlaneUnreachable,
    HostCertificateManager,
    HostRef,
)
from vmcreds.db import Database
from vmcreds.hashing import hash_secret
from vmcreds.logging import AuditSink
from vmcreds.models import CertificateInfo, Customer, VirtualMachine


class FakeCertificateManager(HostCertificateManager):
    def __init__(self, plane, host):
        self.plane = plane
        self.host = host

    def generate_certificate_signing_request(self, ctx, distinguished_name):
        self.plane.calls.append("generate")
        self.plane.check("generate", ctx)
        body = base64.b64encode(distinguished_name.encode()).decode()
        pem = f"-----BEGIN CERTIFICATE REQUEST-----\n{body}\n-----END CERTIFICATE REQUEST-----\n"
        self.plane.requests[pem] = distinguished_name
        return pem

    def install_server_certificate(self, ctx, certificate):
        self.plane.calls.append("install")
        self.plane.check("install", ctx)
        current = self.plane.installed.get(self.host.value)
        if current is not None and current[0] == certificate:
            raise CertificateAlreadyInstalled(self.host.value)
        info = CertificateInfo(
            subject=self.plane.requests.get(certificate, "unknown"),
            issuer="CN=host-ca",
        )
        self.plane.installed[self.host.value] = (certificate, info)

    def certificate_info(self, ctx):
        self.plane.calls.append("info")
        self.plane.check("info", ctx)
        current = self.plane.installed.get(self.host.value)
        if current is None:
            raise ControlPlaneNotFound(f"no certificate on {self.host.value}")
        return current[1]


class FakeControlPlane(ControlPlaneClient):
    """In-memory control plane keyed by VM item path."""

    def __init__(self):
        self.hosts = {}
        self.guests = {}
        self.requests = {}
        self.installed = {}
        self.failures = {}
        self.stalled = set()
        self.released = threading.Event()
        self.calls = []

    def add_vm(self, vm, host="esx-01"):
        self.hosts[vm.item_path] = HostRef(value=host, name=host)
        self.guests[vm.item_path] = {"hostName": vm.name, "ipAddress": vm.ip_address}

    def fail(self, operation, error):
        self.failures[operation] = error

    def stall(self, operation):
        self.stalled.add(operation)

    def check(self, operation, ctx):
        if operation in self.stalled:
            # Hold the "connection" until the caller gives up
            ctx.cancelled.wait(5.0)
            self.released.set()
            raise ControlPlaneUnreachable(f"{operation} cancelled")
        if operation in self.failures:
            raise self.failures[operation]

    def resolve_host_system(self, ctx, vm_ref):
        self.calls.append("resolve")
        self.check("resolve", ctx)
        return self.hosts.get(vm_ref)

    def certificate_manager(self, host):
        return FakeCertificateManager(self, host)

    def retrieve_attributes(self, ctx, vm_ref, fields):
        self.calls.append("attributes")
        self.check("attributes", ctx)
        if vm_ref not in self.guests:
            raise ControlPlaneNotFound(vm_ref)
        values = {"name": self.guests[vm_ref]["hostName"], "guest": dict(self.guests[vm_ref])}
        return {name: values[name] for name in fields}


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.DB_URL = f"sqlite:///{tmp_path / 'vmcreds.db'}"
    config.LOG_FILE = str(tmp_path / "vmcreds.log")
    config.ROOT_SECRET_ROUNDS = 4
    config.PASSWORD_HASH_ROUNDS = 4
    config.METADATA_TIMEOUT = 1.0
    config.CERTIFICATE_READ_TIMEOUT = 1.0
    config.CERTIFICATE_WRITE_TIMEOUT = 2.0
    return config


@pytest.fixture
def database(config):
    return Database(config=config)


@pytest.fixture
def audit(database):
    return AuditSink(logging.getLogger("vmcreds.tests"), database)


@pytest.fixture
def plane():
    return FakeControlPlane()


@pytest.fixture
def make_customer(database, config):
    def factory(username="alice", email=None, password="s3cret"):
        return database.create_customer(Customer(
            username=username,
            email=email or f"{username}@x.com",
            password_hash=hash_secret(password, config.PASSWORD_HASH_ROUNDS),
        ))
    return factory


@pytest.fixture
def make_vm(database, make_customer, plane):
    counter = {"n": 0}

    def factory(name="web-1", owner=None, ip_address=None, register=True):
        counter["n"] += 1
        owner = owner or make_customer(f"owner{counter['n']}")
        vm = database.create_virtual_machine(VirtualMachine(
            owner_id=owner.id,
            name=name,
            item_path=f"/dc1/vm/{name}-{counter['n']}",
            ip_address=ip_address or f"10.0.0.{counter['n']}",
        ))
        if register:
            plane.add_vm(vm)
        return vm
    return factory
