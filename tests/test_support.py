"""Config, hashing, error and logging helpers."""

import logging

import pytest

from vmcreds.config import Config
from vmcreds.errors import (
    ConflictError,
    ConnectivityError,
    CredentialError,
    DeadlineExceeded,
    HostResolutionError,
    MetadataRetrievalTimeout,
    NotFoundError,
)
from vmcreds.hashing import generate_secret, hash_secret, verify_secret
from vmcreds.logging import AuditSink, format_fields, setup_logging


def test_config_defaults_validate():
    config = Config()

    config.validate()
    assert config.METADATA_TIMEOUT == 10
    assert config.CERTIFICATE_READ_TIMEOUT == 20
    assert config.CERTIFICATE_WRITE_TIMEOUT == 60
    assert config.ROOT_SECRET_ROUNDS == 15


@pytest.mark.parametrize("name, value", [
    ("METADATA_TIMEOUT", 0),
    ("AUDIT_WRITE_TIMEOUT", 0),
    ("ROOT_SECRET_ROUNDS", 3),
    ("NAME_SUFFIX_ATTEMPTS", 0),
    ("CERTIFICATE_FILENAME", ""),
])
def test_config_rejects_invalid_values(name, value):
    config = Config()
    setattr(config, name, value)

    with pytest.raises(ValueError):
        config.validate()


def test_hash_and_verify_secret():
    secret_hash = hash_secret("pw", 4)

    assert secret_hash.startswith("$2b$04$")
    assert verify_secret("pw", secret_hash)
    assert not verify_secret("other", secret_hash)
    assert not verify_secret("pw", "not-a-hash")


def test_generate_secret_is_random():
    assert generate_secret(4) != generate_secret(4)


def test_error_hierarchy():
    assert issubclass(HostResolutionError, NotFoundError)
    assert issubclass(DeadlineExceeded, ConnectivityError)
    assert issubclass(MetadataRetrievalTimeout, ConnectivityError)

    error = ConflictError("taken", details={"column": "customers.email"})
    assert str(error) == "[VMCREDS_CONFLICT] taken"
    assert error.to_dict() == {
        "code": "VMCREDS_CONFLICT",
        "message": "taken",
        "details": {"column": "customers.email"},
    }
    assert CredentialError("x", code="CUSTOM").code == "CUSTOM"


def test_deadline_exceeded_details():
    error = DeadlineExceeded("read certificate", 20)

    assert error.details == {"operation": "read certificate", "timeout": 20}
    assert "20s" in error.message


def test_audit_sink_formats_fields(caplog):
    sink = AuditSink(logging.getLogger("vmcreds.tests.sink"))

    with caplog.at_level(logging.INFO, logger="vmcreds.tests.sink"):
        sink.info("Certificate installed", virtual_machine="web-1", host="esx-01")

    assert "Certificate installed - virtual_machine: web-1, host: esx-01" in caplog.text


def test_audit_sink_persists_events(database):
    sink = AuditSink(logging.getLogger("vmcreds.tests.sink"), database)

    sink.error("Upload failed", virtual_machine="web-1")

    event = database.list_audit_events(limit=1)[0]
    assert event.level == "error"
    assert event.fields == {"virtual_machine": "web-1"}


def test_format_fields():
    assert format_fields(a=1, b="two") == "a: 1, b: two"


def test_setup_logging_writes_file(config, tmp_path):
    logger = setup_logging(config)
    logger.info("hello")

    for handler in logger.handlers:
        handler.flush()
    assert "hello" in (tmp_path / "vmcreds.log").read_text()


def test_setup_logging_replaces_handlers(config, tmp_path):
    setup_logging(config)
    config.LOG_FILE = str(tmp_path / "second.log")

    logger = setup_logging(config)
    logger.info("rotated")
    for handler in logger.handlers:
        handler.flush()

    assert len(logger.handlers) == 2
    assert "rotated" in (tmp_path / "second.log").read_text()
    assert "rotated" not in (tmp_path / "vmcreds.log").read_text()
