"""Admin command tests."""

import pytest

from vmcreds.keys import generate_key_pair
from vmcreds.main import CredentialAdmin, build_parser, main


@pytest.fixture
def admin(config):
    return CredentialAdmin(config)


def test_parser_requires_known_commands():
    args = build_parser().parse_args(['add-vm', 'alice', 'web-1', '/dc1/vm/web-1', '10.0.0.5'])

    assert args.command == 'add-vm'
    assert args.ip_address == '10.0.0.5'
    with pytest.raises(SystemExit):
        build_parser().parse_args(['bogus'])


def test_no_command_prints_help():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 1


def test_register_customer_and_vm(admin, capsys):
    assert admin.add_customer("alice", "alice@x.com", "pw")
    assert not admin.add_customer("alice", "alice@x.com", "pw")
    assert admin.add_virtual_machine("alice", "web-1", "/dc1/vm/web-1", "10.0.0.5")
    assert not admin.add_virtual_machine("nobody", "web-2", "/dc1/vm/web-2", "10.0.0.6")

    vm = admin.database.find_virtual_machine_by_owner(
        admin.database.find_customer_by_username("alice").id
    )
    assert vm.name == "web-1"
    printed = [line for line in capsys.readouterr().out.splitlines() if line.isdigit()]
    assert printed == ["1", str(vm.id)]


def test_add_and_rotate_key(admin, tmp_path):
    admin.add_customer("alice", "alice@x.com", "pw")
    admin.add_virtual_machine("alice", "web-1", "/dc1/vm/web-1", "10.0.0.5")
    first, second = tmp_path / "first.pub", tmp_path / "second.pub"
    first.write_text(generate_key_pair('ecdsa')[1])
    second.write_text(generate_key_pair('ecdsa')[1])

    assert admin.add_ssh_key(1, str(first))
    assert not admin.add_ssh_key(1, str(second))
    assert admin.add_ssh_key(1, str(second), rotate=True)

    stored = admin.database.get_ssh_public_key(1)
    assert stored.key == second.read_text().strip()
    assert stored.filename == "second.pub"


def test_add_malformed_key_fails(admin, tmp_path):
    bad = tmp_path / "bad.pub"
    bad.write_text("garbage")

    assert not admin.add_ssh_key(1, str(bad))
    assert not admin.add_ssh_key(1, str(tmp_path / "missing.pub"))


def test_generate_key_writes_private_key(admin, tmp_path):
    admin.add_customer("alice", "alice@x.com", "pw")
    admin.add_virtual_machine("alice", "web-1", "/dc1/vm/web-1", "10.0.0.5")
    key_file = tmp_path / "web-1"

    assert admin.generate_ssh_key(1, str(key_file), 'ecdsa')

    assert "PRIVATE KEY" in key_file.read_text()
    assert admin.database.get_ssh_public_key(1).filename == "web-1.pub"
    assert not admin.generate_ssh_key(99, str(tmp_path / "other"))


def test_show_and_delete(admin, capsys):
    admin.add_customer("alice", "alice@x.com", "pw")
    admin.add_virtual_machine("alice", "web-1", "/dc1/vm/web-1", "10.0.0.5")

    assert admin.show_credentials(1)
    assert "Virtual machine: web-1 (10.0.0.5)" in capsys.readouterr().out
    assert admin.delete_virtual_machine(1)
    assert admin.delete_virtual_machine(1)
    assert not admin.show_credentials(1)
    assert admin.delete_customer(1)


def test_config_check(admin):
    assert admin.test_config()
