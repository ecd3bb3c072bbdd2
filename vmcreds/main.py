"""Administrative entry point for the VM credential manager."""

import sys
import argparse
import getpass
from pathlib import Path

from .db import Database
from .models import Customer, VirtualMachine, SSHPublicKey
from .config import Config
from .errors import CredentialError
from .hashing import hash_secret
from .keys import generate_key_pair, get_key_fingerprint, SUPPORTED_KEY_TYPES
from .logging import setup_logging


class CredentialAdmin:
    """Command handlers operating directly on the credential database."""

    def __init__(self, config: Config = None):
        """Initialize the admin application."""
        self.config = config or Config()
        self.logger = setup_logging(self.config)
        self.database = Database(config=self.config)

    def add_customer(self, username: str, email: str, password: str) -> bool:
        """Register a customer."""
        try:
            customer = self.database.create_customer(Customer(
                username=username,
                email=email,
                password_hash=hash_secret(password, self.config.PASSWORD_HASH_ROUNDS)
            ))
            print(customer.id)
            return True

        except CredentialError as e:
            self.logger.error(f"Error adding customer: {e}")
            return False

    def add_virtual_machine(self, owner: str, name: str, item_path: str, ip_address: str) -> bool:
        """Register a virtual machine for a customer."""
        try:
            customer = self.database.find_customer_by_username(owner)
            if customer is None:
                self.logger.error(f"Customer {owner} not found")
                return False

            vm = self.database.create_virtual_machine(VirtualMachine(
                owner_id=customer.id,
                name=name,
                item_path=item_path,
                ip_address=ip_address
            ))
            if vm.name != name:
                self.logger.info(f"Name {name} was taken, registered as {vm.name}")
            print(vm.id)
            return True

        except CredentialError as e:
            self.logger.error(f"Error adding virtual machine: {e}")
            return False

    def add_ssh_key(self, vm_id: int, public_key_file: str, rotate: bool = False) -> bool:
        """Attach (or rotate) the SSH public key of a virtual machine."""
        try:
            path = Path(public_key_file).expanduser()
            content = path.read_text().strip()
            fingerprint = get_key_fingerprint(content)

            if rotate:
                self.database.update_ssh_public_key(vm_id, content, path.name)
            else:
                self.database.create_ssh_public_key(SSHPublicKey(
                    key=content,
                    filename=path.name,
                    virtual_machine_id=vm_id
                ))

            self.logger.info(f"Stored SSH key {fingerprint[:16]}... for virtual machine {vm_id}")
            return True

        except (CredentialError, OSError) as e:
            self.logger.error(f"Error storing SSH key: {e}")
            return False

    def generate_ssh_key(self, vm_id: int, key_file: str, key_type: str = 'rsa',
                         key_size: int = 2048) -> bool:
        """Generate a key pair, write the private key to disk and store the public key."""
        try:
            vm = self.database.get_virtual_machine(vm_id)
            if vm is None:
                self.logger.error(f"Virtual machine {vm_id} not found")
                return False

            private_key, public_key = generate_key_pair(key_type, key_size, comment=vm.name)

            key_path = Path(key_file).expanduser()
            key_path.write_text(private_key)
            key_path.chmod(0o600)

            self.database.save_ssh_public_key(SSHPublicKey(
                key=public_key,
                filename=f"{key_path.name}.pub",
                virtual_machine_id=vm.id
            ))

            self.logger.info(f"Private key saved to: {key_path}")
            print(get_key_fingerprint(public_key))
            return True

        except (CredentialError, OSError) as e:
            self.logger.error(f"Error generating SSH key: {e}")
            return False

    def show_credentials(self, vm_id: int) -> bool:
        """Print the stored credential reference of a virtual machine."""
        vm = self.database.get_virtual_machine(vm_id)
        if vm is None:
            self.logger.error(f"Virtual machine {vm_id} not found")
            return False

        ssh_key = self.database.get_ssh_public_key(vm_id)
        print(f"Virtual machine: {vm.name} ({vm.ip_address})")
        print(f"Strategy: {vm.credential_strategy or '-'}")
        print(f"Root password stored: {'yes' if vm.root_password_hash else 'no'}")
        print(f"Key file: {ssh_key.filename if ssh_key else '-'}")
        return True

    def delete_virtual_machine(self, vm_id: int) -> bool:
        """Delete a virtual machine and its key."""
        if not self.database.delete_virtual_machine(vm_id):
            self.logger.info(f"Virtual machine {vm_id} was already deleted")
        return True

    def delete_customer(self, customer_id: int) -> bool:
        """Delete a customer and everything it owns."""
        if not self.database.delete_customer(customer_id):
            self.logger.info(f"Customer {customer_id} was already deleted")
        return True

    def test_config(self) -> bool:
        """Test configuration and database connectivity."""
        try:
            self.config.validate()
            self.logger.info("Configuration validation passed")

            self.database.get_virtual_machine(0)
            self.logger.info("Database connectivity test passed")
            return True

        except Exception as e:
            self.logger.error(f"Configuration test failed: {e}")
            return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VM credential manager administration")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    customer_parser = subparsers.add_parser('add-customer', help='Register a customer')
    customer_parser.add_argument('username', help='Customer username')
    customer_parser.add_argument('email', help='Customer email')
    customer_parser.add_argument('--password', help='Account password (prompted when omitted)')

    vm_parser = subparsers.add_parser('add-vm', help='Register a virtual machine')
    vm_parser.add_argument('owner', help='Username of the owning customer')
    vm_parser.add_argument('name', help='Virtual machine name')
    vm_parser.add_argument('item_path', help='Inventory path of the machine on the control plane')
    vm_parser.add_argument('ip_address', help='Virtual machine IP address')

    key_parser = subparsers.add_parser('add-key', help='Attach an SSH public key to a virtual machine')
    key_parser.add_argument('vm_id', type=int, help='Virtual machine id')
    key_parser.add_argument('public_key_file', help='Public key file (e.g. ~/.ssh/id_rsa.pub)')

    rotate_parser = subparsers.add_parser('rotate-key', help='Replace the SSH public key of a virtual machine')
    rotate_parser.add_argument('vm_id', type=int, help='Virtual machine id')
    rotate_parser.add_argument('public_key_file', help='New public key file')

    generate_parser = subparsers.add_parser('generate-key', help='Generate and store a key pair')
    generate_parser.add_argument('vm_id', type=int, help='Virtual machine id')
    generate_parser.add_argument('key_file', help='Output file for the private key')
    generate_parser.add_argument('--key-type', choices=SUPPORTED_KEY_TYPES, default='rsa',
                                 help='Key type (default: rsa)')
    generate_parser.add_argument('--key-size', type=int, default=2048,
                                 help='Key size in bits (default: 2048, only for RSA)')

    show_parser = subparsers.add_parser('show-credentials', help='Show stored credentials of a virtual machine')
    show_parser.add_argument('vm_id', type=int, help='Virtual machine id')

    delete_vm_parser = subparsers.add_parser('delete-vm', help='Delete a virtual machine')
    delete_vm_parser.add_argument('vm_id', type=int, help='Virtual machine id')

    delete_customer_parser = subparsers.add_parser('delete-customer', help='Delete a customer')
    delete_customer_parser.add_argument('customer_id', type=int, help='Customer id')

    subparsers.add_parser('test', help='Test configuration and connectivity')
    return parser


def main(argv=None):
    """Main function with command line argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app = CredentialAdmin()

    if args.command == 'add-customer':
        password = args.password or getpass.getpass("Password: ")
        success = app.add_customer(args.username, args.email, password)
    elif args.command == 'add-vm':
        success = app.add_virtual_machine(args.owner, args.name, args.item_path, args.ip_address)
    elif args.command == 'add-key':
        success = app.add_ssh_key(args.vm_id, args.public_key_file)
    elif args.command == 'rotate-key':
        success = app.add_ssh_key(args.vm_id, args.public_key_file, rotate=True)
    elif args.command == 'generate-key':
        success = app.generate_ssh_key(args.vm_id, args.key_file, args.key_type, args.key_size)
    elif args.command == 'show-credentials':
        success = app.show_credentials(args.vm_id)
    elif args.command == 'delete-vm':
        success = app.delete_virtual_machine(args.vm_id)
    elif args.command == 'delete-customer':
        success = app.delete_customer(args.customer_id)
    else:
        success = app.test_config()

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
