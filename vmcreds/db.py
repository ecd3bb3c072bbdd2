"""Database connection and operations for the VM credential manager."""

import json
import sqlite3
import logging
import uuid
from typing import Optional, List
from contextlib import contextmanager

from .models import Customer, VirtualMachine, SSHPublicKey, AuditEvent
from .config import Config
from .errors import ConflictError, NotFoundError, ValidationError


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        deleted_at DATETIME
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS virtual_machines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id INTEGER UNIQUE NOT NULL REFERENCES customers(id),
        name TEXT UNIQUE NOT NULL,
        item_path TEXT NOT NULL,
        ip_address TEXT UNIQUE NOT NULL,
        credential_strategy TEXT,
        root_password_hash TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        deleted_at DATETIME
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ssh_public_keys (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key TEXT NOT NULL,
        filename TEXT NOT NULL,
        virtual_machine_id INTEGER UNIQUE NOT NULL REFERENCES virtual_machines(id),
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        deleted_at DATETIME
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        fields TEXT,
        timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_events_timestamp
    ON audit_events(timestamp)
    """,
)

VM_COLUMNS = "id, owner_id, name, item_path, ip_address, credential_strategy, root_password_hash"


def _conflict_column(error: sqlite3.IntegrityError) -> str:
    """Extract ``table.column`` from a sqlite UNIQUE constraint message."""
    message = str(error)
    if "UNIQUE constraint failed:" in message:
        return message.split("UNIQUE constraint failed:", 1)[1].strip()
    return ""


class Database:
    """Repository for customers, virtual machines and their SSH keys."""

    def __init__(self, db_url: str = None, config: Optional[Config] = None): # type: ignore
        """Initialize database connection."""
        self.config = config or Config()
        self.db_url = db_url or self.config.DB_URL
        self.logger = logging.getLogger(__name__)
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()

    @contextmanager
    def _get_connection(self, timeout: float = 30):
        """Get database connection context manager."""
        if self.db_url.startswith("sqlite"):
            db_path = self.db_url.replace("sqlite:///", "")
            # Writers wait on each other instead of failing with "database is locked"
            conn = sqlite3.connect(db_path, timeout=timeout)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            try:
                yield conn
            finally:
                conn.close()
        else:
            raise NotImplementedError(f"Unsupported database URL: {self.db_url}")

    def _soft_delete_and_purge(self, conn: sqlite3.Connection, table: str,
                               column: str, value) -> bool:
        """
        Two-phase delete: mark the row deleted, then remove it permanently.

        Returns:
            True if a row was removed, False if it was already absent
        """
        marked = conn.execute(
            f"UPDATE {table} SET deleted_at = CURRENT_TIMESTAMP "
            f"WHERE {column} = ? AND deleted_at IS NULL",
            (value,)
        ).rowcount
        conn.commit()

        purged = conn.execute(
            f"DELETE FROM {table} WHERE {column} = ?", (value,)
        ).rowcount
        conn.commit()

        if not purged:
            self.logger.debug(f"Delete from {table} where {column}={value}: row already absent")
        elif marked:
            self.logger.info(f"Deleted {table} row where {column}={value}")
        return purged > 0

    # Customers

    def create_customer(self, customer: Customer) -> Customer:
        """Add a new customer to the database."""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO customers (username, email, password_hash)
                    VALUES (?, ?, ?)
                    """,
                    (customer.username, customer.email, customer.password_hash)
                )
                conn.commit()
                customer.id = cursor.lastrowid

        except sqlite3.IntegrityError as e:
            column = _conflict_column(e)
            self.logger.error(f"Error adding customer {customer.username}: {e}")
            raise ConflictError(
                f"Customer conflicts on {column or 'a unique column'}",
                details={"column": column}
            ) from e

        self.logger.info(f"Created customer {customer.username} (id={customer.id})")
        return customer

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        """Find customer by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT id, username, email, password_hash FROM customers
                WHERE id = ? AND deleted_at IS NULL
                """,
                (customer_id,)
            ).fetchone()
        return Customer(**dict(row)) if row else None

    def find_customer_by_username(self, username: str) -> Optional[Customer]:
        """Find customer by username."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT id, username, email, password_hash FROM customers
                WHERE username = ? AND deleted_at IS NULL
                """,
                (username,)
            ).fetchone()
        return Customer(**dict(row)) if row else None

    def update_customer_password(self, customer_id: int, password_hash: str):
        """Replace the password hash; username and email are never updated."""
        if not password_hash:
            raise ValidationError("Password hash is required")

        with self._get_connection() as conn:
            updated = conn.execute(
                """
                UPDATE customers SET password_hash = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND deleted_at IS NULL
                """,
                (password_hash, customer_id)
            ).rowcount
            conn.commit()

        if not updated:
            raise NotFoundError(f"Customer {customer_id} not found")

    def delete_customer(self, customer_id: int) -> bool:
        """Delete a customer together with the virtual machines it owns."""
        for vm in self.list_virtual_machines(owner_id=customer_id):
            self.delete_virtual_machine(vm.id)

        with self._get_connection() as conn:
            return self._soft_delete_and_purge(conn, "customers", "id", customer_id)

    # Virtual machines

    def create_virtual_machine(self, vm: VirtualMachine) -> VirtualMachine:
        """
        Add a new virtual machine to the database.

        A taken name is not an error: a random suffix is appended and the
        insert retried. Conflicts on owner or IP address are raised.
        """
        base_name = vm.name

        for _ in range(self.config.NAME_SUFFIX_ATTEMPTS + 1):
            try:
                with self._get_connection() as conn:
                    cursor = conn.execute(
                        """
                        INSERT INTO virtual_machines (owner_id, name, item_path, ip_address)
                        VALUES (?, ?, ?, ?)
                        """,
                        (vm.owner_id, vm.name, vm.item_path, vm.ip_address)
                    )
                    conn.commit()
                    vm.id = cursor.lastrowid

                self.logger.info(f"Created virtual machine {vm.name} (id={vm.id}, owner={vm.owner_id})")
                return vm

            except sqlite3.IntegrityError as e:
                column = _conflict_column(e)
                if column != "virtual_machines.name":
                    self.logger.error(f"Error adding virtual machine {vm.name}: {e}")
                    if "FOREIGN KEY" in str(e):
                        raise NotFoundError(f"Customer {vm.owner_id} not found") from e
                    raise ConflictError(
                        f"Virtual machine conflicts on {column or 'a unique column'}",
                        details={"column": column}
                    ) from e

                suffixed = f"{base_name}-{uuid.uuid4().hex[:8]}"
                self.logger.info(f"Virtual machine name {vm.name} taken, retrying as {suffixed}")
                vm.name = suffixed

        vm.name = base_name
        raise ConflictError(
            f"No free name found for virtual machine {base_name}",
            details={"column": "virtual_machines.name"}
        )

    def _fetch_virtual_machine(self, where: str, value) -> Optional[VirtualMachine]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {VM_COLUMNS} FROM virtual_machines "
                f"WHERE {where} = ? AND deleted_at IS NULL",
                (value,)
            ).fetchone()
        return VirtualMachine(**dict(row)) if row else None

    def get_virtual_machine(self, vm_id: int) -> Optional[VirtualMachine]:
        """Find virtual machine by id."""
        return self._fetch_virtual_machine("id", vm_id)

    def find_virtual_machine_by_owner(self, owner_id: int) -> Optional[VirtualMachine]:
        """Find the virtual machine owned by a customer."""
        return self._fetch_virtual_machine("owner_id", owner_id)

    def list_virtual_machines(self, owner_id: Optional[int] = None) -> List[VirtualMachine]:
        """List live virtual machines, optionally only those of one owner."""
        query = f"SELECT {VM_COLUMNS} FROM virtual_machines WHERE deleted_at IS NULL"
        params = ()
        if owner_id is not None:
            query += " AND owner_id = ?"
            params = (owner_id,)

        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [VirtualMachine(**dict(row)) for row in rows]

    def update_virtual_machine(self, vm_id: int, **changes) -> VirtualMachine:
        """
        Update mutable virtual machine fields.

        Only the name may change. Owner, item path and IP address are set at
        creation; naming one of them raises ValidationError.
        """
        write_once = sorted(set(changes) & set(VirtualMachine.WRITE_ONCE_FIELDS))
        if write_once:
            raise ValidationError(
                f"Write-once fields cannot be updated: {', '.join(write_once)}",
                details={"fields": write_once}
            )

        unknown = sorted(set(changes) - {"name"})
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}")

        if "name" in changes:
            if not changes["name"]:
                raise ValidationError("Virtual machine name is required")
            try:
                with self._get_connection() as conn:
                    updated = conn.execute(
                        """
                        UPDATE virtual_machines SET name = ?, updated_at = CURRENT_TIMESTAMP
                        WHERE id = ? AND deleted_at IS NULL
                        """,
                        (changes["name"], vm_id)
                    ).rowcount
                    conn.commit()
            except sqlite3.IntegrityError as e:
                raise ConflictError(
                    f"Virtual machine name {changes['name']} is taken",
                    details={"column": _conflict_column(e)}
                ) from e

            if not updated:
                raise NotFoundError(f"Virtual machine {vm_id} not found")

        vm = self.get_virtual_machine(vm_id)
        if vm is None:
            raise NotFoundError(f"Virtual machine {vm_id} not found")
        return vm

    def set_credential_strategy(self, vm_id: int, strategy: str):
        """
        Record the credential strategy of a virtual machine.

        Setting the strategy already recorded is a no-op; switching to
        another strategy raises ConflictError.
        """
        with self._get_connection() as conn:
            updated = conn.execute(
                """
                UPDATE virtual_machines
                SET credential_strategy = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND deleted_at IS NULL
                  AND (credential_strategy IS NULL OR credential_strategy = ?)
                """,
                (strategy, vm_id, strategy)
            ).rowcount
            conn.commit()

        if updated:
            return

        vm = self.get_virtual_machine(vm_id)
        if vm is None:
            raise NotFoundError(f"Virtual machine {vm_id} not found")
        raise ConflictError(
            f"Virtual machine {vm.name} already uses the {vm.credential_strategy} strategy",
            details={"virtual_machine_id": vm_id, "strategy": vm.credential_strategy}
        )

    def release_credential_strategy(self, vm_id: int, strategy: str) -> bool:
        """Clear a recorded strategy, only while it is still ``strategy``."""
        with self._get_connection() as conn:
            updated = conn.execute(
                """
                UPDATE virtual_machines
                SET credential_strategy = NULL, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND deleted_at IS NULL AND credential_strategy = ?
                """,
                (vm_id, strategy)
            ).rowcount
            conn.commit()

        if updated:
            self.logger.info(f"Released {strategy} strategy of virtual machine {vm_id}")
        return bool(updated)

    def store_root_password_hash(self, vm_id: int, password_hash: str):
        """Persist the hash of a generated root secret."""
        with self._get_connection() as conn:
            updated = conn.execute(
                """
                UPDATE virtual_machines
                SET root_password_hash = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND deleted_at IS NULL
                """,
                (password_hash, vm_id)
            ).rowcount
            conn.commit()

        if not updated:
            raise NotFoundError(f"Virtual machine {vm_id} not found")

    def delete_virtual_machine(self, vm_id: int) -> bool:
        """Delete a virtual machine and its SSH key. Absent rows are not an error."""
        self.delete_ssh_public_key(vm_id)

        with self._get_connection() as conn:
            return self._soft_delete_and_purge(conn, "virtual_machines", "id", vm_id)

    # SSH public keys

    def create_ssh_public_key(self, ssh_key: SSHPublicKey) -> SSHPublicKey:
        """Attach a key to a virtual machine. A machine holds at most one key."""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO ssh_public_keys (key, filename, virtual_machine_id)
                    VALUES (?, ?, ?)
                    """,
                    (ssh_key.key, ssh_key.filename, ssh_key.virtual_machine_id)
                )
                conn.commit()
                ssh_key.id = cursor.lastrowid

        except sqlite3.IntegrityError as e:
            self.logger.error(f"Error adding SSH key for VM {ssh_key.virtual_machine_id}: {e}")
            if "FOREIGN KEY" in str(e):
                raise NotFoundError(
                    f"Virtual machine {ssh_key.virtual_machine_id} not found"
                ) from e
            raise ConflictError(
                f"Virtual machine {ssh_key.virtual_machine_id} already has a key",
                details={"column": _conflict_column(e)}
            ) from e

        return ssh_key

    def save_ssh_public_key(self, ssh_key: SSHPublicKey) -> SSHPublicKey:
        """Create the key row of a virtual machine, or overwrite it in place."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO ssh_public_keys (key, filename, virtual_machine_id)
                    VALUES (?, ?, ?)
                    ON CONFLICT(virtual_machine_id) DO UPDATE SET
                        key = excluded.key,
                        filename = excluded.filename,
                        updated_at = CURRENT_TIMESTAMP,
                        deleted_at = NULL
                    """,
                    (ssh_key.key, ssh_key.filename, ssh_key.virtual_machine_id)
                )
                conn.commit()

        except sqlite3.IntegrityError as e:
            raise NotFoundError(
                f"Virtual machine {ssh_key.virtual_machine_id} not found"
            ) from e

        return self.get_ssh_public_key(ssh_key.virtual_machine_id)

    def get_ssh_public_key(self, vm_id: int) -> Optional[SSHPublicKey]:
        """Find the SSH key of a virtual machine."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT id, key, filename, virtual_machine_id FROM ssh_public_keys
                WHERE virtual_machine_id = ? AND deleted_at IS NULL
                """,
                (vm_id,)
            ).fetchone()
        return SSHPublicKey(**dict(row)) if row else None

    def update_ssh_public_key(self, vm_id: int, key, filename: Optional[str] = None) -> SSHPublicKey:
        """
        Overwrite key content in place, keyed by virtual machine id.

        This is a single conditional UPDATE, so concurrent rotations of the
        same machine serialize in the database and the last write wins.
        """
        if isinstance(key, bytes):
            try:
                key = key.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ValidationError("Key content must be UTF-8 text") from e
        if not key:
            raise ValidationError("Key content is required")

        with self._get_connection() as conn:
            updated = conn.execute(
                """
                UPDATE ssh_public_keys
                SET key = ?, filename = COALESCE(?, filename), updated_at = CURRENT_TIMESTAMP
                WHERE virtual_machine_id = ? AND deleted_at IS NULL
                """,
                (key, filename, vm_id)
            ).rowcount
            conn.commit()

        if not updated:
            raise NotFoundError(f"No SSH key stored for virtual machine {vm_id}")

        self.logger.info(f"Rotated SSH key for virtual machine {vm_id}")
        return self.get_ssh_public_key(vm_id)

    def delete_ssh_public_key(self, vm_id: int) -> bool:
        """Delete the SSH key of a virtual machine. Absent rows are not an error."""
        with self._get_connection() as conn:
            return self._soft_delete_and_purge(
                conn, "ssh_public_keys", "virtual_machine_id", vm_id
            )

    # Audit

    def log_audit_event(self, event: AuditEvent) -> bool:
        """Log a credential event."""
        try:
            with self._get_connection(self.config.AUDIT_WRITE_TIMEOUT) as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events (level, message, fields)
                    VALUES (?, ?, ?)
                    """,
                    (event.level, event.message, json.dumps(event.fields))
                )
                conn.commit()
                return True

        except sqlite3.Error as e:
            self.logger.error(f"Error logging audit event: {e}")
            return False

    def list_audit_events(self, limit: int = 100) -> List[AuditEvent]:
        """Most recent audit events first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT level, message, fields, timestamp FROM audit_events
                ORDER BY id DESC LIMIT ?
                """,
                (limit,)
            ).fetchall()
        return [
            AuditEvent(
                level=row['level'],
                message=row['message'],
                fields=json.loads(row['fields'] or "{}"),
                timestamp=row['timestamp']
            )
            for row in rows
        ]
