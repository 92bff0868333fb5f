"""Local store for SSH connections, address pools and the privilege secret."""

import os
import sqlite3
import logging
from typing import List, Optional, Tuple
from contextlib import contextmanager

from .models import SSHTarget
from .config import Config


SUDO_SECRET_NAME = "sudo_password"


class Database:
    """Database operations for the tunnel manager."""

    def __init__(self, db_url: str = None):  # type: ignore
        """Initialize database connection."""
        self.db_url = db_url or Config.DB_URL
        self.logger = logging.getLogger(__name__)
        self._init_database()

    @property
    def db_path(self) -> str:
        return self.db_url.replace("sqlite:///", "")

    def _init_database(self):
        """Initialize database schema."""
        if not self.db_url.startswith("sqlite"):
            raise NotImplementedError("Only sqlite databases are supported")

        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ssh_connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT UNIQUE NOT NULL,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL DEFAULT 22,
                    username TEXT NOT NULL,
                    password TEXT,
                    key_path TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS address_pools (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    address TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    UNIQUE(name, address)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS secrets (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_address_pools_name
                ON address_pools(name)
            """)

            conn.commit()

        # The store holds credentials
        try:
            os.chmod(self.db_path, 0o600)
        except OSError as e:
            self.logger.warning(f"Could not restrict database permissions: {e}")

    @contextmanager
    def _get_connection(self):
        """Get database connection context manager."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def add_ssh_connection(self, name: str, target: SSHTarget) -> int:
        """Add a new SSH connection and return its identifier."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ssh_connections
                (name, host, port, username, password, key_path)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    target.host,
                    target.port,
                    target.username,
                    target.password,
                    target.key_path
                )
            )
            conn.commit()
            return cursor.lastrowid

    def get_ssh_connection(self, connection_id: int) -> Optional[SSHTarget]:
        """Resolve an SSH connection by identifier."""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    SELECT host, port, username, password, key_path
                    FROM ssh_connections
                    WHERE id = ?
                    """,
                    (connection_id,)
                )
                row = cursor.fetchone()

                if row:
                    return SSHTarget(
                        host=row['host'],
                        port=row['port'],
                        username=row['username'],
                        password=row['password'],
                        key_path=row['key_path']
                    )
                return None

        except sqlite3.Error as e:
            self.logger.error(f"Error finding SSH connection: {e}")
            return None

    def list_ssh_connections(self) -> List[Tuple[int, str, str]]:
        """List (id, name, user@host:port) for every stored connection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT id, name, host, port, username FROM ssh_connections ORDER BY id"
            )
            return [
                (row['id'], row['name'], f"{row['username']}@{row['host']}:{row['port']}")
                for row in cursor.fetchall()
            ]

    def add_pool_members(self, name: str, addresses: List[str]) -> int:
        """Append addresses to a named pool, keeping insertion order."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) AS last FROM address_pools WHERE name = ?",
                (name,)
            ).fetchone()
            position = row['last'] + 1

            added = 0
            for address in addresses:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO address_pools (name, address, position)
                    VALUES (?, ?, ?)
                    """,
                    (name, address, position)
                )
                if cursor.rowcount:
                    position += 1
                    added += 1
            conn.commit()
            return added

    def get_pool_members(self, name: str) -> List[str]:
        """Ordered member addresses of a pool (empty if unknown)."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT address FROM address_pools WHERE name = ? ORDER BY position",
                (name,)
            )
            return [row['address'] for row in cursor.fetchall()]

    def get_secret(self, name: str) -> Optional[str]:
        """Read a stored secret."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM secrets WHERE name = ?", (name,)
                ).fetchone()
                return row['value'] if row else None

        except sqlite3.Error as e:
            self.logger.error(f"Error reading secret: {e}")
            return None

    def save_secret(self, name: str, value: str):
        """Insert or replace a stored secret."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO secrets (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (name, value)
            )
            conn.commit()

    def delete_secret(self, name: str):
        """Remove a stored secret."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM secrets WHERE name = ?", (name,))
            conn.commit()


class SecretStore:
    """Persists the validated sudo password across sessions."""

    def __init__(self, database: Database, name: str = SUDO_SECRET_NAME):
        self.database = database
        self.name = name

    def get(self) -> Tuple[Optional[str], bool]:
        secret = self.database.get_secret(self.name)
        return secret, secret is not None

    def save(self, secret: str):
        self.database.save_secret(self.name, secret)

    def delete(self):
        self.database.delete_secret(self.name)
