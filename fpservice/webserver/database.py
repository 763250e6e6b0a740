"""Database Module - SQLite Template Store and API Key Management

Handles all database operations for the fingerprint web service including:
- API key authentication (bcrypt hashes, permission scopes)
- Fingerprint template storage (merged enrollment templates)
- Audit logging

Tables:
- api_keys: Hashed API keys and their scopes
- fingerprints: One merged template per user
- audit_log: All administrative and enrollment operations

The class also satisfies the engine's TemplateStore contract
(``load_template`` / ``iterate_templates``), so the scan service reads
straight from it.

"""

from __future__ import annotations

import json
import secrets
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import bcrypt

from ..models import EnrollmentTemplate
from .config import API_KEY_PREFIX, BCRYPT_ROUNDS, DB_PATH

# Characters of the plaintext key stored in clear for lookup
KEY_PREFIX_LENGTH = 12


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# DATABASE CLASS
# ============================================================================

class BiometricDatabase:
    """SQLite database for the fingerprint service.

    A single connection is shared between the event loop and the scan worker
    threads; every statement runs under ``self._lock``.
    """

    def __init__(self, db_path: Path = None):
        """Initialize database connection.

        Args:
            db_path: Path to database file (``":memory:"`` for tests)
        """
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.execute("PRAGMA foreign_keys = ON")

        # Row factory for dict-like access
        self.conn.row_factory = sqlite3.Row

        # Create tables if needed
        self._create_tables()

    def _create_tables(self):
        """Create database tables if they don't exist."""
        with self._lock:
            cursor = self.conn.cursor()

            # API keys table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    key_prefix TEXT NOT NULL,
                    key_hash TEXT NOT NULL,
                    scopes TEXT NOT NULL,
                    created_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    last_used TIMESTAMP NULL,
                    revoked BOOLEAN DEFAULT 0
                )
            """)

            # Fingerprints table (merged template + enrollment metadata)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS fingerprints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT UNIQUE NOT NULL,
                    template BLOB NOT NULL,
                    quality INTEGER NOT NULL,
                    source_qualities TEXT NOT NULL,
                    consistency REAL DEFAULT 100.0,
                    enrollment_id TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            # Audit log table
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP NOT NULL,
                    actor TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT,
                    result TEXT,
                    ip_address TEXT
                )
            """)

            # Create indexes
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_prefix ON api_keys(key_prefix)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_fingerprints_user_id ON fingerprints(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")

            self.conn.commit()

    # ========================================================================
    # API KEY MANAGEMENT
    # ========================================================================

    @staticmethod
    def generate_api_key() -> str:
        return API_KEY_PREFIX + secrets.token_urlsafe(32)

    @staticmethod
    def hash_api_key(key: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(key.encode("utf-8"), salt).decode("utf-8")

    def create_api_key(
        self,
        name: str,
        scopes: Sequence[str],
        created_by: str = "system",
        key: Optional[str] = None
    ) -> Tuple[int, str]:
        """Create an API key.

        Args:
            name: Human readable key name
            scopes: Granted permission scopes
            created_by: Who created the key
            key: Plaintext to store (generated when None)

        Returns:
            Tuple of (key id, plaintext key). The plaintext is not stored and
            cannot be recovered later.
        """
        key = key or self.generate_api_key()
        key_hash = self.hash_api_key(key)

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """INSERT INTO api_keys (name, key_prefix, key_hash, scopes, created_by, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (name, key[:KEY_PREFIX_LENGTH], key_hash, json.dumps(sorted(set(scopes))),
                 created_by, _now())
            )
            key_id = cursor.lastrowid
            self.conn.commit()

        self._log_audit(created_by, "API_KEY_CREATED", f"id={key_id}, name={name}, scopes={sorted(set(scopes))}")
        return key_id, key

    def ensure_api_key(self, name: str, key: str, scopes: Sequence[str]) -> int:
        """Register ``key`` under ``name`` unless it is already stored.

        Used at startup for the bootstrap admin key.

        Returns:
            Key id
        """
        record = self.authenticate_api_key(key, touch=False)
        if record is not None:
            return record["id"]

        key_id, _ = self.create_api_key(name, scopes, created_by="bootstrap", key=key)
        return key_id

    def authenticate_api_key(self, key: str, touch: bool = True) -> Optional[Dict[str, Any]]:
        """Look up a plaintext key.

        Args:
            key: Plaintext API key
            touch: Update ``last_used`` on success

        Returns:
            Dict with id, name and scopes, or None if the key is unknown or revoked
        """
        if not key:
            return None

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM api_keys WHERE key_prefix = ? AND revoked = 0",
                (key[:KEY_PREFIX_LENGTH],)
            )
            rows = cursor.fetchall()

        for row in rows:
            if bcrypt.checkpw(key.encode("utf-8"), row["key_hash"].encode("utf-8")):
                if touch:
                    with self._lock:
                        self.conn.execute(
                            "UPDATE api_keys SET last_used = ? WHERE id = ?", (_now(), row["id"])
                        )
                        self.conn.commit()
                return {
                    "id": row["id"],
                    "name": row["name"],
                    "scopes": json.loads(row["scopes"]),
                }
        return None

    def list_api_keys(self) -> List[Dict[str, Any]]:
        """List API keys (without hashes)."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT id, name, key_prefix, scopes, created_by, created_at, last_used, revoked
                   FROM api_keys ORDER BY id"""
            )
            rows = cursor.fetchall()

        keys = []
        for row in rows:
            data = dict(row)
            data["scopes"] = json.loads(data["scopes"])
            data["revoked"] = bool(data["revoked"])
            keys.append(data)
        return keys

    def revoke_api_key(self, key_id: int, username: str = "system") -> bool:
        """Revoke an API key.

        Returns:
            True if an active key was revoked
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("UPDATE api_keys SET revoked = 1 WHERE id = ? AND revoked = 0", (key_id,))
            revoked = cursor.rowcount > 0
            self.conn.commit()

        if revoked:
            self._log_audit(username, "API_KEY_REVOKED", f"id={key_id}")
        return revoked

    # ========================================================================
    # FINGERPRINT MANAGEMENT
    # ========================================================================

    def add_fingerprint(
        self,
        template: EnrollmentTemplate,
        username: str = "system",
        replace: bool = False
    ) -> bool:
        """Store a merged enrollment template.

        Args:
            template: Completed enrollment
            username: Who performed the operation
            replace: Overwrite an existing template for the same user

        Returns:
            True if stored, False if the user already exists and replace is False
        """
        now = _now()
        values = (
            template.user_id,
            template.template,
            template.quality,
            json.dumps(list(template.source_qualities)),
            template.consistency,
            template.enrollment_id,
            now,
            now,
        )

        try:
            with self._lock:
                cursor = self.conn.cursor()
                if replace:
                    cursor.execute(
                        """INSERT INTO fingerprints
                           (user_id, template, quality, source_qualities, consistency,
                            enrollment_id, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                           ON CONFLICT(user_id) DO UPDATE SET
                               template = excluded.template,
                               quality = excluded.quality,
                               source_qualities = excluded.source_qualities,
                               consistency = excluded.consistency,
                               enrollment_id = excluded.enrollment_id,
                               updated_at = excluded.updated_at""",
                        values
                    )
                else:
                    cursor.execute(
                        """INSERT INTO fingerprints
                           (user_id, template, quality, source_qualities, consistency,
                            enrollment_id, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        values
                    )
                self.conn.commit()

        except sqlite3.IntegrityError:
            self._log_audit(username, "FINGERPRINT_ENROLL_FAILED",
                            f"user_id={template.user_id} already exists", "failure")
            return False

        self._log_audit(
            username,
            "FINGERPRINT_ENROLLED",
            f"user_id={template.user_id}, quality={template.quality}, replace={replace}",
            "success"
        )
        return True

    def load_template(self, user_id: str) -> Optional[bytes]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT template FROM fingerprints WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
        return bytes(row["template"]) if row else None

    def iterate_templates(self) -> Iterator[Tuple[str, bytes]]:
        """All (user_id, template) pairs, ordered by user id.

        Rows are fetched up front so the lock is not held while the caller
        compares.
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT user_id, template FROM fingerprints ORDER BY user_id")
            rows = cursor.fetchall()
        return iter([(row["user_id"], bytes(row["template"])) for row in rows])

    def get_fingerprint(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get fingerprint metadata (no template bytes).

        Args:
            user_id: User identifier

        Returns:
            Dict with template info or None
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT user_id, quality, source_qualities, consistency, enrollment_id,
                          created_at, updated_at, length(template) AS template_size
                   FROM fingerprints WHERE user_id = ?""",
                (user_id,)
            )
            row = cursor.fetchone()

        if not row:
            return None
        data = dict(row)
        data["source_qualities"] = json.loads(data["source_qualities"])
        return data

    def list_fingerprints(self) -> List[Dict[str, Any]]:
        """List all fingerprints (without template blobs).

        Returns:
            List of dicts with metadata
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT user_id, quality, consistency, created_at, updated_at
                   FROM fingerprints
                   ORDER BY user_id"""
            )
            return [dict(row) for row in cursor.fetchall()]

    def delete_fingerprint(self, user_id: str, username: str = "system") -> bool:
        """Delete fingerprint.

        Args:
            user_id: User identifier
            username: Who performed the operation

        Returns:
            True if deleted successfully
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM fingerprints WHERE user_id = ?", (user_id,))
            deleted = cursor.rowcount > 0
            self.conn.commit()

        if deleted:
            self._log_audit(username, "FINGERPRINT_DELETED", f"user_id={user_id}", "success")

        return deleted

    # ========================================================================
    # STATISTICS
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get system statistics.

        Returns:
            Dict with statistics
        """
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("SELECT COUNT(*) AS count, AVG(quality) AS avg_quality FROM fingerprints")
            row = cursor.fetchone()
            num_users = row["count"]
            avg_quality = row["avg_quality"] or 0.0

            cursor.execute("SELECT COUNT(*) AS count FROM api_keys WHERE revoked = 0")
            num_api_keys = cursor.fetchone()["count"]

        return {
            "num_users": num_users,
            "avg_template_quality": round(avg_quality, 2),
            "num_api_keys": num_api_keys,
        }

    # ========================================================================
    # AUDIT LOGGING
    # ========================================================================

    def _log_audit(
        self,
        actor: str,
        action: str,
        details: str = "",
        result: str = "success",
        ip_address: str = None
    ):
        """Log audit entry.

        Args:
            actor: API key name (or "system") performing the action
            action: Action type
            details: Additional details
            result: 'success' or 'failure'
            ip_address: Client IP address
        """
        with self._lock:
            self.conn.execute(
                """INSERT INTO audit_log (timestamp, actor, action, details, result, ip_address)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (_now(), actor, action, details, result, ip_address)
            )
            self.conn.commit()

    def get_audit_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent audit log entries.

        Args:
            limit: Maximum number of entries

        Returns:
            List of audit entries, newest first
        """
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?",
                (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]

    # ========================================================================
    # UTILITIES
    # ========================================================================

    def close(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
