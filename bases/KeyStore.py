#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# Shaheen - End-to-end encrypted file sharing
# Copyright (C) 2025-2026 Shaheen contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Per-user persistence of key material.

One SQLite file holds two tables:
- keys: KeyPairRecord rows, primary key = own public key identifier;
  recipient rows also reference the sender they pair against
- sharedSecrets: SharedSecretRecord rows, primary key = counterparty public key identifier
"""

import os
import sqlite3
import threading

from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import List, Optional

from bases.Kernel import getLogger
from bases.Settings import KeyExistsError, StoreUnavailableError

logger = getLogger(__name__)

ROLE_SENDER = 'sender'
ROLE_RECIPIENT = 'recipient'


def utcNow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class KeyPairRecord:
    id: str
    role: str
    ownPrivateKey: str
    ownPublicKey: str
    ownMacPrivateKey: str
    ownMacPublicKey: str
    counterpartyPublicKeyRef: Optional[str] = None
    createdAt: str = field(default_factory=utcNow)


@dataclass
class SharedSecretRecord:
    id: str
    encryptionSecret: str
    macSecret: str
    senderPublicKey: str
    createdAt: str = field(default_factory=utcNow)


class LocalDatabase:
    """SQLite connection factory shared by KeyStore and SecretStore"""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS keys (
            id TEXT PRIMARY KEY,
            role TEXT NOT NULL,
            ownPrivateKey TEXT NOT NULL,
            ownPublicKey TEXT NOT NULL,
            ownMacPrivateKey TEXT NOT NULL,
            ownMacPublicKey TEXT NOT NULL,
            counterpartyPublicKeyRef TEXT,
            createdAt TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sharedSecrets (
            id TEXT PRIMARY KEY,
            encryptionSecret TEXT NOT NULL,
            macSecret TEXT NOT NULL,
            senderPublicKey TEXT NOT NULL,
            createdAt TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idxKeysCounterparty ON keys(counterpartyPublicKeyRef)",
        "CREATE INDEX IF NOT EXISTS idxSecretsSender ON sharedSecrets(senderPublicKey)",
    )

    def __init__(self, path: str):
        self.path = path
        self.lock = threading.Lock()

        parent = os.path.dirname(os.path.abspath(path))
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f'Unable to create key database directory {parent}: {e}') from e

        with self.connect() as conn:
            for statement in self.SCHEMA:
                conn.execute(statement)

        logger.debug(f'[KeyStore] Using database {self.path}')

    @contextmanager
    def connect(self):
        """Open a connection, commit on success, roll back on error, always close"""
        try:
            conn = sqlite3.connect(self.path, timeout=10)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f'Unable to open key database {self.path}: {e}') from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailableError(f'Key database error: {e}') from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class KeyStore:
    """Persistent store of own asymmetric key material"""

    COLUMNS = (
        'id', 'role', 'ownPrivateKey', 'ownPublicKey', 'ownMacPrivateKey', 'ownMacPublicKey',
        'counterpartyPublicKeyRef', 'createdAt'
    )

    def __init__(self, database: LocalDatabase):
        self.database = database

    def put(self, record: KeyPairRecord) -> KeyPairRecord:
        """Insert a new record, identifiers are never reused

        Raises:
            KeyExistsError: If a record with the same id already exists
            StoreUnavailableError: On persistence failure
        """
        values = asdict(record)
        placeholders = ', '.join('?' for _ in self.COLUMNS)

        with self.database.lock:
            try:
                with self.database.connect() as conn:
                    conn.execute(
                        f"INSERT INTO keys ({', '.join(self.COLUMNS)}) VALUES ({placeholders})",
                        tuple(values[c] for c in self.COLUMNS),
                    )
            except sqlite3.IntegrityError as e:
                raise KeyExistsError(f'Key pair record {record.id[-12:]} already exists') from e

        logger.debug(f'[KeyStore] Stored {record.role} keys ...{record.id[-12:]}')
        return record

    def get(self, recordId: str) -> Optional[KeyPairRecord]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM keys WHERE id = ?", (recordId,)).fetchone()
        return self._toRecord(row) if row else None

    def findByCounterparty(self, senderPublicKey: str) -> Optional[KeyPairRecord]:
        """Newest recipient record paired against a sender's public key"""
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM keys WHERE counterpartyPublicKeyRef = ? ORDER BY createdAt DESC LIMIT 1",
                (senderPublicKey,),
            ).fetchone()
        return self._toRecord(row) if row else None

    def list(self, role: Optional[str] = None) -> List[KeyPairRecord]:
        with self.database.connect() as conn:
            if role:
                rows = conn.execute("SELECT * FROM keys WHERE role = ? ORDER BY createdAt", (role,)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM keys ORDER BY createdAt").fetchall()
        return [self._toRecord(row) for row in rows]

    def hasKeys(self) -> bool:
        with self.database.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM keys").fetchone()[0] > 0

    def delete(self, recordId: str) -> bool:
        with self.database.lock:
            with self.database.connect() as conn:
                cursor = conn.execute("DELETE FROM keys WHERE id = ?", (recordId,))
                return cursor.rowcount > 0

    def clear(self) -> int:
        with self.database.lock:
            with self.database.connect() as conn:
                return conn.execute("DELETE FROM keys").rowcount

    def _toRecord(self, row) -> KeyPairRecord:
        return KeyPairRecord(**{c: row[c] for c in self.COLUMNS})


class SecretStore:
    """Persistent store of derived shared secrets"""

    COLUMNS = ('id', 'encryptionSecret', 'macSecret', 'senderPublicKey', 'createdAt')

    def __init__(self, database: LocalDatabase):
        self.database = database

    def put(self, record: SharedSecretRecord) -> SharedSecretRecord:
        """Store a secret, replacing any previous one for the same counterparty"""
        values = asdict(record)
        placeholders = ', '.join('?' for _ in self.COLUMNS)

        with self.database.lock:
            with self.database.connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO sharedSecrets ({', '.join(self.COLUMNS)}) VALUES ({placeholders})",
                    tuple(values[c] for c in self.COLUMNS),
                )

        logger.debug(f'[KeyStore] Stored shared secret for ...{record.id[-12:]}')
        return record

    def get(self, counterpartyPublicKey: str) -> Optional[SharedSecretRecord]:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM sharedSecrets WHERE id = ?", (counterpartyPublicKey,)).fetchone()
        return self._toRecord(row) if row else None

    def findByExchange(self, senderPublicKey: str) -> Optional[SharedSecretRecord]:
        """Newest secret established for the exchange started by senderPublicKey"""
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sharedSecrets WHERE senderPublicKey = ? ORDER BY createdAt DESC LIMIT 1",
                (senderPublicKey,),
            ).fetchone()
        return self._toRecord(row) if row else None

    def list(self) -> List[SharedSecretRecord]:
        with self.database.connect() as conn:
            rows = conn.execute("SELECT * FROM sharedSecrets ORDER BY createdAt").fetchall()
        return [self._toRecord(row) for row in rows]

    def delete(self, counterpartyPublicKey: str) -> bool:
        with self.database.lock:
            with self.database.connect() as conn:
                cursor = conn.execute("DELETE FROM sharedSecrets WHERE id = ?", (counterpartyPublicKey,))
                return cursor.rowcount > 0

    def clear(self) -> int:
        with self.database.lock:
            with self.database.connect() as conn:
                return conn.execute("DELETE FROM sharedSecrets").rowcount

    def _toRecord(self, row) -> SharedSecretRecord:
        return SharedSecretRecord(**{c: row[c] for c in self.COLUMNS})


def forgetAllKeys(keyStore: KeyStore, secretStore: SecretStore):
    """Clear both tables, returns (keysRemoved, secretsRemoved)"""
    removed = (keyStore.clear(), secretStore.clear())
    logger.info(f'[KeyStore] Forgot {removed[0]} key pair(s) and {removed[1]} shared secret(s)')
    return removed


def openStores(path: str):
    """Open (KeyStore, SecretStore) over one database file"""
    database = LocalDatabase(path)
    return KeyStore(database), SecretStore(database)
