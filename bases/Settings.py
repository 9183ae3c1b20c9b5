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

import os

from bases.Kernel import Singleton, StorageLocator, getLogger
from bases.Utils import getEnv, ONE_MB


def loadLimits():
    """
    (Re)read the tunable limits from the environment. Runs at import and again after
    .env has been loaded; consumers read them as Settings.<NAME> when they need them.
    """
    global DEFAULT_EXPIRATION_DAYS, MAX_FILE_SIZE, MAX_UPLOAD_SIZE, DAYTIME_START, DAYTIME_END
    global MAX_DESCRIPTION_LENGTH, DEFAULT_ACCESS_COUNT, HTTP_TIMEOUT

    # Implicit expiration applied when an envelope carries no expirationDate
    DEFAULT_EXPIRATION_DAYS = getEnv('SHAHEEN_DEFAULT_EXPIRATION_DAYS', 60)

    # Client-side plaintext limit (free tier) and server-side request body limit
    MAX_FILE_SIZE = getEnv('SHAHEEN_MAX_FILE_SIZE', 4 * ONE_MB)
    MAX_UPLOAD_SIZE = getEnv('SHAHEEN_MAX_UPLOAD_SIZE', 50 * ONE_MB)

    # "daytime" access window, local hours [start, end)
    DAYTIME_START = getEnv('SHAHEEN_DAYTIME_START', 8)
    DAYTIME_END = getEnv('SHAHEEN_DAYTIME_END', 18)

    MAX_DESCRIPTION_LENGTH = getEnv('SHAHEEN_MAX_DESCRIPTION_LENGTH', 200)
    DEFAULT_ACCESS_COUNT = getEnv('SHAHEEN_DEFAULT_ACCESS_COUNT', 1)

    HTTP_TIMEOUT = getEnv('SHAHEEN_HTTP_TIMEOUT', 30.0)


loadLimits()

DEFAULT_APP_URL = getEnv('SHAHEEN_APP_URL', 'http://127.0.0.1:3000')
DEFAULT_SERVER_URL = getEnv('SHAHEEN_SERVER_URL', 'http://127.0.0.1:8700')
DEFAULT_SERVER_PORT = 8700

DEFAULT_ADMIN_USER_NAME = 'admin'

ALLOWED_FILE_TYPES = (
    'application/pdf',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'image/png',
    'image/jpeg',
    'text/plain',
)
ALLOWED_FILE_EXTENSIONS = ('.pdf', '.docx', '.png', '.jpg', '.jpeg', '.txt')

KEY_DATABASE_NAME = 'keys.db'
BLOB_DIR_NAME = 'blobs'
OUTBOX_DIR_NAME = 'outbox'

logger = getLogger(__name__)

# =============================================================================
# Exception Classes
# =============================================================================


class ShaheenError(Exception):
    """Base exception for every failure the transfer core reports"""

    retryable = False
    statusCode = None


class CryptoUnavailableError(ShaheenError):
    """Raised when no cryptographic backend providing ECDH/AES-GCM can be loaded"""
    statusCode = 500


class InvalidKeyEncodingError(ShaheenError):
    """Raised when a public or private key cannot be decoded from its exported form"""
    statusCode = 400


class MalformedEnvelopeError(ShaheenError):
    """Raised when a metadata envelope is not valid JSON or misses required fields"""
    statusCode = 400


class KeyAgreementError(ShaheenError):
    """Raised when ECDH derivation fails, e.g. keys on mismatched curves"""
    pass


class AuthenticationFailedError(ShaheenError):
    """Raised when the AES-GCM tag does not verify (tampering or wrong key)"""
    pass


class IntegrityError(ShaheenError):
    """Raised when the recomputed MAC does not match the envelope's MAC"""
    pass


class AccessDeniedError(ShaheenError):
    """Raised when the access policy denies a download"""
    statusCode = 403

    def __init__(self, reasons, message=None):
        self.reasons = list(reasons)
        super().__init__(message or '; '.join(r.describe() for r in self.reasons) or 'Access denied')


class StoreUnavailableError(ShaheenError):
    """Raised when local key/secret persistence or a blob backend fails"""
    retryable = True
    statusCode = 500


class KeyExistsError(ShaheenError):
    """Raised when a key pair record with the same identifier already exists"""
    pass


class BlobNotFoundError(ShaheenError):
    """Raised when a blob store has no object for the requested key"""
    statusCode = 404


class FileRejectedError(ShaheenError):
    """Raised when a file is too large or of a type that is not allowed"""

    def __init__(self, message, statusCode=413):
        super().__init__(message)
        self.statusCode = statusCode


class OutputPathError(ShaheenError):
    """Raised when a downloaded file could not be saved where the user asked"""


class NetworkError(ShaheenError):
    """Raised when a request to the share server or a notification endpoint cannot complete"""
    retryable = True


class APIError(ShaheenError):
    """Raised when the share server answers with an unexpected status"""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


# Singleton
class SettingsGetter(Singleton):

    def initialize(
        self,
        platform=None,
        storageDir=None,
        blobDirs=None,
        serverURL=DEFAULT_SERVER_URL,
        appURL=DEFAULT_APP_URL,
    ):
        """Resolve runtime configuration once for the whole process."""
        self._platform = platform
        self._storageDir = storageDir or StorageLocator.getInstance().ensureStorageDir()
        self._blobDirs = list(blobDirs) if blobDirs else self._resolveBlobDirs()
        self._serverURL = serverURL.rstrip('/')
        self._appURL = appURL.rstrip('/')

        logger.debug(
            f'[Settings] platform={self._platform}, storage={self._storageDir}, '
            f'blobs={self._blobDirs}, server={self._serverURL}'
        )

    def _resolveBlobDirs(self):
        configured = getEnv('SHAHEEN_BLOB_DIRS', '')
        if configured:
            return [d for d in configured.split(os.pathsep) if d]
        return [os.path.join(self._storageDir, BLOB_DIR_NAME)]

    @property
    def storageDir(self):
        return self._storageDir

    @property
    def blobDirs(self):
        return list(self._blobDirs)

    @property
    def serverURL(self):
        return self._serverURL

    @property
    def appURL(self):
        return self._appURL

    @property
    def keyDatabasePath(self):
        return os.path.join(self._storageDir, KEY_DATABASE_NAME)

    @property
    def outboxDir(self):
        return os.path.join(self._storageDir, OUTBOX_DIR_NAME)
