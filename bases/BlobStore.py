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
Object storage for ciphertext and envelopes.

Objects are addressed by the sender's public key identifier. Base64 may contain
"/", which is replaced by a reversible placeholder so the key is a flat name:
    <sanitized>.encrypted       ciphertext
    <sanitized>.metadata.json   MetadataEnvelope JSON
"""

import os
import tempfile

from abc import ABC, abstractmethod
from typing import List, Sequence

from bases.Kernel import getLogger
from bases.Settings import BlobNotFoundError, StoreUnavailableError

logger = getLogger(__name__)

SLASH_PLACEHOLDER = '__SLASH__'
CIPHERTEXT_SUFFIX = '.encrypted'
METADATA_SUFFIX = '.metadata.json'


def sanitizeKey(publicKey: str) -> str:
    return publicKey.replace('/', SLASH_PLACEHOLDER)


def unsanitizeKey(name: str) -> str:
    return name.replace(SLASH_PLACEHOLDER, '/')


def ciphertextName(publicKey: str) -> str:
    return f'{sanitizeKey(publicKey)}{CIPHERTEXT_SUFFIX}'


def metadataName(publicKey: str) -> str:
    return f'{sanitizeKey(publicKey)}{METADATA_SUFFIX}'


def keyFromMetadataName(name: str) -> str:
    """Inverse of metadataName"""
    if not name.endswith(METADATA_SUFFIX):
        raise ValueError(f'Not a metadata object name: {name}')
    return unsanitizeKey(name[:-len(METADATA_SUFFIX)])


class BlobStore(ABC):
    """Abstract object store"""

    name = 'blob'

    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """Store bytes under key, returns backend id"""
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return bytes, raises BlobNotFoundError if absent"""
        pass

    @abstractmethod
    def delete(self, key: str):
        """Remove key, absent keys are ignored"""
        pass

    @abstractmethod
    def list(self, prefix: str = '') -> List[str]:
        """Return the keys starting with prefix"""
        pass

    def replace(self, key: str, data: bytes) -> str:
        """Overwrite key, only succeeds if no reader can still see the previous bytes"""
        return self.put(key, data)

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
            return True
        except BlobNotFoundError:
            return False


class LocalBlobStore(BlobStore):
    """Directory-backed store, one file per key"""

    def __init__(self, rootDir: str, name: str = None):
        self.rootDir = os.path.abspath(rootDir)
        self.name = name or os.path.basename(self.rootDir) or 'local'
        try:
            os.makedirs(self.rootDir, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f'Unable to create blob directory {self.rootDir}: {e}') from e

    def _path(self, key: str) -> str:
        if not key or '/' in key or os.sep in key or key in ('.', '..'):
            raise ValueError(f'Invalid blob key: {key!r}')
        return os.path.join(self.rootDir, key)

    def put(self, key, data):
        path = self._path(key)
        try:
            # Write to a temp file first so readers never see a partial object
            fd, tempPath = tempfile.mkstemp(dir=self.rootDir, prefix='.tmp-')
        except OSError as e:
            raise StoreUnavailableError(f'[{self.name}] Unable to write {key}: {e}') from e

        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tempPath, path)
        except OSError as e:
            try:
                os.remove(tempPath)
            except OSError as cleanupError:
                logger.warning(f'[Blob] {self.name}: unable to remove {tempPath}: {cleanupError}')
            raise StoreUnavailableError(f'[{self.name}] Unable to write {key}: {e}') from e

        logger.debug(f'[Blob] {self.name}: stored {key} ({len(data)} bytes)')
        return path

    def get(self, key):
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError as e:
            raise BlobNotFoundError(f'[{self.name}] {key} not found') from e
        except OSError as e:
            raise StoreUnavailableError(f'[{self.name}] Unable to read {key}: {e}') from e

    def delete(self, key):
        path = self._path(key)
        try:
            os.remove(path)
            logger.debug(f'[Blob] {self.name}: deleted {key}')
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreUnavailableError(f'[{self.name}] Unable to delete {key}: {e}') from e

    def list(self, prefix=''):
        try:
            names = os.listdir(self.rootDir)
        except OSError as e:
            raise StoreUnavailableError(f'[{self.name}] Unable to list {self.rootDir}: {e}') from e

        return sorted(n for n in names if n.startswith(prefix) and not n.startswith('.tmp-'))


class MultiBlobStore(BlobStore):
    """
    Fans out over several backends (e.g. two cloud drives).

    - put: written to every backend, succeeds when at least one backend accepted it
    - replace: written to every backend holding the object, fails unless all of them accepted it
    - get: first backend that has the object wins
    - delete: attempted on every backend, a failing backend does not stop the others
    - list: union over all reachable backends
    """

    name = 'multi'

    def __init__(self, backends: Sequence[BlobStore]):
        if not backends:
            raise ValueError('MultiBlobStore needs at least one backend')
        self.backends = list(backends)

    def put(self, key, data):
        ids = []
        errors = []
        for backend in self.backends:
            try:
                ids.append(backend.put(key, data))
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: put {key} failed: {e}')
                errors.append(e)

        if not ids:
            raise StoreUnavailableError(f'No backend accepted {key}: {errors}')

        return ids[0]

    def replace(self, key, data):
        """
        Raises:
            StoreUnavailableError: If any backend holding key, or any backend that cannot
                tell whether it holds key, rejected the write
            BlobNotFoundError: If no backend holds key
        """
        ids = []
        for backend in self.backends:
            try:
                if backend.exists(key):
                    ids.append(backend.put(key, data))
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: replace {key} failed: {e}')
                raise StoreUnavailableError(f'[{backend.name}] {key} could not be replaced: {e}') from e

        if not ids:
            raise BlobNotFoundError(f'{key} not found on any backend')

        return ids[0]

    def get(self, key):
        lastError = None
        for backend in self.backends:
            try:
                return backend.get(key)
            except BlobNotFoundError as e:
                lastError = e
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: get {key} failed, trying next backend: {e}')
                lastError = e

        if isinstance(lastError, StoreUnavailableError):
            raise lastError
        raise BlobNotFoundError(f'{key} not found on any backend')

    def delete(self, key):
        errors = []
        for backend in self.backends:
            try:
                backend.delete(key)
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: delete {key} failed: {e}')
                errors.append(e)

        if len(errors) == len(self.backends):
            raise StoreUnavailableError(f'Delete of {key} failed on every backend: {errors}')

    def list(self, prefix=''):
        names = set()
        reachable = 0
        for backend in self.backends:
            try:
                names.update(backend.list(prefix))
                reachable += 1
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: list failed: {e}')

        if not reachable:
            raise StoreUnavailableError('No backend could be listed')

        return sorted(names)

    def locate(self, key) -> List[str]:
        """Names of the backends currently holding key"""
        holders = []
        for backend in self.backends:
            try:
                if backend.exists(key):
                    holders.append(backend.name)
            except StoreUnavailableError as e:
                logger.warning(f'[Blob] {backend.name}: exists {key} failed: {e}')
        return holders
