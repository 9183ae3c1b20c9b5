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
Share server: the authoritative side of access control.

Endpoints (key = sender's public key identifier):
- GET    /metadata?key=<id>   envelope JSON
- PUT    /metadata?key=<id>   decrement accessCount by one, returns {"accessCount": n}
- GET    /file?key=<id>       ciphertext, released only if AccessPolicy allows it now
- DELETE /file?key=<id>       remove ciphertext and envelope from every backend
- POST   /upload?key=<id>     {"metadata": {...}, "file": "<base64>"}
- POST   /delete-expired      expiry sweep (admin)
- GET    /files               envelope listing (admin)

Denials answer 403 with {"error": "...", "reasons": ["Expired", ...]}.
"""

import base64
import binascii
import hmac
import json
import threading
import time
import zlib

from datetime import datetime
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from bases.Kernel import ShaheenEvent, getLogger
from bases.Access import AccessPolicy, DenialReason
from bases.BlobStore import BlobStore, ciphertextName, keyFromMetadataName, metadataName, METADATA_SUFFIX
from bases.E2EE import shortKey
from bases.Envelope import MetadataEnvelope, formatISODate
from bases import Settings
from bases.Settings import (
    DEFAULT_ADMIN_USER_NAME,
    AccessDeniedError, BlobNotFoundError, FileRejectedError, MalformedEnvelopeError, ShaheenError
)

logger = getLogger(__name__)

DEFAULT_SHARE_HOST = '127.0.0.1'
DISCARD_CHUNK = 64 * 1024
LOCK_STRIPES = 64

# Denials that make an envelope permanently useless
TERMINAL_REASONS = (DenialReason.EXPIRED, DenialReason.ACCESS_COUNT_EXHAUSTED)


class ShareService:
    """
    Envelope and ciphertext operations on top of a BlobStore.

    accessCount is the only mutable field; every read-modify-write of an envelope
    happens under that envelope's lock, so two concurrent downloads can never both
    consume the last permitted access. Locks come from a fixed pool striped by key,
    so unknown keys named by clients never grow server state.
    """

    def __init__(self, blobStore: BlobStore, policy: Optional[AccessPolicy] = None):
        self.blobStore = blobStore
        self.policy = policy or AccessPolicy()
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lockFor(self, key: str) -> threading.Lock:
        # Never held across two keys at once, shared stripes cannot deadlock
        return self._locks[zlib.crc32(key.encode('utf-8')) % len(self._locks)]

    def _loadEnvelope(self, key: str) -> MetadataEnvelope:
        return MetadataEnvelope.deserialize(self.blobStore.get(metadataName(key)))

    def _remove(self, key: str, reason: str):
        """Delete ciphertext and envelope, each attempted even if the other fails"""
        errors = []
        for name in (ciphertextName(key), metadataName(key)):
            try:
                self.blobStore.delete(name)
            except ShaheenError as e:
                logger.warning(f'[Server] Unable to delete {name}: {e}')
                errors.append(e)

        logger.info(f'[Server] Deleted ...{shortKey(key)} ({reason})')
        ShaheenEvent.envelopeDelete.trigger(key=key, reason=reason)

        if len(errors) == 2:
            raise errors[0]

    def _denyIfNeeded(self, key: str, envelope: MetadataEnvelope, now: Optional[datetime]):
        decision = self.policy.evaluate(envelope, now)
        if decision:
            return

        if any(r in TERMINAL_REASONS for r in decision.reasons):
            self._remove(key, ', '.join(r.value for r in decision.reasons))

        raise AccessDeniedError(decision.reasons)

    def getMetadata(self, key: str, now: Optional[datetime] = None) -> MetadataEnvelope:
        """
        Raises:
            BlobNotFoundError: If no envelope exists, or it has just been reaped as expired
        """
        with self._lockFor(key):
            envelope = self._loadEnvelope(key)
            if self.policy.isExpired(envelope, now):
                self._remove(key, DenialReason.EXPIRED.value)
                raise BlobNotFoundError(f'Envelope ...{shortKey(key)} has expired')
            return envelope

    def decrementAccessCount(self, key: str, now: Optional[datetime] = None) -> int:
        """
        Consume one access, returns the remaining count.

        Raises:
            AccessDeniedError: If the policy denies access now (already zero, expired, ...)
            BlobNotFoundError: If no envelope exists
            StoreUnavailableError: If a backend holding the envelope rejected the new count,
                the access is not granted
        """
        with self._lockFor(key):
            envelope = self._loadEnvelope(key)
            self._denyIfNeeded(key, envelope, now)

            remaining = envelope.accessCount - 1
            # Every copy must carry the new count, a stale copy would hand the access back
            self.blobStore.replace(metadataName(key), envelope.withAccessCount(remaining).serialize())

        logger.info(f'[Server] ...{shortKey(key)} accessCount {envelope.accessCount} -> {remaining}')
        return remaining

    def getFile(self, key: str, now: Optional[datetime] = None) -> bytes:
        """
        Release ciphertext bytes after evaluating the policy. The count is not
        consumed here, the client confirms a successful decrypt with PUT /metadata.

        Raises:
            AccessDeniedError: If the policy denies access now
            BlobNotFoundError: If the envelope or ciphertext is absent
        """
        with self._lockFor(key):
            envelope = self._loadEnvelope(key)
            self._denyIfNeeded(key, envelope, now)
            return self.blobStore.get(ciphertextName(key))

    def deleteFile(self, key: str):
        with self._lockFor(key):
            self._remove(key, 'deleted')

    def upload(self, key: str, metadata: dict, ciphertext: bytes) -> MetadataEnvelope:
        """
        Store a new transfer. A previous transfer under the same key is replaced.

        Raises:
            MalformedEnvelopeError: If metadata does not describe a valid envelope
        """
        envelope = MetadataEnvelope.fromDict(metadata)
        if envelope.accessCount <= 0:
            raise MalformedEnvelopeError('accessCount must be at least 1 on upload')

        with self._lockFor(key):
            # Ciphertext first, an envelope is never visible without its bytes
            self.blobStore.put(ciphertextName(key), ciphertext)
            self.blobStore.put(metadataName(key), envelope.serialize())

        logger.info(f'[Server] Stored {envelope.name} ({len(ciphertext)} bytes) as ...{shortKey(key)}')
        return envelope

    def keys(self):
        return [keyFromMetadataName(n) for n in self.blobStore.list() if n.endswith(METADATA_SUFFIX)]

    def listFiles(self):
        files = []
        for key in self.keys():
            try:
                envelope = self._loadEnvelope(key)
            except (BlobNotFoundError, MalformedEnvelopeError) as e:
                logger.warning(f'[Server] Skipping ...{shortKey(key)}: {e}')
                continue

            locate = getattr(self.blobStore, 'locate', None)
            files.append({
                'key': key,
                'name': envelope.name,
                'fileSize': envelope.fileSize,
                'uploadDate': formatISODate(envelope.uploadDate),
                'effectiveExpiration': formatISODate(envelope.effectiveExpiration(self.policy.expirationDays)),
                'accessCount': envelope.accessCount,
                'backends': locate(metadataName(key)) if locate else [self.blobStore.name],
            })
        return files

    def deleteExpired(self, now: Optional[datetime] = None):
        """Reap every envelope past its effective expiration or out of accesses, returns the keys removed"""
        removed = []
        for key in self.keys():
            with self._lockFor(key):
                try:
                    envelope = self._loadEnvelope(key)
                except BlobNotFoundError:
                    continue
                except MalformedEnvelopeError as e:
                    logger.warning(f'[Server] Unreadable envelope ...{shortKey(key)}: {e}')
                    continue

                if self.policy.isExpired(envelope, now):
                    self._remove(key, DenialReason.EXPIRED.value)
                    removed.append(key)
                elif envelope.accessCount <= 0:
                    self._remove(key, DenialReason.ACCESS_COUNT_EXHAUSTED.value)
                    removed.append(key)

        logger.info(f'[Server] Expiry sweep removed {len(removed)} transfer(s)')
        return removed


class AuthMixin:
    """
    A mixin to handle Basic Authentication for BaseHTTPRequestHandler.
    Only endpoints that call handleAuthentication() are protected.
    """
    REALM = 'Shaheen Administration'

    def handleAuthentication(self):
        """
        Checks the 'Authorization' header and validates user credentials.

        Returns:
            bool: True if authentication is successful, False otherwise.
        """
        # Skip auth if not configured (password is required to enable auth)
        if not getattr(self.server, 'authPassword', None):
            return True

        authHeader = self.headers.get('Authorization')

        if not authHeader or not authHeader.startswith('Basic '):
            logger.warning("[Server] Authentication challenge sent: No or invalid auth header")
            self.sendAuthChallenge()
            return False

        try:
            credentials = base64.b64decode(authHeader.split(' ')[1]).decode('utf-8')
            username, password = credentials.split(':', 1)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            logger.error(f"[Server] Error decoding credentials: {e}")
            self.sendAuthChallenge()
            return False

        if username == self.server.authUser and hmac.compare_digest(password, self.server.authPassword):
            return True

        logger.warning(f"[Server] Authentication failed for user '{username}'")
        self.sendAuthChallenge()
        return False

    def sendAuthChallenge(self):
        data = b'Authentication required'
        self.send_response(HTTPStatus.UNAUTHORIZED)
        self.send_header('WWW-Authenticate', f'Basic realm="{self.REALM}"')
        self.send_header('Content-Type', 'text/plain; charset=utf-8')
        self.send_header('Content-Length', str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class ShareServer(ThreadingHTTPServer):
    """
    HTTP front of a ShareService.

    Binds to loopback by default. Admin endpoints (/files, /delete-expired) require
    HTTP Basic auth when authPassword is set.
    """

    daemon_threads = True

    def __init__(
        self,
        service: ShareService,
        host: str = DEFAULT_SHARE_HOST,
        port: int = 0,
        authUser: Optional[str] = DEFAULT_ADMIN_USER_NAME,
        authPassword: Optional[str] = None,
        maxUploadSize: int = None,
    ):
        self.service = service
        self.host = host
        self.authUser = authUser
        self.authPassword = authPassword
        self.maxUploadSize = Settings.MAX_UPLOAD_SIZE if maxUploadSize is None else maxUploadSize
        self._thread = None
        self._running = False

        super().__init__((host, port), self._createHandler())

    @property
    def actualPort(self) -> int:
        return self.server_port

    @property
    def url(self) -> str:
        return f'http://{self.host}:{self.actualPort}'

    def start(self, blocking: bool = False) -> None:
        """
        Args:
            blocking: If True, serves on the calling thread until shutdown

        Raises:
            RuntimeError: If server already started
        """
        if self._running:
            raise RuntimeError("Server already started")

        self._running = True
        logger.info(f"[Server] Listening on {self.url}")

        if blocking:
            self.serve_forever()
        else:
            self._thread = threading.Thread(target=self.serve_forever, daemon=True)
            self._thread.start()
            # Give server time to start
            time.sleep(0.1)

    def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self.shutdown()
        self.server_close()

        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None

        logger.debug("[Server] Stopped")

    def _createHandler(self):
        """Create HTTP request handler class"""
        server = self
        service = self.service

        class ShareHandler(AuthMixin, BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                logger.debug(f"[Server] HTTP: {format % args}")

            def do_GET(self):
                self._dispatch({
                    '/metadata': self._handleGetMetadata,
                    '/file': self._handleGetFile,
                    '/files': self._handleListFiles,
                })

            def do_PUT(self):
                self._dispatch({'/metadata': self._handleDecrement})

            def do_DELETE(self):
                self._dispatch({'/file': self._handleDeleteFile})

            def do_POST(self):
                self._dispatch({
                    '/upload': self._handleUpload,
                    '/delete-expired': self._handleDeleteExpired,
                })

            def _dispatch(self, handlers):
                try:
                    parsed = urlparse(self.path)
                    handler = handlers.get(parsed.path.rstrip('/') or '/')
                    if handler is None:
                        self._sendError(404, 'Unknown endpoint')
                        return
                    handler(parse_qs(parsed.query))

                except AccessDeniedError as e:
                    self._sendJson(403, {'error': str(e), 'reasons': [r.value for r in e.reasons]})
                except ShaheenError as e:
                    code = e.statusCode or 500
                    if code >= 500:
                        logger.error(f"[Server] {self.command} {self.path} failed: {e}")
                    self._sendError(code, str(e))
                except Exception as e:
                    logger.exception(f"[Server] Error handling request: {e}")
                    self._sendError(500, str(e))

            def _requireKey(self, query) -> Optional[str]:
                key = query.get('key', [None])[0]
                if not key:
                    self._sendError(400, 'Missing key parameter')
                return key

            def _handleGetMetadata(self, query):
                key = self._requireKey(query)
                if key:
                    self._sendJson(200, service.getMetadata(key).toDict())

            def _handleDecrement(self, query):
                key = self._requireKey(query)
                if key:
                    self._sendJson(200, {'accessCount': service.decrementAccessCount(key)})

            def _handleGetFile(self, query):
                key = self._requireKey(query)
                if key:
                    self._sendBytes(200, service.getFile(key), 'application/octet-stream')

            def _handleDeleteFile(self, query):
                key = self._requireKey(query)
                if key:
                    service.deleteFile(key)
                    self._sendJson(200, {'deleted': key})

            def _handleUpload(self, query):
                key = self._requireKey(query)
                if not key:
                    return

                try:
                    length = int(self.headers.get('Content-Length') or 0)
                except ValueError as e:
                    raise MalformedEnvelopeError(f'Invalid Content-Length: {e}') from e
                if length < 0:
                    raise MalformedEnvelopeError(f'Invalid Content-Length: {length}')
                if length > server.maxUploadSize:
                    self._discardBody(length)
                    raise FileRejectedError(f'Upload of {length} bytes exceeds the {server.maxUploadSize} byte limit')

                try:
                    body = json.loads(self.rfile.read(length).decode('utf-8'))
                    metadata = body['metadata']
                    ciphertext = base64.b64decode(body['file'], validate=True)
                except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error) as e:
                    raise MalformedEnvelopeError(f'Invalid upload body: {e}') from e

                envelope = service.upload(key, metadata, ciphertext)
                self._sendJson(201, {'key': key, 'name': envelope.name})

            def _discardBody(self, length: int):
                # Unread request bytes would reset the connection before the client sees the answer
                while length > 0:
                    chunk = self.rfile.read(min(length, DISCARD_CHUNK))
                    if not chunk:
                        break
                    length -= len(chunk)

            def _handleListFiles(self, query):
                if self.handleAuthentication():
                    self._sendJson(200, {'files': service.listFiles()})

            def _handleDeleteExpired(self, query):
                if self.handleAuthentication():
                    self._sendJson(200, {'deleted': service.deleteExpired()})

            def _sendBytes(self, code: int, data: bytes, ctype: str):
                self.send_response(code)
                self.send_header("Content-Type", ctype)
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def _sendJson(self, code: int, obj: dict):
                self._sendBytes(code, json.dumps(obj).encode("utf-8"), "application/json; charset=utf-8")

            def _sendError(self, code: int, msg: str):
                self._sendJson(code, {'error': msg})

        return ShareHandler
