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
Transfer protocol state machines.

Sender:    KeysPending -> KeysEstablished -> AwaitingCounterpartyKeys -> SecretEstablished
           -> ReadyToUpload -> Uploaded
Recipient: AwaitingRequest -> KeysGenerated -> SecretEstablished -> NotifiedSender
           (-> Downloading -> Downloaded)

Any ShaheenError moves the orchestrator to Failed, records the reason, triggers
ShaheenEvent.transferStateUpdate and propagates. Persisted keys and secrets are
kept so the failing step can simply be run again.

Crypto, store and network calls block, so each one is awaited on the default
executor and never runs on the event loop thread.
"""

import asyncio
import functools
import mimetypes
import os

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bases.Kernel import ShaheenEvent, getLogger
from bases.Access import AccessPolicy
from bases.Client import ShareClient
from bases.E2EE import FileCipher, IntegrityMAC, KeyAgreement, shortKey
from bases.Envelope import MetadataEnvelope, formatISODate
from bases.KeyStore import (
    ROLE_RECIPIENT, ROLE_SENDER, KeyPairRecord, KeyStore, SecretStore, SharedSecretRecord
)
from bases.Notify import NotificationChannel, TransferRequest, TransferResponse, TransferRules
from bases import Settings
from bases.Settings import (
    ALLOWED_FILE_EXTENSIONS, ALLOWED_FILE_TYPES, DEFAULT_APP_URL,
    FileRejectedError, KeyAgreementError, ShaheenError
)
from bases.Utils import formatSize

logger = getLogger(__name__)


class SenderState(Enum):
    KEYS_PENDING = 'KeysPending'
    KEYS_ESTABLISHED = 'KeysEstablished'
    AWAITING_COUNTERPARTY_KEYS = 'AwaitingCounterpartyKeys'
    SECRET_ESTABLISHED = 'SecretEstablished'
    READY_TO_UPLOAD = 'ReadyToUpload'
    UPLOADED = 'Uploaded'
    FAILED = 'Failed'


class RecipientState(Enum):
    AWAITING_REQUEST = 'AwaitingRequest'
    KEYS_GENERATED = 'KeysGenerated'
    SECRET_ESTABLISHED = 'SecretEstablished'
    NOTIFIED_SENDER = 'NotifiedSender'
    DOWNLOADING = 'Downloading'
    DOWNLOADED = 'Downloaded'
    FAILED = 'Failed'


@dataclass
class DownloadResult:
    envelope: MetadataEnvelope
    plaintext: bytes
    remainingAccessCount: int


def validateUpload(fileName: str, size: int, fileType: Optional[str] = None, maxFileSize: int = None):
    """
    Raises:
        FileRejectedError: 413 when the file is too large, 415 when its type is not allowed
    """
    maxFileSize = Settings.MAX_FILE_SIZE if maxFileSize is None else maxFileSize
    if size > maxFileSize:
        raise FileRejectedError(f'{fileName} is {formatSize(size)}, the limit is {formatSize(maxFileSize)}', 413)

    extension = os.path.splitext(fileName)[1].lower()
    if extension not in ALLOWED_FILE_EXTENSIONS and fileType not in ALLOWED_FILE_TYPES:
        raise FileRejectedError(
            f"{fileName}: file type not allowed, use one of {', '.join(ALLOWED_FILE_EXTENSIONS)}", 415
        )


class _Orchestrator:
    """State bookkeeping shared by both roles"""

    FAILED = None

    def __init__(self, initialState):
        self.state = initialState
        self.failureReason: Optional[ShaheenError] = None

    @property
    def failed(self) -> bool:
        return self.state == self.FAILED

    def _transition(self, state, error=None):
        previous = self.state
        self.state = state
        logger.debug(f'[Transfer] {type(self).__name__}: {previous.value} -> {state.value}')
        ShaheenEvent.transferStateUpdate.trigger(sender=self, state=state, previous=previous, error=error)

    @contextmanager
    def _failOnError(self, step: str):
        try:
            yield
        except ShaheenError as e:
            if self.failureReason is e:
                # Already recorded by a nested step
                raise
            self.failureReason = e
            logger.error(f'[Transfer] {step} failed in {self.state.value}: {e}')
            self._transition(self.FAILED, error=e)
            raise

    @staticmethod
    async def _run(func, *args, **kwargs):
        return await asyncio.get_event_loop().run_in_executor(None, functools.partial(func, *args, **kwargs))


class SenderOrchestrator(_Orchestrator):
    """
    Sender side of one transfer.

    Usage:
        sender = SenderOrchestrator(keyStore, secretStore, notifier, client)
        request = await sender.initiate('alice@example.com', 'bob@example.com', 'report.pdf')
        ...  # recipient answers with an upload link
        await sender.completeExchange(TransferResponse.fromLink(uploadLink))
        await sender.upload(data)
    """

    FAILED = SenderState.FAILED

    def __init__(
        self,
        keyStore: KeyStore,
        secretStore: SecretStore,
        notifier: NotificationChannel,
        client: ShareClient,
        keyAgreement: KeyAgreement = None,
        cipher: FileCipher = None,
        appURL: str = DEFAULT_APP_URL,
        maxFileSize: int = None,
    ):
        super().__init__(SenderState.KEYS_PENDING)
        self.keyStore = keyStore
        self.secretStore = secretStore
        self.notifier = notifier
        self.client = client
        self.keyAgreement = keyAgreement or KeyAgreement()
        self.cipher = cipher or FileCipher(self.keyAgreement.crypto)
        self.appURL = appURL
        self.maxFileSize = maxFileSize

        self.record: Optional[KeyPairRecord] = None
        self.request: Optional[TransferRequest] = None
        self.secret: Optional[SharedSecretRecord] = None

    @property
    def senderPublicKey(self) -> Optional[str]:
        return self.record.ownPublicKey if self.record else None

    async def initiate(self, senderEmail, recipientEmail, fileName, rules: TransferRules = None) -> TransferRequest:
        """Generate both key pairs, persist them and send the receive link to the recipient"""
        self._transition(SenderState.KEYS_PENDING)

        with self._failOnError('initiate'):
            encryptionPair = await self._run(self.keyAgreement.generateKeyPair)
            macPair = await self._run(self.keyAgreement.generateKeyPair)

            record = KeyPairRecord(
                id=encryptionPair.publicKey,
                role=ROLE_SENDER,
                ownPrivateKey=encryptionPair.privateKey,
                ownPublicKey=encryptionPair.publicKey,
                ownMacPrivateKey=macPair.privateKey,
                ownMacPublicKey=macPair.publicKey,
            )
            self.record = await self._run(self.keyStore.put, record)
            self.secret = None
            self._transition(SenderState.KEYS_ESTABLISHED)

            self.request = TransferRequest(
                senderEmail=senderEmail,
                recipientEmail=recipientEmail,
                fileName=fileName,
                senderPublicKey=record.ownPublicKey,
                macSenderPublicKey=record.ownMacPublicKey,
                rules=rules,
            )
            await self._run(self.notifier.notify, recipientEmail, self.request.toMessage(self.appURL))
            self._transition(SenderState.AWAITING_COUNTERPARTY_KEYS)

        logger.info(f'[Transfer] Sent receive link for {fileName} to {recipientEmail}')
        return self.request

    async def resume(self, senderPublicKey: str):
        """Reload a transfer started earlier (possibly by another process)"""
        with self._failOnError('resume'):
            record = await self._run(self.keyStore.get, senderPublicKey)
            if record is None or record.role != ROLE_SENDER:
                raise KeyAgreementError(f'No sender key pair ...{shortKey(senderPublicKey)} in the key store')

            self.record = record
            self.secret = await self._run(self.secretStore.findByExchange, senderPublicKey)

        self._transition(
            SenderState.SECRET_ESTABLISHED if self.secret else SenderState.AWAITING_COUNTERPARTY_KEYS
        )
        return self

    async def completeExchange(self, response: TransferResponse) -> SharedSecretRecord:
        """Derive both secrets from the recipient's public keys and persist them"""
        with self._failOnError('completeExchange'):
            if self.record is None or self.record.ownPublicKey != response.senderPublicKey:
                await self.resume(response.senderPublicKey)

            encryptionSecret = await self._run(
                self.keyAgreement.deriveSharedSecretHex, self.record.ownPrivateKey, response.recipientPublicKey
            )
            macSecret = await self._run(
                self.keyAgreement.deriveSharedSecretHex, self.record.ownMacPrivateKey, response.macRecipientPublicKey
            )

            self.secret = await self._run(self.secretStore.put, SharedSecretRecord(
                id=response.recipientPublicKey,
                encryptionSecret=encryptionSecret,
                macSecret=macSecret,
                senderPublicKey=self.record.ownPublicKey,
            ))
            self._transition(SenderState.SECRET_ESTABLISHED)

        logger.info(f'[Transfer] Shared secret established with {response.recipientEmail}')
        return self.secret

    async def upload(self, plaintext: bytes, fileName: str = None, fileType: str = None,
                     rules: TransferRules = None, now: datetime = None) -> MetadataEnvelope:
        """Encrypt, MAC and upload; the envelope is keyed by the sender's public key"""
        with self._failOnError('upload'):
            if self.secret is None:
                raise KeyAgreementError('No shared secret yet, complete the key exchange first')

            fileName = fileName or (self.request.fileName if self.request else None)
            if not fileName:
                raise FileRejectedError('A file name is required', 400)
            fileType = fileType or mimetypes.guess_type(fileName)[0] or 'application/octet-stream'
            rules = rules or (self.request.rules if self.request else TransferRules())

            validateUpload(fileName, len(plaintext), fileType, self.maxFileSize)
            self._transition(SenderState.READY_TO_UPLOAD)

            ciphertext = await self._run(self.cipher.encrypt, plaintext, self.secret.encryptionSecret)
            mac = await self._run(IntegrityMAC.compute, ciphertext, self.secret.macSecret)

            envelope = MetadataEnvelope.fromDict({
                'name': fileName,
                'description': rules.description,
                'fileSize': len(plaintext),
                'fileType': fileType,
                'uploadDate': formatISODate(now or datetime.now(timezone.utc)),
                'startDate': rules.startDate,
                'expirationDate': rules.expirationDate,
                'accessCount': Settings.DEFAULT_ACCESS_COUNT if rules.accessCount is None else rules.accessCount,
                'accessTime': rules.accessTime,
                'mac': mac,
            })

            await self._run(self.client.upload, self.senderPublicKey, envelope, ciphertext)
            self._transition(SenderState.UPLOADED)

        return envelope


class RecipientOrchestrator(_Orchestrator):
    """Recipient side of one transfer"""

    FAILED = RecipientState.FAILED

    def __init__(
        self,
        keyStore: KeyStore,
        secretStore: SecretStore,
        notifier: NotificationChannel,
        client: ShareClient,
        keyAgreement: KeyAgreement = None,
        cipher: FileCipher = None,
        policy: AccessPolicy = None,
        appURL: str = DEFAULT_APP_URL,
    ):
        super().__init__(RecipientState.AWAITING_REQUEST)
        self.keyStore = keyStore
        self.secretStore = secretStore
        self.notifier = notifier
        self.client = client
        self.keyAgreement = keyAgreement or KeyAgreement()
        self.cipher = cipher or FileCipher(self.keyAgreement.crypto)
        self.policy = policy or AccessPolicy()
        self.appURL = appURL

        self.record: Optional[KeyPairRecord] = None
        self.response: Optional[TransferResponse] = None
        self.secret: Optional[SharedSecretRecord] = None

    async def acceptRequest(self, request: TransferRequest) -> TransferResponse:
        """Generate own keys, derive both secrets and send the upload link back"""
        with self._failOnError('acceptRequest'):
            # Fail on bad sender keys before anything is generated or stored
            senderPublicKey = await self._run(self.keyAgreement.importPublicKey, request.senderPublicKey)
            macSenderPublicKey = await self._run(self.keyAgreement.importPublicKey, request.macSenderPublicKey)

            encryptionPair = await self._run(self.keyAgreement.generateKeyPair)
            macPair = await self._run(self.keyAgreement.generateKeyPair)

            self.record = await self._run(self.keyStore.put, KeyPairRecord(
                id=encryptionPair.publicKey,
                role=ROLE_RECIPIENT,
                ownPrivateKey=encryptionPair.privateKey,
                ownPublicKey=encryptionPair.publicKey,
                ownMacPrivateKey=macPair.privateKey,
                ownMacPublicKey=macPair.publicKey,
                counterpartyPublicKeyRef=request.senderPublicKey,
            ))
            self._transition(RecipientState.KEYS_GENERATED)

            encryptionSecret = await self._run(
                self.keyAgreement.deriveSharedSecretHex, encryptionPair.privateKey, senderPublicKey
            )
            macSecret = await self._run(
                self.keyAgreement.deriveSharedSecretHex, macPair.privateKey, macSenderPublicKey
            )

            self.secret = await self._run(self.secretStore.put, SharedSecretRecord(
                id=request.senderPublicKey,
                encryptionSecret=encryptionSecret,
                macSecret=macSecret,
                senderPublicKey=request.senderPublicKey,
            ))
            self._transition(RecipientState.SECRET_ESTABLISHED)

            self.response = TransferResponse.forRequest(request, encryptionPair.publicKey, macPair.publicKey)
            await self._run(self.notifier.notify, request.senderEmail, self.response.toMessage(self.appURL))
            self._transition(RecipientState.NOTIFIED_SENDER)

        logger.info(f'[Transfer] Sent upload link for {request.fileName} to {request.senderEmail}')
        return self.response

    async def download(self, senderPublicKey: str, now: datetime = None) -> DownloadResult:
        """
        Fetch, verify and decrypt the file the sender uploaded.

        The MAC is checked before decryption; on mismatch nothing is decrypted.
        The access count is consumed only after a successful decrypt.

        Raises:
            AccessDeniedError: If the policy denies access (locally or on the server)
            IntegrityError: If the ciphertext does not match the envelope's MAC
            AuthenticationFailedError: If the cipher tag does not verify
        """
        self._transition(RecipientState.DOWNLOADING)

        with self._failOnError('download'):
            if self.secret is None or self.secret.id != senderPublicKey:
                self.secret = await self._run(self.secretStore.findByExchange, senderPublicKey)
            if self.secret is None:
                raise KeyAgreementError(f'No shared secret for sender ...{shortKey(senderPublicKey)}')

            envelope = await self._run(self.client.getMetadata, senderPublicKey)
            # Advisory, the server evaluates the same policy again before releasing bytes
            self.policy.evaluate(envelope, now).raiseIfDenied()

            ciphertext = await self._run(self.client.getFile, senderPublicKey)
            await self._run(IntegrityMAC.check, ciphertext, self.secret.macSecret, envelope.mac)

            plaintext = await self._run(self.cipher.decrypt, ciphertext, self.secret.encryptionSecret)
            remaining = await self._run(self.client.decrementAccessCount, senderPublicKey)
            self._transition(RecipientState.DOWNLOADED)

        logger.info(f'[Transfer] Downloaded {envelope.name} ({formatSize(len(plaintext))}), {remaining} access(es) left')
        return DownloadResult(envelope=envelope, plaintext=plaintext, remainingAccessCount=remaining)
