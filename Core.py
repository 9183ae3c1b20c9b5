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

import asyncio
import os
import platform
import sys

import requests

from bases.Kernel import SecretGetter, getLogger
from bases.Access import AccessPolicy
from bases.BlobStore import LocalBlobStore, MultiBlobStore
from bases.CLI import configureCLIParser, configureLogging, loadEnvFile, showVersion
from bases.Client import ShareClient
from bases.E2EE import shortKey
from bases.KeyStore import forgetAllKeys, openStores
from bases.Notify import OutboxNotifier, TransferRequest, TransferResponse, TransferRules, WebhookNotifier
from bases.Server import ShareServer, ShareService
from bases import Settings
from bases.Settings import (
    DEFAULT_ADMIN_USER_NAME, DEFAULT_APP_URL, DEFAULT_SERVER_URL,
    AccessDeniedError, AuthenticationFailedError, IntegrityError, OutputPathError, ShaheenError, SettingsGetter
)
from bases.Transfer import RecipientOrchestrator, SenderOrchestrator
from bases.Utils import flushPrint, formatSize, sendException

logger = getLogger(__name__)


def setupSettings():
    return SettingsGetter(
        platform=platform.system(),
        serverURL=os.getenv('SHAHEEN_SERVER_URL', DEFAULT_SERVER_URL),
        appURL=os.getenv('SHAHEEN_APP_URL', DEFAULT_APP_URL),
    )


def createNotifier(settings):
    """Webhook when SHAHEEN_NOTIFY_URL is configured, local outbox otherwise"""
    notifyURL = SecretGetter.getInstance().get('SHAHEEN_NOTIFY_URL')
    if notifyURL:
        return WebhookNotifier(notifyURL)
    return OutboxNotifier(settings.outboxDir)


def adminAuth():
    secretGetter = SecretGetter.getInstance()
    password = secretGetter.get('SHAHEEN_ADMIN_PASSWORD')
    if not password:
        return None
    return (secretGetter.get('SHAHEEN_ADMIN_USER') or DEFAULT_ADMIN_USER_NAME, password)


def createOrchestrator(cls, settings):
    keyStore, secretStore = openStores(settings.keyDatabasePath)
    return cls(
        keyStore, secretStore, createNotifier(settings), ShareClient(settings.serverURL), appURL=settings.appURL
    )


def processKeys(args, settings):
    keyStore, secretStore = openStores(settings.keyDatabasePath)

    if args.action == 'list':
        records = keyStore.list()
        secrets = secretStore.list()
        if not records and not secrets:
            flushPrint('No keys stored.')
            return 0

        for record in records:
            counterparty = f' for sender ...{shortKey(record.counterpartyPublicKeyRef)}' \
                if record.counterpartyPublicKeyRef else ''
            flushPrint(f'{record.role:<9} ...{shortKey(record.id)}  {record.createdAt}{counterparty}')
        for secret in secrets:
            flushPrint(f'secret    ...{shortKey(secret.id)}  {secret.createdAt}  exchange ...{shortKey(secret.senderPublicKey)}')
        return 0

    if not args.yes:
        answer = input('Forget all keys? Transfers in progress can no longer be completed. [y/N] ')
        if answer.strip().lower() not in ('y', 'yes'):
            flushPrint('Cancelled.')
            return 1

    keysRemoved, secretsRemoved = forgetAllKeys(keyStore, secretStore)
    flushPrint(f'Removed {keysRemoved} key pair(s) and {secretsRemoved} shared secret(s).')
    return 0


def processRequest(args, settings):
    sender = createOrchestrator(SenderOrchestrator, settings)
    rules = TransferRules(
        description=args.description,
        startDate=args.startDate,
        expirationDate=args.expirationDate,
        accessCount=args.accessCount,
        accessTime=args.accessTime,
    )
    request = asyncio.run(sender.initiate(args.senderEmail, args.recipientEmail, args.fileName, rules))

    flushPrint(f'Receive link sent to {args.recipientEmail}:')
    flushPrint(request.toLink(settings.appURL))
    return 0


def processRespond(args, settings):
    recipient = createOrchestrator(RecipientOrchestrator, settings)
    response = asyncio.run(recipient.acceptRequest(TransferRequest.fromLink(args.link)))

    flushPrint(f'Upload link sent to {response.senderEmail}:')
    flushPrint(response.toLink(settings.appURL))
    flushPrint(f'\nOnce the file is uploaded, run:\n  shaheen receive "{response.senderPublicKey}" <output path>')
    return 0


def processEstablish(args, settings):
    sender = createOrchestrator(SenderOrchestrator, settings)
    response = TransferResponse.fromLink(args.link)
    asyncio.run(sender.completeExchange(response))

    flushPrint(f'Shared secret established with {response.recipientEmail}.')
    return 0


def processSend(args, settings):
    sender = createOrchestrator(SenderOrchestrator, settings)
    response = TransferResponse.fromLink(args.link)

    with open(args.file, 'rb') as f:
        plaintext = f.read()

    async def establishAndUpload():
        await sender.resume(response.senderPublicKey)
        if sender.secret is None or sender.secret.id != response.recipientPublicKey:
            await sender.completeExchange(response)
        return await sender.upload(plaintext, fileName=response.fileName, rules=response.rules)

    envelope = asyncio.run(establishAndUpload())
    flushPrint(f'Uploaded {envelope.name} ({formatSize(envelope.fileSize)}), {envelope.accessCount} download(s) allowed.')
    return 0


def checkOutputPath(path):
    """
    Raises:
        OutputPathError: If path cannot be written, checked before a download consumes an access
    """
    directory = os.path.dirname(os.path.abspath(path))
    if os.path.isdir(path):
        raise OutputPathError(f'{path} is a directory')
    if not os.path.isdir(directory):
        raise OutputPathError(f'Directory {directory} does not exist')
    if not os.access(directory, os.W_OK) or (os.path.exists(path) and not os.access(path, os.W_OK)):
        raise OutputPathError(f'{path} is not writable')


def processReceive(args, settings):
    checkOutputPath(args.output)

    recipient = createOrchestrator(RecipientOrchestrator, settings)
    result = asyncio.run(recipient.download(args.senderPublicKey))

    try:
        with open(args.output, 'wb') as f:
            f.write(result.plaintext)
    except OSError as e:
        raise OutputPathError(f'Unable to save {args.output}: {e}') from e

    flushPrint(f'Saved {result.envelope.name} to {args.output} ({formatSize(len(result.plaintext))}).')
    if result.envelope.description:
        flushPrint(f'Note from sender: {result.envelope.description}')
    flushPrint(f'{result.remainingAccessCount} download(s) left.')
    return 0


def processDelete(args, settings):
    ShareClient(settings.serverURL).deleteFile(args.senderPublicKey)
    flushPrint(f'Deleted transfer ...{shortKey(args.senderPublicKey)}.')
    return 0


def processServe(args, settings):
    blobDirs = args.blobDirs or settings.blobDirs
    backends = [LocalBlobStore(d) for d in blobDirs]
    blobStore = backends[0] if len(backends) == 1 else MultiBlobStore(backends)

    auth = adminAuth()
    server = ShareServer(
        ShareService(blobStore, AccessPolicy()),
        host=args.host,
        port=args.port,
        authUser=auth[0] if auth else None,
        authPassword=auth[1] if auth else None,
    )

    flushPrint(f'Serving {len(backends)} blob backend(s) on {server.url}')
    try:
        server.start(blocking=True)
    finally:
        server.server_close()
    return 0


def processSweep(args, settings):
    deleted = ShareClient(settings.serverURL, auth=adminAuth()).deleteExpired()
    flushPrint(f'Deleted {len(deleted)} expired transfer(s).')
    return 0


COMMANDS = {
    'keys': processKeys,
    'request': processRequest,
    'respond': processRespond,
    'establish': processEstablish,
    'send': processSend,
    'receive': processReceive,
    'delete': processDelete,
    'serve': processServe,
    'sweep': processSweep,
}


def reportTransferError(e):
    """User-facing text for a failed step, by error kind"""
    if isinstance(e, (IntegrityError, AuthenticationFailedError)):
        flushPrint('WARNING: The file failed verification and was NOT decrypted. It may have been tampered with.')
        flushPrint(f'Details: {e}')
    elif isinstance(e, AccessDeniedError):
        flushPrint('Download not allowed:')
        for reason in e.reasons:
            flushPrint(f'  - {reason.describe()}')
    elif e.retryable:
        sendException(logger, e, action='This step can be retried, your keys are kept.')
        return
    else:
        flushPrint(f'Error: {e}')

    logger.debug(f'Transfer step failed: {e!r}')


def main(argv=None):
    parser, globalsParent = configureCLIParser()
    argv = sys.argv[1:] if argv is None else argv

    if len(argv) == 0:
        parser.print_help()
        return 0

    # .env before parsing and logging, limits re-read so its values take effect
    loadEnvFile()
    Settings.loadLimits()

    # Phase 1: global options first, so logging is configured before anything runs
    globalArgs, _ = globalsParent.parse_known_args(argv)
    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = setupSettings()

    try:
        return COMMANDS[args.command](args, settings)
    except ShaheenError as e:
        reportTransferError(e)
        return 1


if __name__ == '__main__':
    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except (requests.exceptions.ConnectionError, ConnectionError):
        sendException(logger, 'Failed to connect server')
        sys.exit(1)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)
