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

import base64
import http.client
import os
import tempfile
import threading
import unittest

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from bases.Kernel import ShaheenEvent
from bases.Access import AccessPolicy, DenialReason
from bases.BlobStore import LocalBlobStore, MultiBlobStore, ciphertextName, metadataName
from bases.Client import ShareClient
from bases.Envelope import MetadataEnvelope, formatISODate
from bases import Settings
from bases.Server import LOCK_STRIPES, ShareServer, ShareService
from bases.Settings import (
    AccessDeniedError, APIError, BlobNotFoundError, MalformedEnvelopeError, StoreUnavailableError
)

SENDER_KEY = 'MFkwEwYHKoZIzj0CAQYIKoZIzj0DAQcDQgAE/sender+key=='


def makeMetadata(accessCount=1, uploadDate=None, **overrides):
    metadata = {
        'name': 'report.pdf',
        'fileSize': 11,
        'fileType': 'application/pdf',
        'uploadDate': formatISODate(uploadDate or datetime.now(timezone.utc)),
        'accessCount': accessCount,
        'accessTime': 'alltime',
        'mac': 'ab' * 32,
    }
    metadata.update(overrides)
    return metadata


class ShareServiceTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.TemporaryDirectory()
        self.blobStore = LocalBlobStore(os.path.join(self.tempDir.name, 'blobs'))
        self.service = ShareService(self.blobStore, AccessPolicy(zone=timezone.utc))

    def tearDown(self):
        self.tempDir.cleanup()

    def testUploadStoresBothObjects(self):
        """Ciphertext and envelope are stored under the sanitized key"""
        self.service.upload(SENDER_KEY, makeMetadata(), b'ciphertext!')

        self.assertEqual(self.blobStore.get(ciphertextName(SENDER_KEY)), b'ciphertext!')
        self.assertEqual(self.service.getMetadata(SENDER_KEY).name, 'report.pdf')
        self.assertEqual(self.service.keys(), [SENDER_KEY])

    def testUploadValidatesEnvelope(self):
        """Malformed metadata and a zero count are refused"""
        with self.assertRaises(MalformedEnvelopeError):
            self.service.upload(SENDER_KEY, {'name': 'x'}, b'data')
        with self.assertRaises(MalformedEnvelopeError):
            self.service.upload(SENDER_KEY, makeMetadata(accessCount=0), b'data')

    def testConcurrentDecrement(self):
        """Concurrent downloads never consume more accesses than allowed"""
        self.service.upload(SENDER_KEY, makeMetadata(accessCount=5), b'data')

        def consume(_):
            try:
                return self.service.decrementAccessCount(SENDER_KEY)
            except (AccessDeniedError, BlobNotFoundError):
                return None

        with ThreadPoolExecutor(max_workers=16) as executor:
            results = list(executor.map(consume, range(40)))

        granted = [r for r in results if r is not None]
        self.assertEqual(sorted(granted), [0, 1, 2, 3, 4])

    def testExhaustedEnvelopeIsDeletedOnNextAccess(self):
        """Once the count is spent the next access is denied and removes the transfer"""
        deleted = []

        def onDelete(**kwargs):
            deleted.append(kwargs['key'])

        ShaheenEvent.envelopeDelete.subscribe(onDelete)
        try:
            self.service.upload(SENDER_KEY, makeMetadata(accessCount=1), b'data')
            self.assertEqual(self.service.getFile(SENDER_KEY), b'data')
            self.assertEqual(self.service.decrementAccessCount(SENDER_KEY), 0)

            with self.assertRaises(AccessDeniedError) as context:
                self.service.getFile(SENDER_KEY)
            self.assertEqual(context.exception.reasons, [DenialReason.ACCESS_COUNT_EXHAUSTED])

            with self.assertRaises(BlobNotFoundError):
                self.service.getFile(SENDER_KEY)
            self.assertEqual(deleted, [SENDER_KEY])
        finally:
            ShaheenEvent.envelopeDelete.unsubscribe(onDelete)

    def testExpiredOnRead(self):
        """Reading an expired envelope deletes it"""
        self.service.upload(SENDER_KEY, makeMetadata(uploadDate=datetime(2020, 1, 1, tzinfo=timezone.utc)), b'data')

        with self.assertRaises(BlobNotFoundError):
            self.service.getMetadata(SENDER_KEY)
        self.assertFalse(self.blobStore.exists(ciphertextName(SENDER_KEY)))

    def testNotYetStartedIsKept(self):
        """A denial that can still pass later does not delete anything"""
        startDate = formatISODate(datetime.now(timezone.utc) + timedelta(days=2))
        self.service.upload(SENDER_KEY, makeMetadata(startDate=startDate), b'data')

        with self.assertRaises(AccessDeniedError) as context:
            self.service.getFile(SENDER_KEY)
        self.assertEqual(context.exception.reasons, [DenialReason.NOT_YET_STARTED])
        self.assertTrue(self.blobStore.exists(metadataName(SENDER_KEY)))

    def testDeleteExpiredSweep(self):
        """The sweep uses the effective expiration, including the implicit one"""
        now = datetime(2025, 3, 5, tzinfo=timezone.utc)
        self.service.upload('implicit', makeMetadata(uploadDate=datetime(2025, 1, 1, tzinfo=timezone.utc)), b'1')
        self.service.upload('fresh', makeMetadata(uploadDate=datetime(2025, 3, 1, tzinfo=timezone.utc)), b'2')
        self.service.upload('explicit', makeMetadata(
            uploadDate=datetime(2025, 3, 1, tzinfo=timezone.utc), expirationDate='2025-03-02T00:00:00.000Z'
        ), b'3')

        self.assertEqual(sorted(self.service.deleteExpired(now)), ['explicit', 'implicit'])
        self.assertEqual(self.service.keys(), ['fresh'])

    def testListFilesOnMultipleBackends(self):
        """The listing reports which backends hold each transfer"""
        first = LocalBlobStore(os.path.join(self.tempDir.name, 'first'), name='first')
        second = LocalBlobStore(os.path.join(self.tempDir.name, 'second'), name='second')
        service = ShareService(MultiBlobStore([first, second]))
        service.upload(SENDER_KEY, makeMetadata(accessCount=2), b'data')

        files = service.listFiles()
        self.assertEqual(len(files), 1)
        self.assertEqual(files[0]['key'], SENDER_KEY)
        self.assertEqual(files[0]['accessCount'], 2)
        self.assertEqual(files[0]['backends'], ['first', 'second'])

        service.deleteFile(SENDER_KEY)
        self.assertEqual(first.list() + second.list(), [])

    def testDecrementNeedsEveryBackend(self):
        """A backend that keeps the old count fails the decrement instead of handing the access back"""
        first = LocalBlobStore(os.path.join(self.tempDir.name, 'first'), name='first')
        second = LocalBlobStore(os.path.join(self.tempDir.name, 'second'), name='second')
        service = ShareService(MultiBlobStore([first, second]), AccessPolicy(zone=timezone.utc))
        service.upload(SENDER_KEY, makeMetadata(accessCount=2), b'data')

        with mock.patch.object(first, 'put', side_effect=StoreUnavailableError('drive offline')):
            with self.assertRaises(StoreUnavailableError):
                service.decrementAccessCount(SENDER_KEY)

        self.assertEqual(service.getMetadata(SENDER_KEY).accessCount, 2)
        self.assertEqual(service.decrementAccessCount(SENDER_KEY), 1)
        self.assertEqual(service.decrementAccessCount(SENDER_KEY), 0)
        with self.assertRaises(AccessDeniedError):
            service.decrementAccessCount(SENDER_KEY)

    def testUnknownKeysDoNotGrowLocks(self):
        """Lookups of keys that were never uploaded keep a fixed lock pool"""
        for i in range(1000):
            with self.assertRaises(BlobNotFoundError):
                self.service.getMetadata(f'nokey{i}')

        self.assertEqual(len(self.service._locks), LOCK_STRIPES)
        self.assertIs(self.service._lockFor('nokey1'), self.service._lockFor('nokey1'))

    def testImplicitExpirationAgreesEverywhere(self):
        """Listing, download gate and sweep use the same fallback expiration"""
        uploadDate = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.service.upload(SENDER_KEY, makeMetadata(accessCount=3, uploadDate=uploadDate), b'data')
        deadline = uploadDate + timedelta(days=Settings.DEFAULT_EXPIRATION_DAYS)

        listed = self.service.listFiles()[0]['effectiveExpiration']
        self.assertEqual(listed, formatISODate(deadline))

        before = deadline - timedelta(seconds=1)
        self.assertEqual(self.service.getFile(SENDER_KEY, now=before), b'data')
        self.assertEqual(self.service.deleteExpired(before), [])

        after = deadline + timedelta(seconds=1)
        with self.assertRaises(AccessDeniedError) as context:
            self.service.getFile(SENDER_KEY, now=after)
        self.assertIn(DenialReason.EXPIRED, context.exception.reasons)

        self.service.upload(SENDER_KEY, makeMetadata(accessCount=3, uploadDate=uploadDate), b'data')
        self.assertEqual(self.service.deleteExpired(after), [SENDER_KEY])


class ShareServerTest(unittest.TestCase):

    ADMIN = ('admin', 'pa55word')

    def setUp(self):
        self.tempDir = tempfile.TemporaryDirectory()
        self.service = ShareService(LocalBlobStore(os.path.join(self.tempDir.name, 'blobs')))
        self.server = ShareServer(
            self.service, port=0, authUser=self.ADMIN[0], authPassword=self.ADMIN[1], maxUploadSize=4096
        )
        self.server.start()
        self.client = ShareClient(self.server.url, timeout=5, auth=self.ADMIN)

    def tearDown(self):
        self.server.stop()
        self.tempDir.cleanup()

    def _upload(self, accessCount=1, data=b'ciphertext!'):
        envelope = MetadataEnvelope.fromDict(makeMetadata(accessCount=accessCount))
        self.client.upload(SENDER_KEY, envelope, data)
        return envelope

    def testSingleUseDownload(self):
        """accessCount=1: one download, then AccessCountExhausted, then gone"""
        self._upload(accessCount=1)

        self.assertEqual(self.client.getMetadata(SENDER_KEY).accessCount, 1)
        self.assertEqual(self.client.getFile(SENDER_KEY), b'ciphertext!')
        self.assertEqual(self.client.decrementAccessCount(SENDER_KEY), 0)

        with self.assertRaises(AccessDeniedError) as context:
            self.client.getFile(SENDER_KEY)
        self.assertEqual(context.exception.reasons, [DenialReason.ACCESS_COUNT_EXHAUSTED])

        with self.assertRaises(BlobNotFoundError):
            self.client.getFile(SENDER_KEY)
        with self.assertRaises(BlobNotFoundError):
            self.client.getMetadata(SENDER_KEY)

    def testDenialBody(self):
        """403 answers carry machine-readable reasons"""
        self._upload(accessCount=1)
        self.client.decrementAccessCount(SENDER_KEY)

        response = requests.put(f'{self.server.url}/metadata', params={'key': SENDER_KEY}, timeout=5)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['reasons'], ['AccessCountExhausted'])

    def testConcurrentDecrementOverHTTP(self):
        """Parallel PUT /metadata calls grant exactly accessCount accesses"""
        self._upload(accessCount=3)

        def put(_):
            return requests.put(f'{self.server.url}/metadata', params={'key': SENDER_KEY}, timeout=5).status_code

        with ThreadPoolExecutor(max_workers=8) as executor:
            codes = list(executor.map(put, range(12)))

        self.assertEqual(codes.count(200), 3)
        self.assertTrue(all(code in (200, 403, 404) for code in codes))

    def testMissingKey(self):
        """Endpoints need a key parameter"""
        for method, path in (('GET', '/metadata'), ('PUT', '/metadata'), ('GET', '/file'), ('DELETE', '/file')):
            with self.subTest(method=method, path=path):
                response = requests.request(method, f'{self.server.url}{path}', timeout=5)
                self.assertEqual(response.status_code, 400)

    def testUnknownEndpoint(self):
        """Unknown paths answer 404"""
        self.assertEqual(requests.get(f'{self.server.url}/nothing', timeout=5).status_code, 404)

    def testUploadTooLarge(self):
        """Bodies over the limit are refused with 413"""
        with self.assertRaises(APIError) as context:
            self._upload(data=os.urandom(4096))
        self.assertEqual(context.exception.statusCode, 413)

    def testUploadMalformed(self):
        """Invalid upload bodies answer 400"""
        response = requests.post(
            f'{self.server.url}/upload', params={'key': SENDER_KEY}, json={'metadata': makeMetadata(), 'file': '***'},
            timeout=5
        )
        self.assertEqual(response.status_code, 400)

        response = requests.post(
            f'{self.server.url}/upload', params={'key': SENDER_KEY},
            json={'metadata': {'name': 'x'}, 'file': base64.b64encode(b'x').decode()}, timeout=5
        )
        self.assertEqual(response.status_code, 400)

    def testUploadInvalidFields(self):
        """A non-string description or an unusable Content-Length answers 400"""
        response = requests.post(
            f'{self.server.url}/upload', params={'key': SENDER_KEY},
            json={'metadata': makeMetadata(description=5), 'file': base64.b64encode(b'x').decode()}, timeout=5
        )
        self.assertEqual(response.status_code, 400)

        for length in ('many', '-1'):
            with self.subTest(length=length):
                conn = http.client.HTTPConnection(self.server.host, self.server.actualPort, timeout=5)
                try:
                    conn.putrequest('POST', '/upload?key=abc')
                    conn.putheader('Content-Length', length)
                    conn.endheaders()
                    self.assertEqual(conn.getresponse().status, 400)
                finally:
                    conn.close()

    def testDelete(self):
        """DELETE /file removes the transfer"""
        self._upload()
        self.client.deleteFile(SENDER_KEY)
        with self.assertRaises(BlobNotFoundError):
            self.client.getMetadata(SENDER_KEY)

    def testAdminEndpointsRequireAuth(self):
        """Listing and sweeping need the admin credentials"""
        self._upload(accessCount=2)

        self.assertEqual(requests.get(f'{self.server.url}/files', timeout=5).status_code, 401)
        self.assertEqual(
            requests.post(f'{self.server.url}/delete-expired', auth=('admin', 'wrong'), timeout=5).status_code, 401
        )

        files = self.client.listFiles()
        self.assertEqual([f['key'] for f in files], [SENDER_KEY])
        self.assertEqual(self.client.deleteExpired(), [])

    def testConcurrentReadsDuringDecrement(self):
        """Readers never observe a half-written envelope"""
        self._upload(accessCount=50)
        errors = []

        def read():
            for _ in range(20):
                try:
                    self.client.getMetadata(SENDER_KEY)
                except Exception as e:
                    errors.append(e)

        reader = threading.Thread(target=read)
        reader.start()
        for _ in range(20):
            self.client.decrementAccessCount(SENDER_KEY)
        reader.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.client.getMetadata(SENDER_KEY).accessCount, 30)


if __name__ == '__main__':
    unittest.main()
