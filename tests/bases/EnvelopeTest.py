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

import json
import unittest

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from bases import Settings
from bases.Envelope import AccessTime, MetadataEnvelope, formatISODate, parseISODate
from bases.Settings import MalformedEnvelopeError

UPLOAD_DATE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def makeEnvelope(**overrides):
    fields = dict(name='report.pdf', fileSize=1024, uploadDate=UPLOAD_DATE, mac='ab' * 32, fileType='application/pdf')
    fields.update(overrides)
    return MetadataEnvelope(**fields)


class EnvelopeTest(unittest.TestCase):

    def testExpirationFallback(self):
        """Without expirationDate the envelope expires exactly 60 days after upload"""
        envelope = makeEnvelope()
        self.assertEqual(envelope.effectiveExpiration(), UPLOAD_DATE + timedelta(days=60))
        self.assertEqual(envelope.effectiveExpiration(7), UPLOAD_DATE + timedelta(days=7))

    def testExplicitExpiration(self):
        """An explicit expirationDate wins over the fallback"""
        expiration = datetime(2025, 1, 10, tzinfo=timezone.utc)
        self.assertEqual(makeEnvelope(expirationDate=expiration).effectiveExpiration(), expiration)

    def testSerializeOmitsMissingDates(self):
        """Absent optional dates are left out rather than written as null"""
        data = json.loads(makeEnvelope().serialize())

        self.assertNotIn('startDate', data)
        self.assertNotIn('expirationDate', data)
        self.assertEqual(data['uploadDate'], '2025-01-01T00:00:00.000Z')
        self.assertEqual(data['accessTime'], 'alltime')

    def testDeserializeRestoresEnvelope(self):
        """serialize then deserialize gives an equal envelope"""
        envelope = makeEnvelope(
            description='Quarterly numbers',
            startDate=datetime(2025, 1, 2, 8, 30, tzinfo=timezone.utc),
            expirationDate=datetime(2025, 2, 1, tzinfo=timezone.utc),
            accessCount=3,
            accessTime=AccessTime.DAYTIME,
        )
        self.assertEqual(MetadataEnvelope.deserialize(envelope.serialize()), envelope)

    def testDeserializeToleratesNullsAndStrings(self):
        """Null optional fields and numeric strings are accepted"""
        raw = json.dumps({
            'name': 'a.txt',
            'fileSize': '12',
            'uploadDate': '2025-01-01T00:00:00.000Z',
            'mac': 'ff',
            'startDate': None,
            'expirationDate': '',
            'accessCount': '2',
            'description': None,
        })
        envelope = MetadataEnvelope.deserialize(raw)

        self.assertEqual(envelope.fileSize, 12)
        self.assertEqual(envelope.accessCount, 2)
        self.assertIsNone(envelope.startDate)
        self.assertIsNone(envelope.expirationDate)
        self.assertEqual(envelope.description, '')

    def testMissingRequiredFields(self):
        """Each required field is enforced"""
        complete = json.loads(makeEnvelope().serialize())
        for field in ('name', 'fileSize', 'uploadDate', 'mac'):
            with self.subTest(field=field):
                data = dict(complete)
                del data[field]
                with self.assertRaises(MalformedEnvelopeError):
                    MetadataEnvelope.fromDict(data)

    def testMalformedInput(self):
        """Non-JSON, non-object and bad field types are rejected"""
        for raw in (b'not json', b'[1, 2]', b'\xff\xfe'):
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedEnvelopeError):
                    MetadataEnvelope.deserialize(raw)

        data = json.loads(makeEnvelope().serialize())
        for field, value in (('accessCount', 'many'), ('accessTime', 'night'), ('uploadDate', 'yesterday'),
                             ('fileSize', True), ('description', 'x' * 201)):
            with self.subTest(field=field):
                with self.assertRaises(MalformedEnvelopeError):
                    MetadataEnvelope.fromDict(dict(data, **{field: value}))

    def testDescriptionMustBeText(self):
        """A non-string description is rejected, the length limit is read when parsing"""
        data = json.loads(makeEnvelope().serialize())
        for value in (5, ['a'], {'text': 'a'}):
            with self.subTest(value=value):
                with self.assertRaises(MalformedEnvelopeError):
                    MetadataEnvelope.fromDict(dict(data, description=value))

        with patch.object(Settings, 'MAX_DESCRIPTION_LENGTH', 3):
            with self.assertRaises(MalformedEnvelopeError):
                MetadataEnvelope.fromDict(dict(data, description='four'))
        self.assertEqual(MetadataEnvelope.fromDict(dict(data, description='four')).description, 'four')

    def testWithAccessCountOnlyChangesCount(self):
        """Decrementing yields a new envelope with every other field untouched"""
        envelope = makeEnvelope(accessCount=2)
        decremented = envelope.withAccessCount(1)

        self.assertEqual(envelope.accessCount, 2)
        self.assertEqual(decremented.accessCount, 1)
        self.assertEqual(decremented.withAccessCount(2), envelope)

    def testDateHelpers(self):
        """Browser and date-picker formats parse, naive values are UTC"""
        self.assertEqual(parseISODate('2025-03-05T00:00:00.000Z'), datetime(2025, 3, 5, tzinfo=timezone.utc))
        self.assertEqual(parseISODate('2025-03-05'), datetime(2025, 3, 5, tzinfo=timezone.utc))
        self.assertIsNone(parseISODate(None))
        self.assertEqual(
            formatISODate(datetime(2025, 3, 5, 1, 2, 3, 456789, tzinfo=timezone.utc)), '2025-03-05T01:02:03.456Z'
        )


if __name__ == '__main__':
    unittest.main()
