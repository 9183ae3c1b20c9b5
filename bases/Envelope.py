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

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from bases.Kernel import getLogger
from bases import Settings
from bases.Settings import MalformedEnvelopeError

logger = getLogger(__name__)

REQUIRED_FIELDS = ('name', 'fileSize', 'uploadDate', 'mac')


def parseISODate(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 instant as written by browsers ("2025-01-01T00:00:00.000Z")
    or by date pickers ("2025-01-01"). Naive values are taken as UTC.

    Raises:
        MalformedEnvelopeError: If the value is not a parseable date
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedEnvelopeError(f'Invalid date {value!r}: {e}') from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed


def formatISODate(value: Optional[datetime]) -> Optional[str]:
    """Format like JavaScript's Date.toISOString(), millisecond precision in UTC"""
    if value is None:
        return None

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)

    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f'{value.microsecond // 1000:03d}Z'


class AccessTime(Enum):
    ALLTIME = 'alltime'
    DAYTIME = 'daytime'


@dataclass(frozen=True)
class MetadataEnvelope:
    """Record describing one shared file, stored next to its ciphertext"""

    name: str
    fileSize: int
    uploadDate: datetime
    mac: str
    fileType: str = 'application/octet-stream'
    description: str = ''
    startDate: Optional[datetime] = None
    expirationDate: Optional[datetime] = None
    accessCount: int = field(default_factory=lambda: Settings.DEFAULT_ACCESS_COUNT)
    accessTime: AccessTime = AccessTime.ALLTIME

    def effectiveExpiration(self, defaultDays: int = None) -> datetime:
        """expirationDate when present, otherwise uploadDate + the implicit expiration period"""
        if self.expirationDate is not None:
            return self.expirationDate

        days = Settings.DEFAULT_EXPIRATION_DAYS if defaultDays is None else defaultDays
        return self.uploadDate + timedelta(days=days)

    def withAccessCount(self, accessCount: int) -> 'MetadataEnvelope':
        return replace(self, accessCount=accessCount)

    def toDict(self) -> dict:
        """Plain JSON-compatible dict, optional empty fields omitted"""
        data = {
            'name': self.name,
            'description': self.description or '',
            'fileSize': self.fileSize,
            'fileType': self.fileType,
            'uploadDate': formatISODate(self.uploadDate),
            'accessCount': self.accessCount,
            'accessTime': self.accessTime.value,
            'mac': self.mac,
        }

        if self.startDate is not None:
            data['startDate'] = formatISODate(self.startDate)
        if self.expirationDate is not None:
            data['expirationDate'] = formatISODate(self.expirationDate)

        return data

    def serialize(self) -> bytes:
        return json.dumps(self.toDict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def fromDict(cls, data) -> 'MetadataEnvelope':
        """
        Build an envelope from decoded JSON. Tolerates null optional fields and numeric
        strings for counters, since link parameters arrive as strings.

        Raises:
            MalformedEnvelopeError: If required fields are missing or a field has a wrong type
        """
        if not isinstance(data, dict):
            raise MalformedEnvelopeError(f'Envelope must be a JSON object, got {type(data).__name__}')

        missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, '')]
        if missing:
            raise MalformedEnvelopeError(f"Envelope is missing required field(s): {', '.join(missing)}")

        description = data.get('description') or ''
        if not isinstance(description, str):
            raise MalformedEnvelopeError(f'description must be a string, got {type(description).__name__}')
        if len(description) > Settings.MAX_DESCRIPTION_LENGTH:
            raise MalformedEnvelopeError(f'Description longer than {Settings.MAX_DESCRIPTION_LENGTH} characters')

        try:
            accessTime = AccessTime(data.get('accessTime') or AccessTime.ALLTIME.value)
        except ValueError as e:
            raise MalformedEnvelopeError(f"Unknown accessTime {data.get('accessTime')!r}") from e

        return cls(
            name=str(data['name']),
            fileSize=cls._toInt(data['fileSize'], 'fileSize'),
            uploadDate=parseISODate(data['uploadDate']),
            mac=str(data['mac']),
            fileType=data.get('fileType') or 'application/octet-stream',
            description=description,
            startDate=parseISODate(data.get('startDate')),
            expirationDate=parseISODate(data.get('expirationDate')),
            accessCount=cls._toInt(data.get('accessCount', Settings.DEFAULT_ACCESS_COUNT), 'accessCount'),
            accessTime=accessTime,
        )

    @classmethod
    def deserialize(cls, raw) -> 'MetadataEnvelope':
        """
        Raises:
            MalformedEnvelopeError: If raw is not JSON or fails validation
        """
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode('utf-8')
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEnvelopeError(f'Envelope is not valid JSON: {e}') from e

        return cls.fromDict(data)

    @staticmethod
    def _toInt(value, fieldName) -> int:
        if value is None:
            return 0
        if isinstance(value, bool):
            raise MalformedEnvelopeError(f'{fieldName} must be an integer')
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelopeError(f'{fieldName} must be an integer, got {value!r}') from e
