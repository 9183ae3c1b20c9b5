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

from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import List, Optional

from bases.Kernel import getLogger
from bases.Envelope import AccessTime, MetadataEnvelope
from bases import Settings
from bases.Settings import AccessDeniedError

logger = getLogger(__name__)


class DenialReason(Enum):
    NOT_YET_STARTED = 'NotYetStarted'
    EXPIRED = 'Expired'
    OUTSIDE_DAYTIME_WINDOW = 'OutsideDaytimeWindow'
    ACCESS_COUNT_EXHAUSTED = 'AccessCountExhausted'

    def describe(self):
        return DENIAL_MESSAGES[self]


DENIAL_MESSAGES = {
    DenialReason.NOT_YET_STARTED: 'File is not available yet',
    DenialReason.EXPIRED: 'File has expired',
    DenialReason.OUTSIDE_DAYTIME_WINDOW: 'File can only be downloaded during daytime',
    DenialReason.ACCESS_COUNT_EXHAUSTED: 'Download limit exceeded',
}


@dataclass
class AccessDecision:
    allowed: bool
    reasons: List[DenialReason] = field(default_factory=list)

    def raiseIfDenied(self):
        if not self.allowed:
            raise AccessDeniedError(self.reasons)

    def __bool__(self):
        return self.allowed


class AccessPolicy:
    """
    Pure predicate deciding whether an envelope may be downloaded now.

    Every rule is evaluated and every failing rule is reported, so callers can show
    all reasons at once. The same instance serves both the advisory client-side
    check and the authoritative server-side check.
    """

    def __init__(self, daytimeStart: int = None, daytimeEnd: int = None,
                 zone: Optional[tzinfo] = None, expirationDays: int = None):
        """
        Args:
            daytimeStart: First hour of the daytime window (inclusive)
            daytimeEnd: End hour of the daytime window (exclusive)
            zone: Zone used for the hour check; None means the host's local zone
            expirationDays: Implicit expiration override, None uses the configured default
        """
        self.daytimeStart = Settings.DAYTIME_START if daytimeStart is None else daytimeStart
        self.daytimeEnd = Settings.DAYTIME_END if daytimeEnd is None else daytimeEnd
        self.zone = zone
        self.expirationDays = expirationDays

    def localHour(self, now: datetime) -> int:
        return now.astimezone(self.zone).hour

    def isExpired(self, envelope: MetadataEnvelope, now: Optional[datetime] = None) -> bool:
        now = self._normalizeNow(now)
        return now > envelope.effectiveExpiration(self.expirationDays)

    def evaluate(self, envelope: MetadataEnvelope, now: Optional[datetime] = None) -> AccessDecision:
        now = self._normalizeNow(now)
        reasons = []

        if envelope.startDate is not None and now < envelope.startDate:
            reasons.append(DenialReason.NOT_YET_STARTED)

        if now > envelope.effectiveExpiration(self.expirationDays):
            reasons.append(DenialReason.EXPIRED)

        if envelope.accessTime == AccessTime.DAYTIME:
            hour = self.localHour(now)
            if not self.daytimeStart <= hour < self.daytimeEnd:
                reasons.append(DenialReason.OUTSIDE_DAYTIME_WINDOW)

        if envelope.accessCount <= 0:
            reasons.append(DenialReason.ACCESS_COUNT_EXHAUSTED)

        if reasons:
            logger.debug(f"[Access] Denied {envelope.name}: {', '.join(r.value for r in reasons)}")

        return AccessDecision(allowed=not reasons, reasons=reasons)

    @staticmethod
    def _normalizeNow(now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(timezone.utc)
        if now.tzinfo is None:
            # Naive "now" is the host's local wall clock
            return now.astimezone()
        return now
