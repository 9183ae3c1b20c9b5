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

import requests

from bases.Kernel import getLogger
from bases.Access import DenialReason
from bases.E2EE import shortKey
from bases.Envelope import MetadataEnvelope
from bases import Settings
from bases.Settings import (
    DEFAULT_SERVER_URL,
    APIError, AccessDeniedError, BlobNotFoundError, MalformedEnvelopeError, NetworkError
)

logger = getLogger(__name__)


class ShareClient:
    """Client of the share server HTTP surface"""

    def __init__(self, serverURL: str = DEFAULT_SERVER_URL, timeout: float = None, auth=None):
        """
        Args:
            serverURL: Base URL of the share server
            timeout: Seconds before a request is abandoned
            auth: Optional (user, password) for admin endpoints
        """
        self.serverURL = serverURL.rstrip('/')
        self.timeout = Settings.HTTP_TIMEOUT if timeout is None else timeout
        self.auth = auth

    def _request(self, method, path, **kwargs):
        url = f'{self.serverURL}{path}'
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f'{method} {path} failed: {e}') from e

        if response.ok:
            return response

        message = self._errorMessage(response)

        if response.status_code == 403:
            reasons = []
            try:
                reasons = [DenialReason(r) for r in response.json().get('reasons', [])]
            except ValueError:
                logger.debug(f'[Client] Unrecognized denial body: {response.text}')
            raise AccessDeniedError(reasons, message)

        if response.status_code == 404:
            raise BlobNotFoundError(message)

        raise APIError(f'{method} {path} returned {response.status_code}: {message}', response.status_code, response)

    @staticmethod
    def _errorMessage(response):
        try:
            return response.json().get('error') or response.text
        except ValueError:
            return response.text

    def getMetadata(self, key: str) -> MetadataEnvelope:
        response = self._request('GET', '/metadata', params={'key': key})
        try:
            return MetadataEnvelope.fromDict(response.json())
        except ValueError as e:
            raise MalformedEnvelopeError(f'Server returned invalid envelope JSON: {e}') from e

    def decrementAccessCount(self, key: str) -> int:
        response = self._request('PUT', '/metadata', params={'key': key})
        remaining = response.json()['accessCount']
        logger.debug(f'[Client] ...{shortKey(key)} has {remaining} access(es) left')
        return remaining

    def getFile(self, key: str) -> bytes:
        return self._request('GET', '/file', params={'key': key}).content

    def deleteFile(self, key: str):
        self._request('DELETE', '/file', params={'key': key})

    def upload(self, key: str, envelope: MetadataEnvelope, ciphertext: bytes):
        body = {'metadata': envelope.toDict(), 'file': base64.b64encode(ciphertext).decode('ascii')}
        response = self._request('POST', '/upload', params={'key': key}, json=body)
        logger.info(f'[Client] Uploaded {envelope.name} as ...{shortKey(key)}')
        return response.json()

    def listFiles(self):
        return self._request('GET', '/files', auth=self.auth).json()['files']

    def deleteExpired(self):
        return self._request('POST', '/delete-expired', auth=self.auth).json()['deleted']
