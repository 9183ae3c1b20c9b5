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
import os

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm

from bases.Kernel import getLogger
from bases.Settings import AuthenticationFailedError, InvalidKeyEncodingError, KeyAgreementError
from bases.crypto import CryptoBackend

logger = getLogger(__name__)


class CryptographyBackend(CryptoBackend):
    """Cryptography library backend implementation"""

    CURVE = ec.SECP256R1

    def __init__(self):
        self.ec = ec
        self.serialization = serialization
        self.AESGCM = AESGCM

    def getName(self):
        return "cryptography"

    def generateECDHKeyPair(self):
        """Generate ECDH P-256 key pair using cryptography"""
        privateKey = self.ec.generate_private_key(self.CURVE())

        privateKeyBytes = privateKey.private_bytes(
            encoding=self.serialization.Encoding.DER,
            format=self.serialization.PrivateFormat.PKCS8,
            encryption_algorithm=self.serialization.NoEncryption()
        )

        publicKeyBytes = privateKey.public_key().public_bytes(
            encoding=self.serialization.Encoding.DER, format=self.serialization.PublicFormat.SubjectPublicKeyInfo
        )

        return (base64.b64encode(privateKeyBytes).decode(), base64.b64encode(publicKeyBytes).decode())

    def loadPublicKey(self, publicKeyDer):
        try:
            publicKey = self.serialization.load_der_public_key(publicKeyDer)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyEncodingError(f'Unable to load public key: {e}') from e

        if not isinstance(publicKey, self.ec.EllipticCurvePublicKey):
            raise InvalidKeyEncodingError(f'Not an elliptic curve public key: {type(publicKey).__name__}')

        return publicKey

    def loadPrivateKey(self, privateKeyDer):
        try:
            privateKey = self.serialization.load_der_private_key(privateKeyDer, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyEncodingError(f'Unable to load private key: {e}') from e

        if not isinstance(privateKey, self.ec.EllipticCurvePrivateKey):
            raise InvalidKeyEncodingError(f'Not an elliptic curve private key: {type(privateKey).__name__}')

        return privateKey

    def exchange(self, privateKey, publicKey):
        """ECDH, returns the raw x-coordinate (32 bytes on P-256)"""
        if privateKey.curve.name != publicKey.curve.name:
            raise KeyAgreementError(f'Curve mismatch: {privateKey.curve.name} vs {publicKey.curve.name}')

        try:
            return privateKey.exchange(self.ec.ECDH(), publicKey)
        except (ValueError, TypeError) as e:
            raise KeyAgreementError(f'ECDH exchange failed: {e}') from e

    def encryptAESGCM(self, keyOrCipher, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        # Accept either a key (bytes) or pre-created cipher object (AESGCM instance)
        if isinstance(keyOrCipher, self.AESGCM):
            aesgcm = keyOrCipher
        else:
            aesgcm = self.AESGCM(keyOrCipher)

        if nonce is None:
            nonce = os.urandom(12) # 96-bit nonce for GCM

        ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
        return (nonce, ciphertext)

    def decryptAESGCM(self, keyOrCipher, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext"""
        if isinstance(keyOrCipher, self.AESGCM):
            aesgcm = keyOrCipher
        else:
            aesgcm = self.AESGCM(keyOrCipher)

        try:
            return aesgcm.decrypt(nonce, ciphertextWithTag, aad)
        except InvalidTag as e:
            raise AuthenticationFailedError('AES-GCM authentication tag did not verify') from e
