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
End-to-end encryption primitives shared by sender and recipient.

Two independent ECDH P-256 exchanges produce two 32-byte secrets:
- the encryption secret, used by FileCipher (AES-256-GCM, 12-byte random nonce prefix)
- the MAC secret, used by IntegrityMAC (HMAC-SHA256 over the whole ciphertext)

Secrets travel between components as lowercase hex strings, keys as base64 DER
(SubjectPublicKeyInfo for public keys, PKCS8 for private keys).
"""

import base64
import binascii
import hmac
import hashlib

from dataclasses import dataclass
from typing import Optional, Union

from bases.crypto import CryptoInterface
from bases.Kernel import getLogger
from bases.Settings import (
    AuthenticationFailedError, IntegrityError, InvalidKeyEncodingError, KeyAgreementError
)

logger = getLogger(__name__)

SECRET_SIZE = 32 # bytes, both for ECDH output and AES-256 / HMAC keys
NONCE_SIZE = 12
TAG_SIZE = 16


def decodeKey(encoded: Union[str, bytes]) -> bytes:
    """Decode a base64 (str) or raw DER (bytes) key into DER bytes

    Raises:
        InvalidKeyEncodingError: If the input is empty or not valid base64
    """
    if not encoded:
        raise InvalidKeyEncodingError('Empty key')

    if isinstance(encoded, (bytes, bytearray)):
        return bytes(encoded)

    try:
        return base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyEncodingError(f'Key is not valid base64: {e}') from e


def secretFromHex(secretHex: str) -> bytes:
    """Decode a hex secret and check it is 256 bits

    Raises:
        InvalidKeyEncodingError: If the secret is not 64 hex characters
    """
    try:
        secret = bytes.fromhex(secretHex)
    except (TypeError, ValueError) as e:
        raise InvalidKeyEncodingError(f'Secret is not valid hex: {e}') from e

    if len(secret) != SECRET_SIZE:
        raise InvalidKeyEncodingError(f'Secret must be {SECRET_SIZE} bytes, got {len(secret)}')

    return secret


def shortKey(publicKey: str, length: int = 12) -> str:
    """Truncated key identifier for log lines"""
    if not publicKey:
        return '<none>'
    return publicKey[-length:]


# ============================================================================
# Key agreement
# ============================================================================


@dataclass(frozen=True)
class KeyPair:
    """Exported ECDH key pair, both halves base64 DER"""
    privateKey: str
    publicKey: str


class KeyAgreement:
    """ECDH P-256 key generation, import and shared secret derivation"""

    def __init__(self, crypto: Optional[CryptoInterface] = None):
        """
        Args:
            crypto: CryptoInterface to use; a default one is created when omitted

        Raises:
            CryptoUnavailableError: If no crypto backend can be loaded
        """
        self.crypto = crypto or CryptoInterface()

    def generateKeyPair(self) -> KeyPair:
        """Generate an extractable ECDH key pair

        Returns:
            KeyPair with base64 PKCS8 private key and base64 SPKI public key
        """
        privateKeyB64, publicKeyB64 = self.crypto.generateECDHKeyPair()
        logger.debug(f'[E2EE] Generated key pair ...{shortKey(publicKeyB64)}')
        return KeyPair(privateKey=privateKeyB64, publicKey=publicKeyB64)

    def importPublicKey(self, encoded: Union[str, bytes]):
        """Reconstruct a public key from its exported SubjectPublicKeyInfo form

        Args:
            encoded: base64 string or raw DER bytes

        Returns:
            Backend public key object

        Raises:
            InvalidKeyEncodingError: On malformed input
        """
        return self.crypto.loadPublicKey(decodeKey(encoded))

    def importPrivateKey(self, encoded: Union[str, bytes]):
        """Reconstruct a private key from its exported PKCS8 form

        Raises:
            InvalidKeyEncodingError: On malformed input
        """
        return self.crypto.loadPrivateKey(decodeKey(encoded))

    def deriveSharedSecret(self, privateKey, publicKey) -> bytes:
        """Run ECDH for one (own private, peer public) pair

        Args:
            privateKey: Own private key, either imported or base64 PKCS8
            publicKey: Peer public key, either imported or base64 SPKI

        Returns:
            32-byte shared secret

        Raises:
            InvalidKeyEncodingError: If an encoded key cannot be imported
            KeyAgreementError: If the keys cannot be combined (e.g. different curves)
        """
        if isinstance(privateKey, (str, bytes)):
            privateKey = self.importPrivateKey(privateKey)
        if isinstance(publicKey, (str, bytes)):
            publicKey = self.importPublicKey(publicKey)

        secret = self.crypto.exchange(privateKey, publicKey)
        if len(secret) != SECRET_SIZE:
            raise KeyAgreementError(f'Unexpected shared secret size {len(secret)}')

        return secret

    def deriveSharedSecretHex(self, privateKey, publicKey) -> str:
        """Same as deriveSharedSecret, hex-encoded for storage"""
        return self.deriveSharedSecret(privateKey, publicKey).hex()


# ============================================================================
# Symmetric encryption
# ============================================================================


class FileCipher:
    """AES-256-GCM payload encryption, output = nonce(12) || ciphertext || tag(16)"""

    def __init__(self, crypto: Optional[CryptoInterface] = None):
        self.crypto = crypto or CryptoInterface()

    def encrypt(self, plaintext: bytes, secretHex: str) -> bytes:
        """Encrypt a payload with a fresh random nonce

        Args:
            plaintext: File content
            secretHex: 256-bit encryption secret, hex

        Returns:
            Self-describing ciphertext (nonce prefix included)
        """
        key = secretFromHex(secretHex)
        nonce, ciphertext = self.crypto.encryptAESGCM(key, plaintext)
        return nonce + ciphertext

    def decrypt(self, ciphertext: bytes, secretHex: str) -> bytes:
        """Split the nonce prefix and decrypt

        Raises:
            AuthenticationFailedError: If the tag does not verify or the input is truncated
        """
        key = secretFromHex(secretHex)

        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailedError(f'Ciphertext too short ({len(ciphertext)} bytes)')

        nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]

        try:
            return self.crypto.decryptAESGCM(key, nonce, body)
        except AuthenticationFailedError:
            logger.error('[E2EE] Ciphertext authentication failed, possible tampering or wrong key')
            raise


# ============================================================================
# Integrity
# ============================================================================


class IntegrityMAC:
    """HMAC-SHA256 over the full ciphertext, keyed with the MAC secret"""

    @staticmethod
    def compute(ciphertext: bytes, macSecretHex: str) -> str:
        """Compute the MAC of a ciphertext

        Args:
            ciphertext: Encrypted payload, nonce included
            macSecretHex: 256-bit MAC secret, hex

        Returns:
            Lowercase hex MAC
        """
        macKey = secretFromHex(macSecretHex)
        return hmac.new(macKey, ciphertext, hashlib.sha256).hexdigest()

    @staticmethod
    def verify(ciphertext: bytes, macSecretHex: str, expectedMacHex: str) -> bool:
        """Recompute and compare in constant time

        Returns:
            True if the MAC matches, False otherwise
        """
        if not isinstance(expectedMacHex, str):
            return False

        actual = IntegrityMAC.compute(ciphertext, macSecretHex)
        return hmac.compare_digest(actual, expectedMacHex.strip().lower())

    @staticmethod
    def check(ciphertext: bytes, macSecretHex: str, expectedMacHex: str):
        """Verify and raise on mismatch

        Raises:
            IntegrityError: If the MAC does not match
        """
        if not IntegrityMAC.verify(ciphertext, macSecretHex, expectedMacHex):
            logger.error('[E2EE] MAC mismatch, ciphertext was altered after upload')
            raise IntegrityError('File integrity check failed, the file may have been tampered with')
