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

import glob
import io
import json
import logging
import os
import subprocess
import sys
import tempfile
import unittest

from contextlib import redirect_stdout
from datetime import timezone
from unittest.mock import patch

import Core

from bases.Kernel import StorageLocator, PUBLIC_VERSION
from bases.Access import AccessPolicy
from bases.BlobStore import LocalBlobStore
from bases.CLI import configureCLIParser, configureLogging, loadEnvFile
from bases.KeyStore import openStores
from bases.Server import ShareServer, ShareService
from bases import Settings
from bases.Settings import FileRejectedError, SettingsGetter
from bases.Transfer import validateUpload

CORE_PATH = os.path.join(os.path.dirname(__file__), '..', '..', 'Core.py')


class CLIArgumentParsingTest(unittest.TestCase):
    """Parser behavior, without running any command"""

    def setUp(self):
        self.parser, self.globalsParent = configureCLIParser()

    def testRequestArguments(self):
        args = self.parser.parse_args([
            'request', '--sender-email', 'alice@example.com', '--recipient-email', 'bob@example.com',
            '--file-name', 'report.pdf', '--access-count', '3', '--access-time', 'daytime',
            '--expiration-date', '2025-06-01T00:00:00Z',
        ])

        self.assertEqual(args.command, 'request')
        self.assertEqual(args.senderEmail, 'alice@example.com')
        self.assertEqual(args.accessCount, 3)
        self.assertEqual(args.accessTime, 'daytime')
        self.assertEqual(args.expirationDate, '2025-06-01T00:00:00Z')
        self.assertIsNone(args.startDate)
        self.assertEqual(args.description, '')

    def testInvalidArguments(self):
        testCases = [
            (['request', '--sender-email', 'a@example.com', '--recipient-email', 'b@example.com',
              '--file-name', 'x.pdf', '--access-count', '0'], 'zero access count'),
            (['request', '--sender-email', 'a@example.com'], 'missing required options'),
            (['request', '--sender-email', 'a@example.com', '--recipient-email', 'b@example.com',
              '--file-name', 'x.pdf', '--access-time', 'night'], 'unknown access time'),
            (['keys', 'rotate'], 'unknown keys action'),
            (['--log-level', 'LOUD', 'keys', 'list'], 'invalid log level'),
        ]

        for argv, description in testCases:
            with self.subTest(description=description):
                with patch('sys.stderr', new_callable=io.StringIO):
                    with self.assertRaises(SystemExit):
                        self.parser.parse_args(argv)

    def testServeBlobDirs(self):
        args = self.parser.parse_args(['serve', '--port', '9000', '--blob-dir', '/a', '--blob-dir', '/b'])
        self.assertEqual(args.port, 9000)
        self.assertEqual(args.blobDirs, ['/a', '/b'])

    def testGlobalsBeforeCommand(self):
        globalArgs, rest = self.globalsParent.parse_known_args(['--log-level', 'debug', 'keys', 'list'])
        self.assertEqual(globalArgs.logLevel, 'DEBUG')
        self.assertEqual(rest, ['keys', 'list'])


class CoreProcessTest(unittest.TestCase):
    """Runs Core.py the way a user does"""

    def _runCoreWithArgs(self, args):
        command = [sys.executable, CORE_PATH]
        command.extend(args)

        env = os.environ.copy()
        env['SHAHEEN_STORAGE_LOCATION'] = tempfile.mkdtemp(prefix='shaheen-cli-')

        result = subprocess.run(command, capture_output=True, text=True, timeout=30, env=env)
        return result.stdout + result.stderr, result.returncode

    def testVersion(self):
        for args in (['--version'], ['--log-level', 'info', '--version']):
            with self.subTest(args=args):
                output, returnCode = self._runCoreWithArgs(args)
                self.assertIn(f'Shaheen v{PUBLIC_VERSION}', output)
                self.assertEqual(returnCode, 0)

    def testHelp(self):
        output, returnCode = self._runCoreWithArgs([])
        self.assertIn('usage:', output.lower())
        self.assertEqual(returnCode, 0)


class ConfigureLoggingTest(unittest.TestCase):

    def setUp(self):
        rootLogger = logging.getLogger()
        self.addCleanup(rootLogger.setLevel, rootLogger.level)

    def testLevelName(self):
        self.assertEqual(configureLogging('DEBUG'), 'DEBUG')
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertEqual(logging.getLogger('urllib3').level, logging.INFO)

    def testEnvironmentFallback(self):
        with patch.dict(os.environ, {'SHAHEEN_LOGGING_LEVEL': 'ERROR'}):
            self.assertEqual(configureLogging(None), 'ERROR')
        self.assertEqual(logging.getLogger().level, logging.ERROR)

    def testConfigFile(self):
        with tempfile.TemporaryDirectory() as tempDir:
            path = os.path.join(tempDir, 'logging.json')
            with open(path, 'w') as f:
                json.dump({
                    'version': 1,
                    'incremental': True,
                    'root': {'level': 'WARNING'},
                }, f)

            self.assertEqual(configureLogging(path), path)

        self.assertEqual(logging.getLogger().level, logging.WARNING)

    def testUnknownLevelFallsBackToWarning(self):
        configureLogging('chatty')
        self.assertEqual(logging.getLogger().level, logging.WARNING)


class LoadEnvFileTest(unittest.TestCase):

    def testLoadsMissingVariablesOnly(self):
        with tempfile.TemporaryDirectory() as tempDir:
            envPath = os.path.join(tempDir, '.env')
            with open(envPath, 'w', encoding='utf-8') as f:
                f.write('# Shaheen settings\n')
                f.write('SHAHEEN_TEST_SERVER="http://localhost:8080"\n')
                f.write('SHAHEEN_TEST_KEPT=from-file\n')
                f.write('not a setting\n')

            with patch.dict(os.environ, {'SHAHEEN_TEST_KEPT': 'from-env'}):
                with patch.object(StorageLocator.getInstance(), 'findConfig', return_value=envPath):
                    with redirect_stdout(io.StringIO()) as output:
                        loadEnvFile()

                self.assertEqual(os.environ['SHAHEEN_TEST_SERVER'], 'http://localhost:8080')
                self.assertEqual(os.environ['SHAHEEN_TEST_KEPT'], 'from-env')

        self.assertIn('line 4', output.getvalue())
        self.assertNotIn('SHAHEEN_TEST_SERVER', os.environ)


class EnvFileLimitsTest(unittest.TestCase):
    """Limits configured in .env apply to the command being run"""

    def testEnvFileLimitsTakeEffect(self):
        tempDir = tempfile.TemporaryDirectory()
        self.addCleanup(tempDir.cleanup)
        envPath = os.path.join(tempDir.name, '.env')
        with open(envPath, 'w', encoding='utf-8') as f:
            f.write('SHAHEEN_MAX_FILE_SIZE=10\n')
            f.write('SHAHEEN_DEFAULT_EXPIRATION_DAYS=1\n')

        # Runs after the environment is restored
        self.addCleanup(Settings.loadLimits)
        with patch.dict(os.environ), patch.object(StorageLocator.getInstance(), 'findConfig', return_value=envPath):
            os.environ.pop('SHAHEEN_MAX_FILE_SIZE', None)
            os.environ.pop('SHAHEEN_DEFAULT_EXPIRATION_DAYS', None)
            with redirect_stdout(io.StringIO()):
                self.assertEqual(Core.main(['--version']), 0)

            self.assertEqual(Settings.MAX_FILE_SIZE, 10)
            self.assertEqual(Settings.DEFAULT_EXPIRATION_DAYS, 1)
            with self.assertRaises(FileRejectedError) as context:
                validateUpload('notes.txt', 11)
            self.assertEqual(context.exception.statusCode, 413)


class CoreCommandTest(unittest.TestCase):
    """Whole transfers through Core.main, both parties sharing one storage directory"""

    def setUp(self):
        self.tempDir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempDir.cleanup)

        blobStore = LocalBlobStore(os.path.join(self.tempDir.name, 'blobs'))
        self.server = ShareServer(ShareService(blobStore, AccessPolicy(zone=timezone.utc)))
        self.server.start()
        self.addCleanup(self.server.stop)

        self.settings = SettingsGetter.getInstance()
        patches = [
            patch.object(self.settings, '_serverURL', self.server.url),
            patch.object(self.settings, '_storageDir', os.path.join(self.tempDir.name, 'storage')),
            patch.object(Core, 'loadEnvFile'),
            patch.dict(os.environ, {'SHAHEEN_NOTIFY_URL': ''}),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        os.makedirs(self.settings.storageDir)

    def runMain(self, *argv):
        with redirect_stdout(io.StringIO()) as output:
            exitCode = Core.main(list(argv))
        return exitCode, output.getvalue()

    def lastOutboxLink(self, address):
        path = sorted(glob.glob(os.path.join(self.settings.outboxDir, f'*-{address}.json')))[-1]
        with open(path, encoding='utf-8') as f:
            return json.load(f)['payload']['link']

    def testKeysListEmpty(self):
        exitCode, output = self.runMain('keys', 'list')
        self.assertEqual(exitCode, 0)
        self.assertIn('No keys stored.', output)

    def testTransfer(self):
        sourcePath = os.path.join(self.tempDir.name, 'notes.txt')
        outputPath = os.path.join(self.tempDir.name, 'received.txt')
        with open(sourcePath, 'wb') as f:
            f.write(b'meeting moved to thursday\n')

        exitCode, output = self.runMain(
            'request', '--sender-email', 'alice@example.com', '--recipient-email', 'bob@example.com',
            '--file-name', 'notes.txt', '--description', 'see attached'
        )
        self.assertEqual(exitCode, 0)
        receiveLink = self.lastOutboxLink('bob@example.com')
        self.assertIn(receiveLink, output)

        exitCode, _ = self.runMain('respond', receiveLink)
        self.assertEqual(exitCode, 0)
        uploadLink = self.lastOutboxLink('alice@example.com')

        exitCode, output = self.runMain('send', uploadLink, sourcePath)
        self.assertEqual(exitCode, 0)
        self.assertIn('1 download(s) allowed', output)

        keyStore, _ = openStores(self.settings.keyDatabasePath)
        senderPublicKey = keyStore.list(role='sender')[0].ownPublicKey

        exitCode, output = self.runMain('receive', senderPublicKey, outputPath)
        self.assertEqual(exitCode, 0)
        self.assertIn('Note from sender: see attached', output)
        self.assertIn('0 download(s) left.', output)
        with open(outputPath, 'rb') as f:
            self.assertEqual(f.read(), b'meeting moved to thursday\n')

        exitCode, output = self.runMain('receive', senderPublicKey, outputPath)
        self.assertEqual(exitCode, 1)
        self.assertIn('Download not allowed:', output)

        exitCode, output = self.runMain('keys', 'forget', '--yes')
        self.assertEqual(exitCode, 0)
        self.assertIn('Removed 2 key pair(s)', output)

    def testReceiveToUnwritablePathKeepsAccess(self):
        """A bad output path fails before the download is counted"""
        sourcePath = os.path.join(self.tempDir.name, 'notes.txt')
        with open(sourcePath, 'wb') as f:
            f.write(b'draft v2\n')

        self.assertEqual(self.runMain(
            'request', '--sender-email', 'alice@example.com', '--recipient-email', 'bob@example.com',
            '--file-name', 'notes.txt'
        )[0], 0)
        self.assertEqual(self.runMain('respond', self.lastOutboxLink('bob@example.com'))[0], 0)
        self.assertEqual(self.runMain('send', self.lastOutboxLink('alice@example.com'), sourcePath)[0], 0)

        keyStore, _ = openStores(self.settings.keyDatabasePath)
        senderPublicKey = keyStore.list(role='sender')[0].ownPublicKey

        for outputPath in (os.path.join(self.tempDir.name, 'missing', 'notes.txt'), self.tempDir.name):
            with self.subTest(outputPath=outputPath):
                exitCode, output = self.runMain('receive', senderPublicKey, outputPath)
                self.assertEqual(exitCode, 1)
                self.assertIn('Error:', output)

        outputPath = os.path.join(self.tempDir.name, 'received.txt')
        exitCode, output = self.runMain('receive', senderPublicKey, outputPath)
        self.assertEqual(exitCode, 0)
        self.assertIn('0 download(s) left.', output)
        with open(outputPath, 'rb') as f:
            self.assertEqual(f.read(), b'draft v2\n')

    def testReceiveUnknownTransfer(self):
        exitCode, output = self.runMain('receive', 'MFkwEwYHKoZIzj0CAQYIKoZIzj0DAQcDQgAE/unknown', 'out.bin')
        self.assertEqual(exitCode, 1)
        self.assertIn('Error:', output)


if __name__ == '__main__':
    unittest.main()
