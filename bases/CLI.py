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

import argparse
import json
import os
import logging
import logging.config
import platform

from bases.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel, StorageLocator
from bases.Envelope import AccessTime
from bases.Settings import DEFAULT_SERVER_PORT
from bases.Utils import SUPPORT_URL, flushPrint, getEnv

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from .env file using StorageLocator.
    Only sets variables that are not already defined in os.environ.
    """
    envFilePath = StorageLocator.getInstance().findConfig('.env')

    if not os.path.exists(envFilePath):
        return

    try:
        loadedCount = 0

        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                # Remove quotes if present (both single and double)
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')

    except OSError as e:
        flushPrint(f'Error: Unable to read .env file {envFilePath}: {e}')
        logger.error(f'Unable to read .env file: {e}', exc_info=True)


def configureLogging(logLevel):
    """Configure logging from a level name or a dictConfig JSON file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. SHAHEEN_LOGGING_LEVEL environment variable
    3. None (no configuration change)
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('SHAHEEN_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, OSError, ValueError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    # Suppress noisy third-party loggers even in DEBUG mode
    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"Shaheen v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Support: {SUPPORT_URL}")


def configureCLIParser():
    """Build the argument parser

    Returns:
        (parser, globalsParent): the main parser and the parent holding global options
    """

    def validateLogLevel(logLevel):
        # Allow file paths (they'll be validated later)
        if os.path.exists(logLevel):
            return logLevel

        if logLevel.upper() not in LOG_LEVEL_MAPPING:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(LOG_LEVEL_MAPPING)}"
            )
        return logLevel.upper()

    def validatePositive(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"'{valueStr}' is not an integer")
        if value <= 0:
            raise argparse.ArgumentTypeError(f"Value must be positive, got {value}")
        return value

    def addRuleArguments(parser):
        parser.add_argument("--description", default='', help="Short note shown to the recipient (max 200 chars)")
        parser.add_argument("--start-date", dest="startDate", metavar="ISO_DATE", help="Not downloadable before")
        parser.add_argument(
            "--expiration-date", dest="expirationDate", metavar="ISO_DATE",
            help="Not downloadable after (default: 60 days after upload)"
        )
        parser.add_argument(
            "--access-count", dest="accessCount", type=validatePositive, metavar="N",
            help="Number of permitted downloads (default: 1)"
        )
        parser.add_argument(
            "--access-time", dest="accessTime", choices=[t.value for t in AccessTime],
            help="'daytime' restricts downloads to 08:00-18:00 local time"
        )

    globalsParent = argparse.ArgumentParser(add_help=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    parser = argparse.ArgumentParser(
        prog='shaheen',
        description="Shaheen shares files end-to-end encrypted; the server only ever sees ciphertext.",
        parents=[globalsParent],
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    keysParser = subparsers.add_parser('keys', help='Inspect or forget local key material')
    keysParser.add_argument('action', choices=['list', 'forget'])
    keysParser.add_argument('--yes', '-y', action='store_true', help="Do not ask before forgetting keys")

    requestParser = subparsers.add_parser('request', help='Sender: create keys and send a receive link')
    requestParser.add_argument('--sender-email', dest='senderEmail', required=True)
    requestParser.add_argument('--recipient-email', dest='recipientEmail', required=True)
    requestParser.add_argument('--file-name', dest='fileName', required=True)
    addRuleArguments(requestParser)

    respondParser = subparsers.add_parser('respond', help='Recipient: accept a receive link and answer it')
    respondParser.add_argument('link', metavar='RECEIVE_LINK')

    establishParser = subparsers.add_parser('establish', help='Sender: derive the shared secret from an upload link')
    establishParser.add_argument('link', metavar='UPLOAD_LINK')

    sendParser = subparsers.add_parser('send', help='Sender: encrypt and upload a file')
    sendParser.add_argument('link', metavar='UPLOAD_LINK')
    sendParser.add_argument('file', metavar='FILE')

    receiveParser = subparsers.add_parser('receive', help='Recipient: download, verify and decrypt a file')
    receiveParser.add_argument('senderPublicKey', metavar='SENDER_PUBLIC_KEY')
    receiveParser.add_argument('output', metavar='OUTPUT_PATH')

    deleteParser = subparsers.add_parser('delete', help='Remove an uploaded file from the server')
    deleteParser.add_argument('senderPublicKey', metavar='SENDER_PUBLIC_KEY')

    serveParser = subparsers.add_parser('serve', help='Run the share server')
    serveParser.add_argument('--host', default='127.0.0.1')
    serveParser.add_argument('--port', type=int, default=DEFAULT_SERVER_PORT)
    serveParser.add_argument(
        '--blob-dir', dest='blobDirs', action='append', metavar='DIR',
        help='Blob backend directory, repeat for several backends (default: SHAHEEN_BLOB_DIRS)'
    )

    subparsers.add_parser('sweep', help='Ask the server to delete expired transfers')

    return parser, globalsParent
