#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import logging
import gitsubmit

logger = gitsubmit.logger


def cmd_submit(cmdargs):
    import gitsubmit.submit
    gitsubmit.submit.cmd_submit(cmdargs)


def setup_parser() -> argparse.ArgumentParser:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        prog='git-submit',
        description='Edit, rebuild, tag and send the patch series on the current branch',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=gitsubmit.__VERSION__)
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Add more debugging info to the output')
    parser.add_argument('-q', '--quiet', action='store_true', default=False,
                        help='Output critical information only')
    parser.add_argument('--offline-mode', action='store_true', default=False,
                        help='Do not perform any network queries')
    parser.add_argument('--to', nargs='+', action='extend', metavar='ADDR',
                        help='Addresses to add to the To: list')
    parser.add_argument('--cc', nargs='+', action='extend', metavar='ADDR',
                        help='Addresses to add to the Cc: list')
    parser.add_argument('--in-reply-to', dest='in_reply_to', metavar='MSGID', default=None,
                        help='Send the series as a reply to this message-id and copy its recipients')
    parser.add_argument('--dry-run', dest='dryrun', action='store_true', default=False,
                        help='Rebuild the branch from the edited patches, but do not tag or send; '
                             'dump out raw messages to the stdout instead')
    parser.add_argument('-o', '--output-dir', dest='output_dir', default=None,
                        help='Rebuild the branch, but do not tag or send; write raw messages to this directory '
                             '(forces --dry-run)')
    parser.add_argument('--no-sign', action='store_true', default=False,
                        help='Do not add the cryptographic attestation signature header')
    parser.add_argument('--show-revision', action='store_true', default=False,
                        help='Show the series revision the next submission will use')
    parser.set_defaults(func=cmd_submit)

    return parser


def cmd():
    parser = setup_parser()
    cmdargs = parser.parse_args()
    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if cmdargs.quiet:
        ch.setLevel(logging.CRITICAL)
    elif cmdargs.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.INFO)

    logger.addHandler(ch)

    if cmdargs.offline_mode:
        logger.info('Running in OFFLINE mode')
        gitsubmit.can_network = False

    cmdargs.func(cmdargs)


if __name__ == '__main__':
    cmd()
