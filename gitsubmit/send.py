#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import email.message
import email.utils
import os
import re
import smtplib
import time

import gitsubmit

from typing import Optional, List, Tuple, Union

from gitsubmit.series import PatchArtifact
from gitsubmit.recipients import RecipientSet

logger = gitsubmit.logger


def _set_header(msg: email.message.Message, hdrname: str, hdrval: str) -> None:
    try:
        msg.replace_header(hdrname, hdrval)
    except KeyError:
        msg.add_header(hdrname, hdrval)


def print_pretty_addrs(addrs: list, hdrname: str) -> None:
    if len(addrs) < 1:
        return
    logger.info('%s: %s', hdrname, gitsubmit.format_addrs([addrs[0]]))
    if len(addrs) > 1:
        for addr in addrs[1:]:
            logger.info('    %s', gitsubmit.format_addrs([addr]))


def make_message(artifact: PatchArtifact, rset: RecipientSet, fromaddr: str,
                 seriests: Optional[int] = None) -> email.message.EmailMessage:
    msg = artifact.get_message()
    msg.set_charset('utf-8')

    origfrom = msg.get('From')
    if origfrom and fromaddr:
        origpair = email.utils.parseaddr(str(origfrom))
        mypair = email.utils.parseaddr(fromaddr)
        if origpair[1].lower() != mypair[1].lower():
            # Move the original author into the body so git-am picks it up
            payload = msg.get_payload(decode=True)
            if isinstance(payload, bytes):
                payload = payload.decode(errors='replace')
                payload = f'From: {gitsubmit.format_addrs([origpair])}\n\n' + payload
                msg.set_payload(payload, charset='utf-8')
            _set_header(msg, 'From', gitsubmit.format_addrs([mypair]))

    _set_header(msg, 'To', gitsubmit.format_addrs(rset.get_to()))
    if len(rset.cc):
        _set_header(msg, 'Cc', gitsubmit.format_addrs(rset.get_cc()))
    if seriests:
        _set_header(msg, 'Date', email.utils.formatdate(seriests + artifact.counter, localtime=True))
    if not msg.get('X-Mailer'):
        msg.add_header('X-Mailer', f'git-submit {gitsubmit.__VERSION__}')

    return msg


def get_msg_bytes(msg: email.message.Message, sign: bool = False) -> bytes:
    bdata = msg.as_bytes(policy=gitsubmit.emlpolicy)
    if sign:
        import patatt
        try:
            bdata = patatt.rfc2822_sign(bdata)
        except patatt.NoKeyError as ex:
            logger.critical('CRITICAL: Error signing: no key configured')
            logger.critical('          Run "patatt genkey" or configure "user.signingKey" to use PGP')
            logger.critical('          As a last resort, rerun with --no-sign')
            raise RuntimeError(str(ex))
        except patatt.SigningError as ex:
            raise RuntimeError('Failure trying to patatt-sign: %s' % str(ex))
    return bdata


def send_one(smtp: Union[smtplib.SMTP, smtplib.SMTP_SSL, list], fromaddr: str,
             destaddrs: List[str], bdata: bytes) -> None:
    if isinstance(smtp, list):
        # This is a local command
        cmdargs = list(smtp) + list(destaddrs)
        ecode, out, err = gitsubmit._run_command(cmdargs, stdin=bdata)
        if ecode > 0:
            raise RuntimeError('Error running %s: %s' % (' '.join(smtp), err.decode(errors='replace')))
        return
    # Force compliant eols
    bdata = re.sub(rb'\r\n|\n|\r(?!\n)', b'\r\n', bdata)
    smtp.sendmail(fromaddr, destaddrs, bdata)


def send_series(artifacts: List[PatchArtifact], rset: RecipientSet, sign: bool = False,
                dryrun: bool = False, output_dir: Optional[str] = None) -> Tuple[int, List[gitsubmit.SendError]]:
    """Send every artifact, cover first. Failures are collected per artifact
    instead of stopping the run, since the branch is already rebuilt by now."""
    if output_dir is not None:
        dryrun = True

    failures = list()
    try:
        smtp, fromaddr = gitsubmit.get_smtp(dryrun=dryrun)
    except (smtplib.SMTPException, OSError) as ex:
        logger.critical('Failed to configure the smtp connection:')
        logger.critical(ex)
        for artifact in artifacts:
            failures.append(gitsubmit.SendError(artifact.counter, artifact.subject, str(ex)))
        return 0, failures

    destaddrs = sorted(rset.get_all_addrs())
    seriests = int(time.time())
    logger.info('---')
    print_pretty_addrs(rset.get_to(), 'To')
    print_pretty_addrs(rset.get_cc(), 'Cc')
    logger.info('---')

    sent = 0
    for artifact in artifacts:
        msg = make_message(artifact, rset, fromaddr, seriests=seriests)
        subject = artifact.subject
        try:
            bdata = get_msg_bytes(msg, sign=sign)
            if dryrun:
                if output_dir:
                    filen = re.sub(r'\.patch$', '', artifact.filename) + '.eml'
                    logger.info('  %s', filen)
                    with open(os.path.join(output_dir, filen), 'wb') as fh:
                        fh.write(bdata)
                    continue
                logger.info('    --- DRYRUN: message follows ---')
                logger.info('    | ' + bdata.decode(errors='replace').rstrip().replace('\n', '\n    | '))
                logger.info('    --- DRYRUN: message ends ---')
                continue
            logger.info('  %s', subject)
            send_one(smtp, fromaddr, destaddrs, bdata)
            sent += 1
        except (smtplib.SMTPException, OSError, RuntimeError) as ex:
            logger.critical('  FAILED: %s', ex)
            failures.append(gitsubmit.SendError(artifact.counter, subject, str(ex)))

    if isinstance(smtp, (smtplib.SMTP, smtplib.SMTP_SSL)):
        try:
            smtp.quit()
        except smtplib.SMTPException as ex:
            logger.debug('Error closing the smtp connection: %s', ex)

    return sent, failures
