#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import pathlib
import sys

import gitsubmit
import gitsubmit.edit
import gitsubmit.rebuild
import gitsubmit.recipients
import gitsubmit.send
import gitsubmit.series
import gitsubmit.tagging

logger = gitsubmit.logger

EXIT_OK = 0
# Nothing was changed
EXIT_ABORTED = 1
# A patch failed to apply and the branch was rolled back
EXIT_ROLLED_BACK = 2
# The branch was rebuilt, but the version tag could not be created
EXIT_TAG_FAILED = 3
# The branch was rebuilt, but some messages were not sent
EXIT_SEND_FAILED = 4
EXIT_INTERRUPTED = 130


def show_revision(cmdargs: argparse.Namespace) -> int:
    mybranch = gitsubmit.git_get_current_branch()
    if mybranch is None:
        return EXIT_ABORTED
    latest = gitsubmit.tagging.get_latest_version(mybranch)
    if latest:
        logger.info('Last sent: %s', gitsubmit.tagging.get_tagname(mybranch, latest))
    logger.info('v%s', latest + 1)
    return EXIT_OK


def get_sign(cmdargs: argparse.Namespace) -> bool:
    if cmdargs.no_sign or not gitsubmit.can_patatt:
        return False
    config = gitsubmit.get_main_config()
    if config.get('send-no-patatt-sign', '').lower() in {'yes', 'true', 'y'}:
        return False
    return True


def submit(cmdargs: argparse.Namespace) -> int:
    topdir = gitsubmit.git_get_toplevel()
    if not topdir:
        logger.critical('CRITICAL: Current directory is not a git checkout.')
        return EXIT_ABORTED
    with gitsubmit.in_directory(topdir):
        if cmdargs.show_revision:
            return show_revision(cmdargs)
        return run_submit(cmdargs)


def run_submit(cmdargs: argparse.Namespace) -> int:
    status = gitsubmit.git_get_repo_status()
    if len(status):
        logger.critical('CRITICAL: Repository contains uncommitted changes.')
        logger.critical('          Stash or commit them first.')
        return EXIT_ABORTED

    try:
        srange = gitsubmit.series.locate_series()
    except gitsubmit.SubmitAborted as ex:
        logger.critical('CRITICAL: %s', ex)
        return EXIT_ABORTED
    mybranch = srange.branch
    logger.info('Found %s commits to send on %s', len(srange), mybranch)

    config = gitsubmit.get_main_config()
    revision = gitsubmit.tagging.get_next_version(mybranch)
    if revision > 1 and not cmdargs.in_reply_to:
        if config.get('require-reply-to', 'yes').lower() in {'yes', 'true', 'y'}:
            logger.critical('CRITICAL: This is version %s of the patch series,', revision)
            logger.critical('          --in-reply-to=<previous-message-id> should be used')
            return EXIT_ABORTED

    if cmdargs.in_reply_to:
        logger.info('In reply to: %s', config['midmask'] % cmdargs.in_reply_to.strip('<>'))
    rset = gitsubmit.recipients.resolve_recipients(cmdargs.to, cmdargs.cc, cmdargs.in_reply_to)
    if not len(rset):
        logger.critical('CRITICAL: Please specify at least one address with --to or --cc.')
        return EXIT_ABORTED
    logger.debug('Recipients:\n%s', rset)

    try:
        artifacts = gitsubmit.series.export_series(srange, revision=revision, in_reply_to=cmdargs.in_reply_to)
    except RuntimeError as ex:
        logger.critical('CRITICAL: Failed to convert range to patches: %s', ex)
        return EXIT_ABORTED

    logger.info('---')
    try:
        gitsubmit.edit.edit_series(artifacts)
    except gitsubmit.EditAborted as ex:
        logger.critical('CRITICAL: %s', ex)
        logger.critical('          Nothing was changed.')
        return EXIT_ABORTED
    except KeyboardInterrupt:
        logger.info('')
        logger.critical('Interrupted, nothing was changed.')
        return EXIT_INTERRUPTED

    logger.info('---')
    rebuild = gitsubmit.rebuild.BranchRebuild(srange, artifacts)
    try:
        newtip = rebuild.run()
    except gitsubmit.ReconstructionFailed as ex:
        logger.critical('---')
        logger.critical('CRITICAL: Patch %s failed to apply:', ex.index)
        logger.critical(ex.cause)
        logger.critical('---')
        logger.critical('%s was rolled back and is unchanged at %s.', mybranch, srange.tip[:12])
        if ex.rescue_dir:
            logger.critical('A copy of the edited patches was saved in %s', ex.rescue_dir)
        return EXIT_ROLLED_BACK
    except gitsubmit.SubmitAborted as ex:
        logger.critical('CRITICAL: %s', ex)
        logger.critical('          Nothing was changed.')
        return EXIT_ABORTED
    except RuntimeError as ex:
        logger.critical('CRITICAL: %s', ex)
        logger.critical('          Check %s manually, it was at %s before the rebuild.', mybranch, srange.tip[:12])
        return EXIT_ROLLED_BACK

    ecode = EXIT_OK
    tagname = gitsubmit.tagging.get_tagname(mybranch, revision)
    if cmdargs.dryrun or cmdargs.output_dir:
        logger.info('DRYRUN: Not tagging %s', tagname)
    else:
        try:
            gitsubmit.tagging.tag_version(mybranch, revision, newtip)
        except gitsubmit.VersionConflict as ex:
            logger.critical('WARNING: %s, not overwriting it.', ex)
            logger.critical('         %s is rebuilt, tag %s manually.', mybranch, newtip[:12])
            ecode = EXIT_TAG_FAILED
        except RuntimeError as ex:
            logger.critical('WARNING: %s', ex)
            ecode = EXIT_TAG_FAILED

    if cmdargs.output_dir:
        logger.info('Will write out messages into %s', cmdargs.output_dir)
        pathlib.Path(cmdargs.output_dir).mkdir(parents=True, exist_ok=True)

    sent, failures = gitsubmit.send.send_series(artifacts, rset, sign=get_sign(cmdargs),
                                                dryrun=cmdargs.dryrun, output_dir=cmdargs.output_dir)
    logger.info('---')
    if cmdargs.dryrun or cmdargs.output_dir:
        logger.info('DRYRUN: Would have sent %s messages', len(artifacts) - len(failures))
    else:
        logger.info('Sent %s messages', sent)
    if failures:
        logger.critical('CRITICAL: %s of %s messages were not sent:', len(failures), len(artifacts))
        for failure in failures:
            logger.critical('  %s: %s', failure.subject, failure.cause)
        logger.critical('%s was rebuilt and stays as it is.', mybranch)
        return EXIT_SEND_FAILED

    return ecode


def cmd_submit(cmdargs: argparse.Namespace) -> None:
    sys.exit(submit(cmdargs))
