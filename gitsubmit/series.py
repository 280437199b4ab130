#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import email
import email.message
import email.parser
import os
import re
import subprocess
import tempfile

import gitsubmit

from typing import Optional, List, Dict, Iterator, Tuple

logger = gitsubmit.logger

# format-patch names the cover letter 0000-cover-letter.patch (or vN-0000-...)
COVER_RE = re.compile(r'^(v\d+-)?0000-')
# Series shorter than this are sent without a cover letter
COVER_MIN_PATCHES = 3
COVER_PLACEHOLDERS = ('*** SUBJECT HERE ***', '*** BLURB HERE ***')


class SeriesRange:
    """Outcome of walking the branch ancestry down to its fork point.

    commits are oldest-first. forkpoint is None when the walk reached a
    root commit without meeting the tip of another branch, in which case
    the series is the whole history of the branch."""
    branch: str
    tip: str
    forkpoint: Optional[str]
    commits: List[str]

    def __init__(self, branch: str, tip: str, forkpoint: Optional[str], commits: List[str]):
        self.branch = branch
        self.tip = tip
        self.forkpoint = forkpoint
        self.commits = commits

    @property
    def is_empty(self) -> bool:
        return not self.commits

    @property
    def reaches_root(self) -> bool:
        return self.forkpoint is None

    def get_revrange(self) -> List[str]:
        if self.forkpoint is None:
            return ['--root', self.tip]
        return [f'{self.forkpoint}..{self.tip}']

    def __len__(self):
        return len(self.commits)

    def __repr__(self):
        out = list()
        out.append('- branch: %s' % self.branch)
        out.append('  tip: %s' % self.tip)
        out.append('  forkpoint: %s' % self.forkpoint)
        out.append('  commits: %s' % len(self.commits))
        return '\n'.join(out)


class PatchArtifact:
    """One editable format-patch file. counter is the patch number in the
    series (1-based, the order git-am applies them in), or 0 for the cover letter."""
    counter: int
    filename: str
    commit: Optional[str]
    content: bytes

    def __init__(self, counter: int, filename: str, content: bytes, commit: Optional[str] = None):
        self.counter = counter
        self.filename = filename
        self.content = content
        self.commit = commit

    @property
    def is_cover(self) -> bool:
        return self.commit is None

    @property
    def subject(self) -> str:
        hdrs = email.parser.BytesHeaderParser().parsebytes(self.content)
        subject = hdrs.get('Subject', '')
        return re.sub(r'\s+', ' ', str(subject)).strip()

    def has_placeholders(self) -> bool:
        for placeholder in COVER_PLACEHOLDERS:
            if placeholder.encode() in self.content:
                return True
        return False

    def get_message(self) -> email.message.EmailMessage:
        return email.message_from_bytes(self.content, policy=gitsubmit.emlpolicy)

    def __repr__(self):
        return '<PatchArtifact %s %s>' % (self.counter, self.filename)


def get_other_branch_tips(mybranch: str, gitdir: Optional[str] = None) -> Dict[str, List[str]]:
    gitargs = ['for-each-ref', '--format=%(objectname) %(refname)', 'refs/heads/']
    lines = gitsubmit.git_get_command_lines(gitdir, gitargs)
    tips = dict()
    for line in lines:
        commit, refname = line.split(maxsplit=1)
        if refname == f'refs/heads/{mybranch}':
            continue
        if commit not in tips:
            tips[commit] = list()
        tips[commit].append(refname.replace('refs/heads/', '', 1))
    return tips


def iter_first_parent_ancestry(tip: str, gitdir: Optional[str] = None) -> Iterator[Tuple[str, List[str]]]:
    """Yield (commit, parents) pairs walking first parents from tip, newest first.
    rev-list is only read as far as the caller consumes it."""
    cmdargs = ['git', '--no-pager']
    if gitdir:
        cmdargs += ['-C', gitdir]
    cmdargs += ['rev-list', '--first-parent', '--parents', tip]
    logger.debug('Running %s' % ' '.join(cmdargs))
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
    try:
        for line in sp.stdout:
            chunks = line.decode().split()
            if not chunks:
                continue
            yield chunks[0], chunks[1:]
    finally:
        sp.stdout.close()
        if sp.poll() is None:
            sp.terminate()
        sp.wait()


def walk_to_forkpoint(branch: str, gitdir: Optional[str] = None) -> SeriesRange:
    try:
        tip = gitsubmit.git_revparse_obj(f'refs/heads/{branch}', gitdir=gitdir)
    except LookupError:
        raise gitsubmit.NoCommitsFound('No commits to send: %s has no commits yet' % branch)
    othertips = get_other_branch_tips(branch, gitdir=gitdir)
    commits = list()
    forkpoint = None
    for commit, parents in iter_first_parent_ancestry(tip, gitdir=gitdir):
        if commit in othertips:
            logger.debug('Fork-point %s is the tip of %s', commit, ', '.join(othertips[commit]))
            forkpoint = commit
            break
        if len(parents) > 1:
            raise gitsubmit.NonLinearSeries('Commit %s is a merge, merges are not supported in a series' % commit)
        commits.append(commit)

    if forkpoint is None and commits:
        logger.warning('WARNING: no other branch found in the history of %s', branch)
        logger.warning('         the series will include everything down to the root commit')

    commits.reverse()
    return SeriesRange(branch, tip, forkpoint, commits)


def locate_series(branch: Optional[str] = None, gitdir: Optional[str] = None) -> SeriesRange:
    if branch is None:
        branch = gitsubmit.git_get_current_branch(gitdir)
        if branch is None:
            raise gitsubmit.SubmitAborted('HEAD is detached, check out the branch you want to submit')

    srange = walk_to_forkpoint(branch, gitdir=gitdir)
    if srange.is_empty:
        othertips = get_other_branch_tips(branch, gitdir=gitdir)
        raise gitsubmit.NoCommitsFound('No commits to send: %s is at the tip of %s'
                                       % (branch, ', '.join(othertips.get(srange.tip, ['another branch']))))
    logger.debug('Series:\n%s', srange)
    return srange


def export_series(srange: SeriesRange, revision: int = 1, in_reply_to: Optional[str] = None,
                  gitdir: Optional[str] = None) -> List[PatchArtifact]:
    config = gitsubmit.get_main_config()
    with tempfile.TemporaryDirectory(prefix='git-submit-') as tdir:
        gitargs = ['format-patch', '-o', tdir, '--thread=shallow']
        prefix = config.get('subject-prefix')
        if prefix:
            gitargs.append(f'--subject-prefix={prefix}')
        if len(srange) >= COVER_MIN_PATCHES:
            gitargs.append('--cover-letter')
        else:
            gitargs.append('--no-cover-letter')
        if revision > 1:
            gitargs.append(f'-v{revision}')
        if in_reply_to:
            gitargs.append('--in-reply-to=%s' % in_reply_to.strip('<>'))
        gitargs += srange.get_revrange()
        ecode, out = gitsubmit.git_run_command(gitdir, gitargs, logstderr=True)
        if ecode > 0:
            raise RuntimeError('format-patch failed: %s' % out.strip())

        artifacts = list()
        patchfiles = list()
        for filen in sorted(os.listdir(tdir)):
            with open(os.path.join(tdir, filen), 'rb') as fh:
                content = fh.read()
            if COVER_RE.search(filen):
                artifacts.append(PatchArtifact(0, filen, content))
                continue
            patchfiles.append((filen, content))

    if len(patchfiles) != len(srange):
        raise RuntimeError('Expected %s patches from format-patch, got %s' % (len(srange), len(patchfiles)))

    for counter, (filen, content) in enumerate(patchfiles, start=1):
        if not len(content.strip()):
            # format-patch writes nothing for commits without changes
            commit = srange.commits[counter - 1]
            raise gitsubmit.SubmitAborted('Commit %s (%s) is empty, empty commits cannot be sent'
                                          % (commit[:12], filen))
        artifacts.append(PatchArtifact(counter, filen, content, commit=srange.commits[counter - 1]))

    logger.info('Exported %s commits as %s patches', len(srange), len(artifacts))
    for artifact in artifacts:
        logger.info('  %s', artifact.subject)

    return artifacts
