#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import os
import shlex
import tempfile

import gitsubmit

from typing import Optional, List

from gitsubmit.series import SeriesRange, PatchArtifact

logger = gitsubmit.logger

STATE_NEW = 'new'
STATE_SNAPSHOT = 'snapshot'
STATE_RESET = 'reset'
STATE_APPLYING = 'applying'
STATE_COMMITTED = 'committed'
STATE_ROLLED_BACK = 'rolled-back'


class BranchRebuild:
    """Replace the series on a branch with commits rebuilt from edited patches.

    The branch moves through new -> snapshot -> reset -> applying and ends
    either in committed (the branch points at the rebuilt series) or in
    rolled-back (the branch points at exactly the snapshot again). It is
    never left pointing at a partially applied series.
    """
    srange: SeriesRange
    patches: List[PatchArtifact]
    artifacts: List[PatchArtifact]
    state: str
    snapshot: Optional[str]
    old_tip: Optional[str]
    new_tip: Optional[str]
    applied: int
    rescue_dir: Optional[str]

    def __init__(self, srange: SeriesRange, artifacts: List[PatchArtifact], gitdir: Optional[str] = None):
        self.srange = srange
        self.artifacts = artifacts
        self.patches = [x for x in artifacts if not x.is_cover]
        self.gitdir = gitdir
        self.state = STATE_NEW
        self.snapshot = None
        self.old_tip = None
        self.new_tip = None
        self.applied = 0
        self.rescue_dir = None

    def _set_state(self, state: str) -> None:
        logger.debug('Rebuild of %s: %s -> %s', self.srange.branch, self.state, state)
        self.state = state

    def _git(self, args: List[str], stdin: Optional[bytes] = None) -> str:
        ecode, out = gitsubmit.git_run_command(self.gitdir, args, stdin=stdin, logstderr=True)
        if ecode > 0:
            raise RuntimeError('git %s failed: %s' % (args[0], out.strip()))
        return out

    def get_head(self) -> Optional[str]:
        try:
            return gitsubmit.git_revparse_obj('HEAD', gitdir=self.gitdir)
        except LookupError:
            # unborn branch
            return None

    def take_snapshot(self) -> str:
        if self.state != STATE_NEW:
            raise RuntimeError('Cannot snapshot %s in state %s' % (self.srange.branch, self.state))
        mybranch = gitsubmit.git_get_current_branch(self.gitdir)
        if mybranch != self.srange.branch:
            raise gitsubmit.SubmitAborted('Current branch is %s, expected %s' % (mybranch, self.srange.branch))
        tip = self.get_head()
        if tip != self.srange.tip:
            raise gitsubmit.SubmitAborted('Branch %s moved from %s to %s while editing'
                                          % (self.srange.branch, self.srange.tip, tip))
        if len(gitsubmit.git_get_repo_status(self.gitdir)):
            raise gitsubmit.SubmitAborted('Repository contains uncommitted changes')
        self.snapshot = tip
        self.old_tip = tip
        self._set_state(STATE_SNAPSHOT)
        return tip

    def reset(self) -> None:
        if self.state != STATE_SNAPSHOT:
            raise RuntimeError('Cannot reset %s in state %s' % (self.srange.branch, self.state))
        if self.srange.forkpoint:
            logger.info('Resetting %s to %s', self.srange.branch, self.srange.forkpoint[:12])
            self._git(['reset', '--hard', self.srange.forkpoint])
        else:
            # The series starts at the root commit, so go back to an unborn branch
            logger.info('Resetting %s to an empty history', self.srange.branch)
            emptytree = self._git(['hash-object', '-t', 'tree', os.devnull]).strip()
            self._git(['read-tree', '-u', '--reset', emptytree])
            self._git(['update-ref', '-d', f'refs/heads/{self.srange.branch}', self.snapshot])
        self._set_state(STATE_RESET)

    def apply(self) -> None:
        if self.state != STATE_RESET:
            raise RuntimeError('Cannot apply to %s in state %s' % (self.srange.branch, self.state))
        self._set_state(STATE_APPLYING)
        config = gitsubmit.get_main_config()
        amflags = config.get('am-flags') or ''
        sp = shlex.shlex(amflags, posix=True)
        sp.whitespace_split = True
        amargs = list(sp)
        for patch in self.patches:
            logger.info('  Applying: %s', patch.subject)
            ecode, out = gitsubmit.git_run_command(self.gitdir, ['am'] + amargs, stdin=patch.content,
                                                   logstderr=True)
            if ecode > 0:
                raise gitsubmit.ReconstructionFailed(patch.counter, out.strip())
            self.applied += 1

    def commit(self) -> str:
        if self.state != STATE_APPLYING:
            raise RuntimeError('Cannot commit %s in state %s' % (self.srange.branch, self.state))
        if self.srange.forkpoint:
            revrange = f'{self.srange.forkpoint}..HEAD'
        else:
            revrange = 'HEAD'
        count = int(self._git(['rev-list', '--count', revrange]).strip())
        if count != len(self.patches):
            raise gitsubmit.ReconstructionFailed(len(self.patches), 'Expected %s new commits on %s, found %s'
                                                 % (len(self.patches), self.srange.branch, count))
        self.new_tip = self.get_head()
        self.snapshot = None
        self._set_state(STATE_COMMITTED)
        logger.info('Rebuilt %s: %s -> %s', self.srange.branch, self.old_tip[:12], self.new_tip[:12])
        return self.new_tip

    def am_in_progress(self) -> bool:
        apply_dir = self._git(['rev-parse', '--git-path', 'rebase-apply']).strip()
        if self.gitdir and not os.path.isabs(apply_dir):
            apply_dir = os.path.join(self.gitdir, apply_dir)
        return os.path.isdir(apply_dir)

    def rollback(self) -> None:
        if self.snapshot is None:
            raise RuntimeError('No snapshot of %s to roll back to' % self.srange.branch)
        logger.info('Rolling back %s to %s', self.srange.branch, self.snapshot[:12])
        if self.am_in_progress():
            ecode, out = gitsubmit.git_run_command(self.gitdir, ['am', '--abort'], logstderr=True)
            if ecode > 0:
                # we are resetting to the snapshot anyway, just drop the am state
                logger.debug('git am --abort failed: %s', out.strip())
                self._git(['am', '--quit'])
        self._git(['update-ref', f'refs/heads/{self.srange.branch}', self.snapshot])
        self._git(['reset', '--hard', self.snapshot])
        head = self.get_head()
        if head != self.snapshot:
            logger.critical('CRITICAL: could not restore %s to %s!', self.srange.branch, self.snapshot)
            raise RuntimeError('Rollback of %s left HEAD at %s' % (self.srange.branch, head))
        self._set_state(STATE_ROLLED_BACK)

    def save_rescue(self) -> str:
        rescue_dir = tempfile.mkdtemp(prefix='git-submit-rescue-')
        for artifact in self.artifacts:
            with open(os.path.join(rescue_dir, artifact.filename), 'wb') as fh:
                fh.write(artifact.content)
        return rescue_dir

    def abort(self) -> str:
        # edits are saved before the branch is touched
        self.rescue_dir = self.save_rescue()
        try:
            self.rollback()
        except RuntimeError:
            logger.critical('CRITICAL: the edited patches were saved in %s', self.rescue_dir)
            raise
        return self.rescue_dir

    def run(self) -> str:
        self.take_snapshot()
        try:
            self.reset()
            self.apply()
            return self.commit()
        except gitsubmit.ReconstructionFailed as ex:
            ex.rescue_dir = self.abort()
            raise
        except (RuntimeError, KeyboardInterrupt) as ex:
            rescue_dir = self.abort()
            cause = str(ex) or 'interrupted'
            raise gitsubmit.ReconstructionFailed(self.applied + 1, cause, rescue_dir) from ex
