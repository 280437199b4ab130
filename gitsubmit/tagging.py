#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import re

import gitsubmit

from typing import Optional, Dict

logger = gitsubmit.logger


def get_tagname(branch: str, version: int) -> str:
    return f'{branch}-v{version}'


def get_version_tags(branch: str, gitdir: Optional[str] = None) -> Dict[int, str]:
    tags = dict()
    tagre = re.compile(r'^%s-v(\d+)$' % re.escape(branch))
    for tagname in gitsubmit.git_get_command_lines(gitdir, ['tag', '--list', f'{branch}-v*']):
        matches = tagre.search(tagname)
        if not matches:
            logger.debug('Ignoring tag %s', tagname)
            continue
        tags[int(matches.groups()[0])] = tagname
    return tags


def get_latest_version(branch: str, gitdir: Optional[str] = None) -> int:
    tags = get_version_tags(branch, gitdir=gitdir)
    if not tags:
        return 0
    return max(tags)


def get_next_version(branch: str, gitdir: Optional[str] = None) -> int:
    return get_latest_version(branch, gitdir=gitdir) + 1


def tag_version(branch: str, version: int, commit: str, gitdir: Optional[str] = None) -> str:
    tagname = get_tagname(branch, version)
    if gitsubmit.git_ref_exists(f'refs/tags/{tagname}', gitdir=gitdir):
        raise gitsubmit.VersionConflict(tagname)
    # No -f: an existing tag must never be moved
    ecode, out = gitsubmit.git_run_command(gitdir, ['tag', tagname, commit], logstderr=True)
    if ecode > 0:
        if gitsubmit.git_ref_exists(f'refs/tags/{tagname}', gitdir=gitdir):
            raise gitsubmit.VersionConflict(tagname)
        raise RuntimeError('Could not tag %s as %s: %s' % (commit, tagname, out.strip()))
    logger.info('Tagged %s as %s', commit[:12], tagname)
    return tagname
