#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import gitsubmit

from typing import List

from gitsubmit.series import PatchArtifact

logger = gitsubmit.logger


def edit_artifact(artifact: PatchArtifact) -> bool:
    ecode, bdata = gitsubmit.edit_in_editor(artifact.content, filehint=artifact.filename)
    if ecode != 0:
        raise gitsubmit.EditAborted('Editor exited with code %s while editing %s' % (ecode, artifact.filename))
    if not len(bdata.strip()):
        raise gitsubmit.EditAborted('%s was left empty' % artifact.filename)
    if bdata == artifact.content:
        logger.debug('%s unchanged', artifact.filename)
        return False
    artifact.content = bdata
    return True


def edit_series(artifacts: List[PatchArtifact]) -> int:
    """Open every artifact in the editor, one after another, in series order.
    Returns how many of them were changed."""
    changed = 0
    total = len(artifacts)
    for at, artifact in enumerate(artifacts, start=1):
        logger.info('Editing %s (%s/%s)', artifact.filename, at, total)
        if edit_artifact(artifact):
            changed += 1

    for artifact in artifacts:
        if artifact.is_cover and artifact.has_placeholders():
            logger.warning('WARNING: the cover letter still contains format-patch placeholders')

    logger.info('Edited %s of %s patches', changed, total)
    return changed
