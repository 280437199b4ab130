import pytest  # noqa
import gitsubmit
import os

from conftest import git


@pytest.mark.parametrize('pairs,expected', [
    ([('', 'dev@example.com')], 'dev@example.com'),
    ([('dev@example.com', 'dev@example.com')], 'dev@example.com'),
    ([('Some Dev', 'dev@example.com')], 'Some Dev <dev@example.com>'),
    ([('Dev, Some', 'dev@example.com')], '"Dev, Some" <dev@example.com>'),
    ([('One', 'one@example.com'), ('', 'two@example.com')], 'One <one@example.com>, two@example.com'),
])
def test_format_addrs(pairs, expected):
    assert gitsubmit.format_addrs(pairs) == expected


def test_config_from_file(tmp_path):
    cfgfile = os.path.join(tmp_path, 'submitcfg')
    with open(cfgfile, 'w') as fh:
        fh.write('[submit]\n')
        fh.write('    subject-prefix = RFC PATCH\n')
        fh.write('    am-flags = --3way --signoff\n')
    config = gitsubmit.get_config_from_git(r'submit\..*', defaults={'am-flags': '--3way'}, source=cfgfile)
    assert config['subject-prefix'] == 'RFC PATCH'
    assert config['am-flags'] == '--3way --signoff'


def test_main_config_worktree_file(gitdir):
    gitsubmit.MAIN_CONFIG = None
    with open(os.path.join(gitdir, '.git-submit-config'), 'w') as fh:
        fh.write('[submit]\n')
        fh.write('    send-series-to = list@example.org\n')
        # not on the worktree whitelist
        fh.write('    am-flags = --reject\n')
    git(gitdir, ['config', 'submit.subject-prefix', 'RFC'])
    config = gitsubmit.get_main_config()
    assert config['send-series-to'] == 'list@example.org'
    assert config['subject-prefix'] == 'RFC'
    assert config['am-flags'] == '--3way'


def test_revparse_missing(gitdir):
    with pytest.raises(LookupError):
        gitsubmit.git_revparse_obj('refs/heads/does-not-exist')
    assert gitsubmit.git_revparse_obj('refs/heads/master') == git(gitdir, ['rev-parse', 'master'])


def test_ref_exists(gitdir):
    assert gitsubmit.git_ref_exists('refs/heads/master')
    assert not gitsubmit.git_ref_exists('refs/tags/topic-v1')


@pytest.mark.parametrize('editor,ecode,expected', [
    ('true', 0, b'Hello world\n'),
    ('false', 1, b'Hello world\n'),
    ('sed -i s/world/there/', 0, b'Hello there\n'),
])
def test_edit_in_editor(gitdir, editor, ecode, expected):
    git(gitdir, ['config', 'core.editor', editor])
    assert gitsubmit.edit_in_editor(b'Hello world\n', filehint='0001-test.patch') == (ecode, expected)


def test_edit_in_editor_branch_switch(gitdir, tmp_path):
    script = os.path.join(tmp_path, 'switch.sh')
    with open(script, 'w') as fh:
        fh.write(f'#!/bin/sh\ngit -C {gitdir} checkout -q master\n')
    os.chmod(script, 0o755)
    git(gitdir, ['config', 'core.editor', script])
    with pytest.raises(gitsubmit.EditAborted):
        gitsubmit.edit_in_editor(b'Hello world\n')


def test_get_cache_roundtrip():
    assert gitsubmit.get_cache('some@msgid', suffix='lookup') is None
    gitsubmit.save_cache(b'From: me@example.com\n', 'some@msgid', suffix='lookup')
    assert gitsubmit.get_cache('some@msgid', suffix='lookup') == b'From: me@example.com\n'
