import pytest  # noqa
import gitsubmit
import gitsubmit.command
import gitsubmit.submit
import logging
import os

from unittest import mock

from conftest import git


def _run(args):
    parser = gitsubmit.command.setup_parser()
    cmdargs = parser.parse_args(args)
    with pytest.raises(SystemExit) as e:
        cmdargs.func(cmdargs)
    return e.value.code


def _sent_subjects(outbox):
    subjects = list()
    for filen in sorted(os.listdir(outbox), key=lambda x: int(x[4:-4])):
        with open(os.path.join(outbox, filen)) as fh:
            for line in fh:
                if line.startswith('Subject: '):
                    subjects.append(line[9:].strip())
                    break
    return subjects


def _tags(gitdir):
    return git(gitdir, ['tag', '--list']).split()


def test_submit_happy_path(gitdir, add_commits, editor_script, fake_sendmail):
    oldtip = add_commits(3)
    olddiff = git(gitdir, ['diff', 'master', 'topic'])
    editlog = editor_script()
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_OK
    newtip = git(gitdir, ['rev-parse', 'topic'])
    assert newtip != oldtip
    assert git(gitdir, ['diff', 'master', 'topic']) == olddiff
    assert _tags(gitdir) == ['topic-v1']
    assert git(gitdir, ['rev-parse', 'topic-v1']) == newtip
    # every artifact was offered for editing, cover first
    with open(editlog) as fh:
        assert fh.read().split() == ['0000-cover-letter.patch', '0001-Add-line-1.patch',
                                     '0002-Add-line-2.patch', '0003-Add-line-3.patch']
    assert _sent_subjects(outbox) == [
        '[PATCH 0/3] *** SUBJECT HERE ***',
        '[PATCH 1/3] Add line 1',
        '[PATCH 2/3] Add line 2',
        '[PATCH 3/3] Add line 3',
    ]


def test_submit_editor_abort(gitdir, add_commits, editor_script, fake_sendmail):
    oldtip = add_commits(2)
    editlog = editor_script(ecode=1)
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED
    assert git(gitdir, ['rev-parse', 'topic']) == oldtip
    assert not _tags(gitdir)
    assert not os.listdir(outbox)
    # stopped at the first patch
    with open(editlog) as fh:
        assert fh.read().split() == ['0001-Add-line-1.patch']


def test_submit_rollback(gitdir, add_commits, editor_script, fake_sendmail):
    oldtip = add_commits(3)
    # make the second patch impossible to apply
    editor_script(body='case "$1" in *0002-*) sed -i "s/^ base$/ bogus/" "$1";; esac')
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ROLLED_BACK
    assert git(gitdir, ['rev-parse', 'topic']) == oldtip
    assert git(gitdir, ['symbolic-ref', 'HEAD']) == 'refs/heads/topic'
    assert not len(gitsubmit.git_get_repo_status())
    assert not _tags(gitdir)
    assert not os.listdir(outbox)


def test_submit_tag_conflict(gitdir, add_commits, editor_script, fake_sendmail):
    add_commits(2)
    # somebody grabs the version tag while we are editing
    editor_script(body='case "$1" in *0001-*) git tag topic-v1 master;; esac')
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_TAG_FAILED
    assert git(gitdir, ['rev-parse', 'topic-v1']) == git(gitdir, ['rev-parse', 'master'])
    assert git(gitdir, ['rev-list', '--count', 'master..topic']) == '2'
    # the series still went out
    assert len(os.listdir(outbox)) == 2


def test_submit_send_failure(gitdir, add_commits, editor_script, fake_sendmail):
    oldtip = add_commits(3)
    editor_script()
    outbox = fake_sendmail(refuse='PATCH 2/3')
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_SEND_FAILED
    newtip = git(gitdir, ['rev-parse', 'topic'])
    assert newtip != oldtip
    assert git(gitdir, ['rev-parse', 'topic-v1']) == newtip
    assert _sent_subjects(outbox) == [
        '[PATCH 0/3] *** SUBJECT HERE ***',
        '[PATCH 1/3] Add line 1',
        '[PATCH 3/3] Add line 3',
    ]


def test_submit_second_version(gitdir, add_commits, editor_script, fake_sendmail):
    add_commits(2)
    git(gitdir, ['tag', 'topic-v1'])
    editor_script()
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED
    assert _tags(gitdir) == ['topic-v1']
    assert _run(['--to', 'list@example.org', '--in-reply-to', '<topic-v1@example.com>']) == 0
    assert _tags(gitdir) == ['topic-v1', 'topic-v2']
    assert _sent_subjects(outbox) == ['[PATCH v2 1/2] Add line 1', '[PATCH v2 2/2] Add line 2']


def test_submit_second_version_no_reply_allowed(gitdir, add_commits, editor_script, fake_sendmail):
    gitsubmit.MAIN_CONFIG['require-reply-to'] = 'no'
    add_commits(1)
    git(gitdir, ['tag', 'topic-v1'])
    editor_script()
    fake_sendmail()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_OK
    assert 'topic-v2' in _tags(gitdir)


def test_submit_no_recipients(gitdir, add_commits, editor_script):
    oldtip = add_commits(1)
    editlog = editor_script()
    assert _run([]) == gitsubmit.submit.EXIT_ABORTED
    assert git(gitdir, ['rev-parse', 'topic']) == oldtip
    assert not os.path.exists(editlog)


def test_submit_dirty_tree(gitdir, add_commits, editor_script):
    oldtip = add_commits(1)
    editlog = editor_script()
    with open(os.path.join(gitdir, 'data.txt'), 'a') as fh:
        fh.write('uncommitted\n')
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED
    assert git(gitdir, ['rev-parse', 'topic']) == oldtip
    assert not os.path.exists(editlog)


def test_submit_nothing_to_send(gitdir):
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED


def test_submit_dry_run(gitdir, add_commits, editor_script, fake_sendmail):
    oldtip = add_commits(2)
    editor_script()
    outbox = fake_sendmail()
    assert _run(['--to', 'list@example.org', '--dry-run']) == gitsubmit.submit.EXIT_OK
    assert git(gitdir, ['rev-parse', 'topic']) != oldtip
    assert not _tags(gitdir)
    assert not os.listdir(outbox)


def test_submit_output_dir(gitdir, add_commits, editor_script, tmp_path):
    add_commits(1)
    editor_script()
    outdir = os.path.join(tmp_path, 'out')
    assert _run(['--to', 'list@example.org', '-o', outdir]) == gitsubmit.submit.EXIT_OK
    assert os.listdir(outdir) == ['0001-Add-line-1.eml']
    assert not _tags(gitdir)


def test_show_revision(gitdir, add_commits, caplog):
    caplog.set_level(logging.INFO, logger='gitsubmit')
    add_commits(1)
    git(gitdir, ['tag', 'topic-v4'])
    assert _run(['--show-revision']) == gitsubmit.submit.EXIT_OK
    assert 'Last sent: topic-v4' in caplog.text
    assert 'v5' in caplog.messages


def test_submit_unborn_branch(tmp_path, monkeypatch):
    dest = os.path.join(tmp_path, 'unborn')
    git(None, ['init', '-q', dest])
    monkeypatch.chdir(dest)
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED


def test_submit_empty_commit(gitdir, add_commits, editor_script, caplog):
    add_commits(1)
    git(gitdir, ['commit', '-q', '--allow-empty', '-m', 'Empty marker'])
    oldtip = add_commits(1, start=2)
    editlog = editor_script()
    assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ABORTED
    assert git(gitdir, ['rev-parse', 'topic']) == oldtip
    assert not os.path.exists(editlog)
    assert 'is empty' in caplog.text
    assert 'left empty' not in caplog.text


def test_submit_rollback_failure(gitdir, add_commits, editor_script, fake_sendmail, caplog):
    add_commits(3)
    editor_script(body='case "$1" in *0002-*) sed -i "s/^ base$/ bogus/" "$1";; esac')
    outbox = fake_sendmail()
    with mock.patch('gitsubmit.rebuild.BranchRebuild.rollback', side_effect=RuntimeError('Rollback of topic failed')):
        assert _run(['--to', 'list@example.org']) == gitsubmit.submit.EXIT_ROLLED_BACK
    assert 'git-submit-rescue-' in caplog.text
    assert not _tags(gitdir)
    assert not os.listdir(outbox)


def test_dry_run_help_mentions_rebuild():
    parser = gitsubmit.command.setup_parser()
    helps = {x.dest: x.help for x in parser._actions}
    assert 'Rebuild the branch' in helps['dryrun']
    assert 'Rebuild the branch' in helps['output_dir']
