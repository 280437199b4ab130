import pytest  # noqa
import gitsubmit
import os


def git(gitdir, args, stdin=None):
    ecode, out = gitsubmit.git_run_command(gitdir, args, stdin=stdin, logstderr=True)
    assert ecode == 0, out
    return out.strip()


@pytest.fixture(scope="function", autouse=True)
def settestdefaults(tmp_path):
    gitsubmit.can_patatt = False
    gitsubmit.can_network = False
    gitsubmit.MAIN_CONFIG = dict(gitsubmit.DEFAULT_CONFIG)
    gitsubmit.USER_CONFIG = {
        'name': 'Test Override',
        'email': 'test-override@example.com',
    }
    gitsubmit.SENDEMAIL_CONFIG = dict()
    gitsubmit.REQSESSION = None
    gitsubmit._CACHE_CLEANED = False
    os.environ['XDG_DATA_HOME'] = str(tmp_path)
    os.environ['XDG_CACHE_HOME'] = str(tmp_path)


@pytest.fixture(scope="function")
def sampledir(request):
    return os.path.join(request.fspath.dirname, 'samples')


@pytest.fixture(scope="function")
def gitdir(tmp_path, monkeypatch):
    """A repository with one commit on master and the topic branch checked out at it."""
    dest = os.path.join(tmp_path, 'repo')
    git(None, ['init', '-q', dest])
    git(dest, ['symbolic-ref', 'HEAD', 'refs/heads/master'])
    git(dest, ['config', 'user.name', gitsubmit.USER_CONFIG['name']])
    git(dest, ['config', 'user.email', gitsubmit.USER_CONFIG['email']])
    git(dest, ['config', 'core.editor', 'true'])
    git(dest, ['config', 'commit.gpgsign', 'false'])
    git(dest, ['config', 'tag.gpgsign', 'false'])
    with monkeypatch.context() as mp:
        # Pin the dates, so rebuilt commits always get new hashes
        mp.setenv('GIT_AUTHOR_DATE', '2022-01-01T00:00:00 +0000')
        mp.setenv('GIT_COMMITTER_DATE', '2022-01-01T00:00:00 +0000')
        with open(os.path.join(dest, 'data.txt'), 'w') as fh:
            fh.write('base\n')
        git(dest, ['add', 'data.txt'])
        git(dest, ['commit', '-q', '-m', 'Initial commit'])
    git(dest, ['checkout', '-q', '-b', 'topic'])
    olddir = os.getcwd()
    os.chdir(dest)
    yield dest
    os.chdir(olddir)


@pytest.fixture(scope="function")
def add_commits(gitdir, monkeypatch):
    """Returns a helper that appends "line N" to data.txt once per commit."""
    def _add_commits(count, start=1):
        with monkeypatch.context() as mp:
            mp.setenv('GIT_AUTHOR_DATE', '2022-01-01T00:00:00 +0000')
            mp.setenv('GIT_COMMITTER_DATE', '2022-01-01T00:00:00 +0000')
            for x in range(start, start + count):
                with open(os.path.join(gitdir, 'data.txt'), 'a') as fh:
                    fh.write(f'line {x}\n')
                git(gitdir, ['commit', '-q', '-a', '-m', f'Add line {x}'])
        return git(gitdir, ['rev-parse', 'HEAD'])
    return _add_commits


@pytest.fixture(scope="function")
def editor_script(gitdir, tmp_path):
    """Installs a shell script as core.editor; every invocation is logged to editor.log."""
    def _editor_script(body='', ecode=0):
        logfile = os.path.join(tmp_path, 'editor.log')
        script = os.path.join(tmp_path, 'editor.sh')
        with open(script, 'w') as fh:
            fh.write('#!/bin/sh\n')
            fh.write(f'basename "$1" >> {logfile}\n')
            fh.write(body + '\n')
            fh.write(f'exit {ecode}\n')
        os.chmod(script, 0o755)
        git(gitdir, ['config', 'core.editor', script])
        return logfile
    return _editor_script


@pytest.fixture(scope="function")
def fake_sendmail(tmp_path):
    """Configures a local sendmail command that saves every message into an outbox
    directory. Messages matching refuse are rejected with a non-zero exit."""
    def _fake_sendmail(refuse=None):
        outbox = os.path.join(tmp_path, 'outbox')
        os.makedirs(outbox, exist_ok=True)
        script = os.path.join(tmp_path, 'sendmail.sh')
        with open(script, 'w') as fh:
            fh.write('#!/bin/sh\n')
            fh.write(f'echo "$@" >> {tmp_path}/sendmail.args\n')
            fh.write(f'out={outbox}/msg-$(ls {outbox} | wc -l | tr -d " ").eml\n')
            fh.write('cat > "$out"\n')
            if refuse:
                fh.write(f'if grep -q "{refuse}" "$out"; then rm "$out"; echo refused >&2; exit 1; fi\n')
        os.chmod(script, 0o755)
        gitsubmit.SENDEMAIL_CONFIG = {
            'smtpserver': script,
            'from': 'Test Override <test-override@example.com>',
        }
        return outbox
    return _fake_sendmail
