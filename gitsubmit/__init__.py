# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import subprocess
import logging
import hashlib
import re
import os
import fnmatch
import email.utils
import email.policy
import tempfile
import pathlib
import smtplib
import shlex
import time
import copy
import shutil
# noinspection PyCompatibility
import pwd

import requests

from contextlib import contextmanager
from typing import Optional, Tuple, Set, List, Union

from email import charset
charset.add_charset('utf-8', None)
# Policy we use for saving mail locally
emlpolicy = email.policy.EmailPolicy(utf8=True, cte_type='8bit', max_line_length=None)

# Presence of these characters requires quoting of the name in the header
qspecials = re.compile(r'[()<>@,:;.\"\[\]]')

try:
    import patatt
    can_patatt = True
except ModuleNotFoundError:
    can_patatt = False

# global setting allowing us to turn off networking
can_network = True

__VERSION__ = '0.4.0'

logger = logging.getLogger('gitsubmit')

LOREADDR = 'https://lore.kernel.org'

DEFAULT_CONFIG = {
    'midmask': LOREADDR + '/all/%s',
    # Where to fetch the raw replied-to message for recipient lookups
    'rawmask': LOREADDR + '/all/%s/raw',
    # How long to keep lookups in cache before expiring (minutes)?
    'cache-expire': '10',
    # Passed to format-patch as --subject-prefix
    'subject-prefix': 'PATCH',
    # Extra flags passed to git-am when rebuilding the branch
    'am-flags': '--3way',
    # Refuse to send v2+ without --in-reply-to
    'require-reply-to': 'yes',
    # Comma-separated list of address globs never to send to
    'email-exclude': None,
    'send-series-to': None,
    'send-series-cc': None,
    'send-no-patatt-sign': 'no',
    # When sending mail, use this sendemail identity configuration
    'sendemail-identity': None,
}

# This is where we store actual config
MAIN_CONFIG = None
# This is git-config user.*
USER_CONFIG = None
# This is git-config sendemail.*
SENDEMAIL_CONFIG = None

# Used for storing our requests session
REQSESSION = None
# Indicates that we've cleaned cache already
_CACHE_CLEANED = False


class SubmitError(RuntimeError):
    pass


class SubmitAborted(SubmitError):
    """Raised for anything that stops the run before the branch is touched."""
    pass


class NoCommitsFound(SubmitAborted):
    pass


class NonLinearSeries(SubmitAborted):
    pass


class EditAborted(SubmitAborted):
    pass


class AddressLookupError(SubmitError):
    pass


class ReconstructionFailed(SubmitError):
    index: int
    cause: str
    rescue_dir: Optional[str]

    def __init__(self, index: int, cause: str, rescue_dir: Optional[str] = None):
        self.index = index
        self.cause = cause
        self.rescue_dir = rescue_dir
        super().__init__('Patch %s failed to apply: %s' % (index, cause))


class VersionConflict(SubmitError):
    tagname: str

    def __init__(self, tagname: str):
        self.tagname = tagname
        super().__init__('Tag %s already exists' % tagname)


class SendError(SubmitError):
    index: int
    subject: str
    cause: str

    def __init__(self, index: int, subject: str, cause: str):
        self.index = index
        self.subject = subject
        self.cause = cause
        super().__init__('Failed to send %s: %s' % (subject, cause))


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None,
                 rundir: Optional[str] = None) -> Tuple[int, bytes, bytes]:
    if rundir:
        logger.debug('Changing dir to %s', rundir)
        curdir = os.getcwd()
        os.chdir(rundir)
    else:
        curdir = None

    logger.debug('Running %s' % ' '.join(cmdargs))
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stdin=subprocess.PIPE, stderr=subprocess.PIPE)
    (output, error) = sp.communicate(input=stdin)
    if curdir:
        logger.debug('Changing back into %s', curdir)
        os.chdir(curdir)

    return sp.returncode, output, error


def git_run_command(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                    logstderr: bool = False, decode: bool = True) -> Tuple[int, Union[str, bytes]]:
    cmdargs = ['git', '--no-pager']
    if gitdir:
        # we need the worktree for reset and am, so don't use --git-dir here
        cmdargs += ['-C', gitdir]

    # counteract some potential local settings
    if args[0] == 'log':
        args.insert(1, '--no-abbrev-commit')

    cmdargs += args

    ecode, out, err = _run_command(cmdargs, stdin=stdin)

    if decode:
        out = out.decode(errors='replace')

    if logstderr and len(err.strip()):
        if decode:
            err = err.decode(errors='replace')
        logger.debug('Stderr: %s', err)
        out += err

    return ecode, out


def git_credential_fill(gitdir: Optional[str], protocol: str, host: str, username: str) -> Optional[str]:
    stdin = f'protocol={protocol}\nhost={host}\nusername={username}\n'.encode()
    ecode, out = git_run_command(gitdir, args=['credential', 'fill'], stdin=stdin)
    if ecode == 0:
        for line in out.splitlines():
            if not line.startswith('password='):
                continue
            chunks = line.split('=', maxsplit=1)
            return chunks[1]
    return None


def git_get_command_lines(gitdir: Optional[str], args: list) -> List[str]:
    ecode, out = git_run_command(gitdir, args)
    lines = list()
    if out:
        for line in out.split('\n'):
            if line == '':
                continue
            lines.append(line)

    return lines


def git_get_repo_status(gitdir: Optional[str] = None, untracked: bool = False) -> List[str]:
    args = ['status', '--porcelain=v1']
    if not untracked:
        args.append('--untracked-files=no')
    return git_get_command_lines(gitdir, args)


def git_get_toplevel(path: Optional[str] = None) -> Optional[str]:
    topdir = None
    # Are we in a git tree and if so, what is our toplevel?
    gitargs = ['rev-parse', '--show-toplevel']
    lines = git_get_command_lines(path, gitargs)
    if len(lines) == 1:
        topdir = lines[0]
    return topdir


def git_get_current_branch(gitdir: Optional[str] = None, short: bool = True) -> Optional[str]:
    gitargs = ['symbolic-ref', '-q', 'HEAD']
    ecode, out = git_run_command(gitdir, gitargs)
    if ecode > 0:
        logger.critical('Not able to get current branch (git symbolic-ref HEAD)')
        return None
    mybranch = out.strip()
    if short:
        return re.sub(r'^refs/heads/', '', mybranch)
    return mybranch


def git_revparse_obj(gitobj: str, gitdir: Optional[str] = None) -> str:
    ecode, out = git_run_command(gitdir, ['rev-parse', '--verify', '-q', gitobj])
    if ecode > 0:
        raise LookupError('No such object: %s' % gitobj)
    return out.strip()


def git_ref_exists(refname: str, gitdir: Optional[str] = None) -> bool:
    ecode, out = git_run_command(gitdir, ['show-ref', '--verify', '-q', refname])
    return ecode == 0


@contextmanager
def in_directory(dirname):
    """Chdir into dirname for the duration of the block."""
    cdir = os.getcwd()
    try:
        os.chdir(dirname)
        yield True
    finally:
        os.chdir(cdir)


def get_config_from_git(regexp: str, defaults: Optional[dict] = None,
                        multivals: Optional[list] = None, source: Optional[str] = None) -> dict:
    if multivals is None:
        multivals = list()
    args = ['config']
    if source:
        args += ['--file', source]
    args += ['-z', '--get-regexp', regexp]
    ecode, out = git_run_command(None, args)
    gitconfig = defaults
    if not gitconfig:
        gitconfig = dict()
    if not out:
        return gitconfig

    for line in out.split('\x00'):
        if not line:
            continue
        try:
            key, value = line.split('\n', 1)
        except ValueError:
            # boolean-style entries with no value
            key, value = line, 'true'
        chunks = key.split('.')
        cfgkey = chunks[-1].lower()
        if cfgkey in multivals:
            if cfgkey not in gitconfig:
                gitconfig[cfgkey] = list()
            gitconfig[cfgkey].append(value)
        else:
            gitconfig[cfgkey] = value

    return gitconfig


def get_main_config() -> dict:
    global MAIN_CONFIG
    if MAIN_CONFIG is None:
        defcfg = copy.deepcopy(DEFAULT_CONFIG)
        # some options can be provided via the toplevel .git-submit-config file,
        # so load them up and use as defaults
        topdir = git_get_toplevel()
        wtglobs = ['send-*', '*mask', 'subject-prefix', 'email-exclude', 'require-reply-to']
        if topdir:
            wtcfg = os.path.join(topdir, '.git-submit-config')
            if os.access(wtcfg, os.R_OK):
                logger.debug('Loading worktree configs from %s', wtcfg)
                wtconfig = get_config_from_git(r'submit\..*', source=wtcfg)
                logger.debug('wtcfg=%s', wtconfig)
                for key, val in wtconfig.items():
                    for wtglob in wtglobs:
                        if fnmatch.fnmatch(key, wtglob):
                            logger.debug('wtcfg: %s=%s', key, val)
                            defcfg[key] = val
                            break
        config = get_config_from_git(r'submit\..*', defaults=defcfg)
        MAIN_CONFIG = config

    return MAIN_CONFIG


def get_cache_dir(appname: str = 'git-submit') -> str:
    global _CACHE_CLEANED
    if 'XDG_CACHE_HOME' in os.environ:
        cachehome = os.environ['XDG_CACHE_HOME']
    else:
        cachehome = os.path.join(str(pathlib.Path.home()), '.cache')
    cachedir = os.path.join(cachehome, appname)
    pathlib.Path(cachedir).mkdir(parents=True, exist_ok=True)
    if _CACHE_CLEANED:
        return cachedir

    # Delete all .lookup files older than cache-expire
    config = get_main_config()
    try:
        expmin = int(config['cache-expire']) * 60
    except ValueError:
        logger.critical('ERROR: cache-expire must be an integer (minutes): %s', config['cache-expire'])
        expmin = 600
    expage = time.time() - expmin
    for entry in os.listdir(cachedir):
        if entry.find('.lookup') <= 0:
            continue
        fullpath = os.path.join(cachedir, entry)
        st = os.stat(fullpath)
        if st.st_mtime < expage:
            logger.debug('Cleaning up cache: %s', entry)
            if os.path.isdir(fullpath):
                shutil.rmtree(fullpath)
            else:
                os.unlink(fullpath)
    _CACHE_CLEANED = True
    return cachedir


def get_cache_file(identifier: str, suffix: Optional[str] = None):
    cachedir = get_cache_dir()
    cachefile = hashlib.sha1(identifier.encode()).hexdigest()
    if suffix:
        cachefile = f'{cachefile}.{suffix}'
    return os.path.join(cachedir, cachefile)


def get_cache(identifier: str, suffix: Optional[str] = None) -> Optional[bytes]:
    fullpath = get_cache_file(identifier, suffix=suffix)
    try:
        with open(fullpath, 'rb') as fh:
            logger.debug('Using cache %s for %s', fullpath, identifier)
            return fh.read()
    except FileNotFoundError:
        logger.debug('Cache miss for %s', identifier)
    return None


def save_cache(contents: bytes, identifier: str, suffix: Optional[str] = None) -> None:
    fullpath = get_cache_file(identifier, suffix=suffix)
    try:
        with open(fullpath, 'wb') as fh:
            fh.write(contents)
            logger.debug('Saved cache %s for %s', fullpath, identifier)
    except FileNotFoundError:
        logger.debug('Could not write cache %s for %s', fullpath, identifier)


def get_user_config():
    global USER_CONFIG
    if USER_CONFIG is None:
        USER_CONFIG = get_config_from_git(r'user\..*')
        if 'name' not in USER_CONFIG:
            udata = pwd.getpwuid(os.getuid())
            USER_CONFIG['name'] = udata.pw_gecos
    return USER_CONFIG


def get_sendemail_config() -> dict:
    global SENDEMAIL_CONFIG
    if SENDEMAIL_CONFIG is None:
        # Get the default settings first
        config = get_main_config()
        identity = config.get('sendemail-identity')
        _basecfg = get_config_from_git(r'sendemail\.[^.]+$')
        if identity:
            # Use this identity to override what we got from the default one
            sconfig = get_config_from_git(rf'sendemail\.{identity}\..*', defaults=_basecfg)
            sectname = f'sendemail.{identity}'
            if not len(sconfig):
                raise smtplib.SMTPException('Unable to find %s settings in any applicable git config' % sectname)
        else:
            sconfig = _basecfg
            sectname = 'sendemail'
        logger.debug('Using values from %s', sectname)
        SENDEMAIL_CONFIG = sconfig

    return SENDEMAIL_CONFIG


def get_requests_session():
    global REQSESSION
    if REQSESSION is None:
        REQSESSION = requests.session()
        REQSESSION.headers.update({'User-Agent': 'git-submit/%s' % __VERSION__})
    return REQSESSION


def get_editor_cmd() -> List[str]:
    # What's our editor? And yes, the default is vi, bite me.
    corecfg = get_config_from_git(r'core\..*', {'editor': os.environ.get('EDITOR', 'vi')})
    editor = corecfg.get('editor')
    logger.debug('editor=%s', editor)
    sp = shlex.shlex(editor, posix=True)
    sp.whitespace_split = True
    return list(sp)


def edit_in_editor(bdata: bytes, filehint: str = 'COMMIT_EDITMSG') -> Tuple[int, bytes]:
    """Open bdata in the configured editor and return its exit code and
    the edited contents. Blocks until the editor exits."""
    # To avoid losing edits, ensure that we are still on the same
    # branch as when the file was originally opened.
    read_branch = git_get_current_branch()

    # Use filehint name in hopes that editors autoload necessary highlight rules
    with tempfile.TemporaryDirectory(prefix='git-submit-editor') as temp_dir:
        temp_fpath = os.path.join(temp_dir, filehint)
        with open(temp_fpath, 'xb') as edit_file:
            edit_file.write(bdata)

        cmdargs = get_editor_cmd() + [temp_fpath]
        logger.debug('Running %s' % ' '.join(cmdargs))
        sp = subprocess.Popen(cmdargs)
        ecode = sp.wait()

        with open(temp_fpath, 'rb') as edited_file:
            bdata = edited_file.read()

    write_branch = git_get_current_branch()
    if write_branch != read_branch:
        with tempfile.NamedTemporaryFile(mode='wb', prefix=f'old-{read_branch}'.replace('/', '-'),
                                         delete=False) as save_file:
            save_file.write(bdata)
            logger.critical('Editing started on branch %s, but current branch is %s.',
                            read_branch, write_branch)
            logger.critical('To avoid a collision, your text was saved in %s', save_file.name)
        raise EditAborted(f'Branch changed during file editing, the temporary file was saved at {save_file.name}')

    return ecode, bdata


def format_addrs(pairs) -> str:
    addrs = list()
    for pair in pairs:
        if not pair[0] or pair[0] == pair[1]:
            addrs.append(pair[1])
            continue
        # Work around https://github.com/python/cpython/issues/100900
        if not pair[0].startswith('=?') and not pair[0].startswith('"') and qspecials.search(pair[0]):
            quoted = email.utils.quote(pair[0])
            addrs.append(f'"{quoted}" <{pair[1]}>')
            continue
        addrs.append(email.utils.formataddr(pair))
    return ', '.join(addrs)


def get_excluded_addrs() -> Set[str]:
    config = get_main_config()
    excludes = set()
    c_excludes = config.get('email-exclude')
    if c_excludes:
        for entry in c_excludes.split(','):
            excludes.add(entry.strip())

    return excludes


def get_smtp(dryrun: bool = False) -> Tuple[Union[smtplib.SMTP, smtplib.SMTP_SSL, list, None], str]:
    sconfig = get_sendemail_config()
    # Limited support for smtp settings to begin with, but should cover the vast majority of cases
    fromaddr = sconfig.get('from')
    if not fromaddr:
        # We fall back to user.email
        usercfg = get_user_config()
        fromaddr = usercfg['email']

    server = sconfig.get('smtpserver', 'localhost')
    port = sconfig.get('smtpserverport', 0)
    try:
        port = int(port)
    except ValueError:
        raise smtplib.SMTPException('Invalid smtpport entry in config')

    # If server contains slashes, then it's a local command
    if '/' in server:
        server = os.path.expanduser(os.path.expandvars(server))
        sp = shlex.shlex(server, posix=True)
        sp.whitespace_split = True
        smtp = list(sp)
        if '-i' not in smtp:
            smtp.append('-i')
        # Do we have the envelopesender defined?
        env_sender = sconfig.get('envelopesender', '')
        if env_sender:
            envpair = email.utils.parseaddr(env_sender)
        else:
            envpair = email.utils.parseaddr(fromaddr)
        if envpair[1]:
            smtp += ['-f', envpair[1]]
        return smtp, fromaddr

    encryption = sconfig.get('smtpencryption')
    if dryrun:
        return None, fromaddr

    logger.info('Connecting to %s:%s', server, port)
    # We only authenticate if we have encryption
    if encryption:
        if encryption in ('tls', 'starttls'):
            # We do startssl
            smtp = smtplib.SMTP(server, port)
            # Introduce ourselves
            smtp.ehlo()
            # Start encryption
            smtp.starttls()
            # Introduce ourselves again to get new criteria
            smtp.ehlo()
        elif encryption in ('ssl', 'smtps'):
            # We do TLS from the get-go
            smtp = smtplib.SMTP_SSL(server, port)
        else:
            raise smtplib.SMTPException('Unclear what to do with smtpencryption=%s' % encryption)

        # If we got to this point, we should do authentication.
        auser = sconfig.get('smtpuser')
        apass = sconfig.get('smtppass')
        if auser and not apass:
            # Try with git-credential-helper
            if port:
                gchost = f'{server}:{port}'
            else:
                gchost = server
            apass = git_credential_fill(None, protocol='smtp', host=gchost, username=auser)
            if not apass:
                raise smtplib.SMTPException('No password specified for connecting to %s' % server)
        if auser and apass:
            # Let any exceptions bubble up
            smtp.login(auser, apass)
    else:
        # We assume you know what you're doing if you don't need encryption
        smtp = smtplib.SMTP(server, port)

    return smtp, fromaddr
