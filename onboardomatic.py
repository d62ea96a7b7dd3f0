#!/usr/bin/env python3
# Script: onboardomatic.py
# Developed with a bit of love and Irn Bru
#
# What this does (for my future self):
# - Read a CSV manifest of developers (username,fullname,team,role)
# - --create: ensure team groups + users, expire a random initial password,
#   build home/project/team dirs with the right perms, drop a .bashrc + READMEs
# - --cleanup: ask once, remove users + their team dirs, then sweep teams
#   nobody in the manifest is using any more (dir + group)
# - Everything is safe to re-run; perms self-heal on every --create
# - Logs to /var/log/user_management.log

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import os
import re
import secrets
import shutil
import string
import subprocess
import sys
import tarfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

VERSION = "1.2.0"
MIN_PYTHON_VERSION = (3, 10)
ADMIN_REQUIRED = True   # Script requires root

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
DEFAULT_CSV = "users.csv"
LOG_FILE = "/var/log/user_management.log"
LOGROTATE_PATH = "/etc/logrotate.d/onboardomatic"
PROJECTS_BASE = "/projects"
HOME_BASE = "/home"
BACKUP_DIR = "/var/backups/user_onboarding"
STATE_DIR = "/var/lib/onboardomatic"
DEFAULT_SHELL = "/bin/bash"

PASSWORD_LENGTH = 24                # Random initial password length
REVEAL_INITIAL_PASSWORDS = False    # Print generated passwords once in the end-of-run table

# Snapshotted before every --create run
IDENTITY_FILES = ["/etc/passwd", "/etc/group", "/etc/shadow"]

# System/builtin accounts we never manage (create/delete)
RESERVED_USERS = {
    "root","daemon","bin","sys","sync","games","man","lp","mail","news",
    "uucp","proxy","www-data","backup","list","irc","gnats","nobody"
}

#------------------------------#
# Manifest + layout            #
#------------------------------#
MANIFEST_HEADER = ("username", "fullname", "team", "role")
HEADER_LINE = ",".join(MANIFEST_HEADER)
SHARED_DIRNAME = "shared"
NAME_MAXLEN = 32
NAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")

HOME_MODE = 0o700
PROJECTS_MODE = 0o755
TEAM_USER_MODE = 0o755
SHARED_MODE = 0o2775                # 775 + SGID so new files inherit the team group
FILE_MODE = 0o644

#------------------------------#
# Exit codes                   #
#------------------------------#
EXIT_OK = 0
EXIT_USAGE = 1
EXIT_PRECONDITION = 2
EXIT_FAILURES = 3
EXIT_INTERRUPTED = 130

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":  "/usr/sbin/useradd",
  "userdel":  "/usr/sbin/userdel",
  "groupadd": "/usr/sbin/groupadd",
  "groupdel": "/usr/sbin/groupdel",
  "chpasswd": "/usr/sbin/chpasswd",
  "chage":    "/usr/bin/chage",
  "id":       "/usr/bin/id",
  "getent":   "/usr/bin/getent",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Keeps empty -> default behaviour consistent.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return (v.strip() if v and v.strip() else default)

# Function: _env_int
# Purpose : Parse an int from env; falls back to default when missing or junk.
def _env_int(name: str, default: int) -> int:
    v = os.getenv(name, "").strip()
    try:
        return int(v) if v else default
    except ValueError:
        return default

#===========================#
# Apply Environment Overrides
#===========================#

DEFAULT_CSV    = _env_str ("ONBOARD_DEFAULT_CSV", DEFAULT_CSV)
LOG_FILE       = _env_str ("ONBOARD_LOG_FILE", LOG_FILE)
PROJECTS_BASE  = _env_str ("ONBOARD_PROJECTS_BASE", PROJECTS_BASE)
HOME_BASE      = _env_str ("ONBOARD_HOME_BASE", HOME_BASE)
BACKUP_DIR     = _env_str ("ONBOARD_BACKUP_DIR", BACKUP_DIR)
STATE_DIR      = _env_str ("ONBOARD_STATE_DIR", STATE_DIR)
DEFAULT_SHELL  = _env_str ("ONBOARD_DEFAULT_SHELL", DEFAULT_SHELL)

PASSWORD_LENGTH          = _env_int ("ONBOARD_PASSWORD_LENGTH", PASSWORD_LENGTH)
REVEAL_INITIAL_PASSWORDS = _env_bool("ONBOARD_REVEAL_INITIAL_PASSWORDS", REVEAL_INITIAL_PASSWORDS)

LOCK_PATH = os.path.join(STATE_DIR, ".lock")

#==========#
# Errors   #
#==========#

class OnboardError(Exception):
    """Base for everything this script raises on purpose."""


class PreconditionError(OnboardError):
    """Fatal: the run stops before anything is touched."""
    exit_code = EXIT_PRECONDITION


class NotRootError(PreconditionError):
    exit_code = EXIT_USAGE


class RunLockedError(PreconditionError):
    exit_code = EXIT_USAGE


class ManifestNotFoundError(PreconditionError):
    pass


class ManifestFormatError(PreconditionError):
    pass


class InvalidRecordError(OnboardError):
    """A manifest row we refuse to act on (reserved account, unsafe name)."""


class MutationFailure(OnboardError):
    """One OS or filesystem change failed. Scoped to a single record."""

    def __init__(self, action: str, target: str, detail: str = ""):
        self.action = action
        self.target = target
        self.detail = detail
        msg = f"{action} failed for {target}"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class UserAbort(OnboardError):
    """Cleanup confirmation was declined."""

#===================#
# Utility / Logging #
#===================#

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ColourFormatter(logging.Formatter):
    """Console side of the log: `[LEVEL] message`, level tag coloured."""

    COLOURS = {
        "DEBUG":    Fore.LIGHTBLACK_EX,
        "INFO":     Fore.BLUE,
        "SUCCESS":  Fore.GREEN,
        "WARNING":  Fore.YELLOW,
        "ERROR":    Fore.RED,
        "CRITICAL": Fore.RED + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, Fore.WHITE)
        return f"{colour}[{record.levelname}]{Style.RESET_ALL} {record.getMessage()}"


# Function: _log_event
# Purpose : Log one reconciler event with its structured name attached.
# Notes   : The name rides on the record as `event` for filters/tests.
def _log_event(level: int, event: str, msg: str, *args):
    logging.log(level, msg, *args, extra={"event": event})

# Function: fncBuildHandlers
# Purpose : File handler (plain, timestamped) + stdout handler (coloured).
# Notes   : Log file is created 0644 if missing.
def fncBuildHandlers(log_file: str | None = None) -> list[logging.Handler]:
    log_file = log_file or LOG_FILE
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    os.chmod(log_file, 0o644)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColourFormatter())
    return [file_handler, console]

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file so the log doesn't grow to wales.
# Notes   : Creates once; ignores errors (warns only).
def fncEnsureLogrotate():
    content = f"""{LOG_FILE} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  create 0644 root root
}}
"""
    try:
        if not os.path.exists(LOGROTATE_PATH):
            with open(LOGROTATE_PATH, "w") as f:
                f.write(content)
            os.chmod(LOGROTATE_PATH, 0o644)
    except OSError as e:
        logging.warning("Couldn't write logrotate file (%s): %s", LOGROTATE_PATH, e)

# Function: fncSetupLogging
# Purpose : Configure logging to file and stdout; ensure log dir & logrotate exist.
# Notes   : INFO for changes; DEBUG for verbose diagnostics.
def fncSetupLogging():
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(level=logging.INFO, handlers=fncBuildHandlers())
    logging.info("==================== User Onboarding Started ====================")
    logging.info("Script executed by uid %d (onboardomatic %s)", os.geteuid(), VERSION)
    fncEnsureLogrotate()

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for important user-facing prints (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.YELLOW + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
        "heading": Fore.GREEN + Style.BRIGHT,
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
# Notes   : Requires Python >= MIN_PYTHON_VERSION.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("This script requires Python 3.10 or higher. Please upgrade.", "error")
        sys.exit(EXIT_USAGE)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root when ADMIN_REQUIRED is True.
# Notes   : Raised before logging is set up, so nothing is written anywhere.
def fncAdminCheck():
    if ADMIN_REQUIRED and os.geteuid() != 0:
        raise NotRootError("This script must be run as root (use sudo)")

# Lockfile so two runs don't stampede each other
_LOCK_FH = None

def fncAcquireLock():
    """Acquire an exclusive lock to prevent concurrent runs."""
    global _LOCK_FH
    os.makedirs(STATE_DIR, exist_ok=True)
    os.chmod(STATE_DIR, 0o750)
    try:
        _LOCK_FH = open(LOCK_PATH, "w")
        os.chmod(LOCK_PATH, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", LOCK_PATH)
    except BlockingIOError:
        raise RunLockedError("Another instance of onboardomatic is already running.")
    except OSError as e:
        raise RunLockedError(f"Failed to acquire lock ({LOCK_PATH}): {e}")

# Function: fncBackupIdentityFiles
# Purpose : Tarball /etc/passwd, /etc/group, /etc/shadow before we start poking them.
# Notes   : Best-effort; a failed backup is a warning, not a reason to stop.
def fncBackupIdentityFiles() -> str | None:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = os.path.join(BACKUP_DIR, f"backup_{stamp}.tar.gz")
    try:
        os.makedirs(BACKUP_DIR, exist_ok=True)
        os.chmod(BACKUP_DIR, 0o700)
        with tarfile.open(path, "w:gz") as tar:
            for src in IDENTITY_FILES:
                if os.path.exists(src):
                    tar.add(src)
        os.chmod(path, 0o600)
    except (OSError, tarfile.TarError) as e:
        logging.warning("Couldn't back up identity files to %s: %s", BACKUP_DIR, e)
        return None
    logging.log(SUCCESS, "System files backed up to: %s", path)
    return path

#=========================#
# Per-team serialisation  #
#=========================#

class _TeamLocks:
    """One lock per team name; group + shared dir changes happen under it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __call__(self, team: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(team, threading.Lock())

TEAM_LOCKS = _TeamLocks()

#=====================#
# Host (OS + disk)    #
#=====================#

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Uses BIN map for safety.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

# Function: _fncRunChecked
# Purpose : fncRun, but a non-zero exit becomes a MutationFailure for `target`.
def _fncRunChecked(cmdkey: str, args: list[str], target: str, input: str | None = None) -> str:
    rc, out, err = fncRun(cmdkey, args, input=input)
    if rc != 0:
        raise MutationFailure(cmdkey, target, err or f"exit {rc}")
    return out

@contextmanager
def _fncFsOp(action: str, path: str):
    try:
        yield
    except (OSError, LookupError) as e:
        raise MutationFailure(action, path, getattr(e, "strerror", None) or str(e)) from e


class LinuxHost:
    """The real box.

    Identity changes go through the pinned shadow-utils binaries so that
    nsswitch/PAM hooks run exactly as they would for an admin at a shell.
    Filesystem primitives are plain os/shutil calls. Every failure surfaces
    as MutationFailure so callers can attribute it to one manifest row.
    """

    # --- groups ---
    def group_exists(self, name: str) -> bool:
        rc, _, _ = fncRun("getent", ["group", name])
        return rc == 0

    def create_group(self, name: str):
        _fncRunChecked("groupadd", [name], name)

    def delete_group(self, name: str):
        _fncRunChecked("groupdel", [name], name)

    def list_group_members(self, name: str) -> list[str]:
        rc, out, _ = fncRun("getent", ["group", name])
        if rc != 0 or not out:
            return []
        parts = out.split(":")
        if len(parts) < 4:
            return []
        return [m for m in parts[3].split(",") if m]

    # --- users ---
    def user_exists(self, name: str) -> bool:
        rc, _, _ = fncRun("id", ["-u", name])
        return rc == 0

    def primary_group(self, name: str) -> str:
        return _fncRunChecked("id", ["-gn", name], name)

    def create_user(self, name: str, home: str, shell: str, comment: str, groups: list[str]):
        # -U: private primary group named after the user, so home is user:user
        args = ["-m", "-U", "-d", home, "-s", shell, "-c", comment]
        if groups:
            args += ["-G", ",".join(groups)]
        _fncRunChecked("useradd", args + [name], name)

    def delete_user(self, name: str):
        _fncRunChecked("userdel", ["-r", name], name)

    def set_password(self, name: str, secret: str):
        _fncRunChecked("chpasswd", [], name, input=f"{name}:{secret}")

    def expire_password(self, name: str):
        _fncRunChecked("chage", ["-d", "0", name], name)

    # --- filesystem ---
    def ensure_dir(self, path: str):
        with _fncFsOp("mkdir", path):
            os.makedirs(path, exist_ok=True)

    def set_owner(self, path: str, user: str, group: str):
        with _fncFsOp("chown", path):
            shutil.chown(path, user=user, group=group)

    def set_mode(self, path: str, mode: int):
        with _fncFsOp("chmod", path):
            os.chmod(path, mode)

    def list_children(self, path: str) -> list[str]:
        with _fncFsOp("listdir", path):
            return sorted(os.listdir(path))

    def remove_tree(self, path: str):
        with _fncFsOp("rmtree", path):
            shutil.rmtree(path)

    def write_file(self, path: str, content: str):
        with _fncFsOp("write", path):
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)

    def path_exists(self, path: str) -> bool:
        return os.path.lexists(path)

#=================#
# Manifest        #
#=================#

@dataclass(frozen=True)
class AccountIntent:
    username: str
    fullname: str
    team: str
    role: str


# Function: fncParseManifestLines
# Purpose : Turn raw manifest lines into AccountIntents, lazily.
# Notes   : First non-blank line must be the exact header. After that, rows with
#           an empty username or a repeated header are dropped. No CSV quoting.
def fncParseManifestLines(lines: Iterable[str]) -> Iterator[AccountIntent]:
    header_seen = False
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not header_seen:
            if not line.strip():
                continue
            if line != HEADER_LINE:
                raise ManifestFormatError(f"Invalid CSV format. Expected header: {HEADER_LINE}")
            header_seen = True
            continue

        fields = [f.strip() for f in line.split(",")]
        if not fields[0] or fields[0] == MANIFEST_HEADER[0]:
            continue
        fields += [""] * (len(MANIFEST_HEADER) - len(fields))
        yield AccountIntent(*fields[:len(MANIFEST_HEADER)])

    if not header_seen:
        raise ManifestFormatError(f"Manifest is empty. Expected header: {HEADER_LINE}")


class Manifest:
    """Restartable view over manifest lines. The header is checked up front."""

    def __init__(self, lines: Iterable[str], source: str = "<memory>"):
        self.source = source
        self._lines = list(lines)
        # Walk to the first row so a bad header fails here, before any mutation.
        next(iter(self), None)

    def __iter__(self) -> Iterator[AccountIntent]:
        return fncParseManifestLines(self._lines)

    def teams(self) -> list[str]:
        """Distinct non-empty teams, in the order they first appear."""
        seen: dict[str, None] = {}
        for intent in self:
            if intent.team:
                seen.setdefault(intent.team, None)
        return list(seen)


# Function: fncReadManifest
# Purpose : Open the manifest file and validate its header.
def fncReadManifest(path: str) -> Manifest:
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ManifestNotFoundError(f"CSV file not found: {path} ({e.strerror or e})") from e
    except UnicodeDecodeError as e:
        raise ManifestFormatError(f"CSV file is not valid UTF-8: {path}") from e
    return Manifest(lines, source=path)

#=================#
# Paths / checks  #
#=================#

def fncHomeDir(username: str) -> str:
    return os.path.join(HOME_BASE, username)

def fncTeamDir(team: str) -> str:
    return os.path.join(PROJECTS_BASE, team)

def fncValidName(name: str) -> bool:
    return bool(name) and len(name) <= NAME_MAXLEN and bool(NAME_RE.match(name))

# Function: fncValidateIntent
# Purpose : Refuse rows that would touch system accounts or escape PROJECTS_BASE.
# Notes   : username and team both end up in paths and group names.
def fncValidateIntent(intent: AccountIntent):
    if intent.username in RESERVED_USERS:
        raise InvalidRecordError(f"{intent.username} is a reserved system account")
    if not fncValidName(intent.username):
        raise InvalidRecordError(f"invalid username {intent.username!r}")
    if not fncValidName(intent.team):
        raise InvalidRecordError(f"invalid or missing team {intent.team!r} for {intent.username}")

#=====================#
# Identity reconciler #
#=====================#

# Function: fncEnsureGroup
# Purpose : Ensure the team's Unix group exists (create if missing).
# Notes   : Returns True only when this call created it. Serialised per team.
def fncEnsureGroup(host, team: str) -> bool:
    with TEAM_LOCKS(team):
        if host.group_exists(team):
            _log_event(logging.INFO, "GroupAlreadyExists", "Team group already exists: %s", team)
            return False
        host.create_group(team)
    _log_event(SUCCESS, "GroupCreated", "Created team group: %s", team)
    return True

# Function: fncEnsureUser
# Purpose : Create the local account if missing, with home, shell, comment and team.
# Notes   : An existing account is a warning, never a failure; the caller still
#           provisions directories so reruns finish half-done manifests.
def fncEnsureUser(host, intent: AccountIntent) -> bool:
    if host.user_exists(intent.username):
        _log_event(logging.WARNING, "UserAlreadyExists",
                   "User %s already exists, skipping creation", intent.username)
        return False
    # useradd -U refuses to reuse a group for the new private group
    if host.group_exists(intent.username):
        raise InvalidRecordError(
            f"a group named {intent.username!r} already exists; useradd -U can't create "
            f"the user's private group (is a team named after this user?)")
    host.create_user(
        intent.username,
        home=fncHomeDir(intent.username),
        shell=DEFAULT_SHELL,
        comment=intent.fullname,
        groups=[intent.team],
    )
    _log_event(SUCCESS, "UserCreated", "Created user: %s", intent.username)
    return True

#=====================#
# Initial credentials #
#=====================#

# Function: fncGeneratePassword
# Purpose : Generate a random initial password.
# Notes   : Uses secrets.choice over a mixed alphabet; length from PASSWORD_LENGTH.
def fncGeneratePassword(length: int = PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits + "!@#$%^*-_=+"
    return "".join(secrets.choice(alphabet) for _ in range(length))


class RandomCredentialIssuer:
    """Random password, expired on the spot so first login has to rotate it.

    Stand-in for a proper credential service: anything with an
    ``issue(host, username)`` method can be handed to fncCreateUsers instead.
    The secret is never logged; it's only returned when ``reveal`` is on.
    """

    def __init__(self, length: int | None = None, reveal: bool | None = None):
        self.length = length or PASSWORD_LENGTH
        self.reveal = REVEAL_INITIAL_PASSWORDS if reveal is None else reveal

    def issue(self, host, username: str) -> str | None:
        secret = fncGeneratePassword(self.length)
        host.set_password(username, secret)
        host.expire_password(username)
        _log_event(logging.INFO, "CredentialIssued",
                   "Initial password set and expired for %s (not stored)", username)
        return secret if self.reveal else None

#=========================#
# Filesystem provisioner  #
#=========================#

BASHRC_TEMPLATE = r"""# Developer .bashrc, written by onboardomatic

parse_git_branch() {
    git branch 2> /dev/null | sed -e '/^[^*]/d' -e 's/* \(.*\)/(\1)/'
}

C_RESET='\[\033[0m\]'
C_USER='\[\033[1;32m\]'
C_HOST='\[\033[1;34m\]'
C_PATH='\[\033[1;33m\]'
C_GIT='\[\033[1;35m\]'
C_TEAM='\[\033[1;36m\]'

export PS1="${C_USER}\u${C_RESET}@${C_HOST}\h${C_RESET}:${C_PATH}\w${C_RESET} ${C_GIT}\$(parse_git_branch)${C_RESET}\n${C_TEAM}[{{TEAM}}]${C_RESET} \$ "

alias ll='ls -lah --color=auto'
alias la='ls -A --color=auto'
alias grep='grep --color=auto'
alias ..='cd ..'

alias projects='cd ~/projects'
alias shared='cd {{SHARED_DIR}}'

alias gs='git status'
alias gl='git log --oneline --graph --decorate'

export EDITOR=vim
export HISTSIZE=10000
export HISTFILESIZE=20000
export HISTCONTROL=ignoredups:erasedups

if [ -f /etc/bash_completion ]; then
    . /etc/bash_completion
fi

echo "  Welcome {{USERNAME}}!"
echo "  Team: {{TEAM}} | Projects: ~/projects | Shared: {{SHARED_DIR}}"
"""

def fncRenderBashrc(username: str, team: str) -> str:
    return (BASHRC_TEMPLATE
            .replace("{{USERNAME}}", username)
            .replace("{{TEAM}}", team)
            .replace("{{SHARED_DIR}}", os.path.join(fncTeamDir(team), SHARED_DIRNAME)))

def fncRenderPersonalReadme(username: str, team: str, team_user_dir: str) -> str:
    shared = os.path.join(fncTeamDir(team), SHARED_DIRNAME)
    return f"""# {username}'s Personal Projects

This directory is for your personal development projects and experiments.

**Permissions:** 755 (rwxr-xr-x)
- You have full control
- Others can read and execute

## Team Projects
Your team project directory: {team_user_dir}
Shared team resources: {shared}
"""

def fncRenderTeamReadme(username: str, team: str) -> str:
    shared = os.path.join(fncTeamDir(team), SHARED_DIRNAME)
    return f"""# {username}'s Team Project Directory

Team: {team}

**Permissions:** 755 (rwxr-xr-x)
- You have full control
- Team members can read
- Use the shared directory for collaboration

## Shared Team Directory
Location: {shared}
Permissions: 775 (rwxrwxr-x) with SGID
- All team members can read, write, and execute
- Files created there inherit the {team} group
"""

# Function: fncEnsureDir
# Purpose : mkdir -p, then (re)apply owner + mode every time.
# Notes   : Re-applying unconditionally is what makes drifted perms self-heal.
def fncEnsureDir(host, path: str, owner: str, group: str, mode: int):
    host.ensure_dir(path)
    host.set_owner(path, owner, group)
    host.set_mode(path, mode)
    _log_event(logging.INFO, "DirectoryEnsured", "Ensured directory %s (%s:%s, %04o)",
               path, owner, group, mode)

# Function: fncWriteArtifact
# Purpose : Overwrite a generated text file and fix its owner/mode.
def fncWriteArtifact(host, path: str, content: str, owner: str, group: str, mode: int = FILE_MODE):
    host.write_file(path, content)
    host.set_owner(path, owner, group)
    host.set_mode(path, mode)

# Function: fncProvisionDirectories
# Purpose : Build the four directory nodes for one row plus the READMEs.
# Notes   : The home dir is only touched for brand-new accounts (or if it has
#           gone missing); an existing home keeps whatever its owner did to it.
def fncProvisionDirectories(host, intent: AccountIntent, new_user: bool):
    user, team = intent.username, intent.team
    home = fncHomeDir(user)
    projects = os.path.join(home, "projects")
    team_dir = fncTeamDir(team)
    team_user_dir = os.path.join(team_dir, user)
    shared_dir = os.path.join(team_dir, SHARED_DIRNAME)

    # Home tree follows the account's real primary group: the private group for
    # accounts we create, whatever useradd -g gave older ones.
    home_group = host.primary_group(user)

    if new_user or not host.path_exists(home):
        fncEnsureDir(host, home, user, home_group, HOME_MODE)
        fncWriteArtifact(host, os.path.join(home, ".bashrc"), fncRenderBashrc(user, team), user, home_group)
        _log_event(SUCCESS, "BashrcWritten", "Custom .bashrc created for %s", user)

    fncEnsureDir(host, projects, user, home_group, PROJECTS_MODE)
    fncEnsureDir(host, team_user_dir, user, team, TEAM_USER_MODE)
    with TEAM_LOCKS(team):
        fncEnsureDir(host, shared_dir, "root", team, SHARED_MODE)

    fncWriteArtifact(host, os.path.join(projects, "README.md"),
                     fncRenderPersonalReadme(user, team, team_user_dir), user, home_group)
    fncWriteArtifact(host, os.path.join(team_user_dir, "README.md"),
                     fncRenderTeamReadme(user, team), user, team)
    _log_event(SUCCESS, "ReadmeWritten", "Created README files for %s", user)

# Function: fncProvisionRecord
# Purpose : Everything --create does for one manifest row.
# Notes   : Returns the revealed initial password (or None).
def fncProvisionRecord(host, intent: AccountIntent, issuer) -> str | None:
    fncValidateIntent(intent)
    logging.info("Processing user: %s (%s) - Team: %s, Role: %s",
                 intent.username, intent.fullname, intent.team, intent.role)
    fncEnsureGroup(host, intent.team)
    created = fncEnsureUser(host, intent)
    fncProvisionDirectories(host, intent, new_user=created)
    secret = issuer.issue(host, intent.username) if created else None
    logging.log(SUCCESS, "User %s setup completed successfully", intent.username)
    return secret

#=================#
# Run summary     #
#=================#

@dataclass
class RunSummary:
    mode: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_failure(self, what: str, reason: str):
        self.failed += 1
        self.failures.append((what, reason))

    def log(self):
        logging.info("==================== Summary (%s) ====================", self.mode)
        logging.info("Total records processed: %d", self.processed)
        verb = "created" if self.mode == "create" else "removed"
        logging.log(SUCCESS, "Successfully %s: %d", verb, self.succeeded)
        if self.skipped:
            logging.info("Skipped (not present): %d", self.skipped)
        if self.failed:
            logging.error("Failed: %d", self.failed)
            for what, reason in self.failures:
                logging.error("  %s: %s", what, reason)
        logging.info("======================================================")

# Function: _fncRecordFailed
# Purpose : Log + count a per-record failure without letting it escape the loop.
def _fncRecordFailed(summary: RunSummary, what: str, exc: Exception):
    if isinstance(exc, OnboardError):
        _log_event(logging.ERROR, "RecordFailed", "Failed on %s: %s", what, exc)
    else:
        logging.exception("Unexpected error on %s: %s", what, exc)
    summary.record_failure(what, str(exc))

# Function: fncPrintUserTable
# Purpose : End-of-run table of what the manifest asked for.
# Notes   : Passwords only appear here, and only when REVEAL_INITIAL_PASSWORDS is on.
def fncPrintUserTable(manifest: Manifest, revealed: dict[str, str] | None = None):
    revealed = revealed or {}
    print("")
    fncPrintMessage("╔════════════════════════════════════════════════════════════╗", "heading")
    fncPrintMessage("║           USER ONBOARDING SUMMARY                          ║", "heading")
    fncPrintMessage("╚════════════════════════════════════════════════════════════╝", "heading")
    print("")
    row = "%-15s %-25s %-15s %-18s"
    print(row % ("USERNAME", "FULL NAME", "TEAM", "ROLE"))
    print(row % ("=" * 15, "=" * 25, "=" * 15, "=" * 18))
    for intent in manifest:
        print(row % (intent.username, intent.fullname, intent.team, intent.role))
    print("")
    if revealed:
        fncPrintMessage("Initial passwords (shown once, not stored):", "warning")
        for user, secret in revealed.items():
            print(f"  {user}: {secret}")
    fncPrintMessage("Users must change their password on first login.", "info")
    print("")

#=====================#
# Create mode         #
#=====================#

# Function: fncCreateUsers
# Purpose : Provision every manifest row; one bad row never stops the batch.
# Notes   : Duplicate usernames are processed again (idempotent) with a warning.
def fncCreateUsers(host, manifest: Manifest, issuer=None) -> RunSummary:
    issuer = issuer or RandomCredentialIssuer()
    summary = RunSummary("create")
    revealed: dict[str, str] = {}
    seen: set[str] = set()

    logging.info("Starting user creation process")
    logging.info("Reading from CSV file: %s", manifest.source)

    for intent in manifest:
        summary.processed += 1
        if intent.username in seen:
            logging.warning("Duplicate manifest row for %s; processing it again", intent.username)
        seen.add(intent.username)
        try:
            secret = fncProvisionRecord(host, intent, issuer)
        except Exception as e:
            _fncRecordFailed(summary, intent.username, e)
            continue
        summary.succeeded += 1
        if secret:
            revealed[intent.username] = secret

    summary.log()
    fncPrintUserTable(manifest, revealed)
    return summary

#=====================#
# Cleanup mode        #
#=====================#

# Function: fncConfirm
# Purpose : Default confirmation gate; only a literal "yes" counts.
# Notes   : EOF (no tty, piped stdin) is treated as "no".
def fncConfirm(prompt: str) -> bool:
    try:
        answer = input(f"{Fore.YELLOW}{prompt} (yes/no): {Style.RESET_ALL}")
    except EOFError:
        return False
    return answer.strip().lower() == "yes"

# Function: fncTeardownRecord
# Purpose : Remove one user (account + home) and their team subdirectory.
# Notes   : Returns False when the user was never there. The shared dir and the
#           team group are left for fncSweepTeam. A failed userdel still lets the
#           team subdirectory go, then re-raises so the row counts as failed.
def fncTeardownRecord(host, intent: AccountIntent) -> bool:
    fncValidateIntent(intent)
    user = intent.username
    if not host.user_exists(user):
        _log_event(logging.INFO, "UserNotFound", "User %s does not exist, skipping", user)
        return False

    logging.info("Removing user: %s", user)
    failure = None
    try:
        host.delete_user(user)
        _log_event(SUCCESS, "UserRemoved", "Removed user and home directory: %s", user)
    except MutationFailure as e:
        failure = e
        _log_event(logging.ERROR, "UserRemoveFailed", "Failed to remove user %s: %s", user, e)

    team_user_dir = os.path.join(fncTeamDir(intent.team), user)
    if host.path_exists(team_user_dir):
        host.remove_tree(team_user_dir)
        _log_event(SUCCESS, "TeamUserDirectoryRemoved", "Removed team project directory: %s", team_user_dir)

    if failure:
        raise failure
    return True

# Function: _fncSweepTeamDir
# Purpose : Directory rule: drop the team tree when only `shared` (or nothing) is left.
def _fncSweepTeamDir(host, team: str):
    team_dir = fncTeamDir(team)
    if not host.path_exists(team_dir):
        return
    children = host.list_children(team_dir)
    if not children or children == [SHARED_DIRNAME]:
        host.remove_tree(team_dir)
        _log_event(SUCCESS, "TeamDirectoryRemoved", "Removed empty team directory: %s", team_dir)
    else:
        _log_event(logging.INFO, "TeamDirectoryKept",
                   "Team directory %s still in use (%s), leaving it", team_dir, ", ".join(children))

# Function: _fncSweepTeamGroup
# Purpose : Group rule: delete the team group once it has no members.
def _fncSweepTeamGroup(host, team: str):
    if not host.group_exists(team):
        return
    members = host.list_group_members(team)
    if not members:
        host.delete_group(team)
        _log_event(SUCCESS, "GroupRemoved", "Removed empty team group: %s", team)
    else:
        _log_event(logging.INFO, "GroupKept",
                   "Team group %s still has members (%s), leaving it", team, ", ".join(members))

# Function: fncSweepTeam
# Purpose : Drop a team's project tree and group once nobody is left in them.
# Notes   : Both rules read live state, not what the per-record phase reported.
#           Each rule runs even if the other one failed; failures are returned
#           as (rule, exception) pairs for the caller to count.
def fncSweepTeam(host, team: str) -> list[tuple[str, Exception]]:
    failures = []
    with TEAM_LOCKS(team):
        for rule, sweep in (("directory", _fncSweepTeamDir), ("group", _fncSweepTeamGroup)):
            try:
                sweep(host, team)
            except Exception as e:
                failures.append((rule, e))
    return failures

# Function: fncCleanupUsers
# Purpose : Confirm once, remove every row's user, then sweep the manifest's teams.
# Notes   : The sweep only starts after every per-record removal has returned.
def fncCleanupUsers(host, manifest: Manifest, confirm: Callable[[str], bool] = fncConfirm) -> RunSummary:
    logging.info("Starting user cleanup process")
    logging.warning("This will remove all users and their data listed in %s", manifest.source)
    if not confirm("Are you sure you want to proceed?"):
        raise UserAbort("Cleanup cancelled by user")

    summary = RunSummary("cleanup")
    for intent in manifest:
        summary.processed += 1
        try:
            removed = fncTeardownRecord(host, intent)
        except Exception as e:
            _fncRecordFailed(summary, intent.username, e)
            continue
        if removed:
            summary.succeeded += 1
        else:
            summary.skipped += 1

    for team in manifest.teams():
        if not fncValidName(team):
            continue
        for rule, e in fncSweepTeam(host, team):
            _fncRecordFailed(summary, f"team {team} ({rule})", e)

    summary.log()
    return summary

#=================#
# Script harness  #
#=================#

USAGE_EPILOG = f"""
examples:
  # Create users from the default CSV
  sudo %(prog)s --create

  # Create users from a custom CSV
  sudo %(prog)s --create --csv custom_users.csv

  # Remove every user in the CSV (asks first)
  sudo %(prog)s --cleanup

csv format:
  {HEADER_LINE}
  alice_dev,Alice Johnson,backend,senior_developer
  bob_frontend,Bob Smith,frontend,developer

permissions:
  home directories     700 (rwx------)
  personal projects    755 (rwxr-xr-x)
  team user dirs       755 (rwxr-xr-x)
  team shared          775 (rwxrwxr-x) with SGID

log file:
  {LOG_FILE}
"""


class _UsageParser(argparse.ArgumentParser):
    """argparse, but bad usage prints the full help and exits 1."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(EXIT_USAGE, f"\nError: {message}\n")


# Function: fncBuildParser
# Purpose : CLI definition (--create | --cleanup, --csv FILE).
def fncBuildParser() -> argparse.ArgumentParser:
    parser = _UsageParser(
        prog="onboardomatic",
        description="Automate creation and cleanup of developer accounts with proper permissions.",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--create", action="store_true", help="Create users from CSV file")
    mode.add_argument("--cleanup", action="store_true", help="Remove users and their data")
    parser.add_argument("--csv", metavar="FILE", default=DEFAULT_CSV,
                        help=f"Specify CSV file (default: {DEFAULT_CSV})")
    return parser

# Function: fncMain
# Purpose : Program entrypoint; preflight checks, logging, locking, run, exit code.
# Notes   : Fatal preconditions all happen before the first mutation.
def fncMain(argv: list[str] | None = None, host=None, confirm: Callable[[str], bool] = fncConfirm) -> int:
    args = fncBuildParser().parse_args(argv)
    host = host or LinuxHost()
    try:
        os.umask(0o022)
        fncAdminCheck()
        fncSetupLogging()
        fncAcquireLock()
        manifest = fncReadManifest(args.csv)
        logging.log(SUCCESS, "CSV file validated: %s", args.csv)

        if args.create:
            fncBackupIdentityFiles()
            summary = fncCreateUsers(host, manifest)
        else:
            summary = fncCleanupUsers(host, manifest, confirm=confirm)

        logging.info("==================== User Onboarding Completed ====================")
        return EXIT_OK if summary.ok else EXIT_FAILURES
    except UserAbort as e:
        logging.info("%s", e)
        return EXIT_OK
    except NotRootError as e:
        fncPrintMessage(str(e), "error")
        return e.exit_code
    except PreconditionError as e:
        logging.error("%s", e)
        return e.exit_code
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        return EXIT_INTERRUPTED
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return EXIT_USAGE

def main():
    fncCheckPyVersion()
    sys.exit(fncMain())

if __name__ == "__main__":
    main()
