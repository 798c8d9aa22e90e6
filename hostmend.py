#!/usr/bin/python3
"""hostmend — reconcile a single host against a declarative plan.

Reads an ordered JSON plan of resource actions (packages, file content,
owners and modes, services) and drives the live host toward it one action at
a time.  Every action ends with exactly one outcome: OK, WARNED, FAILED,
SKIPPED or SKIPPED_DEP.  A human-readable report is written for every run.
"""

import argparse
import glob
import grp
import json
import os
import pwd
import shlex
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from pathlib import Path
from typing import Optional

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_LOG_DIR = Path("/var/log/hostmend")
MOUNTS_PATH = Path("/proc/mounts")
OS_RELEASE_PATH = Path("/etc/os-release")
SYSTEMD_RUN_DIR = Path("/run/systemd/system")

PACKAGE_TIMEOUT = 900
SERVICE_TIMEOUT = 60
CHECK_TIMEOUT = 30

KINDS = (
    "PackageInstalled", "FileContent", "FileOwnerMode",
    "ServiceRunning", "DirectoryOwnerMode", "LinePresent", "FileFetched",
)

# desired keys each kind cannot do without
REQUIRED_KEYS = {
    "PackageInstalled":   (),
    "FileContent":        ("content",),
    "FileOwnerMode":      ("owner", "group", "mode"),
    "ServiceRunning":     (),
    "DirectoryOwnerMode": ("owner", "group", "mode"),
    "LinePresent":        ("line",),
    "FileFetched":        ("url",),
}

# kinds whose target is a file worth snapshotting before a change
BACKUP_KINDS = {"FileContent", "FileOwnerMode", "LinePresent"}

# kinds whose glob expands over parent directories rather than existing files
GLOB_PARENT_KINDS = {"FileContent"}

# kinds where a change that does not stick points at the mount, not the tool
FILE_KINDS = ("FileContent", "FileOwnerMode", "DirectoryOwnerMode", "FileFetched")

OK = "OK"
WARNED = "WARNED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"
SKIPPED_DEP = "SKIPPED_DEP"
STATUSES = (OK, WARNED, FAILED, SKIPPED, SKIPPED_DEP)

VALIDATORS = {
    "sudoers": ["visudo", "-c", "-q", "-f"],
    "shell":   ["sh", "-n"],
}

STALE_PID_TEMPLATES = (
    "/run/{name}.pid",
    "/var/run/{name}.pid",
    "/var/run/{name}/{name}.pid",
)

NOSUID_CHECK_PATHS = ("/", "/usr")


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    WRENCH   = "\uf0ad"   # wrench
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    LINK     = "\uf0c1"   # link (dependency)
    FILE     = "\uf15c"   # file-text
    SHIELD   = "\uf132"   # shield
    DOWNLOAD = "\uf019"   # download


STATUS_ICONS = {
    OK:          _I.OK,
    WARNED:      _I.WARN,
    FAILED:      _I.ERROR,
    SKIPPED:     _I.SKIP,
    SKIPPED_DEP: _I.LINK,
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


_STATUS_COLORS = {
    OK: "GREEN", WARNED: "YELLOW", FAILED: "RED",
    SKIPPED: "DIM", SKIPPED_DEP: "DIM",
}


def _status_line(outcome) -> None:
    """One terminal line per finished action: ``<id>  STATUS[: reason]``.

    Dependency skips print as ``SKIPPED`` with the link icon; the report
    keeps the full ``SKIPPED_DEP`` status.
    """
    color = getattr(_C, _STATUS_COLORS[outcome.status])
    label = SKIPPED if outcome.status == SKIPPED_DEP else outcome.status
    text = f"{outcome.action_id}  {label}"
    if outcome.status != OK and outcome.message:
        text += f": {outcome.message}"
    out = sys.stderr if outcome.status == FAILED else sys.stdout
    print(f"  {color}{STATUS_ICONS[outcome.status]}{_C.RESET}  {text}", file=out)


def _fmt_mode(mode: int) -> str:
    return f"{mode:04o}"


def _tail(text: str) -> str:
    """Last non-empty line of command output, for one-line reasons."""
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return lines[-1] if lines else ""


# ── Errors ───────────────────────────────────────────────────────────────────

class HostmendError(Exception):
    """Raised for conditions that abort the whole run before any action."""


class PlanError(HostmendError):
    pass


class PreconditionError(HostmendError):
    pass


# ── Data model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceAction:
    id: str
    kind: str
    target: str
    desired: dict = field(default_factory=dict)
    requires: tuple = ()
    sensitive: bool = False
    validator: Optional[str] = None
    backup: bool = False

    @property
    def wants_backup(self) -> bool:
        return self.sensitive or self.backup


@dataclass(frozen=True)
class ProbeResult:
    matches: bool
    details: str = ""
    error: Optional[str] = None
    exists: bool = True


@dataclass(frozen=True)
class FileStat:
    owner: str
    group: str
    mode: int


@dataclass
class MutationResult:
    ok: bool
    message: str = ""
    recovered: bool = False


@dataclass
class ActionOutcome:
    action_id: str
    status: str
    message: str = ""
    probe_before: Optional[ProbeResult] = None
    probe_after: Optional[ProbeResult] = None
    backup_path: Optional[str] = None
    recovered: bool = False

    def to_dict(self) -> dict:
        def _probe(p):
            if p is None:
                return None
            return {"matches": p.matches, "details": p.details,
                    "error": p.error, "exists": p.exists}

        return {
            "id": self.action_id,
            "status": self.status,
            "message": self.message,
            "probe_before": _probe(self.probe_before),
            "probe_after": _probe(self.probe_after),
            "backup_path": self.backup_path,
            "recovered": self.recovered,
        }


@dataclass
class RunReport:
    """Outcomes of one run, in plan order, plus run metadata."""

    stamp: str
    started: str
    dry_run: bool
    plan: str = ""
    host: dict = field(default_factory=dict)
    notes: list = field(default_factory=list)
    outcomes: list = field(default_factory=list)
    finished: Optional[str] = None

    @classmethod
    def begin(cls, dry_run: bool, plan: str = "", host: dict = None,
              notes: list = None) -> "RunReport":
        now = datetime.now()
        return cls(
            stamp=now.strftime("%Y%m%d-%H%M%S"),
            started=now.astimezone(timezone.utc).isoformat(),
            dry_run=dry_run,
            plan=plan,
            host=dict(host or {}),
            notes=list(notes or []),
        )

    def add(self, outcome: ActionOutcome) -> None:
        if any(o.action_id == outcome.action_id for o in self.outcomes):
            raise ValueError(f"duplicate outcome for action {outcome.action_id!r}")
        self.outcomes.append(outcome)

    def finish(self) -> None:
        self.finished = datetime.now(timezone.utc).isoformat()

    def status_of(self, action_id: str) -> Optional[str]:
        for o in self.outcomes:
            if o.action_id == action_id:
                return o.status
        return None

    def counts(self) -> dict:
        counts = {s: 0 for s in STATUSES}
        for o in self.outcomes:
            counts[o.status] += 1
        return counts

    def failed_ids(self) -> list:
        return [o.action_id for o in self.outcomes if o.status == FAILED]

    def exit_code(self) -> int:
        return 1 if self.failed_ids() else 0

    def to_dict(self) -> dict:
        return {
            "stamp": self.stamp,
            "started": self.started,
            "finished": self.finished,
            "dry_run": self.dry_run,
            "plan": self.plan,
            "host": self.host,
            "notes": self.notes,
            "counts": self.counts(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


# ── Plan loading ─────────────────────────────────────────────────────────────

def parse_mode(value) -> int:
    """Accept ``0440``-style octal strings or plain ints."""
    if isinstance(value, bool):
        raise PlanError(f"invalid mode {value!r}")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        try:
            mode = int(value, 8)
        except ValueError:
            raise PlanError(f"invalid octal mode {value!r}") from None
    else:
        raise PlanError(f"invalid mode {value!r}")
    if not 0 <= mode <= 0o7777:
        raise PlanError(f"mode out of range: {value!r}")
    return mode


def load_plan(path) -> list:
    """Read a JSON plan file and return its ResourceActions."""
    try:
        with open(path) as fh:
            data = json.load(fh)
    except FileNotFoundError:
        raise PlanError(f"plan file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise PlanError(f"{path}: invalid JSON: {exc}") from None
    except OSError as exc:
        raise PlanError(f"cannot read plan {path}: {exc}") from None
    return parse_plan(data)


def _flag(entry: dict, key: str, where: str) -> bool:
    value = entry.get(key, False)
    if not isinstance(value, bool):
        raise PlanError(f"{where}: '{key}' must be true or false, not {value!r}")
    return value


def _expand_glob(kind: str, pattern: str) -> list:
    """Targets for a glob entry, sorted.

    FileOwnerMode matches existing regular files.  FileContent globs the
    parent directory and keeps the file name, so ``/home/*/.xsession`` covers
    every home directory whether or not the file exists yet.
    """
    if kind in GLOB_PARENT_KINDS:
        parent, name = os.path.split(pattern)
        if not name:
            raise PlanError(f"glob target {pattern!r} must end in a file name")
        return sorted(os.path.join(d, name) for d in glob.glob(parent) if os.path.isdir(d))
    return sorted(p for p in glob.glob(pattern) if os.path.isfile(p))


def _for_parent(desired: dict, path: str) -> dict:
    """Fill ``{parent}`` in owner/group with the target's directory name."""
    parent = os.path.basename(os.path.dirname(path))
    out = dict(desired)
    for key in ("owner", "group"):
        if isinstance(out.get(key), str):
            out[key] = out[key].replace("{parent}", parent)
    return out


def parse_plan(data) -> list:
    """Validate raw plan data and build ResourceActions in declared order.

    ``requires`` may only name actions declared earlier.  An entry with
    ``"glob": true`` expands to one action per match (see ``_expand_glob``)
    with ids ``<id>:<path>``; a requirement on the base id means all of them.
    Every final id, expanded ones included, must be unique.
    """
    if isinstance(data, dict):
        data = data.get("actions")
    if not isinstance(data, list):
        raise PlanError("plan must be a list of actions or an object with an 'actions' list")

    all_ids = [e.get("id") for e in data if isinstance(e, dict)]
    expanded = {}
    seen = set()
    actions = []

    def _add(action_id: str, target: str, **common) -> None:
        if action_id in seen:
            raise PlanError(f"action '{action_id}': duplicate id")
        seen.add(action_id)
        actions.append(ResourceAction(id=action_id, target=target, **common))

    for idx, entry in enumerate(data):
        where = f"action #{idx + 1}"
        if not isinstance(entry, dict):
            raise PlanError(f"{where}: expected an object")
        action_id = entry.get("id")
        if not isinstance(action_id, str) or not action_id:
            raise PlanError(f"{where}: missing 'id'")
        where = f"action '{action_id}'"
        if action_id in expanded or action_id in seen:
            raise PlanError(f"{where}: duplicate id")

        kind = entry.get("kind")
        if kind not in KINDS:
            raise PlanError(f"{where}: unknown kind {kind!r} (expected one of {', '.join(KINDS)})")
        target = entry.get("target")
        if not isinstance(target, str) or not target:
            raise PlanError(f"{where}: missing 'target'")

        desired = entry.get("desired", {})
        if not isinstance(desired, dict):
            raise PlanError(f"{where}: 'desired' must be an object")
        desired = dict(desired)
        for key in REQUIRED_KEYS[kind]:
            if key not in desired:
                raise PlanError(f"{where}: {kind} needs desired.{key}")
        if "mode" in desired:
            desired["mode"] = parse_mode(desired["mode"])
        if kind == "FileContent" and not isinstance(desired["content"], str):
            raise PlanError(f"{where}: desired.content must be a string")
        if kind == "FileFetched" and not (isinstance(desired["url"], str) and desired["url"]):
            raise PlanError(f"{where}: desired.url must be a non-empty string")

        requires = entry.get("requires", [])
        if not isinstance(requires, list) or not all(isinstance(r, str) for r in requires):
            raise PlanError(f"{where}: 'requires' must be a list of ids")
        resolved = []
        for req in requires:
            if req in expanded:
                resolved.extend(expanded[req])
            elif req in all_ids:
                raise PlanError(f"{where}: requires '{req}' which is declared later")
            else:
                raise PlanError(f"{where}: requires unknown id '{req}'")

        validator = entry.get("validator")
        if validator is not None and validator not in VALIDATORS:
            raise PlanError(f"{where}: unknown validator {validator!r}")

        common = dict(
            kind=kind,
            desired=desired,
            requires=tuple(dict.fromkeys(resolved)),
            sensitive=_flag(entry, "sensitive", where),
            validator=validator,
            backup=_flag(entry, "backup", where),
        )

        if _flag(entry, "glob", where):
            if kind != "FileOwnerMode" and kind not in GLOB_PARENT_KINDS:
                raise PlanError(f"{where}: 'glob' is only supported for FileOwnerMode and FileContent")
            try:
                matches = _expand_glob(kind, target)
            except PlanError as exc:
                raise PlanError(f"{where}: {exc}") from None
            ids = [f"{action_id}:{p}" for p in matches]
            for sub_id, path in zip(ids, matches):
                _add(sub_id, path, **dict(common, desired=_for_parent(desired, path)))
            expanded[action_id] = ids
        else:
            _add(action_id, target, **common)
            expanded[action_id] = [action_id]

    return actions


# ── Host adapters ────────────────────────────────────────────────────────────

def _run(cmd, timeout, env=None):
    """Run *cmd* with captured text output; TimeoutExpired propagates."""
    return subprocess.run(
        cmd, capture_output=True, text=True,
        timeout=timeout, env=env, check=False,
    )


class PackageManager:
    """apt on Debian/Ubuntu hosts, dnf everywhere else."""

    def __init__(self, flavor: str = None):
        self.flavor = flavor or ("apt" if shutil.which("apt-get") else "dnf")
        self._updated = False

    def is_installed(self, name: str) -> bool:
        if self.flavor == "apt":
            r = _run(["dpkg-query", "-W", "-f=${Status}", name], CHECK_TIMEOUT)
            return r.returncode == 0 and "install ok installed" in r.stdout
        r = _run(["rpm", "-q", name], CHECK_TIMEOUT)
        return r.returncode == 0

    def install_command(self, name: str) -> list:
        if self.flavor == "apt":
            return ["apt-get", "install", "-y", name]
        return ["dnf", "install", "-y", name]

    def install(self, name: str, timeout: int = PACKAGE_TIMEOUT) -> tuple:
        """Install *name*; returns ``(ok, reason)``."""
        env = None
        if self.flavor == "apt":
            env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
            if not self._updated:
                # package lists once per run, before the first install
                self._updated = True
                try:
                    r = _run(["apt-get", "update", "-y"], timeout, env=env)
                    if r.returncode != 0:
                        _warn(f"apt-get update exited {r.returncode}: {_tail(r.stderr)}")
                except subprocess.TimeoutExpired:
                    _warn(f"apt-get update timed out after {timeout}s")
        cmd = self.install_command(name)
        try:
            r = _run(cmd, timeout, env=env)
        except subprocess.TimeoutExpired:
            return False, f"{' '.join(cmd)} timed out after {timeout}s"
        except FileNotFoundError:
            return False, f"{cmd[0]} not found"
        except OSError as exc:
            return False, f"{' '.join(cmd)}: {exc}"
        if r.returncode != 0:
            reason = _tail(r.stderr) or _tail(r.stdout)
            return False, f"{' '.join(cmd)} exited {r.returncode}: {reason}"
        return True, ""


class ServiceManager:
    """systemctl when systemd is PID 1, SysV ``service`` otherwise (containers)."""

    def __init__(self, systemd: bool = None):
        self.systemd = SYSTEMD_RUN_DIR.is_dir() if systemd is None else systemd

    def is_running(self, name: str) -> bool:
        if self.systemd:
            cmd = ["systemctl", "is-active", "--quiet", name]
        else:
            cmd = ["service", name, "status"]
        try:
            return _run(cmd, CHECK_TIMEOUT).returncode == 0
        except subprocess.TimeoutExpired:
            return False

    def start_command(self, name: str) -> list:
        if self.systemd:
            return ["systemctl", "start", name]
        return ["service", name, "start"]

    def start(self, name: str, timeout: int = SERVICE_TIMEOUT) -> tuple:
        cmd = self.start_command(name)
        try:
            r = _run(cmd, timeout)
        except subprocess.TimeoutExpired:
            return False, f"{' '.join(cmd)} timed out after {timeout}s"
        except FileNotFoundError:
            return False, f"{cmd[0]} not found"
        except OSError as exc:
            return False, f"{' '.join(cmd)}: {exc}"
        if r.returncode != 0:
            reason = _tail(r.stderr) or _tail(r.stdout)
            return False, f"{' '.join(cmd)} exited {r.returncode}: {reason}"
        return True, ""


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


class FileSystem:
    """The live filesystem.  Owners and groups are handled by name."""

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def read_bytes(self, path: str) -> bytes:
        with open(path, "rb") as fh:
            return fh.read()

    def stat(self, path: str) -> FileStat:
        st = os.stat(path)
        return FileStat(_user_name(st.st_uid), _group_name(st.st_gid),
                        stat.S_IMODE(st.st_mode))

    def write_atomic(self, path: str, data: bytes, mode: int = None) -> None:
        """Replace *path* with *data* via a temp file in the same directory.

        Readers see either the old file or the complete new one.  Without
        *mode*, an existing file keeps its mode and ownership; a new file
        gets 0644.
        """
        directory = os.path.dirname(path) or "."
        try:
            old = os.stat(path)
        except FileNotFoundError:
            old = None
        fd, tmp = tempfile.mkstemp(prefix=".hostmend-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            if mode is not None:
                os.chmod(tmp, mode)
            elif old is not None:
                os.chmod(tmp, stat.S_IMODE(old.st_mode))
            else:
                os.chmod(tmp, 0o644)
            if old is not None and os.geteuid() == 0:
                os.chown(tmp, old.st_uid, old.st_gid)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def chown(self, path: str, owner: str, group: str) -> None:
        shutil.chown(path, user=owner, group=group)

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(path, mode)

    def mkdir(self, path: str, mode: int) -> None:
        os.makedirs(path, mode=mode, exist_ok=True)

    def walk(self, path: str):
        """Yield *path* and everything below it, skipping symlinks."""
        yield path
        for dirpath, dirnames, filenames in os.walk(path):
            for name in sorted(dirnames) + sorted(filenames):
                full = os.path.join(dirpath, name)
                if not os.path.islink(full):
                    yield full

    def remove(self, path: str) -> None:
        os.unlink(path)

    def copy_preserving(self, src: str, dst: str) -> None:
        """``cp -a`` for a single file: content, mode, timestamps, owner."""
        shutil.copy2(src, dst)
        st = os.stat(src)
        if os.geteuid() == 0:
            os.chown(dst, st.st_uid, st.st_gid)

    def user_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def group_exists(self, name: str) -> bool:
        try:
            grp.getgrnam(name)
        except KeyError:
            return False
        return True


class PolicyChecker:
    """Syntax checkers for policy-like files (``visudo -c``, ``sh -n``)."""

    def check(self, path: str, validator: str) -> tuple:
        cmd = VALIDATORS[validator]
        if shutil.which(cmd[0]) is None:
            return False, f"{cmd[0]} not found; cannot validate"
        try:
            r = _run(cmd + [path], CHECK_TIMEOUT)
        except subprocess.TimeoutExpired:
            return False, f"{cmd[0]} timed out after {CHECK_TIMEOUT}s"
        if r.returncode == 0:
            return True, ""
        reason = _tail(r.stderr) or _tail(r.stdout) or f"exited {r.returncode}"
        return False, f"{cmd[0]}: {reason}"


class Downloader:
    """Fetches a URL into memory; the Mutator commits it with ``write_atomic``."""

    def fetch(self, url: str, timeout: int = PACKAGE_TIMEOUT) -> bytes:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            return resp.read()


class MountTable:
    """Mount options from ``/proc/mounts``."""

    def __init__(self, path=None):
        self.path = path or MOUNTS_PATH

    def entries(self) -> list:
        """Return ``[(mount_point, [options])]`` in table order."""
        try:
            with open(self.path) as fh:
                lines = fh.readlines()
        except OSError:
            return []
        entries = []
        for line in lines:
            parts = line.split()
            if len(parts) < 4:
                continue
            mount_point = parts[1].replace("\\040", " ")
            entries.append((mount_point, parts[3].split(",")))
        return entries

    def options_for(self, path: str) -> list:
        """Options of the mount that holds *path* (longest prefix, last wins)."""
        path = os.path.abspath(path)
        best, best_len = [], -1
        for mount_point, options in self.entries():
            prefix = mount_point.rstrip("/") + "/"
            if path == mount_point or path.startswith(prefix):
                if len(mount_point) >= best_len:
                    best, best_len = options, len(mount_point)
        return best

    def has_nosuid(self, path: str) -> bool:
        return "nosuid" in self.options_for(path)


class Host:
    """The collaborators the core talks to; any of them can be faked."""

    def __init__(self, packages=None, services=None, fs=None,
                 checker=None, mounts=None, downloader=None):
        self.packages = packages if packages is not None else PackageManager()
        self.services = services if services is not None else ServiceManager()
        self.fs = fs if fs is not None else FileSystem()
        self.checker = checker if checker is not None else PolicyChecker()
        self.mounts = mounts if mounts is not None else MountTable()
        self.downloader = downloader if downloader is not None else Downloader()


def resolve_ownership(fs, desired: dict) -> tuple:
    """Return ``(owner, group, note)``, honouring ``fallback_owner``.

    The man-db cache is the usual case: no ``man`` user on minimal images,
    so the directory ends up ``root:root`` instead.
    """
    owner, group = desired["owner"], desired["group"]
    fallback = desired.get("fallback_owner")
    if fallback and not fs.user_exists(owner):
        fb_group = desired.get("fallback_group", fallback)
        note = f"user '{owner}' not found; using {fallback}:{fb_group}"
        return fallback, fb_group, note
    return owner, group, ""


def _with_line(current: bytes, line: str) -> bytes:
    if current and not current.endswith(b"\n"):
        current += b"\n"
    return current + line.encode() + b"\n"


def _has_line(current: bytes, line: str) -> bool:
    return line in current.decode(errors="replace").splitlines()


def _entries(fs, action):
    """Paths a DirectoryOwnerMode action covers."""
    if action.desired.get("recursive", True):
        return fs.walk(action.target)
    return [action.target]


# ── Probe ────────────────────────────────────────────────────────────────────

class Probe:
    """Read-only inspection of one action's target."""

    def __init__(self, host: Host):
        self.host = host
        self._handlers = {
            "PackageInstalled":   self._package,
            "FileContent":        self._file_content,
            "FileOwnerMode":      self._file_owner_mode,
            "ServiceRunning":     self._service,
            "DirectoryOwnerMode": self._directory,
            "LinePresent":        self._line,
            "FileFetched":        self._fetched,
        }

    def inspect(self, action: ResourceAction) -> ProbeResult:
        try:
            return self._handlers[action.kind](action)
        except (OSError, subprocess.SubprocessError) as exc:
            return ProbeResult(False, f"cannot inspect {action.target}",
                               error=str(exc))

    def _package(self, action):
        if self.host.packages.is_installed(action.target):
            return ProbeResult(True, "installed")
        return ProbeResult(False, "not installed", exists=False)

    def _ownership_diffs(self, st: FileStat, owner, group, mode) -> list:
        diffs = []
        if owner is not None and st.owner != owner:
            diffs.append(f"owner {st.owner} (want {owner})")
        if group is not None and st.group != group:
            diffs.append(f"group {st.group} (want {group})")
        if mode is not None and st.mode != mode:
            diffs.append(f"mode {_fmt_mode(st.mode)} (want {_fmt_mode(mode)})")
        return diffs

    def _file_content(self, action):
        fs = self.host.fs
        if not fs.exists(action.target):
            return ProbeResult(False, "absent", exists=False)
        desired = action.desired
        diffs = []
        if fs.read_bytes(action.target) != desired["content"].encode():
            diffs.append("content differs")
        diffs += self._ownership_diffs(
            fs.stat(action.target), desired.get("owner"),
            desired.get("group"), desired.get("mode"),
        )
        if diffs:
            return ProbeResult(False, "; ".join(diffs))
        return ProbeResult(True, "content matches")

    def _file_owner_mode(self, action):
        fs = self.host.fs
        if not fs.exists(action.target):
            return ProbeResult(False, "absent", exists=False)
        owner, group, _ = resolve_ownership(fs, action.desired)
        st = fs.stat(action.target)
        diffs = self._ownership_diffs(st, owner, group, action.desired["mode"])
        if diffs:
            return ProbeResult(False, "; ".join(diffs))
        return ProbeResult(True, f"{st.owner}:{st.group} {_fmt_mode(st.mode)}")

    def _service(self, action):
        if self.host.services.is_running(action.target):
            return ProbeResult(True, "running")
        return ProbeResult(False, "not running")

    def _directory(self, action):
        fs = self.host.fs
        if not fs.exists(action.target):
            return ProbeResult(False, "absent", exists=False)
        if not fs.is_dir(action.target):
            return ProbeResult(False, "not a directory",
                               error=f"{action.target} exists but is not a directory")
        owner, group, _ = resolve_ownership(fs, action.desired)
        mode = action.desired["mode"]
        total = wrong = 0
        first = None
        for path in _entries(fs, action):
            total += 1
            st = fs.stat(path)
            if (st.owner, st.group, st.mode) != (owner, group, mode):
                wrong += 1
                first = first or path
        if wrong:
            return ProbeResult(False, f"{wrong} of {total} entries differ (first: {first})")
        return ProbeResult(True, f"{total} entries {owner}:{group} {_fmt_mode(mode)}")

    def _line(self, action):
        fs = self.host.fs
        if not fs.exists(action.target):
            return ProbeResult(False, "absent", exists=False)
        if _has_line(fs.read_bytes(action.target), action.desired["line"]):
            return ProbeResult(True, "line present")
        return ProbeResult(False, "line missing")

    def _fetched(self, action):
        # download-if-absent: an existing file is never re-fetched
        fs = self.host.fs
        if not fs.exists(action.target):
            return ProbeResult(False, "absent", exists=False)
        d = action.desired
        diffs = self._ownership_diffs(
            fs.stat(action.target), d.get("owner"), d.get("group"), d.get("mode"),
        )
        if diffs:
            return ProbeResult(False, "; ".join(diffs))
        return ProbeResult(True, "present")


# ── Validator ────────────────────────────────────────────────────────────────

class Validator:
    """Syntax-checks the content an action is about to commit.

    The candidate always goes to a scratch file first; the live file is never
    checked in place.
    """

    def __init__(self, host: Host):
        self.host = host

    def candidate(self, action: ResourceAction) -> Optional[bytes]:
        fs = self.host.fs
        if action.kind == "FileContent":
            return action.desired["content"].encode()
        if action.kind == "LinePresent":
            current = fs.read_bytes(action.target) if fs.exists(action.target) else b""
            return _with_line(current, action.desired["line"])
        if action.kind == "FileOwnerMode" and fs.exists(action.target):
            return fs.read_bytes(action.target)
        return None

    def validate(self, action: ResourceAction) -> tuple:
        if not action.validator:
            return True, ""
        data = self.candidate(action)
        if data is None:
            return True, ""
        fd, tmp = tempfile.mkstemp(prefix="hostmend-check-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            return self.host.checker.check(tmp, action.validator)
        finally:
            os.unlink(tmp)


# ── Backup ───────────────────────────────────────────────────────────────────

class Backup:
    """Snapshots files as ``<path>.bak.<stamp>``, at most once per run."""

    def __init__(self, fs, stamp: str, quiet: bool = False):
        self.fs = fs
        self.stamp = stamp
        self.quiet = quiet
        self._taken: dict = {}

    def snapshot(self, path: str) -> str:
        if path in self._taken:
            return self._taken[path]
        dest = f"{path}.bak.{self.stamp}"
        if self.fs.exists(dest):
            if not self.quiet:
                _info(f"Backup exists for {path} -> {dest}")
        else:
            self.fs.copy_preserving(path, dest)
            if not self.quiet:
                _info(f"Backed up {path} -> {dest}")
        self._taken[path] = dest
        return dest


# ── Mutator ──────────────────────────────────────────────────────────────────

class Mutator:
    """One state-changing operation per kind."""

    def __init__(self, host: Host, package_timeout: int = PACKAGE_TIMEOUT,
                 service_timeout: int = SERVICE_TIMEOUT, quiet: bool = False):
        self.host = host
        self.quiet = quiet
        self.package_timeout = package_timeout
        self.service_timeout = service_timeout
        self._handlers = {
            "PackageInstalled":   self._install,
            "FileContent":        self._write_content,
            "FileOwnerMode":      self._owner_mode,
            "ServiceRunning":     self._start_service,
            "DirectoryOwnerMode": self._directory,
            "LinePresent":        self._append_line,
            "FileFetched":        self._fetch,
        }

    def apply(self, action: ResourceAction, probe: ProbeResult) -> MutationResult:
        return self._handlers[action.kind](action, probe)

    def describe(self, action: ResourceAction, probe: ProbeResult) -> str:
        """Shell equivalent of what ``apply`` would do, for dry runs."""
        target = shlex.quote(action.target)
        d = action.desired
        if action.kind == "PackageInstalled":
            return " ".join(self.host.packages.install_command(action.target))
        if action.kind == "ServiceRunning":
            cmd = " ".join(self.host.services.start_command(action.target))
            stale = ", ".join(self._stale_files(action))
            return f"{cmd} (retry once after clearing {stale})"
        if action.kind == "FileContent":
            size = len(d["content"].encode())
            text = f"write {size} bytes to {target} (atomic replace)"
            if d.get("owner") or d.get("group"):
                text += f"; chown {d.get('owner') or ''}:{d.get('group') or ''} -- {target}"
            if d.get("mode") is not None:
                text += f"; chmod {_fmt_mode(d['mode'])} -- {target}"
            return text
        if action.kind == "LinePresent":
            return f"printf '%s\\n' {shlex.quote(d['line'])} >> {target}"
        if action.kind == "FileFetched":
            parts = []
            if not probe.exists:
                parts.append(f"wget -O {target} {shlex.quote(d['url'])}")
            if d.get("owner") or d.get("group"):
                parts.append(f"chown {d.get('owner') or ''}:{d.get('group') or ''} -- {target}")
            if d.get("mode") is not None:
                parts.append(f"chmod {_fmt_mode(d['mode'])} -- {target}")
            return "; ".join(parts)
        owner, group, note = resolve_ownership(self.host.fs, d)
        mode = _fmt_mode(d["mode"])
        if action.kind == "FileOwnerMode":
            text = f"chown {owner}:{group} -- {target}; chmod {mode} -- {target}"
        else:
            flag = "-R " if d.get("recursive", True) else ""
            text = f"chown {flag}{owner}:{group} -- {target}; chmod {flag}{mode} -- {target}"
            if not probe.exists:
                text = f"mkdir -p -- {target}; " + text
        if note:
            text += f" ({note})"
        return text

    def _install(self, action, probe):
        ok, reason = self.host.packages.install(action.target, self.package_timeout)
        if not ok:
            return MutationResult(False, reason)
        if not self.host.packages.is_installed(action.target):
            return MutationResult(False, f"{action.target} still missing after install")
        return MutationResult(True, f"installed {action.target}")

    def _ensure_parent(self, path: str) -> None:
        parent = os.path.dirname(path)
        if parent and not self.host.fs.is_dir(parent):
            self.host.fs.mkdir(parent, 0o755)

    def _write_content(self, action, probe):
        fs = self.host.fs
        d = action.desired
        self._ensure_parent(action.target)
        fs.write_atomic(action.target, d["content"].encode(), d.get("mode"))
        if d.get("owner") or d.get("group"):
            fs.chown(action.target, d.get("owner"), d.get("group"))
        verb = "updated" if probe.exists else "created"
        return MutationResult(True, f"{verb} {action.target}")

    def _owner_mode(self, action, probe):
        fs = self.host.fs
        owner, group, note = resolve_ownership(fs, action.desired)
        # chown first: it clears setuid/setgid bits that chmod then restores
        fs.chown(action.target, owner, group)
        fs.chmod(action.target, action.desired["mode"])
        message = f"set {owner}:{group} {_fmt_mode(action.desired['mode'])}"
        if note:
            message += f" ({note})"
        return MutationResult(True, message)

    def _stale_files(self, action) -> list:
        stale = action.desired.get("stale_files")
        if stale is None:
            stale = [t.format(name=action.target) for t in STALE_PID_TEMPLATES]
        return list(stale)

    def _start_service(self, action, probe):
        services = self.host.services
        ok, first = services.start(action.target, self.service_timeout)
        if ok:
            return MutationResult(True, f"started {action.target}")

        # single bounded recovery: clear stale pid artifacts, retry once
        cleared = []
        for path in self._stale_files(action):
            if self.host.fs.exists(path):
                self.host.fs.remove(path)
                cleared.append(path)
        ok, second = services.start(action.target, self.service_timeout)
        what = f"cleared {', '.join(cleared)}" if cleared else "no stale files found"
        if ok:
            return MutationResult(
                True,
                f"started {action.target} after recovery ({what}; first attempt: {first})",
                recovered=True,
            )
        return MutationResult(False, f"start failed after recovery ({what}): {second}")

    def _directory(self, action, probe):
        fs = self.host.fs
        d = action.desired
        owner, group, note = resolve_ownership(fs, d)
        if not probe.exists:
            if not d.get("create", True):
                return MutationResult(False, f"{action.target} missing and create is false")
            fs.mkdir(action.target, d["mode"])
        changed = 0
        for path in _entries(fs, action):
            fs.chown(path, owner, group)
            fs.chmod(path, d["mode"])
            changed += 1
        message = f"set {owner}:{group} {_fmt_mode(d['mode'])} on {changed} entries"
        if note:
            message += f" ({note})"
        return MutationResult(True, message)

    def _append_line(self, action, probe):
        fs = self.host.fs
        current = fs.read_bytes(action.target) if probe.exists else b""
        mode = None if probe.exists else action.desired.get("mode")
        self._ensure_parent(action.target)
        fs.write_atomic(action.target, _with_line(current, action.desired["line"]), mode)
        return MutationResult(True, f"appended line to {action.target}")

    def _fetch(self, action, probe):
        fs = self.host.fs
        d = action.desired
        verb = "set owner/mode on"
        if not probe.exists:
            if not self.quiet:
                _info(f"{_I.DOWNLOAD}  Downloading {d['url']} -> {action.target}")
            try:
                data = self.host.downloader.fetch(d["url"], self.package_timeout)
            except (OSError, ValueError) as exc:
                # URLError and socket timeouts are OSErrors; a malformed URL is a ValueError
                return MutationResult(False, f"download of {d['url']} failed: {exc}")
            self._ensure_parent(action.target)
            fs.write_atomic(action.target, data, d.get("mode"))
            verb = f"downloaded {len(data)} bytes to"
        if d.get("owner") or d.get("group"):
            fs.chown(action.target, d.get("owner"), d.get("group"))
        if d.get("mode") is not None:
            fs.chmod(action.target, d["mode"])
        return MutationResult(True, f"{verb} {action.target}")


# ── Reconciler ───────────────────────────────────────────────────────────────

class Reconciler:
    """Drives each action through probe, backup, validate, mutate, re-probe.

    Actions run strictly in declared order.  Per-action errors end up in that
    action's outcome; nothing raised by an adapter escapes ``run``.
    """

    def __init__(self, host: Host = None, dry_run: bool = False,
                 probe=None, validator=None, backup=None, mutator=None,
                 stamp: str = None, quiet: bool = False):
        self.host = host if host is not None else Host()
        self.dry_run = dry_run
        self.quiet = quiet
        self.stamp = stamp or datetime.now().strftime("%Y%m%d-%H%M%S")
        self.probe = probe or Probe(self.host)
        self.validator = validator or Validator(self.host)
        self.backup = backup or Backup(self.host.fs, self.stamp, quiet=quiet)
        self.mutator = mutator or Mutator(self.host, quiet=quiet)
        self._cancelled = False

    def cancel(self) -> None:
        """Stop before the next action; the current one runs to completion."""
        self._cancelled = True

    def _on_sigint(self, signum, frame) -> None:
        if not self._cancelled:
            _warn("Interrupted: finishing the current action, skipping the rest")
        self.cancel()

    def run(self, actions: list, report: RunReport = None) -> RunReport:
        if report is None:
            report = RunReport.begin(self.dry_run)
        previous = None
        if threading.current_thread() is threading.main_thread():
            previous = signal.signal(signal.SIGINT, self._on_sigint)
        try:
            statuses = {}
            for action in actions:
                if self._cancelled:
                    outcome = ActionOutcome(action.id, SKIPPED, "run cancelled before this action")
                else:
                    outcome = self.reconcile(action, statuses)
                statuses[action.id] = outcome.status
                report.add(outcome)
                _status_line(outcome)
        finally:
            if previous is not None:
                signal.signal(signal.SIGINT, previous)
        report.finish()
        return report

    def _blocked_by(self, action: ResourceAction, statuses: dict) -> list:
        allowed = {OK, WARNED}
        if self.dry_run:
            # previews cover the whole plan
            allowed.add(SKIPPED)
        return [r for r in action.requires if statuses.get(r) not in allowed]

    def reconcile(self, action: ResourceAction, statuses: dict) -> ActionOutcome:
        blocked = self._blocked_by(action, statuses)
        if blocked:
            return ActionOutcome(
                action.id, SKIPPED_DEP,
                f"requires {', '.join(blocked)} which did not succeed",
            )
        if not self.quiet:
            _info(f"{action.id}: checking {action.kind} {action.target}")
        try:
            return self._reconcile(action)
        except (OSError, subprocess.SubprocessError, LookupError) as exc:
            return ActionOutcome(action.id, FAILED, f"{type(exc).__name__}: {exc}")

    def _constraint(self, action: ResourceAction) -> str:
        """Environmental limits this tool can detect but not fix."""
        if action.kind != "FileOwnerMode":
            return ""
        if not action.desired["mode"] & (stat.S_ISUID | stat.S_ISGID):
            return ""
        if self.host.mounts.has_nosuid(action.target):
            return (f"{action.target} is on a nosuid mount; the setuid/setgid "
                    f"bit will be ignored (remount without nosuid)")
        return ""

    def _reconcile(self, action: ResourceAction) -> ActionOutcome:
        before = self.probe.inspect(action)
        outcome = ActionOutcome(action.id, FAILED, probe_before=before)

        if before.error:
            outcome.message = f"probe failed: {before.error}"
            return outcome

        if before.matches:
            constraint = self._constraint(action)
            outcome.status = WARNED if constraint else OK
            outcome.message = constraint or f"already in desired state ({before.details})"
            outcome.probe_after = before
            return outcome

        if not before.exists and action.kind == "FileOwnerMode":
            outcome.status = WARNED
            outcome.message = f"{action.target} missing; nothing to chown/chmod"
            return outcome

        if (action.wants_backup and action.kind in BACKUP_KINDS
                and before.exists and not self.dry_run):
            try:
                outcome.backup_path = self.backup.snapshot(action.target)
            except OSError as exc:
                if action.sensitive:
                    outcome.message = f"backup failed, not touching {action.target}: {exc}"
                    return outcome
                _warn(f"Backup of {action.target} failed: {exc}")

        if action.sensitive or action.validator:
            ok, reason = self.validator.validate(action)
            if not ok:
                outcome.status = WARNED
                outcome.message = f"validation failed, left {action.target} unchanged: {reason}"
                return outcome

        if self.dry_run:
            intended = self.mutator.describe(action, before)
            _dry(intended)
            outcome.status = SKIPPED
            outcome.message = f"dry run, would: {intended}"
            return outcome

        result = self.mutator.apply(action, before)
        outcome.recovered = result.recovered
        if not result.ok:
            outcome.message = result.message
            return outcome

        after = self.probe.inspect(action)
        outcome.probe_after = after
        if after.error:
            outcome.message = f"re-probe failed: {after.error}"
            return outcome
        if not after.matches:
            outcome.message = f"change did not take effect: {after.details}"
            if action.kind in FILE_KINDS:
                # e.g. a permission-mapping mount that accepts and drops chmod
                outcome.status = WARNED
                outcome.message += " (check mount options)"
            return outcome

        constraint = self._constraint(action)
        outcome.status = WARNED if constraint else OK
        outcome.message = constraint or result.message
        return outcome


# ── Reporter ─────────────────────────────────────────────────────────────────

def render_report(report: RunReport) -> str:
    """Human-readable text for one run."""
    host = report.host
    lines = [
        "hostmend run report",
        f"Plan:      {report.plan or '-'}",
        f"Started:   {report.started}",
        f"Finished:  {report.finished or '-'}",
        f"Dry run:   {'yes' if report.dry_run else 'no'}",
    ]
    if host:
        lines.append(
            f"Host:      {host.get('hostname', '?')} "
            f"(user {host.get('user', '?')}, uid {host.get('uid', '?')})"
        )
        lines.append(f"OS:        {host.get('os', '?')}, kernel {host.get('kernel', '?')}")
    if report.notes:
        lines.append("Notes:")
        lines += [f"  - {n}" for n in report.notes]
    lines.append("─" * 60)

    for o in report.outcomes:
        lines.append(f"[{o.status}] {o.action_id}: {o.message}".rstrip(": "))
        if o.probe_before is not None:
            lines.append(f"    before: {o.probe_before.details}")
        if o.probe_after is not None and o.probe_after is not o.probe_before:
            lines.append(f"    after:  {o.probe_after.details}")
        if o.backup_path:
            lines.append(f"    backup: {o.backup_path}")
        if o.recovered:
            lines.append("    recovery: stale state cleared and retried once")

    lines.append("─" * 60)
    counts = report.counts()
    lines.append("Summary:   " + ", ".join(f"{counts[s]} {s}" for s in STATUSES))
    failed = report.failed_ids()
    if failed:
        lines.append(f"Failed:    {', '.join(failed)}")
    return "\n".join(lines) + "\n"


def persist_report(report: RunReport, directory, as_json: bool = False) -> Optional[Path]:
    """Write the report under *directory* without clobbering earlier runs.

    Returns the text report path, or None when it could not be written; a
    failure here never fails the run.
    """
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        for n in count():
            suffix = f"-{n}" if n else ""
            path = directory / f"hostmend-{report.stamp}{suffix}.log"
            try:
                with open(path, "x") as fh:
                    fh.write(render_report(report))
                break
            except FileExistsError:
                continue
        if as_json:
            with open(path.with_suffix(".json"), "w") as fh:
                json.dump(report.to_dict(), fh, indent=2)
                fh.write("\n")
    except OSError as exc:
        _warn(f"Could not write report to {directory}: {exc}")
        return None
    return path


# ── Preflight ────────────────────────────────────────────────────────────────

def read_os_release(path=None) -> dict:
    """Parse /etc/os-release into a dict (empty when unreadable)."""
    info = {}
    try:
        with open(path or OS_RELEASE_PATH) as fh:
            for line in fh:
                line = line.strip()
                if "=" in line and not line.startswith("#"):
                    key, _, val = line.partition("=")
                    info[key] = val.strip('"')
    except OSError:
        pass
    return info


def host_identity() -> dict:
    uname = os.uname()
    release = read_os_release()
    uid = os.geteuid()
    return {
        "hostname": uname.nodename,
        "user": _user_name(uid),
        "uid": uid,
        "kernel": uname.release,
        "os": release.get("PRETTY_NAME", release.get("ID", "unknown")),
    }


def preflight_notes(mounts) -> list:
    """Environment problems worth knowing about before anything changes."""
    notes = []
    for path in NOSUID_CHECK_PATHS:
        if mounts.has_nosuid(path):
            notes.append(f"{path} is mounted nosuid; setuid binaries there "
                         f"(sudo) will not elevate whatever their mode")
    return notes


def check_log_dir(directory) -> None:
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=directory):
            pass
    except OSError as exc:
        raise PreconditionError(f"cannot write reports to {directory}: {exc}") from None


# ── Hostmend ─────────────────────────────────────────────────────────────────

class Hostmend:

    def __init__(self, actions: list, plan_path: str = "", dry_run: bool = False,
                 log_dir=None, yes: bool = False, quiet: bool = False,
                 json_report: bool = False, host: Host = None,
                 package_timeout: int = PACKAGE_TIMEOUT,
                 service_timeout: int = SERVICE_TIMEOUT):
        self.actions = actions
        self.plan_path = plan_path
        self.dry_run = dry_run
        self.log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
        self.yes = yes
        self.quiet = quiet
        self.json_report = json_report
        self.host = host if host is not None else Host()
        self.package_timeout = package_timeout
        self.service_timeout = service_timeout

    def _confirm(self) -> None:
        """List the plan and ask before touching anything.

        Exits immediately if the user declines.  Skipped when --yes or
        --dry-run are active.
        """
        if self.yes or self.dry_run:
            return

        print()
        print(f"  {_C.BOLD}About to reconcile {len(self.actions)} action(s):{_C.RESET}")
        for a in self.actions:
            flag = f" {_I.SHIELD} sensitive" if a.sensitive else ""
            print(f"    • {a.id}: {a.kind} {a.target}{flag}")
        print()
        print(f"  {_C.DIM}Use --dry-run to preview without changes.{_C.RESET}")
        print()
        try:
            answer = input("  Proceed? [y/N] ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            _info("Aborted.")
            sys.exit(0)

        if answer != "y":
            _info("Aborted.")
            sys.exit(0)

        print()

    def run(self) -> RunReport:
        t0 = time.monotonic()
        mode = "dry run" if self.dry_run else "apply"
        _banner(f"{_I.WRENCH}  hostmend — {len(self.actions)} action(s), {mode}")

        report = RunReport.begin(
            self.dry_run, plan=str(self.plan_path),
            host=host_identity(), notes=preflight_notes(self.host.mounts),
        )
        h = report.host
        _info(f"Host {h['hostname']}: {h['os']}, kernel {h['kernel']}, "
              f"user {h['user']} (uid {h['uid']})")
        for note in report.notes:
            _warn(note)

        self._confirm()

        host = self.host
        reconciler = Reconciler(
            host, dry_run=self.dry_run, stamp=report.stamp, quiet=self.quiet,
            mutator=Mutator(host, package_timeout=self.package_timeout,
                            service_timeout=self.service_timeout, quiet=self.quiet),
        )
        reconciler.run(self.actions, report)

        self._print_summary(report, time.monotonic() - t0)
        path = persist_report(report, self.log_dir, as_json=self.json_report)
        if path is not None:
            _info(f"{_I.FILE}  Report: {path}")
        return report

    def _print_summary(self, report: RunReport, elapsed: float) -> None:
        m, s = divmod(int(elapsed), 60)
        counts = report.counts()
        icon = _I.ERROR if report.failed_ids() else _I.CHECK
        _banner(f"{icon}  hostmend complete ({m}m {s:02d}s)")
        _info("  ".join(f"{status}: {counts[status]}" for status in STATUSES))
        for action_id in report.failed_ids():
            _error(f"FAILED: {action_id}")
        if self.dry_run:
            _skip("Dry run — nothing was changed")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="hostmend",
        description="Reconcile this host against a JSON plan of resource actions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo hostmend plans/xrdp-desktop.json         # apply (interactive confirm)
  sudo hostmend plans/sudo-heal.json -y         # skip confirmation prompt
  hostmend plans/sudo-heal.json --dry-run       # preview without changes
  sudo hostmend plan.json --log-dir /tmp/hm     # reports somewhere else
""",
    )
    p.add_argument("plan", help="JSON plan file")
    p.add_argument(
        "--dry-run", action="store_true",
        help="probe and validate only; print what would change",
    )
    p.add_argument(
        "--log-dir", default=str(DEFAULT_LOG_DIR),
        help=f"directory for run reports (default: {DEFAULT_LOG_DIR})",
    )
    p.add_argument(
        "--json", action="store_true", dest="json_report",
        help="also write the report as JSON next to the text report",
    )
    p.add_argument(
        "--package-timeout", type=int, default=PACKAGE_TIMEOUT,
        help=f"seconds allowed per package install (default: {PACKAGE_TIMEOUT})",
    )
    p.add_argument(
        "--service-timeout", type=int, default=SERVICE_TIMEOUT,
        help=f"seconds allowed per service start attempt (default: {SERVICE_TIMEOUT})",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-action progress; status lines, warnings and "
             "errors still print",
    )
    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if os.geteuid() != 0 and not args.dry_run:
            raise PreconditionError("hostmend must run as root (or use --dry-run)")
        actions = load_plan(args.plan)
        if not args.dry_run:
            check_log_dir(args.log_dir)
    except HostmendError as exc:
        _error(str(exc))
        sys.exit(2)

    app = Hostmend(
        actions,
        plan_path=args.plan,
        dry_run=args.dry_run,
        log_dir=args.log_dir,
        yes=args.yes,
        quiet=args.quiet,
        json_report=args.json_report,
        package_timeout=args.package_timeout,
        service_timeout=args.service_timeout,
    )
    report = app.run()
    sys.exit(report.exit_code())


if __name__ == "__main__":
    main()
