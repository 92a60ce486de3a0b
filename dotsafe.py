#!/usr/bin/env python3
"""
Dotfiles Backup & Restore (dotsafe)

Single-entry toolkit to back up, link, restore and uninstall a personal
dotfiles setup. Every backup run is recorded in a JSON manifest so it can be
rolled back later.
"""
from __future__ import annotations

import argparse
import json
import os
import re
import shutil
import subprocess
import sys
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple


# Paths backed up before the installer links anything. Relative to home.
BACKUP_CANDIDATES: List[str] = [
    ".zshrc",
    ".zprofile",
    ".bash_profile",
    ".bashrc",
    ".gitconfig",
    ".tmux.conf",
    ".vimrc",
    ".p10k.zsh",
    ".oh-my-zsh",
]

# Link target in home -> candidate sources in the dotfiles repo, first match wins.
LINK_SPECS: Dict[str, List[str]] = {
    ".zshrc": [".zshrc"],
    ".gitconfig": [".gitconfig"],
    ".tmux.conf": ["tmux.conf", ".tmux.conf"],
    ".p10k.zsh": ["p10k.zsh"],
}

# Removed on uninstall, but only when they point into the dotfiles repo.
MANAGED_LINKS: List[str] = [".zshrc", ".gitconfig", ".tmux.conf", ".vimrc", ".p10k.zsh"]

MANIFEST_NAME = "manifest.json"
ERROR_LOG_NAME = "dotsafe.error.log"
TMUX_PREFIX = "tmux-"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
TIMESTAMP_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:_(\d+))?$")
BREWFILE_PACKAGE = re.compile(r"^(brew|cask)\b")

COLORS = {
    "green": "\033[0;32m",
    "yellow": "\033[1;33m",
    "red": "\033[0;31m",
    "blue": "\033[0;34m",
    "reset": "\033[0m",
}

_use_color = sys.stdout.isatty() and "NO_COLOR" not in os.environ


def set_color(enabled: bool) -> None:
    global _use_color
    _use_color = enabled


def paint(color: str, text: str) -> str:
    if not _use_color:
        return text
    return f"{COLORS[color]}{text}{COLORS['reset']}"


def success(message: str) -> None:
    print(f"{paint('green', '✓')} {message}")


def info(message: str) -> None:
    print(f"{paint('yellow', 'ℹ')} {message}")


def warn(message: str) -> None:
    print(f"{paint('yellow', '⚠')} {message}")


def error(message: str) -> None:
    print(f"{paint('red', '✗')} {message}", file=sys.stderr)


def debug(message: str, verbose: bool) -> None:
    if verbose:
        print(f"[debug] {message}")


def header(title: str) -> None:
    rule = "━" * 40
    print()
    print(paint("blue", rule))
    print(paint("blue", f"  {title}"))
    print(paint("blue", rule))
    print()


class DotsafeError(Exception):
    """Raised for problems reported to the user without a traceback."""


class ManifestCorruptError(DotsafeError):
    pass


class TimestampNotFoundError(DotsafeError):
    pass


def get_home() -> Path:
    """Allow overriding home for tests via DOTSAFE_HOME."""
    env_home = os.environ.get("DOTSAFE_HOME")
    return Path(env_home).expanduser() if env_home else Path.home()


def link_destination(path: Path) -> str:
    """Absolute, normalized target of a symlink, without resolving further links."""
    target = os.readlink(path)
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(str(path)), target)
    return os.path.normpath(target)


@dataclass
class Settings:
    home: Path
    dotfiles_dir: Path
    backup_dir: Path
    verbose: bool = False

    def __post_init__(self) -> None:
        # Symlinks are written with these paths, so they must not be relative.
        self.home = Path(os.path.abspath(Path(self.home).expanduser()))
        self.dotfiles_dir = Path(os.path.abspath(Path(self.dotfiles_dir).expanduser()))
        self.backup_dir = Path(os.path.abspath(Path(self.backup_dir).expanduser()))

    @property
    def manifest_path(self) -> Path:
        return self.backup_dir / MANIFEST_NAME

    @property
    def error_log_path(self) -> Path:
        return self.backup_dir / ERROR_LOG_NAME

    @classmethod
    def from_env(
        cls,
        home: Optional[str] = None,
        dotfiles_dir: Optional[str] = None,
        backup_dir: Optional[str] = None,
        verbose: bool = False,
    ) -> "Settings":
        home_path = Path(home).expanduser() if home else get_home()
        repo = dotfiles_dir or os.environ.get("DOTFILES_DIR")
        store = backup_dir or os.environ.get("DOTSAFE_BACKUP_DIR")
        return cls(
            home=home_path,
            dotfiles_dir=Path(repo).expanduser() if repo else home_path / "dotfiles",
            backup_dir=Path(store).expanduser() if store else home_path / ".dotfiles-backup",
            verbose=verbose,
        )

    def is_dotfiles_link(self, path: Path) -> bool:
        if not path.is_symlink():
            return False
        repo = os.path.normpath(str(self.dotfiles_dir))
        target = link_destination(path)
        return target == repo or target.startswith(repo + os.sep)


@dataclass
class BackupEntry:
    item: str
    original_path: str
    backup_path: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "item": self.item,
            "original_path": self.original_path,
            "backup_path": self.backup_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupEntry":
        return cls(
            item=str(data["item"]),
            original_path=str(data["original_path"]),
            backup_path=str(data["backup_path"]),
            timestamp=str(data["timestamp"]),
        )


@dataclass
class FileFailure:
    item: str
    path: str
    reason: str


def new_timestamp() -> str:
    return time.strftime(TIMESTAMP_FORMAT)


def timestamp_key(value: str) -> Tuple[str, int]:
    """Sort key that orders `20250101_120000_10` after `20250101_120000_2`."""
    match = TIMESTAMP_PATTERN.match(value)
    if not match:
        return (value, 0)
    return (match.group(1), int(match.group(2) or 0))


def item_name(path: Path) -> str:
    return path.name.lstrip(".") or path.name


def copy_item(source: Path, dest: Path) -> None:
    """Copy a file, directory or dangling link, keeping permissions and mtimes."""
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    elif source.exists():
        shutil.copy2(source, dest)
    else:
        # Dangling link: nothing to read, keep the link itself.
        os.symlink(os.readlink(source), dest)


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def prompt_confirm(question: str) -> bool:
    try:
        reply = input(f"{question} (y/n) ").strip().lower()
    except EOFError:
        return False
    return reply in {"y", "yes"}


def assume_yes(question: str) -> bool:
    return True


class ManifestStore:
    """Append-only record of backup runs, persisted as one JSON document.

    Reads are strict: a manifest that cannot be parsed raises
    ManifestCorruptError so that restore never guesses. Writes recover by
    moving the broken file aside and starting over.
    """

    def __init__(self, path: Path, verbose: bool = False) -> None:
        self.path = path
        self.verbose = verbose

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"backups": [], "current": None}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise ManifestCorruptError(f"Manifest {self.path} is not valid JSON: {exc}") from exc
        if isinstance(data, list):
            data = {"backups": data, "current": None}
        if not isinstance(data, dict) or not isinstance(data.get("backups", []), list):
            raise ManifestCorruptError(f"Manifest {self.path} has an unexpected structure")
        data.setdefault("backups", [])
        data.setdefault("current", None)
        return data

    def _parse(self, data: Dict[str, Any]) -> List[BackupEntry]:
        entries: List[BackupEntry] = []
        for raw in data["backups"]:
            try:
                entries.append(BackupEntry.from_dict(raw))
            except (KeyError, TypeError) as exc:
                raise ManifestCorruptError(f"Manifest {self.path} has a malformed entry: {raw!r}") from exc
        return entries

    def _load_for_write(self) -> Tuple[List[BackupEntry], Optional[Dict[str, Any]]]:
        try:
            data = self._read()
            return self._parse(data), data.get("current")
        except ManifestCorruptError as exc:
            quarantine = self.path.with_name(f"{self.path.name}.corrupt-{new_timestamp()}")
            os.replace(self.path, quarantine)
            warn(f"{exc}. Moved it to {quarantine} and started a fresh manifest.")
            return [], None

    def _write(self, entries: List[BackupEntry], current: Optional[Dict[str, Any]]) -> None:
        payload = {"backups": [e.to_dict() for e in entries], "current": current}
        write_json_atomic(self.path, payload)
        debug(f"Wrote {len(entries)} entries to {self.path}", self.verbose)

    def load(self) -> List[BackupEntry]:
        return self._parse(self._read())

    def append(self, entry: BackupEntry) -> None:
        self.extend([entry])

    def extend(self, entries: Iterable[BackupEntry], current: Optional[Dict[str, Any]] = None) -> None:
        existing, previous_current = self._load_for_write()
        existing.extend(entries)
        self._write(existing, current if current is not None else previous_current)

    def list_timestamps(self) -> List[str]:
        stamps = {e.timestamp for e in self.load()}
        return sorted(stamps, key=timestamp_key, reverse=True)

    def entries_for(self, timestamp: str) -> List[BackupEntry]:
        return [e for e in self.load() if e.timestamp == timestamp]

    def latest(self) -> Optional[str]:
        stamps = self.list_timestamps()
        return stamps[0] if stamps else None

    def summary(self) -> List[Tuple[str, int]]:
        counts: Dict[str, int] = {}
        for entry in self.load():
            counts[entry.timestamp] = counts.get(entry.timestamp, 0) + 1
        return [(stamp, counts[stamp]) for stamp in sorted(counts, key=timestamp_key, reverse=True)]

    def remove_run(self, timestamp: str) -> List[BackupEntry]:
        data = self._read()
        entries = self._parse(data)
        removed = [e for e in entries if e.timestamp == timestamp]
        if not removed:
            raise TimestampNotFoundError(f"No backups found for timestamp: {timestamp}")
        current = data.get("current")
        if isinstance(current, dict) and current.get("timestamp") == timestamp:
            current = None
        self._write([e for e in entries if e.timestamp != timestamp], current)
        return removed


@dataclass
class BackupReport:
    timestamp: str
    directory: Path
    entries: List[BackupEntry] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class BackupRecorder:
    def __init__(self, settings: Settings, store: ManifestStore) -> None:
        self.settings = settings
        self.store = store
        self.verbose = settings.verbose

    def candidates(self, extra: Optional[Sequence[str]] = None) -> List[Path]:
        paths = [self.settings.home / rel for rel in BACKUP_CANDIDATES]
        for raw in extra or []:
            path = Path(raw).expanduser()
            paths.append(path if path.is_absolute() else self.settings.home / path)
        # A file is backed up at most once per run.
        seen: Set[str] = set()
        unique: List[Path] = []
        for path in paths:
            key = os.path.normpath(str(path))
            if key not in seen:
                seen.add(key)
                unique.append(path)
        return unique

    def _allocate_timestamp(self, requested: Optional[str]) -> str:
        base = requested or new_timestamp()
        try:
            taken = set(self.store.list_timestamps())
        except ManifestCorruptError:
            # The write at the end of the run quarantines the broken manifest.
            taken = set()
        candidate = base
        suffix = 0
        while candidate in taken or (self.settings.backup_dir / candidate).exists():
            suffix += 1
            candidate = f"{base}_{suffix}"
        return candidate

    def _destination(self, run_dir: Path, source: Path, taken: Set[str]) -> Path:
        dest = run_dir / source.name
        suffix = 0
        while str(dest) in taken or dest.exists() or dest.is_symlink():
            suffix += 1
            dest = run_dir / f"{source.name}.{suffix}"
        taken.add(str(dest))
        return dest

    def run(
        self,
        candidates: Optional[Sequence[Path]] = None,
        timestamp: Optional[str] = None,
        dry_run: bool = False,
    ) -> BackupReport:
        paths = list(candidates) if candidates is not None else self.candidates()
        stamp = self._allocate_timestamp(timestamp)
        run_dir = self.settings.backup_dir / stamp
        report = BackupReport(timestamp=stamp, directory=run_dir)
        taken: Set[str] = set()

        info("Starting backup process...")
        for source in paths:
            name = item_name(source)
            if not source.exists() and not source.is_symlink():
                debug(f"No existing {source.name} found to back up", self.verbose)
                continue
            if self.settings.is_dotfiles_link(source):
                info(f"Skipping {source.name} (already linked to dotfiles)")
                report.skipped.append(str(source))
                continue

            dest = self._destination(run_dir, source, taken)
            entry = BackupEntry(item=name, original_path=str(source), backup_path=str(dest), timestamp=stamp)
            if dry_run:
                info(f"Would back up: {source} -> {dest}")
                report.entries.append(entry)
                continue

            try:
                run_dir.mkdir(parents=True, exist_ok=True)
                copy_item(source, dest)
            except OSError as exc:
                error(f"Failed to back up {source}: {exc}")
                report.failures.append(FileFailure(item=name, path=str(source), reason=str(exc)))
                self._discard_partial(dest)
                continue
            success(f"Backed up: {source.name}")
            report.entries.append(entry)

        if dry_run:
            info(f"Dry-run: {len(report.entries)} items would be backed up to {run_dir}")
            return report

        if report.entries:
            self.store.extend(
                report.entries,
                current={
                    "timestamp": stamp,
                    "directory": str(run_dir),
                    "items_backed_up": len(report.entries),
                },
            )
            success(f"Backup completed: {len(report.entries)} items backed up")
            info(f"Backup location: {run_dir}")
        else:
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()
            info("No files needed backing up")
        return report

    def _discard_partial(self, dest: Path) -> None:
        try:
            remove_path(dest)
        except OSError as exc:
            warn(f"Could not remove partial copy {dest}: {exc}")


@dataclass
class RestoreReport:
    timestamp: str
    restored: List[BackupEntry] = field(default_factory=list)
    removed_links: List[str] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class Restorer:
    def __init__(self, settings: Settings, store: ManifestStore) -> None:
        self.settings = settings
        self.store = store
        self.verbose = settings.verbose

    def resolve(self, timestamp: Optional[str] = None) -> str:
        if timestamp in (None, "", "latest"):
            latest = self.store.latest()
            if latest is None:
                raise TimestampNotFoundError("No backups found to restore")
            return latest
        if not self.store.entries_for(timestamp):
            raise TimestampNotFoundError(f"No backups found for timestamp: {timestamp}")
        return timestamp

    def restore(self, timestamp: Optional[str] = "latest") -> RestoreReport:
        stamp = self.resolve(timestamp)
        report = RestoreReport(timestamp=stamp)
        for entry in self.store.entries_for(stamp):
            backup = Path(entry.backup_path)
            target = Path(entry.original_path)
            if not backup.exists() and not backup.is_symlink():
                error(f"Backup not found: {backup}")
                report.failures.append(FileFailure(item=entry.item, path=entry.backup_path, reason="backup copy is missing"))
                continue
            try:
                if target.is_symlink():
                    target.unlink()
                    report.removed_links.append(str(target))
                    debug(f"Removed symlink {target}", self.verbose)
                elif target.exists():
                    remove_path(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                copy_item(backup, target)
            except OSError as exc:
                error(f"Failed to restore {entry.item}: {exc}")
                report.failures.append(FileFailure(item=entry.item, path=entry.original_path, reason=str(exc)))
                continue
            success(f"Restored: {entry.item}")
            report.restored.append(entry)
        return report


@dataclass
class InstallReport:
    backup: BackupReport
    linked: List[str] = field(default_factory=list)
    already_linked: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.backup.ok and not self.failures


class Installer:
    def __init__(
        self,
        settings: Settings,
        store: ManifestStore,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.settings = settings
        self.confirm = confirm or prompt_confirm
        self.recorder = BackupRecorder(settings, store)
        self.verbose = settings.verbose

    def link_source(self, target: str) -> Optional[Path]:
        for candidate in LINK_SPECS.get(target, []):
            source = self.settings.dotfiles_dir / candidate
            if source.exists():
                return source
        return None

    def check_existing(self) -> bool:
        """Ask before replacing a hand-written .zshrc. False means cancel."""
        zshrc = self.settings.home / ".zshrc"
        if zshrc.is_file() and not zshrc.is_symlink():
            lines = len(zshrc.read_text(errors="replace").splitlines())
            warn(f"Found existing .zshrc configuration ({lines} lines)")
            return self.confirm("Back up and replace the existing .zshrc?")
        success("No existing .zshrc found or already using dotfiles")
        return True

    def install(self, extra: Optional[Sequence[str]] = None, dry_run: bool = False) -> InstallReport:
        if not self.settings.dotfiles_dir.is_dir():
            raise DotsafeError(f"Dotfiles repository not found at {self.settings.dotfiles_dir}")

        header("Backing Up Existing Configuration")
        backup = self.recorder.run(self.recorder.candidates(extra), dry_run=dry_run)
        report = InstallReport(backup=backup)
        failed = {f.path for f in backup.failures}

        header("Creating Symbolic Links")
        for rel in LINK_SPECS:
            source = self.link_source(rel)
            target = self.settings.home / rel
            if source is None:
                debug(f"No source for {rel} in {self.settings.dotfiles_dir}", self.verbose)
                continue
            if target.is_symlink() and link_destination(target) == os.path.normpath(str(source)):
                info(f"{rel} already linked")
                report.already_linked.append(str(target))
                continue
            if str(target) in failed:
                warn(f"Not linking {rel}: its backup failed")
                report.skipped.append(str(target))
                continue
            if dry_run:
                info(f"Would link {target} -> {source}")
                continue
            try:
                if target.exists() or target.is_symlink():
                    remove_path(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(source, target)
            except OSError as exc:
                error(f"Failed to link {rel}: {exc}")
                report.failures.append(FileFailure(item=item_name(target), path=str(target), reason=str(exc)))
                continue
            success(f"Linked {rel}")
            report.linked.append(str(target))
        return report


class Uninstaller:
    def __init__(
        self,
        settings: Settings,
        store: ManifestStore,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.confirm = confirm or prompt_confirm
        self.restorer = Restorer(settings, store)

    def remove_symlinks(self) -> List[str]:
        header("Removing Dotfiles Symlinks")
        removed: List[str] = []
        for rel in MANAGED_LINKS:
            link = self.settings.home / rel
            if self.settings.is_dotfiles_link(link):
                link.unlink()
                success(f"Removed symlink: {rel}")
                removed.append(str(link))
        return removed

    def brewfile_packages(self) -> List[str]:
        brewfile = self.settings.dotfiles_dir / "Brewfile"
        if not brewfile.is_file():
            return []
        return [
            line.strip()
            for line in brewfile.read_text(errors="replace").splitlines()
            if BREWFILE_PACKAGE.match(line.strip())
        ]

    def quick_restore(self, timestamp: Optional[str] = None) -> RestoreReport:
        # Resolve first so a bad timestamp leaves the links alone.
        stamp = self.restorer.resolve(timestamp)
        header("Quick Restore from Backup")
        info(f"Restoring from: {stamp}")
        self.remove_symlinks()
        return self.restorer.restore(stamp)

    def _decide(self, preset: Optional[bool], question: str) -> bool:
        return preset if preset is not None else self.confirm(question)

    def uninstall(
        self,
        remove_repository: Optional[bool] = None,
        remove_backups: Optional[bool] = None,
    ) -> Optional[RestoreReport]:
        """Run the full rollback. Returns None when cancelled or nothing was restored."""
        info("This will remove the dotfiles setup and restore your original configuration")
        if not self.confirm("Are you sure you want to continue?"):
            info("Uninstall cancelled")
            return None

        report: Optional[RestoreReport] = None
        latest = self.store.latest()
        if latest:
            success(f"Found backup from: {latest}")
            self.remove_symlinks()
            header("Restoring Original Configuration")
            report = self.restorer.restore(latest)
        else:
            info("No backups found - will only remove symlinks")
            self.remove_symlinks()

        packages = self.brewfile_packages()
        if packages:
            header("Installed Packages")
            info("The following packages were installed from Brewfile:")
            for line in packages:
                print(f"  - {line}")
            info("To remove these packages, run: brew bundle cleanup --force")

        header("Removing Dotfiles Repository")
        if self._decide(remove_repository, "Do you want to remove the dotfiles repository?"):
            if self.settings.dotfiles_dir.is_dir():
                shutil.rmtree(self.settings.dotfiles_dir)
                success("Removed dotfiles repository")
        else:
            info(f"Keeping dotfiles repository at {self.settings.dotfiles_dir}")

        header("Backup Cleanup")
        if self._decide(remove_backups, "Do you want to remove all backup files?"):
            if self.settings.backup_dir.is_dir():
                shutil.rmtree(self.settings.backup_dir)
                success("Removed all backups")
        else:
            info(f"Keeping backups at {self.settings.backup_dir}")

        header("Uninstall Complete")
        success("Dotfiles setup has been removed")
        info("Please restart your terminal for changes to take effect")
        if self.settings.backup_dir.is_dir():
            info(f"Backups are still available at: {self.settings.backup_dir}")
        return report


class TmuxBackups:
    """tmux-<timestamp> directories kept beside, not inside, the main manifest."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.verbose = settings.verbose

    def list(self) -> List[Path]:
        root = self.settings.backup_dir
        if not root.is_dir():
            return []
        dirs = [p for p in root.iterdir() if p.is_dir() and p.name.startswith(TMUX_PREFIX)]
        return sorted(dirs, key=lambda p: timestamp_key(p.name[len(TMUX_PREFIX):]), reverse=True)

    def backup(self, timestamp: Optional[str] = None) -> Path:
        base = f"{TMUX_PREFIX}{timestamp or new_timestamp()}"
        directory = self.settings.backup_dir / base
        suffix = 0
        while directory.exists():
            suffix += 1
            directory = self.settings.backup_dir / f"{base}_{suffix}"
        directory.mkdir(parents=True)
        info(f"Creating backups in {directory}")

        files: List[str] = []
        conf = self.settings.home / ".tmux.conf"
        if conf.is_symlink():
            os.symlink(os.readlink(conf), directory / ".tmux.conf.backup")
            files.append(".tmux.conf")
        elif conf.exists():
            shutil.copy2(conf, directory / ".tmux.conf.backup")
            files.append(".tmux.conf")
        if files:
            success("Backed up existing .tmux.conf")

        tmux_dir = self.settings.home / ".tmux"
        if tmux_dir.is_dir():
            shutil.copytree(tmux_dir, directory / ".tmux.backup", symlinks=True)
            files.append(".tmux/")
            success("Backed up existing .tmux directory")

        write_json_atomic(
            directory / MANIFEST_NAME,
            {
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "type": "tmux-setup",
                "files_backed_up": files,
                "restore_command": f"dotsafe restore-tmux {directory}",
            },
        )
        success("Created backup manifest")
        return directory

    def _locate(self, directory: Optional[str]) -> Path:
        if not directory:
            found = self.list()
            if not found:
                raise TimestampNotFoundError("No tmux backup found")
            return found[0]
        path = Path(directory).expanduser()
        if not path.is_dir() and not path.is_absolute():
            path = self.settings.backup_dir / directory
        if not path.is_dir():
            raise TimestampNotFoundError(f"No tmux backup found at {directory}")
        return path

    def restore(self, directory: Optional[str] = None, kill_server: bool = True) -> Path:
        header("Restoring Tmux Configuration")
        source = self._locate(directory)
        info(f"Restoring from: {source}")

        conf = self.settings.home / ".tmux.conf"
        if conf.is_symlink():
            conf.unlink()
            success("Removed tmux.conf symlink")

        conf_backup = source / ".tmux.conf.backup"
        if conf_backup.exists() or conf_backup.is_symlink():
            if conf.exists():
                remove_path(conf)
            if conf_backup.is_symlink():
                os.symlink(os.readlink(conf_backup), conf)
            else:
                shutil.copy2(conf_backup, conf)
            success("Restored original .tmux.conf")

        dir_backup = source / ".tmux.backup"
        if dir_backup.is_dir():
            tmux_dir = self.settings.home / ".tmux"
            if tmux_dir.exists() or tmux_dir.is_symlink():
                remove_path(tmux_dir)
            shutil.copytree(dir_backup, tmux_dir, symlinks=True)
            success("Restored original .tmux directory")

        if kill_server:
            self._kill_server()
        success("Tmux configuration restored")
        return source

    def _kill_server(self) -> None:
        if not shutil.which("tmux"):
            return
        sessions = subprocess.run(["tmux", "list-sessions"], capture_output=True, check=False)
        if sessions.returncode == 0:
            info("Killing tmux server to apply changes...")
            subprocess.run(["tmux", "kill-server"], check=False)


def report_failures(failures: List[FileFailure]) -> None:
    error(f"{len(failures)} item(s) failed:")
    for failure in failures:
        print(f"  - {failure.item} ({failure.path}): {failure.reason}", file=sys.stderr)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings.from_env(
        home=args.home,
        dotfiles_dir=args.dotfiles_dir,
        backup_dir=args.backup_dir,
        verbose=args.verbose,
    )


def backup_command(args: argparse.Namespace, settings: Settings) -> int:
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    recorder = BackupRecorder(settings, store)
    report = recorder.run(recorder.candidates(args.include), dry_run=args.dry_run)
    if not report.ok:
        report_failures(report.failures)
        return 1
    return 0


def list_command(args: argparse.Namespace, settings: Settings) -> int:
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    runs = store.summary()
    tmux = [p.name for p in TmuxBackups(settings).list()]

    if args.json:
        result = {
            "backups": [{"timestamp": stamp, "items": count} for stamp, count in runs],
            "tmux": tmux,
        }
        print(json.dumps(result, indent=2))
        return 0

    if runs:
        info("Available backups:")
        for stamp, count in runs:
            print(f"  {stamp}: {count} item(s) backed up")
    else:
        info(f"No backups found in {settings.backup_dir}")
    info("Tmux-specific backups:")
    if tmux:
        for name in tmux:
            print(f"  - {name}")
    else:
        print("  None found")
    return 0


def latest_command(args: argparse.Namespace, settings: Settings) -> int:
    latest = ManifestStore(settings.manifest_path, verbose=settings.verbose).latest()
    if latest is None:
        error("No backups found")
        return 1
    print(latest)
    return 0


def restore_command(args: argparse.Namespace, settings: Settings) -> int:
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    if args.no_unlink:
        report = Restorer(settings, store).restore(args.timestamp)
    else:
        report = Uninstaller(settings, store).quick_restore(args.timestamp)
    if not report.ok:
        report_failures(report.failures)
        return 1
    success("Configuration restored")
    info("Run 'source ~/.zshrc' to reload your shell")
    return 0


def backup_tmux_command(args: argparse.Namespace, settings: Settings) -> int:
    TmuxBackups(settings).backup()
    return 0


def restore_tmux_command(args: argparse.Namespace, settings: Settings) -> int:
    TmuxBackups(settings).restore(args.directory, kill_server=not args.keep_server)
    return 0


def install_command(args: argparse.Namespace, settings: Settings) -> int:
    confirm = assume_yes if args.yes else prompt_confirm
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    installer = Installer(settings, store, confirm)

    info("This setup will back up existing configuration files and link them to the dotfiles repository")
    if not confirm("Continue?"):
        info("Installation cancelled")
        return 0
    header("Checking Existing Configuration")
    if not installer.check_existing():
        info("Installation cancelled")
        return 0

    report = installer.install(args.include, dry_run=args.dry_run)
    failures = report.backup.failures + report.failures
    if failures:
        report_failures(failures)
        return 1
    success(f"Linked {len(report.linked)} file(s), {len(report.already_linked)} already linked")
    info(f"View backups: dotsafe list --backup-dir {settings.backup_dir}")
    return 0


def uninstall_command(args: argparse.Namespace, settings: Settings) -> int:
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    if args.yes:
        # --yes skips the prompts but deletes the repo and backups only with --purge.
        uninstaller = Uninstaller(settings, store, assume_yes)
        report = uninstaller.uninstall(remove_repository=args.purge, remove_backups=args.purge)
    else:
        report = Uninstaller(settings, store, prompt_confirm).uninstall()
    if report is not None and not report.ok:
        report_failures(report.failures)
        return 1
    return 0


def cleanup_command(args: argparse.Namespace, settings: Settings) -> int:
    confirm = assume_yes if args.yes else prompt_confirm
    if args.all:
        if not confirm(f"Remove all backups in {settings.backup_dir}?"):
            info(f"Keeping backups at {settings.backup_dir}")
            return 0
        if settings.backup_dir.is_dir():
            shutil.rmtree(settings.backup_dir)
        success("Removed all backups")
        return 0

    if not args.timestamps:
        error("Name at least one timestamp, or pass --all")
        return 1
    store = ManifestStore(settings.manifest_path, verbose=settings.verbose)
    for stamp in args.timestamps:
        store.remove_run(stamp)
        run_dir = settings.backup_dir / stamp
        # Only ever delete direct children of the backup directory.
        if Path(stamp).name == stamp and run_dir.is_dir():
            shutil.rmtree(run_dir)
        success(f"Removed backup run {stamp}")
    return 0


def add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--home", help="Home directory to operate on (default $DOTSAFE_HOME or ~)")
    parser.add_argument("--dotfiles-dir", help="Dotfiles repository (default $DOTFILES_DIR or ~/dotfiles)")
    parser.add_argument("--backup-dir", help="Backup root (default $DOTSAFE_BACKUP_DIR or ~/.dotfiles-backup)")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dotsafe",
        description="dotsafe (Dotfiles Backup & Restore)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup_p = sub.add_parser("backup", help="Back up existing dotfiles into a timestamped run")
    backup_p.add_argument(
        "--include", action="append", help="include custom path (can be used multiple times)"
    )
    backup_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview what would be backed up without copying anything",
    )
    add_common_flags(backup_p)

    list_p = sub.add_parser("list", help="List backup runs and tmux backups")
    list_p.add_argument("--json", action="store_true", help="Output in JSON format")
    add_common_flags(list_p)

    latest_p = sub.add_parser("latest", help="Print the most recent backup timestamp")
    add_common_flags(latest_p)

    restore_p = sub.add_parser("restore", help="Remove dotfiles symlinks and restore a backup run")
    restore_p.add_argument(
        "timestamp",
        nargs="?",
        default="latest",
        help="Backup timestamp to restore (default: latest)",
    )
    restore_p.add_argument(
        "--no-unlink",
        action="store_true",
        help="Only restore the run's files; leave other dotfiles symlinks in place",
    )
    add_common_flags(restore_p)

    backup_tmux_p = sub.add_parser("backup-tmux", help="Back up tmux configuration into tmux-<timestamp>")
    add_common_flags(backup_tmux_p)

    restore_tmux_p = sub.add_parser("restore-tmux", help="Restore tmux configuration")
    restore_tmux_p.add_argument("directory", nargs="?", help="tmux backup directory (default: latest)")
    restore_tmux_p.add_argument(
        "--keep-server",
        action="store_true",
        help="Do not kill a running tmux server after restoring",
    )
    add_common_flags(restore_tmux_p)

    install_p = sub.add_parser("install", help="Back up existing files and link the dotfiles")
    install_p.add_argument("--yes", action="store_true", help="Assume yes for prompts")
    install_p.add_argument(
        "--include", action="append", help="also back up this path (can be used multiple times)"
    )
    install_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be backed up and linked without changing anything",
    )
    add_common_flags(install_p)

    uninstall_p = sub.add_parser("uninstall", help="Remove the dotfiles setup and roll back")
    uninstall_p.add_argument("--yes", action="store_true", help="Assume yes for prompts")
    uninstall_p.add_argument(
        "--purge",
        action="store_true",
        help="With --yes, also delete the dotfiles repository and all backups",
    )
    add_common_flags(uninstall_p)

    cleanup_p = sub.add_parser("cleanup", help="Delete backup runs")
    cleanup_p.add_argument("timestamps", nargs="*", help="Backup timestamps to delete")
    cleanup_p.add_argument("--all", action="store_true", help="Delete the whole backup directory")
    cleanup_p.add_argument("--yes", action="store_true", help="Assume yes for prompts")
    add_common_flags(cleanup_p)

    return parser


COMMANDS: Dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "backup": backup_command,
    "list": list_command,
    "latest": latest_command,
    "restore": restore_command,
    "backup-tmux": backup_tmux_command,
    "restore-tmux": restore_tmux_command,
    "install": install_command,
    "uninstall": uninstall_command,
    "cleanup": cleanup_command,
}


def log_crash(log_file: Path) -> Path:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
    with open(log_file, "a") as f:
        f.write(f"\n--- Error at {timestamp} ---\n")
        traceback.print_exc(file=f)
    return log_file


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.no_color:
        set_color(False)
    settings = settings_from_args(args)

    try:
        return COMMANDS[args.command](args, settings)
    except DotsafeError as exc:
        error(str(exc))
        return 1
    except Exception as exc:  # noqa: BLE001
        log_file = log_crash(settings.error_log_path)
        error(f"An unexpected error occurred: {exc}")
        error(f"Details saved to: {log_file}")
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
