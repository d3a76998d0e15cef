"""Snapshots of the nginx configuration tree and file-level safety copies."""
from __future__ import annotations

import json
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import ResourceError

MARKER_NAME = ".backup_marker"
MANIFEST_NAME = "manifest.json"
PRIMARY_CONFIG_NAME = "nginx.conf"
PRIMARY_CONFIG_COPY = "nginx.conf.original"
TREE_DIR = "tree"


class BackupError(ResourceError):
    """Raised when backup operations fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _safe_label(label: str) -> str:
    cleaned = "".join(
        char if char.isalnum() or char in {"-", "_", "."} else "-" for char in label.strip()
    )
    return cleaned or "backup"


@dataclass(frozen=True, slots=True)
class BackupRef:
    """Immutable reference to a snapshot directory."""

    path: Path
    label: str
    timestamp: str
    source: Path
    absent: bool = False
    captured: tuple[str, ...] = ()

    def has(self, relative: str | Path) -> bool:
        """Return ``True`` when *relative* (to the nginx root) was captured."""
        return str(Path(relative)) in self.captured

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "label": self.label,
            "timestamp": self.timestamp,
            "source": str(self.source),
            "absent": self.absent,
            "captured": list(self.captured),
        }


@dataclass(slots=True)
class RestoreReport:
    """Outcome of restoring a snapshot; failures do not abort the restore."""

    restored: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return ``True`` when every sub-resource was restored."""
        return not self.failed


@dataclass(slots=True)
class BackupStore:
    """Create and restore timestamped snapshots of the nginx root."""

    root: Path
    nginx_root: Path

    def __post_init__(self) -> None:
        """Normalise paths after initialisation."""
        self.root = self.root.expanduser()
        self.nginx_root = self.nginx_root.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def generate_identifier(self, label: str) -> str:
        """Return a unique, timestamped directory name for *label*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
        return f"{_safe_label(label)}_{timestamp}_{secrets.token_hex(3)}"

    def snapshot(self, label: str) -> BackupRef:
        """Capture the nginx root into a new backup directory.

        A missing nginx root is not an error: the snapshot records a marker so
        first-time installs still get a usable reference.
        """
        self.ensure_root()
        path = self.root / self.generate_identifier(label)
        try:
            path.mkdir(parents=False, exist_ok=False)
        except OSError as exc:
            raise BackupError(f"Failed to create backup directory {path}: {exc}") from exc

        timestamp = _now_iso()
        if not self.nginx_root.is_dir():
            try:
                (path / MARKER_NAME).touch()
            except OSError as exc:
                raise BackupError(f"Failed to write backup marker in {path}: {exc}") from exc
            ref = BackupRef(
                path=path,
                label=label,
                timestamp=timestamp,
                source=self.nginx_root,
                absent=True,
            )
            self._write_manifest(ref)
            return ref

        primary = self.nginx_root / PRIMARY_CONFIG_NAME
        if primary.is_file():
            try:
                shutil.copy2(primary, path / PRIMARY_CONFIG_COPY)
            except OSError as exc:
                raise BackupError(f"Could not back up {primary}: {exc}") from exc

        tree = path / TREE_DIR
        try:
            shutil.copytree(self.nginx_root, tree, symlinks=True)
        except shutil.Error as exc:
            # Partial copies are still useful; the unreadable files are listed.
            failures = "; ".join(str(item[0]) for item in exc.args[0][:5])
            raise BackupError(f"Some files could not be backed up: {failures}") from exc
        except OSError as exc:
            raise BackupError(f"Failed to copy {self.nginx_root}: {exc}") from exc

        captured = tuple(
            sorted(
                str(item.relative_to(tree))
                for item in tree.rglob("*")
                if item.is_symlink() or item.is_file()
            )
        )
        ref = BackupRef(
            path=path,
            label=label,
            timestamp=timestamp,
            source=self.nginx_root,
            captured=captured,
        )
        self._write_manifest(ref)
        return ref

    def load(self, path: Path) -> BackupRef:
        """Return the :class:`BackupRef` recorded in the manifest under *path*."""
        manifest = path / MANIFEST_NAME
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BackupError(f"Backup manifest missing: {manifest}") from exc
        except json.JSONDecodeError as exc:
            raise BackupError(f"Backup manifest corrupted ({manifest}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupError(f"Backup manifest must be a JSON object ({manifest}).")
        captured_raw = data.get("captured", [])
        captured: tuple[str, ...] = ()
        if isinstance(captured_raw, list):
            captured = tuple(str(item) for item in captured_raw)
        return BackupRef(
            path=path,
            label=str(data.get("label", "")),
            timestamp=str(data.get("timestamp", "")),
            source=Path(str(data.get("source", self.nginx_root))),
            absent=bool(data.get("absent", False)),
            captured=captured,
        )

    def list_backups(self) -> list[BackupRef]:
        """Return all readable snapshots, oldest first."""
        if not self.root.is_dir():
            return []
        refs: list[BackupRef] = []
        for candidate in sorted(self.root.iterdir()):
            if not (candidate / MANIFEST_NAME).is_file():
                continue
            try:
                refs.append(self.load(candidate))
            except BackupError:
                continue
        return sorted(refs, key=lambda ref: (ref.timestamp, ref.path.name))

    def restore(self, ref: BackupRef) -> RestoreReport:
        """Restore every captured path from *ref* into the nginx root."""
        if not ref.path.is_dir():
            raise BackupError(f"Backup directory not found: {ref.path}")
        report = RestoreReport()
        if ref.absent:
            return report
        primary_copy = ref.path / PRIMARY_CONFIG_COPY
        if primary_copy.is_file():
            self._restore_one(primary_copy, self.nginx_root / PRIMARY_CONFIG_NAME, report)
        for relative in ref.captured:
            if relative == PRIMARY_CONFIG_NAME and primary_copy.is_file():
                continue
            self._restore_one(ref.path / TREE_DIR / relative, self.nginx_root / relative, report)
        return report

    def restore_primary(self, ref: BackupRef) -> RestoreReport:
        """Restore only ``nginx.conf`` from *ref* (when it was captured)."""
        report = RestoreReport()
        primary_copy = ref.path / PRIMARY_CONFIG_COPY
        if primary_copy.is_file():
            self._restore_one(primary_copy, self.nginx_root / PRIMARY_CONFIG_NAME, report)
        return report

    def restore_path(self, ref: BackupRef, relative: str | Path) -> RestoreReport:
        """Restore a single captured file or symlink from *ref*."""
        report = RestoreReport()
        key = str(Path(relative))
        if not ref.has(key):
            report.failed[key] = "not captured in backup"
            return report
        self._restore_one(ref.path / TREE_DIR / key, self.nginx_root / key, report)
        return report

    def backup_file(self, path: Path, suffix: str) -> Path:
        """Copy *path* to ``<path><suffix>`` next to it and return the copy."""
        destination = path.with_name(f"{path.name}{suffix}")
        try:
            shutil.copy2(path, destination)
        except OSError as exc:
            raise BackupError(f"Failed to back up {path}: {exc}") from exc
        return destination

    # ------------------------------------------------------------------
    def _restore_one(self, source: Path, destination: Path, report: RestoreReport) -> None:
        label = str(destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if source.is_symlink():
                link_target = os.readlink(source)
                if destination.is_symlink() or destination.exists():
                    destination.unlink()
                destination.symlink_to(link_target)
            else:
                copy_into(source, destination)
        except OSError as exc:
            report.failed[label] = str(exc)
            return
        report.restored.append(label)

    def _write_manifest(self, ref: BackupRef) -> None:
        manifest = ref.path / MANIFEST_NAME
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(ref.path), prefix=f".{MANIFEST_NAME}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(ref.to_dict(), handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, manifest)
        except OSError as exc:
            raise BackupError(f"Failed to write backup manifest: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def copy_into(source: Path, destination: Path) -> None:
    """Copy *source* over *destination* atomically (files) or recursively (dirs)."""
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    os.close(tmp_fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copy2(source, tmp_path)
        if destination.is_symlink():
            destination.unlink()
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "BackupError",
    "BackupRef",
    "BackupStore",
    "RestoreReport",
    "copy_into",
]
