"""
Service Commander — Backup / Restore
═══════════════════════════════════════════════════
Archives a managed container's mounts and recreates it from an archive.

Layout under BACKUP_ROOT:
  <container_id>/<backup_id>/metadata.json
  <container_id>/<backup_id>/volumes/<volume_name>/data.tar.gz
  _downloads/<container_id>-<backup_id>.tar.gz      (download bundles)

Mount sources are read straight from the host filesystem, so the process
needs access to the Docker volume directory.

A volume that fails to archive is recorded with an `error` and skipped; the
backup still completes. metadata.json is replaced atomically.
"""

import logging
import os
import random
import shutil
import string
import tarfile
import time
from datetime import timedelta
from typing import Dict, List, Optional, Set

from .config import BACKUP_MAX_AGE_DAYS, BACKUP_QUOTA_BYTES, BACKUP_ROOT, LABEL_PREFIX
from .errors import BackupNotFound, CommanderError, InvalidRequest, NotFound
from .labels import is_managed, restore_markers
from .models import (
    BackupConfig,
    BackupRecord,
    BackupStatus,
    DownloadBundle,
    RestoreResult,
    StorageUsage,
    VolumeBackup,
    utcnow,
)
from .runtime import RuntimeClient, container_name

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
ARCHIVE_FILE = "data.tar.gz"
DOWNLOADS_DIR = "_downloads"
DOWNLOAD_TTL = timedelta(hours=24)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_backup_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"backup-{int(time.time() * 1000)}-{suffix}"


def safe_component(value: str, what: str = "identifier") -> str:
    """Reject anything that could escape its directory when joined into a path."""
    if (
        not value
        or value in (".", "..")
        or value[0] in "._"
        or "/" in value
        or "\\" in value
        or "\x00" in value
    ):
        raise InvalidRequest(f"Invalid {what}: '{value}'")
    return value


def directory_size(path: str) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for f in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, f))
            except OSError:
                continue
    return total


def capture_config(attrs: Dict) -> BackupConfig:
    """Container settings needed to recreate an equivalent container."""
    config = attrs.get("Config") or {}
    host_config = attrs.get("HostConfig") or {}
    return BackupConfig(
        env=config.get("Env") or [],
        ports=config.get("ExposedPorts") or {},
        volumes=config.get("Volumes"),
        working_dir=config.get("WorkingDir") or "",
        cmd=config.get("Cmd"),
        entrypoint=config.get("Entrypoint"),
        labels=config.get("Labels") or {},
        port_bindings=host_config.get("PortBindings") or {},
        binds=host_config.get("Binds") or [],
        memory=host_config.get("Memory") or 0,
        cpu_quota=host_config.get("CpuQuota") or 0,
        cpu_period=host_config.get("CpuPeriod") or 0,
        restart_policy=(host_config.get("RestartPolicy") or {}).get("Name") or None,
    )


class BackupEngine:

    def __init__(
        self,
        runtime: RuntimeClient,
        root: str = BACKUP_ROOT,
        quota_bytes: int = BACKUP_QUOTA_BYTES,
        max_age_days: int = BACKUP_MAX_AGE_DAYS,
        label_prefix: str = LABEL_PREFIX,
    ):
        self.runtime = runtime
        self.root = root
        self.quota_bytes = quota_bytes
        self.max_age_days = max_age_days
        self.label_prefix = label_prefix

    # ── Paths & Metadata ──

    def _container_dir(self, container_id: str) -> str:
        return os.path.join(self.root, safe_component(container_id, "container id"))

    def _backup_dir(self, container_id: str, backup_id: str) -> str:
        return os.path.join(self._container_dir(container_id), safe_component(backup_id, "backup id"))

    def _write_metadata(self, backup_dir: str, record: BackupRecord) -> None:
        path = os.path.join(backup_dir, METADATA_FILE)
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json(indent=2))
        os.replace(tmp, path)

    @staticmethod
    def _read_metadata(backup_dir: str) -> BackupRecord:
        with open(os.path.join(backup_dir, METADATA_FILE), encoding="utf-8") as f:
            return BackupRecord.model_validate_json(f.read())

    # ── Create ──

    def _archive_mount(self, mount: Dict, backup_dir: str, taken: Set[str]) -> VolumeBackup:
        source = mount.get("Source") or ""
        base = mount.get("Name") or os.path.basename(source.rstrip("/"))
        # Bind sources may share a basename (/a/data, /b/data)
        name, suffix = base, 1
        while name in taken:
            name = f"{base}-{suffix}"
            suffix += 1
        taken.add(name)
        entry = VolumeBackup(
            name=name,
            source=source,
            destination=mount.get("Destination", ""),
            type=mount.get("Type", "volume"),
            mode=mount.get("Mode", ""),
        )
        archive = None
        try:
            safe_component(name, "volume name")
            volume_dir = os.path.join(backup_dir, "volumes", name)
            os.makedirs(volume_dir, exist_ok=True)
            archive = os.path.join(volume_dir, ARCHIVE_FILE)
            if not os.path.exists(source):
                raise FileNotFoundError(f"Mount source '{source}' does not exist")
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(source, arcname=os.path.basename(source.rstrip("/")))
            entry.backup_path = archive
            entry.size_bytes = os.path.getsize(archive)
            logger.info(f"[Backup] Archived {name} ({entry.size_bytes} bytes)")
        except (OSError, tarfile.TarError, InvalidRequest) as e:
            logger.warning(f"[Backup] Volume {name} failed: {e}")
            entry.error = str(e)
            if archive and os.path.exists(archive):
                os.remove(archive)
        return entry

    def create_backup(self, container_id: str, name: Optional[str] = None,
                      description: str = "") -> BackupRecord:
        container_dir = self._container_dir(container_id)
        attrs = self.runtime.inspect_container(container_id)
        if not is_managed((attrs.get("Config") or {}).get("Labels"), self.label_prefix):
            raise NotFound("service", container_id)

        backup_id = generate_backup_id()
        backup_dir = os.path.join(container_dir, backup_id)
        os.makedirs(backup_dir, exist_ok=True)

        cname = container_name(attrs)
        record = BackupRecord(
            id=backup_id,
            name=name or f"{cname}-{utcnow().strftime('%Y%m%d-%H%M%S')}",
            description=description,
            container_id=container_id,
            container_name=cname,
            image=(attrs.get("Config") or {}).get("Image", ""),
            config=capture_config(attrs),
        )
        self._write_metadata(backup_dir, record)
        logger.info(f"[Backup] Creating {backup_id} for {cname}")

        # Sequential: one volume at a time
        taken: Set[str] = set()
        for mount in attrs.get("Mounts") or []:
            if mount.get("Type") in ("volume", "bind"):
                record.volumes.append(self._archive_mount(mount, backup_dir, taken))

        record.size_bytes = directory_size(os.path.join(backup_dir, "volumes"))
        record.status = BackupStatus.COMPLETED
        self._write_metadata(backup_dir, record)

        if record.partial:
            logger.warning(f"[Backup] {backup_id} completed with {len(record.failed_volumes)} failed volume(s)")
        else:
            logger.info(f"[Backup] {backup_id} completed ({record.size_bytes} bytes)")
        return record

    # ── Read ──

    def get_backups(self, container_id: str) -> List[BackupRecord]:
        """All readable backups of a container, newest first."""
        container_dir = self._container_dir(container_id)
        if not os.path.isdir(container_dir):
            return []

        records = []
        for entry in os.listdir(container_dir):
            backup_dir = os.path.join(container_dir, entry)
            if not os.path.isfile(os.path.join(backup_dir, METADATA_FILE)):
                continue
            try:
                records.append(self._read_metadata(backup_dir))
            except (OSError, ValueError) as e:
                logger.warning(f"[Backup] Skipping unreadable backup {entry}: {e}")
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def get_backup(self, container_id: str, backup_id: str) -> BackupRecord:
        backup_dir = self._backup_dir(container_id, backup_id)
        if not os.path.isfile(os.path.join(backup_dir, METADATA_FILE)):
            raise BackupNotFound(container_id, backup_id)
        try:
            return self._read_metadata(backup_dir)
        except (OSError, ValueError) as e:
            raise CommanderError(f"Backup '{backup_id}' metadata is unreadable: {e}") from e

    # ── Restore ──

    def _extract(self, volume: VolumeBackup) -> None:
        target = os.path.dirname(volume.source.rstrip("/"))
        os.makedirs(target, exist_ok=True)
        with tarfile.open(volume.backup_path, "r:gz") as tar:
            tar.extractall(target, filter="tar")

    def restore_backup(self, container_id: str, backup_id: str) -> RestoreResult:
        """
        Replace the container with one recreated from the backup.

        Order: stop (best effort) → remove → extract volumes → create → start.
        Volumes that failed at backup time are skipped.
        """
        record = self.get_backup(container_id, backup_id)
        if record.status != BackupStatus.COMPLETED:
            raise InvalidRequest(f"Backup '{backup_id}' is not complete")

        try:
            self.runtime.stop_container(container_id)
        except CommanderError as e:
            logger.info(f"[Backup] Stop before restore skipped: {e}")
        try:
            self.runtime.remove_container(container_id, force=True)
        except NotFound:
            logger.info(f"[Backup] {container_id[:12]} already removed")
        except CommanderError as e:
            logger.warning(f"[Backup] Remove before restore failed, continuing: {e}")

        restored = []
        for volume in record.volumes:
            if volume.error or not volume.backup_path:
                continue
            try:
                self._extract(volume)
            except (OSError, tarfile.TarError) as e:
                raise CommanderError(f"Failed to restore volume '{volume.name}': {e}") from e
            restored.append(volume.name)
            logger.info(f"[Backup] Restored volume {volume.name}")

        config = record.config
        labels = dict(config.labels)
        labels.update(restore_markers(backup_id, self.label_prefix))
        port_bindings = config.port_bindings or {port: None for port in config.ports}

        new_id = self.runtime.create_container(
            record.image,
            name=record.container_name,
            env=config.env,
            port_bindings=port_bindings,
            binds=config.binds,
            labels=labels,
            mem_limit=config.memory or None,
            cpu_quota=config.cpu_quota or None,
            cpu_period=config.cpu_period or None,
            restart_policy=config.restart_policy,
            working_dir=config.working_dir or None,
            cmd=config.cmd,
            entrypoint=config.entrypoint,
        )
        self.runtime.start_container(new_id)
        logger.info(f"[Backup] Restored {record.container_name} from {backup_id} as {new_id[:12]}")

        return RestoreResult(container_id=new_id, backup_id=backup_id, restored_volumes=restored)

    # ── Delete / Download ──

    def delete_backup(self, container_id: str, backup_id: str) -> bool:
        backup_dir = self._backup_dir(container_id, backup_id)
        if not os.path.isdir(backup_dir):
            raise BackupNotFound(container_id, backup_id)
        shutil.rmtree(backup_dir)
        logger.info(f"[Backup] Deleted {backup_id}")
        return True

    def download_backup(self, container_id: str, backup_id: str) -> DownloadBundle:
        """Bundle the whole backup directory into one archive for download."""
        backup_dir = self._backup_dir(container_id, backup_id)
        if not os.path.isdir(backup_dir):
            raise BackupNotFound(container_id, backup_id)

        downloads = os.path.join(self.root, DOWNLOADS_DIR)
        os.makedirs(downloads, exist_ok=True)
        filename = f"{container_id}-{backup_id}.tar.gz"
        output = os.path.join(downloads, filename)
        with tarfile.open(output, "w:gz") as tar:
            tar.add(backup_dir, arcname=backup_id)
        return DownloadBundle(file_path=output, filename=filename)

    # ── Housekeeping ──

    def get_storage_usage(self, container_id: str) -> StorageUsage:
        used = directory_size(self._container_dir(container_id))
        percentage = (used / self.quota_bytes) * 100 if self.quota_bytes > 0 else 0.0
        return StorageUsage(used=used, total=self.quota_bytes, percentage=percentage)

    def cleanup(self, max_age_days: Optional[int] = None) -> List[str]:
        """Delete backups older than max_age_days. One bad backup never stops the sweep."""
        days = self.max_age_days if max_age_days is None else max_age_days
        cutoff = utcnow() - timedelta(days=days)
        removed: List[str] = []
        if not os.path.isdir(self.root):
            return removed

        for container_entry in os.listdir(self.root):
            container_dir = os.path.join(self.root, container_entry)
            if container_entry == DOWNLOADS_DIR or not os.path.isdir(container_dir):
                continue
            for backup_entry in os.listdir(container_dir):
                backup_dir = os.path.join(container_dir, backup_entry)
                try:
                    record = self._read_metadata(backup_dir)
                    if record.created_at < cutoff:
                        shutil.rmtree(backup_dir)
                        removed.append(record.id)
                        logger.info(f"[Backup] Cleaned up old backup {record.id}")
                except (OSError, ValueError) as e:
                    logger.warning(f"[Backup] Cleanup skipped {backup_entry}: {e}")

        self._sweep_downloads()
        return removed

    def _sweep_downloads(self) -> None:
        downloads = os.path.join(self.root, DOWNLOADS_DIR)
        if not os.path.isdir(downloads):
            return
        cutoff = time.time() - DOWNLOAD_TTL.total_seconds()
        for entry in os.listdir(downloads):
            path = os.path.join(downloads, entry)
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except OSError as e:
                logger.warning(f"[Backup] Could not remove bundle {entry}: {e}")
