"""
바이너리 설치 모듈
데몬 중지, TUN 디바이스 보장, 기존 바이너리 백업 및 원자적 교체

state 디렉토리는 절대 건드리지 않는다 (상위 install_dir 존재만 보장).
"""

import os
import re
import shutil
import stat
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .archive import ExtractedBundle
from .config import PathsConfig
from .errors import (
    IgnorableError, InstallFailed,
    BACKUP_FAILED, PROCESS_KILL_FAILED, TUN_DEVICE_FAILED,
)
from .logger import get_logger
from .service import ServiceController

TUN_MAJOR = 10
TUN_MINOR = 200


@dataclass
class InstalledBinarySet:
    """설치된 바이너리와 이번 실행에서 만든 백업"""
    cli_path: str
    daemon_path: str
    backups: Dict[str, Optional[str]] = field(default_factory=dict)


def _backup_sort_key(name: str) -> Tuple[int, ...]:
    suffix = name.split(".bak.", 1)[1]
    return tuple(int(part) for part in suffix.split(".") if part.isdigit())


def list_backups(binary_path: str) -> List[str]:
    """binary_path 의 백업 목록 (오래된 순)"""
    directory = os.path.dirname(binary_path) or "."
    base = os.path.basename(binary_path)
    pattern = re.compile(re.escape(base) + r"\.bak\.\d+(\.\d+)?$")
    if not os.path.isdir(directory):
        return []
    names = [name for name in os.listdir(directory) if pattern.match(name)]
    return [os.path.join(directory, name) for name in sorted(names, key=_backup_sort_key)]


class BinaryInstaller:
    """tailscale / tailscaled 설치 클래스"""

    def __init__(self, paths: PathsConfig, service_controller: ServiceController,
                 backup_retention: int = 0, kill_command: str = "killall",
                 command_timeout: int = 30, clock: Callable[[], float] = time.time):
        self.paths = paths
        self.service_controller = service_controller
        self.backup_retention = backup_retention
        self.kill_command = kill_command
        self.command_timeout = command_timeout
        self.clock = clock
        self.logger = get_logger()
        self.ignored: List[IgnorableError] = []

    def install(self, bundle: ExtractedBundle) -> InstalledBinarySet:
        """설치 순서: 서비스 중지 → 데몬 종료 → TUN → 백업 → 교체

        Raises:
            InstallFailed: 바이너리 교체 실패 (유일한 치명적 단계)
        """
        self.ignored = []

        self.logger.info("Stopping existing tailscale (if running)...")
        self._note(self.service_controller.stop())
        self._note(self.kill_daemon())
        self._note(self.ensure_tun_device())

        try:
            os.makedirs(self.paths.install_dir, exist_ok=True)
        except OSError as e:
            raise InstallFailed(f"Cannot create {self.paths.install_dir}: {e}", step="install") from e

        targets = (
            ("tailscale", self.paths.cli_binary),
            ("tailscaled", self.paths.daemon_binary),
        )

        self.logger.info("Installing new binaries...")
        backups = {}
        for name, dest in targets:
            backup_path, error = self.backup(dest)
            backups[name] = backup_path
            self._note(error)

        for name, dest in targets:
            self.install_file(bundle.binary_path(name), dest)

        if self.backup_retention > 0:
            for _, dest in targets:
                self.prune_backups(dest)

        return InstalledBinarySet(
            cli_path=self.paths.cli_binary,
            daemon_path=self.paths.daemon_binary,
            backups=backups
        )

    def _note(self, error: Optional[IgnorableError]):
        if error is not None:
            self.ignored.append(error)

    def kill_daemon(self) -> Optional[IgnorableError]:
        """남아 있는 tailscaled 프로세스 종료"""
        try:
            result = subprocess.run(
                [self.kill_command, "tailscaled"],
                capture_output=True,
                text=True,
                timeout=self.command_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            error = IgnorableError(step="kill daemon", kind=PROCESS_KILL_FAILED, cause=str(e))
            self.logger.warning(f"Ignoring: {error}")
            return error

        if result.returncode == 0:
            self.logger.info("Terminated lingering tailscaled")
        else:
            self.logger.debug("No tailscaled process to terminate")
        return None

    def ensure_tun_device(self) -> Optional[IgnorableError]:
        """TUN 캐릭터 디바이스(10, 200)가 없으면 생성"""
        path = self.paths.tun_device
        if os.path.exists(path):
            return None

        self.logger.info(f"Creating {path}")
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            os.mknod(path, stat.S_IFCHR | 0o600, os.makedev(TUN_MAJOR, TUN_MINOR))
            os.chmod(path, 0o600)
        except OSError as e:
            error = IgnorableError(step="tun device", kind=TUN_DEVICE_FAILED, cause=str(e))
            self.logger.warning(f"Ignoring: {error} (tailscaled may fail to start)")
            return error
        return None

    def backup(self, binary_path: str) -> Tuple[Optional[str], Optional[IgnorableError]]:
        """기존 바이너리를 타임스탬프 접미사로 복사 (cp -a)"""
        if not os.path.exists(binary_path):
            self.logger.debug(f"Nothing to back up at {binary_path}")
            return None, None

        base = f"{binary_path}.bak.{int(self.clock())}"
        backup_path = base
        counter = 1
        while os.path.exists(backup_path):
            backup_path = f"{base}.{counter}"
            counter += 1

        try:
            shutil.copy2(binary_path, backup_path)
        except OSError as e:
            error = IgnorableError(step=f"backup {os.path.basename(binary_path)}", kind=BACKUP_FAILED,
                                   cause=str(e))
            self.logger.warning(f"Ignoring: {error}")
            return None, error

        self.logger.info(f"Backed up {binary_path} -> {backup_path}")
        return backup_path, None

    def install_file(self, source: str, dest: str):
        """임시 파일에 복사 후 0755 설정, os.replace 로 교체"""
        dest_dir = os.path.dirname(dest) or "."
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(dest)}.", dir=dest_dir)
            with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
                out.flush()
                os.fsync(out.fileno())
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, dest)
            tmp_path = None
        except OSError as e:
            raise InstallFailed(f"Failed to install {source} -> {dest}: {e}", step="install") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        self.logger.info(f"Installed {dest}")

    def prune_backups(self, binary_path: str) -> List[str]:
        """backup_retention 개수를 초과한 오래된 백업 삭제"""
        backups = list_backups(binary_path)
        excess = backups[:-self.backup_retention] if len(backups) > self.backup_retention else []
        removed = []
        for path in excess:
            try:
                os.unlink(path)
                removed.append(path)
                self.logger.info(f"Pruned old backup {path}")
            except OSError as e:
                self.logger.warning(f"Could not prune {path}: {e}")
        return removed
