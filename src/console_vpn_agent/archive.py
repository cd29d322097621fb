"""
아카이브 검증 및 압축 해제 모듈
gzip 매직 바이트 확인, 최상위 디렉토리 탐지, busybox tar 대응 폴백
"""

import fnmatch
import os
import shutil
import stat
import subprocess
import tarfile
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .arch import TargetArchitecture
from .errors import ArchiveInvalid, ExtractionFailed, RequiredBinaryMissing
from .fetch import ReleaseArchive
from .logger import get_logger

GZIP_MAGIC = b"\x1f\x8b"
REQUIRED_BINARIES = ("tailscale", "tailscaled")


@dataclass
class ExtractedBundle:
    """압축 해제된 번들 디렉토리"""
    source_dir: str
    top_dir: str
    members: Tuple[str, ...] = field(default=REQUIRED_BINARIES)

    def binary_path(self, name: str) -> str:
        return os.path.join(self.source_dir, name)


def has_gzip_magic(path: str) -> bool:
    """파일의 첫 2바이트가 gzip 매직(1f 8b)인지 확인"""
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


class ArchiveValidator:
    """다운로드된 파일이 gzip 아카이브인지 검증"""

    def __init__(self, probe_headers: Callable[[str], List[str]]):
        self.probe_headers = probe_headers
        self.logger = get_logger()

    def validate(self, archive: ReleaseArchive) -> ReleaseArchive:
        try:
            valid = has_gzip_magic(archive.path)
        except OSError as e:
            raise ArchiveInvalid(f"Cannot read downloaded file {archive.path}: {e}", step="validate") from e

        if valid:
            self.logger.debug(f"gzip magic OK: {archive.path}")
            return archive

        # HTML 오류 페이지와 손상된 다운로드를 구분하기 위한 헤더 출력
        self.logger.warning(f"Downloaded file does not look like a gzip archive: {archive.path}")
        self.logger.warning("HEAD response:")
        for line in self.probe_headers(archive.url):
            self.logger.warning(f"[HDR] {line}")

        raise ArchiveInvalid(
            "Bad download (not a .tgz). Check TLS/certs/clock or use TS_INSECURE=1.",
            step="validate"
        )


def _check_members(tar: tarfile.TarFile, target_dir: str):
    base = os.path.realpath(target_dir)
    for member in tar.getmembers():
        member_path = os.path.realpath(os.path.join(base, member.name))
        if member_path != base and not member_path.startswith(base + os.sep):
            raise ExtractionFailed(f"Unsafe path in archive: {member.name}", step="extract")


class ArchiveExtractor:
    """아카이브 압축 해제 클래스"""

    def __init__(self, staging_dir: str, arch: TargetArchitecture,
                 tar_command: str = "tar", timeout: int = 300):
        self.staging_dir = staging_dir
        self.arch = arch
        self.tar_command = tar_command
        self.timeout = timeout
        self.logger = get_logger()

    @property
    def discovery_pattern(self) -> str:
        return f"tailscale_*_{self.arch.value}"

    def list_top_dir(self, archive_path: str) -> Optional[str]:
        """첫 번째 엔트리에서 최상위 디렉토리 이름 추출 (실패 시 None)"""
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                first = tar.next()
        except (tarfile.TarError, OSError, EOFError) as e:
            self.logger.debug(f"tar listing failed: {e}")
            return None

        if first is None:
            return None

        name = first.name
        while name.startswith("./"):
            name = name[2:]
        top_dir = name.split("/", 1)[0]
        return top_dir or None

    def extract(self, archive: ReleaseArchive) -> ExtractedBundle:
        """아카이브를 풀고 필수 바이너리를 검증

        Raises:
            ExtractionFailed: 압축 해제 또는 디렉토리 탐지 실패
            RequiredBinaryMissing: tailscale / tailscaled 누락
        """
        top_dir = self.list_top_dir(archive.path)

        if top_dir in (".", ".."):
            raise ExtractionFailed(f"Unsafe top directory in archive: {top_dir}", step="extract")

        if top_dir:
            self.logger.info(f"Archive folder: {top_dir}")
            source_dir = os.path.join(self.staging_dir, top_dir)
            shutil.rmtree(source_dir, ignore_errors=True)
            self._extract_into(archive.path, self.staging_dir)
            if not os.path.isdir(source_dir):
                raise ExtractionFailed(
                    f"Archive folder {top_dir} not found after extraction", step="extract"
                )
        else:
            self.logger.warning("tar list failed; extracting to discover top directory...")
            extract_dir = os.path.join(self.staging_dir, "extract")
            shutil.rmtree(extract_dir, ignore_errors=True)
            os.makedirs(extract_dir, exist_ok=True)
            self._extract_into(archive.path, extract_dir)

            top_dir = self._discover_top_dir(extract_dir)
            if not top_dir:
                raise ExtractionFailed("Could not locate extracted tailscale directory.", step="extract")
            source_dir = os.path.join(extract_dir, top_dir)

        archive.top_dir = top_dir
        bundle = ExtractedBundle(source_dir=source_dir, top_dir=top_dir)
        self.verify_bundle(bundle)
        return bundle

    def _extract_into(self, archive_path: str, target_dir: str):
        """tarfile 로 풀고, 실패하면 호스트 tar (-xf, -xzf) 로 재시도"""
        os.makedirs(target_dir, exist_ok=True)
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                _check_members(tar, target_dir)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=target_dir, filter="data")
                else:
                    tar.extractall(path=target_dir)
            return
        except (tarfile.TarError, OSError, EOFError) as e:
            self.logger.warning(f"Python tarfile extraction failed ({e}); falling back to {self.tar_command}")

        errors = []
        for flags in ("-xf", "-xzf"):
            cmd = [self.tar_command, flags, archive_path, "-C", target_dir]
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                errors.append(f"{' '.join(cmd)}: {e}")
                continue
            if result.returncode == 0:
                self.logger.debug(f"Extracted with: {' '.join(cmd)}")
                return
            errors.append(f"{' '.join(cmd)}: {result.stderr.strip()}")

        raise ExtractionFailed(
            f"Extraction failed (tar could not read {archive_path}): {'; '.join(errors)}",
            step="extract"
        )

    def _discover_top_dir(self, extract_dir: str) -> Optional[str]:
        candidates = sorted(
            entry for entry in os.listdir(extract_dir)
            if os.path.isdir(os.path.join(extract_dir, entry))
            and fnmatch.fnmatch(entry, self.discovery_pattern)
        )
        return candidates[0] if candidates else None

    def verify_bundle(self, bundle: ExtractedBundle):
        """필수 바이너리가 존재하고 실행 가능한지 확인"""
        for name in bundle.members:
            path = bundle.binary_path(name)
            if not os.path.isfile(path):
                raise RequiredBinaryMissing(f"{name} binary not found in archive", step="extract", filename=name)
            if not os.stat(path).st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                raise RequiredBinaryMissing(f"{name} binary in archive is not executable", step="extract",
                                            filename=name)
        self.logger.debug(f"Bundle verified: {bundle.source_dir}")
