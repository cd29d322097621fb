"""
릴리스 번들 다운로드 모듈
고정 간격 재시도 및 명시적 insecure 재시도 (TS_INSECURE=1) 지원
"""

import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from .arch import TargetArchitecture
from .config import DownloadConfig
from .errors import DownloadFailed
from .logger import get_logger

CHUNK_SIZE = 64 * 1024


@dataclass
class ReleaseArchive:
    """다운로드된 릴리스 아카이브"""
    path: str
    size: int
    url: str
    top_dir: Optional[str] = None


def build_download_url(arch: TargetArchitecture, base_url: str = "https://pkgs.tailscale.com",
                       track: str = "stable") -> str:
    """아키텍처별 다운로드 URL 생성"""
    return f"{base_url.rstrip('/')}/{track}/tailscale_latest_{arch.value}.tgz"


class ArtifactFetcher:
    """릴리스 번들 다운로드 클래스"""

    def __init__(self, config: DownloadConfig, download_path: str,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.download_path = download_path
        self.session = session or requests.Session()
        self.sleep = sleep
        self.logger = get_logger()
        self.attempts = 0

    def url_for(self, arch: TargetArchitecture) -> str:
        return build_download_url(arch, self.config.base_url, self.config.track)

    def fetch(self, arch: TargetArchitecture) -> ReleaseArchive:
        """최신 번들 다운로드

        최대 fetch_retries 회 시도하며, 실패 시 allow_insecure_fallback 이
        설정된 경우에만 인증서 검증 없이 한 번 더 시도한다.

        Raises:
            DownloadFailed: 모든 시도 실패 또는 빈 파일
        """
        url = self.url_for(arch)
        self.logger.info(f"Downloading: {url}")
        self.logger.info(f"Saving to:   {self.download_path}")

        max_attempts = max(1, int(self.config.fetch_retries))
        last_error = None

        for attempt in range(1, max_attempts + 1):
            self.attempts = attempt
            try:
                self._download(url, verify=True)
                last_error = None
                break
            except (requests.RequestException, OSError) as e:
                last_error = e
                self.logger.warning(f"Download attempt {attempt}/{max_attempts} failed: {e}")
                if attempt < max_attempts:
                    self.logger.warning(f"Retrying in {self.config.retry_delay}s ({attempt + 1}/{max_attempts})...")
                    self.sleep(self.config.retry_delay)

        if last_error is not None:
            if not self.config.allow_insecure_fallback:
                raise DownloadFailed(
                    f"Download failed after {max_attempts} attempts ({last_error}). "
                    "Set TS_INSECURE=1 to allow an insecure retry, or check clock/network.",
                    step="download"
                )

            self.logger.warning("Retrying once without certificate verification (INSECURE)...")
            self.attempts += 1
            try:
                self._download(url, verify=False)
            except (requests.RequestException, OSError) as e:
                raise DownloadFailed(
                    f"Download failed even without certificate verification: {e}",
                    step="download"
                ) from e

        return self._verify_download(url)

    def _download(self, url: str, verify: bool):
        """전체 파일을 새로 다운로드 (이어받기 없음)"""
        os.makedirs(os.path.dirname(self.download_path) or ".", exist_ok=True)
        partial_path = self.download_path + ".part"

        try:
            with self.session.get(url, stream=True, timeout=self.config.timeout, verify=verify) as resp:
                resp.raise_for_status()
                with open(partial_path, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                    f.flush()
                    os.fsync(f.fileno())
            os.replace(partial_path, self.download_path)
        finally:
            if os.path.exists(partial_path):
                os.unlink(partial_path)

    def _verify_download(self, url: str) -> ReleaseArchive:
        if not os.path.isfile(self.download_path):
            raise DownloadFailed(f"Downloaded file is missing: {self.download_path}", step="download")

        size = os.path.getsize(self.download_path)
        if size == 0:
            raise DownloadFailed(f"Downloaded file is empty: {self.download_path}", step="download")

        self.logger.info(f"Downloaded {size} bytes")
        return ReleaseArchive(path=self.download_path, size=size, url=url)

    def probe_headers(self, url: str) -> List[str]:
        """HEAD 요청의 응답 헤더 (진단용, 예외를 발생시키지 않음)"""
        try:
            resp = self.session.head(
                url,
                allow_redirects=True,
                timeout=self.config.timeout,
                verify=not self.config.allow_insecure_fallback
            )
        except requests.RequestException as e:
            return [f"HEAD request failed: {e}"]

        lines = [f"HTTP {resp.status_code} {resp.reason or ''}".rstrip()]
        lines.extend(f"{key}: {value}" for key, value in resp.headers.items())
        return lines
