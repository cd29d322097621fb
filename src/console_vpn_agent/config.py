"""
설정 관리 모듈
YAML/JSON 기반 설정 파일 관리, 환경 변수 오버레이 및 기본값 제공
"""

import os
import yaml
import json
from typing import Dict, Any, Optional, Mapping
from dataclasses import dataclass, asdict

from .logger import DEFAULT_LOG_DIR


@dataclass
class PathsConfig:
    """설치 경로 설정"""
    install_dir: str = "/userdata/tailscale"
    service_dir: str = "/userdata/system/services"
    staging_dir: str = "/userdata/temp-ts"
    tun_device: str = "/dev/net/tun"

    @property
    def cli_binary(self) -> str:
        return os.path.join(self.install_dir, "tailscale")

    @property
    def daemon_binary(self) -> str:
        return os.path.join(self.install_dir, "tailscaled")

    @property
    def state_dir(self) -> str:
        return os.path.join(self.install_dir, "state")

    @property
    def daemon_log(self) -> str:
        return os.path.join(self.install_dir, "tailscaled.log")

    @property
    def download_path(self) -> str:
        return os.path.join(self.staging_dir, "tailscale_latest.tgz")


@dataclass
class DownloadConfig:
    """다운로드 설정"""
    base_url: str = "https://pkgs.tailscale.com"
    track: str = "stable"
    fetch_retries: int = 3
    retry_delay: float = 2.0
    timeout: int = 60
    allow_insecure_fallback: bool = False


@dataclass
class ServiceConfig:
    """서비스 (batocera-services) 설정"""
    name: str = "tailscale"
    supervisor: str = "batocera-services"
    auto_connect_on_boot: bool = False
    command_timeout: int = 30


@dataclass
class BringUpConfig:
    """최초 인증 (tailscale up) 설정"""
    auth_key: str = ""
    accept_routes: bool = True
    ssh: bool = False
    ready_timeout: float = 15.0
    poll_interval: float = 0.5
    up_timeout: int = 60
    fail_on_error: Optional[bool] = None  # None 이면 service.auto_connect_on_boot 를 따름


@dataclass
class AgentConfig:
    """에이전트 설정"""
    log_dir: str = DEFAULT_LOG_DIR
    log_level: str = "INFO"
    backup_retention: int = 0  # 0 = 모든 백업 보관


class Config:
    """전체 설정 관리 클래스"""

    DEFAULT_CONFIG_PATHS = [
        "/userdata/system/configs/console-vpn-agent/config.yaml",
        "~/.console-vpn-agent/config.yaml",
        "./config.yaml",
    ]

    SECTIONS = ("paths", "download", "service", "bringup", "agent")

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self.config_path = config_path
        self.paths = PathsConfig()
        self.download = DownloadConfig()
        self.service = ServiceConfig()
        self.bringup = BringUpConfig()
        self.agent = AgentConfig()

        if config_path:
            self.load(config_path)
        else:
            self._load_from_default_paths()

        self.apply_environment(os.environ if environ is None else environ)

    def _load_from_default_paths(self):
        """기본 경로에서 설정 파일 로드"""
        for path in self.DEFAULT_CONFIG_PATHS:
            expanded_path = os.path.expanduser(path)
            if os.path.exists(expanded_path):
                self.load(expanded_path)
                return

    def load(self, path: str):
        """설정 파일 로드"""
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            return

        with open(path, 'r', encoding='utf-8') as f:
            if path.endswith('.json'):
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")

        self._update_from_dict(data)
        self.config_path = path

    def _update_from_dict(self, data: Dict[str, Any]):
        """딕셔너리에서 설정 업데이트"""
        for section in self.SECTIONS:
            values = data.get(section) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Section '{section}' must be a mapping")
            target = getattr(self, section)
            for key, value in values.items():
                if hasattr(target, key):
                    setattr(target, key, value)

    def apply_environment(self, environ: Mapping[str, str]):
        """TS_AUTHKEY / TS_INSECURE 환경 변수 반영 (설정 파일보다 우선)"""
        auth_key = environ.get("TS_AUTHKEY", "")
        if auth_key:
            self.bringup.auth_key = auth_key
        if environ.get("TS_INSECURE", "0") == "1":
            self.download.allow_insecure_fallback = True

    def save(self, path: Optional[str] = None):
        """설정 파일 저장 (auth key 는 저장하지 않음)"""
        save_path = path or self.config_path or self.DEFAULT_CONFIG_PATHS[0]
        save_path = os.path.expanduser(save_path)

        parent = os.path.dirname(save_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        data = self.to_dict()
        data['bringup']['auth_key'] = ""

        with open(save_path, 'w', encoding='utf-8') as f:
            if save_path.endswith('.json'):
                json.dump(data, f, indent=2)
            else:
                yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {section: asdict(getattr(self, section)) for section in self.SECTIONS}

    def create_sample(self, output_path: str):
        """샘플 설정 파일 생성"""
        template = """# console-vpn-agent configuration
# 이 파일을 복사하여 config.yaml로 사용하세요

# 설치 경로
paths:
  install_dir: "/userdata/tailscale"        # tailscale, tailscaled, state/
  service_dir: "/userdata/system/services"  # batocera 서비스 스크립트 위치
  staging_dir: "/userdata/temp-ts"          # 다운로드/압축 해제 작업 디렉토리
  tun_device: "/dev/net/tun"

# 다운로드
download:
  base_url: "https://pkgs.tailscale.com"
  track: "stable"
  fetch_retries: 3
  retry_delay: 2
  timeout: 60
  allow_insecure_fallback: false  # TS_INSECURE=1 과 동일

# 서비스
service:
  name: "tailscale"
  supervisor: "batocera-services"
  auto_connect_on_boot: false  # true면 부팅 시 'tailscale up' 도 실행
  command_timeout: 30

# 최초 인증
bringup:
  auth_key: ""  # 비워두고 TS_AUTHKEY 환경 변수 사용 권장
  accept_routes: true
  ssh: false
  ready_timeout: 15
  poll_interval: 0.5
  up_timeout: 60
  fail_on_error: null  # null 이면 auto_connect_on_boot 값을 따름

# 에이전트
agent:
  log_dir: "/userdata/system/logs/console-vpn-agent"
  log_level: "INFO"  # DEBUG, INFO, WARNING, ERROR
  backup_retention: 0  # 바이너리별 보관할 백업 수 (0 = 무제한)
"""

        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(template)
