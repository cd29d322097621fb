"""
서비스 관리 모듈
batocera-services 스크립트 생성 및 start/stop 래퍼
"""

import math
import os
import shlex
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional

from jinja2 import Template

from .config import BringUpConfig, PathsConfig, ServiceConfig
from .errors import IgnorableError, SERVICE_CONTROL_FAILED
from .logger import get_logger


SERVICE_TEMPLATE = """#!/bin/bash
# {{ service_file }}
# Generated by console-vpn-agent. Rewritten in full on every install.
{% if auto_connect %}# Starts tailscaled and brings the node up.
{% else %}# Starts tailscaled only; once a node is authenticated, it auto-reconnects.
{% endif %}
case "${1:-start}" in
  start)
    {{ daemon }} -state {{ state_dir }} \\
      >> {{ daemon_log }} 2>&1 &
{% if auto_connect %}
    (
      i=0
      until {{ cli }} status >/dev/null 2>&1; do
        i=$((i+1))
        [ "$i" -ge {{ ready_attempts }} ] && break
        sleep 1
      done
      {{ cli }} up {{ up_flags }}
    ) >> {{ daemon_log }} 2>&1 &
{% endif %}
    ;;
  stop)
    killall tailscaled >/dev/null 2>&1
    ;;
  status)
    {{ cli }} status
    ;;
esac
"""


@dataclass
class ServiceDescriptor:
    """생성된 서비스 스크립트"""
    path: str
    content: str
    executable: bool = True


def up_flags(accept_routes: bool = True, ssh: bool = False) -> str:
    """'tailscale up' 기본 플래그"""
    flags = []
    if accept_routes:
        flags.append("--accept-routes")
    flags.append(f"--ssh={'true' if ssh else 'false'}")
    return " ".join(flags)


class ServiceDescriptorWriter:
    """서비스 스크립트 생성 클래스"""

    def __init__(self, paths: PathsConfig, service: ServiceConfig,
                 bringup: Optional[BringUpConfig] = None):
        self.paths = paths
        self.service = service
        self.bringup = bringup or BringUpConfig()
        self.logger = get_logger()

    @property
    def ready_attempts(self) -> int:
        """부팅 스크립트의 status 확인 횟수 (1초 간격, ready_timeout 기준)"""
        return max(1, math.ceil(self.bringup.ready_timeout))

    @property
    def service_file(self) -> str:
        return os.path.join(self.paths.service_dir, self.service.name)

    def render(self) -> str:
        template = Template(SERVICE_TEMPLATE, trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)
        return template.render(
            service_file=self.service_file,
            auto_connect=self.service.auto_connect_on_boot,
            daemon=shlex.quote(self.paths.daemon_binary),
            cli=shlex.quote(self.paths.cli_binary),
            state_dir=shlex.quote(self.paths.state_dir),
            daemon_log=shlex.quote(self.paths.daemon_log),
            up_flags=up_flags(self.bringup.accept_routes, self.bringup.ssh),
            ready_attempts=self.ready_attempts,
        )

    def write(self) -> ServiceDescriptor:
        """스크립트를 임시 파일에 쓴 뒤 원자적으로 교체"""
        variant = "daemon + up" if self.service.auto_connect_on_boot else "daemon only"
        self.logger.info(f"Writing service ({variant}) to {self.service_file}...")

        content = self.render()
        os.makedirs(self.paths.service_dir, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.service.name}.", dir=self.paths.service_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, self.service_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        mode = os.stat(self.service_file).st_mode
        return ServiceDescriptor(path=self.service_file, content=content,
                                 executable=bool(mode & stat.S_IXUSR))


class ServiceController:
    """batocera-services start/stop 래퍼 (항상 best-effort)"""

    def __init__(self, service: ServiceConfig):
        self.service = service
        self.logger = get_logger()

    def stop(self) -> Optional[IgnorableError]:
        return self._run("stop")

    def start(self) -> Optional[IgnorableError]:
        return self._run("start")

    def _run(self, action: str) -> Optional[IgnorableError]:
        cmd = [self.service.supervisor, action, self.service.name]
        self.logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.service.command_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return self._ignorable(action, str(e))

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            return self._ignorable(action, f"exit {result.returncode}: {output}")

        self.logger.info(f"Service {self.service.name}: {action} OK")
        return None

    def _ignorable(self, action: str, cause: str) -> IgnorableError:
        error = IgnorableError(step=f"service {action}", kind=SERVICE_CONTROL_FAILED, cause=cause)
        self.logger.warning(f"Ignoring: {error}")
        return error
