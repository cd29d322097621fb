"""
아키텍처 감지 모듈
uname -m 값을 Tailscale 배포 아키텍처 태그로 변환
"""

import platform
from enum import Enum
from typing import Optional

from .errors import UnsupportedArchitecture
from .logger import get_logger


class TargetArchitecture(Enum):
    """Tailscale 배포 아키텍처"""
    AMD64 = "amd64"
    ARM64 = "arm64"
    ARM = "arm"
    RISCV64 = "riscv64"
    X86_32 = "386"

    def __str__(self) -> str:
        return self.value


MACHINE_ALIASES = {
    "x86_64": TargetArchitecture.AMD64,
    "amd64": TargetArchitecture.AMD64,
    "aarch64": TargetArchitecture.ARM64,
    "arm64": TargetArchitecture.ARM64,
    "armv7l": TargetArchitecture.ARM,
    "armv7": TargetArchitecture.ARM,
    "riscv64": TargetArchitecture.RISCV64,
    "i386": TargetArchitecture.X86_32,
    "i686": TargetArchitecture.X86_32,
    "x86": TargetArchitecture.X86_32,
}


def resolve_architecture(machine: Optional[str] = None) -> TargetArchitecture:
    """머신 타입 문자열을 TargetArchitecture 로 변환

    Args:
        machine: uname -m 값 (None 이면 platform.machine())

    Raises:
        UnsupportedArchitecture: 알 수 없는 머신 타입
    """
    raw = platform.machine() if machine is None else machine
    key = (raw or "").strip().lower()

    arch = MACHINE_ALIASES.get(key)
    if arch is None:
        raise UnsupportedArchitecture(f"Unsupported architecture: {raw!r}", step="arch")

    get_logger().info(f"Detected arch: {arch.value} (machine={raw})")
    return arch
