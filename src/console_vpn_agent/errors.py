"""
에러 분류 및 단계 결과 타입

치명적 오류는 AgentError 하위 예외로 raise 되고, 무시 가능한 오류는
IgnorableError 값으로 반환되어 로그만 남긴다.
"""

from dataclasses import dataclass
from typing import Optional


class AgentError(Exception):
    """파이프라인을 중단시키는 오류의 기본 클래스"""

    kind = "AgentError"

    def __init__(self, message: str, step: str = ""):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class UnsupportedArchitecture(AgentError):
    kind = "UnsupportedArchitecture"


class DownloadFailed(AgentError):
    kind = "DownloadFailed"


class ArchiveInvalid(AgentError):
    kind = "ArchiveInvalid"


class ExtractionFailed(AgentError):
    kind = "ExtractionFailed"


class RequiredBinaryMissing(AgentError):
    kind = "RequiredBinaryMissing"

    def __init__(self, message: str, step: str = "", filename: str = ""):
        super().__init__(message, step)
        self.filename = filename


class InstallFailed(AgentError):
    kind = "InstallFailed"


class BringUpFailed(AgentError):
    kind = "BringUpFailed"


# IgnorableError.kind 값
SERVICE_CONTROL_FAILED = "ServiceControlFailed"
BACKUP_FAILED = "BackupFailed"
PROCESS_KILL_FAILED = "ProcessKillFailed"
TUN_DEVICE_FAILED = "TunDeviceFailed"


@dataclass(frozen=True)
class IgnorableError:
    """best-effort 단계에서 발생했지만 진행을 막지 않는 오류"""

    step: str
    kind: str
    cause: str

    def __str__(self) -> str:
        return f"{self.kind} during {self.step}: {self.cause}"


# StageResult.status 값
SUCCESS = "success"
WARNING = "warning"
FAILED = "failed"


@dataclass
class StageResult:
    """파이프라인 단계 하나의 실행 결과"""

    step: str
    status: str
    message: str = ""
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED

    @classmethod
    def from_error(cls, step: str, error: Exception) -> "StageResult":
        kind = getattr(error, "kind", type(error).__name__)
        message = getattr(error, "message", None) or str(error)
        return cls(step=step, status=FAILED, message=message, error_kind=kind)
