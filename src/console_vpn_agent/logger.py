"""
로깅 시스템
파일 및 콘솔 로깅, 디버그 모드 지원
"""

import logging
import os
from datetime import datetime
from typing import Optional
from rich.logging import RichHandler
from rich.console import Console

console = Console()

DEFAULT_LOG_DIR = "/userdata/system/logs/console-vpn-agent"

FILE_FORMAT = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)


def _file_handler(path: str, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(FILE_FORMAT)
    return handler


class AgentLogger:
    """에이전트 로거

    명령마다 <prefix>_<timestamp>.log 와 error_<timestamp>.log 를 남기고
    콘솔에는 Rich 로 출력한다.
    """

    def __init__(self, log_dir: str = DEFAULT_LOG_DIR, log_level: str = "INFO", debug: bool = False,
                 prefix: str = "install"):
        self.log_dir = log_dir
        self.log_level = logging.DEBUG if debug else getattr(logging, log_level.upper())
        self.debug_mode = debug

        os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = os.path.join(log_dir, f"{prefix}_{timestamp}.log")
        self.error_file = os.path.join(log_dir, f"error_{timestamp}.log")

        self.logger = logging.getLogger("console_vpn_agent")
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False

        # 기존 핸들러 제거 (재초기화 시 중복 방지)
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        self.logger.addHandler(_file_handler(self.log_file, self.log_level))
        self.logger.addHandler(_file_handler(self.error_file, logging.ERROR))

        # 콘솔 핸들러 (Rich)
        rich_handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=False,
            show_path=debug
        )
        rich_handler.setLevel(self.log_level)
        self.logger.addHandler(rich_handler)

    def debug(self, message: str):
        self.logger.debug(message)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def critical(self, message: str):
        self.logger.critical(message)

    def exception(self, message: str):
        """예외 로그 (트레이스백 포함)"""
        self.logger.exception(message)

    def get_log_files(self) -> dict:
        """로그 파일 경로 반환"""
        return {
            "main_log": self.log_file,
            "error_log": self.error_file,
            "log_dir": self.log_dir
        }


class _NullAgentLogger(AgentLogger):
    """init_logger 이전에 사용되는 로거 (파일 없이 표준 logging으로만 기록)"""

    def __init__(self):
        self.log_dir = ""
        self.log_file = ""
        self.error_file = ""
        self.debug_mode = False
        self.log_level = logging.INFO
        self.logger = logging.getLogger("console_vpn_agent")


# 글로벌 로거 인스턴스
_logger: Optional[AgentLogger] = None


def get_logger() -> AgentLogger:
    """로거 인스턴스 가져오기"""
    global _logger
    if _logger is None:
        _logger = _NullAgentLogger()
    return _logger


def init_logger(log_dir: str, log_level: str = "INFO", debug: bool = False,
                prefix: str = "install") -> AgentLogger:
    """로거 초기화

    Raises:
        OSError: 로그 디렉토리 또는 파일을 만들 수 없는 경우
    """
    global _logger
    _logger = AgentLogger(log_dir, log_level, debug, prefix)
    return _logger
