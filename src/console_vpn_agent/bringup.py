"""
최초 인증 (bring-up) 모듈

상태 전이:
    Unauthenticated → AlreadyAssigned              (이미 IP 할당됨, up 호출 없음)
    Unauthenticated → ManualInstructionsEmitted    (auth key 없음)
    Unauthenticated → AuthKeyAttempted → Connected
                    → AuthKeyAttemptedWithReset → Connected | Failed

부팅 서비스가 인증 때문에 멈추지 않도록 대화형 로그인은 절대 시도하지 않는다.
"""

import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .config import BringUpConfig
from .errors import BringUpFailed
from .logger import get_logger


class AuthenticationState(Enum):
    UNAUTHENTICATED = "Unauthenticated"
    AUTH_KEY_ATTEMPTED = "AuthKeyAttempted"
    AUTH_KEY_ATTEMPTED_WITH_RESET = "AuthKeyAttemptedWithReset"
    ALREADY_ASSIGNED = "AlreadyAssigned"
    CONNECTED = "Connected"
    MANUAL_INSTRUCTIONS_EMITTED = "ManualInstructionsEmitted"
    FAILED = "Failed"


@dataclass
class BringUpOutcome:
    """bring-up 결과"""
    state: AuthenticationState
    ip: Optional[str] = None
    up_invocations: int = 0
    instructions: str = ""
    warning: str = ""
    history: List[AuthenticationState] = field(default_factory=list)


def mask_secret(args: List[str]) -> List[str]:
    """--authkey 값을 로그에 남기지 않도록 마스킹"""
    return ["--authkey=****" if arg.startswith("--authkey=") else arg for arg in args]


class BringUpController:
    """tailscale up 상태 머신"""

    def __init__(self, cli_path: str, config: BringUpConfig, auto_connect_on_boot: bool = False,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.cli_path = cli_path
        self.config = config
        self.auto_connect_on_boot = auto_connect_on_boot
        self.clock = clock
        self.sleep = sleep
        self.logger = get_logger()
        self.state = AuthenticationState.UNAUTHENTICATED
        self.history: List[AuthenticationState] = [self.state]
        self.up_invocations = 0
        self.last_command = ""

    @property
    def fails_on_error(self) -> bool:
        if self.config.fail_on_error is None:
            return self.auto_connect_on_boot
        return bool(self.config.fail_on_error)

    def _transition(self, state: AuthenticationState):
        self.logger.debug(f"Bring-up: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _cli(self, *args: str, timeout: Optional[float] = None) -> Tuple[int, str]:
        cmd = [self.cli_path, *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.config.up_timeout
            )
        except subprocess.TimeoutExpired:
            return 124, f"{' '.join(mask_secret(cmd))} timed out"
        except OSError as e:
            return 127, str(e)
        return result.returncode, (result.stdout or "") + (result.stderr or "")

    def wait_until_ready(self) -> bool:
        """데몬 소켓 준비 대기 (tailscale status 를 짧은 간격으로 반복)"""
        deadline = self.clock() + self.config.ready_timeout
        while True:
            code, output = self._cli("status", timeout=5)
            # 로그아웃 상태의 status 는 비 0 으로 끝나지만 데몬은 응답한 것
            if code == 0 or "Logged out" in output or "NeedsLogin" in output:
                self.logger.debug("tailscaled is answering")
                return True
            if self.clock() >= deadline:
                self.logger.warning(
                    f"tailscaled did not become ready within {self.config.ready_timeout}s; continuing"
                )
                return False
            self.sleep(self.config.poll_interval)

    def assigned_ip(self) -> Optional[str]:
        code, output = self._cli("ip", timeout=10)
        if code != 0:
            return None
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        return lines[0] if lines else None

    def up_args(self, reset: bool = False) -> List[str]:
        args = ["up"]
        if reset:
            args.append("--reset")
        if self.config.accept_routes:
            args.append("--accept-routes")
        args.append(f"--ssh={'true' if self.config.ssh else 'false'}")
        if self.config.auth_key:
            args.append(f"--authkey={self.config.auth_key}")
        return args

    def manual_command(self) -> str:
        flags = self.up_args()
        flags = [flag for flag in flags if not flag.startswith("--authkey=")]
        return " ".join([self.cli_path] + flags)

    def manual_instructions(self) -> str:
        if self.auto_connect_on_boot:
            after = "the service will also run 'tailscale up' on boot."
        else:
            after = "the daemon-only service will reconnect automatically on boot."
        return (
            "To authenticate this device (one-time), run on the device shell:\n"
            "\n"
            f"  {self.manual_command()}\n"
            "\n"
            "This will print a URL to approve in your browser, then exit. After that,\n"
            f"{after}\n"
        )

    def _up(self, reset: bool) -> Tuple[bool, str]:
        args = self.up_args(reset=reset)
        self.up_invocations += 1
        self.last_command = " ".join(mask_secret([self.cli_path] + args))
        self.logger.debug(f"Running: {self.last_command}")
        code, output = self._cli(*args)
        return code == 0, output.strip()

    def run(self) -> BringUpOutcome:
        """bring-up 실행

        Raises:
            BringUpFailed: --reset 재시도까지 실패하고 fails_on_error 인 경우
        """
        self.wait_until_ready()

        ip = self.assigned_ip()
        if ip:
            self.logger.info(f"Node already has a Tailscale IP ({ip}); skipping 'tailscale up'.")
            self._transition(AuthenticationState.ALREADY_ASSIGNED)
            return self._outcome(ip=ip)

        if not self.config.auth_key:
            self.logger.info("No auth key supplied; manual bring-up required.")
            self._transition(AuthenticationState.MANUAL_INSTRUCTIONS_EMITTED)
            return self._outcome(instructions=self.manual_instructions())

        self.logger.info("Bringing node up with auth key (non-interactive)...")
        self._transition(AuthenticationState.AUTH_KEY_ATTEMPTED)
        ok, output = self._up(reset=False)
        if ok:
            self._transition(AuthenticationState.CONNECTED)
            return self._outcome(ip=self.assigned_ip())

        # 기존 prefs 와 충돌하는 경우 --reset 으로 한 번만 재시도
        self.logger.warning(f"First 'tailscale up' failed; retrying with --reset ({output})")
        self._transition(AuthenticationState.AUTH_KEY_ATTEMPTED_WITH_RESET)
        ok, output = self._up(reset=True)
        if ok:
            self._transition(AuthenticationState.CONNECTED)
            return self._outcome(ip=self.assigned_ip())

        self._transition(AuthenticationState.FAILED)
        message = f"'{self.last_command}' failed after retry with --reset: {output}"
        if self.fails_on_error:
            raise BringUpFailed(message, step="up")

        self.logger.warning(f"{message} (bring the node up manually later)")
        return self._outcome(warning=message, instructions=self.manual_instructions())

    def _outcome(self, **kwargs) -> BringUpOutcome:
        return BringUpOutcome(
            state=self.state,
            up_invocations=self.up_invocations,
            history=list(self.history),
            **kwargs
        )
