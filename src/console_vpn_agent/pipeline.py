"""
설치 파이프라인 드라이버
각 단계의 결과(StageResult)를 기록하고 최종 종료 코드를 결정
"""

import subprocess
import time
from typing import Any, Callable, List, Optional

import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .arch import TargetArchitecture, resolve_architecture
from .archive import ArchiveExtractor, ArchiveValidator, ExtractedBundle
from .bringup import AuthenticationState, BringUpController, BringUpOutcome
from .config import Config
from .errors import (
    AgentError, IgnorableError, StageResult,
    SUCCESS, WARNING, FAILED,
)
from .fetch import ArtifactFetcher, ReleaseArchive
from .installer import BinaryInstaller, InstalledBinarySet
from .logger import get_logger
from .service import ServiceController, ServiceDescriptor, ServiceDescriptorWriter

console = Console()


class InstallPipeline:
    """아키텍처 감지부터 bring-up 까지 순서대로 실행"""

    def __init__(self, config: Config, machine: Optional[str] = None,
                 arch: Optional[TargetArchitecture] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time,
                 kill_command: str = "killall"):
        self.config = config
        self.machine = machine
        self.session = session
        self.sleep = sleep
        self.clock = clock
        self.kill_command = kill_command
        self.logger = get_logger()

        self.results: List[StageResult] = []
        self.current_step = ""
        self.arch = arch
        self.archive: Optional[ReleaseArchive] = None
        self.bundle: Optional[ExtractedBundle] = None
        self.installed: Optional[InstalledBinarySet] = None
        self.descriptor: Optional[ServiceDescriptor] = None
        self.bringup: Optional[BringUpOutcome] = None

    def record(self, step: str, status: str, message: str = "", error_kind: Optional[str] = None):
        self.results.append(StageResult(step=step, status=status, message=message, error_kind=error_kind))

    def _stage(self, step: str, action: Callable[[], Any]) -> Any:
        self.current_step = step
        self.logger.debug(f"--- {step} ---")
        try:
            return action()
        except AgentError as e:
            if not e.step:
                e.step = step
            self.results.append(StageResult.from_error(step, e))
            raise

    def _record_ignored(self, step: str, ignored: List[IgnorableError], message: str):
        if ignored:
            self.record(step, WARNING, "; ".join(str(error) for error in ignored))
        else:
            self.record(step, SUCCESS, message)

    @property
    def exit_code(self) -> int:
        return 0 if all(result.ok for result in self.results) else 1

    def run(self) -> int:
        """파이프라인 실행 후 종료 코드 반환 (0 성공, 1 실패)"""
        try:
            self._run_stages()
        except AgentError as e:
            self.logger.error(f"Failed at step '{e.step or self.current_step}': {e.message}")
            console.print(f"\n[red]✗ {e.step or self.current_step} 단계 실패: {e.message}[/red]")
        except KeyboardInterrupt:
            self.logger.warning("Execution interrupted by user")
            console.print("\n[yellow]사용자에 의해 중단되었습니다.[/yellow]")
            self.record(self.current_step or "interrupted", FAILED, "interrupted", "KeyboardInterrupt")
        except Exception as e:
            self.logger.exception(f"Unexpected error during step '{self.current_step}'")
            console.print(f"\n[red]예상치 못한 오류 발생 ({self.current_step}): {e}[/red]")
            self.results.append(StageResult.from_error(self.current_step or "unknown", e))

        self.show_summary()
        return self.exit_code

    def _run_stages(self):
        cfg = self.config
        paths = cfg.paths

        console.print(Panel.fit(
            "[bold cyan]Tailscale installer for Batocera / Knulli[/bold cyan]\n"
            "바이너리를 설치/업데이트하고 state 디렉토리는 그대로 유지합니다.",
            border_style="cyan"
        ))
        self.logger.info("=== Install started ===")

        # 1. 부작용 이전에 아키텍처 확인 (CLI 에서 이미 확인한 경우 그대로 사용)
        self.arch = self._stage("arch", lambda: self.arch or resolve_architecture(self.machine))
        self.record("arch", SUCCESS, self.arch.value)

        # 2. 다운로드
        fetcher = ArtifactFetcher(cfg.download, paths.download_path, session=self.session, sleep=self.sleep)
        self.archive = self._stage("download", lambda: fetcher.fetch(self.arch))
        self.record("download", SUCCESS, f"{self.archive.size} bytes, {fetcher.attempts} attempt(s)")

        # 3. gzip 검증
        validator = ArchiveValidator(fetcher.probe_headers)
        self._stage("validate", lambda: validator.validate(self.archive))
        self.record("validate", SUCCESS, "gzip")

        # 4. 압축 해제
        extractor = ArchiveExtractor(paths.staging_dir, self.arch)
        self.bundle = self._stage("extract", lambda: extractor.extract(self.archive))
        self.record("extract", SUCCESS, self.bundle.top_dir)

        # 5. 서비스 중지 + 설치
        controller = ServiceController(cfg.service)
        installer = BinaryInstaller(
            paths, controller,
            backup_retention=cfg.agent.backup_retention,
            kill_command=self.kill_command,
            command_timeout=cfg.service.command_timeout,
            clock=self.clock
        )
        self.installed = self._stage("install", lambda: installer.install(self.bundle))
        self._record_ignored("install", installer.ignored, "binaries replaced")

        # 6. 서비스 스크립트
        writer = ServiceDescriptorWriter(paths, cfg.service, cfg.bringup)
        self.descriptor = self._stage("service script", writer.write)
        self.record("service script", SUCCESS, self.descriptor.path)

        # 7. 서비스 시작
        self.logger.info("Starting tailscale daemon...")
        error = self._stage("service start", controller.start)
        self._record_ignored("service start", [error] if error else [], "started")

        # 8. bring-up
        bringup = BringUpController(
            paths.cli_binary, cfg.bringup,
            auto_connect_on_boot=cfg.service.auto_connect_on_boot,
            sleep=self.sleep
        )
        self.bringup = self._stage("up", bringup.run)
        self._report_bringup(self.bringup)

        self._report_installed()
        self.logger.info("=== Install completed ===")

    def _report_bringup(self, outcome: BringUpOutcome):
        state = outcome.state
        if state == AuthenticationState.ALREADY_ASSIGNED:
            self.record("up", SUCCESS, f"already assigned {outcome.ip}")
        elif state == AuthenticationState.CONNECTED:
            self.record("up", SUCCESS, f"connected {outcome.ip or ''}".strip())
            console.print("[green]✓ Tailscale 연결 완료[/green]")
        elif state == AuthenticationState.MANUAL_INSTRUCTIONS_EMITTED:
            self.record("up", SUCCESS, "manual bring-up required")
            console.print()
            console.print(outcome.instructions, markup=False, highlight=False)
        else:
            self.record("up", WARNING, outcome.warning)
            console.print()
            console.print(outcome.instructions, markup=False, highlight=False)

    def _report_installed(self):
        paths = self.config.paths
        console.print()
        self.logger.info("Installed versions:")
        try:
            result = subprocess.run(
                [paths.cli_binary, "version"],
                capture_output=True,
                text=True,
                timeout=10
            )
            if result.returncode == 0:
                console.print(result.stdout.strip(), markup=False)
            else:
                self.logger.warning(f"'tailscale version' exited with {result.returncode}")
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Could not query installed version: {e}")

        console.print()
        self.logger.info(f"Download kept at: {self.archive.path}")
        self.logger.info(f"Extracted dir:   {self.bundle.source_dir}")
        self.logger.info(f"You can remove {paths.staging_dir} later if you want.")

    def show_summary(self):
        """실행 결과 요약 표시"""
        table = Table(show_header=True, header_style="bold magenta", title="실행 결과 요약")
        table.add_column("단계", style="cyan")
        table.add_column("상태")
        table.add_column("메시지")

        icons = {
            SUCCESS: "[green]✓[/green]",
            WARNING: "[yellow]![/yellow]",
            FAILED: "[red]✗[/red]",
        }
        for result in self.results:
            table.add_row(result.step, icons.get(result.status, result.status), result.message or "")

        console.print(table)

        log_files = self.logger.get_log_files()
        if log_files.get("main_log"):
            console.print(f"\n[bold]로그 파일:[/bold]")
            console.print(f"  Main: {log_files['main_log']}")
            console.print(f"  Error: {log_files['error_log']}")

        if self.exit_code == 0:
            self.logger.info("Done.")
