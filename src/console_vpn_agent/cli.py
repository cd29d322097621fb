"""
CLI 메인 인터페이스
Click 및 Rich 기반 설치/업데이트 CLI
"""

import subprocess
import sys
import click
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .arch import resolve_architecture
from .config import Config
from .errors import UnsupportedArchitecture
from .fetch import build_download_url
from .installer import list_backups
from .logger import init_logger, get_logger
from .pipeline import InstallPipeline

console = Console()


@click.group()
@click.version_option(version=__version__)
def cli():
    """Tailscale installer/updater for Batocera and Knulli

    tailscale / tailscaled 를 설치 또는 업데이트하고 state 는 보존합니다.
    """
    pass


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--debug', is_flag=True, help='디버그 모드')
@click.option('--auto-connect/--no-auto-connect', default=None,
              help="부팅 시 서비스가 'tailscale up' 도 실행할지 여부")
@click.option('--authkey', envvar='TS_AUTHKEY', default=None, help='Auth key (기본값: TS_AUTHKEY)')
@click.option('--insecure', is_flag=True, help='인증서 검증 없는 재시도 1회 허용 (TS_INSECURE=1)')
@click.option('--retries', type=click.IntRange(min=1), default=None, help='다운로드 시도 횟수')
@click.option('--machine', default=None, help='uname -m 대신 사용할 머신 타입')
def install(config, debug, auto_connect, authkey, insecure, retries, machine):
    """tailscale 설치 또는 업데이트"""
    try:
        cfg = Config(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]✗ 설정 파일 오류: {e}[/red]")
        sys.exit(1)

    if auto_connect is not None:
        cfg.service.auto_connect_on_boot = auto_connect
    if authkey:
        cfg.bringup.auth_key = authkey
    if insecure:
        cfg.download.allow_insecure_fallback = True
    if retries is not None:
        cfg.download.fetch_retries = retries

    # 로그 파일을 만들기 전에 지원 아키텍처인지 확인
    try:
        arch = resolve_architecture(machine)
    except UnsupportedArchitecture as e:
        console.print(f"[red]✗ {e.step} 단계 실패: {e.message}[/red]")
        sys.exit(1)

    try:
        init_logger(cfg.agent.log_dir, cfg.agent.log_level, debug, prefix="install")
    except OSError as e:
        console.print(f"[red]✗ 설정 오류: 로그 디렉토리를 사용할 수 없습니다 ({cfg.agent.log_dir}): {e}[/red]")
        sys.exit(1)
    logger = get_logger()
    logger.info(
        f"Starting install command (debug={debug}, auto_connect={cfg.service.auto_connect_on_boot}, "
        f"retries={cfg.download.fetch_retries}, insecure={cfg.download.allow_insecure_fallback})"
    )

    pipeline = InstallPipeline(cfg, machine=machine, arch=arch)
    sys.exit(pipeline.run())


@cli.command()
@click.argument('output', type=click.Path(), default='./config.yaml')
def init(output):
    """샘플 설정 파일 생성"""
    cfg = Config()
    cfg.create_sample(output)
    console.print(f"[green]✓ 샘플 설정 파일 생성: {output}[/green]")
    console.print("[cyan]설정 파일을 편집한 후 다음 명령어로 실행하세요:[/cyan]")
    console.print(f"[cyan]  console-vpn-agent install --config {output}[/cyan]")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--machine', default=None, help='uname -m 대신 사용할 머신 타입')
def validate(config, machine):
    """설정 파일 및 아키텍처 확인"""
    try:
        cfg = Config(config)
    except Exception as e:
        console.print(f"[red]✗ 설정 파일 오류: {str(e)}[/red]")
        sys.exit(1)

    try:
        arch = resolve_architecture(machine)
    except UnsupportedArchitecture as e:
        console.print(f"[red]✗ {e.message}[/red]")
        sys.exit(1)

    console.print("[green]✓ 설정 파일이 유효합니다.[/green]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")

    table.add_row("설정 파일", cfg.config_path or "(기본값)")
    table.add_row("아키텍처", arch.value)
    table.add_row("다운로드 URL", build_download_url(arch, cfg.download.base_url, cfg.download.track))
    table.add_row("설치 경로", cfg.paths.install_dir)
    table.add_row("State", cfg.paths.state_dir)
    table.add_row("서비스 스크립트", f"{cfg.paths.service_dir}/{cfg.service.name}")
    table.add_row("부팅 시 up", "예" if cfg.service.auto_connect_on_boot else "아니오")
    table.add_row("Auth key", "설정됨" if cfg.bringup.auth_key else "[yellow]없음[/yellow]")
    table.add_row("Insecure 재시도", "허용" if cfg.download.allow_insecure_fallback else "아니오")
    table.add_row("백업 보관", str(cfg.agent.backup_retention or "무제한"))

    console.print(table)


def _cli_output(cli_path, *args):
    try:
        result = subprocess.run([cli_path, *args], capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        return None, str(e)
    if result.returncode != 0:
        return None, (result.stderr or result.stdout).strip()
    return result.stdout.strip(), ""


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
def status(config):
    """설치된 버전, 할당된 IP, 백업 목록 표시"""
    try:
        cfg = Config(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]✗ 설정 파일 오류: {e}[/red]")
        sys.exit(1)
    paths = cfg.paths

    table = Table(show_header=True, header_style="bold magenta", title="tailscale 상태")
    table.add_column("항목", style="cyan")
    table.add_column("값")

    version, error = _cli_output(paths.cli_binary, "version")
    table.add_row("버전", version.splitlines()[0] if version else f"[red]확인 불가[/red] {error}")

    ip, _ = _cli_output(paths.cli_binary, "ip")
    table.add_row("Tailscale IP", ip.splitlines()[0] if ip else "[yellow]미할당[/yellow]")

    for binary in (paths.cli_binary, paths.daemon_binary):
        backups = list_backups(binary)
        latest = backups[-1] if backups else "-"
        table.add_row(f"백업 ({len(backups)})", latest)

    console.print(table)


def main():
    """메인 엔트리 포인트"""
    cli()


if __name__ == '__main__':
    main()
