"""
바이너리 설치 모듈 테스트
"""

import os
import stat
import subprocess

import pytest

from console_vpn_agent.archive import ExtractedBundle
from console_vpn_agent.config import PathsConfig, ServiceConfig
from console_vpn_agent.errors import IgnorableError, InstallFailed, BACKUP_FAILED, TUN_DEVICE_FAILED
from console_vpn_agent.installer import BinaryInstaller, list_backups
from console_vpn_agent.service import ServiceController


class RecordingController(ServiceController):
    def __init__(self):
        super().__init__(ServiceConfig())
        self.actions = []

    def _run(self, action):
        self.actions.append(action)
        return IgnorableError(step=f"service {action}", kind="ServiceControlFailed", cause="unknown service")


@pytest.fixture
def paths(tmp_path):
    tun = tmp_path / "dev" / "net" / "tun"
    tun.parent.mkdir(parents=True)
    tun.write_text("")
    return PathsConfig(
        install_dir=str(tmp_path / "tailscale"),
        service_dir=str(tmp_path / "services"),
        staging_dir=str(tmp_path / "staging"),
        tun_device=str(tun),
    )


@pytest.fixture
def bundle(tmp_path):
    source = tmp_path / "staging" / "tailscale_1.76.1_arm64"
    source.mkdir(parents=True)
    for name in ("tailscale", "tailscaled"):
        (source / name).write_text(f"new {name}\n")
        (source / name).chmod(0o755)
    return ExtractedBundle(source_dir=str(source), top_dir=source.name)


def make_installer(paths, controller=None, **kwargs):
    kwargs.setdefault("kill_command", "true")
    kwargs.setdefault("clock", lambda: 1700000000)
    return BinaryInstaller(paths, controller or RecordingController(), **kwargs)


def test_first_install(paths, bundle):
    controller = RecordingController()
    installer = make_installer(paths, controller)

    installed = installer.install(bundle)

    assert controller.actions == ["stop"]
    assert installed.backups == {"tailscale": None, "tailscaled": None}
    for path in (installed.cli_path, installed.daemon_path):
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o755
    assert open(installed.daemon_path).read() == "new tailscaled\n"
    # 서비스 stop 실패는 무시되고 기록만 남는다
    assert [error.kind for error in installer.ignored] == ["ServiceControlFailed"]


def test_upgrade_backs_up_and_preserves_state(paths, bundle):
    os.makedirs(paths.state_dir)
    state_file = os.path.join(paths.state_dir, "tailscaled.state")
    with open(state_file, "w") as f:
        f.write('{"node": "key"}')
    for path in (paths.cli_binary, paths.daemon_binary):
        with open(path, "w") as f:
            f.write("old\n")

    installed = make_installer(paths).install(bundle)

    assert installed.backups["tailscale"] == paths.cli_binary + ".bak.1700000000"
    assert open(installed.backups["tailscaled"]).read() == "old\n"
    assert open(paths.cli_binary).read() == "new tailscale\n"
    assert open(state_file).read() == '{"node": "key"}'


def test_backups_in_same_second_get_distinct_suffixes(paths, bundle):
    installer = make_installer(paths)
    installer.install(bundle)
    installer.install(bundle)
    installer.install(bundle)

    backups = list_backups(paths.daemon_binary)
    assert [os.path.basename(p) for p in backups] == ["tailscaled.bak.1700000000", "tailscaled.bak.1700000000.1"]


def test_backup_failure_is_ignorable(paths, bundle, monkeypatch):
    os.makedirs(paths.install_dir)
    with open(paths.cli_binary, "w") as f:
        f.write("old\n")

    def broken_copy(src, dst):
        raise PermissionError("read-only")

    monkeypatch.setattr("shutil.copy2", broken_copy)
    installer = make_installer(paths)
    installer.install(bundle)

    assert BACKUP_FAILED in [error.kind for error in installer.ignored]
    assert open(paths.cli_binary).read() == "new tailscale\n"


def test_install_failure_is_fatal(paths, bundle):
    os.remove(bundle.binary_path("tailscaled"))

    with pytest.raises(InstallFailed) as excinfo:
        make_installer(paths).install(bundle)
    assert excinfo.value.step == "install"
    assert not [n for n in os.listdir(paths.install_dir) if n.startswith(".tailscaled.")]


def test_retention_prunes_oldest(paths, bundle):
    clock = iter(range(100, 200))
    installer = make_installer(paths, backup_retention=2, clock=lambda: next(clock))
    for _ in range(5):
        installer.install(bundle)

    backups = [os.path.basename(p) for p in list_backups(paths.cli_binary)]
    assert len(backups) == 2
    assert backups[-1].startswith("tailscale.bak.")


def test_kill_daemon_without_process(paths):
    installer = make_installer(paths, kill_command="false")
    assert installer.kill_daemon() is None


def test_kill_daemon_missing_tool(paths):
    installer = make_installer(paths, kill_command="/nonexistent/killall")
    error = installer.kill_daemon()
    assert error is not None and error.kind == "ProcessKillFailed"


def test_tun_device_created(tmp_path, monkeypatch):
    calls = []

    def fake_mknod(path, mode, device):
        calls.append((path, mode, os.major(device), os.minor(device)))
        open(path, "w").close()

    monkeypatch.setattr(os, "mknod", fake_mknod)
    paths = PathsConfig(install_dir=str(tmp_path / "ts"), tun_device=str(tmp_path / "dev" / "net" / "tun"))

    assert make_installer(paths).ensure_tun_device() is None
    path, mode, major, minor = calls[0]
    assert stat.S_ISCHR(mode)
    assert (major, minor) == (10, 200)
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_tun_device_failure_is_ignorable(tmp_path, monkeypatch):
    def denied(*args):
        raise PermissionError("not root")

    monkeypatch.setattr(os, "mknod", denied)
    paths = PathsConfig(install_dir=str(tmp_path / "ts"), tun_device=str(tmp_path / "dev" / "net" / "tun"))

    error = make_installer(paths).ensure_tun_device()
    assert error.kind == TUN_DEVICE_FAILED
