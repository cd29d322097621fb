"""
공용 테스트 픽스처
실제 gzip tarball, 가짜 tailscale CLI (셸 스크립트), 가짜 requests 세션
"""

import io
import tarfile

import pytest
import requests

from console_vpn_agent.config import Config


FAKE_CLI = """#!/bin/sh
DIR="{state}"
echo "$*" >> "$DIR/calls"
case "$1" in
  version)
    echo "{version}"
    ;;
  status)
    exit 0
    ;;
  ip)
    if [ -f "$DIR/ip" ]; then
      cat "$DIR/ip"
      exit 0
    fi
    exit 1
    ;;
  up)
    code=0
    if [ -f "$DIR/up_codes" ]; then
      code=$(head -n 1 "$DIR/up_codes")
      tail -n +2 "$DIR/up_codes" > "$DIR/up_codes.tmp"
      mv "$DIR/up_codes.tmp" "$DIR/up_codes"
    fi
    [ -n "$code" ] || code=0
    if [ "$code" = "0" ]; then
      echo "100.64.0.7" > "$DIR/ip"
    fi
    exit "$code"
    ;;
esac
exit 0
"""

FAKE_DAEMON = """#!/bin/sh
exit 0
"""

FAKE_SUPERVISOR = """#!/bin/sh
echo "$*" >> "{log}"
exit {code}
"""


def write_executable(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(0o755)
    return path


def build_tarball(top_dir, files, mode=0o755):
    """{이름: 내용} 으로 gzip tarball 바이트 생성 (top_dir/ 아래에 배치)"""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if top_dir:
            info = tarfile.TarInfo(top_dir)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{top_dir}/{name}" if top_dir else name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeResponse:
    def __init__(self, body=b"", status_code=200, headers=None, reason="OK"):
        self.body = body
        self.status_code = status_code
        self.headers = headers or {}
        self.reason = reason

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


class FakeSession:
    """get() 호출마다 outcomes 에서 하나씩 꺼내 응답 (bytes, FakeResponse 또는 예외)"""

    def __init__(self, outcomes, head_headers=None):
        self.outcomes = list(outcomes)
        self.head_headers = head_headers or {"Content-Type": "text/html"}
        self.calls = []
        self.head_calls = []

    def get(self, url, stream=False, timeout=None, verify=True):
        self.calls.append({"url": url, "verify": verify})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FakeResponse):
            return outcome
        return FakeResponse(outcome)

    def head(self, url, allow_redirects=True, timeout=None, verify=True):
        self.head_calls.append(url)
        return FakeResponse(b"", headers=self.head_headers)


@pytest.fixture
def tarball_factory():
    return build_tarball


@pytest.fixture
def cli_state(tmp_path):
    """가짜 tailscale CLI 가 호출 기록과 IP 를 저장하는 디렉토리"""
    state = tmp_path / "fake-cli"
    state.mkdir()
    return state


@pytest.fixture
def fake_cli_script(cli_state):
    return FAKE_CLI.format(state=cli_state, version="1.76.1")


@pytest.fixture
def release_tarball(fake_cli_script):
    return build_tarball("tailscale_1.76.1_arm64", {
        "tailscale": fake_cli_script,
        "tailscaled": FAKE_DAEMON,
        "README.md": "tailscale",
    })


@pytest.fixture
def supervisor(tmp_path):
    log = tmp_path / "supervisor.log"
    path = write_executable(tmp_path / "bin" / "batocera-services",
                            FAKE_SUPERVISOR.format(log=log, code=0))
    return path, log


@pytest.fixture
def config(tmp_path, monkeypatch, supervisor):
    """tmp_path 아래로 모든 경로를 옮긴 설정"""
    monkeypatch.chdir(tmp_path)
    cfg = Config(environ={})
    cfg.paths.install_dir = str(tmp_path / "userdata" / "tailscale")
    cfg.paths.service_dir = str(tmp_path / "userdata" / "system" / "services")
    cfg.paths.staging_dir = str(tmp_path / "userdata" / "temp-ts")
    cfg.paths.tun_device = str(tmp_path / "dev" / "net" / "tun")
    cfg.download.retry_delay = 0
    cfg.service.supervisor = str(supervisor[0])
    cfg.bringup.ready_timeout = 1
    cfg.bringup.poll_interval = 0
    cfg.agent.log_dir = str(tmp_path / "logs")

    # mknod 는 root 권한이 필요하므로 TUN 노드를 미리 만들어 둔다
    tun = tmp_path / "dev" / "net" / "tun"
    tun.parent.mkdir(parents=True)
    tun.write_text("")
    return cfg


@pytest.fixture
def session_factory():
    return FakeSession


@pytest.fixture
def response_factory():
    return FakeResponse


@pytest.fixture
def make_executable():
    return write_executable
