"""
아카이브 검증 및 압축 해제 테스트
"""

import os
import subprocess

import pytest

from console_vpn_agent.arch import TargetArchitecture
from console_vpn_agent.archive import ArchiveExtractor, ArchiveValidator, has_gzip_magic
from console_vpn_agent.errors import ArchiveInvalid, ExtractionFailed, RequiredBinaryMissing
from console_vpn_agent.fetch import ReleaseArchive

BINARIES = {"tailscale": "#!/bin/sh\n", "tailscaled": "#!/bin/sh\n"}


def write_archive(tmp_path, data, name="tailscale_latest.tgz"):
    path = tmp_path / name
    path.write_bytes(data)
    return ReleaseArchive(path=str(path), size=len(data), url="https://pkgs.example/x.tgz")


def test_gzip_magic(tmp_path, tarball_factory):
    good = write_archive(tmp_path, tarball_factory("D", BINARIES), "good.tgz")
    bad = write_archive(tmp_path, b"<html>403</html>", "bad.tgz")
    assert has_gzip_magic(good.path)
    assert not has_gzip_magic(bad.path)


def test_validator_reports_headers_on_bad_magic(tmp_path):
    archive = write_archive(tmp_path, b"<!DOCTYPE html>")
    probed = []

    def probe(url):
        probed.append(url)
        return ["HTTP 200 OK", "Content-Type: text/html"]

    with pytest.raises(ArchiveInvalid) as excinfo:
        ArchiveValidator(probe).validate(archive)

    assert probed == [archive.url]
    assert excinfo.value.step == "validate"


def test_validator_accepts_gzip(tmp_path, tarball_factory):
    archive = write_archive(tmp_path, tarball_factory("D", BINARIES))
    assert ArchiveValidator(lambda url: []).validate(archive) is archive


def test_extract_uses_first_entry_top_dir(tmp_path, tarball_factory):
    staging = tmp_path / "staging"
    archive = write_archive(tmp_path, tarball_factory("D", BINARIES))

    bundle = ArchiveExtractor(str(staging), TargetArchitecture.ARM64).extract(archive)

    assert bundle.top_dir == "D"
    assert archive.top_dir == "D"
    assert bundle.source_dir == str(staging / "D")
    for name in ("tailscale", "tailscaled"):
        assert os.access(bundle.binary_path(name), os.X_OK)


def test_stale_top_dir_is_replaced(tmp_path, tarball_factory):
    staging = tmp_path / "staging"
    stale = staging / "D"
    stale.mkdir(parents=True)
    (stale / "leftover").write_text("old")

    archive = write_archive(tmp_path, tarball_factory("D", BINARIES))
    ArchiveExtractor(str(staging), TargetArchitecture.ARM64).extract(archive)

    assert not (stale / "leftover").exists()


def test_fallback_discovers_directory_when_listing_fails(tmp_path, tarball_factory, monkeypatch):
    staging = tmp_path / "staging"
    archive = write_archive(tmp_path, tarball_factory("tailscale_1.76.1_arm64", BINARIES))
    extractor = ArchiveExtractor(str(staging), TargetArchitecture.ARM64)
    monkeypatch.setattr(extractor, "list_top_dir", lambda path: None)

    bundle = extractor.extract(archive)

    assert bundle.top_dir == "tailscale_1.76.1_arm64"
    assert bundle.source_dir == str(staging / "extract" / "tailscale_1.76.1_arm64")


def test_fallback_without_matching_directory(tmp_path, tarball_factory, monkeypatch):
    archive = write_archive(tmp_path, tarball_factory("tailscale_1.76.1_amd64", BINARIES))
    extractor = ArchiveExtractor(str(tmp_path / "staging"), TargetArchitecture.ARM64)
    monkeypatch.setattr(extractor, "list_top_dir", lambda path: None)

    with pytest.raises(ExtractionFailed):
        extractor.extract(archive)


def test_host_tar_fallback(tmp_path, tarball_factory, monkeypatch):
    """tarfile 이 실패하면 호스트 tar -xf, -xzf 순서로 시도"""
    import tarfile

    archive = write_archive(tmp_path, tarball_factory("D", BINARIES))
    staging = tmp_path / "staging"
    extractor = ArchiveExtractor(str(staging), TargetArchitecture.ARM64)

    real_open = tarfile.open
    opened = []

    def broken_open(*args, **kwargs):
        opened.append(args)
        if len(opened) > 1:
            raise tarfile.ReadError("busybox")
        return real_open(*args, **kwargs)

    commands = []

    def fake_run(cmd, **kwargs):
        commands.append(cmd)
        if cmd[1] == "-xf":
            return subprocess.CompletedProcess(cmd, 1, "", "unsupported")
        target = staging / "D"
        target.mkdir(parents=True, exist_ok=True)
        for name in BINARIES:
            (target / name).write_text("#!/bin/sh\n")
            (target / name).chmod(0o755)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(tarfile, "open", broken_open)
    monkeypatch.setattr(subprocess, "run", fake_run)

    bundle = extractor.extract(archive)

    assert bundle.top_dir == "D"
    assert [cmd[1] for cmd in commands] == ["-xf", "-xzf"]


def test_missing_binary_is_named(tmp_path, tarball_factory):
    archive = write_archive(tmp_path, tarball_factory("D", {"tailscale": "#!/bin/sh\n"}))

    with pytest.raises(RequiredBinaryMissing) as excinfo:
        ArchiveExtractor(str(tmp_path / "staging"), TargetArchitecture.ARM64).extract(archive)

    assert excinfo.value.filename == "tailscaled"
    assert "tailscaled" in str(excinfo.value)


def test_non_executable_binary_is_rejected(tmp_path, tarball_factory):
    archive = write_archive(tmp_path, tarball_factory("D", BINARIES, mode=0o644))

    with pytest.raises(RequiredBinaryMissing):
        ArchiveExtractor(str(tmp_path / "staging"), TargetArchitecture.ARM64).extract(archive)


def test_path_traversal_is_rejected(tmp_path, tarball_factory):
    archive = write_archive(tmp_path, tarball_factory("..", {"evil": "x"}))
    extractor = ArchiveExtractor(str(tmp_path / "staging"), TargetArchitecture.ARM64)

    with pytest.raises(ExtractionFailed):
        extractor.extract(archive)
    assert not (tmp_path / "evil").exists()
