from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
import requests

from isobuild.modules import log, stages, utils

from tests.conftest import SUDO_WARNING, noisy_sudo


def test_check_host_refuses_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(utils.os, "geteuid", lambda: 0)
    with pytest.raises(utils.HostError, match="root"):
        utils.check_host()


def test_check_host_accepts_ubuntu(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(utils.os, "geteuid", lambda: 1000)
    monkeypatch.setattr(utils.shutil, "which", lambda prog: "/usr/bin/lsb_release")
    monkeypatch.setattr(log, "run_cmd", lambda cmd, **kw: (0, "Distributor ID:\tUbuntu", ""))

    utils.check_host()


def test_run_raises_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(log, "run_cmd", lambda cmd, **kw: (3, "out", ""))

    with pytest.raises(subprocess.CalledProcessError) as info:
        utils.run(["false"])
    assert info.value.returncode == 3
    assert utils.run(["false"], check=False)[0] == 3


def test_run_privileged_prefixes_sudo(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[list[str]] = []
    monkeypatch.setattr(log, "run_cmd", lambda cmd, **kw: seen.append(cmd) or (0, "", ""))

    utils.run_privileged(["umount", "/x"])

    assert seen == [["sudo", "umount", "/x"]]


class _Resp:
    def __init__(self, status: int) -> None:
        self.status_code = status


def test_url_exists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(utils.requests, "head", lambda url, **kw: _Resp(200))
    assert utils.url_exists("http://mirror/dists/noble/Release")

    monkeypatch.setattr(utils.requests, "head", lambda url, **kw: _Resp(404))
    assert not utils.url_exists("http://mirror/dists/nope/Release")

    def offline(url, **kw):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(utils.requests, "head", offline)
    assert not utils.url_exists("http://mirror/dists/noble/Release")


def test_mirror_release_url() -> None:
    assert utils.mirror_release_url("http://m/ubuntu/", "noble") == "http://m/ubuntu/dists/noble/Release"
    assert utils.mirror_release_url("http://m/ubuntu", "noble") == "http://m/ubuntu/dists/noble/Release"


def test_run_cmd_captures_output() -> None:
    rc, out, err = log.run_cmd(["sh", "-c", "echo hello; echo oops >&2; exit 2"])
    assert rc == 2
    assert out == "hello"
    assert err == "oops"


def test_run_cmd_replaces_invalid_utf8() -> None:
    rc, out, _ = log.run_cmd(["sh", "-c", "printf 'caf\\351\\n'"])
    assert rc == 0
    assert out == "caf\ufffd"


def test_run_cmd_large_stderr_does_not_block() -> None:
    # stderr bem maior que o buffer do pipe
    rc, out, err = log.run_cmd(["sh", "-c", "i=0; while [ $i -lt 20000 ]; do echo e$i >&2; i=$((i+1)); done; echo done"])
    assert rc == 0
    assert out == "done"
    assert len(err.splitlines()) == 20000


def test_privileged_output_ignores_sudo_warnings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    noisy_sudo(tmp_path, monkeypatch)
    target = tmp_path / "tree"
    target.mkdir()
    (target / "file").write_bytes(b"x" * 4096)

    rc, out, err = utils.run_privileged(["du", "-sx", "--block-size=1", str(target)])

    assert rc == 0
    assert SUDO_WARNING in err
    assert SUDO_WARNING not in out
    assert stages.du_bytes(out).isdigit()
