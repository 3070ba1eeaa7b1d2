from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from isobuild.modules import mount, reaper, utils
from isobuild.modules.chroot import ChrootRoot

ORIGINAL_INVOKE_RC_D = "#!/bin/sh\n# original invoke-rc.d\n"

DEFAULT_CONFIG_YAML = """\
config_version: "0.4"
target_ubuntu_version: noble
target_ubuntu_mirror: http://mirror.example/ubuntu/
target_name: test-image
"""


def _norm(path: str) -> str:
    return os.path.normpath(os.path.realpath(path))


class FakeSystem:
    """In-memory stand-in for sudo, mount tables, dpkg-divert and fuser."""

    def __init__(self) -> None:
        self.mounted: set[str] = set()
        self.diversions: set[str] = set()
        self.commands: list[list[str]] = []
        self.cwds: list[str | None] = []
        self.chroot_execs: list[list[str]] = []
        self.fail: set[str] = set()
        self.holders = 0
        self.on_chroot_exec: Callable[[list[str]], None] | None = None

    # -- views ---------------------------------------------------------------
    def table(self) -> list[str]:
        return sorted(self.mounted)

    def ran(self, *words: str) -> list[list[str]]:
        return [c for c in self.commands if all(w in c for w in words)]

    # -- runner --------------------------------------------------------------
    def run(self, cmd, cwd=None, env=None, check=True, interactive=False):
        cmd = [str(c) for c in cmd]
        self.commands.append(cmd)
        self.cwds.append(cwd)
        rc, out = self._dispatch(cmd)
        # falhas simuladas respondem em stderr, como os comandos reais
        err = out if rc != 0 else ""
        out = "" if rc != 0 else out
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, out, err)
        return rc, out, err

    def _dispatch(self, cmd: list[str]) -> tuple[int, str]:
        joined = " ".join(cmd)
        for pattern in self.fail:
            if pattern in joined:
                return 1, "simulated failure"

        if cmd and cmd[0] == "sudo":
            cmd = cmd[1:]
        prog, args = cmd[0], cmd[1:]

        if prog == "mount":
            self.mounted.add(_norm(args[-1]))
            return 0, ""
        if prog == "umount":
            target = _norm(args[-1])
            if target not in self.mounted:
                return 32, "not mounted"
            self.mounted.discard(target)
            return 0, ""
        if prog == "mkdir":
            for path in args:
                if path != "-p":
                    os.makedirs(path, exist_ok=True)
            return 0, ""
        if prog == "install":
            mode, src, dst = args[args.index("-m") + 1], args[-2], args[-1]
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            shutil.copyfile(src, dst)
            os.chmod(dst, int(mode, 8))
            return 0, ""
        if prog == "rm":
            for path in args[1:]:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                elif os.path.lexists(path):
                    os.remove(path)
            return 0, ""
        if prog == "mv":
            shutil.move(args[0], os.path.join(args[1], os.path.basename(args[0])))
            return 0, ""
        if prog == "du":
            return 0, f"123456\t{args[-1]}"
        if prog == "fuser":
            if "-k" in args:
                if self.holders:
                    self.holders -= 1
                    return 0, "killed"
                return 1, ""
            return (0, "holders") if self.holders else (1, "")
        if prog == "chroot":
            return self._chroot(args[0], args[1:])
        return 0, ""

    def _chroot(self, root: str, cmd: list[str]) -> tuple[int, str]:
        if cmd and cmd[0] == "env":
            cmd = cmd[1:]
            while cmd and "=" in cmd[0]:
                cmd = cmd[1:]
        if cmd[0] == "dpkg-divert":
            target = cmd[-1]
            host = os.path.join(root, target.lstrip("/"))
            if "--list" in cmd:
                if target in self.diversions:
                    return 0, f"local diversion of {target} to {target}.distrib"
                return 0, ""
            if "--add" in cmd:
                self.diversions.add(target)
                if os.path.exists(host):
                    os.replace(host, host + ".distrib")
                return 0, ""
            if "--remove" in cmd:
                self.diversions.discard(target)
                if os.path.exists(host + ".distrib"):
                    os.replace(host + ".distrib", host)
                return 0, ""
        self.chroot_execs.append(cmd)
        if self.on_chroot_exec is not None:
            self.on_chroot_exec(cmd)
        return 0, ""


@pytest.fixture
def fake_system(monkeypatch: pytest.MonkeyPatch) -> FakeSystem:
    fs = FakeSystem()
    monkeypatch.setattr(utils, "run", fs.run)
    monkeypatch.setattr(utils, "which", lambda prog: f"/usr/bin/{prog}")
    monkeypatch.setattr(utils, "url_exists", lambda url, timeout=10.0: True)
    monkeypatch.setattr(mount, "read_mount_table", fs.table)
    monkeypatch.setattr(reaper.time, "sleep", lambda seconds: None)
    return fs


def make_rootfs(root: Path) -> Path:
    sbin = root / "usr" / "sbin"
    sbin.mkdir(parents=True)
    (sbin / "invoke-rc.d").write_text(ORIGINAL_INVOKE_RC_D, encoding="utf-8")
    return root


@pytest.fixture
def chroot_root(tmp_path: Path, fake_system: FakeSystem) -> ChrootRoot:
    return ChrootRoot(str(make_rootfs(tmp_path / "chroot")))


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    (tmp_path / "default_config.yml").write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    return tmp_path


SUDO_WARNING = "sudo: unable to resolve host box: Name or service not known"


def noisy_sudo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, body: str = 'exec "$@"') -> Path:
    """Troca o sudo por um script que sempre avisa em stderr antes de rodar body."""
    script = tmp_path / "sudo.sh"
    script.write_text(f'#!/bin/sh\necho "{SUDO_WARNING}" >&2\n{body}\n', encoding="utf-8")
    monkeypatch.setattr(utils, "SUDO", ["sh", str(script)])
    return script
