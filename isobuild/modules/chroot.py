#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/chroot.py - Ciclo de vida do chroot de build

- enter(): diretórios, montagens virtuais/bind, bloqueio de serviços e
  desvio (dpkg-divert) do invoke-rc.d
- exit(): desfaz tudo em ordem segura; cada passo é independente e nunca
  lança exceção, pois também roda durante erros e interrupções
- A varredura final desmonta (lazy) qualquer coisa que ainda esteja sob o
  chroot, inclusive montagens de uma execução anterior que travou

Estados: absent -> prepared -> built -> torn-down (torn-down a partir de
qualquer estado).
"""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Optional

from isobuild.modules import log, mount, reaper, utils
from isobuild.modules.mount import MountPoint

logger = log.get_logger("chroot")

# Estados
ABSENT = "absent"
PREPARED = "prepared"
BUILT = "built"
TORN_DOWN = "torn-down"

# policy-rc.d saindo com 101 faz os maintainer scripts não iniciarem serviços
POLICY_RC_D = "usr/sbin/policy-rc.d"
POLICY_RC_D_SCRIPT = "#!/bin/sh\nexit 101\n"

INVOKE_RC_D = "/usr/sbin/invoke-rc.d"
INVOKE_RC_D_NOOP = "#!/bin/sh\nexit 0\n"
DIVERT_SUFFIX = ".distrib"

DIRS = ("dev", "proc", "sys", "run", "dev/pts")

# (source, destino relativo, tipo, opções) na ordem de montagem
MOUNT_PLAN = (
    ("/dev", "dev", None, None),
    ("/run", "run", None, None),
    ("proc", "proc", "proc", None),
    ("sysfs", "sys", "sysfs", None),
    ("devpts", "dev/pts", "devpts", "gid=5,mode=620"),
)

# Mais profundas primeiro para evitar "device busy" nos pais
UMOUNT_ORDER = ("dev/pts", "dev", "proc", "sys", "run")


class ChrootError(RuntimeError):
    pass


class ChrootRoot:
    """Árvore de staging e o estado das montagens/bloqueios que a tornam utilizável."""

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self.mounts: List[MountPoint] = [
            MountPoint(source=src, target=self.host_path(dst), fstype=fstype, options=opts)
            for src, dst, fstype, opts in MOUNT_PLAN
        ]
        self.service_block_installed = False
        self.diverted = False
        self.state = ABSENT

    def __repr__(self):
        return f"ChrootRoot({self.path!r}, state={self.state})"

    def host_path(self, rel: str) -> str:
        """Caminho no host de um caminho dentro do chroot."""
        return os.path.join(self.path, rel.lstrip("/"))

    @property
    def policy_rc_d(self) -> str:
        return self.host_path(POLICY_RC_D)

    @property
    def invoke_rc_d(self) -> str:
        return self.host_path(INVOKE_RC_D)

    # ---------------------------
    # Execução dentro do chroot
    # ---------------------------
    def run(self, cmd: List[str], env: Optional[Dict[str, str]] = None,
            check: bool = True, interactive: bool = False):
        """chroot ROOT [env K=V ...] cmd"""
        full = ["chroot", self.path]
        if env:
            full += ["env"] + [f"{k}={v}" for k, v in env.items()]
        return utils.run_privileged(full + list(cmd), check=check, interactive=interactive)

    # ---------------------------
    # Entrada
    # ---------------------------
    def enter(self) -> None:
        """Deixa o chroot pronto para provisionamento. Falhas são fatais."""
        if not os.path.isdir(self.path):
            raise ChrootError(f"Chroot não existe: {self.path} (rode debootstrap antes)")

        logger.info("Preparando chroot %s", self.path)
        try:
            utils.run_privileged(["mkdir", "-p"] + [self.host_path(d) for d in DIRS])
        except Exception as e:
            raise ChrootError(f"Falha ao criar pontos de montagem em {self.path}: {e}") from e

        for mp in self.mounts:
            mount.ensure_mounted(mp)

        try:
            utils.write_file(self.policy_rc_d, POLICY_RC_D_SCRIPT, mode=0o755)
        except Exception as e:
            raise ChrootError(f"Falha ao instalar {POLICY_RC_D}: {e}") from e
        self.service_block_installed = True

        if not self._is_diverted():
            self._divert()

        self.state = PREPARED

    def _is_diverted(self) -> bool:
        # só stdout: avisos do sudo vão para stderr
        rc, out, _ = self.run(["dpkg-divert", "--list", INVOKE_RC_D], check=False)
        return rc == 0 and any(
            line.startswith(("local diversion", "diversion")) and INVOKE_RC_D in line
            for line in out.splitlines()
        )

    def _divert(self) -> None:
        try:
            self.run(["dpkg-divert", "--local", "--rename", "--add", INVOKE_RC_D])
            self.diverted = True
            utils.write_file(self.invoke_rc_d, INVOKE_RC_D_NOOP, mode=0o755)
        except Exception as e:
            raise ChrootError(f"Falha ao desviar {INVOKE_RC_D}: {e}") from e
        logger.info("%s desviado para no-op", INVOKE_RC_D)

    def mark_built(self) -> None:
        if self.state != PREPARED:
            raise ChrootError(f"Chroot em estado {self.state}, esperado {PREPARED}")
        self.state = BUILT

    # ---------------------------
    # Saída
    # ---------------------------
    def exit(self) -> List[str]:
        """
        Desfaz enter(). Pode ser chamado qualquer número de vezes, a partir
        de qualquer estado. Retorna as montagens que ainda restam sob o chroot.
        """
        logger.info("Desmontando chroot %s", self.path)

        self._step("restaurar invoke-rc.d", self._undivert)
        self._step("remover policy-rc.d", self._remove_service_block)
        if os.path.isdir(self.path):
            self._step("encerrar processos", lambda: reaper.reap(self.path))
        for rel in UMOUNT_ORDER:
            self._step(f"desmontar {rel}", lambda rel=rel: mount.ensure_unmounted(self.host_path(rel)))
        self._step("varredura final", self._sweep)

        self.state = TORN_DOWN
        leftover = self._step("listar montagens", lambda: mount.mounts_under(self.path)) or []
        if leftover:
            logger.warning("Montagens restantes sob %s: %s", self.path, ", ".join(leftover))
        return leftover

    def _step(self, name: str, fn: Callable):
        try:
            return fn()
        except Exception as e:
            logger.warning("Falha ao %s: %s", name, e)
            return None

    def _undivert(self) -> None:
        # .distrib também cobre desvios deixados por uma execução que travou
        if not self.diverted and not os.path.exists(self.invoke_rc_d + DIVERT_SUFFIX):
            return
        utils.rm(self.invoke_rc_d)
        rc, _, err = self.run(["dpkg-divert", "--rename", "--remove", INVOKE_RC_D], check=False)
        if rc != 0:
            logger.warning("dpkg-divert --remove falhou (código %s): %s", rc, err.strip())
            return
        self.diverted = False
        logger.debug("%s restaurado", INVOKE_RC_D)

    def _remove_service_block(self) -> None:
        if os.path.lexists(self.policy_rc_d) and not utils.rm(self.policy_rc_d):
            return
        self.service_block_installed = False

    def _sweep(self) -> None:
        for mp in mount.mounts_under(self.path):
            logger.warning("Montagem remanescente, umount -l: %s", mp)
            mount.lazy_unmount(mp)
