#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
mount.py - Montagens idempotentes

- Consulta a tabela de montagens viva (/proc/self/mountinfo)
- ensure_mounted / ensure_unmounted não repetem operações já feitas
- Lista montagens sob um diretório, mais profundas primeiro
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import List, Optional

from isobuild.modules import log, utils

logger = log.get_logger("mount")

MOUNTINFO = "/proc/self/mountinfo"


class MountError(RuntimeError):
    pass


@dataclass(frozen=True)
class MountPoint:
    source: str
    target: str
    fstype: Optional[str] = None   # None => bind mount
    options: Optional[str] = None

    @property
    def is_bind(self) -> bool:
        return self.fstype is None

    def command(self) -> List[str]:
        if self.is_bind:
            return ["mount", "--bind", self.source, self.target]
        cmd = ["mount", "-t", self.fstype]
        if self.options:
            cmd += ["-o", self.options]
        return cmd + [self.source, self.target]


# ---------------------------
# Tabela de montagens
# ---------------------------
def _unescape(path: str) -> str:
    # mountinfo usa escapes octais (\040 para espaço)
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), path)


def _normalize(path: str) -> str:
    return os.path.normpath(os.path.realpath(path))


def read_mount_table() -> List[str]:
    """Retorna os pontos de montagem ativos."""
    try:
        with open(MOUNTINFO, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        logger.warning("Não foi possível ler %s: %s", MOUNTINFO, e)
        return []
    mounts = []
    for line in lines:
        parts = line.split()
        if len(parts) < 5:
            continue
        mounts.append(os.path.normpath(_unescape(parts[4])))
    return mounts


def is_mounted(path: str) -> bool:
    return _normalize(path) in set(read_mount_table())


def mounts_under(root: str) -> List[str]:
    """Montagens estritamente abaixo de root, mais profundas primeiro."""
    root_real = _normalize(root)
    found = set()
    for mp in read_mount_table():
        if mp == root_real:
            continue
        try:
            if os.path.commonpath([root_real, mp]) != root_real:
                continue
        except ValueError:
            continue
        found.add(mp)
    return sorted(found, key=lambda p: (p.count(os.sep), p), reverse=True)


# ---------------------------
# Operações
# ---------------------------
def ensure_mounted(mount: MountPoint) -> bool:
    """
    Monta se ainda não estiver montado.
    Retorna True se montou agora, False se já estava montado.
    """
    if is_mounted(mount.target):
        logger.debug("Já montado: %s", mount.target)
        return False
    try:
        rc, _, err = utils.run_privileged(mount.command(), check=False)
    except OSError as e:
        raise MountError(f"Falha ao montar {mount.target}: {e}") from e
    if rc != 0:
        raise MountError(f"Falha ao montar {mount.target} (código {rc}): {err.strip()}")
    logger.info("Montado %s em %s", mount.fstype or "bind", mount.target)
    return True


def ensure_unmounted(path: str) -> bool:
    """
    Desmonta se estiver montado. Falhas são registradas e ignoradas.
    Retorna True se desmontou agora.
    """
    if not is_mounted(path):
        return False
    try:
        rc, _, err = utils.run_privileged(["umount", path], check=False)
    except OSError as e:
        logger.warning("Falha ao desmontar %s: %s", path, e)
        return False
    if rc != 0:
        logger.warning("Falha ao desmontar %s (código %s): %s", path, rc, err.strip())
        return False
    logger.debug("Desmontado: %s", path)
    return True


def lazy_unmount(path: str) -> bool:
    """umount -l, sem erro."""
    try:
        rc, _, err = utils.run_privileged(["umount", "-l", path], check=False)
    except OSError as e:
        logger.warning("Falha no umount -l de %s: %s", path, e)
        return False
    if rc != 0:
        logger.warning("Falha no umount -l de %s (código %s): %s", path, rc, err.strip())
        return False
    return True
