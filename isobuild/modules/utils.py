import os
import shutil
import subprocess
import tempfile
from typing import Optional

import requests

from isobuild.modules import log

logger = log.get_logger("utils")

# Prefixo para comandos que exigem root
SUDO = ["sudo"]


class HostError(Exception):
    pass


# -------------------------
# Sistema de arquivos
# -------------------------
def install_file(src: str, dst: str, mode: int = 0o644):
    """Copia arquivo para um caminho de root criando diretórios (install -D)"""
    run(SUDO + ["install", "-D", "-m", f"{mode:04o}", src, dst])


def write_file(dst: str, content: str, mode: int = 0o644):
    """Grava conteúdo num caminho de root via arquivo temporário + install"""
    fd, tmp = tempfile.mkstemp(prefix="isobuild-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        install_file(tmp, dst, mode=mode)
    finally:
        os.remove(tmp)


def rm(*paths: str, recursive: bool = False) -> bool:
    """Remove caminhos de root; nunca falha (rm -f)"""
    flags = "-rf" if recursive else "-f"
    rc, _, _ = run(SUDO + ["rm", flags, *paths], check=False)
    return rc == 0


# -------------------------
# Execução de comandos
# -------------------------
def run(cmd: list[str], cwd: str | None = None, env: dict | None = None, check=True,
        interactive: bool = False):
    """Wrapper para rodar comandos com log"""
    rc, out, err = log.run_cmd(cmd, cwd=cwd, env=env, interactive=interactive)
    if check and rc != 0:
        raise subprocess.CalledProcessError(rc, cmd, out, err)
    return rc, out, err


def run_privileged(cmd: list[str], cwd: str | None = None, check=True, interactive: bool = False):
    """Executa comando com sudo"""
    return run(SUDO + cmd, cwd=cwd, check=check, interactive=interactive)


# -------------------------
# Host e rede
# -------------------------
def check_host():
    """
    O builder roda como usuário comum e usa sudo para cada operação de root.
    Hosts que não são Debian/Ubuntu geram apenas um aviso.
    """
    if os.geteuid() == 0:
        raise HostError("Este programa não deve ser executado como 'root'")

    distro = ""
    if shutil.which("lsb_release"):
        try:
            rc, out, _ = run(["lsb_release", "-i"], check=False)
            distro = out if rc == 0 else ""
        except OSError:
            distro = ""
    if "Ubuntu" not in distro and "Debian" not in distro:
        logger.warning("O sistema não é Debian nem Ubuntu e não foi testado")


def url_exists(url: str, timeout: float = 10.0) -> bool:
    """HEAD simples para checar se um recurso remoto existe"""
    try:
        r = requests.head(url, allow_redirects=True, timeout=timeout)
    except requests.RequestException as e:
        logger.debug("HEAD %s falhou: %s", url, e)
        return False
    return r.status_code < 400


def mirror_release_url(mirror: str, version: str) -> str:
    """URL do arquivo Release de uma suíte no mirror"""
    return f"{mirror.rstrip('/')}/dists/{version}/Release"


def which(prog: str) -> Optional[str]:
    return shutil.which(prog)
