import logging
import os
import subprocess
import threading
import traceback
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional

# -------------------------
# Configuração inicial
# -------------------------
LOGFILE_NAME = "isobuild.log"

_root_logger = logging.getLogger("isobuild")
_root_logger.setLevel(logging.DEBUG)  # captura tudo
_console: Optional[logging.Handler] = None
_file: Optional[logging.Handler] = None


class ColorFormatter(logging.Formatter):
    """Formata mensagens com cores para o console"""
    COLORS = {
        logging.DEBUG: "\033[36m",   # ciano
        logging.INFO: "\033[32m",    # verde
        logging.WARNING: "\033[33m", # amarelo
        logging.ERROR: "\033[31m",   # vermelho
        logging.CRITICAL: "\033[41m" # fundo vermelho
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        module = f"[{record.name}]" if record.name != "isobuild" else ""
        msg = super().format(record)
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{self.RESET} {msg}"


def setup(log_dir: Optional[str] = None, verbose: bool = False) -> None:
    """
    Configura handlers globais.
    O console é criado uma única vez; o arquivo rotativo é trocado quando
    log_dir muda (um log por workdir).
    """
    global _console, _file

    if _console is None:
        _console = logging.StreamHandler()
        _console.setFormatter(ColorFormatter("%(message)s"))
        _root_logger.addHandler(_console)
    _console.setLevel(logging.DEBUG if verbose else logging.INFO)

    if not log_dir:
        return

    logfile = os.path.join(log_dir, LOGFILE_NAME)
    if _file is not None:
        if getattr(_file, "baseFilename", None) == os.path.abspath(logfile):
            return
        _root_logger.removeHandler(_file)
        _file.close()

    os.makedirs(log_dir, exist_ok=True)
    _file = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5)
    _file.setLevel(logging.DEBUG)
    _file.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    _root_logger.addHandler(_file)


# -------------------------
# API pública
# -------------------------
def get_logger(name: str = "isobuild"):
    """Obtém sub-logger (ex.: log.get_logger("chroot"))"""
    return _root_logger.getChild(name)


def exception(msg: str):
    """Loga erro com traceback completo (somente no arquivo)"""
    tb = traceback.format_exc()
    _root_logger.debug("%s\n%s", msg, tb)


def _drain(stream, lines: list, prefix: str, logger) -> None:
    for line in stream:
        line = line.rstrip()
        lines.append(line)
        logger.debug("[%s] %s", prefix, line)


def run_cmd(cmd: list[str], cwd: str | None = None, env: dict | None = None,
            interactive: bool = False):
    """
    Executa comando externo registrando stdout/stderr em tempo real.
    stderr é lido numa thread para não bloquear em comandos longos; bytes
    que não são UTF-8 viram U+FFFD.
    Com interactive=True o comando herda o terminal e nada é capturado.
    Retorna (returncode, stdout, stderr).
    """
    logger = get_logger("cmd")
    logger.info("Executando: %s", " ".join(cmd))

    if interactive:
        rc = subprocess.run(cmd, cwd=cwd, env=env).returncode
        if rc != 0:
            logger.error("Comando falhou com código %s", rc)
        return rc, "", ""

    stdout_lines, stderr_lines = [], []
    with subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        errors="replace",
        bufsize=1
    ) as process:
        err_reader = threading.Thread(
            target=_drain, args=(process.stderr, stderr_lines, "stderr", logger), daemon=True
        )
        err_reader.start()
        _drain(process.stdout, stdout_lines, "stdout", logger)
        err_reader.join()
        process.wait()
    rc = process.returncode

    if rc != 0:
        logger.error("Comando falhou com código %s", rc)
        for line in stderr_lines[-5:]:
            logger.error("[stderr] %s", line)

    return rc, "\n".join(stdout_lines), "\n".join(stderr_lines)
