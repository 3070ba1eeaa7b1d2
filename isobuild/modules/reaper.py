"""
reaper.py - Encerra processos que ainda usam o chroot

Melhor esforço: lista os processos, tenta matá-los algumas vezes e nunca
lança exceção. Não garante que nada sobrou, só aumenta a chance de o
umount funcionar em seguida.

fuser é chamado sem -m: com -m um diretório que não é ponto de montagem
(ou um bind do host como /dev) seleciona todos os processos do host.
"""

import time

from isobuild.modules import log, utils

logger = log.get_logger("reaper")

ATTEMPTS = 3
DELAY = 1.0


def reap(root: str, attempts: int = ATTEMPTS, delay: float = DELAY) -> bool:
    """
    Retorna True se a última passada não encontrou nenhum processo.
    """
    if not utils.which("fuser"):
        logger.warning("fuser não encontrado; processos no chroot não serão encerrados")
        return False

    try:
        utils.run_privileged(["fuser", "-v", root], check=False)
    except OSError as e:
        logger.warning("Falha ao listar processos em %s: %s", root, e)

    clean = False
    for attempt in range(1, attempts + 1):
        try:
            rc, out, err = utils.run_privileged(["fuser", "-k", "-v", root], check=False)
        except OSError as e:
            logger.warning("Falha ao encerrar processos em %s: %s", root, e)
            rc, out, err = 0, "", ""
        # fuser sai com 1, sem saída, quando nenhum processo usa o caminho;
        # qualquer outra falha (sudo sem senha, opção inválida) não é "limpo"
        if rc == 1 and not out.strip() and not err.strip():
            clean = True
            break
        if rc != 0:
            logger.warning("fuser -k falhou em %s (código %s): %s", root, rc, err.strip())
            break
        logger.debug("Passada %d/%d: processos encerrados em %s", attempt, attempts, root)
        time.sleep(delay)

    if not clean:
        logger.warning("Ainda pode haver processos usando %s", root)
    return clean
