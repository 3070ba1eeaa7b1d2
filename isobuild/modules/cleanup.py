"""
cleanup.py - Finalizador único do processo

CleanupGuard registra um callback no atexit e handlers para SIGINT,
SIGTERM e SIGHUP. Um sinal vira SystemExit(128 + signum), assim as etapas
desempilham normalmente (blocos finally incluídos) antes do teardown.

O finalizador roda no máximo uma vez; erros dele são registrados e nunca
substituem a exceção original.
"""

from __future__ import annotations

import atexit
import signal
from typing import Callable, Dict

from isobuild.modules import log

logger = log.get_logger("cleanup")

SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class CleanupGuard:
    """
    Exemplo:
        with CleanupGuard(ctx.chroot.exit):
            run_pipeline(selected, ctx)
    """

    def __init__(self, finalizer: Callable[[], object]):
        self.finalizer = finalizer
        self.done = False
        self._armed = False
        self._running = False
        self._previous: Dict[int, object] = {}

    # ---------------------------
    # Registro
    # ---------------------------
    def arm(self) -> "CleanupGuard":
        if self._armed:
            return self
        atexit.register(self.run)
        for sig in SIGNALS:
            try:
                self._previous[sig] = signal.signal(sig, self._on_signal)
            except (ValueError, OSError) as e:
                # fora da thread principal não há como instalar handlers
                logger.debug("Handler para %s não instalado: %s", sig, e)
        self._armed = True
        return self

    def disarm(self) -> None:
        if not self._armed:
            return
        atexit.unregister(self.run)
        self._restore_signals()
        self._armed = False

    def _restore_signals(self) -> None:
        for sig, handler in self._previous.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError, TypeError):
                pass
        self._previous.clear()

    def _on_signal(self, signum, frame):
        if self._running:
            logger.warning("Sinal %s ignorado: limpeza em andamento", signum)
            return
        logger.warning("Interrompido pelo sinal %s, desfazendo o chroot ...", signum)
        raise SystemExit(128 + signum)

    # ---------------------------
    # Execução
    # ---------------------------
    def run(self) -> bool:
        """Executa o finalizador uma única vez. Retorna True se rodou agora."""
        if self.done or self._running:
            return False
        self._running = True
        try:
            self.finalizer()
        except Exception as e:
            logger.warning("Falha durante a limpeza: %s", e)
        finally:
            self._running = False
            self.done = True
        return True

    def __enter__(self):
        return self.arm()

    def __exit__(self, exc_type, exc, tb):
        try:
            self.run()
        finally:
            self.disarm()
        return False  # não suprimir exceções

