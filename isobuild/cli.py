#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py - CLI do isobuild

Uso: isobuild [--workdir DIR] [--config FILE] [-v] [start] [-] [end]

Ordem: configuração (versão) -> host -> intervalo de etapas -> guard armado
-> etapas. O teardown do chroot roda em qualquer saída.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Optional, Sequence

from isobuild.modules import (
    config as config_mod,
    log as log_mod,
    pipeline as pipeline_mod,
    stages as stages_mod,
    utils as utils_mod,
)
from isobuild.modules.chroot import ChrootError
from isobuild.modules.cleanup import CleanupGuard
from isobuild.modules.mount import MountError

PROG = "isobuild"

logger = log_mod.get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=PROG,
        description="Gera uma ISO inicializável (BIOS/EFI) do Ubuntu a partir de um chroot.",
    )
    p.add_argument("stages", nargs="*", metavar="STAGE",
                   help="[start] [-] [end]; etapas: " + " ".join(stages_mod.stage_names()))
    p.add_argument("--workdir", default=os.getcwd(),
                   help="Diretório de trabalho com config e chroot/ (padrão: diretório atual)")
    p.add_argument("--config", default=None, help="Arquivo de configuração YAML")
    p.add_argument("-v", "--verbose", action="store_true", help="Mostra a saída dos comandos")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    workdir = os.path.abspath(args.workdir)
    log_mod.setup(verbose=args.verbose)

    try:
        cfg = config_mod.load_config(workdir, args.config)
    except config_mod.ConfigError as e:
        logger.error("%s", e)
        return 1
    log_mod.setup(os.path.join(workdir, cfg.log_dir), verbose=args.verbose)
    logger.debug("Configuração carregada de %s", cfg.source)

    try:
        utils_mod.check_host()
    except utils_mod.HostError as e:
        logger.error("%s", e)
        return 1

    registry = stages_mod.STAGES
    try:
        selected = pipeline_mod.resolve_range(args.stages, registry)
    except pipeline_mod.UsageError as e:
        names = [s.name for s in registry]
        print(pipeline_mod.usage(PROG, names, str(e)), file=sys.stderr)
        return 1

    ctx = stages_mod.BuildContext.create(cfg, workdir)
    try:
        with CleanupGuard(ctx.chroot.exit):
            pipeline_mod.run_pipeline(selected.select(registry), ctx)
    except (stages_mod.StageError, ChrootError, MountError) as e:
        log_mod.exception("Build falhou")
        logger.error("Build falhou: %s", e)
        return 1
    except Exception as e:
        log_mod.exception("Erro inesperado")
        logger.error("Build falhou (erro inesperado): %s: %s", type(e).__name__, e)
        return 1

    logger.info("%s - build inicial concluído!", PROG)
    return 0


if __name__ == "__main__":
    sys.exit(main())
