"""
pipeline.py - Seleção de intervalo e execução sequencial das etapas

Sintaxe: [start] [-] [end]
- "-" sozinho executa todas as etapas
- um nome executa só aquela etapa
- "- end" vai da primeira etapa até end; "start -" vai de start até a última
- "start - end" executa o intervalo inclusivo
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from isobuild.modules import log
from isobuild.modules.stages import BuildContext, Stage, StageError

logger = log.get_logger("pipeline")

RANGE_MARKER = "-"


class UsageError(Exception):
    pass


@dataclass(frozen=True)
class PipelineRange:
    start: int  # inclusivo
    end: int    # exclusivo
    count: int

    def __post_init__(self):
        if not (0 <= self.start < self.end <= self.count):
            raise ValueError(f"Intervalo inválido [{self.start}, {self.end}) para {self.count} etapas")

    def __len__(self):
        return self.end - self.start

    def select(self, stages: Sequence[Stage]) -> List[Stage]:
        return list(stages[self.start:self.end])


def usage(prog: str, names: Sequence[str], message: Optional[str] = None) -> str:
    lines = [message or "Este programa gera uma imagem ISO inicializável do Ubuntu", ""]
    lines += [
        f"Etapas suportadas : {' '.join(names)}",
        "",
        f"Sintaxe: {prog} [start_cmd] [-] [end_cmd]",
        "\texecuta de start_cmd até end_cmd",
        "\tse start_cmd for omitido, começa pela primeira etapa",
        "\tse end_cmd for omitido, termina na última etapa",
        "\tinforme uma única etapa para executar só ela",
        "\tinforme '-' como único argumento para executar todas as etapas",
    ]
    return "\n".join(lines)


def _index(stages: Sequence[Stage], name: str) -> int:
    for stage in stages:
        if stage.name == name:
            return stage.ordinal
    raise UsageError(f"Etapa não encontrada : {name}")


def resolve_range(tokens: Sequence[str], stages: Sequence[Stage]) -> PipelineRange:
    """Converte os argumentos do operador num intervalo contíguo de etapas."""
    count = len(stages)
    tokens = list(tokens)
    if not tokens or len(tokens) > 3:
        raise UsageError("Informe de 1 a 3 argumentos")

    # nomes desconhecidos são rejeitados antes de interpretar a forma
    for tok in tokens:
        if tok != RANGE_MARKER:
            _index(stages, tok)

    markers = [i for i, tok in enumerate(tokens) if tok == RANGE_MARKER]

    if len(tokens) == 1:
        if markers:
            return PipelineRange(0, count, count)
        start = _index(stages, tokens[0])
        return PipelineRange(start, start + 1, count)

    if len(tokens) == 2:
        if markers == [0]:
            return PipelineRange(0, _index(stages, tokens[1]) + 1, count)
        if markers == [1]:
            return PipelineRange(_index(stages, tokens[0]), count, count)
        if not markers:
            raise UsageError(f"Ambíguo: use '{tokens[0]} - {tokens[1]}' para um intervalo")
        raise UsageError("Argumentos inválidos: " + " ".join(tokens))

    if markers != [1]:
        raise UsageError("Argumentos inválidos: " + " ".join(tokens))
    start = _index(stages, tokens[0])
    end = _index(stages, tokens[2]) + 1
    if end <= start:
        raise UsageError(f"Intervalo vazio: {tokens[2]} vem antes de {tokens[0]}")
    return PipelineRange(start, end, count)


def run_pipeline(selected: Sequence[Stage], ctx: BuildContext) -> None:
    """Executa as etapas em ordem; para na primeira falha."""
    for stage in selected:
        logger.info("=====> executando %s ...", stage.name)
        t0 = time.time()
        try:
            stage.action(ctx)
        except subprocess.CalledProcessError as e:
            raise StageError(stage.name, f"comando falhou com código {e.returncode}: {' '.join(map(str, e.cmd))}") from e
        except OSError as e:
            raise StageError(stage.name, str(e)) from e
        logger.info("%s concluída em %.1fs", stage.name, time.time() - t0)
