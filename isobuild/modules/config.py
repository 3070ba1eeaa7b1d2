#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py - Configuração do isobuild

- Suporta --config > $ISOBUILD_CONFIG > <workdir>/config.yml > <workdir>/default_config.yml
- Arquivo em YAML, mesclado sobre os valores padrão
- Verifica a versão do arquivo antes de qualquer etapa
- A configuração carregada é imutável (BuildConfig) e passada explicitamente
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

import yaml
from packaging.version import InvalidVersion, Version

# Versão de arquivo aceita por este builder
CONFIG_VERSION = "0.4"

ENV_VAR = "ISOBUILD_CONFIG"
USER_CONFIG = "config.yml"
DEFAULT_CONFIG = "default_config.yml"

# Valores padrão (o arquivo precisa informar config_version)
DEFAULTS = {
    "target_ubuntu_version": "noble",
    "target_ubuntu_mirror": "http://us.archive.ubuntu.com/ubuntu/",
    "target_name": "ubuntu-from-scratch",
    "target_arch": "amd64",
    "provision_script": "chroot_build.sh",
    "host_packages": [
        "debootstrap", "squashfs-tools", "xorriso",
        "genisoimage", "rsync", "psmisc",
    ],
    "log_dir": "logs",
}


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class BuildConfig:
    config_version: str
    target_ubuntu_version: str
    target_ubuntu_mirror: str
    target_name: str
    target_arch: str = "amd64"
    provision_script: str = "chroot_build.sh"
    host_packages: Tuple[str, ...] = ()
    log_dir: str = "logs"
    source: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: dict, source: Optional[str] = None) -> "BuildConfig":
        """Valida a versão e monta a configuração a partir de um dict já mesclado."""
        check_version(data.get("config_version"), source)
        merged = {**DEFAULTS, **data}
        for key in ("target_ubuntu_version", "target_ubuntu_mirror", "target_name"):
            if not merged.get(key):
                raise ConfigError(f"Parâmetro obrigatório ausente: {key} ({source or 'config'})")
        packages = merged.get("host_packages") or []
        if isinstance(packages, str):
            packages = packages.split()
        return cls(
            config_version=str(merged["config_version"]),
            target_ubuntu_version=str(merged["target_ubuntu_version"]),
            target_ubuntu_mirror=str(merged["target_ubuntu_mirror"]),
            target_name=str(merged["target_name"]),
            target_arch=str(merged["target_arch"]),
            provision_script=str(merged["provision_script"]),
            host_packages=tuple(str(p) for p in packages),
            log_dir=str(merged["log_dir"]),
            source=source,
        )

    def as_env(self) -> dict:
        """Variáveis exportadas para o script de provisionamento dentro do chroot."""
        return {
            "TARGET_UBUNTU_VERSION": self.target_ubuntu_version,
            "TARGET_UBUNTU_MIRROR": self.target_ubuntu_mirror,
            "TARGET_NAME": self.target_name,
            "TARGET_ARCH": self.target_arch,
        }


def check_version(found, source: Optional[str] = None) -> None:
    """Falha se a versão do arquivo não for exatamente CONFIG_VERSION."""
    if found is not None and str(found) == CONFIG_VERSION:
        return
    where = f" em {source}" if source else ""
    if found is None:
        raise ConfigError(
            f"config_version ausente{where}, esperado {CONFIG_VERSION}. "
            f"Atualize a partir de {DEFAULT_CONFIG}."
        )
    try:
        age = "antiga" if Version(str(found)) < Version(CONFIG_VERSION) else "mais nova"
    except InvalidVersion:
        age = "inválida"
    raise ConfigError(
        f"Versão de config {age}: {found}{where}, esperado {CONFIG_VERSION}. "
        f"Atualize a partir de {DEFAULT_CONFIG}."
    )


def _load_from(path: str) -> dict:
    """Carrega um arquivo YAML; erros de leitura ou de sintaxe são fatais."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Não foi possível ler {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} não contém um mapeamento YAML")
    return data


def find_config(workdir: str, path: Optional[str] = None) -> str:
    """Resolve o arquivo de configuração seguindo a hierarquia."""
    if path:
        if not os.path.isfile(path):
            raise ConfigError(f"Arquivo de configuração não encontrado: {path}")
        return path

    env_path = os.getenv(ENV_VAR)
    if env_path:
        if not os.path.isfile(env_path):
            raise ConfigError(f"${ENV_VAR} aponta para arquivo inexistente: {env_path}")
        return env_path

    for name in (USER_CONFIG, DEFAULT_CONFIG):
        candidate = os.path.join(workdir, name)
        if os.path.isfile(candidate):
            return candidate

    raise ConfigError(
        f"Arquivo de configuração padrão {os.path.join(workdir, DEFAULT_CONFIG)} não encontrado, abortando."
    )


def load_config(workdir: str, path: Optional[str] = None) -> BuildConfig:
    """Carrega e valida a configuração (uma vez por processo)."""
    found = find_config(workdir, path)
    return BuildConfig.from_mapping(_load_from(found), source=found)


def config_files(workdir: str) -> list:
    """Arquivos de configuração presentes no workdir, copiados para dentro do chroot."""
    return [
        os.path.join(workdir, name)
        for name in (DEFAULT_CONFIG, USER_CONFIG)
        if os.path.isfile(os.path.join(workdir, name))
    ]


__all__ = [
    "CONFIG_VERSION",
    "DEFAULTS",
    "BuildConfig",
    "ConfigError",
    "check_version",
    "config_files",
    "find_config",
    "load_config",
]
