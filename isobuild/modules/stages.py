# stages.py
"""
Etapas do build da ISO, em ordem fixa:

- setup_host: instala as ferramentas no host
- debootstrap: cria o sistema base em chroot/
- run_chroot: entra no chroot e roda o script de provisionamento
- build_iso: sai do chroot, comprime o rootfs e gera a ISO híbrida BIOS/EFI

Cada etapa recebe um BuildContext; nenhuma lê estado global.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from isobuild.modules import config, log, utils
from isobuild.modules.chroot import ChrootRoot
from isobuild.modules.config import BuildConfig

logger = log.get_logger("stages")

CHROOT_DIR = "chroot"
STAGED_SCRIPT = "/root/chroot_build.sh"


# Exceções locais
class StageError(Exception):
    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


@dataclass(frozen=True)
class BuildContext:
    config: BuildConfig
    workdir: str
    chroot: ChrootRoot

    @classmethod
    def create(cls, cfg: BuildConfig, workdir: str) -> "BuildContext":
        workdir = os.path.abspath(workdir)
        return cls(config=cfg, workdir=workdir, chroot=ChrootRoot(os.path.join(workdir, CHROOT_DIR)))

    @property
    def image_dir(self) -> str:
        return os.path.join(self.workdir, "image")

    @property
    def casper_dir(self) -> str:
        return os.path.join(self.image_dir, "casper")

    @property
    def iso_path(self) -> str:
        return os.path.join(self.workdir, f"{self.config.target_name}.iso")


@dataclass(frozen=True)
class Stage:
    name: str
    ordinal: int
    action: Callable[[BuildContext], None]


# Etapas ---------------------------------------------------------------------
def setup_host(ctx: BuildContext) -> None:
    utils.run_privileged(["apt-get", "update", "-y"])
    if ctx.config.host_packages:
        utils.run_privileged(["apt-get", "install", "-y", *ctx.config.host_packages])
    utils.run_privileged(["mkdir", "-p", ctx.chroot.path])


def debootstrap(ctx: BuildContext) -> None:
    cfg = ctx.config
    release = utils.mirror_release_url(cfg.target_ubuntu_mirror, cfg.target_ubuntu_version)
    if not utils.url_exists(release):
        logger.warning("Mirror não respondeu para %s; debootstrap pode falhar", release)

    logger.info("debootstrap vai levar alguns minutos ...")
    utils.run_privileged([
        "debootstrap",
        f"--arch={cfg.target_arch}",
        "--variant=minbase",
        cfg.target_ubuntu_version,
        ctx.chroot.path,
        cfg.target_ubuntu_mirror,
    ])


def _staged_files(ctx: BuildContext) -> list:
    """(origem no host, destino dentro do chroot, modo)"""
    script = ctx.config.provision_script
    if not os.path.isabs(script):
        script = os.path.join(ctx.workdir, script)
    files = [(script, STAGED_SCRIPT, 0o755)]
    for path in config.config_files(ctx.workdir):
        files.append((path, "/root/" + os.path.basename(path), 0o644))
    return files


def run_chroot(ctx: BuildContext) -> None:
    files = _staged_files(ctx)
    script = files[0][0]
    if not os.path.isfile(script):
        raise StageError("run_chroot", f"script de provisionamento não encontrado: {script}")

    chroot = ctx.chroot
    chroot.enter()

    staged = []
    try:
        for src, dst, mode in files:
            target = chroot.host_path(dst)
            utils.install_file(src, target, mode=mode)
            staged.append(target)

        env = {"DEBIAN_FRONTEND": os.environ.get("DEBIAN_FRONTEND", "readline")}
        env.update(ctx.config.as_env())
        chroot.run([STAGED_SCRIPT, "-"], env=env, interactive=True)
    finally:
        if staged:
            utils.rm(*staged)

    chroot.mark_built()


# Opções do mksquashfs
SQUASHFS_ARGS = [
    "-noappend", "-no-duplicates", "-no-recovery",
    "-wildcards",
    "-comp", "xz", "-b", "1M", "-Xdict-size", "100%",
    "-e", "var/cache/apt/archives/*",
    "-e", "root/*",
    "-e", "root/.*",
    "-e", "tmp/*",
    "-e", "tmp/.*",
    "-e", "swapfile",
]


def xorriso_args(ctx: BuildContext) -> list:
    """Opções do xorriso para a ISO híbrida (MBR/GPT, El Torito BIOS + EFI)"""
    boot_hybrid = os.path.join(ctx.chroot.path, "usr/lib/grub/i386-pc/boot_hybrid.img")
    return [
        "xorriso",
        "-as", "mkisofs",
        "-iso-level", "3",
        "-full-iso9660-filenames",
        "-J", "-J", "-joliet-long",
        "-volid", ctx.config.target_name,
        "-output", ctx.iso_path,
        "-eltorito-boot", "isolinux/bios.img",
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
        "--eltorito-catalog", "boot.catalog",
        "--grub2-boot-info",
        "--grub2-mbr", boot_hybrid,
        "-partition_offset", "16",
        "--mbr-force-bootable",
        "-eltorito-alt-boot",
        "-no-emul-boot",
        "-e", "isolinux/efiboot.img",
        "-append_partition", "2", "28732ac11ff8d211ba4b00a0c93ec93b", "isolinux/efiboot.img",
        "-appended_part_as_gpt",
        "-iso_mbr_part_type", "a2a0d0ebe5b9334487c068b6b72699c7",
        "-m", "isolinux/efiboot.img",
        "-m", "isolinux/bios.img",
        "-e", "--interval:appended_partition_2:::",
        "-exclude", "isolinux",
        "-graft-points",
        "/EFI/boot/bootx64.efi=isolinux/bootx64.efi",
        "/EFI/boot/mmx64.efi=isolinux/mmx64.efi",
        "/EFI/boot/grubx64.efi=isolinux/grubx64.efi",
        "/EFI/ubuntu/grub.cfg=isolinux/grub.cfg",
        "/isolinux/bios.img=isolinux/bios.img",
        "/isolinux/efiboot.img=isolinux/efiboot.img",
        ".",
    ]


_DU_LINE = re.compile(r"^(\d+)\t")


def du_bytes(out: str) -> Optional[str]:
    """Tamanho em bytes da última linha "N<TAB>caminho" da saída do du."""
    for line in reversed(out.splitlines()):
        m = _DU_LINE.match(line)
        if m:
            return m.group(1)
    return None


def build_iso(ctx: BuildContext) -> None:
    chroot = ctx.chroot
    # O guard também faz isso no fim, mas nada pode estar montado ao empacotar
    leftover = chroot.exit()
    if leftover:
        raise StageError("build_iso", "ainda há montagens sob o chroot: " + ", ".join(leftover))

    # Artefatos de boot gerados dentro do chroot
    chroot_image = os.path.join(chroot.path, "image")
    if os.path.isdir(chroot_image):
        utils.rm(ctx.image_dir, recursive=True)
        utils.run_privileged(["mv", chroot_image, ctx.workdir + "/"])
    if not os.path.isdir(ctx.casper_dir):
        raise StageError("build_iso", f"{ctx.casper_dir} não existe (o provisionamento gerou image/?)")

    utils.run_privileged([
        "mksquashfs", chroot.path, os.path.join(ctx.casper_dir, "filesystem.squashfs"),
        *SQUASHFS_ARGS,
    ])

    _, out, _ = utils.run_privileged(["du", "-sx", "--block-size=1", chroot.path])
    size = du_bytes(out)
    if size is None:
        raise StageError("build_iso", f"saída inesperada do du: {out!r}")
    utils.write_file(os.path.join(ctx.casper_dir, "filesystem.size"), size + "\n")

    utils.run_privileged(xorriso_args(ctx), cwd=ctx.image_dir)
    logger.info("ISO gerada: %s", ctx.iso_path)


STAGES: Tuple[Stage, ...] = tuple(
    Stage(name=fn.__name__, ordinal=i, action=fn)
    for i, fn in enumerate((setup_host, debootstrap, run_chroot, build_iso))
)


def stage_names() -> list:
    return [s.name for s in STAGES]


__all__ = [
    "STAGES",
    "BuildContext",
    "Stage",
    "StageError",
    "build_iso",
    "debootstrap",
    "du_bytes",
    "run_chroot",
    "setup_host",
    "stage_names",
]
