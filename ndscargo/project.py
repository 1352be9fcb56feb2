"""Project layout: output paths and settings read from the Cargo manifest."""

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from ndscargo.config import load_config

DEFAULT_BLOCKSDS = "/opt/wonderful/thirdparty/blocksds/core"
DEFAULT_ICON = "/opt/wonderful/thirdparty/blocksds/core/sys/icon.bmp"
DEFAULT_ROMFS = "romfs"
DEFAULT_NAME = "No Name"

_INTEGER = re.compile(r"[+-]?\d+")


class ManifestError(Exception):
    """Raised when the Cargo manifest cannot be read or parsed."""


def blocksds_root() -> str:
    """The BlocksDS installation directory, from ``$BLOCKSDS`` or the default."""
    return os.environ.get("BLOCKSDS", DEFAULT_BLOCKSDS)


def _set_extension(path: Path, extension: str) -> Path:
    stripped = path.with_suffix("")
    if not extension:
        return stripped
    return stripped.with_name(f"{stripped.name}.{extension}")


def _with_output_extension(path: Path, extension: str) -> Path:
    return _set_extension(_set_extension(path, ""), extension)


@dataclass
class NDSConfig:
    """Everything needed to package and send a built executable."""

    name: str = ""
    author: str = ""
    description: str = ""
    icon: str = ""
    target_path: Path = field(default_factory=Path)
    cargo_manifest_path: Path = field(default_factory=Path)

    def __post_init__(self):
        self.target_path = Path(self.target_path)
        self.cargo_manifest_path = Path(self.cargo_manifest_path)

    def path_nds(self) -> Path:
        """Path of the ``.nds`` ROM to produce."""
        return _with_output_extension(self.target_path, "nds")

    def path_arm9(self) -> Path:
        """Path of the ARM9 executable."""
        return _with_output_extension(self.target_path, "arm9.elf")

    def path_arm7(self) -> Path:
        """Path of the ARM7 executable, falling back to the BlocksDS default."""
        arm7 = _with_output_extension(self.target_path, "arm7.elf")
        if arm7.exists():
            return arm7
        return Path(f"{blocksds_root()}/sys/default_arm7/arm7.elf")


@dataclass(frozen=True, order=True)
class CommitDate:
    """A ``YYYY-MM-DD`` compiler commit date, ordered chronologically."""

    year: int
    month: int
    day: int

    @classmethod
    def parse(cls, date):
        """Parse ``YYYY-MM-DD``; returns None if the text is not such a date."""
        parts = date.split("-")[:3]
        if len(parts) < 3 or not all(_INTEGER.fullmatch(part) for part in parts):
            return None
        year, month, day = (int(part) for part in parts)
        return cls(year, month, day)

    def __str__(self) -> str:
        return f"{self.year:04}-{self.month:02}-{self.day:02}"


MINIMUM_COMMIT_DATE = CommitDate(2023, 5, 31)


def _read_manifest(path: Path) -> dict:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Could not open {path}: {exc}") from exc
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError("Could not parse Cargo manifest as TOML") from exc


def _lookup(table, *keys):
    for key in keys:
        if not isinstance(table, dict):
            return None
        table = table.get(key)
    return table


def get_romfs_path(config: NDSConfig) -> tuple[Path, bool]:
    """RomFS directory from ``package.metadata.nds.romfs``; the flag is True for the default."""
    manifest = _read_manifest(config.cargo_manifest_path)
    setting = _lookup(manifest, "package", "metadata", "nds", "romfs")
    is_default = not isinstance(setting, str)
    if is_default:
        setting = DEFAULT_ROMFS
    return config.cargo_manifest_path.parent / setting, is_default


def get_name(config: NDSConfig) -> tuple[Path, bool]:
    """Package name as a path beside the manifest; the flag is True for the default."""
    manifest = _read_manifest(config.cargo_manifest_path)
    setting = _lookup(manifest, "package", "name")
    is_default = not isinstance(setting, str)
    if is_default:
        setting = DEFAULT_NAME
    return config.cargo_manifest_path.parent / setting, is_default


def get_icon_path(config: NDSConfig) -> Path:
    """Icon configured in ``nds.toml``, relative to the manifest, or the default icon."""
    settings = load_config(config.cargo_manifest_path)
    if settings.icon is None:
        return Path(DEFAULT_ICON)
    return config.cargo_manifest_path.parent / settings.icon