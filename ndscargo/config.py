"""Optional per-project ``nds.toml`` settings."""

import tomllib
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILE_NAME = "nds.toml"


class ConfigError(OSError):
    """Raised when ``nds.toml`` exists but cannot be understood."""


@dataclass(frozen=True)
class Config:
    """Banner lines and icon read from ``nds.toml``."""

    name: tuple[str | None, str | None, str | None] = (None, None, None)
    icon: str | None = None

    def has_name(self) -> bool:
        """Whether any banner line is configured."""
        return any(part is not None for part in self.name)

    def banner_text(self) -> str:
        """The banner lines joined the way ``ndstool`` expects them."""
        return ";".join(part or "" for part in self.name)


def _from_table(data: dict) -> Config:
    if "name" not in data:
        raise ConfigError("missing field `name`")
    name = data["name"]
    if not isinstance(name, list) or len(name) != 3:
        raise ConfigError("`name` must be an array of exactly 3 strings")
    if not all(isinstance(part, str) for part in name):
        raise ConfigError("`name` must be an array of exactly 3 strings")
    icon = data.get("icon")
    if icon is not None and not isinstance(icon, str):
        raise ConfigError("`icon` must be a string")
    return Config(name=tuple(name), icon=icon)


def load_config(manifest_path) -> Config:
    """Load ``nds.toml`` next to the given Cargo manifest, or defaults if absent."""
    path = Path(manifest_path).parent / CONFIG_FILE_NAME
    if not path.exists():
        return Config()
    text = path.read_text(encoding="utf-8")
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(str(exc)) from exc
    return _from_table(data)