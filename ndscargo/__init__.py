"""Cargo wrapper that builds Nintendo DS homebrew, packs ROMs with ndstool and sends them with dslink."""

__version__ = "0.1.2"