"""Turning a freshly created cargo project into a DS homebrew project."""

import json
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

LIBNDS_SYS_GIT_ENV = "LIBNDS_SYS_GIT"
DEFAULT_LIBNDS_SYS_GIT = "https://git.example.com/libnds-sys.git"
TARGET_JSON_NAME = "armv5te-nintendo-ds.json"

_CPU_ARCH = "armv5te"
_GCC = "gcc"


def _kebab(**fields) -> dict:
    """Build a mapping whose keys use hyphens where the keywords use underscores."""
    return {key.replace("_", "-"): value for key, value in fields.items()}


def _link_args(*flags: str) -> dict:
    return {_GCC: list(flags)}


def _wl(*options: str) -> str:
    return "-Wl," + ",".join(options)


TARGET_SPEC = _kebab(
    abi="eabi",
    arch="arm",
    data_layout="-".join(
        ["e", "m:e", "p:32:32", "Fi8", "i64:64", "v128:64:128", "a:0:32", "n32", "S64"]
    ),
    env="picolibc",
    exe_suffix=".arm9.elf",
    is_builtin=False,
    linker=f"arm-none-eabi-{_GCC}",
    llvm_target=f"{_CPU_ARCH}-none-gnu",
    llvm_floatabi="soft",
    relocation_model="static",
    target_endian="little",
    target_pointer_width=str(32),
    target_c_int_width=str(32),
    executables=True,
    linker_flavor=_GCC,
    max_atomic_width=32,
    disable_redzone=True,
    emit_debug_gdb_scripts=False,
    features=",".join("+" + feature for feature in ("soft-float", "strict-align", "atomics-32")),
    panic_strategy="abort",
    linker_is_gnu=True,
    target_family=["unix"],
    no_default_libraries=False,
    main_needs_argc_argv="false",
    pre_link_args=_link_args(
        "--data-sections",
        f"-march={_CPU_ARCH}",
        "-mthumb",
        "-mcpu=arm946e-s+nofp",
        "-mthumb-interwork",
        _wl("-Map", "target/arm9.map"),
        _wl("--gc-sections"),
    ),
    post_link_args=_link_args(
        _wl("--no-warn-rwx-segments"),
        _wl("--allow-multiple-definition"),
    ),
    late_link_args=_link_args("-l" + _GCC),
    vendor="nintendo",
    os="nintendo_ds_arm9",
)

TARGET_JSON = json.dumps(TARGET_SPEC, indent=4) + "\n"


def _rust_block(header: str, body: list, depth: int = 0) -> list[str]:
    """Render a braced block; nested lists in ``body`` become nested blocks."""
    pad = "    " * depth
    out = [f"{pad}{header} {{"]
    items = iter(body)
    for item in items:
        if isinstance(item, tuple):
            inner_header, inner_body = item
            out.extend(_rust_block(inner_header, inner_body, depth + 1))
        else:
            out.append(f"{'    ' * (depth + 1)}{item}")
    out.append(f"{pad}}}")
    return out


def _render_main_rs() -> str:
    attributes = ["#![no_std]", "#![no_main]"]
    uses = [
        "use core::ffi::c_int;",
        "use libnds_sys::arm9_bindings::*;",
        "use libnds_sys::*;",
    ]
    frame_loop = (
        "loop",
        [
            "swiWaitForVBlank();",
            "scanKeys();",
            ("if keysHeld() & KEY_START != 0", ["break;"]),
        ],
    )
    body = [
        ("unsafe", ["consoleDemoInit();", 'println!("Hello World!");', frame_loop]),
        "0",
    ]
    lines = [
        *attributes,
        "",
        "extern crate alloc;",
        "",
        *uses,
        "",
        "#[unsafe(no_mangle)]",
        *_rust_block('extern "C" fn main() -> c_int', body),
        "",
    ]
    return "\n".join(lines)


CUSTOM_MAIN_RS = _render_main_rs()

_SHARED_PROFILE = _kebab(
    codegen_units=1,
    opt_level=3,
    debug_assertions=False,
    lto=True,
    overflow_checks=False,
)

PROFILES = {
    "release": {**_SHARED_PROFILE, "strip": "debuginfo"},
    "dev": {"debug": 2, **_SHARED_PROFILE, "strip": False},
}


def _toml_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value))


def _render_profiles(profiles: Mapping[str, Mapping[str, object]]) -> str:
    sections = []
    for name, settings in profiles.items():
        lines = [f"[profile.{name}]"]
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in settings.items())
        sections.append("\n".join(lines) + "\n")
    return "\n".join(sections)


CUSTOM_CARGO_CONFIG = _render_profiles(PROFILES)


def toml_changes() -> str:
    """Text appended to the new project's ``Cargo.toml``."""
    git = os.environ.get(LIBNDS_SYS_GIT_ENV, DEFAULT_LIBNDS_SYS_GIT)
    dependency = f"libnds_sys = {{ git = {json.dumps(git)} }}"
    metadata = ["[package.metadata.nds]", f"romfs_dir = {_toml_value('romfs')}"]
    return "\n".join([dependency, "", *metadata]) + "\n"


def scaffold_project(path, cargo_args: Iterable[str]) -> Path | None:
    """Add the DS target, sources and settings to a project made by ``cargo new``/``init``.

    Library projects (``--lib`` among the cargo arguments) are left alone and
    ``None`` is returned; otherwise the resolved project directory is returned.
    """
    if "--lib" in list(cargo_args):
        return None

    project = Path(path).resolve(strict=True)
    manifest = project / "Cargo.toml"

    (project / "romfs").mkdir()

    contents = manifest.read_text(encoding="utf-8")
    manifest.write_text(contents + toml_changes(), encoding="utf-8")

    (project / "src" / "main.rs").write_text(CUSTOM_MAIN_RS, encoding="utf-8")
    (project / TARGET_JSON_NAME).write_text(TARGET_JSON, encoding="utf-8")

    cargo_dir = project / ".cargo"
    cargo_dir.mkdir()
    (cargo_dir / "config.toml").write_text(CUSTOM_CARGO_CONFIG, encoding="utf-8")
    return project