from __future__ import annotations

"""Deterministic TOML output for the project registry.

Config files are only ever read; the registry is the one TOML file promptpack
writes, so only the value types it stores are supported.
"""

import json
from typing import Any, Mapping


def toml_basic_string(s: str) -> str:
    """Quote `s` as a TOML basic string (JSON escaping is a valid subset)."""

    if not isinstance(s, str):
        raise TypeError("toml_basic_string: expected str")
    return json.dumps(s, ensure_ascii=False)


def toml_value(v: Any) -> str:
    # bool before int: bool is an int subclass.
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, int):
        return str(v)
    if isinstance(v, str):
        return toml_basic_string(v)
    if isinstance(v, (list, tuple)):
        return "[" + ", ".join(toml_value(item) for item in v) + "]"
    raise TypeError(f"toml_value: unsupported type: {type(v).__name__}")


def toml_table(header: str, tbl: Mapping[str, Any], *, key_order: list[str] | None = None) -> list[str]:
    """Lines for a `[header]` table; keys outside `key_order` follow sorted."""

    keys = [k for k in (key_order or []) if k in tbl]
    keys.extend(k for k in sorted(tbl) if k not in keys)
    return [f"[{header}]", *(f"{k} = {toml_value(tbl[k])}" for k in keys)]
