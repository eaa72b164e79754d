#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Helpers shared by the CLI and the config loader.
"""
import json
from typing import Any, Dict

import typer

TRUTHY = frozenset({"1", "true", "yes", "on"})


def fail(msg: str) -> None:
    """Print `{"error": msg}` as JSON and exit with status 1."""
    typer.echo(json.dumps({"error": msg}))
    raise typer.Exit(code=1)


def succeed(data: Dict[str, Any]) -> None:
    """Print `data` as JSON and exit with status 0."""
    # datetimes and enums in results are rendered with str()
    typer.echo(json.dumps(data, default=str))
    raise typer.Exit(code=0)


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY
    return False


def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Merge `src` into `dst` in place. Nested dicts merge; anything else is replaced."""
    for key, value in (src or {}).items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            deep_update(dst[key], value)
        else:
            dst[key] = value
    return dst
