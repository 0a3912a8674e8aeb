"""Cached data loaders for the bundled instrument and reagent catalogs."""

# purpose: expose cached loaders for registry reference data
# status: pilot
# depends_on: json, pathlib

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

_BASE_DIR = Path(__file__).resolve().parent


def _load_json(path: Path) -> Any:
    """Return parsed JSON payload from disk."""

    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _catalog_dir(directory: str | None) -> Path:
    return Path(directory).resolve() if directory else _BASE_DIR


@lru_cache(maxsize=None)
def get_instrument_catalog(directory: str | None = None) -> tuple[dict[str, Any], ...]:
    """Return cached instrument metadata."""

    payload = _load_json(_catalog_dir(directory) / "instruments.json")
    return tuple(payload)


@lru_cache(maxsize=None)
def get_reagent_catalog(directory: str | None = None) -> tuple[dict[str, Any], ...]:
    """Return cached reagent metadata."""

    payload = _load_json(_catalog_dir(directory) / "reagents.json")
    return tuple(payload)
