"""
Load keyval settings from defaults with optional env overrides.
"""
from __future__ import annotations

import os
from typing import Any

# Defaults if no env
_DEFAULTS = {
    "data_dir": ".",
    "database": "key-val",
    "collection": "keyval",
}

_ENV_VARS = {
    "data_dir": "KEYVAL_DATA_DIR",
    "database": "KEYVAL_DATABASE",
    "collection": "KEYVAL_COLLECTION",
}


def _env_overrides() -> dict:
    overrides: dict = {}
    for name, env_var in _ENV_VARS.items():
        value = os.environ.get(env_var)
        if value:
            overrides[name] = value
    return overrides


def get_config() -> dict[str, Any]:
    """Return merged config: defaults <- env."""
    merged = dict(_DEFAULTS)
    merged.update(_env_overrides())
    return merged


# Convenience accessors
def data_dir() -> str:
    return get_config()["data_dir"]


def default_database_name() -> str:
    return get_config()["database"]


def default_collection_name() -> str:
    return get_config()["collection"]
