from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import pydantic

from gembox.domain.models import RepositoryConfig

logger = logging.getLogger(__name__)

DATA_ROOT_ENV_VAR = "GEMBOX_DATA_DIR"
CONFIG_FILE = "repository.json"

# Resolve repository root (project root, not the Python package root)
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"

_PATH_FIELDS = ("gems_directory", "docs_directory", "tmp_directory")


def get_data_dir() -> Path:
    """
    Determine the data directory path.

    Priority:
    1. Environment variable GEMBOX_DATA_DIR
    2. '<project root>/data'
    """
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    d = Path(env_path).expanduser() if env_path else _DEFAULT_DATA_DIR
    d.mkdir(parents=True, exist_ok=True)
    return d


def default_config(data_dir: Path) -> RepositoryConfig:
    return RepositoryConfig(
        gems_directory=data_dir / "gems",
        docs_directory=data_dir / "docs",
    )


def load_repository_config(data_dir: Optional[Path] = None) -> RepositoryConfig:
    """
    Load repository.json, merging with defaults for any missing fields,
    and write it back so any new fields are persisted.

    Relative directory paths are resolved against the data directory.
    """
    data_dir = data_dir or get_data_dir()
    path = data_dir / CONFIG_FILE
    defaults = default_config(data_dir)

    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            merged = {**defaults.model_dump(), **raw}
            for field in _PATH_FIELDS:
                value = merged.get(field)
                if value is not None and not Path(value).expanduser().is_absolute():
                    merged[field] = data_dir / value
            config = RepositoryConfig(**merged)
        except (ValueError, TypeError, pydantic.ValidationError) as e:
            # If parsing fails, fall back to defaults and overwrite file.
            logger.warning(f"Ignoring unreadable {path}: {e}")
            config = defaults
    else:
        config = defaults

    try:
        path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not persist {path}: {e}")

    logger.info(
        f"Repository config: gems={config.gems_directory} docs={config.docs_directory} "
        f"allow_replace={config.allow_replace} incremental_updates={config.incremental_updates}"
    )
    return config
