from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("persona_recall.prompts")

# (mtime_ns, merged payload) per resolved override file.
_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompt_data_dir() -> Path:
    override = os.getenv("PERSONA_RECALL_PROMPTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def _deep_merge(base: Any, override: Any) -> Any:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            merged[key] = _deep_merge(merged[key], value) if key in merged else copy.deepcopy(value)
        return merged
    return copy.deepcopy(override)


def _remember(cache_key: str, mtime_ns: int | None, payload: dict[str, Any]) -> dict[str, Any]:
    _CACHE[cache_key] = (mtime_ns, copy.deepcopy(payload))
    return copy.deepcopy(payload)


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Return `defaults` deep-merged with the optional JSON override file of the same name.

    Overrides are re-read only when the file's mtime changes. A missing, unreadable or
    non-object override never breaks prompt building; defaults are used instead.
    """
    path = prompt_data_dir() / filename
    cache_key = str(path.resolve())

    mtime_ns: int | None = None
    if path.exists():
        try:
            mtime_ns = path.stat().st_mtime_ns
        except OSError:
            mtime_ns = None

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    if not path.exists():
        logger.debug("Prompt override not found: %s (using defaults)", path)
        return _remember(cache_key, mtime_ns, defaults)

    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to parse prompt JSON %s (%s). Using defaults.", path, exc)
        return _remember(cache_key, mtime_ns, defaults)

    if not isinstance(payload, dict):
        logger.warning("Prompt JSON root must be an object: %s (using defaults)", path)
        return _remember(cache_key, mtime_ns, defaults)

    merged = _deep_merge(defaults, payload)
    return _remember(cache_key, mtime_ns, merged if isinstance(merged, dict) else defaults)
