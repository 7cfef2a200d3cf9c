"""Settings module -- single entry point for package configuration.

:func:`get_config` returns the merged configuration dictionary.  It loads
``config/default.yaml``, overlays the file named by ``ONCOMSM_CONFIG``
when set, and finally applies any ``ONCOMSM_`` prefixed environment
variable overrides.
"""

from __future__ import annotations

import functools
import os
from pathlib import Path
from typing import Any

from oncomsm.domain.models import AppConfig

# Project root is three levels up from ``src/oncomsm/config/``.
_PROJECT_ROOT = Path(__file__).resolve().parents[3]

_OVERLAY_ENV = "ONCOMSM_CONFIG"


def _overlay_path() -> Path | None:
    value = os.environ.get(_OVERLAY_ENV)
    return Path(value) if value else None


@functools.lru_cache(maxsize=1)
def get_typed_config() -> AppConfig:
    """Return the :class:`AppConfig` wrapper for typed access.

    The result is cached so that repeated calls within the same process
    (e.g. one per likelihood evaluation) are essentially free.  Call
    ``get_typed_config.cache_clear()`` after changing the environment.

    Resolution order:

    1. ``config/default.yaml``
    2. the file named by ``ONCOMSM_CONFIG`` if set
    3. environment variables with ``ONCOMSM_`` prefix

    Returns
    -------
    AppConfig
        Frozen configuration object.
    """
    return AppConfig.load(
        default_path=_PROJECT_ROOT / "config" / "default.yaml",
        overlay_path=_overlay_path(),
        env_prefix="ONCOMSM_",
    )


def get_config() -> dict[str, Any]:
    """Return the fully merged configuration dictionary."""
    return get_typed_config().data


def config_value(dotted_key: str, default: Any) -> Any:
    """Look up *dotted_key*, falling back to *default* when unset."""
    return get_typed_config().get(dotted_key, default)
