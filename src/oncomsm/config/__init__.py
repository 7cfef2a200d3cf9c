"""Configuration sub-package.

Provides settings loading and typed configuration access.

Quick usage::

    from oncomsm.config import get_config

    cfg = get_config()
    print(cfg["sampler"]["n_draws"])
"""

from __future__ import annotations

from oncomsm.config.settings import config_value, get_config, get_typed_config

__all__ = [
    "config_value",
    "get_config",
    "get_typed_config",
]
