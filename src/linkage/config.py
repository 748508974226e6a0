"""Central configuration for the linkage store.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``LINKAGE_`` (nested keys use
double underscores, e.g. ``LINKAGE_SCROLL__PAGE_SIZE=200``).

Usage::

    from linkage.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.scroll.page_size)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BulkConfig:
    """Buffering behaviour of :class:`~linkage.storage.BulkSession`."""

    bulk_actions: int = 1000
    """Number of buffered write operations that triggers a flush."""


@dataclass(frozen=True, slots=True)
class ScrollConfig:
    """Parameters for server-side scroll cursors."""

    page_size: int = 100
    keep_alive_seconds: float = 60.0
    """Lifetime of a freshly opened scroll snapshot."""

    renew_keep_alive_seconds: float = 600.0
    """Lifetime granted on every subsequent page request.

    Long normalization passes issue many updates between page reads, so the
    renewal window is deliberately wider than the initial one."""


@dataclass(frozen=True, slots=True)
class AggregationConfig:
    """Parameters for term aggregations."""

    page_size: int = 10_000
    """Buckets read per round-trip when an unbounded aggregation is requested."""


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LinkageConfig:
    """Root configuration object for the linkage store.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.linkage/linkage.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.linkage/backups"))
    backup_count: int = 5

    bulk: BulkConfig = field(default_factory=BulkConfig)
    scroll: ScrollConfig = field(default_factory=ScrollConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass: object.__setattr__ is the only way in.
        object.__setattr__(self, "db_path", self.db_path.expanduser())
        object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "LINKAGE_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: LinkageConfig | None = None


def get_config(*, reload: bool = False) -> LinkageConfig:
    """Return the current :class:`LinkageConfig`.

    On the first call the config is built by merging defaults with any
    ``LINKAGE_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(LinkageConfig, _ENV_PREFIX)
    return _cached_config
