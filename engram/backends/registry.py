"""Static catalogue of local models plus memory and cache lookups."""

from __future__ import annotations

import importlib.util
import logging
import os
import re
from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatch
from pathlib import Path

logger = logging.getLogger(__name__)

_BYTES_PER_GB = 1_073_741_824


class Tier(StrEnum):
    TINY = "Tiny"  # < 1GB
    LIGHT = "Light"  # 1-2GB
    STANDARD = "Standard"  # 2-4GB
    PRO = "Pro"  # > 4GB


@dataclass(frozen=True)
class ModelInfo:
    """A selectable local model. ``id`` is a Hugging Face repository id."""

    id: str
    display_name: str
    description: str
    size_gb: float
    memory_gb: float
    tier: Tier
    is_default: bool = False

    @property
    def size_label(self) -> str:
        if self.size_gb < 1.0:
            return f"{self.size_gb * 1024:.0f} MB"
        return f"{self.size_gb:.1f} GB"


# Order matters: smallest first, as shown to users.
AVAILABLE_MODELS: list[ModelInfo] = [
    ModelInfo(
        id="bartowski/SmolLM2-360M-Instruct-GGUF",
        display_name="SmolLM 360M",
        description="Ultra-lightweight model. Runs almost anywhere.",
        size_gb=0.3,
        memory_gb=0.5,
        tier=Tier.TINY,
    ),
    ModelInfo(
        id="bartowski/gemma-2-2b-it-GGUF",
        display_name="Gemma 2 2B",
        description="Google's efficient 2B model. Fast and capable.",
        size_gb=1.6,
        memory_gb=2.0,
        tier=Tier.LIGHT,
        is_default=True,
    ),
    ModelInfo(
        id="bartowski/Llama-3.2-3B-Instruct-GGUF",
        display_name="Llama 3.2 3B",
        description="Meta's small instruction model. Good quality.",
        size_gb=2.0,
        memory_gb=2.5,
        tier=Tier.STANDARD,
    ),
    ModelInfo(
        id="bartowski/Mistral-7B-Instruct-v0.3-GGUF",
        display_name="Mistral 7B",
        description="Powerful 7B model. Best quality, needs more RAM.",
        size_gb=4.0,
        memory_gb=5.0,
        tier=Tier.PRO,
    ),
]

# Parameter count in the repository name, e.g. "Qwen2.5-7B" or "SmolLM2-360M".
_PARAM_COUNT = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)([bm])(?![a-z])")

# (max parameters in billions, GB). First bound that fits wins.
_SIZE_HINTS: list[tuple[float, float]] = [
    (0.5, 0.5),
    (1.7, 1.0),
    (2.0, 2.0),
    (3.0, 2.5),
    (4.0, 3.0),
    (8.0, 5.0),
    (14.0, 10.0),
]
_DEFAULT_MEMORY_GB = 2.0


def default_model() -> ModelInfo:
    return next((m for m in AVAILABLE_MODELS if m.is_default), AVAILABLE_MODELS[0])


def get_model(model_id: str) -> ModelInfo | None:
    return next((m for m in AVAILABLE_MODELS if m.id == model_id), None)


def display_name(model_id: str) -> str:
    """Registry display name, or the repository name for unknown ids."""
    info = get_model(model_id)
    return info.display_name if info else model_id.rsplit("/", 1)[-1]


def estimated_memory_gb(model_id: str) -> float:
    """Memory needed to run *model_id*.

    Registry entries carry a measured figure; unknown ids are estimated from
    the parameter count in their name.
    """
    info = get_model(model_id)
    if info is not None:
        return info.memory_gb
    match = _PARAM_COUNT.search(model_id.lower())
    if match is None:
        return _DEFAULT_MEMORY_GB
    billions = float(match.group(1))
    if match.group(2) == "m":
        billions /= 1000
    for bound, gb in _SIZE_HINTS:
        if billions <= bound:
            return gb
    # Roughly 4-bit weights plus runtime overhead.
    return round(billions * 0.7, 1)


def suggest_smaller_model(available_gb: float) -> ModelInfo | None:
    """Largest registry model that fits in *available_gb*."""
    fitting = [m for m in AVAILABLE_MODELS if m.memory_gb <= available_gb]
    return max(fitting, key=lambda m: m.memory_gb, default=None)


def detect_available_memory_gb() -> float | None:
    """Physical memory currently available to new allocations, in GB.

    Returns None when the platform gives no answer; callers then skip the
    memory check.
    """
    meminfo = Path("/proc/meminfo")
    try:
        for line in meminfo.read_text().splitlines():
            if line.startswith("MemAvailable:"):
                return int(line.split()[1]) * 1024 / _BYTES_PER_GB
    except (OSError, ValueError, IndexError):
        pass
    try:
        pages = os.sysconf("SC_AVPHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        logger.warning("Could not determine available memory")
        return None
    return pages * page_size / _BYTES_PER_GB


def cached_model_file(model_id: str, cache_dir: str | Path, pattern: str = "*.gguf") -> str | None:
    """Path, relative to its snapshot, of a cached file of *model_id* matching *pattern*.

    Reads the Hugging Face hub cache through ``huggingface_hub.scan_cache_dir``.
    Returns None when huggingface-hub is not installed, the cache does not
    exist, or no matching file has been downloaded.
    """
    if importlib.util.find_spec("huggingface_hub") is None:
        return None

    from huggingface_hub import scan_cache_dir
    from huggingface_hub.errors import CacheNotFound

    try:
        cache = scan_cache_dir(Path(cache_dir).expanduser())
    except CacheNotFound:
        return None

    for repo in cache.repos:
        if repo.repo_type != "model" or repo.repo_id != model_id:
            continue
        matches = sorted(
            f.file_path.relative_to(revision.snapshot_path).as_posix()
            for revision in repo.revisions
            for f in revision.files
            if fnmatch(f.file_name, pattern)
        )
        if matches:
            return matches[0]
    return None


def is_model_cached(model_id: str, cache_dir: str | Path, pattern: str = "*.gguf") -> bool:
    return cached_model_file(model_id, cache_dir, pattern) is not None
