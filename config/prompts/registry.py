"""Versioned prompt templates for the knowledge bot.

Each version is a directory of ``<name>.txt`` files. ``PROMPT_VERSION`` picks
the directory; every version must provide the templates in ``REQUIRED_PROMPTS``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from protocols.errors import ConfigurationError

_PROMPTS_DIR = Path(__file__).parent

REQUIRED_PROMPTS = ("system", "context", "no_context")


def available_versions() -> list[str]:
    return sorted(p.name for p in _PROMPTS_DIR.iterdir() if p.is_dir() and not p.name.startswith("_"))


def available_prompts(version: str = "v1") -> list[str]:
    path = _PROMPTS_DIR / version
    if not path.is_dir():
        return []
    return sorted(p.stem for p in path.glob("*.txt"))


@lru_cache(maxsize=32)
def load_prompt(name: str, version: str = "v1") -> str:
    """Return the stripped template text for ``name`` in ``version``.

    Raises ConfigurationError when the version or template does not exist,
    since both come from configuration.
    """
    if not (_PROMPTS_DIR / version).is_dir():
        raise ConfigurationError(
            f"Unknown PROMPT_VERSION {version!r}. Available: {', '.join(available_versions())}"
        )
    path = _PROMPTS_DIR / version / f"{name}.txt"
    if not path.is_file():
        raise ConfigurationError(f"Prompt {name!r} missing from version {version!r}")
    return path.read_text(encoding="utf-8").strip()


def format_prompt(name: str, version: str = "v1", **fields: str) -> str:
    """Fill a template's ``{placeholders}``; a missing field raises KeyError."""
    return load_prompt(name, version).format(**fields)


def check_version(version: str) -> None:
    """Fail fast if ``version`` lacks any template the engine needs."""
    missing = [n for n in REQUIRED_PROMPTS if n not in available_prompts(version)]
    if missing:
        raise ConfigurationError(
            f"PROMPT_VERSION {version!r} is missing prompt(s): {', '.join(missing)}"
        )
