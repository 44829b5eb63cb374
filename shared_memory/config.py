"""Configuration for the shared memory store."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

BACKENDS = ("chroma", "json")
FALLBACK_POLICIES = ("sticky", "retry")


def _env_path(name: str, default: str) -> Path:
    return Path(os.getenv(name, default)).expanduser()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class MemoryConfig:
    """
    Settings for one MemoryManager instance.

    Every field falls back to an environment variable so a host process
    can run without passing anything explicitly.
    """

    memory_dir: Path = field(default_factory=lambda: _env_path("SHARED_MEMORY_DIR", "data/memory"))
    domain: str = field(default_factory=lambda: os.getenv("SHARED_MEMORY_DOMAIN", "router"))
    namespace: str = field(default_factory=lambda: os.getenv("SHARED_MEMORY_NAMESPACE", "default"))

    # "chroma" tries the vector backend first, "json" forces fallback-only mode
    backend: str = field(default_factory=lambda: os.getenv("SHARED_MEMORY_BACKEND", "chroma"))
    chroma_host: str = field(default_factory=lambda: os.getenv("CHROMA_HOST", "127.0.0.1"))
    chroma_port: int = field(default_factory=lambda: _env_int("CHROMA_PORT", 8000))
    embedding_model: str | None = field(
        default_factory=lambda: os.getenv("SHARED_MEMORY_EMBEDDING_MODEL") or None
    )
    # Overrides embedding_model when set; any Chroma-compatible embedding function
    embedding_function: Any = None

    backend_timeout: float = field(
        default_factory=lambda: _env_float("SHARED_MEMORY_BACKEND_TIMEOUT", 10.0)
    )
    fallback_policy: str = field(
        default_factory=lambda: os.getenv("SHARED_MEMORY_FALLBACK_POLICY", "sticky")
    )
    retry_backoff: float = 5.0
    retry_backoff_max: float = 300.0

    def __post_init__(self) -> None:
        self.memory_dir = Path(self.memory_dir)
        if not self.domain:
            raise ValueError("domain must not be empty")
        if not self.namespace:
            raise ValueError("namespace must not be empty")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.fallback_policy not in FALLBACK_POLICIES:
            raise ValueError(
                f"fallback_policy must be one of {FALLBACK_POLICIES}, got {self.fallback_policy!r}"
            )
        if self.backend_timeout <= 0:
            raise ValueError("backend_timeout must be positive")
        if self.retry_backoff <= 0 or self.retry_backoff_max < self.retry_backoff:
            raise ValueError("retry_backoff must be positive and not exceed retry_backoff_max")

    @property
    def conversation_collection(self) -> str:
        return f"conversations_{self.namespace}"

    @property
    def operational_collection(self) -> str:
        return f"operational_{self.namespace}"
