"""
Target parameter context.

One immutable TargetContext is built per invocation and threaded through
configuration, graph construction and the incremental builder. Its digest
is part of every unit fingerprint, so switching architecture or toolchain
never reuses artifacts built for another target.
"""

import hashlib
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class TargetContext:
    """Cross-cutting build parameters for one invocation.

    Attributes:
        arch: Target architecture identifier (e.g., 'x86_64', 'arm64')
        toolchain_prefix: Prefix prepended to tool names (e.g., 'aarch64-linux-gnu-')
        output_root: Directory receiving every artifact of this target
        parallelism: Maximum number of concurrently running units
    """

    arch: str
    toolchain_prefix: str = ""
    output_root: Path = Path("out")
    parallelism: int = 1

    def __post_init__(self) -> None:
        if not self.arch:
            raise ValueError("TargetContext requires an architecture")
        if self.parallelism < 1:
            raise ValueError(f"parallelism must be at least 1, got {self.parallelism}")
        object.__setattr__(self, "output_root", Path(self.output_root))

    def digest(self) -> str:
        """Hash of the artifact-affecting fields.

        Parallelism changes scheduling only, so it is left out.
        """
        digest = hashlib.sha256()
        for part in (self.arch, self.toolchain_prefix, str(self.output_root.resolve())):
            digest.update(part.encode("utf-8"))
            digest.update(b"\0")
        return digest.hexdigest()

    def with_parallelism(self, parallelism: Optional[int]) -> "TargetContext":
        if parallelism is None:
            return self
        return replace(self, parallelism=parallelism)

    @property
    def config_path(self) -> Path:
        return self.output_root / ".config"

    @property
    def config_header_path(self) -> Path:
        return self.output_root / "include" / "generated" / "autoconf.h"

    @property
    def state_dir(self) -> Path:
        return self.output_root / ".gatebuild"

    @property
    def cache_dir(self) -> Path:
        """Fingerprint cache location (GATEBUILD_CACHE_DIR overrides)."""
        cache_env = os.environ.get("GATEBUILD_CACHE_DIR")
        if cache_env:
            return Path(cache_env).resolve() / self.digest()[:16]
        return self.state_dir / "cache"

    def artifact_path(self, unit_id: str) -> Path:
        """Output path of a unit under this target's output root."""
        return self.output_root / unit_id
