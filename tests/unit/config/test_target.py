"""
Unit tests for TargetContext.
"""

from pathlib import Path

import pytest

from gatebuild.config.target import TargetContext


class TestTargetContext:
    """Tests for TargetContext."""

    def test_digest_ignores_parallelism(self, tmp_path):
        """Test that parallelism does not change the artifact digest."""
        one = TargetContext("x86_64", output_root=tmp_path, parallelism=1)
        many = one.with_parallelism(16)
        assert many.parallelism == 16
        assert one.digest() == many.digest()

    def test_digest_tracks_artifact_fields(self, tmp_path):
        base = TargetContext("x86_64", output_root=tmp_path)
        assert base.digest() != TargetContext("arm64", output_root=tmp_path).digest()
        assert base.digest() != TargetContext("x86_64", "x86_64-linux-gnu-", tmp_path).digest()
        assert base.digest() != TargetContext("x86_64", output_root=tmp_path / "other").digest()

    def test_with_parallelism_none(self, tmp_path):
        context = TargetContext("x86_64", output_root=tmp_path)
        assert context.with_parallelism(None) is context

    def test_validation(self):
        with pytest.raises(ValueError, match="requires an architecture"):
            TargetContext("")
        with pytest.raises(ValueError, match="at least 1"):
            TargetContext("x86_64", parallelism=0)

    def test_paths(self, tmp_path):
        context = TargetContext("x86_64", output_root=str(tmp_path))
        assert context.output_root == tmp_path
        assert context.config_path == tmp_path / ".config"
        assert context.config_header_path == tmp_path / "include" / "generated" / "autoconf.h"
        assert context.state_dir == tmp_path / ".gatebuild"
        assert context.artifact_path("net/core.o") == tmp_path / "net" / "core.o"

    def test_cache_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GATEBUILD_CACHE_DIR", raising=False)
        context = TargetContext("x86_64", output_root=tmp_path / "out")
        assert context.cache_dir == tmp_path / "out" / ".gatebuild" / "cache"

    def test_cache_dir_override(self, tmp_path, monkeypatch):
        """Test that GATEBUILD_CACHE_DIR holds one cache per target digest."""
        monkeypatch.setenv("GATEBUILD_CACHE_DIR", str(tmp_path / "shared"))
        x86 = TargetContext("x86_64", output_root=tmp_path / "out")
        arm = TargetContext("arm64", output_root=tmp_path / "out")
        assert x86.cache_dir.parent == (tmp_path / "shared").resolve()
        assert x86.cache_dir.name == x86.digest()[:16]
        assert x86.cache_dir != arm.cache_dir

    def test_frozen(self):
        context = TargetContext("x86_64", output_root=Path("out"))
        with pytest.raises(AttributeError):
            context.arch = "arm64"
