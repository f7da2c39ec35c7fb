"""
tests/test_jwt_startup — JWT Secret Validation at Startup
===========================================================
``tabletop.api.deps`` refuses to import when JWT_SECRET is missing, blank,
too short, or one of the placeholder values shipped in examples.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import pytest


class TestJWTSecretValidation:
    def _reload(self) -> str:
        """Re-run the module body so the secret is validated against the patched env."""
        import tabletop.api.deps as deps_mod
        importlib.reload(deps_mod)
        return deps_mod.JWT_SECRET

    @pytest.fixture(autouse=True)
    def _restore_jwt_secret(self):
        original = os.environ.get("JWT_SECRET")
        yield
        if original is not None:
            os.environ["JWT_SECRET"] = original
        else:
            os.environ.pop("JWT_SECRET", None)
        import tabletop.api.deps as deps_mod
        try:
            importlib.reload(deps_mod)
        except RuntimeError:
            pass  # no valid secret in this environment

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                self._reload()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="not set"):
                self._reload()

    @pytest.mark.parametrize(
        "weak", ["tabletop-dev-secret-change-me", "change-me", "secret", "dev"]
    )
    def test_rejects_placeholder_values(self, weak):
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                self._reload()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "x" * 31}):
            with pytest.raises(RuntimeError, match=r"too short \(31 chars\)"):
                self._reload()

    def test_accepts_32_char_secret(self):
        secret = "k" * 32
        with patch.dict(os.environ, {"JWT_SECRET": secret}):
            assert self._reload() == secret
