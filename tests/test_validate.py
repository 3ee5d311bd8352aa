"""Tests for barf.lib.validate module."""

import pytest

from barf.lib.validate import ValidationError, validate


class TestValidate:
    def test_valid_lock(self):
        validate({"pid": 1, "acquiredAt": "2026-01-01T00:00:00+00:00", "state": "NEW", "mode": "build"}, "lock")

    def test_error_names_schema_and_path(self):
        with pytest.raises(ValidationError) as exc:
            validate({"MAX_AUTO_SPLITS": -1}, "config")
        assert exc.value.schema_name == "config"
        assert exc.value.path == "MAX_AUTO_SPLITS"
        assert str(exc.value).startswith("[config]")

    def test_root_level_error(self):
        with pytest.raises(ValidationError) as exc:
            validate([], "checks")
        assert exc.value.path == "(root)"

    def test_unknown_schema(self):
        with pytest.raises(ValidationError, match="not found"):
            validate({}, "nope")
