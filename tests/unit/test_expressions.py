"""Unit tests for reference parsing and interpolation."""

import pytest

from sitestack.core.exceptions import DocumentError, UnresolvedReferenceError
from sitestack.engine.expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    interpolate,
    iter_references,
    walk_path,
)


class TestReferenceParse:
    """Test parsing of ${...} expressions."""

    def test_variable_reference(self):
        """var.NAME is a variable reference."""
        ref = Reference.parse("var.bucket_name")

        assert ref.is_variable is True
        assert ref.target == "bucket_name"
        assert ref.path == ()

    def test_resource_reference_defaults_to_id(self):
        """type.name without attribute means the id."""
        ref = Reference.parse("s3_bucket.site")

        assert ref.is_variable is False
        assert ref.target == "s3_bucket.site"
        assert ref.attribute == "id"

    def test_resource_attribute_with_path(self):
        """Segments after the attribute form a path."""
        ref = Reference.parse("cloudfront_distribution.cdn.origin.domain")

        assert ref.attribute == "origin"
        assert ref.path == ("domain",)

    @pytest.mark.parametrize("expression", ["", "bucket", "s3_bucket..arn", "var"])
    def test_malformed_references_rejected(self, expression):
        """Malformed expressions raise DocumentError."""
        with pytest.raises(DocumentError):
            Reference.parse(expression)


class TestIterReferences:
    """Test reference discovery in nested values."""

    def test_finds_nested_references(self):
        """References inside dicts and lists are found."""
        value = {
            "policy": {"Statement": [{"Resource": "${s3_bucket.site.arn}/*"}]},
            "name": "${var.name}-site",
        }

        targets = {ref.target for ref in iter_references(value)}

        assert targets == {"s3_bucket.site", "name"}

    def test_escaped_reference_ignored(self):
        """$${...} is a literal, not a reference."""
        assert list(iter_references("$${not.a_ref}")) == []


class TestInterpolate:
    """Test interpolation of references."""

    @pytest.fixture
    def lookup(self):
        values = {
            "var.count": 3,
            "var.tags": {"env": "prod"},
            "s3_bucket.site.id": "my-bucket",
            "s3_bucket.site.arn": "arn:aws:s3:::my-bucket",
            "s3_bucket.new.id": UNKNOWN,
        }

        def _lookup(ref: Reference):
            key = f"var.{ref.target}" if ref.is_variable else f"{ref.target}.{ref.attribute}"
            return values[key]

        return _lookup

    def test_whole_reference_keeps_native_type(self, lookup):
        """A string that is one reference returns the raw value."""
        assert interpolate("${var.count}", lookup) == 3
        assert interpolate("${var.tags}", lookup) == {"env": "prod"}

    def test_embedded_reference_renders_text(self, lookup):
        """References inside longer strings are rendered."""
        assert interpolate("${s3_bucket.site.arn}/*", lookup) == "arn:aws:s3:::my-bucket/*"
        assert interpolate("n=${var.count}", lookup) == "n=3"

    def test_unknown_propagates(self, lookup):
        """Any unknown part makes the whole string unknown."""
        assert interpolate("${s3_bucket.new}", lookup) is UNKNOWN
        assert interpolate("prefix-${s3_bucket.new}", lookup) is UNKNOWN

    def test_nested_structures(self, lookup):
        """Dicts and lists are interpolated recursively."""
        result = interpolate({"a": ["${s3_bucket.site}", 1]}, lookup)

        assert result == {"a": ["my-bucket", 1]}

    def test_escape_produces_literal(self, lookup):
        """$${x} renders as ${x}."""
        assert interpolate("keep $${literal} ${var.count}", lookup) == "keep ${literal} 3"

    def test_contains_unknown(self):
        """contains_unknown looks inside containers."""
        assert contains_unknown({"a": [1, UNKNOWN]}) is True
        assert contains_unknown({"a": [1, 2]}) is False


class TestWalkPath:
    """Test path traversal."""

    def test_walks_dicts_and_lists(self):
        """Path steps index dicts by key and lists by position."""
        ref = Reference.parse("x.y.items.1.name")

        assert ref.path == ("1", "name")
        assert walk_path([{}, {"name": "b"}], ref) == "b"

    def test_unknown_short_circuits(self):
        """Walking into an unknown value stays unknown."""
        assert walk_path(UNKNOWN, Reference.parse("x.y.attr.key")) is UNKNOWN

    def test_missing_step_raises(self):
        """A missing element is an unresolved reference."""
        with pytest.raises(UnresolvedReferenceError):
            walk_path({"a": 1}, Reference("t", "x.y", "attr", ("b",)))
