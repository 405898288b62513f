"""
Packaging Metadata Tests

Usage:
    cd backend && pytest tests/test_packaging.py -v
"""

import os

import pytest

tomllib = pytest.importorskip("tomllib")

ROOT = os.path.join(os.path.dirname(__file__), '..', '..')


def load_project():
    with open(os.path.join(ROOT, "pyproject.toml"), "rb") as f:
        return tomllib.load(f)["project"]


class TestProjectMetadata:
    """Tests for the distribution metadata in pyproject.toml."""

    def test_no_internal_document_as_readme(self):
        readme = load_project().get("readme")
        assert readme not in {"SPEC_FULL.md", "DESIGN.md", "spec.md"}

    def test_readme_exists_when_declared(self):
        readme = load_project().get("readme")
        if readme is not None:
            assert os.path.exists(os.path.join(ROOT, readme))
