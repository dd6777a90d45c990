"""Tests for building the catalog from markdown pattern files."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from apl_daily.catalog import load_catalog
from apl_daily.errors import CatalogError
from apl_daily.ingest import main, parse_directory, parse_pattern
from apl_daily.logs import default_event_log

HOUSE_CLUSTER = """\
# House Cluster

### Problem
> People will not feel comfortable in their houses unless a group of houses
> forms a cluster, with the public land between them jointly owned.

### Solution
> Arrange houses to form very rough, soft clusters of 8 to 12 households.

### Related Patterns
[[Identifiable Neighborhood (14)]], [[Common Land (67)]]
[[Row Houses (38)]]
"""


class TestParsePattern:
    def test_sections(self) -> None:
        pattern = parse_pattern("House Cluster (37).md", HOUSE_CLUSTER)

        assert pattern.id == 37
        assert pattern.title == "House Cluster"
        assert pattern.problem.startswith("People will not feel comfortable")
        assert ">" not in pattern.problem
        assert pattern.solution == "Arrange houses to form very rough, soft clusters of 8 to 12 households."
        assert pattern.related_ids() == [14, 67, 38]
        assert pattern.image_prompt.startswith('Architectural visualization of "House Cluster"')

    def test_bad_file_name(self) -> None:
        with pytest.raises(CatalogError, match="file name"):
            parse_pattern("House Cluster.md", HOUSE_CLUSTER)

    def test_missing_solution(self) -> None:
        with pytest.raises(CatalogError, match="Solution"):
            parse_pattern("Lonely (5).md", "### Problem\nOnly a problem.\n")

    def test_related_patterns_are_optional(self) -> None:
        pattern = parse_pattern("Bare (2).md", "### Problem\np\n### Solution\ns\n")

        assert pattern.related_patterns == ""


class TestParseDirectory:
    def test_sorted_by_id_and_bad_files_skipped(self, tmp_path) -> None:
        (tmp_path / "House Cluster (37).md").write_text(HOUSE_CLUSTER, encoding="utf-8")
        (tmp_path / "Bare (2).md").write_text("### Problem\np\n### Solution\ns\n", encoding="utf-8")
        (tmp_path / "notes.md").write_text("scratch", encoding="utf-8")

        patterns = parse_directory(tmp_path)

        assert [p.id for p in patterns] == [2, 37]
        assert default_event_log.tail(1)[0]["event"] == "pattern_file_skipped"


class TestCli:
    def test_writes_loadable_catalog(self, tmp_path) -> None:
        source = tmp_path / "apl-md"
        source.mkdir()
        (source / "House Cluster (37).md").write_text(HOUSE_CLUSTER, encoding="utf-8")
        output = tmp_path / "out" / "patterns.json"

        result = CliRunner().invoke(main, [str(source), "--output", str(output)])

        assert result.exit_code == 0, result.output
        assert "Wrote 1 patterns" in result.output
        assert json.loads(output.read_text(encoding="utf-8"))[0]["id"] == 37
        assert load_catalog(output).get(37).title == "House Cluster"

    def test_empty_directory_fails(self, tmp_path) -> None:
        result = CliRunner().invoke(main, [str(tmp_path), "-o", str(tmp_path / "patterns.json")])

        assert result.exit_code != 0
        assert "no pattern files parsed" in result.output
        assert not (tmp_path / "patterns.json").exists()
