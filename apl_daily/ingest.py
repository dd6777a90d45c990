from __future__ import annotations

import json
import re
from pathlib import Path
from typing import List, Optional

import click

from apl_daily.catalog import Pattern, default_image_prompt
from apl_daily.config import DEFAULT_PATTERNS_PATH
from apl_daily.errors import CatalogError
from apl_daily.logs import log_event

FILE_NAME_RE = re.compile(r"^(.+?)\s*\((\d+)\)\.md$")
SECTION_RE = r"### {name}\s*\n([^#]*)"


def _clean_section(text: str) -> str:
    lines = (re.sub(r"^>\s*", "", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def _section(content: str, name: str) -> Optional[str]:
    match = re.search(SECTION_RE.format(name=re.escape(name)), content)
    return _clean_section(match.group(1)) if match else None


def parse_pattern(file_name: str, content: str) -> Pattern:
    """Parse one ``Title (N).md`` pattern file."""
    name_match = FILE_NAME_RE.match(file_name)
    if not name_match:
        raise CatalogError(f"invalid pattern file name: {file_name}")
    title = name_match.group(1).strip()
    number = int(name_match.group(2))

    problem = _section(content, "Problem")
    solution = _section(content, "Solution")
    if problem is None or solution is None:
        raise CatalogError(f"{file_name}: missing Problem or Solution section")
    return Pattern(
        id=number,
        title=title,
        problem=problem,
        solution=solution,
        related_patterns=_section(content, "Related Patterns") or "",
        image_prompt=default_image_prompt(title, problem),
    )


def parse_directory(source_dir: Path) -> List[Pattern]:
    patterns: List[Pattern] = []
    for path in sorted(source_dir.glob("*.md")):
        try:
            patterns.append(parse_pattern(path.name, path.read_text(encoding="utf-8")))
        except (CatalogError, OSError, UnicodeDecodeError) as ex:
            log_event("pattern_file_skipped", file=path.name, error=str(ex))
    patterns.sort(key=lambda p: p.id)
    return patterns


def write_catalog(patterns: List[Pattern], output: Path) -> None:
    records = [
        {
            "id": p.id,
            "title": p.title,
            "problem": p.problem,
            "solution": p.solution,
            "relatedPatterns": p.related_patterns,
            "imagePrompt": p.image_prompt,
        }
        for p in patterns
    ]
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(records, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


@click.command()
@click.argument("source_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_PATTERNS_PATH,
    show_default=True,
    help="Catalog JSON file to write.",
)
def main(source_dir: Path, output: Path) -> None:
    """Build the pattern catalog from a directory of markdown pattern files."""
    patterns = parse_directory(source_dir)
    if not patterns:
        raise click.ClickException(f"no pattern files parsed from {source_dir}")
    write_catalog(patterns, output)
    click.echo(f"Wrote {len(patterns)} patterns to {output}")


if __name__ == "__main__":
    main()
