from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from apl_daily.errors import CatalogError

# [[Title (12)]] or [[Title (12) | Alias (12)]]
CROSS_REFERENCE_RE = re.compile(r"\[\[[^\]|]*?\((\d+)\)[^\]]*\]\]")


def default_image_prompt(title: str, problem: str) -> str:
    return (
        f'Architectural visualization of "{title}" - {problem}, '
        "professional architectural rendering, detailed, realistic"
    )


@dataclass(frozen=True)
class Pattern:
    id: int
    title: str
    problem: str
    solution: str
    related_patterns: str = ""
    image_prompt: str = ""

    def related_ids(self) -> List[int]:
        seen: List[int] = []
        for match in CROSS_REFERENCE_RE.finditer(self.related_patterns):
            number = int(match.group(1))
            if number not in seen:
                seen.append(number)
        return seen

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "name": self.title,
            "problem": self.problem,
            "solution": self.solution,
            "relatedPatterns": self.related_patterns,
            "imagePrompt": self.image_prompt or default_image_prompt(self.title, self.problem),
            "relatedIds": self.related_ids(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        try:
            pattern_id = int(data.get("id", data.get("number")))
            title = str(data.get("title") or data.get("name") or "").strip()
            problem = str(data["problem"]).strip()
            solution = str(data["solution"]).strip()
        except (KeyError, TypeError, ValueError) as ex:
            raise CatalogError(f"invalid pattern record: {ex}") from ex
        if pattern_id <= 0:
            raise CatalogError(f"pattern id must be positive, got {pattern_id}")
        if not title:
            raise CatalogError(f"pattern {pattern_id} has no title")
        return cls(
            id=pattern_id,
            title=title,
            problem=problem,
            solution=solution,
            related_patterns=str(data.get("relatedPatterns") or ""),
            image_prompt=str(data.get("imagePrompt") or default_image_prompt(title, problem)),
        )


class PatternCatalog:
    """Read-only, id-ordered collection of patterns."""

    def __init__(self, patterns: Iterable[Pattern]) -> None:
        by_id: Dict[int, Pattern] = {}
        for pattern in patterns:
            if pattern.id in by_id:
                raise CatalogError(f"duplicate pattern id {pattern.id}")
            by_id[pattern.id] = pattern
        self._by_id = by_id
        self._ordered: Tuple[Pattern, ...] = tuple(by_id[k] for k in sorted(by_id))

    def get(self, pattern_id: int) -> Optional[Pattern]:
        return self._by_id.get(pattern_id)

    def all(self) -> Tuple[Pattern, ...]:
        return self._ordered

    def ids(self) -> List[int]:
        return [p.id for p in self._ordered]

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, pattern_id: object) -> bool:
        return pattern_id in self._by_id


def load_catalog(path: Union[str, Path]) -> PatternCatalog:
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as ex:
        raise CatalogError(f"cannot read pattern catalog {path}: {ex}") from ex
    if not isinstance(raw, list):
        raise CatalogError(f"pattern catalog {path} must be a JSON list")
    return PatternCatalog(Pattern.from_dict(item) for item in raw)
