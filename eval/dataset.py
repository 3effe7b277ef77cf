from __future__ import annotations

import json
import re
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator


class GoldenExample(BaseModel):
    """A single evaluation question with what a good answer must contain."""

    question: str
    expected_pattern: str = ""  # regex a correct answer matches
    answer_type: str = ""  # "money", "person", "days", "size": enables partial credit
    expected_sources: list[str] = []
    category: str = ""
    tags: list[str] = []

    @field_validator("expected_pattern")
    @classmethod
    def _pattern_compiles(cls, value: str) -> str:
        if value:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid expected_pattern {value!r}: {exc}") from exc
        return value


def load_golden_set(path: Path) -> list[GoldenExample]:
    """Load evaluation examples from a JSONL file, one object per line.

    Blank lines are skipped. A malformed line raises ``ValueError`` naming
    the line number.
    """
    examples: list[GoldenExample] = []
    with open(path, encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                examples.append(GoldenExample(**json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from exc
    return examples


def filter_examples(
    examples: list[GoldenExample],
    category: str | None = None,
    tag: str | None = None,
) -> list[GoldenExample]:
    return [
        ex
        for ex in examples
        if (category is None or ex.category == category) and (tag is None or tag in ex.tags)
    ]
