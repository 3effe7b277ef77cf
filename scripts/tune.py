#!/usr/bin/env python3
"""Sweep similarity thresholds over the golden dataset and print recommendations."""
from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from eval.dataset import filter_examples, load_golden_set
from eval.runner import build_default_pipeline
from eval.tuning import tune_thresholds
from src.citerank.config import settings


def main() -> None:
    # Only questions with an expected answer pattern
    examples = filter_examples(load_golden_set(settings.eval_golden_path), tag="tuning")
    if not examples:
        print(f"Error: no examples in {settings.eval_golden_path}")
        sys.exit(1)

    report = tune_thresholds(build_default_pipeline(), examples)
    print(json.dumps([r.model_dump() for r in report.recommendations], indent=2))

    best = report.best
    if best is not None:
        print(f"\nBest threshold: {best.threshold:.2f} ({best.success_rate:.0f}% success)")


if __name__ == "__main__":
    main()
