#!/usr/bin/env python3
"""Run the cited pipeline over a golden set and report citation compliance.

Usage: scripts/evaluate.py [golden.jsonl]
"""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from eval.runner import main

if __name__ == "__main__":
    main(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
