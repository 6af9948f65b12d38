#!/usr/bin/env python3
"""Split a full species export into the partition files served to clients.

The export is one JSON document holding every taxon row under the key
"original csv". The output is N files named species-data-<i>.json (1-based),
each holding a contiguous slice of the rows under the same key.

Usage:
    python -m tools.partition.split_species_data originaldata.json --out data/species
    python -m tools.partition.split_species_data originaldata.json --parts 10 --out public/
"""

from __future__ import annotations

import argparse
import json
import math
import sys
from pathlib import Path

ROWS_KEY = "original csv"
PARTITION_NAME = "species-data-{index}.json"


def split_rows(rows: list, parts: int) -> list[list]:
    """Contiguous slices of ceil(len/parts) rows; trailing slices may be empty."""
    per_file = math.ceil(len(rows) / parts) if rows else 0
    return [rows[i * per_file:(i + 1) * per_file] for i in range(parts)]


def main():
    parser = argparse.ArgumentParser(description="Split a species export into partition files")
    parser.add_argument("source", type=Path, help="Full export, e.g. originaldata.json")
    parser.add_argument("--out", type=Path, default=Path("."), help="Output directory")
    parser.add_argument("--parts", type=int, default=10, help="Number of partitions (default: 10)")
    parser.add_argument("--indent", type=int, default=2, help="JSON indent (0 for compact)")

    args = parser.parse_args()

    with open(args.source, encoding="utf-8") as f:
        data = json.load(f)
    rows = data.get(ROWS_KEY) if isinstance(data, dict) else None
    if not isinstance(rows, list):
        print(f"{args.source}: no {ROWS_KEY!r} list found", file=sys.stderr)
        sys.exit(1)

    args.out.mkdir(parents=True, exist_ok=True)
    for index, chunk in enumerate(split_rows(rows, args.parts), start=1):
        path = args.out / PARTITION_NAME.format(index=index)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({ROWS_KEY: chunk}, f, ensure_ascii=False, indent=args.indent or None)
        print(f"  {path}: {len(chunk)} rows")

    print(f"Split {len(rows)} rows into {args.parts} files.")


if __name__ == "__main__":
    main()
