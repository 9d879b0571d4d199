#!/usr/bin/env python3
"""
OpenAPI specification generator for the memedex API.

Writes the schema to ``api_specification.json`` (or the given path) and
prints an endpoint summary. No models are loaded and the database is
created in a throwaway directory.
"""

import argparse
import json
import sys
import tempfile
from pathlib import Path

from memedex.api import create_app
from memedex.config import Settings


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument(
        "output",
        nargs="?",
        default=Path(__file__).parent / "api_specification.json",
        type=Path,
    )
    args = parser.parse_args()

    with tempfile.TemporaryDirectory() as tmp_dir:
        settings = Settings(
            database_path=Path(tmp_dir) / "memedex.db",
            warm_up_embedding=False,
        )
        openapi_schema = create_app(settings).openapi()

    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(openapi_schema, f, indent=2, ensure_ascii=False)

    paths = openapi_schema.get("paths", {})
    print(f"OpenAPI specification generated: {args.output}")
    print(f"API Endpoints: {len(paths)}")
    for path, methods in paths.items():
        for method, details in methods.items():
            if method.upper() in ["GET", "POST", "PUT", "DELETE", "PATCH"]:
                summary = details.get("summary", "No summary")
                print(f"  {method.upper():6} {path:30} - {summary}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
