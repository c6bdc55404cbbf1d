"""
Derivative renderers.

Renderers run inside the compute pool, possibly in another process, so they
are module-level functions taking and returning plain data.
"""

import shutil
from pathlib import Path
from typing import Any


def stub_render(source_path: str, derivatives: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Describe the derivatives without writing anything."""
    return [
        {"name": spec["name"], "path": spec["path"], "written": False}
        for spec in derivatives
    ]


def copy_render(source_path: str, derivatives: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Write each derivative as a byte copy of the original."""
    results = []
    for spec in derivatives:
        target = Path(spec["path"])
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source_path, target)
        results.append(
            {
                "name": spec["name"],
                "path": str(target),
                "written": True,
                "bytes": target.stat().st_size,
            }
        )
    return results
