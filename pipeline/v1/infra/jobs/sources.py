"""
Where handlers find the photos they work on.
"""

from pathlib import Path
from typing import Protocol

SUPPORTED_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".webp", ".heic", ".tif", ".tiff"}
)
DERIVATIVES_DIR = ".derivatives"


class SubjectSource(Protocol):
    """Lists and resolves the photos of a project."""

    def list_subjects(self, project_id: int | None) -> list[str]:
        ...

    def resolve(self, project_id: int | None, filename: str | None) -> Path | None:
        """Path of the original, or None when there is no usable source."""
        ...

    def derivative_path(
        self, project_id: int | None, filename: str, name: str, ext: str = ".jpg"
    ) -> Path:
        ...


class DirectorySubjectSource:
    """
    One folder per project under a library root::

        <root>/<project_id>/IMG_0001.jpg
        <root>/<project_id>/.derivatives/thumbnail/IMG_0001.jpg
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def project_dir(self, project_id: int | None) -> Path:
        return self.root / str(project_id) if project_id is not None else self.root

    def list_subjects(self, project_id: int | None) -> list[str]:
        folder = self.project_dir(project_id)
        if not folder.is_dir():
            return []
        return sorted(
            entry.name
            for entry in folder.iterdir()
            if entry.is_file() and entry.suffix.lower() in SUPPORTED_EXTENSIONS
        )

    def list_folders(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def resolve(self, project_id: int | None, filename: str | None) -> Path | None:
        if not filename:
            return None
        path = self.project_dir(project_id) / filename
        if path.suffix.lower() not in SUPPORTED_EXTENSIONS or not path.is_file():
            return None
        return path

    def derivative_path(
        self, project_id: int | None, filename: str, name: str, ext: str = ".jpg"
    ) -> Path:
        stem = Path(filename).stem
        return self.project_dir(project_id) / DERIVATIVES_DIR / name / f"{stem}{ext}"
