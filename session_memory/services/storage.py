"""On-disk layout of projects.

::

    {root}/projects/{project_id}/
        manifest.json
        originals/{session_id}.jsonl      synced, append-only copy of the source
        summaries/{session_id}/           compression artifacts
        composed/{name}/                  composition artifacts
        .migration-backups/               manifest backups taken before migrating
"""

from pathlib import Path

from ..config.manager import get_config
from ..utils.errors import ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)


def display_name_for(project_id: str) -> str:
    """Readable name for an encoded project id.

    Ids starting with ``-`` encode a filesystem path with ``-`` as separator;
    the last path segment is used.
    """
    if not project_id:
        return "Unknown Project"
    if project_id.startswith("-"):
        decoded = "/" + project_id[1:].replace("-", "/")
        return decoded.rsplit("/", 1)[-1] or decoded
    return project_id


class StoragePaths:
    """Resolves every path the core reads or writes."""

    def __init__(self, root: str | Path | None = None) -> None:
        """Initialize storage paths.

        Args:
            root: Storage root (defaults to ``storage.root`` from config)
        """
        self.root = Path(root if root is not None else get_config().storage.root).expanduser()

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def project_dir(self, project_id: str) -> Path:
        if not project_id or not isinstance(project_id, str):
            raise ValidationError("Invalid projectId: must be a non-empty string", field="project_id")
        return self.projects_dir / project_id

    def manifest_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "manifest.json"

    def originals_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "originals"

    def original_copy_path(self, project_id: str, session_id: str) -> Path:
        return self.originals_dir(project_id) / f"{session_id}.jsonl"

    def summaries_dir(self, project_id: str, session_id: str | None = None) -> Path:
        base = self.project_dir(project_id) / "summaries"
        return base / session_id if session_id else base

    def composed_dir(self, project_id: str, name: str | None = None) -> Path:
        base = self.project_dir(project_id) / "composed"
        return base / name if name else base

    def backups_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / ".migration-backups"

    def ensure_directory_structure(self, project_id: str) -> dict[str, Path]:
        """Create the project directories. Idempotent."""
        layout = {
            "project": self.project_dir(project_id),
            "originals": self.originals_dir(project_id),
            "summaries": self.summaries_dir(project_id),
            "composed": self.composed_dir(project_id),
        }
        for path in layout.values():
            path.mkdir(parents=True, exist_ok=True)
        logger.debug("Project directories ready", extra={"project_id": project_id})
        return layout

    def project_exists(self, project_id: str) -> bool:
        return self.project_dir(project_id).is_dir()

    def list_projects(self) -> list[str]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(p.name for p in self.projects_dir.iterdir() if p.is_dir())


# Global instance
_storage_paths: StoragePaths | None = None


def get_storage_paths() -> StoragePaths:
    """Get or create the global storage paths instance."""
    global _storage_paths
    if _storage_paths is None:
        _storage_paths = StoragePaths()
    return _storage_paths
