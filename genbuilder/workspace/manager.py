from __future__ import annotations
import json
import logging
import re
import shutil
from pathlib import Path
from genbuilder.core.config import settings
from genbuilder.core.logging import job_extra
from genbuilder.core.workflow import AppMetadata

log = logging.getLogger(__name__)

DEFAULT_TITLE = "Generated App"

class WorkspaceManager:
    """Owns the on-disk directory of one generated app."""

    def __init__(self, job_id: str, root_dir: str | Path | None = None, playbook_dir: str | Path | None = None):
        self.job_id = job_id
        self.root = Path(root_dir or settings.workspaces_dir) / job_id
        self.playbook_dir = Path(playbook_dir or settings.playbook_dir)

    @property
    def template_dir(self) -> Path:
        return self.playbook_dir / "template"

    @property
    def playbook_path(self) -> Path:
        return self.playbook_dir / "CLAUDE.md"

    def exists(self) -> bool:
        return self.root.is_dir()

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def bootstrap(self, local_database_url: str = "file:./dev.db", auth_secret: str = "preview-secret-key") -> None:
        """Seed a fresh workspace with the starter template, playbook and .env."""
        self.ensure()
        if self.template_dir.is_dir():
            shutil.copytree(self.template_dir, self.root, dirs_exist_ok=True)
            log.info("Template copied to workspace", extra=job_extra(self.job_id))
        if self.playbook_path.is_file():
            shutil.copyfile(self.playbook_path, self.root / "CLAUDE.md")
        else:
            log.warning("Playbook not found at %s", self.playbook_path, extra=job_extra(self.job_id))
        write_default_env(self.root, local_database_url, auth_secret)


def write_default_env(root: Path, database_url: str, auth_secret: str) -> bool:
    env_path = root / ".env"
    if env_path.exists():
        return False
    env_path.write_text(f'DATABASE_URL="{database_url}"\nAUTH_SECRET="{auth_secret}"\n', encoding="utf-8")
    return True

def extract_app_metadata(workspace_dir: str | Path) -> AppMetadata:
    """Title and description from the generated package.json, with fallbacks."""
    title, description = DEFAULT_TITLE, ""
    pkg_path = Path(workspace_dir) / "package.json"
    if not pkg_path.is_file():
        return AppMetadata(title, description)
    try:
        pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("Unreadable package.json: %s", e)
        return AppMetadata(title, description)

    if isinstance(pkg, dict):
        name = pkg.get("name")
        if isinstance(name, str) and name:
            # "leadflow-crm" -> "Leadflow Crm"
            title = re.sub(r"\b\w", lambda m: m.group(0).upper(), re.sub(r"[-_]", " ", name))
        if isinstance(pkg.get("description"), str):
            description = pkg["description"]
    return AppMetadata(title, description)
