"""Project root discovery."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

TASK_FILE_NAME = "task_list.json"


@dataclass(slots=True, frozen=True)
class ProjectPaths:
    """Resolved locations of the sub-projects the agents work on."""

    root: Path
    backend: Path
    mobile: Path
    orchestrator: Path
    deploy: Path
    task_file: Path

    @classmethod
    def discover(cls, root: Path) -> ProjectPaths:
        """Resolve sub-project paths; the root itself must exist."""

        abs_root = Path(root).expanduser().resolve()
        if not abs_root.is_dir():
            raise ValueError(f"project root does not exist: {abs_root}")
        return cls(
            root=abs_root,
            backend=abs_root / "backend",
            mobile=abs_root / "mobile",
            orchestrator=abs_root / "orchestrator",
            deploy=abs_root / "deploy",
            task_file=abs_root / TASK_FILE_NAME,
        )

    @property
    def has_backend(self) -> bool:
        return (self.backend / "go.mod").is_file()

    @property
    def has_mobile(self) -> bool:
        return (self.mobile / "package.json").is_file()

    @property
    def has_task_file(self) -> bool:
        return self.task_file.is_file()
