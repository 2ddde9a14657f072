"""grpcdeck/workspace.py: named snapshots of endpoint, method and request."""
from __future__ import annotations

import logging
from typing import Optional

from grpcdeck.domain import Endpoint, RequestSnapshot, Workspace
from grpcdeck.errors import WorkspaceExistsError
from grpcdeck.state import AppState
from grpcdeck.storage import Repository, validate_workspace_name

log = logging.getLogger(__name__)


class WorkspaceController:

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    @staticmethod
    def capture(name: str, state: AppState, endpoint: Optional[Endpoint]) -> Workspace:
        service = state.selected_service.get()
        method  = state.selected_method.get()
        return Workspace(
            name=name,
            endpoint=endpoint,
            request=RequestSnapshot(
                method=f"{service}/{method}" if service and method else "",
                body=state.request.text.get(),
                metadata=tuple(state.request.metadata.get()),
            ),
            selected_service=service,
            selected_method=method,
        )

    def save(self, workspace: Workspace, overwrite: bool = False) -> None:
        """Raises WorkspaceExistsError on a name collision unless overwrite."""
        validate_workspace_name(workspace.name)
        if not overwrite and self._repo.workspace_exists(workspace.name):
            raise WorkspaceExistsError(f"workspace {workspace.name!r} already exists")
        self._repo.save_workspace(workspace)
        log.info("saved workspace %s", workspace.name)

    def load(self, name: str) -> Workspace:
        return self._repo.load_workspace(name)

    def exists(self, name: str) -> bool:
        return self._repo.workspace_exists(name)

    def list(self) -> list[str]:
        return sorted(self._repo.list_workspaces())

    def delete(self, name: str) -> None:
        self._repo.delete_workspace(name)
        log.info("deleted workspace %s", name)

    @staticmethod
    def apply(workspace: Workspace, state: AppState) -> None:
        """Populate selection and request from the workspace."""
        request = workspace.request or RequestSnapshot()

        def _write() -> None:
            state.selected_service.set(workspace.selected_service)
            state.selected_method.set(workspace.selected_method)
            state.request.text.set(request.body)
            state.request.metadata.set(tuple(request.metadata))
            state.response.clear()
        state.batch(_write)
