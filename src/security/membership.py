import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from dal.resource_catalog import ProjectRecord, ResourceCatalog, ResourceKind, ResourceRef
from gateway.errors import NotAuthorized, NotFound, ValidationError
from security.authorization import AuthorizationOverlay
from security.roles import Role, parse_role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectMember:
    """A user's effective role in a project."""

    user_id: str
    role: Role
    is_creator: bool = False

    def to_public(self) -> Dict[str, Any]:
        """Return the camelCase API projection."""
        return {"userId": self.user_id, "role": self.role.value, "isCreator": self.is_creator}


class ProjectMembership:
    """Policy for listing, adding and removing project role assignments.

    The creator is an implicit admin whatever their role row says. They cannot be
    removed or demoted, which keeps at least one admin in every project.
    """

    def __init__(
        self, catalog=ResourceCatalog, overlay: Optional[AuthorizationOverlay] = None
    ) -> None:
        """Initialize with the catalog and an overlay sharing it."""
        self._catalog = catalog
        self._overlay = overlay or AuthorizationOverlay(catalog)

    async def _project(self, project_id: UUID) -> ProjectRecord:
        project = await self._catalog.get_project(project_id)
        if project is None:
            raise NotFound("Project not found", details={"project_id": str(project_id)})
        return project

    async def list_members(self, caller: str, project_id: UUID) -> List[ProjectMember]:
        """List effective members; any member may read the list."""
        project = await self._project(project_id)
        await self._overlay.require_role(
            caller, ResourceRef(ResourceKind.PROJECT, project_id), Role.VIEWER
        )
        members = [ProjectMember(project.creator_id, Role.ADMIN, True)]
        for assignment in await self._catalog.list_role_assignments(project_id):
            role = parse_role(assignment.role)
            if role is None or assignment.user_id == project.creator_id:
                continue
            members.append(ProjectMember(assignment.user_id, role))
        return members

    async def add_member(
        self, caller: str, project_id: UUID, user_id: str, role: str
    ) -> Tuple[ProjectMember, bool]:
        """Add a user or change their role; returns ``(member, created)``."""
        if not user_id or not role:
            raise ValidationError("User ID and role are required")
        parsed = parse_role(role)
        if parsed is None:
            raise ValidationError("Invalid role. Role must be one of: admin, editor, viewer")

        project = await self._project(project_id)
        await self._overlay.require_role(
            caller, ResourceRef(ResourceKind.PROJECT, project_id), Role.ADMIN
        )
        if user_id == project.creator_id and parsed != Role.ADMIN:
            raise NotAuthorized("The project creator is always an admin")

        assignment, created = await self._catalog.upsert_role_assignment(
            project_id, user_id, parsed.value
        )
        member = ProjectMember(assignment.user_id, parsed, user_id == project.creator_id)
        return member, created

    async def remove_member(self, caller: str, project_id: UUID, user_id: str) -> None:
        """Remove a user's role row.

        Raises NotAuthorized for the creator and NotFound for non-members. The
        creator is a permanent admin, so a project never loses its last admin.
        """
        project = await self._project(project_id)
        await self._overlay.require_role(
            caller, ResourceRef(ResourceKind.PROJECT, project_id), Role.ADMIN
        )
        if user_id == project.creator_id:
            raise NotAuthorized("Cannot remove the project creator")

        if not await self._catalog.delete_role_assignment(project_id, user_id):
            raise NotFound("User is not a member of this project")
        logger.info("User %s removed %s from project %s", caller, user_id, project_id)
