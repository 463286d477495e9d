"""Role resolution over the Project -> Folder -> Dashboard -> Tile hierarchy.

Every gateway operation is gated here: a resource is walked up to its project,
the caller's role in that project is resolved, and the rank is compared with the
operation's minimum. Nothing in this module writes.
"""

import logging
from typing import Optional, Set
from uuid import UUID

from dal.connection_record import ConnectionRecord
from dal.resource_catalog import ResourceCatalog, ResourceKind, ResourceRef
from gateway.errors import NotAuthorized, NotFound
from security.roles import Role, parse_role

logger = logging.getLogger(__name__)

_MAX_HOPS = 3


class AuthorizationOverlay:
    """Resolves and enforces project roles for a caller."""

    def __init__(self, catalog=ResourceCatalog) -> None:
        """Initialize with a catalog exposing parent and role-assignment lookups."""
        self._catalog = catalog

    async def resolve_role(self, user_id: str, project_id: UUID) -> Optional[Role]:
        """Return the caller's role in a project.

        The project creator is always an admin, whatever their role row says.
        Everybody else gets the role from their row, or no role without one.
        """
        project = await self._catalog.get_project(project_id)
        if project is None:
            raise NotFound("Project not found", details={"project_id": str(project_id)})
        if project.creator_id == str(user_id):
            return Role.ADMIN

        assignment = await self._catalog.get_role_assignment(project_id, user_id)
        if assignment is None:
            return None
        role = parse_role(assignment.role)
        if role is None:
            logger.warning(
                "Ignoring unknown role %r for user %s in project %s",
                assignment.role,
                user_id,
                project_id,
            )
        return role

    async def resolve_project(self, resource: ResourceRef) -> UUID:
        """Walk a resource up to its owning project id."""
        current = resource
        for _ in range(_MAX_HOPS + 1):
            if current.kind == ResourceKind.PROJECT:
                return current.id
            parent = await self._catalog.get_parent(current)
            if parent is None:
                raise NotFound(
                    f"{current.kind.value.capitalize()} not found",
                    details={"kind": current.kind.value, "id": str(current.id)},
                )
            current = parent
        raise NotFound("Resource hierarchy is deeper than expected")

    async def require_role(self, user_id: str, resource: ResourceRef, min_role: Role) -> Role:
        """Return the caller's role on ``resource`` or raise ``NotAuthorized``."""
        project_id = await self.resolve_project(resource)
        role = await self.resolve_role(user_id, project_id)
        if role is None:
            raise NotAuthorized("You do not have access to this project")
        if not role.satisfies(min_role):
            raise NotAuthorized(f"This action requires the {min_role.value} role")
        return role

    async def require_connection_access(
        self, user_id: str, connection: ConnectionRecord, min_role: Role
    ) -> None:
        """Allow the connection owner, or a caller holding ``min_role`` in a project
        with a tile that uses the connection.
        """
        if connection.created_by == str(user_id):
            return

        seen: Set[UUID] = set()
        for tile_id in await self._catalog.list_tile_ids_for_connection(connection.id):
            try:
                project_id = await self.resolve_project(ResourceRef(ResourceKind.TILE, tile_id))
            except NotFound:
                logger.warning("Tile %s has a dangling parent reference", tile_id)
                continue
            if project_id in seen:
                continue
            seen.add(project_id)
            role = await self.resolve_role(user_id, project_id)
            if role is not None and role.satisfies(min_role):
                return

        raise NotAuthorized("You do not have access to this database connection")
