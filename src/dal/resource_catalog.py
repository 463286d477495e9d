"""Read access to the Project -> Folder -> Dashboard -> Tile hierarchy.

Dashboard and tile metadata are owned by other services; the gateway only needs
"given an id, return its parent id" plus role-assignment rows, and this module is
that narrow view over the control-plane tables.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from dal.control_plane import ControlPlaneDatabase

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Levels of the resource hierarchy, root first."""

    PROJECT = "project"
    FOLDER = "folder"
    DASHBOARD = "dashboard"
    TILE = "tile"


# child kind -> (table, parent column, parent kind)
_PARENT_LINKS = {
    ResourceKind.TILE: ("tiles", "dashboard_id", ResourceKind.DASHBOARD),
    ResourceKind.DASHBOARD: ("dashboards", "folder_id", ResourceKind.FOLDER),
    ResourceKind.FOLDER: ("folders", "project_id", ResourceKind.PROJECT),
}


@dataclass(frozen=True)
class ResourceRef:
    """Pointer to one node of the hierarchy."""

    kind: ResourceKind
    id: UUID


@dataclass(frozen=True)
class ProjectRecord:
    """Root of the hierarchy; the creator is an implicit admin."""

    id: UUID
    name: str
    creator_id: str


@dataclass(frozen=True)
class TileRecord:
    """Leaf of the hierarchy bound to exactly one connection."""

    id: UUID
    dashboard_id: UUID
    connection_id: UUID


@dataclass(frozen=True)
class RoleAssignment:
    """Explicit role row for a user in a project."""

    project_id: UUID
    user_id: str
    role: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ResourceCatalog:
    """Control-plane lookups for hierarchy nodes and role assignments."""

    @classmethod
    async def get_parent(cls, ref: ResourceRef) -> Optional[ResourceRef]:
        """Return the parent of a non-project node, or None when the node is missing."""
        link = _PARENT_LINKS.get(ref.kind)
        if link is None:
            raise ValueError("Projects have no parent")
        table, column, kind = link
        async with ControlPlaneDatabase.get_connection() as conn:
            parent_id = await conn.fetchval(f"SELECT {column} FROM {table} WHERE id = $1", ref.id)
        if parent_id is None:
            return None
        return ResourceRef(kind=kind, id=parent_id)

    @classmethod
    async def get_project(cls, project_id: UUID) -> Optional[ProjectRecord]:
        """Fetch a project by id."""
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, creator_id FROM projects WHERE id = $1", project_id
            )
        if not row:
            return None
        return ProjectRecord(id=row["id"], name=row["name"], creator_id=str(row["creator_id"]))

    @classmethod
    async def get_tile(cls, tile_id: UUID) -> Optional[TileRecord]:
        """Fetch a tile with its dashboard and connection references."""
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, dashboard_id, connection_id FROM tiles WHERE id = $1", tile_id
            )
        if not row:
            return None
        return TileRecord(
            id=row["id"], dashboard_id=row["dashboard_id"], connection_id=row["connection_id"]
        )

    @classmethod
    async def list_tile_ids_for_connection(cls, connection_id: UUID) -> List[UUID]:
        """List tiles that run SQL against a connection."""
        async with ControlPlaneDatabase.get_connection() as conn:
            rows = await conn.fetch(
                "SELECT id FROM tiles WHERE connection_id = $1 ORDER BY id", connection_id
            )
        return [row["id"] for row in rows]

    @classmethod
    async def get_role_assignment(cls, project_id: UUID, user_id: str) -> Optional[RoleAssignment]:
        """Fetch the explicit role row for (project, user)."""
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT project_id, user_id, role, created_at, updated_at
                FROM project_users
                WHERE project_id = $1 AND user_id = $2
                """,
                project_id,
                user_id,
            )
        return _row_to_assignment(row) if row else None

    @classmethod
    async def list_role_assignments(cls, project_id: UUID) -> List[RoleAssignment]:
        """List explicit role rows for a project."""
        async with ControlPlaneDatabase.get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT project_id, user_id, role, created_at, updated_at
                FROM project_users
                WHERE project_id = $1
                ORDER BY created_at, user_id
                """,
                project_id,
            )
        return [_row_to_assignment(row) for row in rows]

    @classmethod
    async def upsert_role_assignment(
        cls, project_id: UUID, user_id: str, role: str
    ) -> Tuple[RoleAssignment, bool]:
        """Insert or update a role row; returns the row and whether it was created."""
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO project_users (project_id, user_id, role)
                VALUES ($1, $2, $3)
                ON CONFLICT (project_id, user_id)
                DO UPDATE SET role = EXCLUDED.role, updated_at = NOW()
                RETURNING project_id, user_id, role, created_at, updated_at,
                          (xmax = 0) AS inserted
                """,
                project_id,
                user_id,
                role,
            )
        logger.info("Project %s: user %s assigned role %s", project_id, user_id, role)
        return _row_to_assignment(row), bool(row["inserted"])

    @classmethod
    async def delete_role_assignment(cls, project_id: UUID, user_id: str) -> bool:
        """Delete a role row; returns False when no row existed."""
        async with ControlPlaneDatabase.get_connection() as conn:
            status = await conn.execute(
                "DELETE FROM project_users WHERE project_id = $1 AND user_id = $2",
                project_id,
                user_id,
            )
        deleted = status.endswith(" 1")
        if deleted:
            logger.info("Project %s: removed user %s", project_id, user_id)
        return deleted


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        project_id=row["project_id"],
        user_id=str(row["user_id"]),
        role=row["role"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
