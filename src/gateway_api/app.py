import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.config.env import get_env_list, get_env_str
from dal.control_plane import ControlPlaneDatabase
from gateway.errors import GatewayError, Internal
from gateway.facade import DataSourceGateway

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

_gateway: Optional[DataSourceGateway] = None


def get_gateway() -> DataSourceGateway:
    """Return the process-wide gateway, building it on first use."""
    global _gateway
    if not ControlPlaneDatabase.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control-plane store not configured",
        )
    if _gateway is None:
        _gateway = DataSourceGateway()
    return _gateway


@asynccontextmanager
async def lifespan(app):
    """Lifespan handler for gateway startup/shutdown."""
    await ControlPlaneDatabase.init()
    yield
    if _gateway is not None:
        await _gateway.pool_manager.close()
    await ControlPlaneDatabase.close()


app = FastAPI(title="Data Source Gateway", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_env_list("GATEWAY_CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Envelope + exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
    success: bool = True,
    error: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"success": success, "message": message, "data": data}
    if error:
        payload["error"] = error
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Map gateway errors to the response envelope."""
    log = logger.error if exc.http_status >= 500 else logger.info
    log("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
    error: Dict[str, Any] = {"code": exc.code}
    if exc.error_category:
        error["errorCategory"] = exc.error_category
    if exc.details:
        error["details"] = exc.details
    return _envelope(
        message=exc.message, status_code=exc.http_status, success=False, error=error
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return malformed request bodies/paths as 400 in the envelope."""
    problems = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        problems.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return _envelope(
        message="; ".join(problems) or "Invalid request",
        status_code=status.HTTP_400_BAD_REQUEST,
        success=False,
        error={"code": "VALIDATION_ERROR"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (401, 404 routes, 503) in the envelope."""
    return _envelope(message=str(exc.detail), status_code=exc.status_code, success=False)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures and return a generic 500."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return await gateway_error_handler(request, Internal("Internal server error"))


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


async def check_internal_auth(request: Request):
    """Verify the internal auth token if configured."""
    expected = get_env_str("GATEWAY_INTERNAL_TOKEN", "")
    if not expected:
        return

    token = request.headers.get("X-Internal-Token")
    if token != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing internal auth token",
        )


async def get_caller(request: Request, _: None = Depends(check_internal_auth)) -> str:
    """Return the caller id forwarded by the upstream auth proxy."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class ConnectionCreatePayload(BaseModel):
    """Payload for registering a database connection."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    type: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: Optional[bool] = None
    options: Optional[Dict[str, Any]] = None


class ConnectionUpdatePayload(BaseModel):
    """Partial update of a database connection."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ssl: Optional[bool] = None
    options: Optional[Dict[str, Any]] = None


class QueryPayload(BaseModel):
    """SQL plus optional positional parameters."""

    query: Optional[str] = None
    params: Optional[List[Any]] = None


class ProjectMemberPayload(BaseModel):
    """Role assignment request."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    role: Optional[str] = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness plus control-plane availability."""
    return _envelope(
        data={"status": "ok", "controlPlane": ControlPlaneDatabase.is_configured()}
    )


@app.post("/connections")
async def create_connection(
    payload: ConnectionCreatePayload,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Register a connection; the caller becomes its owner."""
    record = await gateway.create_connection(caller, payload.model_dump(exclude_none=True))
    return _envelope(
        data=record.to_public(),
        message="Database connection created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@app.get("/connections")
async def list_connections(
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """List registered connections (secrets omitted)."""
    records = await gateway.list_connections(caller)
    return _envelope(data=[record.to_public() for record in records])


@app.get("/connections/{connection_id}")
async def get_connection(
    connection_id: UUID,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Return one connection."""
    record = await gateway.get_connection(caller, connection_id)
    return _envelope(data=record.to_public())


@app.put("/connections/{connection_id}")
async def update_connection(
    connection_id: UUID,
    payload: ConnectionUpdatePayload,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Partially update a connection."""
    record = await gateway.update_connection(
        caller, connection_id, payload.model_dump(exclude_none=True)
    )
    return _envelope(data=record.to_public(), message="Database connection updated successfully")


@app.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: UUID,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Delete a connection no tile uses."""
    await gateway.delete_connection(caller, connection_id)
    return _envelope(message="Database connection deleted successfully")


@app.post("/connections/{connection_id}/test")
async def test_connection(
    connection_id: UUID,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Probe the database and record the resulting status."""
    result = await gateway.test_connection(caller, connection_id)
    data = {
        "status": result.status.value,
        "lastTestedAt": result.last_tested_at.isoformat() if result.last_tested_at else None,
    }
    if result.ok:
        return _envelope(data=data, message=result.message)
    if result.error_category:
        data["errorCategory"] = result.error_category
    return _envelope(
        data=data,
        message=result.message,
        status_code=status.HTTP_400_BAD_REQUEST,
        success=False,
        error={"code": "CONNECTIVITY_FAILED", "errorCategory": result.error_category},
    )


@app.get("/connections/{connection_id}/schema")
async def get_schema(
    connection_id: UUID,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Return schemas and their base tables."""
    overview = await gateway.get_schema(caller, connection_id)
    return _envelope(data=overview)


@app.get("/connections/{connection_id}/schema/{schema_name}/{table_name}")
async def describe_table(
    connection_id: UUID,
    schema_name: str,
    table_name: str,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Return columns and key constraints of one table."""
    description = await gateway.describe_table(caller, connection_id, schema_name, table_name)
    return _envelope(data=description.to_wire())


@app.post("/connections/{connection_id}/query")
async def run_query(
    connection_id: UUID,
    payload: QueryPayload,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Execute SQL against a connection."""
    result = await gateway.run_query(caller, connection_id, payload.query, payload.params)
    return _envelope(data=result.to_wire(), message="Query executed successfully")


@app.post("/tiles/{tile_id}/query")
async def run_tile_query(
    tile_id: UUID,
    payload: QueryPayload,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Execute SQL for a tile against the tile's own connection."""
    result = await gateway.run_scoped_query(caller, tile_id, payload.query, payload.params)
    return _envelope(data=result.to_wire(), message="Query executed successfully")


@app.get("/projects/{project_id}/users")
async def list_project_users(
    project_id: UUID,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """List project members, creator included."""
    members = await gateway.list_project_members(caller, project_id)
    return _envelope(data=[member.to_public() for member in members])


@app.post("/projects/{project_id}/users")
async def add_project_user(
    project_id: UUID,
    payload: ProjectMemberPayload,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Add a member, or change the role of an existing one."""
    member, created = await gateway.add_project_member(
        caller, project_id, payload.user_id, payload.role
    )
    data = {"projectId": str(project_id), **member.to_public()}
    if created:
        return _envelope(
            data=data,
            message="User added to project successfully",
            status_code=status.HTTP_201_CREATED,
        )
    return _envelope(data=data, message="User role updated successfully")


@app.delete("/projects/{project_id}/users/{user_id}")
async def remove_project_user(
    project_id: UUID,
    user_id: str,
    caller: str = Depends(get_caller),
    gateway: DataSourceGateway = Depends(get_gateway),
) -> JSONResponse:
    """Remove a member from a project."""
    await gateway.remove_project_member(caller, project_id, user_id)
    return _envelope(message="User removed from project successfully")
