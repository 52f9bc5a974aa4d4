"""
FastAPI routes for flowguard.

Implements the API endpoints:
- POST /v1/graphs/validate - Validate a workflow graph
- POST /v1/mappings/apply - Apply field mappings to a context
- POST /v1/mappings/test - Dry-run one expression against sample data
- GET /v1/mappings/functions - List callable helpers and transforms
- GET /v1/executions/:execution_id/nodes/:node_id - Get retry status
- GET /v1/dlq - List dead-lettered executions
- POST /v1/executions/:execution_id/nodes/:node_id/retry - Replay from DLQ
- GET /v1/retries/stats - Retry statistics
- GET /health - Health check
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from flowguard import __version__
from flowguard.core.exceptions import DLQItemNotFoundError
from flowguard.core.validator import GraphValidator
from flowguard.mapping.engine import DataMappingEngine
from flowguard.mapping.models import DryRunResult, MappingContext, MappingResult
from flowguard.retry.manager import RetryManager
from flowguard.retry.models import RetryableExecution, RetryStats

router = APIRouter(prefix="/v1")
health_router = APIRouter(tags=["health"])


# ==================== Request/Response Models ====================

class ValidationIssue(BaseModel):
    path: str
    message: str
    severity: str
    code: Optional[str] = None


class ValidationResponse(BaseModel):
    """Response for graph validation."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    required_scopes: list[str] = Field(default_factory=list)
    complexity: str


class ApplyMappingsRequest(BaseModel):
    """Request body for applying field mappings."""

    mappings: list[dict[str, Any]] = Field(..., description="Field mappings to apply")
    context: MappingContext = Field(default_factory=MappingContext)

    model_config = {
        "json_schema_extra": {
            "example": {
                "mappings": [
                    {
                        "target_field": "email.to",
                        "expression": {"type": "reference", "node_id": "form", "path": "email"},
                        "validation": {"required": True, "type": "string"},
                    },
                    {
                        "target_field": "email.subject",
                        "expression": {"type": "template", "template": "Hello {{nodes.form.name}}"},
                    },
                ],
                "context": {"node_outputs": {"form": {"email": "a@example.com", "name": "Ada"}}},
            }
        }
    }


class DryRunRequest(BaseModel):
    """Request body for a dry-run evaluation."""

    expression: dict[str, Any] = Field(..., description="Mapping expression with a 'type' tag")
    context: MappingContext = Field(default_factory=MappingContext)


class ReplayResponse(BaseModel):
    execution: RetryableExecution
    message: str = "Execution replayed from DLQ"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_validator(request: Request) -> GraphValidator:
    """Get graph validator from app state."""
    return request.app.state.validator


async def get_mapping_engine(request: Request) -> DataMappingEngine:
    """Get mapping engine from app state."""
    return request.app.state.mapping_engine


async def get_retry_manager(request: Request) -> RetryManager:
    """Get retry manager from app state."""
    return request.app.state.retry_manager


# ==================== Graph Routes ====================

@router.post(
    "/graphs/validate",
    response_model=ValidationResponse,
    tags=["graphs"],
    summary="Validate a workflow graph",
    description="Run every validation stage and return errors, warnings, scopes and complexity.",
)
async def validate_graph(
    graph: Any = Body(..., description="Workflow graph with id, name, nodes and edges"),
    validator: GraphValidator = Depends(get_validator),
) -> ValidationResponse:
    """Validate a graph. Malformed graphs are reported, never rejected."""
    return ValidationResponse(**validator.validate(graph).to_dict())


# ==================== Mapping Routes ====================

@router.post(
    "/mappings/apply",
    response_model=MappingResult,
    tags=["mappings"],
    summary="Apply field mappings",
)
async def apply_mappings(
    request: ApplyMappingsRequest,
    engine: DataMappingEngine = Depends(get_mapping_engine),
) -> MappingResult:
    """Resolve mapped fields against a context; failing fields are listed in errors."""
    return await engine.apply_mappings(request.mappings, request.context)


@router.post(
    "/mappings/test",
    response_model=DryRunResult,
    tags=["mappings"],
    summary="Dry-run an expression",
)
async def test_expression(
    request: DryRunRequest,
    engine: DataMappingEngine = Depends(get_mapping_engine),
) -> DryRunResult:
    """Evaluate an expression against sample data and warn about missing nodes."""
    return await engine.test_expression(request.expression, request.context)


@router.get(
    "/mappings/functions",
    tags=["mappings"],
    summary="List available functions",
)
async def list_functions(
    engine: DataMappingEngine = Depends(get_mapping_engine),
) -> dict[str, list[str]]:
    return engine.available_functions()


# ==================== Retry Routes ====================

@router.get(
    "/executions/{execution_id}/nodes/{node_id}",
    response_model=RetryableExecution,
    tags=["retries"],
    summary="Get retry status",
)
async def get_retry_status(
    execution_id: str,
    node_id: str,
    manager: RetryManager = Depends(get_retry_manager),
) -> RetryableExecution:
    """Get the retry record of a node execution."""
    record = manager.get_retry_status(execution_id, node_id)

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No retry record for {execution_id}:{node_id}",
        )

    return record


@router.get(
    "/dlq",
    response_model=list[RetryableExecution],
    tags=["retries"],
    summary="List dead-lettered executions",
)
async def list_dlq(
    manager: RetryManager = Depends(get_retry_manager),
) -> list[RetryableExecution]:
    return manager.get_dlq_items()


@router.post(
    "/executions/{execution_id}/nodes/{node_id}/retry",
    response_model=ReplayResponse,
    tags=["retries"],
    summary="Replay a dead-lettered execution",
    description="Reset the record to pending with no attempts so the node can run again.",
)
async def replay_execution(
    execution_id: str,
    node_id: str,
    manager: RetryManager = Depends(get_retry_manager),
) -> ReplayResponse:
    """Replay a node execution from the DLQ."""
    try:
        record = manager.replay_from_dlq(execution_id, node_id)
    except DLQItemNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    return ReplayResponse(execution=record)


@router.get(
    "/retries/stats",
    response_model=RetryStats,
    tags=["retries"],
    summary="Retry statistics",
)
async def retry_stats(
    manager: RetryManager = Depends(get_retry_manager),
) -> RetryStats:
    return await manager.get_stats()


# ==================== Health Check Routes ====================

@health_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of flowguard services.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check health of all services."""
    settings = request.app.state.settings
    services = {"idempotency_backend": settings.idempotency.backend.value}

    redis_connection = getattr(request.app.state, "redis_connection", None)
    if redis_connection is not None:
        healthy = await redis_connection.health_check()
        services["redis"] = "healthy" if healthy else "unhealthy"

    overall_status = "degraded" if "unhealthy" in services.values() else "healthy"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
