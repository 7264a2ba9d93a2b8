"""FastAPI web server for the creative workflow engine."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from ..container import Container
from ..errors import InvariantViolation
from ..fsm import workflow_summary
from ..service import WorkflowService
from .task_api import create_task_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Creative Workflow Engine",
        description="Workflow, evidence and clearance API for AI-assisted creative tasks",
        version="0.1.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    services: dict[Path, WorkflowService] = {}
    services_lock = threading.Lock()
    app.state.services = services

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        if project_dir_param:
            return Path(project_dir_param).expanduser().resolve()
        if app.state.default_project_dir:
            return Path(app.state.default_project_dir).resolve()
        return Path.cwd().resolve()

    def _get_service(project_dir_param: Optional[str] = None) -> WorkflowService:
        resolved = _get_project_dir(project_dir_param)
        with services_lock:
            service = services.get(resolved)
            if service is None:
                service = WorkflowService(Container(resolved))
                services[resolved] = service
                logger.info("Serving workflow state from {}", service.container.state_root)
            return service

    app.state.get_service = _get_service

    @app.exception_handler(InvariantViolation)
    async def _invariant_violation(request: Any, exc: InvariantViolation) -> Any:
        return JSONResponse(status_code=500, content={"kind": "invariant_violation", "message": str(exc)})

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "Creative Workflow Engine", "version": "0.1.0"}

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "project_dir": str(_get_project_dir())}

    @app.get("/api/tools")
    async def list_tools(
        project_dir: Optional[str] = Query(None),
        query: str = Query(""),
        category: str = Query("all"),
        project_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        service = _get_service(project_dir)
        tools = [tool.to_dict() for tool in service.catalog.search(query, category, project_id)]
        return {"tools": tools, "total": len(tools)}

    @app.get("/api/tools/{tool_id}")
    async def get_tool(tool_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = _get_service(project_dir)
        tool = service.catalog.resolve(tool_id)
        if tool is None:
            raise HTTPException(status_code=404, detail=f"Tool {tool_id} not found")
        return {"tool": tool.to_dict()}

    @app.get("/api/audit/{task_id}")
    async def audit(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        service = _get_service(project_dir)
        task = service.container.tasks.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"summary": workflow_summary(task), "events": service.container.events.for_entity(task_id)}

    app.include_router(create_task_router(_get_service))

    return app
