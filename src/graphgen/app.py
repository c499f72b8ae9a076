"""FastAPI application exposing graph generation and graph reads."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .conversations import ConversationSource, InMemoryConversationSource
from .engine import AnalysisEngineClient
from .errors import GraphGenError, NotFoundError
from .exporter import CorpusExporter
from .observability import MetricsRecorder
from .registry import ActiveTaskRegistry, LeaseTaskRegistry, TaskRegistry
from .service import GraphGenerationService
from .store import GraphSnapshotStore
from .submitter import TaskSubmitter

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("graphgen")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: GraphSnapshotStore,
        engine: AnalysisEngineClient,
        service: GraphGenerationService,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.engine = engine
        self.service = service
        self.metrics = metrics


def build_registry(settings: Settings, store: GraphSnapshotStore) -> TaskRegistry:
    if settings.registry_backend == "lease":
        return LeaseTaskRegistry(store, ttl_seconds=settings.lease_ttl_seconds)
    return ActiveTaskRegistry()


def create_app(
    *,
    settings: Settings | None = None,
    store: GraphSnapshotStore | None = None,
    engine: AnalysisEngineClient | None = None,
    conversation_source: ConversationSource | None = None,
    service: GraphGenerationService | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    store = store or GraphSnapshotStore(settings.graph_db_file(), metrics=metrics)
    engine = engine or AnalysisEngineClient(
        settings.engine_base_url,
        timeout=settings.engine_request_timeout,
        headers=settings.engine_headers(),
    )

    if service is None:
        if conversation_source is None:
            logger.warning("app.start conversation_source=memory exports will be empty")
            conversation_source = InMemoryConversationSource()
        exporter = CorpusExporter(conversation_source, batch_size=settings.export_batch_size, metrics=metrics)
        submitter = TaskSubmitter(
            engine,
            exporter,
            max_attempts=settings.submit_max_attempts,
            backoff_seconds=settings.submit_backoff_seconds,
            metrics=metrics,
        )
        service = GraphGenerationService(
            settings=settings,
            store=store,
            engine=engine,
            submitter=submitter,
            registry=build_registry(settings, store),
            metrics=metrics,
        )

    logger.info(
        "app.start settings_loaded graph_db=%s engine=%s registry=%s",
        store.db_path,
        settings.engine_base_url,
        settings.registry_backend,
    )

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        store=store,
        engine=engine,
        service=service,
        metrics=metrics,
    )

    @app.exception_handler(GraphGenError)
    async def _graph_error_handler(request: Request, exc: GraphGenError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("api.error path=%s code=%s error=%s", request.url.path, exc.code, exc)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.on_event("startup")
    async def _recover_pending_tasks() -> None:
        if settings.recover_tasks_on_startup:
            await service.recover_pending_tasks()

    @app.on_event("shutdown")
    async def _shutdown_pollers() -> None:
        await service.shutdown()
        await engine.aclose()

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_store(request: Request) -> GraphSnapshotStore:
        return get_state(request).store

    def get_service(request: Request) -> GraphGenerationService:
        return get_state(request).service

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
        user_id = (x_user_id or "").strip()
        if not user_id:
            raise HTTPException(status_code=400, detail="X-User-Id header is required")
        return user_id

    @app.post("/v1/graph-ai/generate", response_class=JSONResponse, status_code=202)
    async def request_generation(
        user_id: str = Depends(get_user_id),
        service: GraphGenerationService = Depends(get_service),
    ) -> JSONResponse:
        task_id = await service.request_generation(user_id)
        return JSONResponse({"taskId": task_id, "status": "processing"}, status_code=202)

    @app.post("/v1/graph-ai/summary", response_class=JSONResponse, status_code=202)
    async def request_summary(
        language: str | None = Query(default=None),
        user_id: str = Depends(get_user_id),
        service: GraphGenerationService = Depends(get_service),
    ) -> JSONResponse:
        task_id = await service.request_summary(user_id, language=language)
        return JSONResponse({"taskId": task_id, "status": "processing"}, status_code=202)

    @app.get("/v1/graph", response_class=JSONResponse)
    async def get_snapshot(
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        return JSONResponse(store.get_snapshot_for_user(user_id).to_dict())

    @app.get("/v1/graph/stats", response_class=JSONResponse)
    async def get_stats(
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        return JSONResponse(store.get_stats(user_id).to_dict())

    @app.get("/v1/graph/summary", response_class=JSONResponse)
    async def get_summary(
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        return JSONResponse(store.get_graph_summary(user_id).to_dict())

    @app.get("/v1/graph/clusters/{cluster_id}/nodes", response_class=JSONResponse)
    async def list_cluster_nodes(
        cluster_id: str,
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        nodes = store.list_nodes_by_cluster(user_id, cluster_id)
        return JSONResponse({"clusterId": cluster_id, "nodes": [node.to_dict() for node in nodes]})

    @app.patch("/v1/graph/nodes/{node_id}", response_class=JSONResponse)
    async def update_node(
        node_id: int,
        patch: dict[str, Any] = Body(...),
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        node = store.update_node(user_id, node_id, patch)
        return JSONResponse(node.to_dict())

    @app.delete("/v1/graph/nodes/{node_id}", response_class=Response, status_code=204)
    async def delete_node(
        node_id: int,
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> Response:
        if not store.delete_node(user_id, node_id):
            raise NotFoundError(f"Node {node_id} not found", details={"node_id": node_id})
        return Response(status_code=204)

    @app.delete("/v1/graph/clusters/{cluster_id}", response_class=Response, status_code=204)
    async def delete_cluster(
        cluster_id: str,
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> Response:
        counts = store.delete_cluster(user_id, cluster_id)
        if not counts["clusters"] and not counts["nodes"]:
            raise NotFoundError(f"Cluster {cluster_id} not found", details={"cluster_id": cluster_id})
        return Response(status_code=204)

    @app.delete("/v1/graph", response_class=Response, status_code=204)
    async def delete_graph(
        permanent: bool = Query(default=True),
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> Response:
        store.delete_all_graph_data(user_id, permanent=permanent)
        return Response(status_code=204)

    @app.post("/v1/graph/restore", response_class=JSONResponse)
    async def restore_graph(
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        return JSONResponse({"restored": store.restore_graph(user_id)})

    @app.delete("/v1/graph/summary", response_class=Response, status_code=204)
    async def delete_summary(
        permanent: bool = Query(default=False),
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> Response:
        store.delete_graph_summary(user_id, permanent=permanent)
        return Response(status_code=204)

    @app.post("/v1/graph/summary/restore", response_class=JSONResponse)
    async def restore_summary(
        user_id: str = Depends(get_user_id),
        store: GraphSnapshotStore = Depends(get_store),
    ) -> JSONResponse:
        return JSONResponse({"restored": store.restore_graph_summary(user_id)})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app
