from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from typing import List, Dict, Any
from collections import deque
import uvicorn
import asyncio
import json
import logging

import config
from .errors import (
    GraphError,
    GraphIntegrityError,
    NodeNotFoundError,
    EdgeNotFoundError,
    ValidationError,
)
from .graph_store import GraphStore
from .node_registry import registry
from .nodes.base import NodeSchema
from .orchestrator import ProcessingOrchestrator
from .processor import OpenAIImageProcessor
from .resolver import resolve_inputs
from .schemas import (
    Artifact,
    Edge,
    Graph,
    InvokeResponse,
    Node,
    NodeCreate,
    NodeKind,
    NodeState,
    UploadRequest,
    new_id,
)
from .websockets import manager

# Setup Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Image Workflow Graph")

# Pending broadcast tasks, kept referenced until they finish
_broadcasts = set()


def event_callback(event: str, payload: Dict[str, Any]):
    message = json.dumps({"type": event, "payload": payload})
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No running event loop, cannot broadcast events")
        return
    task = loop.create_task(manager.broadcast(message))
    _broadcasts.add(task)
    task.add_done_callback(_broadcasts.discard)


# Graph engine. Endpoints touching it are async so all access stays on the event loop
store = GraphStore()
orchestrator = ProcessingOrchestrator(store, OpenAIImageProcessor(), on_event=event_callback)


@app.on_event("shutdown")
async def shutdown_event():
    if orchestrator.in_flight:
        logger.warning(f"Shutting down with {len(orchestrator.in_flight)} node(s) still running")


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def http_error(e: GraphError) -> HTTPException:
    if isinstance(e, (NodeNotFoundError, EdgeNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, GraphIntegrityError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@app.get("/")
async def read_root():
    return {"message": "Image Workflow Graph API"}


@app.get("/api/health")
async def health():
    processor = orchestrator.processor
    return {
        "status": "ok",
        "processor": type(processor).__name__,
        "has_api_key": getattr(processor, "configured", True),
        "running": orchestrator.in_flight,
    }


@app.get("/api/nodes", response_model=List[NodeSchema])
async def get_node_kinds():
    return registry.get_all_metadata()


# --- GRAPH ENDPOINTS ---

@app.get("/api/graph", response_model=Graph)
async def get_graph():
    return store.snapshot()


@app.delete("/api/graph")
async def clear_graph():
    store.clear()
    return {"status": "cleared"}


@app.post("/api/graph/nodes", response_model=Node)
async def create_node(payload: NodeCreate):
    try:
        node = Node(
            id=new_id(payload.kind.value),
            kind=payload.kind,
            position=payload.position,
            config=payload.config,
        )
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    try:
        return store.add_node(node)
    except GraphError as e:
        raise http_error(e)


@app.put("/api/graph/nodes", response_model=Graph)
async def replace_nodes(nodes: List[Node]):
    try:
        store.set_nodes(nodes)
    except GraphError as e:
        raise http_error(e)
    return store.snapshot()


@app.patch("/api/graph/nodes/{node_id}", response_model=Node)
async def update_node(node_id: str, partial: Dict[str, Any]):
    try:
        return store.update_node_data(node_id, partial)
    except GraphError as e:
        raise http_error(e)


@app.delete("/api/graph/nodes/{node_id}")
async def delete_node(node_id: str):
    try:
        store.remove_node(node_id)
    except GraphError as e:
        raise http_error(e)
    return {"status": "deleted", "id": node_id}


@app.post("/api/graph/nodes/{node_id}/upload", response_model=Node)
async def upload_image(node_id: str, payload: UploadRequest):
    try:
        node = store.get_node(node_id)
    except GraphError as e:
        raise http_error(e)
    if node.kind != NodeKind.UPLOAD:
        raise HTTPException(status_code=400, detail=f"Node '{node_id}' is not an upload node")
    try:
        artifact = Artifact.from_data_url(payload.data_url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return store.update_node_data(node_id, {
        "image": artifact,
        "file_name": payload.file_name,
        "output": artifact,
        "state": NodeState.SUCCEEDED,
        "error": None,
    })


@app.post("/api/graph/nodes/{node_id}/reset", response_model=Node)
async def reset_node(node_id: str):
    try:
        return store.reset_node(node_id)
    except GraphError as e:
        raise http_error(e)


@app.get("/api/graph/nodes/{node_id}/inputs", response_model=List[Artifact])
async def get_inputs(node_id: str):
    if not store.has_node(node_id):
        raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found")
    return resolve_inputs(store.snapshot(), node_id)


@app.post("/api/graph/nodes/{node_id}/invoke", response_model=InvokeResponse)
async def invoke_node(node_id: str, response: Response, wait: bool = False):
    try:
        task = orchestrator.invoke(node_id)
    except GraphError as e:
        raise http_error(e)

    if task is not None and wait:
        await task
    elif task is not None:
        response.status_code = 202

    try:
        node = store.get_node(node_id)
    except GraphError as e:
        raise http_error(e)
    return InvokeResponse(node_id=node_id, accepted=task is not None, node=node)


@app.get("/api/graph/nodes/{node_id}/export")
async def export_image(node_id: str):
    try:
        node = store.get_node(node_id)
    except GraphError as e:
        raise http_error(e)
    if node.output is None:
        raise HTTPException(status_code=404, detail=f"Node '{node_id}' has no image to export")
    try:
        content = node.output.to_bytes()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))

    extension = node.output.mime_type.split("/")[-1]
    filename = f"generated-image-{node_id}.{extension}"
    return Response(
        content=content,
        media_type=node.output.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/graph/edges", response_model=Edge)
async def create_edge(edge: Edge):
    try:
        return store.add_edge(edge)
    except GraphError as e:
        raise http_error(e)


@app.put("/api/graph/edges", response_model=Graph)
async def replace_edges(edges: List[Edge]):
    try:
        store.set_edges(edges)
    except GraphError as e:
        raise http_error(e)
    return store.snapshot()


@app.delete("/api/graph/edges/{edge_id}")
async def delete_edge(edge_id: str):
    try:
        store.remove_edge(edge_id)
    except GraphError as e:
        raise http_error(e)
    return {"status": "deleted", "id": edge_id}


@app.websocket("/api/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            # Keep alive / listen
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# Log Buffer
log_buffer = deque(maxlen=config.LOG_BUFFER_SIZE)


class ListHandler(logging.Handler):
    def emit(self, record):
        log_buffer.append(self.format(record))


handler = ListHandler()
formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
handler.setFormatter(formatter)
logging.getLogger().addHandler(handler)


@app.get("/api/logs")
async def get_logs():
    return list(log_buffer)


if __name__ == "__main__":
    uvicorn.run("backend.main:app", host=config.API_HOST, port=config.API_PORT, reload=True, timeout_keep_alive=300)
