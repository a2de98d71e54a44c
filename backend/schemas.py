import base64
import binascii
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Union, Literal, Annotated

from pydantic import BaseModel, Field, model_validator


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class NodeKind(str, Enum):
    UPLOAD = "upload"
    EDIT = "edit"
    GENERATE = "generate"
    RESULT = "result"


class NodeState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Artifact(BaseModel):
    """Encoded media blob. The payload is base64 text and never inspected."""
    mime_type: str
    payload: str

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "Artifact":
        return cls(mime_type=mime_type, payload=base64.b64encode(data).decode("ascii"))

    @classmethod
    def from_data_url(cls, url: str) -> "Artifact":
        # data:image/png;base64,....
        if not url.startswith("data:") or "," not in url:
            raise ValueError("Not a data URL")
        header, payload = url.split(",", 1)
        meta = header[len("data:"):].split(";")
        if "base64" not in meta[1:]:
            raise ValueError("Only base64 data URLs are supported")
        return cls(mime_type=meta[0] or "application/octet-stream", payload=payload)

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.payload}"

    def to_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.payload, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Artifact payload is not valid base64: {e}")


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0

    def offset(self, dx: float = 0.0, dy: float = 0.0) -> "Position":
        return Position(x=self.x + dx, y=self.y + dy)


# Kind specific configuration, tagged by "kind"

class UploadConfig(BaseModel):
    kind: Literal["upload"] = "upload"
    label: str = "Image Upload"
    image: Optional[Artifact] = None
    file_name: Optional[str] = None


class EditConfig(BaseModel):
    kind: Literal["edit"] = "edit"
    label: str = "Edit Image"
    prompt: str = ""


class GenerateConfig(BaseModel):
    kind: Literal["generate"] = "generate"
    label: str = "Generate Image"
    prompt: str = ""


class ResultConfig(BaseModel):
    kind: Literal["result"] = "result"
    label: str = "Generated Image"
    image: Optional[Artifact] = None
    prompt: str = ""
    description: str = ""
    generated_at: Optional[datetime] = None
    source_node_id: Optional[str] = None


NodeConfig = Annotated[
    Union[UploadConfig, EditConfig, GenerateConfig, ResultConfig],
    Field(discriminator="kind"),
]

# Keys of update_node_data partials that belong to the node rather than its config
NODE_FIELDS = ("state", "output", "error", "position")


class Node(BaseModel):
    id: str
    kind: NodeKind
    position: Position = Field(default_factory=Position)
    config: NodeConfig
    output: Optional[Artifact] = None
    state: NodeState = NodeState.IDLE
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        # Clients send {"kind": "edit", "config": {"prompt": ...}} without repeating the tag
        if isinstance(data, dict) and "kind" in data:
            kind = data["kind"]
            kind = kind.value if isinstance(kind, NodeKind) else kind
            config = data.get("config")
            if config is None:
                data = {**data, "config": {"kind": kind}}
            elif isinstance(config, dict) and "kind" not in config:
                data = {**data, "config": {**config, "kind": kind}}
        return data

    @model_validator(mode="after")
    def _check_invariants(self) -> "Node":
        if self.config.kind != self.kind.value:
            raise ValueError(f"config of kind '{self.config.kind}' on a '{self.kind.value}' node")
        if (self.output is not None) != (self.state == NodeState.SUCCEEDED):
            raise ValueError("output must be set exactly when state is 'succeeded'")
        if self.error is not None and self.state != NodeState.FAILED:
            raise ValueError("error may only be set when state is 'failed'")
        return self

    @property
    def prompt(self) -> str:
        return getattr(self.config, "prompt", "")


class Edge(BaseModel):
    id: str = Field(default_factory=lambda: new_id("edge"))
    source: str
    target: str


class Graph(BaseModel):
    nodes: List[Node] = []
    edges: List[Edge] = []


# API payloads

class NodeCreate(BaseModel):
    kind: NodeKind
    position: Position = Field(default_factory=Position)
    config: Dict[str, Any] = {}


class UploadRequest(BaseModel):
    data_url: str
    file_name: Optional[str] = None


class InvokeResponse(BaseModel):
    node_id: str
    accepted: bool
    node: Node
