"""
Graph schema definitions and validation helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from config import DEFAULT_LLM_MODEL, SUPPORTED_LLM_MODELS
from .constants import Handle, NodeKind
from .errors import (
    DanglingEdgeError,
    GraphValidationError,
    HandleOccupiedError,
    InvalidNodeError,
    TypeMismatchError,
)
from .geometry import FrameTimestamp, parse_timestamp


class DataType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class InputHandle:
    name: str
    accepts: FrozenSet[DataType]
    multiple: bool = False
    description: str = ""


@dataclass(frozen=True)
class OutputHandle:
    name: str
    data_type: DataType
    description: str = ""


@dataclass(frozen=True)
class NodeSchema:
    kind: NodeKind
    inputs: Dict[str, InputHandle]
    outputs: Dict[str, OutputHandle]


def _inputs(*handles: InputHandle) -> Dict[str, InputHandle]:
    return {handle.name: handle for handle in handles}


def _output(data_type: DataType, description: str) -> Dict[str, OutputHandle]:
    return {Handle.OUTPUT: OutputHandle(Handle.OUTPUT, data_type, description)}


TEXT_ONLY = frozenset({DataType.TEXT})
IMAGE_ONLY = frozenset({DataType.IMAGE})
VIDEO_ONLY = frozenset({DataType.VIDEO})

NODE_SCHEMAS: Dict[NodeKind, NodeSchema] = {
    NodeKind.TEXT: NodeSchema(
        kind=NodeKind.TEXT,
        inputs={},
        outputs=_output(DataType.TEXT, "Static text"),
    ),
    NodeKind.IMAGE_INPUT: NodeSchema(
        kind=NodeKind.IMAGE_INPUT,
        inputs={},
        outputs=_output(DataType.IMAGE, "Uploaded image reference"),
    ),
    NodeKind.VIDEO_INPUT: NodeSchema(
        kind=NodeKind.VIDEO_INPUT,
        inputs={},
        outputs=_output(DataType.VIDEO, "Uploaded video reference"),
    ),
    NodeKind.LLM: NodeSchema(
        kind=NodeKind.LLM,
        inputs=_inputs(
            InputHandle(Handle.SYSTEM_PROMPT, TEXT_ONLY, description="System instructions"),
            InputHandle(Handle.USER_MESSAGE, TEXT_ONLY, description="User message"),
            InputHandle(Handle.IMAGES, IMAGE_ONLY, multiple=True, description="Image attachments"),
        ),
        outputs=_output(DataType.TEXT, "Model response"),
    ),
    NodeKind.CROP_IMAGE: NodeSchema(
        kind=NodeKind.CROP_IMAGE,
        inputs=_inputs(InputHandle(Handle.IMAGE, IMAGE_ONLY, description="Image to crop")),
        outputs=_output(DataType.IMAGE, "Cropped image reference"),
    ),
    NodeKind.EXTRACT_FRAME: NodeSchema(
        kind=NodeKind.EXTRACT_FRAME,
        inputs=_inputs(
            InputHandle(Handle.VIDEO, VIDEO_ONLY, description="Source video"),
            InputHandle(Handle.TIMESTAMP, TEXT_ONLY, description="Seconds or percentage, e.g. 50%"),
        ),
        outputs=_output(DataType.IMAGE, "Extracted frame reference"),
    ),
}


# ============================================================================
# Node configuration variants
# ============================================================================

@dataclass(frozen=True)
class TextConfig:
    text: str = ""


@dataclass(frozen=True)
class ImageInputConfig:
    url: str = ""


@dataclass(frozen=True)
class VideoInputConfig:
    url: str = ""


@dataclass(frozen=True)
class LLMConfig:
    model: str = DEFAULT_LLM_MODEL
    system_prompt: str = ""
    user_message: str = ""


@dataclass(frozen=True)
class CropImageConfig:
    image_url: str = ""
    x: float = 0.0
    y: float = 0.0
    width: float = 100.0
    height: float = 100.0


@dataclass(frozen=True)
class ExtractFrameConfig:
    video_url: str = ""
    timestamp: FrameTimestamp = field(default_factory=lambda: FrameTimestamp(seconds=0.0))


NodeConfig = Union[
    TextConfig, ImageInputConfig, VideoInputConfig, LLMConfig, CropImageConfig, ExtractFrameConfig
]


def _pick(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _percent(raw: Mapping[str, Any], default: float, *keys: str) -> float:
    value = _pick(raw, *keys, default=default)
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{keys[0]} must be a number, got {value!r}") from exc
    if not 0 <= value <= 100:
        raise ValueError(f"{keys[0]} must be between 0 and 100, got {value}")
    return value


def parse_node_config(kind: NodeKind, raw: Optional[Mapping[str, Any]]) -> NodeConfig:
    """Build the typed config for a node kind from canvas data."""
    raw = raw or {}
    if kind is NodeKind.TEXT:
        return TextConfig(text=str(_pick(raw, 'text', default='')))
    if kind is NodeKind.IMAGE_INPUT:
        return ImageInputConfig(url=str(_pick(raw, 'url', 'imageUrl', 'image_url', default='')))
    if kind is NodeKind.VIDEO_INPUT:
        return VideoInputConfig(url=str(_pick(raw, 'url', 'videoUrl', 'video_url', default='')))
    if kind is NodeKind.LLM:
        model = str(_pick(raw, 'model', default=DEFAULT_LLM_MODEL))
        if model not in SUPPORTED_LLM_MODELS:
            raise ValueError(f"Unsupported model: {model}")
        return LLMConfig(
            model=model,
            system_prompt=str(_pick(raw, 'system_prompt', 'systemPrompt', default='')),
            user_message=str(_pick(raw, 'user_message', 'userMessage', default='')),
        )
    if kind is NodeKind.CROP_IMAGE:
        return CropImageConfig(
            image_url=str(_pick(raw, 'image_url', 'imageUrl', default='')),
            x=_percent(raw, 0.0, 'x', 'cropX'),
            y=_percent(raw, 0.0, 'y', 'cropY'),
            width=_percent(raw, 100.0, 'width', 'cropWidth'),
            height=_percent(raw, 100.0, 'height', 'cropHeight'),
        )
    if kind is NodeKind.EXTRACT_FRAME:
        timestamp = _pick(raw, 'timestamp')
        percent = _pick(raw, 'timestamp_percent', 'timestampPercent')
        if percent is not None:
            timestamp = f"{percent}%"
        return ExtractFrameConfig(
            video_url=str(_pick(raw, 'video_url', 'videoUrl', default='')),
            timestamp=parse_timestamp(timestamp),
        )
    raise InvalidNodeError(f"Unsupported node kind: {kind}")


# ============================================================================
# Graph model
# ============================================================================

@dataclass(frozen=True)
class Node:
    id: str
    kind: NodeKind
    config: NodeConfig
    label: str = ""

    @property
    def schema(self) -> NodeSchema:
        return NODE_SCHEMAS[self.kind]


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    source_handle: str
    target: str
    target_handle: str


@dataclass(frozen=True)
class WorkflowGraph:
    nodes: Dict[str, Node]
    edges: Tuple[Edge, ...]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]


def parse_node(raw: Mapping[str, Any]) -> Node:
    node_id = raw.get('id')
    if not node_id:
        raise InvalidNodeError(f"Node without id: {raw}")
    node_id = str(node_id)

    raw_kind = raw.get('kind') or raw.get('type')
    try:
        kind = NodeKind(raw_kind)
    except ValueError:
        raise InvalidNodeError(f"Unsupported node kind: {raw_kind}", node_id=node_id)

    raw_config = raw.get('config')
    if raw_config is None:
        raw_config = raw.get('data')
    try:
        config = parse_node_config(kind, raw_config)
    except ValueError as exc:
        raise InvalidNodeError(f"Node {node_id}: {exc}", node_id=node_id) from exc

    label = raw.get('label') or (raw_config or {}).get('label') or ''
    return Node(id=node_id, kind=kind, config=config, label=str(label))


def parse_edge(raw: Mapping[str, Any]) -> Edge:
    source = _pick(raw, 'source', 'from', default='')
    target = _pick(raw, 'target', 'to', default='')
    source_handle = _pick(raw, 'sourceHandle', 'source_handle', default=Handle.OUTPUT)
    target_handle = _pick(raw, 'targetHandle', 'target_handle', default='')
    edge_id = raw.get('id') or f"{source}:{source_handle}->{target}:{target_handle}"
    return Edge(
        id=str(edge_id),
        source=str(source),
        source_handle=str(source_handle),
        target=str(target),
        target_handle=str(target_handle),
    )


class GraphValidator:
    """
    Validates raw graph payloads emitted by the canvas.
    """

    def __init__(self, schemas: Optional[Dict[NodeKind, NodeSchema]] = None):
        self.schemas = schemas or NODE_SCHEMAS

    def validate(self, graph: Union[Mapping[str, Any], WorkflowGraph]) -> WorkflowGraph:
        if isinstance(graph, WorkflowGraph):
            nodes = list(graph.nodes.values())
            edges = list(graph.edges)
        else:
            nodes = [parse_node(raw) for raw in graph.get('nodes') or []]
            raw_edges = graph.get('edges')
            if raw_edges is None:
                raw_edges = graph.get('connections') or []
            edges = [parse_edge(raw) for raw in raw_edges]

        if not nodes:
            raise InvalidNodeError("Graph contains no nodes")

        nodes_by_id: Dict[str, Node] = {}
        for node in nodes:
            if node.id in nodes_by_id:
                raise InvalidNodeError(f"Duplicate node id: {node.id}", node_id=node.id)
            if node.kind not in self.schemas:
                raise InvalidNodeError(f"Unsupported node kind: {node.kind}", node_id=node.id)
            nodes_by_id[node.id] = node

        seen_edges = set()
        occupied = set()
        for edge in edges:
            if edge.id in seen_edges:
                raise GraphValidationError(f"Duplicate edge id: {edge.id}")
            seen_edges.add(edge.id)
            self._check_edge(edge, nodes_by_id)

            target_schema = self.schemas[nodes_by_id[edge.target].kind]
            slot = (edge.target, edge.target_handle)
            if slot in occupied and not target_schema.inputs[edge.target_handle].multiple:
                raise HandleOccupiedError(edge.id)
            occupied.add(slot)

        return WorkflowGraph(nodes=nodes_by_id, edges=tuple(edges))

    def _check_edge(self, edge: Edge, nodes_by_id: Dict[str, Node]) -> None:
        source = nodes_by_id.get(edge.source)
        target = nodes_by_id.get(edge.target)
        if source is None or target is None:
            raise DanglingEdgeError(edge.id, f"Edge {edge.id} references unknown node")

        source_schema = self.schemas[source.kind]
        target_schema = self.schemas[target.kind]
        output = source_schema.outputs.get(edge.source_handle)
        if output is None:
            raise DanglingEdgeError(
                edge.id, f"Node {source.id} ({source.kind.value}) has no output handle '{edge.source_handle}'"
            )
        accepted = target_schema.inputs.get(edge.target_handle)
        if accepted is None:
            raise DanglingEdgeError(
                edge.id, f"Node {target.id} ({target.kind.value}) has no input handle '{edge.target_handle}'"
            )
        if output.data_type not in accepted.accepts:
            raise TypeMismatchError(
                edge.id,
                f"Incompatible connection {source.kind.value}:{edge.source_handle} -> "
                f"{target.kind.value}:{edge.target_handle} ({output.data_type.value} -> "
                f"{sorted(t.value for t in accepted.accepts)})"
            )
