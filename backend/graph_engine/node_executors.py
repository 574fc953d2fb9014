"""
Registered node executors for the graph runtime.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import config
from utils.async_helpers import run_in_thread
from utils.logging_utils import truncate
from utils.media_utils import (
    crop_image_file,
    encode_file_base64,
    extract_video_frame,
    fetch_media,
    image_extension,
    image_mime_type,
    probe_image,
    probe_video_duration,
)

from .constants import Handle, NodeKind, TaskKind
from .context import CancellationToken, NodeOutput
from .dispatcher import Failure, TaskDispatcher, TaskResult, TaskSpec
from .errors import FailureKind, NodeExecutionError
from .fallback import FallbackChain, FallbackStrategy
from .geometry import FrameTimestamp, compute_crop_rect, parse_timestamp, resolve_timestamp
from .prompting import build_prompt_segments
from .schema import CropImageConfig, ExtractFrameConfig, Node

logger = logging.getLogger(__name__)

ResolvedInputs = Dict[str, List[NodeOutput]]
NodeOutputs = Dict[str, NodeOutput]


def _failure_error(result: Failure, prefix: str = "") -> NodeExecutionError:
    detail = f"{prefix}{result.detail}" if prefix else result.detail
    return NodeExecutionError(result.kind, detail, attempts=result.attempts)


def _media_ref_from(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        for key in ('media_ref', 'mediaRef', 'url', 'ssl_url'):
            if value.get(key):
                return str(value[key])
    raise NodeExecutionError(FailureKind.BACKEND, f"Task result has no media reference: {value!r}")


class BaseNodeExecutor:
    """Base class for all node executors with shared functionality."""
    kind: NodeKind

    async def execute(
        self,
        node: Node,
        inputs: ResolvedInputs,
        dispatcher: TaskDispatcher,
        cancel_token: Optional[CancellationToken] = None,
    ) -> NodeOutputs:
        raise NotImplementedError

    @staticmethod
    def _text_input(inputs: ResolvedInputs, handle: str) -> Optional[str]:
        values = [output.text for output in inputs.get(handle, []) if output.text is not None]
        return values[0] if values else None

    @staticmethod
    def _media_input(inputs: ResolvedInputs, handle: str) -> Optional[str]:
        values = [output.media_ref for output in inputs.get(handle, []) if output.media_ref]
        return values[0] if values else None


class TextNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.TEXT

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        return {Handle.OUTPUT: NodeOutput.of_text(node.config.text)}


class ImageInputNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.IMAGE_INPUT

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        if not node.config.url:
            raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: no image uploaded")
        return {Handle.OUTPUT: NodeOutput.of_media(node.config.url)}


class VideoInputNodeExecutor(BaseNodeExecutor):
    kind = NodeKind.VIDEO_INPUT

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        if not node.config.url:
            raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: no video uploaded")
        return {Handle.OUTPUT: NodeOutput.of_media(node.config.url)}


class LLMNodeExecutor(BaseNodeExecutor):
    """
    Runs model inference through the task backend.

    Credentials are tried in order: a quota/rate-limit failure with another
    credential left switches to the next credential immediately instead of
    going through the dispatcher's retry ladder. Only the last credential
    gets the generic retries.
    """
    kind = NodeKind.LLM

    def __init__(self, credentials: Optional[Sequence[str]] = None):
        self.credentials = list(dict.fromkeys(credentials or []))

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        cfg = node.config
        user_message = self._text_input(inputs, Handle.USER_MESSAGE) or cfg.user_message
        if not user_message.strip():
            raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: user message is required")
        system_prompt = self._text_input(inputs, Handle.SYSTEM_PROMPT) or cfg.system_prompt
        images = [output.media_ref for output in inputs.get(Handle.IMAGES, []) if output.media_ref]

        segments = build_prompt_segments(user_message, system_prompt, images)
        base_payload = {
            'model': cfg.model,
            'parts': [segment.to_payload() for segment in segments],
        }
        logger.info(
            "Starting inference for node %s (model=%s, system_prompt=%s, images=%d)",
            node.id, cfg.model, bool(system_prompt), len(images)
        )

        credentials: List[Optional[str]] = list(self.credentials) or [None]
        total_attempts = 0
        result: Optional[TaskResult] = None
        for index, credential in enumerate(credentials):
            has_next = index + 1 < len(credentials)
            payload = dict(base_payload)
            if credential:
                payload['credential'] = credential

            result = await dispatcher.run(
                TaskSpec.for_kind(TaskKind.INFERENCE, payload),
                cancel_token,
                should_retry=self._retry_decider(has_next),
            )
            total_attempts += result.attempts
            if result.ok:
                text = self._response_text(result.value)
                if index:
                    logger.info("Inference for node %s completed with backup credential #%d", node.id, index)
                logger.info("Inference for node %s completed (%d chars)", node.id, len(text))
                return {Handle.OUTPUT: NodeOutput.of_text(text)}

            cancelled = cancel_token is not None and cancel_token.cancelled
            if result.kind is FailureKind.QUOTA and has_next and not cancelled:
                logger.info(
                    "Quota/rate limit hit for node %s with credential #%d, retrying with credential #%d",
                    node.id, index, index + 1
                )
                continue
            break

        raise self._surface_failure(result, total_attempts)

    @staticmethod
    def _retry_decider(has_next_credential: bool):
        def should_retry(failure: Failure) -> bool:
            if failure.kind is FailureKind.QUOTA and has_next_credential:
                return False
            return failure.transient
        return should_retry

    @staticmethod
    def _response_text(value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, dict):
            for key in ('output', 'text'):
                if isinstance(value.get(key), str):
                    return value[key]
        raise NodeExecutionError(FailureKind.BACKEND, f"Inference result has no text output: {value!r}")

    @staticmethod
    def _surface_failure(result: Failure, attempts: int) -> NodeExecutionError:
        if result.kind is FailureKind.QUOTA:
            detail = ("API quota exceeded. Please try again later or check your API key limits. "
                      f"(API: {result.detail})")
        elif result.kind is FailureKind.CREDENTIAL:
            detail = f"Invalid API key. Please check the configured inference credentials. (API: {result.detail})"
        else:
            detail = result.detail
        return NodeExecutionError(result.kind, detail, attempts=attempts)


class MediaNodeExecutor(BaseNodeExecutor):
    """
    Shared plumbing for media transform nodes.

    Local strategies work inside a per-execution scratch directory which is
    removed on every exit path.
    """

    def __init__(self, scratch_dir: Optional[Path] = None):
        self.scratch_dir = scratch_dir

    def _scratch(self, prefix: str) -> tempfile.TemporaryDirectory:
        return tempfile.TemporaryDirectory(prefix=prefix, dir=self.scratch_dir)

    async def _dispatch_media(
        self,
        dispatcher: TaskDispatcher,
        kind: str,
        payload: Dict[str, Any],
        cancel_token: Optional[CancellationToken],
    ) -> str:
        result = await dispatcher.run(TaskSpec.for_kind(kind, payload), cancel_token)
        if not result.ok:
            raise _failure_error(result, prefix=f"{kind}: ")
        return _media_ref_from(result.value)

    async def _store(
        self,
        path: Path,
        mime_type: str,
        dispatcher: TaskDispatcher,
        cancel_token: Optional[CancellationToken],
    ) -> str:
        content = await run_in_thread(encode_file_base64, path)
        payload = {'filename': path.name, 'mime_type': mime_type, 'content_base64': content}
        return await self._dispatch_media(dispatcher, TaskKind.STORE_MEDIA, payload, cancel_token)

    async def _run_chain(self, node: Node, strategies: List[FallbackStrategy[str]]) -> NodeOutputs:
        chain = FallbackChain(strategies, label=f"{node.kind.value} {node.id}")
        try:
            media_ref = await chain.run()
        except NodeExecutionError:
            raise
        except ValueError as exc:
            raise NodeExecutionError(FailureKind.INVALID_INPUT, str(exc))
        except Exception as exc:
            raise NodeExecutionError(FailureKind.BACKEND, str(exc))
        logger.info("Node %s produced %s", node.id, truncate(media_ref))
        return {Handle.OUTPUT: NodeOutput.of_media(media_ref)}


class CropImageNodeExecutor(MediaNodeExecutor):
    kind = NodeKind.CROP_IMAGE

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        cfg: CropImageConfig = node.config
        source = self._media_input(inputs, Handle.IMAGE) or cfg.image_url
        if not source:
            raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: no image to crop")

        logger.info(
            "Cropping %s for node %s (x=%g%%, y=%g%%, w=%g%%, h=%g%%)",
            truncate(source), node.id, cfg.x, cfg.y, cfg.width, cfg.height
        )
        return await self._run_chain(node, [
            FallbackStrategy("local crop + store", lambda: self._crop_locally(source, cfg, dispatcher, cancel_token)),
            FallbackStrategy("remote crop", lambda: self._crop_remotely(source, cfg, dispatcher, cancel_token)),
        ])

    async def _crop_locally(self, source, cfg, dispatcher, cancel_token) -> str:
        with self._scratch("crop-") as tmp:
            input_path = Path(tmp) / "input"
            await run_in_thread(fetch_media, source, input_path)
            width, height, image_format = await run_in_thread(probe_image, input_path)
            rect = compute_crop_rect(width, height, cfg.x, cfg.y, cfg.width, cfg.height)
            logger.info("Crop dimensions %dx%d -> x=%d y=%d w=%d h=%d",
                        width, height, rect.x, rect.y, rect.width, rect.height)

            output_path = Path(tmp) / f"cropped{image_extension(image_format)}"
            await run_in_thread(crop_image_file, input_path, output_path, rect.as_box())
            return await self._store(output_path, image_mime_type(image_format), dispatcher, cancel_token)

    async def _crop_remotely(self, source, cfg, dispatcher, cancel_token) -> str:
        payload = {
            'source_url': source,
            'crop': {'x': cfg.x, 'y': cfg.y, 'width': cfg.width, 'height': cfg.height},
        }
        return await self._dispatch_media(dispatcher, TaskKind.CROP_IMAGE, payload, cancel_token)


class ExtractFrameNodeExecutor(MediaNodeExecutor):
    kind = NodeKind.EXTRACT_FRAME

    async def execute(self, node, inputs, dispatcher, cancel_token=None) -> NodeOutputs:
        cfg: ExtractFrameConfig = node.config
        source = self._media_input(inputs, Handle.VIDEO) or cfg.video_url
        if not source:
            raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: no video to extract from")

        timestamp = cfg.timestamp
        timestamp_text = self._text_input(inputs, Handle.TIMESTAMP)
        if timestamp_text is not None and timestamp_text.strip():
            try:
                timestamp = parse_timestamp(timestamp_text)
            except ValueError as exc:
                raise NodeExecutionError(FailureKind.INVALID_INPUT, f"Node {node.id}: {exc}")

        logger.info("Extracting frame at %s from %s for node %s",
                    timestamp.describe(), truncate(source), node.id)
        return await self._run_chain(node, [
            FallbackStrategy("local extract + store",
                             lambda: self._extract_locally(source, timestamp, dispatcher, cancel_token)),
            FallbackStrategy("remote extract",
                             lambda: self._extract_remotely(source, timestamp, dispatcher, cancel_token)),
        ])

    async def _extract_locally(self, source: str, timestamp: FrameTimestamp, dispatcher, cancel_token) -> str:
        with self._scratch("extract-frame-") as tmp:
            video_path = Path(tmp) / "video"
            await run_in_thread(fetch_media, source, video_path)

            duration = None
            if timestamp.needs_duration:
                duration = await run_in_thread(probe_video_duration, video_path)
            seconds = resolve_timestamp(timestamp, duration)
            if duration is not None:
                logger.info("Resolved timestamp %s of %.2fs -> %.2fs", timestamp.describe(), duration, seconds)

            frame_path = Path(tmp) / "frame.jpg"
            await run_in_thread(extract_video_frame, video_path, frame_path, seconds)
            return await self._store(frame_path, 'image/jpeg', dispatcher, cancel_token)

    async def _extract_remotely(self, source: str, timestamp: FrameTimestamp, dispatcher, cancel_token) -> str:
        duration = None
        if timestamp.needs_duration:
            duration = await self._probe_duration(source, dispatcher, cancel_token)
        seconds = resolve_timestamp(timestamp, duration)
        payload = {'source_url': source, 'offset_seconds': seconds}
        return await self._dispatch_media(dispatcher, TaskKind.EXTRACT_FRAME, payload, cancel_token)

    @staticmethod
    async def _probe_duration(source: str, dispatcher: TaskDispatcher, cancel_token) -> float:
        result = await dispatcher.run(
            TaskSpec.for_kind(TaskKind.PROBE_MEDIA, {'source_url': source}), cancel_token
        )
        if not result.ok:
            raise _failure_error(result, prefix=f"{TaskKind.PROBE_MEDIA}: ")
        value = result.value
        duration = value.get('duration') if isinstance(value, dict) else value
        try:
            return float(duration)
        except (TypeError, ValueError):
            raise NodeExecutionError(FailureKind.BACKEND, f"Probe returned no duration: {value!r}")


class NodeExecutorRegistry:
    """
    Lightweight registry so the scheduler can stay generic.

    Construction fails if any NodeKind lacks an executor.
    """

    def __init__(
        self,
        credentials: Optional[Sequence[str]] = None,
        scratch_dir: Optional[Path] = None,
    ):
        if credentials is None:
            credentials = config.load_inference_credentials()
        executors = (
            TextNodeExecutor(),
            ImageInputNodeExecutor(),
            VideoInputNodeExecutor(),
            LLMNodeExecutor(credentials),
            CropImageNodeExecutor(scratch_dir),
            ExtractFrameNodeExecutor(scratch_dir),
        )
        self._executors: Dict[NodeKind, BaseNodeExecutor] = {
            executor.kind: executor for executor in executors
        }
        missing = set(NodeKind) - set(self._executors)
        if missing:
            raise RuntimeError(f"No executor registered for node kinds: {sorted(k.value for k in missing)}")

    def get(self, kind: NodeKind) -> BaseNodeExecutor:
        if kind not in self._executors:
            raise ValueError(f"No executor registered for node kind: {kind}")
        return self._executors[kind]

    def register(self, executor: BaseNodeExecutor) -> None:
        self._executors[executor.kind] = executor
