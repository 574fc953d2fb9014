"""
Constants shared across the graph execution runtime.
"""

from enum import Enum


class NodeKind(str, Enum):
    TEXT = "text"
    IMAGE_INPUT = "image_input"
    VIDEO_INPUT = "video_input"
    LLM = "llm"
    CROP_IMAGE = "crop_image"
    EXTRACT_FRAME = "extract_frame"


class RunScope(str, Enum):
    FULL = "full"
    SELECTED = "selected"
    SINGLE = "single"


class Handle:
    """
    Handle name constants for node connections.

    Handle names are shared between the schema and the executors so both
    sides agree on the semantics of each connection.
    """

    OUTPUT = "output"
    SYSTEM_PROMPT = "system_prompt"
    USER_MESSAGE = "user_message"
    IMAGES = "images"
    IMAGE = "image"
    VIDEO = "video"
    TIMESTAMP = "timestamp"


class TaskKind:
    INFERENCE = "inference"
    STORE_MEDIA = "media.store"
    PROBE_MEDIA = "media.probe"
    CROP_IMAGE = "media.crop"
    EXTRACT_FRAME = "media.extract_frame"
