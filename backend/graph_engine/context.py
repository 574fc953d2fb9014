"""
Shared execution context passed between the scheduler and node executors.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import ContextWriteError


@dataclass(frozen=True)
class NodeOutput:
    """A node output value: either text or an opaque media reference."""

    text: Optional[str] = None
    media_ref: Optional[str] = None

    def __post_init__(self):
        if (self.text is None) == (self.media_ref is None):
            raise ValueError("NodeOutput holds exactly one of text or media_ref")

    @classmethod
    def of_text(cls, text: str) -> "NodeOutput":
        return cls(text=str(text))

    @classmethod
    def of_media(cls, media_ref: str) -> "NodeOutput":
        return cls(media_ref=str(media_ref))

    @classmethod
    def from_value(cls, value: Any) -> "NodeOutput":
        """Accepts a NodeOutput, a ``{text}``/``{mediaRef}`` dict, or plain text."""
        if isinstance(value, NodeOutput):
            return value
        if isinstance(value, Mapping):
            if 'mediaRef' in value or 'media_ref' in value:
                return cls.of_media(value.get('mediaRef', value.get('media_ref')))
            if 'text' in value:
                return cls.of_text(value['text'])
            raise ValueError(f"Unrecognised node output: {value!r}")
        return cls.of_text(value)

    @property
    def value(self) -> str:
        return self.text if self.text is not None else self.media_ref

    def to_dict(self) -> Dict[str, str]:
        if self.text is not None:
            return {'text': self.text}
        return {'mediaRef': self.media_ref}


class ExecutionContext:
    """
    Stores node outputs keyed by node id, then output handle.

    Each node's outputs are written exactly once, when its executor
    completes; afterwards they are read-only for dependents.
    """

    def __init__(self):
        self._outputs: Dict[str, Dict[str, NodeOutput]] = {}

    def set_outputs(self, node_id: str, outputs: Mapping[str, NodeOutput]) -> None:
        if node_id in self._outputs:
            raise ContextWriteError(f"Outputs for node {node_id} were already recorded")
        self._outputs[node_id] = dict(outputs)

    def has_outputs(self, node_id: str) -> bool:
        return node_id in self._outputs

    def get_output(self, node_id: str, handle: str) -> Optional[NodeOutput]:
        return self._outputs.get(node_id, {}).get(handle)

    def get_outputs(self, node_id: str) -> Dict[str, NodeOutput]:
        return dict(self._outputs.get(node_id, {}))

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            node_id: {handle: output.to_dict() for handle, output in outputs.items()}
            for node_id, outputs in list(self._outputs.items())
        }


class CancellationToken:
    """
    Cooperative cancellation flag.

    Backed by a threading.Event so a run can be cancelled from a thread other
    than the one driving its event loop.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
