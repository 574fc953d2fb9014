"""
Prompt assembly for model-inference nodes.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

_BASE64_SIGNATURES = {
    '/9j/': 'image/jpeg',
    'iVBORw': 'image/png',
    'R0lGOD': 'image/gif',
    'UklGR': 'image/webp',
}


def detect_image_mime_type(media_ref: str) -> str:
    """
    Best-effort MIME type for an image reference.

    Handles data URIs, raw base64 payloads (by signature) and URLs/paths (by
    extension). Defaults to JPEG.
    """
    if media_ref.startswith('data:'):
        header = media_ref[5:].split(',', 1)[0]
        return header.split(';', 1)[0] or 'image/jpeg'
    for signature, mime_type in _BASE64_SIGNATURES.items():
        if media_ref.startswith(signature):
            return mime_type
    guessed, _ = mimetypes.guess_type(media_ref.split('?', 1)[0])
    if guessed and guessed.startswith('image/'):
        return guessed
    return 'image/jpeg'


@dataclass(frozen=True)
class PromptSegment:
    text: Optional[str] = None
    media_ref: Optional[str] = None
    mime_type: Optional[str] = None

    def to_payload(self) -> Dict[str, str]:
        if self.text is not None:
            return {'type': 'text', 'text': self.text}
        return {'type': 'media', 'media_ref': self.media_ref, 'mime_type': self.mime_type}


def build_prompt_segments(
    user_message: str,
    system_prompt: str = "",
    images: Sequence[str] = (),
) -> List[PromptSegment]:
    """
    Ordered prompt: system instructions, user message, then attachments.
    """
    segments: List[PromptSegment] = []
    if system_prompt:
        segments.append(PromptSegment(text=f"System Instructions: {system_prompt}\n\n"))
    segments.append(PromptSegment(text=user_message))
    for media_ref in images:
        segments.append(PromptSegment(media_ref=media_ref, mime_type=detect_image_mime_type(media_ref)))
    return segments
