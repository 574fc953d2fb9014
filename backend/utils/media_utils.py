import base64
import shutil
from pathlib import Path
from typing import Tuple, Union
from urllib.parse import unquote, urlparse

import cv2
import requests
from PIL import Image

from config import HTTP_REQUEST_TIMEOUT, MAX_DOWNLOAD_SIZE, SUPPORTED_IMAGE_FORMATS


def fetch_media(source: str, dest: Union[str, Path]) -> Path:
    """
    Materialise a media reference as a local file.

    Supports data URIs, ``file://`` URIs, plain local paths and http(s) URLs.
    """
    dest = Path(dest)
    if source.startswith('data:'):
        try:
            dest.write_bytes(base64.b64decode(source.split(',', 1)[1]))
        except (IndexError, ValueError) as e:
            raise ValueError(f"Invalid data URI: {e}")
        return dest

    parsed = urlparse(source)
    if parsed.scheme in ('http', 'https'):
        with requests.get(source, stream=True, timeout=HTTP_REQUEST_TIMEOUT) as response:
            if response.status_code != 200:
                raise ValueError(f"Failed to fetch media: {response.status_code}")
            written = 0
            with open(dest, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    written += len(chunk)
                    if written > MAX_DOWNLOAD_SIZE:
                        raise ValueError(f"Media exceeds {MAX_DOWNLOAD_SIZE} bytes: {source}")
                    f.write(chunk)
        return dest

    path = Path(unquote(parsed.path)) if parsed.scheme == 'file' else Path(source)
    if not path.exists():
        raise ValueError(f"Media file not found: {source}")
    shutil.copyfile(path, dest)
    return dest


def probe_image(path: Union[str, Path]) -> Tuple[int, int, str]:
    """Return (width, height, format) without decoding the pixel data."""
    try:
        with Image.open(path) as image:
            if image.format not in SUPPORTED_IMAGE_FORMATS:
                raise ValueError(f"Unsupported image format: {image.format}")
            width, height = image.size
            return width, height, image.format
    except OSError as e:
        raise ValueError(f"Could not get image dimensions: {e}")


def image_mime_type(image_format: str) -> str:
    return Image.MIME.get(image_format, 'image/jpeg')


def image_extension(image_format: str) -> str:
    return '.jpg' if image_format == 'JPEG' else f".{image_format.lower()}"


def crop_image_file(src: Union[str, Path], dest: Union[str, Path], box: Tuple[int, int, int, int]) -> Path:
    """Crop ``src`` to the (left, upper, right, lower) box and save as ``dest``."""
    dest = Path(dest)
    try:
        with Image.open(src) as image:
            image_format = image.format
            cropped = image.crop(box)
            if image_format == 'JPEG' and cropped.mode not in ('RGB', 'L'):
                cropped = cropped.convert('RGB')
            cropped.save(dest, format=image_format)
    except OSError as e:
        raise ValueError(f"Failed to crop image: {e}")
    return dest


def probe_video_duration(path: Union[str, Path]) -> float:
    capture = cv2.VideoCapture(str(path))
    try:
        if not capture.isOpened():
            raise ValueError(f"Could not open video: {path}")
        fps = capture.get(cv2.CAP_PROP_FPS)
        frame_count = capture.get(cv2.CAP_PROP_FRAME_COUNT)
        if not fps or fps <= 0 or frame_count < 0:
            raise ValueError(f"Could not get video duration: fps={fps}, frames={frame_count}")
        return frame_count / fps
    finally:
        capture.release()


def extract_video_frame(src: Union[str, Path], dest: Union[str, Path], seconds: float) -> Path:
    """Write the frame at ``seconds`` into ``src`` to ``dest`` as JPEG."""
    dest = Path(dest)
    capture = cv2.VideoCapture(str(src))
    try:
        if not capture.isOpened():
            raise ValueError(f"Could not open video: {src}")
        capture.set(cv2.CAP_PROP_POS_MSEC, max(0.0, seconds) * 1000)
        ok, frame = capture.read()
        if not ok or frame is None:
            raise ValueError(f"No frame at {seconds:.2f}s in {src}")
        if not cv2.imwrite(str(dest), frame, [cv2.IMWRITE_JPEG_QUALITY, 95]):
            raise ValueError(f"Failed to write frame to {dest}")
    finally:
        capture.release()
    return dest


def encode_file_base64(path: Union[str, Path]) -> str:
    return base64.b64encode(Path(path).read_bytes()).decode()
