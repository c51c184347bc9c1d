"""Filesystem-backed artifact storage."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from pathlib import Path

from photo_studio.orchestrator.models import ArtifactDescriptor, GeneratedImage, TaskView

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(r"^data:image/([a-zA-Z0-9.+-]+);base64,(.+)$", re.DOTALL)
_REMOTE_PREFIXES = ("http://", "https://")


class LocalArtifactStorage:
    """Keeps task inputs and generated images under ``media_root``.

    Layout: ``<media_root>/<task_type>/<task_id>/<position>.<ext>``.
    """

    def __init__(self, media_root: Path) -> None:
        self.media_root = media_root

    def stage_inputs(self, task: TaskView) -> list[str]:
        """Resolve ``params.images`` to readable references.

        Remote URLs and inline data URIs pass through; local paths must exist.
        Unreadable inputs are skipped, and ``FileNotFoundError`` is raised only
        when every requested input is unreadable.
        """

        requested = [str(item) for item in task.params.get("images") or []]
        staged: list[str] = []
        for ref in requested:
            if ref.startswith(_REMOTE_PREFIXES) or ref.startswith("data:image/"):
                staged.append(ref)
                continue
            path = Path(ref)
            if not path.is_absolute():
                path = self.media_root / path
            if path.is_file():
                staged.append(str(path))
            else:
                logger.warning("Input image missing: task_id=%s ref=%s", task.task_id, ref)

        if requested and not staged:
            raise FileNotFoundError(
                f"None of {len(requested)} input images could be staged for task {task.task_id}",
            )
        return staged

    def persist(
        self,
        *,
        task_id: str,
        task_type: str,
        images: list[GeneratedImage],
    ) -> list[ArtifactDescriptor]:
        task_dir = self.media_root / task_type / task_id
        artifacts: list[ArtifactDescriptor] = []
        for position, image in enumerate(images):
            if image.data_uri:
                extension, content = _decode_data_uri(image.data_uri)
                task_dir.mkdir(parents=True, exist_ok=True)
                path = task_dir / f"{position}.{extension}"
                path.write_bytes(content)
                artifacts.append(
                    ArtifactDescriptor(
                        position=position,
                        uri=str(path),
                        width=image.width,
                        height=image.height,
                        checksum_sha256=hashlib.sha256(content).hexdigest(),
                        metadata={
                            **image.metadata,
                            "url_type": "local",
                            "size_bytes": len(content),
                        },
                    ),
                )
            elif image.url:
                artifacts.append(
                    ArtifactDescriptor(
                        position=position,
                        uri=image.url,
                        width=image.width,
                        height=image.height,
                        metadata={**image.metadata, "url_type": "remote"},
                    ),
                )
            else:
                raise ValueError(f"Generated image #{position} has neither url nor data_uri")
        return artifacts


def _decode_data_uri(data_uri: str) -> tuple[str, bytes]:
    match = _DATA_URI_RE.match(data_uri)
    if match is None:
        raise ValueError("Unsupported image data URI")
    extension = match.group(1).lower().replace("jpeg", "jpg")
    try:
        content = base64.b64decode(match.group(2), validate=True)
    except binascii.Error as error:
        raise ValueError(f"Invalid base64 image payload: {error}") from error
    return extension, content
