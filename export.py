# export.py
import io
import re
import zipfile
from typing import List, Tuple

from exceptions import ExportError
from logging_config import get_logger
from reference_store import Scene

logger = get_logger("export")


def archive_filename(project_name: str) -> str:
    return f"{re.sub(r'[^a-z0-9]', '_', project_name, flags=re.IGNORECASE)}.zip"


def job_video_filename(job_id: str) -> str:
    return f"video_{job_id[:6]}.mp4"


def build_project_archive(project_name: str, items: List[Tuple[int, bytes]]) -> Tuple[str, bytes]:
    """
    Zip rendered scene images under a folder named after the project.

    Args:
        project_name: Folder name inside the archive; also names the archive
        items: (sequence position, PNG bytes) pairs

    Returns:
        (archive filename, zip bytes)
    """
    if not project_name.strip():
        raise ExportError("Please enter a project name before downloading.")
    if not items:
        raise ExportError("No images have been generated successfully yet.")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for index, data in items:
            zf.writestr(f"{project_name}/{index}.png", data)
    return archive_filename(project_name), buf.getvalue()


async def export_scenes(project_name: str, scenes: List[Scene], storage) -> Tuple[str, bytes]:
    """Load every rendered scene and package them; unreadable images are skipped."""
    if not project_name.strip():
        raise ExportError("Please enter a project name before downloading.")
    items = []
    for scene in scenes:
        if not scene.result_url:
            continue
        try:
            items.append((scene.index, await storage.load(scene.result_url)))
        except Exception as e:
            logger.warning(f"Skipping scene {scene.index} in export: {e}")
    return build_project_archive(project_name, items)
