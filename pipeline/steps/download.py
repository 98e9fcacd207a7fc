"""Download step: fetch every selected source into the run's download directory."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import List
from urllib.parse import urlsplit

from core import DiscoverCandidate, HttpArtifact, SourceManifest, SourceManifestEntry, TargetSelection
from orchestrator.artifacts import SOURCE_MANIFEST_FILE
from orchestrator.retry import CancellationToken
from sources.http import fetch_text_with_limits
from storage.json_io import atomic_write_bytes, write_json_atomic
from utils.exceptions import ExtractionError

from ..context import PipelineContext

logger = logging.getLogger(__name__)

_PATH_EXTENSION = re.compile(r"\.([a-zA-Z0-9]{2,5})$")
_TYPE_EXTENSIONS = {
    "csv": "csv",
    "xlsx": "xlsx",
    "pdf": "pdf",
    "image": "png",
    "api": "json",
    "html": "html",
}


@dataclass
class DownloadTarget:
    source_id: str
    url: str
    filename: str
    candidate: DiscoverCandidate


def infer_extension(url: str, source_type: str) -> str:
    """Extension from the URL path when it has one, otherwise from the source type."""
    try:
        path = urlsplit(url).path
    except ValueError:
        path = ""
    match = _PATH_EXTENSION.search(path)
    if match:
        return match.group(1).lower()
    return _TYPE_EXTENSIONS.get(source_type, "txt")


def build_download_targets(candidates: List[DiscoverCandidate], selected: TargetSelection) -> List[DownloadTarget]:
    by_id = {candidate.id: candidate for candidate in candidates}
    selected_ids = list(dict.fromkeys([*selected.schedule, *selected.separation]))
    targets: List[DownloadTarget] = []
    for source_id in selected_ids:
        candidate = by_id.get(source_id)
        if candidate is None:
            continue
        targets.append(
            DownloadTarget(
                source_id=source_id,
                url=candidate.url,
                filename=f"{source_id}.{infer_extension(candidate.url, candidate.type)}",
                candidate=candidate,
            )
        )
    return targets


async def run_download_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    store = context.store
    sources = store.state.sources
    if sources is None:
        raise ExtractionError("Discover output is missing before download step", retryable=False)

    context.dirs.download_dir.mkdir(parents=True, exist_ok=True)
    store.set_step_message("download", "Preparing selected source downloads")
    targets = build_download_targets(sources.candidates, sources.selected)
    if not targets:
        raise ExtractionError("No selected source IDs available for download", retryable=False)

    entries: List[SourceManifestEntry] = []
    successes = 0
    for target in targets:
        token.raise_if_cancelled()
        store.set_step_message("download", f"Downloading {target.filename} from {target.url}")
        result = await fetch_text_with_limits(
            target.url,
            timeout_ms=context.budget.effective_step_timeout(options.http_timeout_ms),
            max_bytes=options.max_download_bytes,
            token=token,
            user_agent=context.http.user_agent,
            events=context.events,
        )
        store.add_http_artifact(
            HttpArtifact(
                step="download",
                url=target.url,
                final_url=result.final_url,
                filename=target.filename,
                status=result.status,
                content_type=result.content_type,
                last_modified=result.last_modified,
                content_length=result.content_length,
                bytes_read=result.bytes_read,
                parser_hints=[target.candidate.type],
                ok=result.ok,
                error=result.error,
            )
        )

        entry = SourceManifestEntry(
            source_id=target.source_id,
            url=target.url,
            type=target.candidate.type,
            target_hints=list(target.candidate.target_hints),
            filename=target.filename,
            status="failed",
            final_url=result.final_url,
            content_type=result.content_type,
            last_modified=result.last_modified,
            content_length=result.content_length,
            bytes_read=result.bytes_read,
        )
        if not result.ok or not result.content:
            entry.error = result.error or "empty response body"
            entries.append(entry)
            context.events.warn(
                "download",
                "Download target failed",
                sourceId=target.source_id,
                url=target.url,
                filename=target.filename,
                error=entry.error,
            )
            continue

        output_path = context.dirs.download_dir / target.filename
        atomic_write_bytes(output_path, result.content)
        store.add_downloaded_file(str(output_path))
        successes += 1
        entry.status = "downloaded"
        entry.local_path = str(output_path)
        entries.append(entry)
        context.events.info(
            "download",
            "Downloaded source file",
            sourceId=target.source_id,
            filename=target.filename,
            bytes=result.bytes_read,
        )

    if successes == 0:
        raise ExtractionError("All selected source downloads failed", retryable=True)

    manifest_path = context.work_dir / SOURCE_MANIFEST_FILE
    write_json_atomic(manifest_path, SourceManifest(run_id=options.run_id, entries=entries))
    store.set_pointer("source_manifest_path", str(manifest_path))
    logger.info("downloaded %s/%s selected sources", successes, len(targets))
