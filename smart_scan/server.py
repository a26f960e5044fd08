"""Thin MCP server for smart-scan.

Delegates all work to the smart-scan service daemon via HTTP.
No torch, numpy, or PIL imports in this process.
"""

import logging

from mcp.server.fastmcp import FastMCP

from client import ServiceClient, ServiceError
from config import DEFAULT_TOP_K

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

mcp = FastMCP("smart-scan")
client = ServiceClient()


def _summary(stats: dict) -> str:
    return f"{stats.get('status', 'complete')} in {stats.get('elapsed', 0):.1f}s"


@mcp.tool()
def search(
    query: str = "",
    top_k: int = DEFAULT_TOP_K,
    kind: str = "image",
    tag: str = "",
    prototype: str = "",
) -> str:
    """Search photos or videos by natural language description.

    Encodes the query with the CLIP text encoder and ranks indexed media by
    cosine similarity. Weak matches are dropped. With a few-shot prototype
    the query is blended with it, or the prototype is used alone when the
    query is empty.

    Args:
        query: Natural language description of what to find.
        top_k: Maximum number of results (default 20).
        kind: "image" or "video".
        tag: Only return media carrying this tag (optional).
        prototype: Name of a few-shot prototype to search with (optional).
    """
    try:
        return client.search(query, top_k, kind, tag or None, prototype or None)
    except ServiceError as exc:
        return f"Search failed: {exc}"


@mcp.tool()
def find_similar(path: str, top_k: int = DEFAULT_TOP_K) -> str:
    """Find media visually similar to a given file.

    Uses the stored embedding of the file, so it must already be indexed.

    Args:
        path: Absolute path to the source image or video.
        top_k: Maximum number of results (default 20).
    """
    return client.find_similar(path, top_k)


@mcp.tool()
def add_folder(path: str) -> str:
    """Add a folder of photos and videos to the library.

    The folder is scanned recursively on the next index run.

    Args:
        path: Absolute path to a folder.
    """
    return client.add_folder(path)


@mcp.tool()
def remove_folder(path: str) -> str:
    """Stop scanning a folder.

    Args:
        path: Path to the folder to remove.
    """
    return client.remove_folder(path)


@mcp.tool()
def list_folders() -> str:
    """List all configured library folders."""
    folders = client.list_folders()
    if not folders:
        return "No folders configured. Use add_folder to add one."
    return "\n".join(folders)


@mcp.tool()
def index() -> str:
    """Index new photos and videos in the configured folders.

    Incremental: media that already has an embedding is skipped, so an
    interrupted run can simply be started again.
    """
    try:
        stats = client.index()
    except ServiceError as exc:
        return f"Indexing failed: {exc}"
    new = stats.get("new", {})
    total = stats.get("total", {})
    return (
        f"Indexed {new.get('image', 0)} new images ({total.get('image', 0)} total), "
        f"{new.get('video', 0)} new videos ({total.get('video', 0)} total): {_summary(stats)}."
    )


@mcp.tool()
def organise(source: str) -> str:
    """Move images from a folder into the best matching destination folders.

    A photo is moved only when one destination clearly wins. Every move is
    recorded and can be reverted with undo.

    Args:
        source: Folder whose images should be sorted.
    """
    try:
        result = client.organise(source)
    except ServiceError as exc:
        return f"Organise failed: {exc}"
    if not result.get("moved"):
        return f"No images moved ({result.get('processed', 0)} checked)."
    return (
        f"Moved {result['moved']} of {result['processed']} images "
        f"into {len(result['destinations'])} folders (scan {result['scan_id']}): {_summary(result)}."
    )


@mcp.tool()
def undo(scan_id: int = 0) -> str:
    """Move the files of an organise run back where they came from.

    Args:
        scan_id: Scan to undo. 0 undoes the most recent one.
    """
    try:
        result = client.undo(scan_id or None)
    except ServiceError as exc:
        return f"Undo failed: {exc}"
    if result["scan_id"] is None:
        return "Nothing to undo."
    return f"Restored {result['restored']} files from scan {result['scan_id']}."


@mcp.tool()
def add_destination(folder: str) -> str:
    """Register a folder as an organise destination.

    Builds the folder's prototype from sample images it already holds.

    Args:
        folder: Absolute path to the destination folder.
    """
    try:
        p = client.build_prototype(folder)
    except ServiceError as exc:
        return f"Could not add destination: {exc}"
    return f"Destination ready: {p['category_id']}"


@mcp.tool()
def remove_destination(folder: str) -> str:
    """Stop using a folder as an organise destination.

    Args:
        folder: Absolute path to the destination folder.
    """
    return client.remove_prototype(folder)


@mcp.tool()
def list_fewshot() -> str:
    """List few-shot prototypes and how many sample images each averages."""
    prototypes = client.list_fewshot()
    if not prototypes:
        return "No few-shot prototypes."
    return "\n".join(
        f"- [{p['id']}] {p['name']} ({p['sample_count']} samples)"
        + (f" {p['category']}" if p["category"] else "")
        for p in prototypes
    )


@mcp.tool()
def create_fewshot(name: str, paths: list[str], description: str = "", category: str = "") -> str:
    """Create a named prototype from a few example images of one subject.

    Use it for things a text query can't pin down, like a specific person
    or pet. Search with it by passing its name as `prototype`.

    Args:
        name: Prototype name.
        paths: Absolute paths of the sample images.
        description: Free-text note (optional).
        category: person, object, scene, or style (optional).
    """
    try:
        p = client.create_fewshot(name, paths, description or None, category or None)
    except ServiceError as exc:
        return f"Could not create prototype: {exc}"
    return f"Created prototype {p['name']} (id {p['id']}) from {p['sample_count']} samples."


@mcp.tool()
def add_fewshot_sample(prototype_id: int, path: str) -> str:
    """Add one more sample image to a few-shot prototype.

    Args:
        prototype_id: Prototype id from list_fewshot.
        path: Absolute path of the sample image.
    """
    try:
        p = client.fewshot_add_sample(prototype_id, path)
    except ServiceError as exc:
        return f"Could not add sample: {exc}"
    return f"{p['name']} now averages {p['sample_count']} samples."


@mcp.tool()
def remove_fewshot_sample(prototype_id: int, sample_id: int) -> str:
    """Remove a sample from a few-shot prototype. Removing the last one deletes it.

    Args:
        prototype_id: Prototype id from list_fewshot.
        sample_id: Sample id.
    """
    try:
        result = client.fewshot_remove_sample(prototype_id, sample_id)
    except ServiceError as exc:
        return f"Could not remove sample: {exc}"
    if result["deleted"]:
        return f"Removed the last sample; prototype {prototype_id} deleted."
    return f"{result['prototype']['name']} now averages {result['prototype']['sample_count']} samples."


@mcp.tool()
def delete_fewshot(prototype_id: int) -> str:
    """Delete a few-shot prototype and its samples.

    Args:
        prototype_id: Prototype id from list_fewshot.
    """
    return client.delete_fewshot(prototype_id)


@mcp.tool()
def list_tags() -> str:
    """List tags with their thresholds and how many items carry them."""
    tags = client.list_tags()
    if not tags:
        return "No tags defined."
    return "\n".join(
        f"- {t['name']} (threshold {t['threshold']:.2f}, {t['media_count']} items)"
        + ("" if t["active"] else " [inactive]")
        for t in tags
    )


@mcp.tool()
def create_tag(name: str, description: str, threshold: float = 0.30) -> str:
    """Create or update a tag from a text description.

    Images whose similarity to the description reaches the threshold
    receive the tag on the next retag run.

    Args:
        name: Tag name.
        description: What images with this tag look like.
        threshold: Minimum similarity in [0, 1] (default 0.30).
    """
    try:
        tag = client.create_tag(name, description, threshold)
    except ServiceError as exc:
        return f"Could not create tag: {exc}"
    return f"Saved tag {tag['name']} (threshold {tag['threshold']:.2f})."


@mcp.tool()
def delete_tag(name: str) -> str:
    """Delete a tag and remove it from every item.

    Args:
        name: Tag name.
    """
    return client.delete_tag(name)


@mcp.tool()
def retag() -> str:
    """Re-evaluate every indexed image against the active tags."""
    try:
        stats = client.retag()
    except ServiceError as exc:
        return f"Retag failed: {exc}"
    top = ", ".join(f"{name} ({count})" for name, count in stats.get("top_tags", []))
    return (
        f"Tagged {stats['current']}/{stats['total']} images with {stats['tags_assigned']} tags "
        f"from {stats['active_tags_count']} active tags: {_summary(stats)}."
        + (f" Top: {top}." if top else "")
    )


@mcp.tool()
def cancel() -> str:
    """Cancel the running index, organise, or retag job."""
    return "Cancelling." if client.cancel() else "Nothing is running."


@mcp.tool()
def backup(path: str = "") -> str:
    """Export embeddings, tags, destinations, and move history to a zip file.

    Args:
        path: Destination zip path. Empty writes into the cache directory.
    """
    result = client.backup(path or None)
    return f"Backup written to {result['path']}"


@mcp.tool()
def restore(path: str) -> str:
    """Replace the current index with a backup zip.

    Args:
        path: Zip file written by backup.
    """
    try:
        result = client.restore(path)
    except ServiceError as exc:
        return f"Restore failed: {exc}"
    counts = result.get("embeddings", {})
    return f"Restored {', '.join(f'{c} {k}' for k, c in counts.items())} embeddings."


@mcp.tool()
def index_status() -> str:
    """Report the state of the library and the running job."""
    s = client.status()
    lines = [
        f"Model: {s['model']} ({s['dimension']}d, {'loaded' if s['model_loaded'] else 'not loaded'})",
        f"Folders: {len(s['folders'])}",
        *[f"  {f}" for f in s["folders"]],
        f"Media: {s['media']['image']} images, {s['media']['video']} videos",
        f"Indexed: {s['embeddings']['image']} images, {s['embeddings']['video']} videos",
        f"Destinations: {s['prototypes']}",
        f"Few-shot prototypes: {s['fewshot_prototypes']}",
        f"Tags: {s['tags']}",
    ]
    job = s.get("job")
    if job:
        progress = job.get("progress") or {}
        lines.append(
            f"Job: {job['job']} {job['phase']} {job['status']}"
            + (f" {progress['current']}/{progress['total']}" if progress else "")
        )
    return "\n".join(lines)


if __name__ == "__main__":
    mcp.run(transport="stdio")
